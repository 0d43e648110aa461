"""Milestone escrow service: agreements, escrow-backed milestones and the payment ledger."""

__version__ = "0.1.0"
