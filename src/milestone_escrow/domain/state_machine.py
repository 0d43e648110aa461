"""Lifecycle state machine guards.

Uses python-statemachine to enforce legal transitions at the domain level.
Whatever the API or an MCP tool asks for, an illegal transition (e.g. a
milestone pending -> completed) raises TransitionNotAllowed here before any
ORM field is touched.

A machine is instantiated per record at its current status, the event is
fired, and the resulting status is written back by the service.

Milestone (work axis):
    pending      -> in-progress   (start_work, submit_work)
    in-progress  -> in-progress   (submit_work: resubmission)
    in-progress  -> completed     (approve_work, complete_manually)

Milestone escrow (funding axis):
    unfunded -> funded   (fund)
    funded   -> released (release)
    funded   -> refunded (refund)

Payment ledger entry:
    pending -> held       (hold)
    pending -> completed  (settle: withdrawals and deposits)
    held    -> released   (release)
    held    -> refunded   (refund)

Job:
    open        -> in-progress  (start)
    in-progress -> completed    (mark_completed)
    in-progress -> closed       (close)
    completed   -> closed       (close)
    open        -> cancelled    (cancel)
    in-progress -> cancelled    (cancel)
"""

from __future__ import annotations

from typing import ClassVar

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from milestone_escrow.domain.enums import ActorRole, MilestoneStatus
from milestone_escrow.domain.exceptions import InvalidTransitionError


class _StatusMachine(StateMachine):
    """Shared constructor and helpers. Declares no states, so it is abstract."""

    event_names: ClassVar[tuple[str, ...]] = ()

    def __init__(self, current_status: str) -> None:
        """Initialize the machine at a persisted status value.

        Args:
            current_status: The stored status string (e.g. "in-progress").
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as the persisted string."""
        return str(self.current_state_value)

    def fire(self, event_name: str) -> str:
        """Fire a named event and return the new status."""
        event_method = getattr(self, event_name, None)
        if event_name not in self.event_names or not callable(event_method):
            raise ValueError(
                f"Unknown event '{event_name}'. "
                f"Allowed events from {self.status}: {self.get_allowed_events()}"
            )
        event_method()
        return self.status

    def get_allowed_events(self) -> list[str]:
        """Return the event names that can fire from the current state."""
        allowed = []
        for name in self.event_names:
            probe = type(self)(self.status)
            try:
                getattr(probe, name)()
            except TransitionNotAllowed:
                continue
            allowed.append(name)
        return allowed


class MilestoneStateMachine(_StatusMachine):
    """Work axis of a milestone. OVERDUE is derived on read, never a state."""

    pending = State("Pending", value=MilestoneStatus.PENDING.value, initial=True)
    in_progress = State("In progress", value=MilestoneStatus.IN_PROGRESS.value)
    completed = State("Completed", value=MilestoneStatus.COMPLETED.value, final=True)

    start_work = pending.to(in_progress)
    submit_work = pending.to(in_progress) | in_progress.to.itself()
    approve_work = in_progress.to(completed)
    complete_manually = in_progress.to(completed)

    event_names = ("start_work", "submit_work", "approve_work", "complete_manually")


class MilestoneEscrowStateMachine(_StatusMachine):
    """Funding axis of a milestone."""

    unfunded = State("Unfunded", value="unfunded", initial=True)
    funded = State("Funded", value="funded")
    released = State("Released", value="released", final=True)
    refunded = State("Refunded", value="refunded", final=True)

    fund = unfunded.to(funded)
    release = funded.to(released)
    refund = funded.to(refunded)

    event_names = ("fund", "release", "refund")


class PaymentStateMachine(_StatusMachine):
    """Ledger entry lifecycle. Terminal states accept no further events."""

    pending = State("Pending", value="pending", initial=True)
    held = State("Held", value="held")
    released = State("Released", value="released", final=True)
    refunded = State("Refunded", value="refunded", final=True)
    completed = State("Completed", value="completed", final=True)

    hold = pending.to(held)
    settle = pending.to(completed)
    release = held.to(released)
    refund = held.to(refunded)

    event_names = ("hold", "settle", "release", "refund")


class JobStateMachine(_StatusMachine):
    open = State("Open", value="open", initial=True)
    in_progress = State("In progress", value="in-progress")
    completed = State("Completed", value="completed")
    closed = State("Closed", value="closed", final=True)
    cancelled = State("Cancelled", value="cancelled", final=True)

    start = open.to(in_progress)
    mark_completed = in_progress.to(completed)
    close = in_progress.to(closed) | completed.to(closed)
    cancel = open.to(cancelled) | in_progress.to(cancelled)

    event_names = ("start", "mark_completed", "close", "cancel")


# (from, to) -> (role allowed to request it, event to fire).
# This is the direct status-change table. Review-driven completion goes
# through approve_work instead.
MILESTONE_STATUS_TRANSITIONS: dict[
    tuple[MilestoneStatus, MilestoneStatus], tuple[ActorRole, str]
] = {
    (MilestoneStatus.PENDING, MilestoneStatus.IN_PROGRESS): (ActorRole.FREELANCER, "start_work"),
    (MilestoneStatus.IN_PROGRESS, MilestoneStatus.COMPLETED): (
        ActorRole.EMPLOYER,
        "complete_manually",
    ),
}


def resolve_status_change(current: str, target: str, role: ActorRole) -> str:
    """Map a requested milestone status change to its event name.

    Raises:
        InvalidTransitionError: If the pair is not in the table or the role
            is not the one allowed to request it.
    """
    try:
        key = (MilestoneStatus(current), MilestoneStatus(target))
    except ValueError as err:
        raise InvalidTransitionError(current, target, role.value) from err

    entry = MILESTONE_STATUS_TRANSITIONS.get(key)
    if entry is None or entry[0] != role:
        raise InvalidTransitionError(current, target, role.value)
    return entry[1]


def fire_transition(
    machine_cls: type[_StatusMachine],
    current_status: str,
    event_name: str,
    actor_role: str = "",
) -> str:
    """Validate and fire a transition, translating library errors.

    Returns:
        The new status string.

    Raises:
        InvalidTransitionError: If the transition is illegal from current_status.
    """
    sm = machine_cls(current_status)
    try:
        return sm.fire(event_name)
    except (TransitionNotAllowed, ValueError) as err:
        raise InvalidTransitionError(current_status, event_name, actor_role) from err


def validate_transition(
    machine_cls: type[_StatusMachine], current_status: str, event_name: str
) -> str:
    """Fire an event on a throwaway machine and return the resulting status.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    return machine_cls(current_status).fire(event_name)
