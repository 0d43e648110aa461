"""Unit tests for the notification sinks, their factory and build_dispatcher."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

import milestone_escrow.notifications as notifications
from milestone_escrow.domain.exceptions import DownstreamError
from milestone_escrow.domain.notifications import NotificationEvent, NotificationSink
from milestone_escrow.notifications import (
    LoggingNotificationSink,
    NotificationSinkFactory,
    RedisStreamNotificationSink,
    build_dispatcher,
)
from milestone_escrow.notifications import sinks as sinks_module

EVENT = NotificationEvent(
    event_id="evt-1",
    recipient_id="user-1",
    type="milestone_funded",
    title="Milestone Funded",
    message='Milestone "Design" has been funded with 500.00 USD',
    job_id="job-1",
)


class TestNotificationSinkFactory:
    def test_create_log(self) -> None:
        sink = NotificationSinkFactory.create("log")
        assert isinstance(sink, LoggingNotificationSink)
        assert isinstance(sink, NotificationSink)

    def test_create_redis(self) -> None:
        assert isinstance(NotificationSinkFactory.create("redis"), RedisStreamNotificationSink)

    def test_unknown_sink_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown notification sink"):
            NotificationSinkFactory.create("carrier_pigeon")

    def test_get_supported_types(self) -> None:
        assert NotificationSinkFactory.get_supported_types() == ["log", "redis"]


class TestLoggingSink:
    @pytest.mark.asyncio
    async def test_deliver_does_not_raise(self) -> None:
        await LoggingNotificationSink().deliver(EVENT)


class TestRedisStreamSink:
    @pytest.mark.asyncio
    async def test_appends_flat_entry(self) -> None:
        sink = RedisStreamNotificationSink(stream_key="test:notifications", maxlen=50)
        with patch.object(
            sinks_module, "append_to_stream", new_callable=AsyncMock
        ) as mock_append:
            mock_append.return_value = "1700000000000-0"
            await sink.deliver(EVENT)

        stream_key, fields, maxlen = mock_append.call_args.args
        assert stream_key == "test:notifications"
        assert maxlen == 50
        assert fields["type"] == "milestone_funded"
        assert fields["milestone_id"] == ""
        assert all(isinstance(v, str) for v in fields.values())

    @pytest.mark.asyncio
    async def test_redis_error_is_downstream(self) -> None:
        sink = RedisStreamNotificationSink(stream_key="test:notifications", maxlen=50)
        with patch.object(
            sinks_module, "append_to_stream", new_callable=AsyncMock
        ) as mock_append:
            mock_append.side_effect = RedisConnectionError("connection refused")
            with pytest.raises(DownstreamError) as exc_info:
                await sink.deliver(EVENT)
        assert exc_info.value.code == "NOTIFICATION_SINK_UNAVAILABLE"
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_uninitialized_client_is_downstream(self) -> None:
        sink = RedisStreamNotificationSink(stream_key="test:notifications", maxlen=50)
        with pytest.raises(DownstreamError):
            await sink.deliver(EVENT)


class TestBuildDispatcher:
    def test_configured_sink(self, session_factory, settings) -> None:
        dispatcher = build_dispatcher(session_factory, settings)
        assert isinstance(dispatcher._sink, LoggingNotificationSink)

    def test_falls_back_to_log_without_redis(self, session_factory, settings) -> None:
        redis_settings = settings.model_copy(update={"notification_sink": "redis"})
        with patch.object(notifications, "is_redis_available", return_value=False):
            dispatcher = build_dispatcher(session_factory, redis_settings)
        assert isinstance(dispatcher._sink, LoggingNotificationSink)

    def test_uses_redis_when_available(self, session_factory, settings) -> None:
        redis_settings = settings.model_copy(update={"notification_sink": "redis"})
        with patch.object(notifications, "is_redis_available", return_value=True):
            dispatcher = build_dispatcher(session_factory, redis_settings)
        assert isinstance(dispatcher._sink, RedisStreamNotificationSink)
