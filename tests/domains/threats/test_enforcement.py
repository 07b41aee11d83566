"""Tests for notification sinks and defense enforcers."""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.domains.threats.enforcement import (
    DefenseEnforcer,
    RedisDefenseEnforcer,
    rate_limit_for,
)
from src.domains.threats import notifications
from src.domains.threats.models import ActionType, DefenseAction
from src.domains.threats.notifications import (
    HIGH_RISK_CLUSTER,
    KafkaNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
    safe_emit,
)
from tests.conftest import RecordingSink, UnackedProducer, make_cluster


class ExplodingSink(NotificationSink):
    async def emit(self, event_name, payload):
        raise ConnectionError("socket closed")


def _action(action_type: ActionType = ActionType.ALERT, severity: int = 5) -> DefenseAction:
    return DefenseAction(
        id="action-1",
        name="Auto: Critical Threat Alert",
        action_type=action_type,
        triggered_by="cluster:c-1",
        target_value="c-1",
        severity=severity,
    )


class TestSafeEmit:
    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self):
        await safe_emit(ExplodingSink(), "new-fraud-cluster", {"clusterId": "c-1"})

    @pytest.mark.asyncio
    async def test_missing_sink_is_allowed(self):
        await safe_emit(None, "new-fraud-cluster", {"clusterId": "c-1"})

    @pytest.mark.asyncio
    async def test_logging_sink(self):
        await LoggingNotificationSink().emit("new-fraud-cluster", {"clusterId": "c-1"})


class TestKafkaNotificationSink:
    @pytest.mark.asyncio
    async def test_publishes_json_keyed_by_event(self):
        producer = UnackedProducer()
        sink = KafkaNotificationSink(producer, "threats.defense.events")

        await sink.emit("defense-action-triggered", {"actionId": "a-1"})

        [(topic, key, value)] = producer.sent
        assert topic == "threats.defense.events"
        assert key == b"defense-action-triggered"
        assert json.loads(value) == {
            "event": "defense-action-triggered",
            "payload": {"actionId": "a-1"},
        }

    @pytest.mark.asyncio
    async def test_emit_does_not_wait_for_broker_ack(self):
        producer = UnackedProducer()
        sink = KafkaNotificationSink(producer, "threats.defense.events")

        await asyncio.wait_for(sink.emit("new-fraud-cluster", {"clusterId": "c-1"}), 1.0)

        [delivery] = producer.deliveries
        assert not delivery.done()

    @pytest.mark.asyncio
    async def test_delivery_failure_is_logged_not_raised(self, monkeypatch):
        log = MagicMock()
        monkeypatch.setattr(notifications, "logger", log)
        producer = UnackedProducer()
        sink = KafkaNotificationSink(producer, "t")
        await sink.emit("new-fraud-cluster", {"clusterId": "c-1"})

        [delivery] = producer.deliveries
        delivery.set_exception(ConnectionError("broker down"))
        await asyncio.sleep(0)

        log.error.assert_called_once()
        assert log.error.call_args.args[0] == "notification_delivery_failed"
        assert log.error.call_args.kwargs["error"] == "broker down"

    @pytest.mark.asyncio
    async def test_close_stops_producer(self):
        producer = AsyncMock()
        await KafkaNotificationSink(producer, "t").close()
        producer.stop.assert_awaited_once()


class TestDefenseEnforcer:
    @pytest.mark.parametrize("severity,limit", [(1, 8), (2, 6), (4, 2), (5, 1)])
    def test_rate_limit_tightens_with_severity(self, severity, limit):
        assert rate_limit_for(severity) == limit

    @pytest.mark.asyncio
    async def test_rate_limit_returns_cap(self):
        assert await DefenseEnforcer().rate_limit("10.0.0.1", 3) == 4

    @pytest.mark.asyncio
    async def test_alert_emits_high_risk_cluster(self):
        sink = RecordingSink()
        cluster = make_cluster(severity=5, score="9.5", threat_count=12)

        await DefenseEnforcer(sink).alert(_action(), cluster)

        [payload] = sink.named(HIGH_RISK_CLUSTER)
        assert payload["clusterId"] == cluster.id
        assert payload["score"] == 9.5
        assert payload["threatCount"] == 12
        assert payload["severity"] == 5


class TestRedisDefenseEnforcer:
    @pytest.mark.asyncio
    async def test_block_ip_sets_key_with_ttl(self):
        client = AsyncMock()
        enforcer = RedisDefenseEnforcer(client)

        await enforcer.block_ip("10.0.0.1", datetime.now(UTC) + timedelta(hours=1))

        args, kwargs = client.set.call_args
        assert args[0] == "defense:block:ip:10.0.0.1"
        assert 3590 <= kwargs["ex"] <= 3600

    @pytest.mark.asyncio
    async def test_indefinite_quarantine_has_no_ttl(self):
        client = AsyncMock()

        await RedisDefenseEnforcer(client).quarantine("m-1", None)

        client.set.assert_awaited_once_with("defense:quarantine:merchant:m-1", "1", ex=None)

    @pytest.mark.asyncio
    async def test_rate_limit_stores_cap(self):
        client = AsyncMock()

        limit = await RedisDefenseEnforcer(client, key_prefix="edge").rate_limit("10.0.0.2", 2)

        assert limit == 6
        client.set.assert_awaited_once_with("edge:ratelimit:ip:10.0.0.2", "6", ex=None)

    @pytest.mark.asyncio
    async def test_close(self):
        client = AsyncMock()
        await RedisDefenseEnforcer(client).close()
        client.aclose.assert_awaited_once()
