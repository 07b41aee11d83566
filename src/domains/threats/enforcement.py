"""Side-effecting defense operations.

The base enforcer records each decision in the structured log; request-time
middleware is expected to consult active defense actions. The Redis
enforcer also writes block markers with a TTL matching the action expiry so
edge components can check them without touching the database.
"""

from datetime import UTC, datetime

import structlog
from redis.asyncio import Redis

from .models import Cluster, DefenseAction
from .notifications import HIGH_RISK_CLUSTER, NotificationSink, safe_emit

logger = structlog.get_logger()


def rate_limit_for(severity: int) -> int:
    """Requests-per-minute cap: higher severity, tighter cap, never below 1."""
    return max(1, 10 - severity * 2)


class DefenseEnforcer:
    def __init__(self, notifier: NotificationSink | None = None) -> None:
        self._notifier = notifier

    async def block_ip(self, ip_address: str, expires_at: datetime | None) -> None:
        logger.warning("ip_blocked", ip_address=ip_address, expires_at=expires_at)

    async def block_device(self, device_fingerprint: str, expires_at: datetime | None) -> None:
        logger.warning(
            "device_blocked", device_fingerprint=device_fingerprint, expires_at=expires_at
        )

    async def rate_limit(
        self, ip_address: str, severity: int, expires_at: datetime | None = None
    ) -> int:
        limit = rate_limit_for(severity)
        logger.warning(
            "rate_limit_applied",
            ip_address=ip_address,
            requests_per_minute=limit,
            expires_at=expires_at,
        )
        return limit

    async def alert(self, action: DefenseAction, cluster: Cluster) -> None:
        logger.warning("high_risk_cluster_alert", cluster_id=cluster.id, action_id=action.id)
        await safe_emit(
            self._notifier,
            HIGH_RISK_CLUSTER,
            {
                "severity": action.severity,
                "message": f"High-risk fraud cluster detected: {cluster.label}",
                "clusterId": cluster.id,
                "score": cluster.score_value,
                "threatCount": cluster.threat_count,
            },
        )

    async def quarantine(self, merchant_id: str, expires_at: datetime | None) -> None:
        logger.warning("merchant_quarantined", merchant_id=merchant_id, expires_at=expires_at)

    async def close(self) -> None:
        return None


class RedisDefenseEnforcer(DefenseEnforcer):
    """Enforcer that mirrors blocks into Redis keys under `key_prefix`."""

    def __init__(
        self,
        client: Redis,
        notifier: NotificationSink | None = None,
        key_prefix: str = "defense",
    ) -> None:
        super().__init__(notifier)
        self._client = client
        self._prefix = key_prefix

    @staticmethod
    def _ttl_seconds(expires_at: datetime | None) -> int | None:
        if expires_at is None:
            return None
        return max(1, int((expires_at - datetime.now(UTC)).total_seconds()))

    async def _mark(self, key: str, value: str, expires_at: datetime | None) -> None:
        await self._client.set(f"{self._prefix}:{key}", value, ex=self._ttl_seconds(expires_at))

    async def block_ip(self, ip_address: str, expires_at: datetime | None) -> None:
        await super().block_ip(ip_address, expires_at)
        await self._mark(f"block:ip:{ip_address}", "1", expires_at)

    async def block_device(self, device_fingerprint: str, expires_at: datetime | None) -> None:
        await super().block_device(device_fingerprint, expires_at)
        await self._mark(f"block:device:{device_fingerprint}", "1", expires_at)

    async def rate_limit(
        self, ip_address: str, severity: int, expires_at: datetime | None = None
    ) -> int:
        limit = await super().rate_limit(ip_address, severity, expires_at)
        await self._mark(f"ratelimit:ip:{ip_address}", str(limit), expires_at)
        return limit

    async def quarantine(self, merchant_id: str, expires_at: datetime | None) -> None:
        await super().quarantine(merchant_id, expires_at)
        await self._mark(f"quarantine:merchant:{merchant_id}", "1", expires_at)

    async def close(self) -> None:
        await self._client.aclose()
