"""Storage access for fraud logs, clusters, action rules and defense records.

The fraud log is read-only here. Every write happens in its own short
session so a failure never leaves a half-open transaction behind a long pass.
"""

from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import desc, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import (
    ActionRuleDB,
    ClusterPattern,
    DefenseActionDB,
    DefenseHistoryDB,
    FraudCluster,
    FraudLog,
    new_id,
)

from .models import (
    ActionRule,
    ActionType,
    Cluster,
    ClusterCandidate,
    ClusterMetadata,
    ClusterPatternRecord,
    DefenseAction,
    DefenseHistoryEntry,
    ThreatEvent,
)

logger = structlog.get_logger()

SAME_CLUSTER_SIMILARITY = 95.0


def _event_from_row(row: FraudLog) -> ThreatEvent:
    return ThreatEvent(
        id=row.id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        device_fingerprint=row.device_fingerprint,
        merchant_id=row.merchant_id,
        timestamp=row.created_at,
        threat_type=row.threat_type,
        reason=row.reason or "",
        metadata=row.event_metadata or {},
    )


def _cluster_from_row(row: FraudCluster) -> Cluster:
    return Cluster(
        id=row.id,
        label=row.label,
        score=row.score,
        severity=row.severity,
        threat_count=row.threat_count,
        pattern_type=row.pattern_type,
        metadata=ClusterMetadata.model_validate(row.cluster_metadata),
        created_at=row.created_at,
    )


def _rule_from_row(row: ActionRuleDB) -> ActionRule:
    return ActionRule(
        id=row.id,
        name=row.name,
        condition=row.condition,
        action_type=row.action_type,
        severity=row.severity,
        is_active=row.is_active,
        trigger_count=row.trigger_count or 0,
        last_triggered=row.last_triggered,
        metadata=row.rule_metadata or {},
        created_at=row.created_at,
    )


def _action_from_row(row: DefenseActionDB) -> DefenseAction:
    return DefenseAction(
        id=row.id,
        name=row.name,
        action_type=row.action_type,
        triggered_by=row.triggered_by,
        target_value=row.target_value,
        severity=row.severity,
        is_active=row.is_active,
        expires_at=row.expires_at,
        metadata=row.action_metadata or {},
        created_at=row.created_at,
    )


def _unexpired(now: datetime):
    return or_(DefenseActionDB.expires_at.is_(None), DefenseActionDB.expires_at > now)


class ThreatRepository:
    """SQLAlchemy-backed event store and cluster repository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # --- Event store (read-only) ---

    async def fetch_events_since(self, since: datetime, limit: int = 1000) -> list[ThreatEvent]:
        """Fraud logs created at or after `since`, newest first, capped at `limit`."""
        stmt = (
            select(FraudLog)
            .where(FraudLog.created_at >= since)
            .order_by(desc(FraudLog.created_at))
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [_event_from_row(row) for row in rows if row.created_at is not None]

    async def fetch_recent_events(self, limit: int) -> list[ThreatEvent]:
        stmt = select(FraudLog).order_by(desc(FraudLog.created_at)).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [_event_from_row(row) for row in rows if row.created_at is not None]

    # --- Clusters ---

    async def create_cluster(
        self, candidate: ClusterCandidate, metadata: ClusterMetadata
    ) -> Cluster:
        """Insert a cluster and one pattern row per member event in one transaction."""
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            row = FraudCluster(
                id=new_id(),
                label=candidate.label,
                score=str(candidate.score),
                severity=candidate.severity,
                threat_count=candidate.threat_count,
                pattern_type=candidate.pattern_type.value,
                cluster_metadata=metadata.model_dump(mode="json"),
                created_at=now,
            )
            session.add(row)
            await session.flush()

            session.add_all(
                [
                    ClusterPattern(
                        cluster_id=row.id,
                        fraud_log_id=event.id,
                        pattern_metadata={
                            "ip_address": event.ip_address,
                            "user_agent": event.user_agent,
                            "device_fingerprint": event.device_fingerprint,
                            "timestamp": event.timestamp.isoformat(),
                        },
                        similarity=SAME_CLUSTER_SIMILARITY,
                        created_at=now,
                    )
                    for event in candidate.events
                ]
            )
            await session.commit()
            return _cluster_from_row(row)

    async def count_clusters_since(self, since: datetime) -> int:
        stmt = select(func.count()).select_from(FraudCluster).where(FraudCluster.created_at >= since)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one()

    async def list_clusters(self, limit: int = 50) -> list[Cluster]:
        stmt = select(FraudCluster).order_by(desc(FraudCluster.created_at)).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_cluster_from_row(row) for row in result.scalars().all()]

    async def get_cluster(self, cluster_id: str) -> Cluster | None:
        async with self._session_factory() as session:
            row = await session.get(FraudCluster, cluster_id)
            return _cluster_from_row(row) if row else None

    async def get_cluster_patterns(self, cluster_id: str) -> list[ClusterPatternRecord]:
        stmt = select(ClusterPattern).where(ClusterPattern.cluster_id == cluster_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [
            ClusterPatternRecord(
                cluster_id=row.cluster_id,
                fraud_log_id=row.fraud_log_id,
                ip_address=row.pattern_metadata.get("ip_address"),
                user_agent=row.pattern_metadata.get("user_agent"),
                device_fingerprint=row.pattern_metadata.get("device_fingerprint"),
                timestamp=row.pattern_metadata.get("timestamp") or row.created_at,
                similarity=row.similarity,
            )
            for row in rows
        ]

    async def cluster_stats(self) -> dict:
        since = datetime.now(UTC) - timedelta(hours=24)
        async with self._session_factory() as session:
            totals = await session.execute(
                select(
                    func.count(FraudCluster.id),
                    func.avg(FraudCluster.severity),
                    func.count(FraudCluster.id).filter(FraudCluster.created_at >= since),
                )
            )
            total, avg_severity, recent = totals.one()
            by_type = await session.execute(
                select(FraudCluster.pattern_type, func.count()).group_by(FraudCluster.pattern_type)
            )
            pattern_types = {pattern_type: count for pattern_type, count in by_type.all()}
        return {
            "total_clusters": total or 0,
            "recent_clusters": recent or 0,
            "avg_severity": round(float(avg_severity), 2) if avg_severity is not None else 0.0,
            "pattern_types": pattern_types,
        }

    # --- Action rules ---

    async def list_active_rules(self) -> list[ActionRule]:
        """Active rules, most severe first."""
        stmt = (
            select(ActionRuleDB)
            .where(ActionRuleDB.is_active.is_(True))
            .order_by(desc(ActionRuleDB.severity))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_rule_from_row(row) for row in result.scalars().all()]

    async def list_rules(self) -> list[ActionRule]:
        stmt = select(ActionRuleDB).order_by(desc(ActionRuleDB.severity), ActionRuleDB.name)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_rule_from_row(row) for row in result.scalars().all()]

    async def get_rule_by_name(self, name: str) -> ActionRule | None:
        stmt = select(ActionRuleDB).where(ActionRuleDB.name == name).limit(1)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            return _rule_from_row(row) if row else None

    async def create_rule(
        self,
        name: str,
        condition: str,
        action_type: str,
        severity: int,
        metadata: dict | None = None,
    ) -> ActionRule:
        async with self._session_factory() as session:
            row = ActionRuleDB(
                id=new_id(),
                name=name,
                condition=condition,
                action_type=action_type,
                severity=severity,
                is_active=True,
                trigger_count=0,
                rule_metadata=metadata or {},
                created_at=datetime.now(UTC),
            )
            session.add(row)
            await session.commit()
            return _rule_from_row(row)

    async def record_rule_trigger(self, rule_id: str, triggered_at: datetime) -> None:
        """Bump a rule's trigger count in the database, not from a stale read."""
        stmt = (
            update(ActionRuleDB)
            .where(ActionRuleDB.id == rule_id)
            .values(
                trigger_count=ActionRuleDB.trigger_count + 1,
                last_triggered=triggered_at,
            )
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    # --- Defense actions and history ---

    async def create_defense_action(self, action: DefenseAction) -> DefenseAction:
        async with self._session_factory() as session:
            row = DefenseActionDB(
                id=new_id(),
                name=action.name,
                action_type=action.action_type.value,
                triggered_by=action.triggered_by,
                target_value=action.target_value,
                severity=action.severity,
                is_active=action.is_active,
                expires_at=action.expires_at,
                action_metadata=action.metadata,
                created_at=action.created_at or datetime.now(UTC),
            )
            session.add(row)
            await session.commit()
            return _action_from_row(row)

    async def record_defense_history(self, entry: DefenseHistoryEntry) -> None:
        async with self._session_factory() as session:
            session.add(
                DefenseHistoryDB(
                    action_id=entry.action_id,
                    cluster_id=entry.cluster_id,
                    rule_id=entry.rule_id,
                    result=entry.result.value,
                    impact_metrics=entry.impact_metrics,
                    duration=entry.duration,
                    created_at=datetime.now(UTC),
                )
            )
            await session.commit()

    async def list_active_defense_actions(self, now: datetime | None = None) -> list[DefenseAction]:
        """Active actions that have not yet expired."""
        now = now or datetime.now(UTC)
        stmt = (
            select(DefenseActionDB)
            .where(DefenseActionDB.is_active.is_(True), _unexpired(now))
            .order_by(desc(DefenseActionDB.created_at))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_action_from_row(row) for row in result.scalars().all()]

    async def find_active_defense_action(
        self,
        action_types: list[ActionType],
        target_value: str,
        now: datetime | None = None,
    ) -> DefenseAction | None:
        now = now or datetime.now(UTC)
        stmt = (
            select(DefenseActionDB)
            .where(
                DefenseActionDB.is_active.is_(True),
                DefenseActionDB.action_type.in_([t.value for t in action_types]),
                DefenseActionDB.target_value == target_value,
                _unexpired(now),
            )
            .order_by(desc(DefenseActionDB.severity))
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            return _action_from_row(row) if row else None

    async def deactivate_defense_action(self, action_id: str) -> DefenseAction | None:
        async with self._session_factory() as session:
            row = await session.get(DefenseActionDB, action_id)
            if row is None:
                return None
            row.is_active = False
            await session.commit()
            logger.info("defense_action_deactivated", action_id=action_id)
            return _action_from_row(row)

    async def defense_stats(self, now: datetime | None = None) -> dict:
        now = now or datetime.now(UTC)
        active = DefenseActionDB.is_active.is_(True) & _unexpired(now)
        async with self._session_factory() as session:
            counts = await session.execute(
                select(
                    func.count(DefenseActionDB.id),
                    func.count(DefenseActionDB.id).filter(active),
                    func.count(DefenseActionDB.id).filter(
                        active, DefenseActionDB.action_type == ActionType.BLOCK_IP.value
                    ),
                    func.count(DefenseActionDB.id).filter(
                        active, DefenseActionDB.action_type == ActionType.BLOCK_DEVICE.value
                    ),
                )
            )
            total, active_count, blocked_ips, blocked_devices = counts.one()
            rules = await session.execute(
                select(func.count(ActionRuleDB.id)).where(ActionRuleDB.is_active.is_(True))
            )
            active_rules = rules.scalar_one()
        return {
            "total_actions": total or 0,
            "active_actions": active_count or 0,
            "blocked_ips": blocked_ips or 0,
            "blocked_devices": blocked_devices or 0,
            "active_rules": active_rules or 0,
        }
