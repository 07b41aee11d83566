"""Automated defense: evaluates action rules against new clusters.

For every active rule whose condition holds for a cluster:
1. Resolve the target (IP, device fingerprint, merchant, or the cluster itself)
2. Compute the expiry from the action type and rule severity
3. Persist the defense action and bump the rule's trigger count
4. Enforce it
5. Record one history row (success or failed) and notify observers
"""

import json
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from .config import ExpiryPolicy, ThreatConfig, default_config
from .enforcement import DefenseEnforcer
from .models import (
    ActionRule,
    ActionType,
    Cluster,
    ConditionField,
    ConditionOperator,
    DefenseAction,
    DefenseHistoryEntry,
    DefenseResult,
    RuleCondition,
    RuleConditionError,
)
from .notifications import DEFENSE_ACTION_TRIGGERED, NotificationSink, safe_emit
from .repository import ThreatRepository

logger = structlog.get_logger()

DEFAULT_RULES: list[dict[str, Any]] = [
    {
        "name": "High Severity IP Block",
        "condition": {"field": "severity", "operator": "gte", "value": 4},
        "action_type": ActionType.BLOCK_IP,
        "severity": 4,
        "description": "Auto-block IPs in high-severity clusters",
    },
    {
        "name": "High Score Device Block",
        "condition": {"field": "score", "operator": "gte", "value": 8.0},
        "action_type": ActionType.BLOCK_DEVICE,
        "severity": 3,
        "description": "Block devices in high-score clusters",
    },
    {
        "name": "Velocity Attack Rate Limit",
        "condition": {"field": "patternType", "operator": "eq", "value": "velocity"},
        "action_type": ActionType.RATE_LIMIT,
        "severity": 2,
        "description": "Rate limit velocity-based attacks",
    },
    {
        "name": "Critical Threat Alert",
        "condition": {"field": "severity", "operator": "gte", "value": 5},
        "action_type": ActionType.ALERT,
        "severity": 5,
        "description": "Send alerts for critical threats",
    },
]


def cluster_value(cluster: Cluster, field: ConditionField) -> Any:
    """The cluster attribute a condition field refers to."""
    if field == ConditionField.SEVERITY:
        return cluster.severity
    if field == ConditionField.SCORE:
        return cluster.score_value
    if field == ConditionField.THREAT_COUNT:
        return cluster.threat_count
    return cluster.pattern_type.value


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _strict_equals(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    return type(left) is type(right) and left == right


def condition_holds(condition: RuleCondition, cluster: Cluster) -> bool:
    """Apply a parsed condition to a cluster. Incomparable values never match."""
    actual = cluster_value(cluster, condition.field)
    expected = condition.value

    try:
        if condition.operator == ConditionOperator.GTE:
            return actual >= expected
        if condition.operator == ConditionOperator.GT:
            return actual > expected
        if condition.operator == ConditionOperator.EQ:
            return _strict_equals(actual, expected)
        if condition.operator == ConditionOperator.CONTAINS:
            return str(expected) in str(actual)
    except TypeError:
        logger.warning(
            "rule_condition_incomparable",
            field=condition.field.value,
            operator=condition.operator.value,
        )
        return False

    logger.warning("rule_operator_unknown", operator=str(condition.operator))
    return False


def resolve_target(cluster: Cluster, action_type: ActionType) -> str | None:
    """The value a defense action applies to, or None when the cluster lacks one."""
    metadata = cluster.metadata
    if action_type in (ActionType.BLOCK_IP, ActionType.RATE_LIMIT):
        return metadata.primary_ip
    if action_type == ActionType.BLOCK_DEVICE:
        return metadata.device_fingerprint
    if action_type == ActionType.QUARANTINE:
        return metadata.merchant_id or "global"
    return cluster.id


def calculate_expiry(
    action_type: ActionType,
    severity: int,
    now: datetime,
    policy: ExpiryPolicy | None = None,
) -> datetime | None:
    """Expiry for an action; None means it stays until lifted by hand."""
    policy = policy or ExpiryPolicy()

    if action_type == ActionType.BLOCK_IP:
        hours = min(severity * policy.block_ip_hours_per_severity, policy.block_ip_max_hours)
        return now + timedelta(hours=hours)
    if action_type == ActionType.BLOCK_DEVICE:
        days = min(severity * policy.block_device_days_per_severity, policy.block_device_max_days)
        return now + timedelta(days=days)
    if action_type == ActionType.RATE_LIMIT:
        minutes = min(
            severity * policy.rate_limit_minutes_per_severity, policy.rate_limit_max_minutes
        )
        return now + timedelta(minutes=minutes)
    return None


class ActionRuleEngine:
    """Evaluates every active action rule against each new cluster.

    Rules are independent: one cluster may fire many rules, and a failing
    rule never stops the rest.
    """

    def __init__(
        self,
        repository: ThreatRepository,
        enforcer: DefenseEnforcer,
        notifier: NotificationSink | None = None,
        config: ThreatConfig | None = None,
    ) -> None:
        self._repository = repository
        self._enforcer = enforcer
        self._notifier = notifier
        self._config = config or default_config

    async def load_rules(self) -> list[tuple[ActionRule, RuleCondition, ActionType]]:
        """Active rules, most severe first, with conditions parsed up front.

        Rules with a malformed condition or an unknown action type are
        reported and left out.
        """
        usable: list[tuple[ActionRule, RuleCondition, ActionType]] = []
        for rule in await self._repository.list_active_rules():
            try:
                condition = RuleCondition.from_stored(rule.condition)
                action_type = ActionType(rule.action_type)
            except RuleConditionError as exc:
                logger.warning(
                    "action_rule_condition_invalid",
                    rule_id=rule.id,
                    rule_name=rule.name,
                    error=str(exc),
                )
                continue
            except ValueError:
                logger.warning(
                    "action_rule_type_unknown",
                    rule_id=rule.id,
                    rule_name=rule.name,
                    action_type=rule.action_type,
                )
                continue
            usable.append((rule, condition, action_type))
        return usable

    def evaluate_rule(self, rule: ActionRule, cluster: Cluster) -> bool:
        """Whether a single stored rule fires for a cluster. Fails closed."""
        try:
            condition = RuleCondition.from_stored(rule.condition)
        except RuleConditionError as exc:
            logger.warning("action_rule_condition_invalid", rule_id=rule.id, error=str(exc))
            return False
        return self._fires(rule, condition, cluster)

    def _fires(self, rule: ActionRule, condition: RuleCondition, cluster: Cluster) -> bool:
        try:
            return condition_holds(condition, cluster)
        except Exception:
            logger.warning("action_rule_evaluation_failed", rule_id=rule.id, exc_info=True)
            return False

    async def evaluate_cluster(self, cluster: Cluster) -> list[DefenseAction]:
        """Run all active rules against a cluster; returns actions that succeeded."""
        logger.info("cluster_rule_evaluation_started", cluster_id=cluster.id)
        executed: list[DefenseAction] = []

        try:
            rules = await self.load_rules()
        except Exception:
            logger.exception("action_rules_load_failed", cluster_id=cluster.id)
            return executed

        for rule, condition, action_type in rules:
            if not self._fires(rule, condition, cluster):
                continue

            logger.info(
                "action_rule_triggered",
                rule_id=rule.id,
                rule_name=rule.name,
                cluster_id=cluster.id,
                action_type=action_type.value,
            )
            action = await self.execute_defense_action(rule, cluster, action_type)
            if action is not None:
                executed.append(action)

        logger.info(
            "cluster_rule_evaluation_completed",
            cluster_id=cluster.id,
            rules_evaluated=len(rules),
            actions_executed=len(executed),
        )
        return executed

    async def execute_defense_action(
        self,
        rule: ActionRule,
        cluster: Cluster,
        action_type: ActionType | None = None,
    ) -> DefenseAction | None:
        """Create, enforce and audit the action a triggered rule calls for."""
        action_type = action_type or ActionType(rule.action_type)

        target = resolve_target(cluster, action_type)
        if not target:
            logger.warning(
                "defense_target_missing",
                rule_id=rule.id,
                rule_name=rule.name,
                cluster_id=cluster.id,
                action_type=action_type.value,
            )
            return None

        try:
            now = datetime.now(UTC)
            action = await self._repository.create_defense_action(
                DefenseAction(
                    name=f"Auto: {rule.name}",
                    action_type=action_type,
                    triggered_by=f"cluster:{cluster.id}",
                    target_value=target,
                    severity=rule.severity,
                    is_active=True,
                    expires_at=calculate_expiry(
                        action_type, rule.severity, now, self._config.expiry
                    ),
                    metadata={
                        "rule_id": rule.id,
                        "cluster_id": cluster.id,
                        "timestamp": now.isoformat(),
                        "cluster_metadata": cluster.metadata.model_dump(mode="json"),
                    },
                    created_at=now,
                )
            )
            logger.info(
                "defense_action_created",
                action_id=action.id,
                action_type=action_type.value,
                target_value=target,
                expires_at=action.expires_at,
            )

            await self._repository.record_rule_trigger(rule.id, now)
            await self._perform(action, cluster)
        except Exception:
            logger.exception(
                "defense_action_failed",
                rule_id=rule.id,
                rule_name=rule.name,
                cluster_id=cluster.id,
            )
            await self._record_history(None, cluster, rule, DefenseResult.FAILED)
            return None

        await self._record_history(action, cluster, rule, DefenseResult.SUCCESS)
        await safe_emit(
            self._notifier,
            DEFENSE_ACTION_TRIGGERED,
            {
                "type": "defense_action_triggered",
                "severity": rule.severity,
                "message": (
                    f'Defense action "{action_type.value}" triggered by rule "{rule.name}"'
                ),
                "actionId": action.id,
                "clusterId": cluster.id,
                "actionType": action_type.value,
                "targetValue": target,
            },
        )
        return action

    async def _perform(self, action: DefenseAction, cluster: Cluster) -> None:
        logger.info(
            "defense_action_executing",
            action_type=action.action_type.value,
            target_value=action.target_value,
        )
        if action.action_type == ActionType.BLOCK_IP:
            await self._enforcer.block_ip(action.target_value, action.expires_at)
        elif action.action_type == ActionType.BLOCK_DEVICE:
            await self._enforcer.block_device(action.target_value, action.expires_at)
        elif action.action_type == ActionType.RATE_LIMIT:
            await self._enforcer.rate_limit(
                action.target_value, action.severity, action.expires_at
            )
        elif action.action_type == ActionType.ALERT:
            await self._enforcer.alert(action, cluster)
        elif action.action_type == ActionType.QUARANTINE:
            await self._enforcer.quarantine(action.target_value, action.expires_at)

    async def _record_history(
        self,
        action: DefenseAction | None,
        cluster: Cluster,
        rule: ActionRule,
        result: DefenseResult,
    ) -> None:
        now = datetime.now(UTC)
        duration = None
        if action is not None and action.expires_at is not None:
            duration = int((action.expires_at - now).total_seconds())

        entry = DefenseHistoryEntry(
            action_id=action.id if action else None,
            cluster_id=cluster.id,
            rule_id=rule.id,
            result=result,
            impact_metrics={
                "threat_count": cluster.threat_count,
                "cluster_score": cluster.score,
                "rule_severity": rule.severity,
                "timestamp": now.isoformat(),
            },
            duration=duration,
        )
        try:
            await self._repository.record_defense_history(entry)
        except Exception:
            logger.exception(
                "defense_history_write_failed", cluster_id=cluster.id, rule_id=rule.id
            )

    async def create_default_rules(self) -> int:
        """Seed the baseline rules that do not exist yet (matched by name)."""
        created = 0
        for definition in DEFAULT_RULES:
            try:
                if await self._repository.get_rule_by_name(definition["name"]):
                    continue
                await self._repository.create_rule(
                    name=definition["name"],
                    condition=json.dumps(definition["condition"]),
                    action_type=definition["action_type"].value,
                    severity=definition["severity"],
                    metadata={"description": definition["description"]},
                )
                created += 1
                logger.info("default_action_rule_created", rule_name=definition["name"])
            except Exception:
                logger.exception("default_action_rule_failed", rule_name=definition["name"])
        return created
