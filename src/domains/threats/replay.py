"""Threat replay: re-run recent fraud events against the current defenses.

Replay is a simulation. Nothing is redeemed or blocked while replaying; each
event is checked against the active, unexpired defense actions and
classified by whether the defenses got it right. `DefenseLearner` then turns
repeated misses into new `replay:` defense actions.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog

from .action_rules import calculate_expiry
from .config import ThreatConfig, default_config
from .enforcement import DefenseEnforcer
from .models import (
    ActionType,
    DefenseAction,
    LearningOutcome,
    LearningResult,
    ReplayReport,
    ReplaySummary,
    SuggestedBlock,
    ThreatEvent,
)
from .repository import ThreatRepository

logger = structlog.get_logger()

BLOCKED_STATUS = 429
ALLOWED_STATUS = 200

# (reason keywords, action, confidence, explanation) checked in order;
# explanations are formatted with the target value
_SUGGESTIONS: tuple[tuple[tuple[str, ...], ActionType, int, str], ...] = (
    (
        ("multiple_attempts", "rate_limit"),
        ActionType.BLOCK_IP,
        85,
        "IP {} detected in multiple fraud attempts",
    ),
    (
        ("device_fingerprint",),
        ActionType.BLOCK_DEVICE,
        75,
        "Device fingerprint involved in fraudulent activity",
    ),
    (
        ("merchant_abuse",),
        ActionType.QUARANTINE,
        70,
        "Merchant {} experiencing unusual fraud patterns",
    ),
    (
        ("reused_gan", "already_redeemed"),
        ActionType.BLOCK_IP,
        90,
        "IP attempting to reuse already redeemed gift cards",
    ),
)


def classify_outcome(blocked: bool, reason: str) -> LearningOutcome:
    if blocked and "suspicious" in reason:
        return LearningOutcome.BLOCKED_CORRECTLY
    if not blocked and "attack" in reason:
        return LearningOutcome.SHOULD_HAVE_BLOCKED
    if blocked and "legitimate" in reason:
        return LearningOutcome.FALSE_POSITIVE
    return LearningOutcome.IGNORED


def suggest_block(event: ThreatEvent) -> SuggestedBlock | None:
    """Suggested defense for a single event, judged from its reason text."""
    targets = {
        ActionType.BLOCK_IP: event.ip_address,
        ActionType.BLOCK_DEVICE: event.device_fingerprint,
        ActionType.QUARANTINE: event.merchant_id,
    }
    for keywords, action_type, confidence, explanation in _SUGGESTIONS:
        target = targets[action_type]
        if not target or not any(k in event.reason for k in keywords):
            continue
        return SuggestedBlock(
            action_type=action_type,
            target_value=target,
            reason=explanation.format(target),
            confidence=confidence,
        )
    return None


class ActiveDefenses:
    """Lookup of active defense actions by what they block."""

    def __init__(self, actions: list[DefenseAction]) -> None:
        self._ips: dict[str, DefenseAction] = {}
        self._devices: dict[str, DefenseAction] = {}
        self._merchants: dict[str, DefenseAction] = {}
        for action in actions:
            if action.action_type in (ActionType.BLOCK_IP, ActionType.RATE_LIMIT):
                self._ips.setdefault(action.target_value, action)
            elif action.action_type == ActionType.BLOCK_DEVICE:
                self._devices.setdefault(action.target_value, action)
            elif action.action_type == ActionType.QUARANTINE:
                self._merchants.setdefault(action.target_value, action)

    def match(self, event: ThreatEvent) -> str | None:
        """Block reason for the first defense that covers the event, if any."""
        if event.ip_address and (action := self._ips.get(event.ip_address)):
            return f"Blocked by IP rule: {action.name}"
        if event.device_fingerprint and (action := self._devices.get(event.device_fingerprint)):
            return f"Blocked by device fingerprint rule: {action.name}"
        if event.merchant_id and (action := self._merchants.get(event.merchant_id)):
            return f"Blocked by merchant rule: {action.name}"
        if action := self._merchants.get("global"):
            return f"Blocked by merchant rule: {action.name}"
        return None


def simulate(event: ThreatEvent, defenses: ActiveDefenses) -> ReplayReport:
    block_reason = defenses.match(event)
    blocked = block_reason is not None
    return ReplayReport(
        fraud_log_id=event.id,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        device_fingerprint=event.device_fingerprint,
        merchant_id=event.merchant_id,
        reason=event.reason,
        timestamp=event.timestamp,
        blocked=blocked,
        block_reason=block_reason,
        http_status=BLOCKED_STATUS if blocked else ALLOWED_STATUS,
        suggested_block=suggest_block(event),
        learning_outcome=classify_outcome(blocked, event.reason),
    )


@dataclass
class _Tally:
    attempts: int = 0
    missed: int = 0
    ips: set[str] = field(default_factory=set)

    @property
    def miss_rate(self) -> float:
        return self.missed / self.attempts if self.attempts else 0.0


@dataclass
class LearnedBlock:
    action_type: ActionType
    target_value: str
    reason: str
    confidence: int


def _tally(reports: list[ReplayReport], key: str) -> dict[str, _Tally]:
    tallies: dict[str, _Tally] = defaultdict(_Tally)
    for report in reports:
        value = getattr(report, key)
        if not value:
            continue
        tally = tallies[value]
        tally.attempts += 1
        if report.learning_outcome == LearningOutcome.SHOULD_HAVE_BLOCKED:
            tally.missed += 1
        if report.ip_address:
            tally.ips.add(report.ip_address)
    return tallies


class DefenseLearner:
    """Creates defense actions for targets the replay shows were repeatedly missed."""

    def __init__(
        self,
        repository: ThreatRepository,
        enforcer: DefenseEnforcer | None = None,
        config: ThreatConfig | None = None,
    ) -> None:
        self._repository = repository
        self._enforcer = enforcer
        self._config = config or default_config

    def find_blocks(self, reports: list[ReplayReport]) -> list[LearnedBlock]:
        cfg = self._config.replay
        blocks: list[LearnedBlock] = []

        for ip, t in _tally(reports, "ip_address").items():
            rate = t.miss_rate
            if rate > cfg.ip_block_fraud_rate or t.missed >= cfg.ip_block_min_missed:
                blocks.append(
                    LearnedBlock(
                        ActionType.BLOCK_IP,
                        ip,
                        f"IP {ip} involved in {t.missed}/{t.attempts} fraudulent attempts "
                        f"({round(rate * 100)}% fraud rate)",
                        round(min(95, 50 + rate * 45)),
                    )
                )

        for fingerprint, t in _tally(reports, "device_fingerprint").items():
            rate = t.miss_rate
            if rate > cfg.device_block_fraud_rate or t.missed >= cfg.device_block_min_fraudulent:
                blocks.append(
                    LearnedBlock(
                        ActionType.BLOCK_DEVICE,
                        fingerprint,
                        f"Device fingerprint involved in {t.missed}/{t.attempts} "
                        "fraudulent attempts",
                        round(min(90, 40 + rate * 50)),
                    )
                )

        for merchant_id, t in _tally(reports, "merchant_id").items():
            rate = t.miss_rate
            if (
                rate > cfg.merchant_block_fraud_rate
                and t.missed >= cfg.merchant_block_min_fraudulent
            ):
                blocks.append(
                    LearnedBlock(
                        ActionType.QUARANTINE,
                        merchant_id,
                        f"Merchant {merchant_id} experiencing high fraud rate: "
                        f"{t.missed}/{t.attempts} attempts from {len(t.ips)} IPs",
                        round(min(85, 30 + rate * 55)),
                    )
                )

        return blocks

    async def learn(self, reports: list[ReplayReport]) -> LearningResult:
        logger.info("defense_learning_started", reports=len(reports))
        result = LearningResult()
        now = datetime.now(UTC)
        severity = self._config.replay.learned_action_severity

        for block in self.find_blocks(reports):
            existing = await self._repository.find_active_defense_action(
                [block.action_type], block.target_value, now
            )
            if existing is not None:
                result.rules_updated += 1
                continue

            action = await self._repository.create_defense_action(
                DefenseAction(
                    name=f"Learned: {block.action_type.value} {block.target_value}",
                    action_type=block.action_type,
                    triggered_by="replay:learning",
                    target_value=block.target_value,
                    severity=severity,
                    expires_at=calculate_expiry(
                        block.action_type, severity, now, self._config.expiry
                    ),
                    metadata={"reason": block.reason, "confidence": block.confidence},
                    created_at=now,
                )
            )
            if self._enforcer is not None:
                await self._apply(action)
            result.rules_created += 1
            logger.info(
                "learned_defense_action_created",
                action_id=action.id,
                action_type=block.action_type.value,
                target_value=block.target_value,
                confidence=block.confidence,
            )

        result.recommendations = recommendations(reports, result.rules_created)
        result.learning_effectiveness = learning_effectiveness(reports, result.rules_created)
        logger.info(
            "defense_learning_completed",
            rules_created=result.rules_created,
            rules_updated=result.rules_updated,
            effectiveness=result.learning_effectiveness,
        )
        return result

    async def _apply(self, action: DefenseAction) -> None:
        if action.action_type == ActionType.BLOCK_IP:
            await self._enforcer.block_ip(action.target_value, action.expires_at)
        elif action.action_type == ActionType.BLOCK_DEVICE:
            await self._enforcer.block_device(action.target_value, action.expires_at)
        elif action.action_type == ActionType.QUARANTINE:
            await self._enforcer.quarantine(action.target_value, action.expires_at)


def _outcome_counts(reports: list[ReplayReport]) -> Counter:
    return Counter(r.learning_outcome for r in reports)


def recommendations(reports: list[ReplayReport], rules_created: int) -> list[str]:
    counts = _outcome_counts(reports)
    missed = counts[LearningOutcome.SHOULD_HAVE_BLOCKED]
    false_positives = counts[LearningOutcome.FALSE_POSITIVE]
    total = len(reports)
    advice: list[str] = []

    if missed > total * 0.3:
        advice.append(
            f"High miss rate detected: {missed}/{total} threats should have been blocked. "
            "Consider tightening security rules."
        )
    if false_positives > total * 0.1:
        advice.append(
            f"High false positive rate: {false_positives}/{total} legitimate requests blocked. "
            "Review rule precision."
        )
    if rules_created == 0 and missed > 0:
        advice.append(
            "No new rules created despite missed threats. "
            "Consider lowering confidence thresholds for rule creation."
        )
    if rules_created > 0:
        advice.append(
            f"Successfully created {rules_created} new defense rules "
            "to improve threat detection."
        )
    return advice


def learning_effectiveness(reports: list[ReplayReport], rules_created: int) -> int:
    """0-100: detection rate weighted 80, minus up to 30 for false positives."""
    total = len(reports)
    if total == 0:
        return 0

    counts = _outcome_counts(reports)
    caught = counts[LearningOutcome.BLOCKED_CORRECTLY]
    missed = counts[LearningOutcome.SHOULD_HAVE_BLOCKED]
    # No caught-or-missed threats means there was nothing to detect
    detection_rate = caught / (caught + missed) if caught + missed else 0.0
    false_positive_rate = counts[LearningOutcome.FALSE_POSITIVE] / total
    bonus = 10 if rules_created > 0 and missed > 0 else 0

    score = detection_rate * 80 - false_positive_rate * 30 + bonus
    return round(max(0, min(100, score)))


class ThreatReplayService:
    def __init__(
        self,
        repository: ThreatRepository,
        learner: DefenseLearner,
        config: ThreatConfig | None = None,
    ) -> None:
        self._repository = repository
        self._learner = learner
        self._config = config or default_config

    async def run_replay(self, limit: int | None = None) -> ReplaySummary:
        """Replay the `limit` most recent fraud events against active defenses.

        Raises ValueError if limit is outside 1..max_limit.
        """
        cfg = self._config.replay
        limit = cfg.default_limit if limit is None else limit
        if not 1 <= limit <= cfg.max_limit:
            raise ValueError(f"limit must be between 1 and {cfg.max_limit}")

        logger.info("threat_replay_started", limit=limit)
        events = await self._repository.fetch_recent_events(limit)
        defenses = ActiveDefenses(await self._repository.list_active_defense_actions())

        summary = ReplaySummary(total_analyzed=len(events))
        for event in events:
            report = simulate(event, defenses)
            summary.reports.append(report)
            if report.learning_outcome == LearningOutcome.BLOCKED_CORRECTLY:
                summary.blocked_correctly += 1
            elif report.learning_outcome == LearningOutcome.SHOULD_HAVE_BLOCKED:
                summary.should_have_blocked += 1
            elif report.learning_outcome == LearningOutcome.FALSE_POSITIVE:
                summary.false_positives += 1
            else:
                summary.ignored += 1
            if report.would_create_rule:
                summary.new_rules_suggested += 1

        logger.info(
            "threat_replay_completed",
            analyzed=summary.total_analyzed,
            rules_suggested=summary.new_rules_suggested,
        )
        return summary

    async def replay_and_learn(self, limit: int | None = None) -> tuple[ReplaySummary, LearningResult]:
        summary = await self.run_replay(limit)
        learning = await self._learner.learn(summary.reports)
        return summary, learning

    async def defense_statistics(self) -> dict:
        """Action and rule counts for the operator report."""
        now = datetime.now(UTC)
        stats = await self._repository.defense_stats(now)
        actions = await self._repository.list_active_defense_actions(now)
        rules = await self._repository.list_rules()

        active_rules = [r for r in rules if r.is_active]
        day_ago = now - timedelta(hours=24)
        recently_triggered = sum(
            1 for r in active_rules if r.last_triggered and r.last_triggered > day_ago
        )
        by_type = Counter(a.action_type.value for a in actions)

        return {
            **stats,
            "total_rules": len(rules),
            "actions_by_type": dict(by_type),
            "recently_triggered_rules": recently_triggered,
            "average_rule_severity": (
                round(sum(r.severity for r in active_rules) / len(active_rules), 2)
                if active_rules
                else 0.0
            ),
        }
