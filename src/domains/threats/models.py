"""Pydantic models for the threat clustering and defense domain."""

import json
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class PatternType(StrEnum):
    IP_BASED = "ip_based"
    DEVICE_FINGERPRINT = "device_fingerprint"
    VELOCITY = "velocity"
    USER_AGENT = "user_agent"


class ActionType(StrEnum):
    BLOCK_IP = "block_ip"
    BLOCK_DEVICE = "block_device"
    RATE_LIMIT = "rate_limit"
    ALERT = "alert"
    QUARANTINE = "quarantine"


class ConditionField(StrEnum):
    SEVERITY = "severity"
    SCORE = "score"
    THREAT_COUNT = "threatCount"
    PATTERN_TYPE = "patternType"


class ConditionOperator(StrEnum):
    GTE = "gte"
    GT = "gt"
    EQ = "eq"
    CONTAINS = "contains"


class DefenseResult(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


class LearningOutcome(StrEnum):
    BLOCKED_CORRECTLY = "blocked_correctly"
    SHOULD_HAVE_BLOCKED = "should_have_blocked"
    FALSE_POSITIVE = "false_positive"
    IGNORED = "ignored"


class RuleConditionError(ValueError):
    """Raised when an action rule's stored condition cannot be used."""


# --- Analysis input ---


class ThreatEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    ip_address: str | None = None
    user_agent: str | None = None
    device_fingerprint: str | None = None
    merchant_id: str | None = None
    timestamp: datetime
    threat_type: str = "unknown"
    reason: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class ClusterCandidate(BaseModel):
    events: list[ThreatEvent]
    score: float = Field(ge=0.0, le=10.0)
    pattern_type: PatternType
    label: str
    severity: int = Field(ge=1, le=5)

    @property
    def threat_count(self) -> int:
        return len(self.events)


# --- Persisted records ---


class ClusterMetadata(BaseModel):
    pattern_type: PatternType
    threat_ids: list[str] = Field(default_factory=list)
    time_span_ms: int = 0
    unique_ips: int = 0
    unique_devices: int = 0
    threat_types: list[str] = Field(default_factory=list)
    primary_ip: str | None = None
    device_fingerprint: str | None = None
    merchant_id: str | None = None


class Cluster(BaseModel):
    id: str
    label: str
    score: str
    severity: int = Field(ge=1, le=5)
    threat_count: int
    pattern_type: PatternType
    metadata: ClusterMetadata
    created_at: datetime

    @property
    def score_value(self) -> float:
        return float(self.score)


class ClusterPatternRecord(BaseModel):
    cluster_id: str
    fraud_log_id: str
    ip_address: str | None = None
    user_agent: str | None = None
    device_fingerprint: str | None = None
    timestamp: datetime
    similarity: float = 95.0


class RuleCondition(BaseModel):
    field: ConditionField
    operator: ConditionOperator
    value: str | int | float | bool

    @classmethod
    def from_stored(cls, raw: str | dict[str, Any]) -> "RuleCondition":
        """Parse a stored condition (JSON text or dict).

        Raises RuleConditionError for bad JSON, unknown fields or unknown operators.
        """
        try:
            data = json.loads(raw) if isinstance(raw, str) else raw
        except json.JSONDecodeError as exc:
            raise RuleConditionError(f"condition is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise RuleConditionError("condition must be an object")
        try:
            return cls.model_validate(data, strict=False)
        except ValidationError as exc:
            raise RuleConditionError(str(exc)) from exc


class ActionRule(BaseModel):
    id: str
    name: str
    condition: str
    action_type: str
    severity: int = Field(ge=1, le=5)
    is_active: bool = True
    trigger_count: int = 0
    last_triggered: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class DefenseAction(BaseModel):
    id: str | None = None
    name: str
    action_type: ActionType
    triggered_by: str
    target_value: str
    severity: int
    is_active: bool = True
    expires_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class DefenseHistoryEntry(BaseModel):
    action_id: str | None
    cluster_id: str
    rule_id: str
    result: DefenseResult
    impact_metrics: dict[str, Any] = Field(default_factory=dict)
    duration: int | None = None


# --- Outputs ---


class ManualAnalysisResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    clusters_found: int = Field(0, serialization_alias="clustersFound")
    threats_analyzed: int = Field(0, serialization_alias="threatsAnalyzed")


class AnalysisPassSummary(BaseModel):
    started_at: datetime
    finished_at: datetime | None = None
    threats_analyzed: int = 0
    candidates_found: int = 0
    clusters_created: int = 0
    failed: bool = False


# --- Replay and learning ---


class SuggestedBlock(BaseModel):
    action_type: ActionType
    target_value: str
    reason: str
    confidence: int = Field(ge=0, le=100)


class ReplayReport(BaseModel):
    fraud_log_id: str
    ip_address: str | None = None
    user_agent: str | None = None
    device_fingerprint: str | None = None
    merchant_id: str | None = None
    reason: str = ""
    timestamp: datetime
    blocked: bool = False
    block_reason: str | None = None
    http_status: int = 200
    suggested_block: SuggestedBlock | None = None
    learning_outcome: LearningOutcome = LearningOutcome.IGNORED

    @property
    def would_create_rule(self) -> bool:
        return self.suggested_block is not None


class ReplaySummary(BaseModel):
    total_analyzed: int = 0
    blocked_correctly: int = 0
    should_have_blocked: int = 0
    false_positives: int = 0
    ignored: int = 0
    new_rules_suggested: int = 0
    reports: list[ReplayReport] = Field(default_factory=list)


class LearningResult(BaseModel):
    rules_created: int = 0
    rules_updated: int = 0
    rules_deactivated: int = 0
    learning_effectiveness: int = Field(0, ge=0, le=100)
    recommendations: list[str] = Field(default_factory=list)
