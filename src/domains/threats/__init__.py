"""Threat clustering and automated defense domain."""

from .action_rules import ActionRuleEngine, calculate_expiry, resolve_target
from .cluster_engine import ThreatClusterEngine
from .config import ThreatConfig, default_config
from .detectors import ALL_DETECTORS
from .enforcement import DefenseEnforcer, RedisDefenseEnforcer
from .models import (
    ActionRule,
    ActionType,
    Cluster,
    ClusterCandidate,
    DefenseAction,
    ManualAnalysisResult,
    PatternType,
    ThreatEvent,
)
from .notifications import KafkaNotificationSink, LoggingNotificationSink, NotificationSink
from .replay import DefenseLearner, ThreatReplayService
from .repository import ThreatRepository

__all__ = [
    "ALL_DETECTORS",
    "ActionRule",
    "ActionRuleEngine",
    "ActionType",
    "Cluster",
    "ClusterCandidate",
    "DefenseAction",
    "DefenseEnforcer",
    "DefenseLearner",
    "KafkaNotificationSink",
    "LoggingNotificationSink",
    "ManualAnalysisResult",
    "NotificationSink",
    "PatternType",
    "RedisDefenseEnforcer",
    "ThreatClusterEngine",
    "ThreatConfig",
    "ThreatEvent",
    "ThreatReplayService",
    "ThreatRepository",
    "calculate_expiry",
    "default_config",
    "resolve_target",
]
