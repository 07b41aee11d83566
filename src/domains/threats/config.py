"""Threat clustering and defense configuration with sensible defaults."""

import os
from dataclasses import dataclass, field

# (upper bound in milliseconds, bonus) pairs, checked in order
ProximityTiers = tuple[tuple[int, float], ...]

_SECOND_MS = 1000
_MINUTE_MS = 60 * _SECOND_MS
_HOUR_MS = 60 * _MINUTE_MS


@dataclass
class IPClusterThresholds:
    min_events: int = 2
    per_event_weight: float = 1.5
    proximity_tiers: ProximityTiers = (
        (_MINUTE_MS, 3.0),
        (5 * _MINUTE_MS, 2.0),
        (_HOUR_MS, 1.0),
    )
    homogeneous_type_bonus: float = 1.5
    min_score: float = 3.0


@dataclass
class DeviceClusterThresholds:
    min_events: int = 2
    per_event_weight: float = 2.0
    proximity_tiers: ProximityTiers = (
        (30 * _SECOND_MS, 4.0),
        (2 * _MINUTE_MS, 2.5),
        (10 * _MINUTE_MS, 1.0),
    )
    min_score: float = 3.0


@dataclass
class VelocityThresholds:
    window_minutes: int = 5
    min_events: int = 3
    rate_weight: float = 2.0
    extreme_rate: float = 5.0  # events per minute
    extreme_rate_bonus: float = 3.0
    high_rate: float = 2.0
    high_rate_bonus: float = 1.5
    min_score: float = 4.0


@dataclass
class UserAgentThresholds:
    min_events: int = 3
    per_event_weight: float = 1.0
    bot_marker_bonus: float = 2.0
    bot_markers: tuple[str, ...] = ("bot", "crawler")
    # Marker match has always been case-sensitive; flip to widen detection
    case_insensitive_bot_match: bool = False
    short_agent_length: int = 20
    short_agent_bonus: float = 1.5
    signature_length: int = 12
    min_score: float = 3.5


@dataclass
class SignificanceGate:
    min_score: float = 3.0
    min_events: int = 2


@dataclass
class SchedulerSettings:
    interval_seconds: float = 300
    fetch_limit: int = 1000


@dataclass
class ExpiryPolicy:
    block_ip_hours_per_severity: int = 4
    block_ip_max_hours: int = 24
    block_device_days_per_severity: int = 1
    block_device_max_days: int = 7
    rate_limit_minutes_per_severity: int = 30
    rate_limit_max_minutes: int = 240


@dataclass
class NotificationSettings:
    kafka_topic: str = "threats.defense.events"


@dataclass
class ReplaySettings:
    default_limit: int = 50
    max_limit: int = 200
    ip_block_fraud_rate: float = 0.6
    ip_block_min_missed: int = 3
    device_block_fraud_rate: float = 0.7
    device_block_min_fraudulent: int = 4
    merchant_block_fraud_rate: float = 0.8
    merchant_block_min_fraudulent: int = 6
    learned_action_severity: int = 3


@dataclass
class ThreatConfig:
    ip: IPClusterThresholds = field(default_factory=IPClusterThresholds)
    device: DeviceClusterThresholds = field(default_factory=DeviceClusterThresholds)
    velocity: VelocityThresholds = field(default_factory=VelocityThresholds)
    user_agent: UserAgentThresholds = field(default_factory=UserAgentThresholds)
    significance: SignificanceGate = field(default_factory=SignificanceGate)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    expiry: ExpiryPolicy = field(default_factory=ExpiryPolicy)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    replay: ReplaySettings = field(default_factory=ReplaySettings)

    @classmethod
    def from_env(cls) -> "ThreatConfig":
        """Load config with env var overrides. Env vars use THREAT_ prefix."""
        config = cls()

        # Scheduler overrides
        if v := os.getenv("THREAT_ANALYSIS_INTERVAL_SECONDS"):
            config.scheduler.interval_seconds = float(v)
        if v := os.getenv("THREAT_FETCH_LIMIT"):
            config.scheduler.fetch_limit = int(v)

        # Significance overrides
        if v := os.getenv("THREAT_MIN_CLUSTER_SCORE"):
            config.significance.min_score = float(v)
        if v := os.getenv("THREAT_MIN_CLUSTER_EVENTS"):
            config.significance.min_events = int(v)

        # Detector overrides
        if v := os.getenv("THREAT_UA_CASE_INSENSITIVE_BOT_MATCH"):
            config.user_agent.case_insensitive_bot_match = v.lower() in ("1", "true", "yes")

        if v := os.getenv("THREAT_NOTIFICATION_TOPIC"):
            config.notifications.kafka_topic = v

        return config


# Module-level default instance
default_config = ThreatConfig()
