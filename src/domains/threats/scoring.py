"""Shared scoring and time-window helpers for cluster detectors."""

import hashlib
import re
from collections import Counter
from collections.abc import Iterable, Sequence

from .config import ProximityTiers
from .models import ThreatEvent

MIN_SCORE = 0.0
MAX_SCORE = 10.0

# (score floor, count floor, severity) checked top-down; either floor suffices
_SEVERITY_LADDER: tuple[tuple[float, int, int], ...] = (
    (8.0, 10, 5),
    (6.0, 7, 4),
    (4.0, 5, 3),
    (2.0, 3, 2),
)

_VERSION_RUN = re.compile(r"[\d.]+")
_WHITESPACE_RUN = re.compile(r"\s+")


def clamp_score(score: float) -> float:
    return max(MIN_SCORE, min(score, MAX_SCORE))


def calculate_severity(score: float, threat_count: int) -> int:
    """Map a cluster score and member count to a 1-5 severity."""
    for score_floor, count_floor, severity in _SEVERITY_LADDER:
        if score >= score_floor or threat_count >= count_floor:
            return severity
    return 1


def time_span_ms(events: Sequence[ThreatEvent]) -> int:
    """Milliseconds between the earliest and latest event."""
    if len(events) < 2:
        return 0
    timestamps = [e.timestamp for e in events]
    return int((max(timestamps) - min(timestamps)).total_seconds() * 1000)


def proximity_bonus(span_ms: int, tiers: ProximityTiers) -> float:
    for limit_ms, bonus in tiers:
        if span_ms < limit_ms:
            return bonus
    return 0.0


def normalize_user_agent(user_agent: str) -> str:
    simplified = _VERSION_RUN.sub("X", user_agent)
    simplified = _WHITESPACE_RUN.sub(" ", simplified)
    return simplified.lower()


def user_agent_signature(user_agent: str, length: int = 12) -> str:
    """Short stable signature of a user agent with version numbers stripped."""
    normalized = normalize_user_agent(user_agent)
    return hashlib.md5(normalized.encode("utf-8"), usedforsecurity=False).hexdigest()[:length]


def most_common(values: Iterable[str | None]) -> str | None:
    """Most frequent non-empty value; ties go to the first seen."""
    counts = Counter(v for v in values if v)
    if not counts:
        return None
    return counts.most_common(1)[0][0]
