"""Burst (velocity) cluster detection over forward-looking time windows."""

from collections.abc import Sequence
from datetime import timedelta

from ..config import ThreatConfig
from ..models import ClusterCandidate, PatternType, ThreatEvent
from ..scoring import clamp_score
from .base import ClusterDetector


def score_velocity_window(event_count: int, config: ThreatConfig) -> float:
    cfg = config.velocity
    rate = event_count / cfg.window_minutes  # events per minute
    score = rate * cfg.rate_weight

    if rate >= cfg.extreme_rate:
        score += cfg.extreme_rate_bonus
    elif rate >= cfg.high_rate:
        score += cfg.high_rate_bonus

    return clamp_score(score)


class VelocityClusterDetector(ClusterDetector):
    """Flags bursts of fraud signals regardless of source.

    Every event anchors its own window, so overlapping windows yield
    overlapping candidates. Windows are not merged or deduplicated.
    """

    detector_id = "velocity_cluster"
    pattern_type = PatternType.VELOCITY

    def detect(self, events: Sequence[ThreatEvent], config: ThreatConfig) -> list[ClusterCandidate]:
        cfg = config.velocity
        window = timedelta(minutes=cfg.window_minutes)
        ordered = sorted(events, key=lambda e: e.timestamp)
        candidates: list[ClusterCandidate] = []

        for i, anchor in enumerate(ordered):
            group = [anchor]
            for event in ordered[i + 1 :]:
                if event.timestamp - anchor.timestamp > window:
                    break
                group.append(event)

            if len(group) < cfg.min_events:
                continue

            score = score_velocity_window(len(group), config)
            if score >= cfg.min_score:
                label = f"Velocity Attack: {len(group)} threats in {cfg.window_minutes}min"
                candidates.append(self._candidate(group, score, label))

        return candidates
