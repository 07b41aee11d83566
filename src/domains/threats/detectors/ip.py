"""Shared-IP cluster detection."""

from collections.abc import Sequence

from ..config import ThreatConfig
from ..models import ClusterCandidate, PatternType, ThreatEvent
from ..scoring import clamp_score, proximity_bonus, time_span_ms
from .base import ClusterDetector, group_by


def score_ip_group(events: Sequence[ThreatEvent], config: ThreatConfig) -> float:
    cfg = config.ip
    score = len(events) * cfg.per_event_weight
    score += proximity_bonus(time_span_ms(events), cfg.proximity_tiers)

    # A single repeated threat type reads as one actor working one playbook
    if len({e.threat_type for e in events}) == 1:
        score += cfg.homogeneous_type_bonus

    return clamp_score(score)


class IPClusterDetector(ClusterDetector):
    """Flags IP addresses that produced several fraud signals in the batch."""

    detector_id = "ip_cluster"
    pattern_type = PatternType.IP_BASED

    def detect(self, events: Sequence[ThreatEvent], config: ThreatConfig) -> list[ClusterCandidate]:
        cfg = config.ip
        candidates: list[ClusterCandidate] = []

        for ip, group in group_by(events, lambda e: e.ip_address).items():
            if len(group) < cfg.min_events:
                continue
            score = score_ip_group(group, config)
            if score >= cfg.min_score:
                candidates.append(self._candidate(group, score, f"IP Cluster: {ip}"))

        return candidates
