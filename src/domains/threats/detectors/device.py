"""Shared device-fingerprint cluster detection."""

from collections.abc import Sequence

from ..config import ThreatConfig
from ..models import ClusterCandidate, PatternType, ThreatEvent
from ..scoring import clamp_score, proximity_bonus, time_span_ms
from .base import ClusterDetector, group_by


def score_device_group(events: Sequence[ThreatEvent], config: ThreatConfig) -> float:
    cfg = config.device
    score = len(events) * cfg.per_event_weight
    score += proximity_bonus(time_span_ms(events), cfg.proximity_tiers)
    return clamp_score(score)


class DeviceFingerprintClusterDetector(ClusterDetector):
    """Flags device fingerprints reused across several fraud signals.

    Weighted above IP clustering: an IP can be shared behind NAT, a device
    fingerprint rarely is.
    """

    detector_id = "device_fingerprint_cluster"
    pattern_type = PatternType.DEVICE_FINGERPRINT

    def detect(self, events: Sequence[ThreatEvent], config: ThreatConfig) -> list[ClusterCandidate]:
        cfg = config.device
        candidates: list[ClusterCandidate] = []

        for fingerprint, group in group_by(events, lambda e: e.device_fingerprint).items():
            if len(group) < cfg.min_events:
                continue
            score = score_device_group(group, config)
            if score >= cfg.min_score:
                candidates.append(
                    self._candidate(group, score, f"Device Cluster: {fingerprint[:8]}...")
                )

        return candidates
