"""User-agent signature cluster detection."""

from collections.abc import Sequence

from ..config import ThreatConfig
from ..models import ClusterCandidate, PatternType, ThreatEvent
from ..scoring import clamp_score, user_agent_signature
from .base import ClusterDetector, group_by


def has_bot_marker(user_agent: str, config: ThreatConfig) -> bool:
    cfg = config.user_agent
    if cfg.case_insensitive_bot_match:
        lowered = user_agent.lower()
        return any(marker.lower() in lowered for marker in cfg.bot_markers)
    return any(marker in user_agent for marker in cfg.bot_markers)


def score_user_agent_group(events: Sequence[ThreatEvent], config: ThreatConfig) -> float:
    cfg = config.user_agent
    score = len(events) * cfg.per_event_weight

    # Members share a signature, so the first raw agent speaks for the group
    sample = events[0].user_agent or ""
    if has_bot_marker(sample, config):
        score += cfg.bot_marker_bonus
    if len(sample) < cfg.short_agent_length:
        score += cfg.short_agent_bonus

    return clamp_score(score)


class UserAgentClusterDetector(ClusterDetector):
    """Flags user agents (modulo version numbers) shared by many fraud signals.

    Shared agents are common and weak evidence alone, hence the higher
    member minimum and score gate.
    """

    detector_id = "user_agent_cluster"
    pattern_type = PatternType.USER_AGENT

    def detect(self, events: Sequence[ThreatEvent], config: ThreatConfig) -> list[ClusterCandidate]:
        cfg = config.user_agent
        candidates: list[ClusterCandidate] = []

        groups = group_by(
            events,
            lambda e: user_agent_signature(e.user_agent, cfg.signature_length)
            if e.user_agent
            else None,
        )
        for signature, group in groups.items():
            if len(group) < cfg.min_events:
                continue
            score = score_user_agent_group(group, config)
            if score >= cfg.min_score:
                candidates.append(
                    self._candidate(group, score, f"User Agent Pattern: {signature}")
                )

        return candidates
