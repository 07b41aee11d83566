"""Abstract base class for threat cluster detectors."""

from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable, Sequence

from ..config import ThreatConfig
from ..models import ClusterCandidate, PatternType, ThreatEvent
from ..scoring import calculate_severity, clamp_score


class ClusterDetector(ABC):
    """Base class for all cluster detectors.

    Detectors are pure functions of an event batch: they never touch storage,
    so they can run over the same immutable batch in any order.
    """

    detector_id: str
    pattern_type: PatternType

    @abstractmethod
    def detect(self, events: Sequence[ThreatEvent], config: ThreatConfig) -> list[ClusterCandidate]:
        """Return zero or more candidates found in the batch."""
        ...

    def _candidate(self, events: list[ThreatEvent], score: float, label: str) -> ClusterCandidate:
        """Convenience: build a candidate with a clamped score and derived severity."""
        score = clamp_score(score)
        return ClusterCandidate(
            events=events,
            score=score,
            pattern_type=self.pattern_type,
            label=label,
            severity=calculate_severity(score, len(events)),
        )


def group_by(
    events: Sequence[ThreatEvent], key: Callable[[ThreatEvent], str | None]
) -> dict[str, list[ThreatEvent]]:
    """Group events by a key, skipping events whose key is empty."""
    groups: dict[str, list[ThreatEvent]] = defaultdict(list)
    for event in events:
        value = key(event)
        if value:
            groups[value].append(event)
    return groups
