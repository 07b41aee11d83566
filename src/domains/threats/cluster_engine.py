"""Threat clustering engine: periodic passes over the fraud log.

Each pass:
1. Fetches fraud events recorded since the last pass (newest first, capped)
2. Runs every detector over the same batch
3. Keeps candidates that clear the significance gate
4. Persists each cluster, hands it to the action rule engine, notifies observers

Passes never overlap. A pass that starts while another runs is dropped, and
the watermark always moves forward, even after a failed pass.
"""

import asyncio
import contextlib
from collections.abc import Sequence
from datetime import UTC, datetime

import structlog

from .action_rules import ActionRuleEngine
from .config import ThreatConfig, default_config
from .detectors import ALL_DETECTORS, ClusterDetector
from .models import (
    AnalysisPassSummary,
    Cluster,
    ClusterCandidate,
    ClusterMetadata,
    ManualAnalysisResult,
    ThreatEvent,
)
from .notifications import NEW_FRAUD_CLUSTER, NotificationSink, safe_emit
from .repository import ThreatRepository
from .scoring import most_common, time_span_ms

logger = structlog.get_logger()

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def next_tick(previous: float, now: float, interval: float) -> tuple[float, int]:
    """Next scheduled start on a fixed grid, and how many ticks were missed.

    Ticks that fell inside the previous pass are dropped rather than queued.
    """
    tick = previous + interval
    if now <= tick:
        return tick, 0
    missed = int((now - tick) // interval) + 1
    return tick + missed * interval, missed


def build_metadata(candidate: ClusterCandidate) -> ClusterMetadata:
    """Summarize a candidate's members; targets are the most frequent values."""
    events = candidate.events
    return ClusterMetadata(
        pattern_type=candidate.pattern_type,
        threat_ids=[e.id for e in events],
        time_span_ms=time_span_ms(events),
        unique_ips=len({e.ip_address for e in events if e.ip_address}),
        unique_devices=len({e.device_fingerprint for e in events if e.device_fingerprint}),
        threat_types=list(dict.fromkeys(e.threat_type for e in events)),
        primary_ip=most_common(e.ip_address for e in events),
        device_fingerprint=most_common(e.device_fingerprint for e in events),
        merchant_id=most_common(e.merchant_id for e in events),
    )


class ThreatClusterEngine:
    """Groups fraud events into scored clusters and triggers automated defense.

    Args:
        repository: Event store and cluster repository.
        rule_engine: Evaluates action rules against every persisted cluster.
        notifier: Receives `new-fraud-cluster` notifications; optional.
        config: Detector thresholds, significance gate and scheduler settings.
        detectors: Detector instances to run; defaults to ALL_DETECTORS.
    """

    def __init__(
        self,
        repository: ThreatRepository,
        rule_engine: ActionRuleEngine,
        notifier: NotificationSink | None = None,
        config: ThreatConfig | None = None,
        detectors: list[ClusterDetector] | None = None,
    ) -> None:
        self._repository = repository
        self._rule_engine = rule_engine
        self._notifier = notifier
        self._config = config or default_config
        self._detectors = detectors if detectors is not None else ALL_DETECTORS

        self.last_analysis_time: datetime = EPOCH
        self.last_pass: AnalysisPassSummary | None = None
        self._analyzing = False
        self._scheduler_task: asyncio.Task | None = None

    @property
    def is_analyzing(self) -> bool:
        return self._analyzing

    @property
    def is_running(self) -> bool:
        return self._scheduler_task is not None and not self._scheduler_task.done()

    def collect_candidates(self, events: Sequence[ThreatEvent]) -> list[ClusterCandidate]:
        """Run every detector over the batch and apply the significance gate."""
        gate = self._config.significance
        candidates: list[ClusterCandidate] = []
        for detector in self._detectors:
            found = detector.detect(events, self._config)
            logger.debug(
                "detector_completed", detector=detector.detector_id, candidates=len(found)
            )
            candidates.extend(found)

        return [
            c
            for c in candidates
            if c.score >= gate.min_score and c.threat_count >= gate.min_events
        ]

    async def analyze_threats(self) -> AnalysisPassSummary | None:
        """Run one analysis pass. Returns None when a pass is already running."""
        if self._analyzing:
            logger.info("threat_analysis_already_running")
            return None

        self._analyzing = True
        summary = AnalysisPassSummary(started_at=datetime.now(UTC))
        try:
            events = await self._repository.fetch_events_since(
                self.last_analysis_time, limit=self._config.scheduler.fetch_limit
            )
            summary.threats_analyzed = len(events)
            if not events:
                logger.debug("threat_analysis_no_new_events", since=self.last_analysis_time)
                return summary

            logger.info("threat_analysis_started", threats=len(events))
            candidates = self.collect_candidates(events)
            summary.candidates_found = len(candidates)

            for candidate in candidates:
                cluster = await self._persist_cluster(candidate)
                if cluster is None:
                    continue
                summary.clusters_created += 1
                await self._rule_engine.evaluate_cluster(cluster)
                await self._notify_new_cluster(cluster)

            logger.info(
                "threat_analysis_completed",
                threats=summary.threats_analyzed,
                candidates=summary.candidates_found,
                clusters_created=summary.clusters_created,
            )
        except Exception:
            summary.failed = True
            logger.exception("threat_analysis_failed")
            logger.warning(
                "threat_analysis_window_skipped",
                since=self.last_analysis_time,
            )
        finally:
            summary.finished_at = datetime.now(UTC)
            self.last_analysis_time = summary.finished_at
            self.last_pass = summary
            self._analyzing = False

        return summary

    async def _persist_cluster(self, candidate: ClusterCandidate) -> Cluster | None:
        try:
            cluster = await self._repository.create_cluster(candidate, build_metadata(candidate))
        except Exception:
            logger.exception(
                "cluster_persist_failed",
                label=candidate.label,
                pattern_type=candidate.pattern_type.value,
            )
            return None

        logger.info(
            "cluster_created",
            cluster_id=cluster.id,
            label=cluster.label,
            score=cluster.score,
            severity=cluster.severity,
            threat_count=cluster.threat_count,
        )
        return cluster

    async def _notify_new_cluster(self, cluster: Cluster) -> None:
        await safe_emit(
            self._notifier,
            NEW_FRAUD_CLUSTER,
            {
                "clusterId": cluster.id,
                "title": cluster.label,
                "severity": cluster.severity,
                "score": cluster.score,
                "matchedThreatCount": cluster.threat_count,
                "timestamp": cluster.created_at.isoformat(),
                "patternType": cluster.pattern_type.value,
            },
        )

    async def trigger_manual_analysis(self) -> ManualAnalysisResult:
        """Run one pass on demand and report what it found."""
        started = datetime.now(UTC)
        try:
            pending = await self._repository.fetch_events_since(
                self.last_analysis_time, limit=self._config.scheduler.fetch_limit
            )
            await self.analyze_threats()
            created = await self._repository.count_clusters_since(started)
        except Exception:
            logger.exception("manual_analysis_failed")
            return ManualAnalysisResult()

        logger.info("manual_analysis_completed", clusters_found=created, threats=len(pending))
        return ManualAnalysisResult(clusters_found=created, threats_analyzed=len(pending))

    # --- Scheduling ---

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self._config.scheduler.interval_seconds
        tick = loop.time()
        while True:
            await self.analyze_threats()
            tick, missed = next_tick(tick, loop.time(), interval)
            if missed:
                logger.warning("threat_analysis_ticks_dropped", missed=missed)
            await asyncio.sleep(max(0.0, tick - loop.time()))

    def start(self) -> None:
        """Run a pass now, then on a fixed `interval_seconds` grid.

        Ticks that land while a pass is still running are dropped.
        """
        if self.is_running:
            return
        self._scheduler_task = asyncio.create_task(self._run_loop())
        logger.info(
            "threat_cluster_engine_started",
            interval_seconds=self._config.scheduler.interval_seconds,
        )

    async def stop(self) -> None:
        if self._scheduler_task is None:
            return
        self._scheduler_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._scheduler_task
        self._scheduler_task = None
        logger.info("threat_cluster_engine_stopped")

    def status(self) -> dict:
        return {
            "is_running": self.is_running,
            "is_analyzing": self._analyzing,
            "last_analysis_time": self.last_analysis_time,
            "last_pass": self.last_pass.model_dump(mode="json") if self.last_pass else None,
        }
