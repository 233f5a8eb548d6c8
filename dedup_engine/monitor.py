"""Metrics and health monitor.

Aggregates duplicates, workflows and batch jobs into a ``DuplicateMetrics``
snapshot on a fixed interval. The snapshot is stored under
``duplicate_detection:metrics`` and may be up to one interval stale.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from dedup_engine import metrics
from dedup_engine.models import (
    BatchDetectionJob,
    BatchJobStatus,
    DuplicateMetrics,
    DuplicateRecord,
    DuplicateStatus,
    ProcessingMetrics,
    ResolutionWorkflow,
    WorkflowStatus,
)
from dedup_engine.store import METRICS_KEY, RecordStore
from dedup_engine.utils.logger import log_debug, log_error, log_info

REVIEWED_STATUSES = {DuplicateStatus.REVIEWED, DuplicateStatus.MERGED, DuplicateStatus.FALSE_POSITIVE}
OPEN_WORKFLOW_STATUSES = {WorkflowStatus.PENDING, WorkflowStatus.IN_PROGRESS}
ACTIVE_JOB_STATUSES = {BatchJobStatus.QUEUED, BatchJobStatus.RUNNING}


def performance_tier(average_detection_ms: float, false_positive_rate: float) -> str:
    if average_detection_ms < 100 and false_positive_rate < 5:
        return "excellent"
    if average_detection_ms < 500 and false_positive_rate < 10:
        return "good"
    if average_detection_ms < 1000 and false_positive_rate < 20:
        return "fair"
    return "poor"


def health_status(average_detection_ms: float, error_rate: float) -> str:
    if average_detection_ms < 500 and error_rate < 10:
        return "healthy"
    if average_detection_ms < 1000 and error_rate < 20:
        return "degraded"
    return "unhealthy"


def _percent(part: int, whole: int) -> float:
    return part / whole * 100 if whole else 0.0


def calculate_metrics(
    duplicates: Iterable[DuplicateRecord],
    workflows: Iterable[ResolutionWorkflow] = (),
    jobs: Iterable[BatchDetectionJob] = (),
    detection_stats: Optional[Dict[str, Any]] = None,
    today: Optional[date] = None,
) -> DuplicateMetrics:
    """Compute a snapshot from the full record sets.

    Rates are percentages. Reviewed duplicates are those a person or a merge
    has settled: reviewed, merged or false positive. False positives are
    deliberately counted as reviewed, otherwise ``(reviewed - false
    positives) / reviewed`` could go negative and the false-positive rate
    could exceed 100. Ignored pairs are left out because ignoring says
    nothing about whether the detection was right.

    Args:
        detection_stats: Today's figures from the detection pipeline
            (``records_processed``, ``average_detection_time``); when absent
            they are derived from the duplicates themselves.
    """
    duplicates = list(duplicates)
    today = today or date.today()
    total = len(duplicates)

    by_status = Counter(d.status.value for d in duplicates)
    reviewed = sum(1 for d in duplicates if d.status in REVIEWED_STATUSES)
    false_positives = by_status.get(DuplicateStatus.FALSE_POSITIVE.value, 0)
    merged = by_status.get(DuplicateStatus.MERGED.value, 0)
    pending = by_status.get(DuplicateStatus.PENDING.value, 0)

    false_positive_rate = _percent(false_positives, reviewed)
    timed = [d.metadata["detection_time_ms"] for d in duplicates if "detection_time_ms" in d.metadata]
    todays = [d for d in duplicates if d.created_at.date() == today]

    stats = detection_stats or {}
    average_detection_time = stats.get("average_detection_time") or (
        sum(timed) / len(timed) if timed else 0.0
    )

    algorithm_usage: Counter = Counter()
    for duplicate in duplicates:
        algorithm_usage.update(f.algorithm for f in duplicate.matched_fields)

    return DuplicateMetrics(
        total_duplicates=total,
        duplicates_by_status=dict(by_status),
        duplicates_by_type=dict(Counter(d.record_type for d in duplicates)),
        duplicates_by_system=dict(Counter(f"{d.source_system}->{d.duplicate_system}" for d in duplicates)),
        average_confidence_score=sum(d.confidence_score for d in duplicates) / total if total else 0.0,
        detection_accuracy=_percent(reviewed - false_positives, reviewed),
        false_positive_rate=false_positive_rate,
        auto_merge_rate=_percent(merged, total),
        manual_review_rate=_percent(pending, total),
        processing_metrics=ProcessingMetrics(
            average_detection_time=average_detection_time,
            records_processed_today=stats.get("records_processed", len(todays)),
            duplicates_found_today=len(todays),
            system_performance=performance_tier(average_detection_time, false_positive_rate),
        ),
        algorithm_usage=dict(algorithm_usage),
        workflows_by_status=dict(Counter(w.status.value for w in workflows)),
        jobs_by_status=dict(Counter(j.status.value for j in jobs)),
    )


@dataclass
class HealthReport:
    status: str
    duplicates: int
    pending_workflows: int
    active_batch_jobs: int
    metrics_status: str
    average_detection_time: float
    error_rate: float
    issues: List[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=datetime.now)

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "duplicates": self.duplicates,
            "pending_workflows": self.pending_workflows,
            "active_batch_jobs": self.active_batch_jobs,
            "metrics_status": self.metrics_status,
            "average_detection_time": round(self.average_detection_time, 3),
            "error_rate": round(self.error_rate, 3),
            "issues": list(self.issues),
            "checked_at": self.checked_at.isoformat(),
        }


class DuplicateMetricsMonitor:
    """Periodic metrics recomputation and health verdicts.

    Args:
        store: ``RecordStore`` where snapshots are written.
        repository: ``DuplicateRepository``.
        workflows: ``WorkflowManager``.
        batch: ``BatchDetectionOrchestrator``.
        pipeline: ``DetectionPipeline`` (today's latency figures).
        config: Engine ``Config``.
    """

    def __init__(self, store: RecordStore, repository, workflows, batch, pipeline, config):
        self.store = store
        self.repository = repository
        self.workflows = workflows
        self.batch = batch
        self.pipeline = pipeline
        self.config = config
        self.latest: Optional[DuplicateMetrics] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> DuplicateMetrics:
        """Recompute, store and publish the snapshot."""
        snapshot = calculate_metrics(
            await self.repository.list(),
            await self.workflows.list(),
            await self.batch.list(),
            detection_stats=self.pipeline.stats_for(date.today()) if self.pipeline else None,
        )
        await self.store.put(METRICS_KEY, snapshot, self.config.metrics_ttl_seconds)
        self.latest = snapshot

        metrics.gauge("duplicates.total", snapshot.total_duplicates)
        metrics.gauge("duplicates.pending", snapshot.duplicates_by_status.get("pending", 0))
        metrics.gauge("detection.false_positive_rate", snapshot.false_positive_rate)
        metrics.gauge("detection.average_time", snapshot.processing_metrics.average_detection_time)
        log_debug(
            "Metrics refreshed",
            total_duplicates=snapshot.total_duplicates,
            performance=snapshot.processing_metrics.system_performance,
        )
        return snapshot

    async def get_metrics(self) -> Optional[DuplicateMetrics]:
        """Latest snapshot, from memory or the store."""
        if self.latest is None:
            self.latest = await self.store.get(METRICS_KEY)
        return self.latest

    async def _loop(self) -> None:
        interval = self.config.metrics_interval_seconds
        while True:
            try:
                await self.refresh()
            except Exception as exc:
                log_error("Metrics refresh failed", error=str(exc))
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="dedup-metrics")
        log_info("Metrics monitor started", interval_seconds=self.config.metrics_interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log_info("Metrics monitor stopped")

    async def health_check(self) -> HealthReport:
        """Verdict from latency, false-positive rate and backlog sizes."""
        snapshot = await self.get_metrics()
        average = snapshot.processing_metrics.average_detection_time if snapshot else 0.0
        error_rate = snapshot.false_positive_rate if snapshot else 0.0

        open_workflows = [w for w in await self.workflows.list() if w.status in OPEN_WORKFLOW_STATUSES]
        active_jobs = [j for j in await self.batch.list() if j.status in ACTIVE_JOB_STATUSES]
        duplicates = await self.repository.list()

        status = health_status(average, error_rate)
        issues: List[str] = []
        if average >= 500:
            issues.append(f"average detection time {average:.0f}ms")
        if error_rate >= 10:
            issues.append(f"false positive rate {error_rate:.1f}%")
        if len(open_workflows) > self.config.health_max_pending_workflows:
            issues.append(f"{len(open_workflows)} pending workflows")
            status = "degraded" if status == "healthy" else status
        if len(active_jobs) > self.config.health_max_active_jobs:
            issues.append(f"{len(active_jobs)} active batch jobs")
            status = "degraded" if status == "healthy" else status

        return HealthReport(
            status=status,
            duplicates=len(duplicates),
            pending_workflows=len(open_workflows),
            active_batch_jobs=len(active_jobs),
            metrics_status="active" if self.running else "inactive",
            average_detection_time=average,
            error_rate=error_rate,
            issues=issues,
        )
