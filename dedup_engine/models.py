"""Records the engine creates and transitions.

Matching rules and merge strategies are configuration and live in
``dedup_engine.matching.rules`` / ``dedup_engine.dedup.strategies`` as
pydantic models; everything here is runtime state persisted to the store.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


def generate_id(prefix: str) -> str:
    """Short, log-safe identifier such as ``dup_3f9a1c0b22de``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class DuplicateStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    MERGED = "merged"
    IGNORED = "ignored"
    FALSE_POSITIVE = "false_positive"


# Manual review transitions; ``merged`` is only reachable through a merge.
REVIEW_TRANSITIONS = {
    DuplicateStatus.PENDING: {
        DuplicateStatus.REVIEWED,
        DuplicateStatus.IGNORED,
        DuplicateStatus.FALSE_POSITIVE,
    },
    DuplicateStatus.REVIEWED: {DuplicateStatus.IGNORED, DuplicateStatus.FALSE_POSITIVE},
}


class DetectionMethod(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    PHONETIC = "phonetic"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


@dataclass
class MatchedField:
    """One field that contributed to a duplicate's confidence score."""

    field_name: str
    source_value: Any
    duplicate_value: Any
    similarity: float
    algorithm: str
    weight: float
    is_exact_match: bool


@dataclass
class DuplicateRecord:
    """A detected (source, candidate) pair and its review lifecycle.

    Never deleted, only status-transitioned. ``source_record`` and
    ``candidate_record`` are snapshots taken at detection time so a later
    merge can run without re-fetching from the CRM.
    """

    id: str
    source_record_id: str
    duplicate_record_id: str
    record_type: str
    source_system: str
    duplicate_system: str
    confidence_score: float
    matched_fields: List[MatchedField] = field(default_factory=list)
    detection_method: DetectionMethod = DetectionMethod.HYBRID
    status: DuplicateStatus = DuplicateStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    merge_strategy: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    source_record: Dict[str, Any] = field(default_factory=dict)
    candidate_record: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def touch(self) -> None:
        self.updated_at = datetime.now()

    def append_audit(self, action: str, **details: Any) -> None:
        self.metadata.setdefault("audit_trail", []).append(
            {"action": action, "at": datetime.now().isoformat(), **details}
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DuplicateFilters:
    """Query filters for listing duplicates."""

    record_type: Optional[str] = None
    source_system: Optional[str] = None
    status: Optional[DuplicateStatus] = None
    confidence_min: Optional[float] = None
    confidence_max: Optional[float] = None
    detection_method: Optional[DetectionMethod] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    requires_review: bool = False

    def matches(self, duplicate: DuplicateRecord) -> bool:
        if self.record_type and duplicate.record_type != self.record_type:
            return False
        if self.source_system and duplicate.source_system != self.source_system:
            return False
        if self.status and duplicate.status != self.status:
            return False
        if self.confidence_min is not None and duplicate.confidence_score < self.confidence_min:
            return False
        if self.confidence_max is not None and duplicate.confidence_score > self.confidence_max:
            return False
        if self.detection_method and duplicate.detection_method != self.detection_method:
            return False
        if self.created_after and duplicate.created_at < self.created_after:
            return False
        if self.created_before and duplicate.created_at > self.created_before:
            return False
        if self.reviewed_by and duplicate.reviewed_by != self.reviewed_by:
            return False
        if self.requires_review and duplicate.status != DuplicateStatus.PENDING:
            return False
        return True


# ---------------------------------------------------------------------------
# Resolution workflows
# ---------------------------------------------------------------------------


class WorkflowType(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    HYBRID = "hybrid"


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_WORKFLOW_STATUSES = {
    WorkflowStatus.COMPLETED,
    WorkflowStatus.FAILED,
    WorkflowStatus.CANCELLED,
}


class StepType(str, Enum):
    VALIDATION = "validation"
    APPROVAL = "approval"
    MERGE = "merge"
    NOTIFICATION = "notification"
    CUSTOM = "custom"


class StepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@dataclass
class WorkflowStep:
    id: str
    step_number: int
    type: StepType
    description: str
    status: StepStatus = StepStatus.PENDING
    assigned_to: Optional[str] = None
    completed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    result: Any = None
    notes: Optional[str] = None


@dataclass
class ResolutionWorkflow:
    id: str
    duplicate_id: str
    workflow_type: WorkflowType
    steps: List[WorkflowStep]
    current_step: int = 0
    status: WorkflowStatus = WorkflowStatus.PENDING
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: Priority = Priority.MEDIUM
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    @property
    def active_step(self) -> Optional[WorkflowStep]:
        if 0 <= self.current_step < len(self.steps):
            return self.steps[self.current_step]
        return None


# ---------------------------------------------------------------------------
# Batch detection jobs
# ---------------------------------------------------------------------------


class BatchJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = {
    BatchJobStatus.COMPLETED,
    BatchJobStatus.FAILED,
    BatchJobStatus.CANCELLED,
}


@dataclass
class BatchOptions:
    batch_size: Optional[int] = None
    max_concurrency: Optional[int] = None
    skip_recently_processed: bool = True
    auto_merge_threshold: Optional[float] = None
    max_runtime_seconds: Optional[float] = None


@dataclass
class BatchProgress:
    total_records: int = 0
    processed_records: int = 0
    duplicates_found: int = 0
    errors: int = 0
    skipped_records: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None

    @property
    def percent(self) -> float:
        if not self.total_records:
            return 0.0
        return self.processed_records / self.total_records * 100


@dataclass
class BatchError:
    record_id: str
    error: str
    severity: str = "medium"
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class BatchPerformance:
    total_time: float = 0.0
    average_time_per_record: float = 0.0
    records_per_second: float = 0.0


@dataclass
class BatchDetectionResult:
    duplicates_found: int = 0
    auto_merged: int = 0
    requires_review: int = 0
    false_positives: int = 0
    errors: List[BatchError] = field(default_factory=list)
    performance: BatchPerformance = field(default_factory=BatchPerformance)
    summary: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchDetectionJob:
    id: str
    name: str
    record_type: str
    source_system: str
    options: BatchOptions
    status: BatchJobStatus = BatchJobStatus.QUEUED
    progress: BatchProgress = field(default_factory=BatchProgress)
    filters: Optional[Dict[str, Any]] = None
    results: Optional[BatchDetectionResult] = None
    error: Optional[str] = None
    created_by: str = "system"
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


# ---------------------------------------------------------------------------
# Metrics snapshot
# ---------------------------------------------------------------------------


@dataclass
class ProcessingMetrics:
    average_detection_time: float = 0.0
    records_processed_today: int = 0
    duplicates_found_today: int = 0
    system_performance: str = "excellent"


@dataclass
class DuplicateMetrics:
    """Derived snapshot; always recomputable from duplicates, workflows and jobs."""

    total_duplicates: int = 0
    duplicates_by_status: Dict[str, int] = field(default_factory=dict)
    duplicates_by_type: Dict[str, int] = field(default_factory=dict)
    duplicates_by_system: Dict[str, int] = field(default_factory=dict)
    average_confidence_score: float = 0.0
    detection_accuracy: float = 0.0
    false_positive_rate: float = 0.0
    auto_merge_rate: float = 0.0
    manual_review_rate: float = 0.0
    processing_metrics: ProcessingMetrics = field(default_factory=ProcessingMetrics)
    algorithm_usage: Dict[str, int] = field(default_factory=dict)
    workflows_by_status: Dict[str, int] = field(default_factory=dict)
    jobs_by_status: Dict[str, int] = field(default_factory=dict)
    computed_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
