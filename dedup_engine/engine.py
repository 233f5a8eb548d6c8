"""The deduplication engine context.

``DuplicateDetectionEngine`` wires the store, registry, pipeline, merge
engine, workflows, batch orchestrator and monitor together. Each instance
is fully isolated; nothing is shared through module globals.

Usage::

    async with DuplicateDetectionEngine(record_source=source) as engine:
        duplicates = await engine.detect_duplicates(record, "contact", "hubspot")
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from dedup_engine import metrics
from dedup_engine.batch import BatchDetectionOrchestrator
from dedup_engine.config import Config, get_config
from dedup_engine.dedup.detector import DetectionOptions, DetectionPipeline
from dedup_engine.dedup.merge import CustomMergeFn, MergeStrategyEngine
from dedup_engine.dedup.result import DuplicateScore, MergeReceipt
from dedup_engine.dedup.strategies import DeduplicationStrategy
from dedup_engine.errors import RuleNotFound
from dedup_engine.events import EventBus
from dedup_engine.matching.rules import MatchingRule
from dedup_engine.matching.scoring import calculate_duplicate_score
from dedup_engine.models import (
    BatchDetectionJob,
    BatchJobStatus,
    BatchOptions,
    DuplicateFilters,
    DuplicateMetrics,
    DuplicateRecord,
    DuplicateStatus,
    Priority,
    ResolutionWorkflow,
    WorkflowStatus,
    WorkflowType,
)
from dedup_engine.monitor import DuplicateMetricsMonitor, HealthReport
from dedup_engine.registry import RuleRegistry
from dedup_engine.repository import DuplicateRepository
from dedup_engine.sources import InMemoryRecordSource, RecordSource
from dedup_engine.store import RecordStore
from dedup_engine.utils.logger import configure_logging, log_info
from dedup_engine.workflow import WorkflowManager


class DuplicateDetectionEngine:
    """Per-process deduplication engine.

    Args:
        config: Engine configuration; defaults to ``get_config()``.
        store: Record store; defaults to one built from ``config``.
        record_source: Where candidates and batch records come from;
            defaults to an empty ``InMemoryRecordSource``.
        events: Event bus; defaults to a new bus.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[RecordStore] = None,
        record_source: Optional[RecordSource] = None,
        events: Optional[EventBus] = None,
    ):
        self.config = config or get_config()
        self.store = store or RecordStore(self.config)
        self.record_source = record_source if record_source is not None else InMemoryRecordSource()
        self.events = events or EventBus(self.config.event_queue_size)

        self.registry = RuleRegistry(self.store, self.events, self.config.rule_ttl_seconds)
        self.repository = DuplicateRepository(self.store, self.events, self.config.duplicate_ttl_seconds)
        self.merge_engine = MergeStrategyEngine(
            self.registry,
            self.repository,
            self.store,
            self.events,
            backup_ttl_seconds=self.config.backup_ttl_seconds,
        )
        self.pipeline = DetectionPipeline(
            self.registry, self.repository, self.merge_engine, self.record_source, self.events
        )
        self.workflows = WorkflowManager(
            self.store,
            self.repository,
            self.merge_engine,
            self.events,
            fail_on_step_failure=self.config.workflow_fail_on_step_failure,
            execute_merge_step=self.config.workflow_execute_merge_step,
            ttl_seconds=self.config.workflow_ttl_seconds,
        )
        self.batch = BatchDetectionOrchestrator(
            self.store, self.pipeline, self.record_source, self.events, self.config
        )
        self.monitor = DuplicateMetricsMonitor(
            self.store, self.repository, self.workflows, self.batch, self.pipeline, self.config
        )
        self._initialized = False

    async def initialize(self) -> "DuplicateDetectionEngine":
        if self._initialized:
            return self
        configure_logging(self.config.log_level)
        metrics.configure(self.config)
        await self.store.initialize()
        if self.config.seed_default_rules:
            await self.registry.seed_defaults()
        if self.config.metrics_auto_start:
            self.monitor.start()
        self._initialized = True
        log_info("Duplicate detection engine initialized", backend=self.store.backend.name)
        return self

    async def close(self) -> None:
        await self.monitor.stop()
        await self.batch.close()
        await self.store.close()
        self._initialized = False
        log_info("Duplicate detection engine closed")

    async def __aenter__(self) -> "DuplicateDetectionEngine":
        return await self.initialize()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Detection

    async def detect_duplicates(
        self,
        record: Mapping[str, Any],
        record_type: str,
        source_system: str,
        options: Optional[DetectionOptions] = None,
    ) -> List[DuplicateRecord]:
        return await self.pipeline.detect(record, record_type, source_system, options)

    async def calculate_duplicate_score(
        self,
        source: Mapping[str, Any],
        candidate: Mapping[str, Any],
        record_type: Optional[str] = None,
        rule: Optional[MatchingRule] = None,
        rule_id: Optional[str] = None,
    ) -> DuplicateScore:
        """Score one pair without storing anything."""
        if rule is None:
            if record_type is None and rule_id is None:
                raise RuleNotFound("A rule, rule id or record type is required to score a pair")
            rule = await self.registry.find_active_rule(record_type or "", rule_id)
        return calculate_duplicate_score(source, candidate, rule)

    # Duplicates

    async def get_duplicate(self, duplicate_id: str) -> Optional[DuplicateRecord]:
        return await self.repository.get(duplicate_id)

    async def list_duplicates(self, filters: Optional[DuplicateFilters] = None) -> List[DuplicateRecord]:
        return await self.repository.list(filters)

    async def update_duplicate_status(
        self,
        duplicate_id: str,
        status: Union[DuplicateStatus, str],
        reviewed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> DuplicateRecord:
        return await self.repository.update_status(duplicate_id, status, reviewed_by, notes)

    async def merge_duplicate(self, duplicate_id: str) -> Optional[MergeReceipt]:
        return await self.merge_engine.merge_duplicate(duplicate_id)

    def register_custom_merge(self, name: str, fn: CustomMergeFn) -> None:
        self.merge_engine.register_custom_merge(name, fn)

    # Workflows

    async def create_resolution_workflow(
        self,
        duplicate_id: str,
        workflow_type: Union[WorkflowType, str] = WorkflowType.MANUAL,
        assigned_to: Optional[str] = None,
        priority: Union[Priority, str] = Priority.MEDIUM,
        due_date: Optional[datetime] = None,
    ) -> ResolutionWorkflow:
        return await self.workflows.create(duplicate_id, workflow_type, assigned_to, priority, due_date)

    async def advance_workflow(
        self, workflow_id: str, result: Any = None, completed_by: Optional[str] = None, notes: Optional[str] = None
    ) -> ResolutionWorkflow:
        return await self.workflows.advance(workflow_id, result, completed_by, notes)

    async def fail_workflow_step(self, workflow_id: str, reason: str, failed_by: Optional[str] = None) -> ResolutionWorkflow:
        return await self.workflows.fail_step(workflow_id, reason, failed_by)

    async def skip_workflow_step(
        self, workflow_id: str, reason: Optional[str] = None, skipped_by: Optional[str] = None
    ) -> ResolutionWorkflow:
        return await self.workflows.skip_step(workflow_id, reason, skipped_by)

    async def cancel_workflow(self, workflow_id: str, reason: Optional[str] = None) -> ResolutionWorkflow:
        return await self.workflows.cancel(workflow_id, reason)

    async def get_workflow(self, workflow_id: str) -> Optional[ResolutionWorkflow]:
        return await self.workflows.get(workflow_id)

    async def list_workflows(
        self, status: Optional[WorkflowStatus] = None, duplicate_id: Optional[str] = None
    ) -> List[ResolutionWorkflow]:
        return await self.workflows.list(status, duplicate_id)

    # Batch jobs

    async def start_batch_detection(
        self,
        record_type: str,
        source_system: str,
        options: Optional[BatchOptions] = None,
        name: Optional[str] = None,
        filters: Optional[Mapping[str, Any]] = None,
        created_by: str = "system",
    ) -> BatchDetectionJob:
        return await self.batch.start(record_type, source_system, options, name, filters, created_by)

    async def cancel_batch_job(self, job_id: str) -> BatchDetectionJob:
        return await self.batch.cancel(job_id)

    async def wait_for_batch_job(self, job_id: str, timeout: Optional[float] = None) -> BatchDetectionJob:
        return await self.batch.wait(job_id, timeout)

    async def get_batch_job(self, job_id: str) -> Optional[BatchDetectionJob]:
        return await self.batch.get(job_id)

    async def list_batch_jobs(self, status: Optional[BatchJobStatus] = None) -> List[BatchDetectionJob]:
        return await self.batch.list(status)

    # Rules and strategies

    async def save_matching_rule(self, rule: Union[MatchingRule, Dict[str, Any]]) -> MatchingRule:
        return await self.registry.save_rule(rule)

    async def get_matching_rule(self, rule_id: str) -> Optional[MatchingRule]:
        return await self.registry.get_rule(rule_id)

    async def delete_matching_rule(self, rule_id: str) -> bool:
        return await self.registry.delete_rule(rule_id)

    async def list_matching_rules(self, record_type: Optional[str] = None) -> List[MatchingRule]:
        return await self.registry.list_rules(record_type)

    async def save_strategy(
        self, strategy: Union[DeduplicationStrategy, Dict[str, Any]]
    ) -> DeduplicationStrategy:
        return await self.registry.save_strategy(strategy)

    async def get_strategy(self, strategy_id: str) -> Optional[DeduplicationStrategy]:
        return await self.registry.get_strategy(strategy_id)

    async def delete_strategy(self, strategy_id: str) -> bool:
        return await self.registry.delete_strategy(strategy_id)

    async def list_strategies(self, record_type: Optional[str] = None) -> List[DeduplicationStrategy]:
        return await self.registry.list_strategies(record_type)

    async def load_rules_file(self, path: Union[str, Path]):
        return await self.registry.load_rules_file(path)

    # Metrics and health

    async def refresh_metrics(self) -> DuplicateMetrics:
        return await self.monitor.refresh()

    async def get_metrics(self) -> Optional[DuplicateMetrics]:
        return await self.monitor.get_metrics()

    async def health_check(self) -> HealthReport:
        return await self.monitor.health_check()
