"""Resolution workflow state machine.

A workflow walks one duplicate through an ordered list of steps. Manual
and hybrid workflows start with validation and approval; every workflow
ends with merge and notification. Workflows only move forward and are
frozen once completed, failed or cancelled.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from dedup_engine.errors import DedupEngineError, InvalidTransition, WorkflowNotFound
from dedup_engine.events import EventBus, EventType
from dedup_engine.models import (
    DuplicateStatus,
    Priority,
    ResolutionWorkflow,
    StepStatus,
    StepType,
    WorkflowStatus,
    WorkflowStep,
    WorkflowType,
    generate_id,
)
from dedup_engine.store import WORKFLOW_NS, RecordStore, make_key
from dedup_engine.utils.logger import log_info, log_warning
from dedup_engine.utils.thread_safe import KeyedLock

STEP_DESCRIPTIONS = {
    StepType.VALIDATION: "Validate duplicate detection accuracy",
    StepType.APPROVAL: "Approve merge operation",
    StepType.MERGE: "Execute record merge",
    StepType.NOTIFICATION: "Notify stakeholders of merge completion",
}


def build_steps(workflow_type: WorkflowType) -> List[WorkflowStep]:
    kinds: List[StepType] = []
    if workflow_type in (WorkflowType.MANUAL, WorkflowType.HYBRID):
        kinds += [StepType.VALIDATION, StepType.APPROVAL]
    kinds += [StepType.MERGE, StepType.NOTIFICATION]
    return [
        WorkflowStep(
            id=generate_id("step"),
            step_number=number,
            type=kind,
            description=STEP_DESCRIPTIONS[kind],
        )
        for number, kind in enumerate(kinds, start=1)
    ]


class WorkflowManager:
    """Create and drive ``ResolutionWorkflow``s.

    Args:
        store: ``RecordStore`` holding workflows.
        repository: ``DuplicateRepository``; workflows reference duplicates.
        merge_engine: ``MergeStrategyEngine`` run by merge steps.
        events: Event bus.
        fail_on_step_failure: A failed step fails the whole workflow. When
            off, the workflow stays in progress on the failed step and the
            next ``advance`` retries it.
        execute_merge_step: Advancing a merge step performs the merge.
        ttl_seconds: Store TTL for workflows.
    """

    def __init__(
        self,
        store: RecordStore,
        repository,
        merge_engine,
        events: EventBus,
        fail_on_step_failure: bool = False,
        execute_merge_step: bool = True,
        ttl_seconds: int = 0,
    ):
        self.store = store
        self.repository = repository
        self.merge_engine = merge_engine
        self.events = events
        self.fail_on_step_failure = fail_on_step_failure
        self.execute_merge_step = execute_merge_step
        self.ttl_seconds = ttl_seconds
        self._locks = KeyedLock()

    async def _save(self, workflow: ResolutionWorkflow) -> ResolutionWorkflow:
        workflow.updated_at = datetime.now()
        await self.store.put(make_key(WORKFLOW_NS, workflow.id), workflow, self.ttl_seconds)
        return workflow

    async def get(self, workflow_id: str) -> Optional[ResolutionWorkflow]:
        return await self.store.get(make_key(WORKFLOW_NS, workflow_id))

    async def require(self, workflow_id: str) -> ResolutionWorkflow:
        workflow = await self.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)
        return workflow

    async def list(
        self, status: Optional[WorkflowStatus] = None, duplicate_id: Optional[str] = None
    ) -> List[ResolutionWorkflow]:
        workflows = await self.store.load_namespace(WORKFLOW_NS)
        if status is not None:
            workflows = [w for w in workflows if w.status == WorkflowStatus(status)]
        if duplicate_id is not None:
            workflows = [w for w in workflows if w.duplicate_id == duplicate_id]
        return sorted(workflows, key=lambda w: w.created_at, reverse=True)

    async def create(
        self,
        duplicate_id: str,
        workflow_type: WorkflowType = WorkflowType.MANUAL,
        assigned_to: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
        due_date: Optional[datetime] = None,
    ) -> ResolutionWorkflow:
        """Create a workflow for an existing duplicate.

        Raises:
            DuplicateNotFound: Unknown duplicate id.
        """
        duplicate = await self.repository.require(duplicate_id)
        workflow_type = WorkflowType(workflow_type)
        workflow = ResolutionWorkflow(
            id=generate_id("wf"),
            duplicate_id=duplicate_id,
            workflow_type=workflow_type,
            steps=build_steps(workflow_type),
            assigned_to=assigned_to,
            priority=Priority(priority),
            due_date=due_date,
            metadata={
                "created_for": duplicate.record_type,
                "confidence_score": duplicate.confidence_score,
            },
        )
        await self._save(workflow)
        log_info(
            "Resolution workflow created",
            workflow_id=workflow.id,
            duplicate_id=duplicate_id,
            workflow_type=workflow_type.value,
            steps=len(workflow.steps),
        )
        self.events.publish(
            EventType.WORKFLOW_CREATED,
            workflow_id=workflow.id,
            duplicate_id=duplicate_id,
            workflow_type=workflow_type.value,
        )
        return workflow

    def _check_open(self, workflow: ResolutionWorkflow) -> WorkflowStep:
        if workflow.is_terminal:
            raise InvalidTransition(
                f"Workflow {workflow.id} is {workflow.status.value}",
                workflow_id=workflow.id,
            )
        step = workflow.active_step
        if step is None:
            raise InvalidTransition(f"Workflow {workflow.id} has no active step", workflow_id=workflow.id)
        if workflow.status == WorkflowStatus.PENDING:
            workflow.status = WorkflowStatus.IN_PROGRESS
        return step

    def _move_on(self, workflow: ResolutionWorkflow) -> None:
        workflow.current_step += 1
        if workflow.current_step >= len(workflow.steps):
            workflow.status = WorkflowStatus.COMPLETED

    async def advance(
        self,
        workflow_id: str,
        result: Any = None,
        completed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ResolutionWorkflow:
        """Complete the current step and move the cursor forward.

        A merge step performs the merge when merge execution is enabled; a
        merge error fails the step instead of completing it.

        Raises:
            WorkflowNotFound: Unknown workflow.
            InvalidTransition: The workflow is already terminal.
        """
        async with self._locks.acquire(workflow_id):
            workflow = await self.require(workflow_id)
            step = self._check_open(workflow)

            if step.type == StepType.MERGE and self.execute_merge_step:
                try:
                    merge_result = await self._run_merge(workflow)
                except DedupEngineError as exc:
                    return await self._fail(workflow, step, str(exc), completed_by)
                if result is None:
                    result = merge_result
                elif isinstance(result, dict):
                    result = {**merge_result, **result}

            step.status = StepStatus.COMPLETED
            step.completed_by = completed_by
            step.completed_at = datetime.now()
            step.result = result
            step.notes = notes
            self._move_on(workflow)
            await self._save(workflow)

        log_info(
            "Workflow advanced",
            workflow_id=workflow_id,
            step=step.type.value,
            status=workflow.status.value,
        )
        if workflow.status == WorkflowStatus.COMPLETED:
            self.events.publish(
                EventType.WORKFLOW_COMPLETED, workflow_id=workflow_id, duplicate_id=workflow.duplicate_id
            )
        return workflow

    async def _run_merge(self, workflow: ResolutionWorkflow) -> dict:
        receipt = await self.merge_engine.merge_duplicate(workflow.duplicate_id)
        if receipt is not None:
            return {"merge_result": receipt.to_dict()}
        duplicate = await self.repository.require(workflow.duplicate_id)
        if duplicate.status == DuplicateStatus.MERGED:
            return {"already_merged": True}
        raise InvalidTransition(
            f"Duplicate {duplicate.id} is {duplicate.status.value} and cannot be merged",
            duplicate_id=duplicate.id,
        )

    async def fail_step(
        self, workflow_id: str, reason: str, failed_by: Optional[str] = None
    ) -> ResolutionWorkflow:
        """Mark the current step failed."""
        async with self._locks.acquire(workflow_id):
            workflow = await self.require(workflow_id)
            step = self._check_open(workflow)
            return await self._fail(workflow, step, reason, failed_by)

    async def _fail(
        self, workflow: ResolutionWorkflow, step: WorkflowStep, reason: str, failed_by: Optional[str]
    ) -> ResolutionWorkflow:
        step.status = StepStatus.FAILED
        step.completed_by = failed_by
        step.completed_at = datetime.now()
        step.notes = reason
        if self.fail_on_step_failure:
            workflow.status = WorkflowStatus.FAILED
        await self._save(workflow)

        log_warning(
            "Workflow step failed",
            workflow_id=workflow.id,
            step=step.type.value,
            reason=reason,
            workflow_status=workflow.status.value,
        )
        if workflow.status == WorkflowStatus.FAILED:
            self.events.publish(
                EventType.WORKFLOW_FAILED,
                workflow_id=workflow.id,
                duplicate_id=workflow.duplicate_id,
                step=step.type.value,
                error=reason,
            )
        return workflow

    async def skip_step(
        self, workflow_id: str, reason: Optional[str] = None, skipped_by: Optional[str] = None
    ) -> ResolutionWorkflow:
        """Skip the current step and move the cursor forward."""
        async with self._locks.acquire(workflow_id):
            workflow = await self.require(workflow_id)
            step = self._check_open(workflow)
            step.status = StepStatus.SKIPPED
            step.completed_by = skipped_by
            step.completed_at = datetime.now()
            step.notes = reason
            self._move_on(workflow)
            await self._save(workflow)

        if workflow.status == WorkflowStatus.COMPLETED:
            self.events.publish(
                EventType.WORKFLOW_COMPLETED, workflow_id=workflow_id, duplicate_id=workflow.duplicate_id
            )
        return workflow

    async def cancel(self, workflow_id: str, reason: Optional[str] = None) -> ResolutionWorkflow:
        async with self._locks.acquire(workflow_id):
            workflow = await self.require(workflow_id)
            if workflow.is_terminal:
                raise InvalidTransition(
                    f"Workflow {workflow.id} is {workflow.status.value}", workflow_id=workflow_id
                )
            workflow.status = WorkflowStatus.CANCELLED
            if reason:
                workflow.metadata["cancel_reason"] = reason
            await self._save(workflow)

        log_info("Workflow cancelled", workflow_id=workflow_id, reason=reason)
        return workflow
