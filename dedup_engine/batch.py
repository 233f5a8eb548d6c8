"""Batch detection job orchestrator.

Runs the detection pipeline over every record a ``RecordSource`` returns
for a type and system. Records are processed in chunks; inside a chunk a
semaphore bounds how many detections run at once. A failing record becomes
a ``BatchError`` and the job carries on; only orchestration failures fail
the job. Cancellation and the runtime guard are checked between chunks.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Set

from dedup_engine import metrics
from dedup_engine.dedup.detector import DetectionOptions
from dedup_engine.errors import BatchJobNotFound
from dedup_engine.events import EventBus, EventType
from dedup_engine.models import (
    BatchDetectionJob,
    BatchDetectionResult,
    BatchError,
    BatchJobStatus,
    BatchOptions,
    BatchPerformance,
    DuplicateStatus,
    generate_id,
)
from dedup_engine.store import BATCH_JOB_NS, PROCESSED_NS, RecordStore, make_key
from dedup_engine.utils.logger import log_batch_progress, log_error, log_info, log_warning


class BatchRuntimeExceeded(Exception):
    """Raised inside a job when its maximum runtime has elapsed."""


class BatchDetectionOrchestrator:
    """Start, track and cancel batch detection jobs.

    Args:
        store: ``RecordStore`` where jobs are persisted.
        pipeline: ``DetectionPipeline`` run per record.
        record_source: ``RecordSource`` supplying the records to scan.
        events: Event bus.
        config: Engine ``Config`` for defaults.
    """

    def __init__(self, store: RecordStore, pipeline, record_source, events: EventBus, config):
        self.store = store
        self.pipeline = pipeline
        self.record_source = record_source
        self.events = events
        self.config = config
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_requested: Set[str] = set()

    def _resolve_options(self, options: Optional[BatchOptions]) -> BatchOptions:
        options = options or BatchOptions()
        return BatchOptions(
            batch_size=options.batch_size or self.config.default_batch_size,
            max_concurrency=options.max_concurrency or self.config.default_max_concurrency,
            skip_recently_processed=options.skip_recently_processed,
            auto_merge_threshold=options.auto_merge_threshold,
            max_runtime_seconds=(
                options.max_runtime_seconds
                if options.max_runtime_seconds is not None
                else self.config.max_batch_runtime_seconds or None
            ),
        )

    async def start(
        self,
        record_type: str,
        source_system: str,
        options: Optional[BatchOptions] = None,
        name: Optional[str] = None,
        filters: Optional[Mapping[str, Any]] = None,
        created_by: str = "system",
    ) -> BatchDetectionJob:
        """Queue a job and start processing it in the background."""
        job = BatchDetectionJob(
            id=generate_id("job"),
            name=name or f"{record_type} detection ({source_system})",
            record_type=record_type,
            source_system=source_system,
            options=self._resolve_options(options),
            filters=dict(filters) if filters else None,
            created_by=created_by,
        )
        await self._save(job)
        log_info(
            "Batch detection job queued",
            job_id=job.id,
            record_type=record_type,
            batch_size=job.options.batch_size,
            max_concurrency=job.options.max_concurrency,
        )
        task = asyncio.create_task(self._run(job), name=f"batch-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))
        return job

    async def _save(self, job: BatchDetectionJob) -> None:
        await self.store.put(make_key(BATCH_JOB_NS, job.id), job, self.config.job_ttl_seconds)

    async def get(self, job_id: str) -> Optional[BatchDetectionJob]:
        return await self.store.get(make_key(BATCH_JOB_NS, job_id))

    async def require(self, job_id: str) -> BatchDetectionJob:
        job = await self.get(job_id)
        if job is None:
            raise BatchJobNotFound(f"Batch job not found: {job_id}", job_id=job_id)
        return job

    async def list(self, status: Optional[BatchJobStatus] = None) -> List[BatchDetectionJob]:
        jobs = await self.store.load_namespace(BATCH_JOB_NS)
        if status is not None:
            jobs = [j for j in jobs if j.status == BatchJobStatus(status)]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    async def cancel(self, job_id: str) -> BatchDetectionJob:
        """Request cooperative cancellation; takes effect between chunks."""
        job = await self.require(job_id)
        if not job.is_terminal:
            self._cancel_requested.add(job_id)
            log_info("Batch job cancellation requested", job_id=job_id)
        return job

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> BatchDetectionJob:
        """Wait for a job started by this orchestrator to reach a terminal state."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.require(job_id)

    def active_job_ids(self) -> List[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    async def close(self, grace_seconds: float = 5.0) -> None:
        """Cancel running jobs, waiting briefly for them to stop cleanly."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        self._cancel_requested.update(self._tasks.keys())
        _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run(self, job: BatchDetectionJob) -> None:
        options = job.options
        progress = job.progress
        results = BatchDetectionResult()
        job.results = results
        started = time.perf_counter()

        try:
            job.status = BatchJobStatus.RUNNING
            progress.start_time = datetime.now()
            await self._save(job)

            records = await self.record_source.get_records_for_batch(
                job.record_type, job.source_system, job.filters
            )
            progress.total_records = len(records)
            semaphore = asyncio.Semaphore(options.max_concurrency)
            detection_options = DetectionOptions(
                auto_merge=options.auto_merge_threshold is not None,
                auto_merge_threshold=options.auto_merge_threshold,
            )

            for offset in range(0, len(records), options.batch_size):
                if job.id in self._cancel_requested:
                    await self._finish_cancelled(job, started)
                    return
                if options.max_runtime_seconds and time.perf_counter() - started > options.max_runtime_seconds:
                    raise BatchRuntimeExceeded(
                        f"Batch job exceeded maximum runtime of {options.max_runtime_seconds}s"
                    )

                chunk = records[offset:offset + options.batch_size]
                await asyncio.gather(
                    *(self._process_record(job, record, semaphore, detection_options) for record in chunk)
                )
                self._update_estimate(job, started)
                await self._save(job)
                log_batch_progress(
                    job.id,
                    progress.processed_records,
                    progress.total_records,
                    duplicates_found=progress.duplicates_found,
                    errors=progress.errors,
                )
                self.events.publish(
                    EventType.BATCH_PROGRESS,
                    job_id=job.id,
                    processed=progress.processed_records,
                    total=progress.total_records,
                    duplicates_found=progress.duplicates_found,
                    errors=progress.errors,
                    percent=round(progress.percent, 2),
                )

            if job.id in self._cancel_requested:
                await self._finish_cancelled(job, started)
                return

            self._finalize(job, started)
            job.status = BatchJobStatus.COMPLETED
            await self._save(job)
            metrics.timing("batch.duration", results.performance.total_time, record_type=job.record_type)
            log_info(
                "Batch detection job completed",
                job_id=job.id,
                processed=progress.processed_records,
                duplicates_found=progress.duplicates_found,
                errors=progress.errors,
            )
            self.events.publish(EventType.BATCH_COMPLETED, job_id=job.id, summary=results.summary)

        except asyncio.CancelledError:
            self._finalize(job, started)
            job.status = BatchJobStatus.CANCELLED
            job.error = "Batch job task cancelled"
            await self._save_quietly(job)
            self.events.publish(EventType.BATCH_CANCELLED, job_id=job.id)
            raise
        except Exception as exc:
            self._finalize(job, started)
            job.status = BatchJobStatus.FAILED
            job.error = str(exc)
            await self._save_quietly(job)
            log_error("Batch detection job failed", job_id=job.id, error=str(exc))
            self.events.publish(EventType.BATCH_FAILED, job_id=job.id, error=str(exc))
        finally:
            self._cancel_requested.discard(job.id)

    async def _process_record(
        self,
        job: BatchDetectionJob,
        record: Mapping[str, Any],
        semaphore: asyncio.Semaphore,
        detection_options: DetectionOptions,
    ) -> None:
        progress = job.progress
        results = job.results
        record_id = str(record.get("id", ""))

        async with semaphore:
            try:
                if job.options.skip_recently_processed and await self._recently_processed(job, record_id):
                    progress.skipped_records += 1
                    return

                duplicates = await self.pipeline.detect(
                    record, job.record_type, job.source_system, detection_options
                )
                progress.duplicates_found += len(duplicates)
                results.duplicates_found += len(duplicates)
                for duplicate in duplicates:
                    if duplicate.status == DuplicateStatus.MERGED:
                        results.auto_merged += 1
                    elif duplicate.metadata.get("recommendation") != "ignore":
                        results.requires_review += 1
                await self._mark_processed(job, record_id)
            except Exception as exc:
                progress.errors += 1
                results.errors.append(
                    BatchError(
                        record_id=record_id,
                        error=str(exc),
                        severity=getattr(exc, "severity", "high"),
                    )
                )
                metrics.incr("batch.errors", record_type=job.record_type)
                log_warning("Batch record failed", job_id=job.id, record_id=record_id, error=str(exc))
            finally:
                progress.processed_records += 1
                metrics.incr("batch.records_processed", record_type=job.record_type)

    def _processed_key(self, job: BatchDetectionJob, record_id: str) -> str:
        return make_key(PROCESSED_NS, job.record_type, job.source_system, record_id)

    async def _recently_processed(self, job: BatchDetectionJob, record_id: str) -> bool:
        if not record_id or self.config.recently_processed_window_seconds <= 0:
            return False
        return await self.store.get(self._processed_key(job, record_id)) is not None

    async def _mark_processed(self, job: BatchDetectionJob, record_id: str) -> None:
        if not record_id or self.config.recently_processed_window_seconds <= 0:
            return
        await self.store.put(
            self._processed_key(job, record_id),
            {"job_id": job.id, "at": datetime.now().isoformat()},
            self.config.recently_processed_window_seconds,
        )

    def _update_estimate(self, job: BatchDetectionJob, started: float) -> None:
        progress = job.progress
        if not progress.processed_records:
            return
        elapsed = time.perf_counter() - started
        remaining = progress.total_records - progress.processed_records
        per_record = elapsed / progress.processed_records
        progress.estimated_completion = datetime.now() + timedelta(seconds=per_record * remaining)

    def _finalize(self, job: BatchDetectionJob, started: float) -> None:
        progress = job.progress
        results = job.results or BatchDetectionResult()
        job.results = results
        progress.end_time = datetime.now()

        total_ms = (time.perf_counter() - started) * 1000
        processed = progress.processed_records
        results.performance = BatchPerformance(
            total_time=total_ms,
            average_time_per_record=total_ms / processed if processed else 0.0,
            records_per_second=processed / (total_ms / 1000) if total_ms > 0 else 0.0,
        )
        results.summary = {
            "total_records": progress.total_records,
            "processed_records": processed,
            "skipped_records": progress.skipped_records,
            "duplicates_found": results.duplicates_found,
            "auto_merged": results.auto_merged,
            "requires_review": results.requires_review,
            "errors": len(results.errors),
        }

    async def _finish_cancelled(self, job: BatchDetectionJob, started: float) -> None:
        self._finalize(job, started)
        job.status = BatchJobStatus.CANCELLED
        await self._save(job)
        log_info("Batch detection job cancelled", job_id=job.id, processed=job.progress.processed_records)
        self.events.publish(EventType.BATCH_CANCELLED, job_id=job.id, summary=job.results.summary)

    async def _save_quietly(self, job: BatchDetectionJob) -> None:
        try:
            await self._save(job)
        except Exception as exc:
            log_error("Could not persist batch job state", job_id=job.id, error=str(exc))
