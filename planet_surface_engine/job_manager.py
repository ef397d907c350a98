from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

from .models import JobStatus, JobSummary, PipelineStage, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class JobRuntimeState:
    summary: JobSummary
    version: int = 0
    # monotonic clock reading when the current pipeline stage began
    stage_started: float | None = None


class JobManager:
    """World-generation jobs on a small thread pool, indexed by job id and world id."""

    def __init__(self, max_workers: int = 2):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pse-job")
        self._states: dict[str, JobRuntimeState] = {}
        self._by_world: dict[str, str] = {}
        self._lock = threading.Lock()

    def create_job(self, world_id: str, kind: str, message: str = "queued") -> JobSummary:
        job = JobSummary(
            jobId=str(uuid.uuid4()),
            worldId=world_id,
            kind=kind,
            status=JobStatus.queued,
            message=message,
        )
        with self._lock:
            self._states[job.jobId] = JobRuntimeState(summary=job)
            self._by_world[world_id] = job.jobId
        return job.model_copy(deep=True)

    def submit(self, job_id: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self.set_state(job_id, status=JobStatus.running, message="running", progress=0.0)

        def _runner() -> None:
            try:
                fn(job_id, *args, **kwargs)
            except Exception as exc:
                logger.exception(f"job {job_id} failed")
                self._finish(job_id, JobStatus.failed, "failed", error=f"{type(exc).__name__}: {exc}")
            else:
                self._finish(job_id, JobStatus.completed, "completed")

        self._executor.submit(_runner)

    def advance_stage(self, job_id: str, stage: PipelineStage, progress: float, message: str) -> None:
        """Close the timer of the running stage and start `stage`."""
        now = time.monotonic()
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return
            summary = state.summary
            self._close_stage(state, now)
            summary.stage = stage
            summary.progress = max(0.0, min(1.0, progress))
            summary.message = message
            state.stage_started = now
            state.version += 1
        logger.debug(f"job {job_id}: {stage.value} ({message})")

    def get_job(self, job_id: str) -> JobSummary | None:
        with self._lock:
            state = self._states.get(job_id)
            return state.summary.model_copy(deep=True) if state is not None else None

    def job_for_world(self, world_id: str) -> JobSummary | None:
        with self._lock:
            job_id = self._by_world.get(world_id)
        return self.get_job(job_id) if job_id is not None else None

    def set_state(
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        progress: float | None = None,
        message: str | None = None,
        error: str | None = None,
    ) -> None:
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return
            summary = state.summary
            if status is not None:
                summary.status = status
                if status == JobStatus.running and summary.startedAt is None:
                    summary.startedAt = utc_now_iso()
            if progress is not None:
                summary.progress = max(0.0, min(1.0, progress))
            if message is not None:
                summary.message = message
            if error is not None:
                summary.error = error
            state.version += 1

    def job_version(self, job_id: str) -> int:
        with self._lock:
            state = self._states.get(job_id)
            return state.version if state else 0

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _finish(self, job_id: str, status: JobStatus, message: str, error: str | None = None) -> None:
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return
            summary = state.summary
            self._close_stage(state, time.monotonic())
            state.stage_started = None
            summary.status = status
            summary.message = message
            summary.error = error
            summary.finishedAt = utc_now_iso()
            if status == JobStatus.completed:
                summary.stage = PipelineStage.done
                summary.progress = 1.0
            state.version += 1

    @staticmethod
    def _close_stage(state: JobRuntimeState, now: float) -> None:
        summary = state.summary
        if state.stage_started is None or summary.stage in (PipelineStage.queued, PipelineStage.done):
            return
        summary.stageSeconds[summary.stage.value] = round(now - state.stage_started, 4)
