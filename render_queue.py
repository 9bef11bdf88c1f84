"""
render_queue.py - Job queue: the single owner of render job state.

Every mutation of a RenderJob goes through a JobQueue method; the API, the
worker pool and the timeout monitor never touch job fields directly. The
queue runs on the service's event loop, so calls are serialized and there
are no lost updates between chunk uploads and worker events.

Subscribers get the current snapshot immediately, then one snapshot per
update, and are dropped after the single terminal (complete/failed) update.
"""

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

import render_config
from render_jobs import (
    TERMINAL_STATUSES,
    ConfigImmutableError,
    EncodingConfig,
    FrameChecksum,
    FrameCountMismatchError,
    InvalidTransitionError,
    JobNotFoundError,
    JobProgress,
    JobStatus,
    RenderJob,
    WorkerMessageType,
    can_transition,
    create_render_job,
)

logger = logging.getLogger("export.queue")

ProgressCallback = Callable[[JobProgress], None]

# Fields a status update may patch. ids are fixed at creation; config only
# changes through set_fps.
_PATCHABLE = {
    "progress", "current_frame", "encoding_speed", "worker_id",
    "last_error", "output_path", "output_size",
}

# ---------------------------------------------------------------------------
# Job store (one JSON file per job)
# ---------------------------------------------------------------------------

class JobStore:
    """
    Persists jobs as <jobs_dir>/<job_id>.json. Writes go to a temp file and
    are renamed into place so a crash never leaves half a record behind.
    """

    def __init__(self, jobs_dir: Optional[Path] = None) -> None:
        self._jobs_dir = Path(jobs_dir) if jobs_dir else None

    @property
    def jobs_dir(self) -> Path:
        return self._jobs_dir or render_config.JOBS_DIR

    def _path(self, job_id: str) -> Path:
        return self.jobs_dir / f"{render_config.sanitize_id(job_id)}.json"

    def save(self, job: RenderJob) -> None:
        path = self._path(job.job_id)
        tmp = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(job.model_dump_json(by_alias=True, indent=2))
            os.replace(tmp, path)
        except OSError as e:
            logger.error(f"Failed to persist job {job.job_id}: {e}")

    def load(self, job_id: str) -> Optional[RenderJob]:
        path = self._path(job_id)
        if not path.exists():
            return None
        try:
            return RenderJob.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.error(f"Failed to load job {job_id}: {e}")
            return None

    def delete(self, job_id: str) -> None:
        try:
            self._path(job_id).unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to delete job record {job_id}: {e}")

    def list_jobs(self) -> list[RenderJob]:
        if not self.jobs_dir.exists():
            return []
        jobs = []
        for f in sorted(self.jobs_dir.glob("*.json")):
            job = self.load(f.stem)
            if job:
                jobs.append(job)
        return jobs

    def load_incomplete(self) -> list[RenderJob]:
        return [j for j in self.list_jobs() if j.status not in TERMINAL_STATUSES]

    def cleanup_old(self, max_age: float, now: Optional[float] = None) -> int:
        """Delete terminal job records not updated for max_age seconds."""
        now = now or time.time()
        removed = 0
        for job in self.list_jobs():
            if job.status in TERMINAL_STATUSES and now - job.updated_at > max_age:
                self.delete(job.job_id)
                removed += 1
        if removed:
            logger.info(f"Removed {removed} old job records")
        return removed


# ---------------------------------------------------------------------------
# Timeout monitor
# ---------------------------------------------------------------------------

class TimeoutManager:
    """
    Watches encoding jobs. A job whose last heartbeat is older than
    stall_timeout, or that has been encoding for longer than max_job_time,
    is reported once through on_timeout(job_id, reason) and then forgotten.
    """

    def __init__(
        self,
        on_timeout: Callable[[str, str], None],
        stall_timeout: Optional[float] = None,
        max_job_time: Optional[float] = None,
        check_interval: Optional[float] = None,
    ) -> None:
        self.on_timeout     = on_timeout
        self.stall_timeout  = stall_timeout  or render_config.STALL_TIMEOUT
        self.max_job_time   = max_job_time   or render_config.MAX_JOB_TIME
        self.check_interval = check_interval or render_config.TIMEOUT_CHECK_INTERVAL
        self._tracked: dict[str, dict] = {}
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._tracked.clear()

    def track(self, job_id: str) -> None:
        now = time.monotonic()
        self._tracked[job_id] = {"last_heartbeat": now, "started_at": now}

    def heartbeat(self, job_id: str) -> None:
        tracked = self._tracked.get(job_id)
        if tracked:
            tracked["last_heartbeat"] = time.monotonic()

    def untrack(self, job_id: str) -> None:
        self._tracked.pop(job_id, None)

    def is_tracked(self, job_id: str) -> bool:
        return job_id in self._tracked

    def check(self, now: Optional[float] = None) -> list[tuple[str, str]]:
        now = time.monotonic() if now is None else now
        fired = []
        for job_id, t in list(self._tracked.items()):
            if now - t["last_heartbeat"] > self.stall_timeout:
                fired.append((job_id, "stall"))
            elif now - t["started_at"] > self.max_job_time:
                fired.append((job_id, "timeout"))
        for job_id, reason in fired:
            self.untrack(job_id)
            self.on_timeout(job_id, reason)
        return fired

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            try:
                self.check()
            except Exception:
                logger.exception("Timeout check failed")


# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------

class JobQueue:

    def __init__(
        self,
        store: Optional[JobStore] = None,
        stall_timeout: Optional[float] = None,
        max_job_time: Optional[float] = None,
    ) -> None:
        self.store = store or JobStore()
        self.timeouts = TimeoutManager(self._handle_timeout, stall_timeout, max_job_time)
        self._jobs:        dict[str, RenderJob] = {}
        self._subscribers: dict[str, list[ProgressCallback]] = {}
        self._queued:      list[str] = []      # job ids in queued state, FIFO
        self._processor:   Optional[Callable[[RenderJob], Awaitable[object]]] = None
        self._cancel_handler: Optional[Callable[[str], Awaitable[object]]] = None
        self._tasks: set[asyncio.Task] = set()

    # -- wiring -------------------------------------------------------------

    def set_job_processor(self, processor: Callable[[RenderJob], Awaitable[object]]) -> None:
        """processor(job) hands a queued job to the worker pool; it must not block on the encode."""
        self._processor = processor

    def set_cancel_handler(self, handler: Callable[[str], Awaitable[object]]) -> None:
        self._cancel_handler = handler

    async def initialize(self) -> None:
        """Recover persisted jobs and start the timeout monitor."""
        to_dispatch = []
        for job in self.store.load_incomplete():
            self._jobs[job.job_id] = job
            if job.status == JobStatus.ENCODING:
                # The worker died with the previous process; status cannot go back.
                self.update_job_status(job.job_id, JobStatus.FAILED, last_error="Interrupted by server restart")
            elif job.status == JobStatus.QUEUED:
                self._queued.append(job.job_id)
                to_dispatch.append(job)
        if self._jobs:
            logger.info(f"Recovered {len(self._jobs)} incomplete jobs ({len(to_dispatch)} queued)")

        self.timeouts.start()
        for job in to_dispatch:
            await self._dispatch(job)

    async def shutdown(self) -> None:
        await self.timeouts.stop()
        for task in list(self._tasks):
            task.cancel()
        self._subscribers.clear()
        logger.info("Job queue shut down")

    # -- creation and lookup -----------------------------------------------

    def create_job(
        self,
        session_id: str,
        fps: Optional[float] = None,
        encoder: Optional[str] = None,
        quality: Optional[int] = None,
        fallbacks: tuple[str, ...] = (),
    ) -> RenderJob:
        job = create_render_job(session_id, fps=fps, encoder=encoder, quality=quality, fallbacks=fallbacks)
        self._jobs[job.job_id] = job
        self.store.save(job)
        logger.info(f"Created job {job.job_id} for session {session_id} ({job.config.encoder} @ {job.config.fps}fps)")
        self._emit(job)
        return job

    def get_job(self, job_id: str) -> Optional[RenderJob]:
        return self._jobs.get(job_id)

    def require_job(self, job_id: str) -> RenderJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def get_job_by_session(self, session_id: str) -> Optional[RenderJob]:
        for job in self._jobs.values():
            if job.session_id == session_id:
                return job
        return None

    def list_jobs(self) -> list[RenderJob]:
        return list(self._jobs.values())

    # -- upload phase ------------------------------------------------------

    def set_total_frames(self, job_id: str, total_frames: int) -> None:
        job = self.require_job(job_id)
        if job.status not in (JobStatus.PENDING, JobStatus.UPLOADING):
            raise InvalidTransitionError(f"Cannot change frame count of a {job.status.value} job")
        if total_frames < 0:
            raise FrameCountMismatchError("totalFrames must not be negative")
        job.frame_manifest.total_frames = total_frames
        job.updated_at = time.time()
        self.store.save(job)

    def set_fps(self, job_id: str, fps: float) -> RenderJob:
        """Late fps for a job whose init did not choose one. Fixed from queueing on."""
        job = self.require_job(job_id)
        if fps == job.config.fps:
            return job
        if job.status not in (JobStatus.PENDING, JobStatus.UPLOADING):
            raise InvalidTransitionError(f"Cannot change fps of a {job.status.value} job")
        if job.fps_fixed:
            raise ConfigImmutableError(
                f"fps is fixed at session init ({job.config.fps})", fps=job.config.fps,
            )
        job.config = EncodingConfig.model_validate({**job.config.model_dump(), "fps": fps})
        job.updated_at = time.time()
        self.store.save(job)
        logger.info(f"Job {job_id} fps set to {fps}")
        return job

    def register_frames(
        self,
        job_id: str,
        count: int,
        checksums: Optional[list[FrameChecksum]] = None,
    ) -> RenderJob:
        """Record one uploaded chunk. Counts only ever add up, so chunk order does not matter."""
        job = self.require_job(job_id)
        if job.status not in (JobStatus.PENDING, JobStatus.UPLOADING):
            raise InvalidTransitionError(f"Job {job_id} is {job.status.value}, not accepting frames")
        if count < 0:
            raise FrameCountMismatchError("Frame count must not be negative")

        manifest = job.frame_manifest
        manifest.received_frames += count
        for cs in checksums or []:
            manifest.checksums[cs.frame_index] = cs

        job.status = JobStatus.UPLOADING
        job.updated_at = time.time()
        self.store.save(job)
        self._emit(job)
        return job

    async def queue_job(self, job_id: str, dispatch: bool = True) -> RenderJob:
        """uploading -> queued, then hand the job to the processor unless dispatch is False."""
        job = self.require_job(job_id)
        if job.status not in (JobStatus.PENDING, JobStatus.UPLOADING):
            raise InvalidTransitionError(f"Job {job_id} is {job.status.value}, cannot queue")

        manifest = job.frame_manifest
        if not manifest.total_frames:
            raise FrameCountMismatchError(f"Job {job_id} has no expected frame count")
        if manifest.received_frames < manifest.total_frames:
            raise FrameCountMismatchError(
                f"Job {job_id} received {manifest.received_frames} of {manifest.total_frames} frames",
                receivedFrames=manifest.received_frames,
                totalFrames=manifest.total_frames,
            )

        manifest.validated = True
        manifest.missing_frames = []
        job.fps_fixed = True
        self._queued.append(job_id)
        self.update_job_status(job_id, JobStatus.QUEUED)
        logger.info(f"Job {job_id} queued ({len(self._queued)} waiting)")
        if dispatch:
            await self._dispatch(job)
        return job

    async def _dispatch(self, job: RenderJob) -> None:
        if self._processor is None:
            logger.warning(f"No job processor registered, job {job.job_id} stays queued")
            return
        try:
            await self._processor(job)
        except Exception as e:
            logger.exception(f"Dispatch of job {job.job_id} failed")
            self.update_job_status(job.job_id, JobStatus.FAILED, last_error=f"Dispatch failed: {e}")

    # -- state changes -----------------------------------------------------

    def update_job_status(self, job_id: str, status: JobStatus, **patch) -> bool:
        """
        Apply a transition plus field patch. Returns False (and changes
        nothing) when the job is unknown or the transition is not allowed.
        """
        job = self._jobs.get(job_id)
        if job is None:
            logger.warning(f"Status update for unknown job {job_id}")
            return False
        if not can_transition(job.status, status):
            logger.debug(f"Ignoring {job.status.value} -> {status.value} for job {job_id}")
            return False

        for key, value in patch.items():
            if key not in _PATCHABLE:
                raise ValueError(f"Field {key!r} cannot be patched")
            if key == "progress":
                value = max(job.progress, int(value))
            setattr(job, key, value)

        now = time.time()
        if status == JobStatus.ENCODING and job.status != JobStatus.ENCODING:
            job.started_at = now
            self.timeouts.track(job_id)
        elif status == JobStatus.COMPLETE:
            job.progress = 100
            job.completed_at = now
        elif status == JobStatus.FAILED:
            job.completed_at = now

        if status in TERMINAL_STATUSES:
            self.timeouts.untrack(job_id)
        if status != JobStatus.QUEUED and job_id in self._queued:
            self._queued.remove(job_id)

        job.status = status
        job.updated_at = now
        self.store.save(job)
        if status in TERMINAL_STATUSES:
            logger.info(f"Job {job_id} {status.value}" + (f": {job.last_error}" if job.last_error else ""))
        self._emit(job)
        return True

    def update_job_progress(
        self,
        job_id: str,
        progress: int,
        current_frame: Optional[int] = None,
        encoding_speed: Optional[str] = None,
    ) -> bool:
        """Progress only counts while encoding and never goes down. Not persisted."""
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.ENCODING:
            return False
        self.timeouts.heartbeat(job_id)
        progress = min(int(progress), 99)
        if progress <= job.progress and (current_frame is None or current_frame <= job.current_frame):
            return False
        job.progress = max(job.progress, progress)
        if current_frame is not None:
            job.current_frame = max(job.current_frame, current_frame)
        if encoding_speed:
            job.encoding_speed = encoding_speed
        job.updated_at = time.time()
        self._emit(job)
        return True

    def record_heartbeat(self, job_id: str) -> None:
        self.timeouts.heartbeat(job_id)

    def handle_worker_message(self, msg) -> None:
        """Apply one event forwarded by the worker pool."""
        job = self._jobs.get(msg.job_id)
        if job is None:
            logger.debug(f"Worker event {msg.type} for unknown job {msg.job_id}")
            return

        if msg.type == WorkerMessageType.STARTED:
            if job.status == JobStatus.QUEUED:
                self.update_job_status(msg.job_id, JobStatus.ENCODING, worker_id=msg.worker_id)
        elif msg.type == WorkerMessageType.PROGRESS:
            self.update_job_progress(
                msg.job_id, msg.progress,
                current_frame=msg.current_frame, encoding_speed=msg.encoding_speed,
            )
        elif msg.type == WorkerMessageType.HEARTBEAT:
            self.record_heartbeat(msg.job_id)
        elif msg.type == WorkerMessageType.MEMORY_WARNING:
            self.record_heartbeat(msg.job_id)
            logger.warning(
                f"Job {msg.job_id} on {msg.worker_id} using {msg.memory_usage // (1024 * 1024)}MB"
            )
        elif msg.type == WorkerMessageType.COMPLETE:
            self.update_job_status(
                msg.job_id, JobStatus.COMPLETE,
                output_path=msg.output_path, output_size=msg.output_size, progress=100,
            )
        elif msg.type == WorkerMessageType.ERROR:
            self.update_job_status(msg.job_id, JobStatus.FAILED, last_error=msg.error)
        else:
            raise ValueError(f"Unhandled worker message type {msg.type}")

    async def cancel_job(self, job_id: str, reason: str = "Cancelled by user") -> RenderJob:
        job = self.require_job(job_id)
        if job.is_terminal:
            raise InvalidTransitionError(f"Job {job_id} is already {job.status.value}")
        self.update_job_status(job_id, JobStatus.FAILED, last_error=reason)
        if self._cancel_handler:
            await self._cancel_handler(job_id)
        return job

    def _handle_timeout(self, job_id: str, reason: str) -> None:
        if reason == "stall":
            message = f"Job stalled - no progress for {int(self.timeouts.stall_timeout)} seconds"
        else:
            message = f"Job exceeded maximum time limit ({int(self.timeouts.max_job_time // 60)} minutes)"
        logger.error(f"Job {job_id} timeout: {message}")
        if self.update_job_status(job_id, JobStatus.FAILED, last_error=message) and self._cancel_handler:
            task = asyncio.get_running_loop().create_task(self._cancel_handler(job_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    # -- removal -----------------------------------------------------------

    def remove_job(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._subscribers.pop(job_id, None)
        if job_id in self._queued:
            self._queued.remove(job_id)
        self.timeouts.untrack(job_id)
        self.store.delete(job_id)

    def sweep(self, max_age: Optional[float] = None, now: Optional[float] = None) -> list[str]:
        """
        Forget terminal jobs older than max_age and fail uploads that went
        quiet for that long. Their session directories are removed too.
        """
        max_age = render_config.JOB_RETENTION if max_age is None else max_age
        now = now or time.time()
        removed = []
        for job in list(self._jobs.values()):
            if now - job.updated_at <= max_age:
                continue
            if job.status in (JobStatus.PENDING, JobStatus.UPLOADING):
                self.update_job_status(job.job_id, JobStatus.FAILED, last_error="Abandoned: no upload activity")
            elif not job.is_terminal:
                continue
            self.remove_job(job.job_id)
            render_config.cleanup_session(job.session_id)
            removed.append(job.job_id)
        self.store.cleanup_old(max_age, now=now)
        if removed:
            logger.info(f"Swept {len(removed)} stale jobs")
        return removed

    # -- subscriptions -----------------------------------------------------

    def subscribe(self, job_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """
        Deliver the current snapshot now, then every update until the
        terminal one. Returns an unsubscribe function.
        """
        job = self.require_job(job_id)
        self._deliver(callback, self._progress_event(job))
        if job.is_terminal:
            return lambda: None

        self._subscribers.setdefault(job_id, []).append(callback)

        def unsubscribe() -> None:
            subs = self._subscribers.get(job_id)
            if subs and callback in subs:
                subs.remove(callback)
                if not subs:
                    del self._subscribers[job_id]

        return unsubscribe

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))

    def get_progress(self, job_id: str) -> JobProgress:
        return self._progress_event(self.require_job(job_id))

    def _emit(self, job: RenderJob) -> None:
        event = self._progress_event(job)
        subs = self._subscribers.get(job.job_id, [])
        if event.is_terminal:
            self._subscribers.pop(job.job_id, None)
        for callback in list(subs):
            self._deliver(callback, event)

    @staticmethod
    def _deliver(callback: ProgressCallback, event: JobProgress) -> None:
        try:
            callback(event)
        except Exception:
            logger.exception(f"Subscriber callback for job {event.job_id} failed")

    def _progress_event(self, job: RenderJob) -> JobProgress:
        manifest = job.frame_manifest
        total = manifest.total_frames
        if job.status == JobStatus.PENDING:
            message = "Initializing..."
        elif job.status == JobStatus.UPLOADING:
            message = f"Receiving frames ({manifest.received_frames}/{total or '?'})"
        elif job.status == JobStatus.QUEUED:
            pos = self._queued.index(job.job_id) + 1 if job.job_id in self._queued else 1
            message = f"Queued for encoding (position {pos})"
        elif job.status == JobStatus.ENCODING:
            message = f"Encoding frame {job.current_frame}/{total or '?'}"
        elif job.status == JobStatus.COMPLETE:
            message = "Export complete!"
        else:
            message = job.last_error or "Export failed"

        return JobProgress(
            job_id=job.job_id,
            status=job.status,
            progress=job.progress,
            message=message,
            current_frame=job.current_frame,
            total_frames=total,
            received_frames=manifest.received_frames,
            encoding_speed=job.encoding_speed,
            error=job.last_error if job.status == JobStatus.FAILED else None,
        )

    # -- stats -------------------------------------------------------------

    def get_stats(self) -> dict:
        stats = {s.value: 0 for s in JobStatus}
        for job in self._jobs.values():
            stats[job.status.value] += 1
        stats["total"] = len(self._jobs)
        return stats
