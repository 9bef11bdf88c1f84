"""
render_pool.py - Supervises the encoding worker processes.

Each worker is `python -m render_worker` with a JSON-lines channel on its
stdin/stdout; its stderr carries log output that is relayed into this
process's log. The pool owns the worker registry and the FIFO list of jobs
waiting for a free worker. All of its state is touched only from the event
loop, through the methods below.

Worker lifecycle: spawning -> idle <-> busy -> exited (respawned after
WORKER_RESTART_DELAY unless the pool is shutting down).
"""

import asyncio
import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

import render_config
from render_jobs import (
    CancelJobMessage,
    ErrorMessage,
    RenderJob,
    ShutdownMessage,
    StartJobMessage,
    WorkerMessageType,
    encode_message,
    parse_worker_message,
)

logger = logging.getLogger("export.pool")

BASE_DIR = Path(__file__).parent

MessageCallback = Callable[[str, object], None]
ExitCallback    = Callable[[str, Optional[int]], None]

# ---------------------------------------------------------------------------
# Worker subprocess handle
# ---------------------------------------------------------------------------

class WorkerProcess:
    """
    One worker subprocess. Reader tasks turn stdout lines into worker
    messages and stderr lines into log records; on exit the remaining
    stdout is drained before on_exit fires, so a COMPLETE written just
    before exiting is never lost.
    """

    def __init__(
        self,
        worker_id: str,
        on_message: MessageCallback,
        on_exit: ExitCallback,
        cmd: Optional[list[str]] = None,
    ) -> None:
        self.worker_id   = worker_id
        self.cmd         = cmd or [sys.executable, "-m", "render_worker"]
        self.on_message  = on_message
        self.on_exit     = on_exit
        self.proc:        Optional[asyncio.subprocess.Process] = None
        self._msg_task:   Optional[asyncio.Task] = None
        self._log_task:   Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        env = {
            **os.environ,
            "WORKER_ID":        self.worker_id,
            "PYTHONUNBUFFERED": "1",
        }
        self.proc = await asyncio.create_subprocess_exec(
            *self.cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=str(BASE_DIR),
        )
        logger.info(f"Worker {self.worker_id} started (pid={self.proc.pid})")

        self._msg_task   = asyncio.create_task(self._read_messages())
        self._log_task   = asyncio.create_task(self._read_logs())
        self._watch_task = asyncio.create_task(self._watch_exit())

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode if self.proc else None

    async def send(self, msg) -> None:
        """Raises ConnectionError if the worker's stdin is gone."""
        if self.proc is None or self.proc.stdin is None or self.proc.returncode is not None:
            raise ConnectionError(f"Worker {self.worker_id} is not running")
        self.proc.stdin.write(encode_message(msg).encode())
        await self.proc.stdin.drain()

    def terminate(self) -> None:
        if self.proc and self.proc.returncode is None:
            self.proc.terminate()

    def kill(self) -> None:
        if self.proc and self.proc.returncode is None:
            self.proc.kill()

    async def wait(self) -> Optional[int]:
        if self.proc is None:
            return None
        return await self.proc.wait()

    async def _read_messages(self) -> None:
        async for raw in self.proc.stdout:
            line = raw.decode(errors="replace").strip()
            if not line:
                continue
            try:
                msg = parse_worker_message(line)
            except ValidationError:
                logger.warning(f"[{self.worker_id}] non-protocol output: {line[:200]}")
                continue
            self.on_message(self.worker_id, msg)

    async def _read_logs(self) -> None:
        async for raw in self.proc.stderr:
            line = raw.decode(errors="replace").rstrip()
            if line:
                logger.info(f"[{self.worker_id}] {line}")

    async def _watch_exit(self) -> None:
        rc = await self.proc.wait()
        try:
            await asyncio.wait_for(self._msg_task, timeout=5)
        except asyncio.TimeoutError:
            self._msg_task.cancel()
        except Exception:
            logger.exception(f"Message reader of {self.worker_id} failed")
        self.on_exit(self.worker_id, rc)


async def spawn_worker_process(worker_id: str, on_message: MessageCallback, on_exit: ExitCallback) -> WorkerProcess:
    handle = WorkerProcess(worker_id, on_message, on_exit)
    await handle.start()
    return handle


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------

class WorkerInfo:

    def __init__(self, worker_id: str, handle) -> None:
        self.handle         = handle
        self.worker_id      = worker_id
        self.current_job_id: Optional[str] = None
        self.started_at     = time.time()
        self.memory_usage   = 0
        self.is_healthy     = True

    @property
    def is_idle(self) -> bool:
        return self.current_job_id is None and self.is_healthy

    def to_dict(self) -> dict:
        return {
            "workerId":     self.worker_id,
            "pid":          getattr(self.handle, "pid", None),
            "currentJobId": self.current_job_id,
            "startedAt":    self.started_at,
            "memoryUsage":  self.memory_usage,
            "isHealthy":    self.is_healthy,
        }


class WorkerPool:
    """
    Assigns jobs to worker processes.

    on_message(msg) receives every worker message (and the synthesized
    ERROR for a crashed worker's job). spawner(worker_id, on_message,
    on_exit) must return a started handle with send/terminate/kill/wait;
    tests pass an in-process fake.
    """

    def __init__(
        self,
        on_message: Optional[Callable[[object], None]] = None,
        max_workers: Optional[int] = None,
        restart_delay: Optional[float] = None,
        shutdown_grace: Optional[float] = None,
        spawner: Optional[Callable[..., Awaitable[object]]] = None,
    ) -> None:
        self._on_message    = on_message
        self.max_workers    = max_workers    or render_config.MAX_WORKERS
        self.restart_delay  = render_config.WORKER_RESTART_DELAY  if restart_delay  is None else restart_delay
        self.shutdown_grace = render_config.WORKER_SHUTDOWN_GRACE if shutdown_grace is None else shutdown_grace
        self._spawner       = spawner or spawn_worker_process

        self._workers: dict[str, WorkerInfo] = {}
        self._pending: list[tuple[RenderJob, str]] = []
        self._tasks:   set[asyncio.Task] = set()
        self._shutting_down = False

    def set_message_handler(self, handler: Callable[[object], None]) -> None:
        self._on_message = handler

    async def initialize(self) -> None:
        """Pre-spawn one worker so the first job does not wait for interpreter startup."""
        await self._spawn_worker()
        logger.info(f"Worker pool ready (max {self.max_workers} workers)")

    # -- workers -----------------------------------------------------------

    @property
    def workers(self) -> list[WorkerInfo]:
        return list(self._workers.values())

    @property
    def pending(self) -> list[str]:
        return [job.job_id for job, _ in self._pending]

    def worker_for_job(self, job_id: str) -> Optional[WorkerInfo]:
        for w in self._workers.values():
            if w.current_job_id == job_id:
                return w
        return None

    def _idle_worker(self) -> Optional[WorkerInfo]:
        for w in self._workers.values():
            if w.is_idle:
                return w
        return None

    async def _spawn_worker(self) -> Optional[WorkerInfo]:
        if self._shutting_down:
            return None
        worker_id = f"worker_{uuid.uuid4().hex[:8]}"
        try:
            handle = await self._spawner(worker_id, self._on_worker_message, self._on_worker_exit)
        except Exception as e:
            logger.error(f"Failed to spawn worker {worker_id}: {e}")
            return None
        info = WorkerInfo(worker_id, handle)
        self._workers[worker_id] = info
        return info

    # -- jobs --------------------------------------------------------------

    async def submit_job(self, job: RenderJob, session_dir) -> None:
        """Assign to an idle worker, spawn one if below capacity, or wait in the pending list."""
        worker = self._idle_worker()
        if worker is None and len(self._workers) < self.max_workers:
            worker = await self._spawn_worker()

        if worker is None:
            if not self._workers:
                self._forward(ErrorMessage(
                    job_id=job.job_id, worker_id="pool",
                    error="No encoding worker could be started",
                ))
                return
            self._pending.append((job, str(session_dir)))
            logger.info(f"Job {job.job_id} waiting for a worker ({len(self._pending)} pending)")
            return

        await self._assign(worker, job, str(session_dir))

    async def _assign(self, worker: WorkerInfo, job: RenderJob, session_dir: str) -> None:
        # Claim the worker before the first await so no other submit can pick it.
        worker.current_job_id = job.job_id
        worker.started_at = time.time()
        logger.info(f"Assigning job {job.job_id} to {worker.worker_id}")
        try:
            await worker.handle.send(StartJobMessage(job=job, session_dir=session_dir))
        except (ConnectionError, OSError) as e:
            logger.error(f"Failed to send job {job.job_id} to {worker.worker_id}: {e}")
            worker.current_job_id = None
            worker.is_healthy = False
            self._pending.insert(0, (job, session_dir))
            worker.handle.terminate()

    async def drain_pending(self) -> None:
        """One pending job per idle worker, oldest first."""
        while self._pending and not self._shutting_down:
            worker = self._idle_worker()
            if worker is None:
                if len(self._workers) >= self.max_workers:
                    return
                worker = await self._spawn_worker()
                if worker is None:
                    return
            job, session_dir = self._pending.pop(0)
            await self._assign(worker, job, session_dir)

    async def cancel_job(self, job_id: str) -> bool:
        for i, (job, _) in enumerate(self._pending):
            if job.job_id == job_id:
                del self._pending[i]
                logger.info(f"Removed pending job {job_id}")
                return True

        worker = self.worker_for_job(job_id)
        if worker is None:
            return False
        logger.info(f"Cancelling job {job_id} on {worker.worker_id}")
        try:
            await worker.handle.send(CancelJobMessage())
        except (ConnectionError, OSError) as e:
            logger.error(f"Cancel of {job_id} could not reach {worker.worker_id}: {e}")
            worker.is_healthy = False
            worker.handle.terminate()
        return True

    # -- worker events -----------------------------------------------------

    def _forward(self, msg) -> None:
        if self._on_message is None:
            return
        try:
            self._on_message(msg)
        except Exception:
            logger.exception(f"Handler for {msg.type} of job {msg.job_id} failed")

    def _schedule(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_worker_message(self, worker_id: str, msg) -> None:
        worker = self._workers.get(worker_id)

        if msg.type == WorkerMessageType.MEMORY_WARNING:
            if worker:
                worker.memory_usage = msg.memory_usage
            logger.warning(f"{worker_id} memory high: {msg.memory_usage // (1024 * 1024)}MB (job {msg.job_id})")

        self._forward(msg)

        if msg.type in (WorkerMessageType.COMPLETE, WorkerMessageType.ERROR):
            if worker and worker.current_job_id == msg.job_id:
                worker.current_job_id = None
                worker.memory_usage = 0
            self._schedule(self.drain_pending())

    def _on_worker_exit(self, worker_id: str, returncode: Optional[int]) -> None:
        worker = self._workers.pop(worker_id, None)
        if worker is None:
            return

        if worker.current_job_id:
            logger.error(f"{worker_id} exited (rc={returncode}) while running job {worker.current_job_id}")
            self._forward(ErrorMessage(
                job_id=worker.current_job_id,
                worker_id=worker_id,
                error=f"Worker process exited unexpectedly (code {returncode})",
            ))
        elif not self._shutting_down:
            logger.warning(f"{worker_id} exited (rc={returncode})")

        if not self._shutting_down:
            self._schedule(self._respawn())

    async def _respawn(self) -> None:
        await asyncio.sleep(self.restart_delay)
        if self._shutting_down:
            return
        if len(self._workers) < self.max_workers:
            await self._spawn_worker()
        await self.drain_pending()

    # -- stats / shutdown --------------------------------------------------

    def get_stats(self) -> dict:
        workers = list(self._workers.values())
        return {
            "totalWorkers":     len(workers),
            "activeWorkers":    sum(1 for w in workers if w.current_job_id),
            "idleWorkers":      sum(1 for w in workers if w.is_idle),
            "unhealthyWorkers": sum(1 for w in workers if not w.is_healthy),
            "pendingJobs":      len(self._pending),
            "maxWorkers":       self.max_workers,
            "workers":          [w.to_dict() for w in workers],
        }

    async def shutdown(self) -> None:
        """SHUTDOWN to every worker, wait the grace period, kill the rest."""
        self._shutting_down = True
        for task in list(self._tasks):
            task.cancel()
        self._pending.clear()

        workers = list(self._workers.values())
        for w in workers:
            try:
                await w.handle.send(ShutdownMessage())
            except (ConnectionError, OSError):
                w.handle.terminate()

        if workers:
            done, stragglers = await asyncio.wait(
                [asyncio.ensure_future(w.handle.wait()) for w in workers],
                timeout=self.shutdown_grace,
            )
            if stragglers:
                logger.warning(f"Killing {len(stragglers)} workers that ignored SHUTDOWN")
                for w in workers:
                    if w.handle.returncode is None:
                        w.handle.kill()
                await asyncio.gather(*stragglers, return_exceptions=True)

        self._workers.clear()
        logger.info("Worker pool shut down")
