"""
render_worker.py - Encoding worker process.

Started by the pool as `python -m render_worker` with WORKER_ID set. Reads
one JSON message per line on stdin (START_JOB, CANCEL_JOB, SHUTDOWN) and
writes one JSON message per line on stdout (STARTED, PROGRESS, HEARTBEAT,
MEMORY_WARNING, COMPLETE, ERROR). Logging goes to stderr.

Each job runs ffmpeg in a thread of its own so the main thread keeps
reading control messages; a second thread sends heartbeats and memory
checks, and a watchdog kills ffmpeg if its frame counter stops moving.
"""

import logging
import os
import re
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

import render_config
import render_encoder
import render_validation
from render_jobs import (
    CompleteMessage,
    ErrorMessage,
    HeartbeatMessage,
    MainMessageType,
    MemoryWarningMessage,
    ProgressMessage,
    RenderJob,
    StartedMessage,
    encode_message,
    parse_main_message,
)

logger = logging.getLogger("export.worker")

FRAME_RE = re.compile(r"frame=\s*(\d+)")
SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")

STDERR_TAIL = 50        # lines kept for error reports and fallback detection
WATCHDOG_POLL = 5.0

# ---------------------------------------------------------------------------
# ffmpeg output parsing
# ---------------------------------------------------------------------------

def parse_ffmpeg_progress(line: str) -> Optional[tuple[int, str]]:
    """
    'frame=  120 fps= 30 ... speed=1.5x' -> (120, '1.5x').
    Lines without a frame counter return None; a missing speed is 'N/A'.
    """
    m = FRAME_RE.search(line)
    if not m:
        return None
    s = SPEED_RE.search(line)
    return int(m.group(1)), f"{s.group(1)}x" if s else "N/A"


def progress_percent(frame: int, total: int) -> int:
    """Rounded percentage, held at 99 until the encode has actually finished."""
    if total <= 0:
        return 0
    return min(99, round(frame / total * 100))


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------

def read_rss(pid="self") -> int:
    """Resident set size in bytes from /proc, 0 if unavailable."""
    try:
        with open(f"/proc/{pid}/status") as f:
            for line in f:
                if line.startswith("VmRSS:"):
                    return int(line.split()[1]) * 1024
    except (OSError, ValueError):
        pass
    return 0


def apply_memory_limit(limit_mb: int) -> None:
    """Soft address-space ceiling for this process."""
    try:
        import resource
        _, hard = resource.getrlimit(resource.RLIMIT_AS)
        soft = limit_mb * 1024 * 1024
        if hard != resource.RLIM_INFINITY:
            soft = min(soft, hard)
        resource.setrlimit(resource.RLIMIT_AS, (soft, hard))
        logger.info(f"Memory limit set to {limit_mb}MB")
    except (ImportError, ValueError, OSError) as e:
        logger.warning(f"Could not set memory limit: {e}")


def lift_memory_limit(pid: int) -> None:
    """ffmpeg inherits our ceiling; give it the hard limit back."""
    try:
        import resource
        _, hard = resource.getrlimit(resource.RLIMIT_AS)
        resource.prlimit(pid, resource.RLIMIT_AS, (hard, hard))
    except (ImportError, AttributeError, ValueError, OSError) as e:
        logger.debug(f"Could not lift memory limit for pid {pid}: {e}")


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class EncodeWorker:

    def __init__(self, worker_id: str, out=None) -> None:
        self.worker_id      = worker_id
        self.current_job_id: Optional[str] = None
        self._out           = out or sys.stdout
        self._out_lock      = threading.Lock()
        self._proc:          Optional[subprocess.Popen] = None
        self._proc_lock     = threading.Lock()
        self._cancelled     = threading.Event()
        self._job_thread:    Optional[threading.Thread] = None

    def send(self, msg) -> None:
        with self._out_lock:
            self._out.write(encode_message(msg))
            self._out.flush()

    # -- control messages --------------------------------------------------

    def handle(self, msg) -> bool:
        """Apply one control message. Returns False when the worker should exit."""
        if msg.type == MainMessageType.START_JOB:
            if self.current_job_id:
                logger.error(f"Got job {msg.job.job_id} while busy with {self.current_job_id}")
                self.send(ErrorMessage(
                    job_id=msg.job.job_id, worker_id=self.worker_id,
                    error=f"Worker {self.worker_id} is busy",
                ))
            else:
                self.start_job(msg.job, msg.session_dir)
        elif msg.type == MainMessageType.CANCEL_JOB:
            self.cancel()
        elif msg.type == MainMessageType.SHUTDOWN:
            logger.info("Shutdown requested")
            return False
        return True

    def start_job(self, job: RenderJob, session_dir: str) -> None:
        self._cancelled.clear()
        self.current_job_id = job.job_id
        self._job_thread = threading.Thread(
            target=self._run_job,
            args=(job, Path(session_dir)),
            daemon=True,
            name=f"job-{job.job_id}",
        )
        self._job_thread.start()

    def cancel(self) -> None:
        if not self.current_job_id:
            return
        logger.info(f"Cancelling job {self.current_job_id}")
        self._cancelled.set()
        with self._proc_lock:
            if self._proc and self._proc.poll() is None:
                self._proc.terminate()

    def stop(self, timeout: float = 4.0) -> None:
        self.cancel()
        if self._job_thread and self._job_thread.is_alive():
            self._job_thread.join(timeout=timeout)

    # -- job execution -----------------------------------------------------

    def _run_job(self, job: RenderJob, session: Path) -> None:
        logger.info(
            f"Starting job {job.job_id}: {job.frame_manifest.total_frames} frames "
            f"@ {job.config.fps}fps with {job.config.encoder}"
        )
        self.send(StartedMessage(job_id=job.job_id, worker_id=self.worker_id))

        monitor_stop = threading.Event()
        monitor = threading.Thread(
            target=self._monitor, args=(job.job_id, monitor_stop), daemon=True,
        )
        monitor.start()
        try:
            result = self._encode(job, session)
        except Exception as e:
            logger.exception(f"Job {job.job_id} crashed")
            result = self._error(job, f"Encoding failed: {e}")
        finally:
            monitor_stop.set()
            monitor.join(timeout=2)

        self.current_job_id = None
        self.send(result)

    def _error(self, job: RenderJob, error: str) -> ErrorMessage:
        return ErrorMessage(job_id=job.job_id, worker_id=self.worker_id, error=error)

    def _encode(self, job: RenderJob, session: Path):
        total  = job.frame_manifest.total_frames or 0
        fps    = job.config.fps
        output = session / render_config.OUTPUT_FILENAME
        chain  = render_encoder.retry_chain(job.config.encoder, job.config.fallbacks)

        for i, encoder in enumerate(chain):
            cmd = render_encoder.build_ffmpeg_cmd(session, fps, encoder, job.config.quality, output)
            rc, stderr, stalled = self._run_ffmpeg(cmd, job, total)
            if (
                rc == 0
                or self._cancelled.is_set()
                or stalled
                or i == len(chain) - 1
                or not render_encoder.needs_software_fallback(encoder, stderr)
            ):
                break
            logger.warning(f"{encoder} failed on job {job.job_id}, retrying with {chain[i + 1]}")

        if self._cancelled.is_set():
            return self._error(job, "Job cancelled")
        if stalled:
            return self._error(
                job, f"ffmpeg made no progress for {int(render_config.WATCHDOG_TIMEOUT)}s and was killed",
            )
        if rc != 0:
            last = stderr.strip().splitlines()[-3:]
            detail = " | ".join(last) if last else "no output"
            return self._error(job, f"ffmpeg exited with code {rc}: {detail}")

        if not output.is_file() or output.stat().st_size == 0:
            return self._error(job, "Output file missing or empty")

        size = output.stat().st_size
        problem = render_validation.post_encode_check(output, total, fps, job.job_id)
        if problem:
            return self._error(job, problem)
        logger.info(f"Job {job.job_id} complete: {size / 1024 / 1024:.2f}MB with {encoder}")
        return CompleteMessage(
            job_id=job.job_id, worker_id=self.worker_id,
            output_path=str(output), output_size=size,
        )

    def _run_ffmpeg(self, cmd: list[str], job: RenderJob, total: int) -> tuple[int, str, bool]:
        """
        Run ffmpeg, turning its stats lines into PROGRESS messages.
        Returns (returncode, stderr_tail, killed_by_watchdog).
        """
        tail: deque = deque(maxlen=STDERR_TAIL)
        state = {"frame": 0, "pct": 0, "last_progress": time.monotonic(), "stalled": False}
        watchdog_stop = threading.Event()

        logger.info(f"Running: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            return -1, str(e), False

        with self._proc_lock:
            self._proc = proc
            if self._cancelled.is_set():
                proc.terminate()
        lift_memory_limit(proc.pid)

        def watchdog():
            while not watchdog_stop.wait(WATCHDOG_POLL):
                elapsed = time.monotonic() - state["last_progress"]
                if elapsed > render_config.WATCHDOG_TIMEOUT:
                    logger.warning(f"WATCHDOG: no frame progress for {int(elapsed)}s on job {job.job_id}, killing ffmpeg")
                    state["stalled"] = True
                    proc.kill()
                    break

        t_wd = threading.Thread(target=watchdog, daemon=True)
        t_wd.start()
        try:
            # Universal newlines split ffmpeg's \r-terminated stats lines.
            for line in proc.stderr:
                line = line.rstrip()
                if not line:
                    continue
                tail.append(line)
                parsed = parse_ffmpeg_progress(line)
                if parsed is None:
                    continue
                frame, speed = parsed
                if frame > state["frame"]:
                    state["frame"] = frame
                    state["last_progress"] = time.monotonic()
                pct = progress_percent(frame, total)
                if pct > state["pct"] and not self._cancelled.is_set():
                    state["pct"] = pct
                    self.send(ProgressMessage(
                        job_id=job.job_id, worker_id=self.worker_id,
                        progress=pct, current_frame=frame,
                        total_frames=total, encoding_speed=speed,
                    ))
            rc = proc.wait()
        finally:
            watchdog_stop.set()
            t_wd.join(timeout=WATCHDOG_POLL + 1)
            with self._proc_lock:
                self._proc = None

        return rc, "\n".join(tail), state["stalled"]

    def _monitor(self, job_id: str, stop: threading.Event) -> None:
        limit = render_config.MEMORY_WARNING_MB * 1024 * 1024
        while not stop.wait(render_config.HEARTBEAT_INTERVAL):
            self.send(HeartbeatMessage(job_id=job_id, worker_id=self.worker_id))
            usage = read_rss()
            with self._proc_lock:
                if self._proc is not None:
                    usage += read_rss(self._proc.pid)
            if usage > limit:
                logger.warning(f"Memory usage {usage // (1024 * 1024)}MB above {render_config.MEMORY_WARNING_MB}MB")
                self.send(MemoryWarningMessage(job_id=job_id, worker_id=self.worker_id, memory_usage=usage))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> int:
    worker_id = os.environ.get("WORKER_ID") or f"worker_{os.getpid()}"
    # The pool relays stderr into its own log, file handler included.
    render_config.setup_logging(stream=sys.stderr)
    apply_memory_limit(render_config.WORKER_MEMORY_LIMIT_MB)

    worker = EncodeWorker(worker_id)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping")
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    logger.info(f"Worker {worker_id} ready (pid={os.getpid()})")
    try:
        for raw in sys.stdin:
            line = raw.strip()
            if not line:
                continue
            try:
                msg = parse_main_message(line)
            except ValidationError as e:
                logger.error(f"Ignoring malformed message: {e}")
                continue
            if not worker.handle(msg):
                break
    finally:
        worker.stop()
        logger.info(f"Worker {worker_id} exiting")
    return 0


if __name__ == "__main__":
    sys.exit(main())
