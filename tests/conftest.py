"""
Pytest fixtures for the render export tests.

Nothing here runs ffmpeg or starts real worker processes: FakeWorker stands
in for a worker subprocess, encoder detection sees an ffmpeg that only has
libx264, and every test gets its own data directory.
"""

import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest

import render_config
import render_encoder
from render_jobs import (
    CompleteMessage,
    ErrorMessage,
    MainMessageType,
    ProgressMessage,
    StartedMessage,
)

FRAME_BYTES = 2048


# =============================================================================
# Helpers
# =============================================================================


def write_frames(session: Path, indices, size: int = FRAME_BYTES) -> None:
    session.mkdir(parents=True, exist_ok=True)
    for i in indices:
        (session / (render_config.FRAME_PATTERN % i)).write_bytes(b"\xff\xd8" + bytes(size - 2))


def frame_upload(i: int, size: int = FRAME_BYTES):
    name = render_config.FRAME_PATTERN % i
    return ("frames", (name, b"\xff\xd8" + bytes([i % 256]) * (size - 2), "image/jpeg"))


class FakeWorker:
    """
    In-process stand-in for render_pool.WorkerProcess. With auto="complete"
    it answers START_JOB with STARTED, one PROGRESS and COMPLETE after
    writing a fake output.mp4 into the session directory.
    """

    def __init__(self, worker_id, on_message, on_exit, auto=None):
        self.worker_id  = worker_id
        self.on_message = on_message
        self.on_exit    = on_exit
        self.auto       = auto
        self.pid        = 4242
        self.returncode = None
        self.sent       = []
        self.current_job_id = None
        self.fail_sends = False
        self._exited    = asyncio.Event()

    @property
    def started_jobs(self) -> list[str]:
        return [m.job.job_id for m in self.sent if m.type == MainMessageType.START_JOB]

    async def send(self, msg) -> None:
        if self.returncode is not None or self.fail_sends:
            raise ConnectionError(f"{self.worker_id} is gone")
        self.sent.append(msg)
        if msg.type == MainMessageType.START_JOB:
            self.current_job_id = msg.job.job_id
            if self.auto:
                asyncio.get_running_loop().call_soon(self._run_auto, msg)
        elif msg.type == MainMessageType.CANCEL_JOB:
            if self.current_job_id:
                job_id, self.current_job_id = self.current_job_id, None
                asyncio.get_running_loop().call_soon(
                    self.emit, ErrorMessage(job_id=job_id, worker_id=self.worker_id, error="Job cancelled"),
                )
        elif msg.type == MainMessageType.SHUTDOWN:
            self.exit(0)

    def _run_auto(self, msg) -> None:
        job_id = msg.job.job_id
        total = msg.job.frame_manifest.total_frames or 1
        self.emit(StartedMessage(job_id=job_id, worker_id=self.worker_id))
        self.emit(ProgressMessage(
            job_id=job_id, worker_id=self.worker_id, progress=50,
            current_frame=total // 2, total_frames=total, encoding_speed="2.0x",
        ))
        if self.auto == "complete":
            output = Path(msg.session_dir) / render_config.OUTPUT_FILENAME
            output.write_bytes(b"\x00\x00\x00\x18ftypmp42" + bytes(4096))
            self.current_job_id = None
            self.emit(CompleteMessage(
                job_id=job_id, worker_id=self.worker_id,
                output_path=str(output), output_size=output.stat().st_size,
            ))
        elif self.auto == "error":
            self.current_job_id = None
            self.emit(ErrorMessage(job_id=job_id, worker_id=self.worker_id, error="ffmpeg exited with code 1"))

    def emit(self, msg) -> None:
        self.on_message(self.worker_id, msg)

    def exit(self, rc: int) -> None:
        if self.returncode is None:
            self.returncode = rc
            self._exited.set()
            self.on_exit(self.worker_id, rc)

    def crash(self, rc: int = 1) -> None:
        self.exit(rc)

    def terminate(self) -> None:
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)

    async def wait(self):
        await self._exited.wait()
        return self.returncode


class FakeSpawner:

    def __init__(self, auto=None):
        self.auto = auto
        self.workers: list[FakeWorker] = []

    async def __call__(self, worker_id, on_message, on_exit) -> FakeWorker:
        worker = FakeWorker(worker_id, on_message, on_exit, auto=self.auto)
        self.workers.append(worker)
        return worker

    @property
    def started_jobs(self) -> list[str]:
        return [job_id for w in self.workers for job_id in w.started_jobs]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def data_dir(tmp_path, monkeypatch) -> Path:
    """Point sessions/ and jobs/ at a fresh temp dir."""
    monkeypatch.setattr(render_config, "DATA_DIR", tmp_path)
    monkeypatch.setattr(render_config, "SESSIONS_DIR", tmp_path / "sessions")
    monkeypatch.setattr(render_config, "JOBS_DIR", tmp_path / "jobs")
    render_config.ensure_dirs()
    return tmp_path


@pytest.fixture
def software_only(monkeypatch):
    """ffmpeg -encoders lists nothing but libx264."""
    monkeypatch.setattr(render_encoder, "list_encoders", lambda ffmpeg_bin: " V....D libx264  H.264 / AVC\n")


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def api(data_dir, software_only, monkeypatch):
    """
    TestClient over the real app with a fresh queue and a pool of fake
    workers that complete every job.
    """
    from fastapi.testclient import TestClient

    from backend import main
    from render_pool import WorkerPool
    from render_queue import JobQueue

    fake_spawner = FakeSpawner(auto="complete")
    monkeypatch.setattr(main, "encoder_strategy", render_encoder.EncoderStrategy(test_encode=False))
    monkeypatch.setattr(main, "job_queue", JobQueue())
    monkeypatch.setattr(main, "worker_pool", WorkerPool(spawner=fake_spawner, restart_delay=0, shutdown_grace=1))

    with TestClient(main.app) as client:
        yield SimpleNamespace(client=client, spawner=fake_spawner, main=main, data_dir=data_dir)
