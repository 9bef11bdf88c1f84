"""
Tests for the worker pool: assignment, pending list, crash recovery,
cancellation and shutdown. Workers are in-process fakes,
except in TestWorkerProcess which runs a real Python child.

Run with: pytest tests/test_pool.py -v
"""

import asyncio
import sys
import textwrap

import pytest

from conftest import FakeSpawner
from render_jobs import (
    CancelJobMessage,
    CompleteMessage,
    ErrorMessage,
    JobStatus,
    MainMessageType,
    MemoryWarningMessage,
    ProgressMessage,
    StartedMessage,
    WorkerMessageType,
    create_render_job,
)
from render_pool import WorkerPool, WorkerProcess
from render_queue import JobQueue


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_pool(spawner, received=None, **kwargs):
    kwargs.setdefault("max_workers", 2)
    kwargs.setdefault("restart_delay", 0.01)
    kwargs.setdefault("shutdown_grace", 0.5)
    on_message = received.append if received is not None else None
    return WorkerPool(on_message=on_message, spawner=spawner, **kwargs)


def complete(worker, job_id):
    worker.emit(CompleteMessage(job_id=job_id, worker_id=worker.worker_id, output_path="/tmp/o.mp4", output_size=1))


# =============================================================================
# Assignment
# =============================================================================


class TestSubmit:

    @pytest.mark.asyncio
    async def test_initialize_prespawns_one_worker(self, spawner):
        pool = make_pool(spawner)
        await pool.initialize()
        assert len(spawner.workers) == 1
        assert pool.get_stats()["idleWorkers"] == 1

    @pytest.mark.asyncio
    async def test_uses_idle_worker_first(self, spawner):
        pool = make_pool(spawner)
        await pool.initialize()
        job = create_render_job("s1")
        await pool.submit_job(job, "/data/s1")

        assert len(spawner.workers) == 1
        assert spawner.workers[0].started_jobs == [job.job_id]
        assert pool.worker_for_job(job.job_id).worker_id == spawner.workers[0].worker_id

    @pytest.mark.asyncio
    async def test_overflow_goes_to_pending(self, spawner):
        pool = make_pool(spawner, max_workers=2)
        await pool.initialize()
        jobs = [create_render_job(f"s{i}") for i in range(5)]

        for n, job in enumerate(jobs, start=1):
            await pool.submit_job(job, f"/data/s{n}")
            assigned = len(spawner.started_jobs)
            assert len(pool.pending) == n - assigned

        assert len(spawner.workers) == 2
        assert all(len(w.started_jobs) == 1 for w in spawner.workers)
        assert pool.pending == [j.job_id for j in jobs[2:]]

    @pytest.mark.asyncio
    async def test_completion_drains_oldest_pending(self, spawner):
        pool = make_pool(spawner, max_workers=1)
        await pool.initialize()
        jobs = [create_render_job(f"s{i}") for i in range(3)]
        for job in jobs:
            await pool.submit_job(job, "/data/x")

        worker = spawner.workers[0]
        complete(worker, jobs[0].job_id)
        await settle()
        assert worker.started_jobs == [jobs[0].job_id, jobs[1].job_id]
        assert pool.pending == [jobs[2].job_id]

        worker.emit(ErrorMessage(job_id=jobs[1].job_id, worker_id=worker.worker_id, error="boom"))
        await settle()
        assert worker.started_jobs[-1] == jobs[2].job_id
        assert pool.pending == []

    @pytest.mark.asyncio
    async def test_messages_are_forwarded(self, spawner):
        received = []
        pool = make_pool(spawner, received)
        await pool.initialize()
        job = create_render_job("s1")
        await pool.submit_job(job, "/data/s1")

        worker = spawner.workers[0]
        worker.emit(StartedMessage(job_id=job.job_id, worker_id=worker.worker_id))
        worker.emit(MemoryWarningMessage(job_id=job.job_id, worker_id=worker.worker_id, memory_usage=1800 * 1024 * 1024))

        assert [m.type for m in received] == [WorkerMessageType.STARTED, WorkerMessageType.MEMORY_WARNING]
        # a memory warning is informational: the worker keeps its job
        assert pool.worker_for_job(job.job_id) is not None
        assert pool.get_stats()["workers"][0]["memoryUsage"] == 1800 * 1024 * 1024

    @pytest.mark.asyncio
    async def test_send_failure_requeues_job(self, spawner):
        pool = make_pool(spawner, max_workers=1)
        await pool.initialize()
        spawner.workers[0].fail_sends = True
        job = create_render_job("s1")

        await pool.submit_job(job, "/data/s1")
        assert pool.pending == [job.job_id]

        await asyncio.sleep(0.05)
        assert len(spawner.workers) == 2
        assert spawner.workers[1].started_jobs == [job.job_id]

    @pytest.mark.asyncio
    async def test_spawn_failure_with_no_workers_fails_job(self):
        async def broken_spawner(worker_id, on_message, on_exit):
            raise OSError("fork failed")

        received = []
        pool = make_pool(broken_spawner, received)
        await pool.initialize()
        job = create_render_job("s1")
        await pool.submit_job(job, "/data/s1")

        assert [m.type for m in received] == [WorkerMessageType.ERROR]
        assert received[0].job_id == job.job_id


# =============================================================================
# Crashes
# =============================================================================


class TestCrash:

    @pytest.mark.asyncio
    async def test_crash_synthesizes_error_and_respawns(self, spawner):
        received = []
        pool = make_pool(spawner, received)
        await pool.initialize()
        job = create_render_job("s1")
        await pool.submit_job(job, "/data/s1")

        crashed = spawner.workers[0]
        crashed.crash(rc=-11)
        assert received[-1].type == WorkerMessageType.ERROR
        assert received[-1].job_id == job.job_id
        assert "-11" in received[-1].error
        assert pool.get_stats()["totalWorkers"] == 0

        await asyncio.sleep(0.05)
        assert pool.get_stats()["totalWorkers"] == 1
        assert spawner.workers[-1] is not crashed

    @pytest.mark.asyncio
    async def test_crash_then_pending_job_runs_on_replacement(self, spawner):
        pool = make_pool(spawner, max_workers=1)
        await pool.initialize()
        first, second = create_render_job("s1"), create_render_job("s2")
        await pool.submit_job(first, "/data/s1")
        await pool.submit_job(second, "/data/s2")

        spawner.workers[0].crash()
        await asyncio.sleep(0.05)
        assert spawner.workers[-1].started_jobs == [second.job_id]

    @pytest.mark.asyncio
    async def test_crash_marks_queue_job_failed(self, spawner, data_dir):
        queue = JobQueue()
        pool = make_pool(spawner)
        pool.set_message_handler(queue.handle_worker_message)
        queue.set_job_processor(lambda job: pool.submit_job(job, "/data/s1"))
        await pool.initialize()

        job = queue.create_job("s1")
        queue.set_total_frames(job.job_id, 1)
        queue.register_frames(job.job_id, 1)
        await queue.queue_job(job.job_id)
        worker = spawner.workers[0]
        worker.emit(StartedMessage(job_id=job.job_id, worker_id=worker.worker_id))

        worker.crash()
        assert job.status == JobStatus.FAILED
        assert "exited unexpectedly" in job.last_error


# =============================================================================
# Cancellation and shutdown
# =============================================================================


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_pending_never_reaches_a_worker(self, spawner):
        pool = make_pool(spawner, max_workers=1)
        await pool.initialize()
        running, waiting = create_render_job("s1"), create_render_job("s2")
        await pool.submit_job(running, "/data/s1")
        await pool.submit_job(waiting, "/data/s2")

        assert await pool.cancel_job(waiting.job_id) is True
        assert pool.pending == []

        complete(spawner.workers[0], running.job_id)
        await settle()
        assert waiting.job_id not in spawner.started_jobs

    @pytest.mark.asyncio
    async def test_cancel_assigned_sends_cancel(self, spawner):
        pool = make_pool(spawner)
        await pool.initialize()
        job = create_render_job("s1")
        await pool.submit_job(job, "/data/s1")

        assert await pool.cancel_job(job.job_id) is True
        assert spawner.workers[0].sent[-1].type == MainMessageType.CANCEL_JOB

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, spawner):
        pool = make_pool(spawner)
        await pool.initialize()
        assert await pool.cancel_job("job_nope") is False

    @pytest.mark.asyncio
    async def test_no_progress_after_cancel(self, spawner, data_dir):
        queue = JobQueue()
        pool = make_pool(spawner)
        pool.set_message_handler(queue.handle_worker_message)
        queue.set_job_processor(lambda job: pool.submit_job(job, "/data/s1"))
        queue.set_cancel_handler(pool.cancel_job)
        await pool.initialize()

        job = queue.create_job("s1")
        queue.set_total_frames(job.job_id, 100)
        queue.register_frames(job.job_id, 100)
        await queue.queue_job(job.job_id)
        worker = spawner.workers[0]
        worker.emit(StartedMessage(job_id=job.job_id, worker_id=worker.worker_id))

        events = []
        queue.subscribe(job.job_id, events.append)
        await queue.cancel_job(job.job_id)
        seen = len(events)

        worker.emit(ProgressMessage(
            job_id=job.job_id, worker_id=worker.worker_id, progress=70,
            current_frame=70, total_frames=100, encoding_speed="1.0x",
        ))
        await settle()

        assert job.status == JobStatus.FAILED
        assert len(events) == seen
        assert events[-1].status == JobStatus.FAILED
        # the worker acknowledged with its own ERROR and is free again
        assert pool.get_stats()["idleWorkers"] == 1


class TestShutdown:

    @pytest.mark.asyncio
    async def test_shutdown_stops_workers_without_respawn(self, spawner):
        pool = make_pool(spawner)
        await pool.initialize()
        await pool.submit_job(create_render_job("s1"), "/data/s1")
        await pool.submit_job(create_render_job("s2"), "/data/s2")

        await pool.shutdown()
        assert all(w.sent[-1].type == MainMessageType.SHUTDOWN for w in spawner.workers)
        assert all(w.returncode == 0 for w in spawner.workers)

        await asyncio.sleep(0.05)
        assert len(spawner.workers) == 2
        assert pool.get_stats()["totalWorkers"] == 0

    @pytest.mark.asyncio
    async def test_stragglers_are_killed(self):
        spawner = FakeSpawner()
        pool = make_pool(spawner, shutdown_grace=0.05)
        await pool.initialize()

        stubborn = spawner.workers[0]

        async def ignore(msg):
            stubborn.sent.append(msg)

        stubborn.send = ignore
        await pool.shutdown()
        assert stubborn.returncode == -9

    @pytest.mark.asyncio
    async def test_no_spawn_after_shutdown(self, spawner):
        pool = make_pool(spawner)
        await pool.initialize()
        await pool.shutdown()
        await pool.submit_job(create_render_job("s1"), "/data/s1")
        assert len(spawner.workers) == 1


# =============================================================================
# Real subprocess channel
# =============================================================================


CHILD_SCRIPT = textwrap.dedent("""
    import sys
    from render_jobs import CompleteMessage, encode_message

    sys.stdout.write("hello from the child\\n")
    sys.stdout.write(encode_message(CompleteMessage(
        job_id="job_x", worker_id="w_real", output_path="/tmp/o.mp4", output_size=7,
    )))
    sys.stdout.flush()
    print("log line", file=sys.stderr)
""")


class TestWorkerProcess:

    @pytest.mark.asyncio
    async def test_complete_written_before_exit_arrives_before_on_exit(self):
        events = []
        exited = asyncio.Event()

        def on_message(worker_id, msg):
            events.append(("message", msg))

        def on_exit(worker_id, rc):
            events.append(("exit", rc))
            exited.set()

        handle = WorkerProcess(
            "w_real", on_message, on_exit, cmd=[sys.executable, "-c", CHILD_SCRIPT],
        )
        await handle.start()
        await asyncio.wait_for(exited.wait(), timeout=30)

        assert [kind for kind, _ in events] == ["message", "exit"]
        msg = events[0][1]
        assert msg.type == WorkerMessageType.COMPLETE
        assert msg.job_id == "job_x"
        assert msg.output_size == 7
        assert events[1][1] == 0

    @pytest.mark.asyncio
    async def test_send_after_exit_raises(self):
        exited = asyncio.Event()
        handle = WorkerProcess(
            "w_real", lambda wid, msg: None, lambda wid, rc: exited.set(),
            cmd=[sys.executable, "-c", "pass"],
        )
        await handle.start()
        await asyncio.wait_for(exited.wait(), timeout=30)

        with pytest.raises(ConnectionError):
            await handle.send(CancelJobMessage())
