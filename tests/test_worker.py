"""
Tests for the encoding worker: ffmpeg output parsing, progress reporting,
software fallback and control messages. ffmpeg itself is replaced by
FakePopen.

Run with: pytest tests/test_worker.py -v
"""

import io
import json
from pathlib import Path

import pytest

import render_config
import render_encoder
import render_validation
import render_worker
from render_jobs import (
    CancelJobMessage,
    CompleteMessage,
    ErrorMessage,
    ShutdownMessage,
    StartJobMessage,
    create_render_job,
)
from render_worker import EncodeWorker, parse_ffmpeg_progress, progress_percent


# =============================================================================
# Parsing
# =============================================================================


class TestParseProgress:

    def test_stats_line(self):
        line = "frame=  120 fps= 30 q=28.0 size=    1024kB time=00:00:04.00 bitrate=2097.2kbits/s speed=1.52x"
        assert parse_ffmpeg_progress(line) == (120, "1.52x")

    def test_missing_speed(self):
        assert parse_ffmpeg_progress("frame=7 fps=0.0 q=0.0 size=0kB") == (7, "N/A")

    def test_unrelated_line(self):
        assert parse_ffmpeg_progress("Stream #0:0: Video: mjpeg, yuvj420p, 1920x1080") is None

    @pytest.mark.parametrize("frame,total,expected", [
        (0, 100, 0),
        (50, 100, 50),
        (1, 3, 33),
        (100, 100, 99),
        (250, 100, 99),
        (10, 0, 0),
    ])
    def test_percent(self, frame, total, expected):
        assert progress_percent(frame, total) == expected


# =============================================================================
# Encoding with a fake ffmpeg
# =============================================================================


class FakePopen:
    """Plays back scripted ffmpeg runs: stderr lines, exit code, output file."""

    scripts: list = []
    commands: list = []

    def __init__(self, cmd, **kwargs):
        script = FakePopen.scripts.pop(0)
        FakePopen.commands.append(cmd)
        self.cmd = cmd
        self.pid = 999999
        self.returncode = None
        self._rc = script["rc"]
        self.stderr = iter(line + "\n" for line in script["lines"])
        if script.get("output"):
            Path(cmd[-1]).write_bytes(bytes(script["output"]))

    def wait(self):
        self.returncode = self._rc
        return self._rc

    def poll(self):
        return self.returncode

    def terminate(self):
        self._rc = -15

    def kill(self):
        self._rc = -9


@pytest.fixture
def fake_ffmpeg(monkeypatch):
    FakePopen.scripts = []
    FakePopen.commands = []
    monkeypatch.setattr(render_worker.subprocess, "Popen", FakePopen)
    monkeypatch.setattr(render_worker, "lift_memory_limit", lambda pid: None)
    monkeypatch.setattr(
        render_validation, "verify_output_quality",
        lambda *a, **kw: {"valid": True, "metadata": None, "errors": [], "warnings": []},
    )
    return FakePopen


def sent_messages(out: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in out.getvalue().splitlines()]


def make_job(encoder=render_encoder.SOFTWARE, total=100):
    job = create_render_job("sess_1", encoder=encoder)
    job.frame_manifest.total_frames = total
    return job


class TestEncode:

    def test_success_reports_progress_and_complete(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.scripts.append({
            "rc": 0,
            "output": 4096,
            "lines": [
                "Input #0, image2, from 'frame%06d.jpg':",
                "frame=   10 fps=0.0 speed=0.5x",
                "frame=   10 fps=0.0 speed=0.5x",
                "frame=   25 fps=20 speed=0.9x",
                "frame=   24 fps=20 speed=0.9x",
                "frame=  100 fps=30 speed=1.1x",
            ],
        })
        out = io.StringIO()
        worker = EncodeWorker("worker_t", out=out)
        result = worker._encode(make_job(), tmp_path)

        assert isinstance(result, CompleteMessage)
        assert result.output_path == str(tmp_path / render_config.OUTPUT_FILENAME)
        assert result.output_size == 4096

        progress = [m for m in sent_messages(out) if m["type"] == "PROGRESS"]
        assert [m["progress"] for m in progress] == [10, 25, 99]
        assert progress[1]["encodingSpeed"] == "0.9x"
        assert progress[-1]["currentFrame"] == 100

    def test_nonzero_exit_is_an_error(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.scripts.append({"rc": 1, "lines": ["frame000000.jpg: Invalid data found when processing input"]})
        result = EncodeWorker("worker_t", out=io.StringIO())._encode(make_job(), tmp_path)

        assert isinstance(result, ErrorMessage)
        assert "code 1" in result.error
        assert "Invalid data" in result.error

    def test_missing_output_is_an_error(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.scripts.append({"rc": 0, "lines": []})
        result = EncodeWorker("worker_t", out=io.StringIO())._encode(make_job(), tmp_path)
        assert isinstance(result, ErrorMessage)
        assert result.error == "Output file missing or empty"

    def test_hardware_failure_retries_in_software(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.scripts.append({"rc": 1, "lines": ["[h264_nvenc @ 0x1] No capable devices found"]})
        fake_ffmpeg.scripts.append({"rc": 0, "output": 2048, "lines": ["frame=100 speed=1.0x"]})

        result = EncodeWorker("worker_t", out=io.StringIO())._encode(make_job(render_encoder.NVENC), tmp_path)

        assert isinstance(result, CompleteMessage)
        assert render_encoder.NVENC in fake_ffmpeg.commands[0]
        assert render_encoder.SOFTWARE in fake_ffmpeg.commands[1]

    def test_software_failure_is_not_retried(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.scripts.append({"rc": 1, "lines": ["Error while opening encoder"]})
        result = EncodeWorker("worker_t", out=io.StringIO())._encode(make_job(), tmp_path)
        assert isinstance(result, ErrorMessage)
        assert len(fake_ffmpeg.commands) == 1

    def test_walks_fallbacks_in_order(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.scripts.append({"rc": 1, "lines": ["[h264_nvenc @ 0x1] No capable devices found"]})
        fake_ffmpeg.scripts.append({"rc": 1, "lines": ["[h264_qsv @ 0x2] Error initializing an internal MFX session"]})
        fake_ffmpeg.scripts.append({"rc": 0, "output": 2048, "lines": ["frame=100 speed=1.0x"]})
        job = create_render_job(
            "sess_1", encoder=render_encoder.NVENC,
            fallbacks=(render_encoder.QSV, render_encoder.SOFTWARE),
        )
        job.frame_manifest.total_frames = 100

        result = EncodeWorker("worker_t", out=io.StringIO())._encode(job, tmp_path)

        assert isinstance(result, CompleteMessage)
        used = [cmd[cmd.index("-c:v") + 1] for cmd in fake_ffmpeg.commands]
        assert used == [render_encoder.NVENC, render_encoder.QSV, render_encoder.SOFTWARE]

    def test_fallback_stops_on_non_hardware_error(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.scripts.append({"rc": 1, "lines": ["[h264_nvenc @ 0x1] No capable devices found"]})
        fake_ffmpeg.scripts.append({"rc": 1, "lines": ["frame000003.jpg: Invalid data found when processing input"]})
        job = create_render_job(
            "sess_1", encoder=render_encoder.NVENC,
            fallbacks=(render_encoder.QSV, render_encoder.SOFTWARE),
        )
        job.frame_manifest.total_frames = 100

        result = EncodeWorker("worker_t", out=io.StringIO())._encode(job, tmp_path)

        assert isinstance(result, ErrorMessage)
        assert "Invalid data" in result.error
        assert len(fake_ffmpeg.commands) == 2

    def test_undecodable_output_is_an_error(self, tmp_path, fake_ffmpeg, monkeypatch):
        fake_ffmpeg.scripts.append({"rc": 0, "output": 4096, "lines": ["frame=100 speed=1.0x"]})
        monkeypatch.setattr(
            render_validation, "verify_output_quality",
            lambda *a, **kw: {"valid": False, "metadata": None, "errors": ["Failed to read video metadata"], "warnings": []},
        )
        monkeypatch.setattr(render_validation, "verify_file_integrity", lambda path: (False, "moov atom not found"))

        result = EncodeWorker("worker_t", out=io.StringIO())._encode(make_job(), tmp_path)

        assert isinstance(result, ErrorMessage)
        assert result.error == "Output file failed integrity check: moov atom not found"

    def test_report_problem_with_decodable_output_completes(self, tmp_path, fake_ffmpeg, monkeypatch):
        fake_ffmpeg.scripts.append({"rc": 0, "output": 4096, "lines": ["frame=100 speed=1.0x"]})
        monkeypatch.setattr(
            render_validation, "verify_output_quality",
            lambda *a, **kw: {"valid": False, "metadata": None, "errors": ["Duration mismatch"], "warnings": []},
        )
        monkeypatch.setattr(render_validation, "verify_file_integrity", lambda path: (True, ""))

        result = EncodeWorker("worker_t", out=io.StringIO())._encode(make_job(), tmp_path)
        assert isinstance(result, CompleteMessage)

    def test_cancelled_job_reports_cancellation(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.scripts.append({"rc": -15, "lines": ["frame=10 speed=1.0x"]})
        worker = EncodeWorker("worker_t", out=io.StringIO())
        worker._cancelled.set()
        result = worker._encode(make_job(), tmp_path)

        assert isinstance(result, ErrorMessage)
        assert result.error == "Job cancelled"

    def test_missing_ffmpeg_binary(self, tmp_path, monkeypatch):
        def no_such_binary(cmd, **kwargs):
            raise FileNotFoundError(2, "No such file or directory", cmd[0])

        monkeypatch.setattr(render_worker.subprocess, "Popen", no_such_binary)
        result = EncodeWorker("worker_t", out=io.StringIO())._encode(make_job(), tmp_path)
        assert isinstance(result, ErrorMessage)
        assert "code -1" in result.error


# =============================================================================
# Control messages
# =============================================================================


class TestControl:

    def test_start_job_runs_to_completion(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.scripts.append({"rc": 0, "output": 2048, "lines": ["frame=100 speed=2.0x"]})
        out = io.StringIO()
        worker = EncodeWorker("worker_t", out=out)
        job = make_job()

        assert worker.handle(StartJobMessage(job=job, session_dir=str(tmp_path))) is True
        worker._job_thread.join(timeout=10)

        types = [m["type"] for m in sent_messages(out)]
        assert types[0] == "STARTED"
        assert types[-1] == "COMPLETE"
        assert all(m["workerId"] == "worker_t" for m in sent_messages(out))
        assert worker.current_job_id is None

    def test_busy_worker_rejects_second_job(self, tmp_path):
        out = io.StringIO()
        worker = EncodeWorker("worker_t", out=out)
        worker.current_job_id = "job_running"
        other = make_job()

        worker.handle(StartJobMessage(job=other, session_dir=str(tmp_path)))
        msg = sent_messages(out)[-1]
        assert msg["type"] == "ERROR"
        assert msg["jobId"] == other.job_id

    def test_cancel_when_idle_is_harmless(self):
        worker = EncodeWorker("worker_t", out=io.StringIO())
        assert worker.handle(CancelJobMessage()) is True
        assert not worker._cancelled.is_set()

    def test_shutdown_ends_loop(self):
        assert EncodeWorker("worker_t", out=io.StringIO()).handle(ShutdownMessage()) is False


def test_read_rss_of_missing_process():
    assert render_worker.read_rss(999999999) == 0
