"""
Render Export Backend - FastAPI application
Receives rendered frames and audio in chunks, validates the sequence, hands
the encode to the worker pool and reports progress over SSE until the MP4
is ready for download.
"""

import asyncio
import json
import logging
import re
import time
import uuid
from collections import deque
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import Field

import render_config
import render_encoder
import render_validation
from render_jobs import (
    CamelModel,
    EncodeFailedError,
    ExportError,
    FrameChecksum,
    InvalidTransitionError,
    JobStatus,
    RenderJob,
    SessionExistsError,
    SessionNotFoundError,
    UploadLimitError,
    ValidationFailedError,
)
from render_pool import WorkerPool
from render_queue import JobQueue
from render_worker import parse_ffmpeg_progress, progress_percent

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

render_config.setup_logging(render_config.LOG_FILE)
logger = logging.getLogger("export.api")

UPLOAD_BLOCK = 1024 * 1024

# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

encoder_strategy = render_encoder.EncoderStrategy()
job_queue = JobQueue()
worker_pool = WorkerPool()

# ffmpeg processes of the legacy synchronous finalize, by job id
_sync_procs: dict[str, asyncio.subprocess.Process] = {}


async def _process_job(job: RenderJob) -> None:
    await worker_pool.submit_job(job, render_config.session_dir(job.session_id))


async def _cancel_job(job_id: str) -> None:
    proc = _sync_procs.get(job_id)
    if proc and proc.returncode is None:
        proc.terminate()
        return
    await worker_pool.cancel_job(job_id)


async def _sweep_loop() -> None:
    while True:
        await asyncio.sleep(render_config.SWEEP_INTERVAL)
        try:
            job_queue.sweep()
        except Exception:
            logger.exception("Stale job sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    render_config.ensure_dirs()
    await asyncio.to_thread(encoder_strategy.detect)

    job_queue.set_job_processor(_process_job)
    job_queue.set_cancel_handler(_cancel_job)
    worker_pool.set_message_handler(job_queue.handle_worker_message)

    await worker_pool.initialize()
    await job_queue.initialize()
    sweeper = asyncio.create_task(_sweep_loop())
    logger.info(f"Render export service ready (data dir {render_config.DATA_DIR})")
    try:
        yield
    finally:
        sweeper.cancel()
        await worker_pool.shutdown()
        await job_queue.shutdown()


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(title="Render Export", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ExportError)
async def export_error_handler(request: Request, exc: ExportError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.reason} - {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path}: {exc.reason} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class FinalizeRequest(CamelModel):
    session_id:   str
    fps:          Optional[float] = Field(default=None, gt=0, le=240)
    total_frames: Optional[int] = Field(default=None, ge=0)
    sync:         bool = False


# ---------------------------------------------------------------------------
# Upload helpers
# ---------------------------------------------------------------------------

def new_session_id() -> str:
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def require_session(raw: Optional[str]) -> str:
    session_id = render_config.sanitize_id(raw or "")
    if not session_id:
        raise HTTPException(400, "Session ID required")
    if not render_config.session_dir(session_id).is_dir():
        raise SessionNotFoundError(f"Session {session_id} not found", sessionId=session_id)
    return session_id


async def save_upload(upload: UploadFile, dest: Path, limit: Optional[int] = None) -> int:
    """Copy an upload to dest in blocks. Over-limit files are removed and rejected."""
    limit = limit or render_config.MAX_FILE_SIZE
    size = 0
    too_large = False
    with open(dest, "wb") as f:
        while True:
            block = await upload.read(UPLOAD_BLOCK)
            if not block:
                break
            size += len(block)
            if size > limit:
                too_large = True
                break
            f.write(block)
    if too_large:
        dest.unlink(missing_ok=True)
        raise UploadLimitError(
            f"{upload.filename} exceeds {limit // (1024 * 1024)}MB",
            filename=upload.filename, maxFileSize=limit,
        )
    return size


def parse_checksums(raw: Optional[str]) -> dict[int, str]:
    """
    Accepts {"0": "<sha256>", ...} or [{"frameIndex": 0, "checksum": "<sha256>"}, ...].
    """
    if not raw:
        return {}
    try:
        data = json.loads(raw)
        if isinstance(data, dict):
            return {int(k): str(v) for k, v in data.items()}
        if isinstance(data, list):
            return {int(e["frameIndex"]): str(e["checksum"]) for e in data}
    except (ValueError, KeyError, TypeError) as e:
        raise HTTPException(400, f"Malformed checksums: {e}")
    raise HTTPException(400, "Malformed checksums: expected an object or a list")


# ---------------------------------------------------------------------------
# REST endpoints
# ---------------------------------------------------------------------------

@app.post("/export/init")
async def export_init(
    audio: UploadFile = File(...),
    session_id: Optional[str] = Form(None, alias="sessionId"),
    fps: Optional[float] = Form(None, gt=0, le=240),
    quality: int = Form(render_config.DEFAULT_QUALITY, ge=0, le=51),
):
    if session_id:
        sid = render_config.sanitize_id(session_id)
        if not sid:
            raise HTTPException(400, "Invalid sessionId")
    else:
        sid = new_session_id()

    if job_queue.get_job_by_session(sid):
        raise SessionExistsError(f"Session {sid} already has a job", sessionId=sid)

    session = render_config.session_dir(sid)
    session.mkdir(parents=True, exist_ok=True)
    await save_upload(audio, session / render_config.AUDIO_FILENAME)

    selected = encoder_strategy.selected
    job = job_queue.create_job(
        sid, fps=fps, encoder=selected, quality=quality,
        fallbacks=tuple(encoder_strategy.fallback_chain(selected)[1:]),
    )
    logger.info(f"Session initialized: {sid} (job {job.job_id})")
    return {"success": True, "sessionId": sid, "jobId": job.job_id}


@app.post("/export/chunk")
async def export_chunk(
    frames: list[UploadFile] = File(...),
    checksums: Optional[str] = Form(None),
    session_id: Optional[str] = Query(None, alias="sessionId"),
    x_session_id: Optional[str] = Header(None),
):
    sid = require_session(session_id or x_session_id)
    job = job_queue.get_job_by_session(sid)
    if job is None:
        raise SessionNotFoundError(f"No job for session {sid}", sessionId=sid)
    if job.status not in (JobStatus.PENDING, JobStatus.UPLOADING):
        raise InvalidTransitionError(f"Job {job.job_id} is {job.status.value}, not accepting frames")
    if len(frames) > render_config.MAX_FILES:
        raise UploadLimitError(f"Too many files ({len(frames)} > {render_config.MAX_FILES})", maxFiles=render_config.MAX_FILES)

    names = {}
    for upload in frames:
        name = Path(upload.filename or "").name
        idx = render_validation.frame_index(name)
        if idx is None:
            raise ValidationFailedError(f"Invalid frame file name: {name!r}", reason="invalid_frame_name", filename=name)
        names[idx] = (upload, name)

    expected = parse_checksums(checksums)
    session = render_config.session_dir(sid)
    saved: dict[int, Path] = {}
    sizes: dict[int, int] = {}
    try:
        for idx, (upload, name) in names.items():
            dest = session / name
            sizes[idx] = await save_upload(upload, dest)
            saved[idx] = dest
    except UploadLimitError:
        # the whole chunk is rejected, so none of it may stay on disk uncounted
        for path in saved.values():
            path.unlink(missing_ok=True)
        raise

    invalid: list[int] = []
    if expected:
        result = await asyncio.to_thread(render_validation.validate_frame_batch, saved, expected)
        invalid = result["invalid_frames"]
        for idx in invalid:
            saved.pop(idx).unlink(missing_ok=True)

    # Frames that passed are kept and counted; the client re-sends only the invalid ones.
    if saved:
        entries = [
            FrameChecksum(frame_index=idx, checksum=expected[idx].lower(), size=sizes[idx])
            for idx in saved if idx in expected
        ]
        job = job_queue.register_frames(job.job_id, len(saved), entries)

    if invalid:
        raise ValidationFailedError(
            f"{len(invalid)} frames failed checksum verification",
            reason="checksum_mismatch",
            invalidFrames=invalid,
            receivedFrames=job.frame_manifest.received_frames,
        )
    return {"success": True, "count": len(saved), "receivedFrames": job.frame_manifest.received_frames}


@app.post("/export/finalize")
async def export_finalize(req: FinalizeRequest):
    sid = require_session(req.session_id)
    session = render_config.session_dir(sid)
    job = job_queue.get_job_by_session(sid)
    if job is None:
        raise SessionNotFoundError(f"No job for session {sid}", sessionId=sid)

    if req.fps is not None:
        job_queue.set_fps(job.job_id, req.fps)

    total = req.total_frames
    if total is None:
        total = job.frame_manifest.total_frames
    if total is None:
        total = len(await asyncio.to_thread(render_validation.scan_frames, session))
    if total <= 0:
        raise ValidationFailedError("No frames uploaded", reason="no_frames")
    job_queue.set_total_frames(job.job_id, total)

    seq = await asyncio.to_thread(render_validation.validate_sequence, session, total)
    if not seq["valid"]:
        raise ValidationFailedError(
            f"{seq['missing_count']} of {total} frames missing",
            reason="frames_missing",
            missingFrames=seq["missing_frames"],
            missingCount=seq["missing_count"],
            totalExpected=total,
        )
    sizes = await asyncio.to_thread(render_validation.validate_sizes, session)
    if not sizes["valid"]:
        raise ValidationFailedError(
            f"{sizes['undersized_count']} frames are too small to be valid images",
            reason="frames_undersized",
            undersizedFrames=sizes["undersized_frames"],
            undersizedCount=sizes["undersized_count"],
        )

    logger.info(f"Finalizing session {sid}: {total} frames @ {job.config.fps}fps{' (sync)' if req.sync else ''}")
    if req.sync:
        return await finalize_sync(job, session)

    await job_queue.queue_job(job.job_id)
    return {"success": True, "jobId": job.job_id, "status": JobStatus.QUEUED.value}


@app.get("/export/status/{job_id}")
async def export_status(job_id: str):
    return job_queue.get_progress(job_id).model_dump(by_alias=True, mode="json")


@app.get("/export/events/{job_id}")
async def export_events(job_id: str, request: Request):
    events: asyncio.Queue = asyncio.Queue()
    unsubscribe = job_queue.subscribe(job_id, events.put_nowait)
    return StreamingResponse(
        job_event_stream(request, events, unsubscribe),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def job_event_stream(request: Request, events: asyncio.Queue, unsubscribe):
    try:
        while True:
            try:
                progress = await asyncio.wait_for(events.get(), timeout=render_config.SSE_KEEPALIVE)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    break
                yield ": keepalive\n\n"
                continue
            yield f"data: {progress.model_dump_json(by_alias=True)}\n\n"
            if progress.is_terminal:
                break
    finally:
        unsubscribe()


def release_job(job_id: str, session_id: str) -> None:
    render_config.cleanup_session(session_id)
    job_queue.remove_job(job_id)


def release_after_response(job: RenderJob) -> BackgroundTasks:
    tasks = BackgroundTasks()
    tasks.add_task(release_job, job.job_id, job.session_id)
    return tasks


@app.get("/export/download/{job_id}")
async def export_download(job_id: str):
    job = job_queue.require_job(job_id)
    if job.status != JobStatus.COMPLETE:
        raise ExportError(f"Job {job_id} is {job.status.value}", reason="not_complete", status=job.status.value)

    output = Path(job.output_path) if job.output_path else render_config.session_dir(job.session_id) / render_config.OUTPUT_FILENAME
    if not output.is_file():
        raise ExportError(f"Output of job {job_id} is gone", reason="output_missing")

    logger.info(f"Serving {output.name} for job {job_id} ({output.stat().st_size} bytes)")
    return FileResponse(
        output,
        media_type="video/mp4",
        filename=f"{job.session_id}.mp4",
        background=release_after_response(job),
    )


@app.post("/export/cancel/{job_id}")
async def export_cancel(job_id: str):
    job = await job_queue.cancel_job(job_id)
    render_config.cleanup_session(job.session_id)
    return {"success": True, "jobId": job_id, "status": job.status.value}


@app.get("/export/stats")
async def export_stats():
    return {
        "queue":   job_queue.get_stats(),
        "pool":    worker_pool.get_stats(),
        "encoder": encoder_strategy.info(),
    }


# ---------------------------------------------------------------------------
# Legacy synchronous finalize
# ---------------------------------------------------------------------------

_LINE_SPLIT = re.compile(r"[\r\n]+")


async def run_ffmpeg_inline(cmd: list[str], job_id: str, total: int) -> tuple[int, str]:
    """Run ffmpeg in this process without blocking the loop. Returns (rc, stderr_tail)."""
    tail: deque = deque(maxlen=50)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return -1, str(e)

    _sync_procs[job_id] = proc
    buf = ""
    try:
        while True:
            block = await proc.stderr.read(4096)
            if not block:
                break
            buf += block.decode(errors="replace")
            lines = _LINE_SPLIT.split(buf)
            buf = lines.pop()
            for line in lines:
                tail.append(line)
                parsed = parse_ffmpeg_progress(line)
                if parsed:
                    frame, speed = parsed
                    job_queue.update_job_progress(
                        job_id, progress_percent(frame, total),
                        current_frame=frame, encoding_speed=speed,
                    )
        rc = await proc.wait()
    finally:
        _sync_procs.pop(job_id, None)
    return rc, "\n".join(tail)


async def finalize_sync(job: RenderJob, session: Path):
    """
    Encode in the request and answer with the MP4 itself. Kept for clients
    that predate the job queue; the job still moves through the queue so
    /status and /events work for it too.
    """
    if not (session / render_config.AUDIO_FILENAME).exists():
        raise ValidationFailedError("Audio file missing in session", reason="audio_missing")

    await job_queue.queue_job(job.job_id, dispatch=False)
    job_queue.update_job_status(job.job_id, JobStatus.ENCODING, worker_id="inline")

    total = job.frame_manifest.total_frames or 0
    output = session / render_config.OUTPUT_FILENAME
    chain = render_encoder.retry_chain(job.config.encoder, job.config.fallbacks)
    started = time.monotonic()

    for i, encoder in enumerate(chain):
        cmd = render_encoder.build_ffmpeg_cmd(session, job.config.fps, encoder, job.config.quality, output)
        rc, stderr = await run_ffmpeg_inline(cmd, job.job_id, total)
        if (
            rc == 0
            or job.is_terminal
            or i == len(chain) - 1
            or not render_encoder.needs_software_fallback(encoder, stderr)
        ):
            break
        logger.warning(f"{encoder} failed on job {job.job_id}, retrying with {chain[i + 1]}")

    if job.is_terminal:
        # cancelled while encoding
        release_job(job.job_id, job.session_id)
        raise EncodeFailedError(job.last_error or "Export cancelled")

    if rc != 0 or not output.is_file() or output.stat().st_size == 0:
        last = " | ".join(stderr.strip().splitlines()[-3:]) or "no output"
        error = f"FFmpeg exited with code {rc}: {last}" if rc != 0 else "Output file missing or empty"
        job_queue.update_job_status(job.job_id, JobStatus.FAILED, last_error=error)
        release_job(job.job_id, job.session_id)
        raise EncodeFailedError(error)

    size = output.stat().st_size
    logger.info(f"FFmpeg completed in {time.monotonic() - started:.1f}s ({size / 1024 / 1024:.2f}MB)")
    problem = await asyncio.to_thread(
        render_validation.post_encode_check, output, total, job.config.fps, job.job_id,
    )
    if problem:
        job_queue.update_job_status(job.job_id, JobStatus.FAILED, last_error=problem)
        release_job(job.job_id, job.session_id)
        raise EncodeFailedError(problem)

    job_queue.update_job_status(
        job.job_id, JobStatus.COMPLETE, output_path=str(output), output_size=size, progress=100,
    )
    return FileResponse(
        output,
        media_type="video/mp4",
        background=release_after_response(job),
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=render_config.HOST, port=render_config.PORT)
