r"""
render_jobs.py - Render job model, progress snapshots, IPC messages and errors.

Job status state machine:

    pending -> uploading -> queued -> encoding -> complete
        \__________\___________\_________\______-> failed

Forward moves only; failed is reachable from any non-terminal state and
complete/failed never change again.

All models serialize with camelCase keys (jobId, totalFrames, ...) because
the same JSON goes to HTTP clients, to worker processes and to the job store.
"""

import time
import uuid
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

import render_config
import render_encoder

# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING   = "pending"
    UPLOADING = "uploading"
    QUEUED    = "queued"
    ENCODING  = "encoding"
    COMPLETE  = "complete"
    FAILED    = "failed"


TERMINAL_STATUSES = {JobStatus.COMPLETE, JobStatus.FAILED}

_STATUS_RANK = {
    JobStatus.PENDING:   0,
    JobStatus.UPLOADING: 1,
    JobStatus.QUEUED:    2,
    JobStatus.ENCODING:  3,
    JobStatus.COMPLETE:  4,
}


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if new == JobStatus.FAILED:
        return True
    return _STATUS_RANK[new] >= _STATUS_RANK[current]


# ---------------------------------------------------------------------------
# Job model
# ---------------------------------------------------------------------------

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EncodingConfig(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    fps:       float = Field(default=render_config.DEFAULT_FPS, gt=0, le=240)
    encoder:   str = render_encoder.SOFTWARE
    quality:   int = Field(default=render_config.DEFAULT_QUALITY, ge=0, le=51)
    # encoders to retry with, in order, when `encoder` fails on the hardware
    fallbacks: tuple[str, ...] = ()


class FrameChecksum(CamelModel):
    frame_index: int = Field(ge=0)
    checksum:    str
    size:        int = 0


class FrameManifest(CamelModel):
    total_frames:    Optional[int] = None
    received_frames: int = 0
    checksums:       dict[int, FrameChecksum] = Field(default_factory=dict)
    validated:       bool = False
    missing_frames:  list[int] = Field(default_factory=list)


class RenderJob(CamelModel):
    job_id:         str
    session_id:     str
    status:         JobStatus = JobStatus.PENDING
    config:         EncodingConfig = Field(default_factory=EncodingConfig)
    frame_manifest: FrameManifest = Field(default_factory=FrameManifest)
    # set when init chose the fps, or once the job is queued
    fps_fixed:      bool = False

    progress:       int = 0
    current_frame:  int = 0
    encoding_speed: Optional[str] = None

    created_at:     float = Field(default_factory=time.time)
    updated_at:     float = Field(default_factory=time.time)
    started_at:     Optional[float] = None
    completed_at:   Optional[float] = None

    worker_id:      Optional[str] = None
    last_error:     Optional[str] = None
    output_path:    Optional[str] = None
    output_size:    Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def create_render_job(
    session_id: str,
    fps: Optional[float] = None,
    encoder: Optional[str] = None,
    quality: Optional[int] = None,
    fallbacks: tuple[str, ...] = (),
) -> RenderJob:
    """fps left as None takes the default and can still be set before queueing."""
    config = EncodingConfig(
        fps=fps if fps is not None else render_config.DEFAULT_FPS,
        encoder=encoder or render_encoder.SOFTWARE,
        quality=quality if quality is not None else render_config.DEFAULT_QUALITY,
        fallbacks=tuple(fallbacks),
    )
    return RenderJob(job_id=new_job_id(), session_id=session_id, config=config, fps_fixed=fps is not None)


class JobProgress(CamelModel):
    """Snapshot pushed to /status callers and SSE subscribers."""

    job_id:         str
    status:         JobStatus
    progress:       int
    message:        str
    current_frame:  int = 0
    total_frames:   Optional[int] = None
    received_frames: int = 0
    encoding_speed: Optional[str] = None
    error:          Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# Worker -> pool messages
# ---------------------------------------------------------------------------

class WorkerMessageType(str, Enum):
    STARTED        = "STARTED"
    PROGRESS       = "PROGRESS"
    HEARTBEAT      = "HEARTBEAT"
    MEMORY_WARNING = "MEMORY_WARNING"
    COMPLETE       = "COMPLETE"
    ERROR          = "ERROR"


class _WorkerMessageBase(CamelModel):
    job_id:    str
    worker_id: str
    timestamp: float = Field(default_factory=time.time)


class StartedMessage(_WorkerMessageBase):
    type: Literal["STARTED"] = "STARTED"


class ProgressMessage(_WorkerMessageBase):
    type:           Literal["PROGRESS"] = "PROGRESS"
    progress:       int
    current_frame:  int
    total_frames:   int
    encoding_speed: str = "N/A"


class HeartbeatMessage(_WorkerMessageBase):
    type: Literal["HEARTBEAT"] = "HEARTBEAT"


class MemoryWarningMessage(_WorkerMessageBase):
    type:         Literal["MEMORY_WARNING"] = "MEMORY_WARNING"
    memory_usage: int


class CompleteMessage(_WorkerMessageBase):
    type:        Literal["COMPLETE"] = "COMPLETE"
    output_path: str
    output_size: int


class ErrorMessage(_WorkerMessageBase):
    type:  Literal["ERROR"] = "ERROR"
    error: str


WorkerMessage = Annotated[
    Union[
        StartedMessage,
        ProgressMessage,
        HeartbeatMessage,
        MemoryWarningMessage,
        CompleteMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

# ---------------------------------------------------------------------------
# Pool -> worker messages
# ---------------------------------------------------------------------------

class MainMessageType(str, Enum):
    START_JOB  = "START_JOB"
    CANCEL_JOB = "CANCEL_JOB"
    SHUTDOWN   = "SHUTDOWN"


class StartJobMessage(CamelModel):
    type:        Literal["START_JOB"] = "START_JOB"
    job:         RenderJob
    session_dir: str


class CancelJobMessage(CamelModel):
    type: Literal["CANCEL_JOB"] = "CANCEL_JOB"


class ShutdownMessage(CamelModel):
    type: Literal["SHUTDOWN"] = "SHUTDOWN"


MainMessage = Annotated[
    Union[StartJobMessage, CancelJobMessage, ShutdownMessage],
    Field(discriminator="type"),
]

_worker_message_adapter = TypeAdapter(WorkerMessage)
_main_message_adapter   = TypeAdapter(MainMessage)


def encode_message(msg: BaseModel) -> str:
    """One JSON line, newline-terminated, for the stdio channel."""
    return msg.model_dump_json(by_alias=True) + "\n"


def parse_worker_message(line: Union[str, bytes]) -> WorkerMessage:
    return _worker_message_adapter.validate_json(line)


def parse_main_message(line: Union[str, bytes]) -> MainMessage:
    return _main_message_adapter.validate_json(line)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ExportError(Exception):
    """Client-facing failure with a stable machine-readable reason."""

    status_code = 400
    reason = "export_error"

    def __init__(self, message: str, reason: Optional[str] = None, **details) -> None:
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.reason, "message": self.message, **self.details}


class JobNotFoundError(ExportError):
    status_code = 404
    reason = "job_not_found"


class SessionNotFoundError(ExportError):
    status_code = 404
    reason = "session_not_found"


class InvalidTransitionError(ExportError):
    reason = "invalid_transition"


class FrameCountMismatchError(ExportError):
    reason = "frame_count_mismatch"


class ConfigImmutableError(ExportError):
    reason = "config_immutable"


class ValidationFailedError(ExportError):
    reason = "validation_failed"


class SessionExistsError(ExportError):
    status_code = 409
    reason = "session_exists"


class UploadLimitError(ExportError):
    status_code = 413
    reason = "upload_limit"


class EncodeFailedError(ExportError):
    status_code = 500
    reason = "encode_failed"
