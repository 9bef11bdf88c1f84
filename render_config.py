"""
render_config.py - Environment-driven settings for the render export service.

Every component reads these through the module (render_config.SESSIONS_DIR,
not a copied value) so a test can monkeypatch one place.
"""

import logging
import os
import re
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Optional

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

DATA_DIR     = Path(os.environ.get("EXPORT_DATA_DIR", Path(tempfile.gettempdir()) / "render-export"))
SESSIONS_DIR = DATA_DIR / "sessions"
JOBS_DIR     = DATA_DIR / "jobs"
LOG_FILE     = os.environ.get("LOG_FILE") or None

FFMPEG_BIN   = os.environ.get("FFMPEG_BIN",  "ffmpeg")
FFPROBE_BIN  = os.environ.get("FFPROBE_BIN", "ffprobe")

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3001"))

# ---------------------------------------------------------------------------
# Session layout
# ---------------------------------------------------------------------------

FRAME_PATTERN  = "frame%06d.jpg"
FRAME_NAME_RE  = re.compile(r"^frame(\d{6})\.jpg$")
AUDIO_FILENAME = "audio.mp3"
OUTPUT_FILENAME = "output.mp4"

DEFAULT_FPS     = 30
DEFAULT_QUALITY = 21

# ---------------------------------------------------------------------------
# Limits and timings
# ---------------------------------------------------------------------------

MAX_WORKERS            = int(os.environ.get("MAX_WORKERS", "2"))
WORKER_MEMORY_LIMIT_MB = int(os.environ.get("WORKER_MEMORY_LIMIT_MB", "2048"))
WORKER_RESTART_DELAY   = float(os.environ.get("WORKER_RESTART_DELAY", "1.0"))
WORKER_SHUTDOWN_GRACE  = float(os.environ.get("WORKER_SHUTDOWN_GRACE", "5.0"))

HEARTBEAT_INTERVAL     = float(os.environ.get("HEARTBEAT_INTERVAL", "5.0"))
MEMORY_WARNING_MB      = int(os.environ.get("MEMORY_WARNING_MB", "1536"))
WATCHDOG_TIMEOUT       = float(os.environ.get("WATCHDOG_TIMEOUT", "120"))

STALL_TIMEOUT          = float(os.environ.get("STALL_TIMEOUT", "60"))
MAX_JOB_TIME           = float(os.environ.get("MAX_JOB_TIME", str(30 * 60)))
TIMEOUT_CHECK_INTERVAL = 5.0

MAX_FILE_SIZE   = int(os.environ.get("MAX_FILE_SIZE", str(50 * 1024 * 1024)))
MAX_FILES       = int(os.environ.get("MAX_FILES", "10000"))
MIN_FRAME_BYTES = int(os.environ.get("MIN_FRAME_BYTES", "1000"))
MISSING_FRAMES_REPORT_CAP = 10

SSE_KEEPALIVE   = float(os.environ.get("SSE_KEEPALIVE", "15"))
JOB_RETENTION   = float(os.environ.get("JOB_RETENTION", str(30 * 60)))
SWEEP_INTERVAL  = 60 * 60

ENCODER_TEST_ENCODE = os.environ.get("ENCODER_TEST_ENCODE", "1") not in ("0", "false", "no")

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(log_path: Optional[str] = None, stream=None) -> None:
    """Configure root logging once per process. Workers pass stream=sys.stderr
    because their stdout carries the message channel."""
    handlers: list[logging.Handler] = [logging.StreamHandler(stream or sys.stdout)]
    if log_path:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, handlers=handlers, force=True)


logger = logging.getLogger("export.sessions")

# ---------------------------------------------------------------------------
# Session directories
# ---------------------------------------------------------------------------

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_id(raw: str) -> str:
    """Strip everything but [A-Za-z0-9_-] so an id can never escape its directory."""
    return _UNSAFE_ID_CHARS.sub("", raw or "")


def ensure_dirs() -> None:
    SESSIONS_DIR.mkdir(parents=True, exist_ok=True)
    JOBS_DIR.mkdir(parents=True, exist_ok=True)


def session_dir(session_id: str) -> Path:
    return SESSIONS_DIR / sanitize_id(session_id)


def cleanup_session(session_id: str) -> bool:
    """Remove a session directory. Returns True if something was removed."""
    path = session_dir(session_id)
    if not sanitize_id(session_id) or not path.exists():
        return False
    try:
        shutil.rmtree(path)
        logger.info(f"Removed session {session_id}")
        return True
    except OSError as e:
        logger.error(f"Failed to remove session {session_id}: {e}")
        return False
