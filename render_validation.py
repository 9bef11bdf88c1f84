"""
render_validation.py - Pre-encode frame checks and post-encode output checks.

Frames live in a session directory as frame000000.jpg, frame000001.jpg, ...
Finalize runs validate_sequence() and validate_sizes() before a job may be
queued. After an encode, post_encode_check() probes the produced MP4 with
ffprobe and decodes it in full when the probe finds problems.
"""

import hashlib
import json
import logging
import subprocess
from pathlib import Path
from typing import Optional

import render_config

logger = logging.getLogger("export.validation")

# ---------------------------------------------------------------------------
# Frame discovery
# ---------------------------------------------------------------------------

def frame_path(session: Path, index: int) -> Path:
    return Path(session) / (render_config.FRAME_PATTERN % index)


def frame_index(filename: str) -> Optional[int]:
    """Index encoded in a frame file name, or None if the name is not a frame."""
    m = render_config.FRAME_NAME_RE.match(filename)
    return int(m.group(1)) if m else None


def scan_frames(session: Path) -> dict[int, Path]:
    """Map of frame index -> path for every frame file in the session."""
    frames = {}
    for entry in Path(session).iterdir():
        idx = frame_index(entry.name)
        if idx is not None and entry.is_file():
            frames[idx] = entry
    return frames


# ---------------------------------------------------------------------------
# Sequence and size validation
# ---------------------------------------------------------------------------

def validate_sequence(session: Path, expected_count: int, cap: Optional[int] = None) -> dict:
    """
    Confirm every index in [0, expected_count) exists. Only the first `cap`
    missing indices are listed; missing_count is always exact.
    """
    cap = render_config.MISSING_FRAMES_REPORT_CAP if cap is None else cap
    session = Path(session)
    try:
        present = set(scan_frames(session))
    except OSError as e:
        logger.error(f"Cannot list session {session.name}: {e}")
        present = set()

    missing = []
    for i in range(expected_count):
        if i not in present:
            missing.append(i)
            if len(missing) >= cap:
                break

    received = sum(1 for i in present if 0 <= i < expected_count)
    missing_count = expected_count - received
    result = {
        "valid":          missing_count == 0,
        "total_expected": expected_count,
        "total_received": received,
        "missing_frames": missing,
        "missing_count":  missing_count,
    }
    if not result["valid"]:
        logger.warning(
            f"Session {session.name} incomplete: {missing_count}/{expected_count} "
            f"frames missing (first: {missing})"
        )
    return result


def validate_sizes(session: Path, min_bytes: Optional[int] = None, cap: Optional[int] = None) -> dict:
    """
    Flag frames smaller than min_bytes. A truncated upload leaves a file far
    smaller than any real JPEG frame.
    """
    min_bytes = render_config.MIN_FRAME_BYTES if min_bytes is None else min_bytes
    cap = render_config.MISSING_FRAMES_REPORT_CAP if cap is None else cap
    session = Path(session)
    undersized = []
    count = 0
    try:
        frames = scan_frames(session)
    except OSError as e:
        logger.error(f"Cannot list session {session.name}: {e}")
        return {"valid": False, "undersized_frames": [], "undersized_count": 0}

    for idx in sorted(frames):
        try:
            size = frames[idx].stat().st_size
        except OSError:
            size = 0
        if size < min_bytes:
            count += 1
            if len(undersized) < cap:
                undersized.append(idx)

    if count:
        logger.warning(f"Session {session.name} has {count} undersized frames (first: {undersized})")
    return {"valid": count == 0, "undersized_frames": undersized, "undersized_count": count}


# ---------------------------------------------------------------------------
# Checksums
# ---------------------------------------------------------------------------

def generate_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_checksum(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            h.update(block)
    return h.hexdigest()


def validate_frame_batch(frames: dict[int, Path], checksums: dict[int, str]) -> dict:
    """
    Compare stored frames against client-supplied SHA-256 values. Frames
    without a supplied checksum are accepted as-is.
    """
    invalid = []
    mismatches = []
    for idx in sorted(frames):
        expected = checksums.get(idx)
        if not expected:
            continue
        actual = file_checksum(frames[idx])
        if actual != expected.lower():
            invalid.append(idx)
            mismatches.append({"frame_index": idx, "expected": expected, "actual": actual})
    return {
        "valid":          not invalid,
        "total_frames":   len(frames),
        "invalid_frames": invalid,
        "mismatches":     mismatches,
    }


# ---------------------------------------------------------------------------
# ffprobe helpers
# ---------------------------------------------------------------------------

def ffprobe_json(src: str, ffprobe_bin: Optional[str] = None) -> dict:
    ffprobe_bin = ffprobe_bin or render_config.FFPROBE_BIN
    cmd = [
        ffprobe_bin,
        "-v", "error",
        "-print_format", "json",
        "-show_streams",
        "-show_format",
        src,
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
    except (OSError, subprocess.SubprocessError) as e:
        raise RuntimeError(f"ffprobe could not run: {e}")

    stderr_msg = result.stderr.strip()
    if result.returncode != 0:
        hint = stderr_msg[:2000] if stderr_msg else "(no stderr - file may be empty, missing, or unreadable)"
        raise RuntimeError(f"ffprobe failed: {hint}")

    stdout = result.stdout.strip()
    if not stdout:
        raise RuntimeError(f"ffprobe returned no JSON output: {stderr_msg[:500] or 'empty output'}")
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"ffprobe JSON parse error: {e} | stderr: {stderr_msg[:500]}")


def parse_rate(rate: Optional[str]) -> float:
    """'30/1' or '29.97' -> float; garbage -> 0.0"""
    if not rate:
        return 0.0
    try:
        if "/" in rate:
            num, den = rate.split("/", 1)
            return float(num) / float(den) if float(den) else 0.0
        return float(rate)
    except ValueError:
        return 0.0


def get_video_metadata(path: Path) -> Optional[dict]:
    path = Path(path)
    try:
        probe = ffprobe_json(str(path))
    except RuntimeError as e:
        logger.error(f"Failed to probe {path.name}: {e}")
        return None

    streams = probe.get("streams", [])
    vs = next((s for s in streams if s.get("codec_type") == "video"), None)
    aus = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if vs is None:
        logger.error(f"No video stream in {path.name}")
        return None

    fmt = probe.get("format", {})
    try:
        duration = float(fmt.get("duration") or vs.get("duration") or 0)
    except ValueError:
        duration = 0.0
    try:
        bitrate = int(fmt.get("bit_rate") or 0) // 1000
    except ValueError:
        bitrate = 0

    return {
        "duration":    duration,
        "width":       vs.get("width") or 0,
        "height":      vs.get("height") or 0,
        "fps":         round(parse_rate(vs.get("r_frame_rate") or vs.get("avg_frame_rate")), 2),
        "has_audio":   aus is not None,
        "audio_codec": aus.get("codec_name") if aus else None,
        "video_codec": vs.get("codec_name") or "unknown",
        "bitrate":     bitrate,
        "file_size":   path.stat().st_size,
    }


# ---------------------------------------------------------------------------
# Output verification
# ---------------------------------------------------------------------------

MIN_OUTPUT_BYTES = 1024


def verify_output_quality(
    output_path: Path,
    expected_duration: Optional[float] = None,
    expected_fps: Optional[float] = None,
    min_width: int = 0,
    min_height: int = 0,
    require_audio: bool = False,
) -> dict:
    """
    Probe the encoded file and compare it to what the job asked for.
    Returns {valid, metadata, errors, warnings}.
    """
    output_path = Path(output_path)
    report = {"valid": True, "metadata": None, "errors": [], "warnings": []}

    if not output_path.exists():
        report["valid"] = False
        report["errors"].append("Output file does not exist")
        return report

    meta = get_video_metadata(output_path)
    if meta is None:
        report["valid"] = False
        report["errors"].append("Failed to read video metadata")
        return report
    report["metadata"] = meta

    if expected_duration is not None:
        diff = abs(meta["duration"] - expected_duration)
        if diff > 1.0:
            report["errors"].append(
                f"Duration mismatch: expected {expected_duration:.2f}s, got {meta['duration']:.2f}s"
            )
        elif diff > 0.5:
            report["warnings"].append(
                f"Duration slightly off: expected {expected_duration:.2f}s, got {meta['duration']:.2f}s"
            )

    if expected_fps:
        if abs(meta["fps"] - expected_fps) > expected_fps * 0.1:
            report["errors"].append(f"FPS mismatch: expected {expected_fps}, got {meta['fps']}")

    if min_width and meta["width"] < min_width:
        report["errors"].append(f"Width too small: expected at least {min_width}, got {meta['width']}")
    if min_height and meta["height"] < min_height:
        report["errors"].append(f"Height too small: expected at least {min_height}, got {meta['height']}")

    if require_audio and not meta["has_audio"]:
        report["errors"].append("Audio track missing")

    if meta["file_size"] < MIN_OUTPUT_BYTES:
        report["warnings"].append(f"File size unexpectedly small: {meta['file_size']} bytes")

    report["valid"] = not report["errors"]
    if report["valid"]:
        logger.info(
            f"Output verified: {meta['width']}x{meta['height']} @ {meta['fps']}fps, "
            f"{meta['duration']:.1f}s, {meta['file_size'] / 1024 / 1024:.2f}MB"
        )
    else:
        logger.error(f"Output validation failed for {output_path.name}: {report['errors']}")
    return report


def verify_file_integrity(path: Path, ffmpeg_bin: Optional[str] = None) -> tuple[bool, str]:
    """Decode the whole file to null. Returns (ok, error_text)."""
    ffmpeg_bin = ffmpeg_bin or render_config.FFMPEG_BIN
    cmd = [ffmpeg_bin, "-v", "error", "-i", str(path), "-f", "null", "-"]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=300)
    except (OSError, subprocess.SubprocessError) as e:
        return False, str(e)
    if result.returncode != 0:
        return False, result.stderr[-2000:].strip() or f"rc={result.returncode}"
    return True, ""


def quick_validate(output_path: Path, expected_duration: Optional[float] = None) -> bool:
    """Cheap post-encode check: exists, non-trivial size, container readable."""
    output_path = Path(output_path)
    if not output_path.is_file() or output_path.stat().st_size < MIN_OUTPUT_BYTES:
        return False
    meta = get_video_metadata(output_path)
    if meta is None or meta["width"] <= 0 or meta["height"] <= 0:
        return False
    if expected_duration is not None and abs(meta["duration"] - expected_duration) > 1.0:
        return False
    return True


def post_encode_check(output_path: Path, total_frames: int, fps: float, job_id: str = "") -> Optional[str]:
    """
    Log the quality report of a finished encode. When the report finds
    problems the file is fully decoded; only a file that fails to decode is
    an error. Returns the error text or None.
    """
    expected_duration = total_frames / fps if total_frames and fps else None
    report = verify_output_quality(output_path, expected_duration=expected_duration, expected_fps=fps)
    for w in report["warnings"]:
        logger.warning(f"Job {job_id}: {w}")
    if report["valid"]:
        return None

    logger.warning(f"Job {job_id} output check: {'; '.join(report['errors'])}")
    ok, error = verify_file_integrity(output_path)
    if ok:
        return None
    last = error.strip().splitlines()[-1] if error.strip() else "decode failed"
    return f"Output file failed integrity check: {last}"
