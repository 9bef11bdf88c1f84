"""
render_encoder.py - Video encoder selection and ffmpeg command construction.

Detection runs once at service startup: `ffmpeg -encoders` is scanned for the
known H.264 hardware encoders in preference order (NVENC, Quick Sync, AMF),
each listed one is optionally confirmed with a tiny null encode, and libx264
is the fallback whenever nothing else works or detection itself fails.

build_ffmpeg_cmd() is the only place an encode command line is assembled; the
worker process and the legacy synchronous finalize both call it.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

import render_config

logger = logging.getLogger("export.encoder")

# ---------------------------------------------------------------------------
# Encoder table
# ---------------------------------------------------------------------------

NVENC    = "h264_nvenc"
QSV      = "h264_qsv"
AMF      = "h264_amf"
SOFTWARE = "libx264"

# Preference order. The software encoder is always assumed present.
ENCODERS = [
    {"type": NVENC,    "name": "NVIDIA NVENC",       "hardware": True},
    {"type": QSV,      "name": "Intel Quick Sync",   "hardware": True},
    {"type": AMF,      "name": "AMD AMF",            "hardware": True},
    {"type": SOFTWARE, "name": "Software (libx264)", "hardware": False},
]
ENCODER_TYPES = tuple(e["type"] for e in ENCODERS)

# Output is pinned to BT.709 / yuv420p on every backend so hardware and
# software renders look the same.
COLOR_ARGS = [
    "-colorspace",      "bt709",
    "-color_primaries", "bt709",
    "-color_trc",       "bt709",
    "-pix_fmt",         "yuv420p",
]

AUDIO_BITRATE = "256k"


def is_hardware(encoder: str) -> bool:
    for e in ENCODERS:
        if e["type"] == encoder:
            return e["hardware"]
    return False


# ---------------------------------------------------------------------------
# Per-backend quality arguments
# ---------------------------------------------------------------------------

def encoder_args(encoder: str, quality: int = render_config.DEFAULT_QUALITY) -> list[str]:
    """
    Map one abstract quality value (lower = better, CRF-like scale) to the
    rate-control flags of the given backend, plus the fixed color flags.
    Unknown encoder names get the software arguments.
    """
    quality = int(quality)
    if encoder not in ENCODER_TYPES:
        encoder = SOFTWARE

    args = ["-c:v", encoder]
    if encoder == NVENC:
        args += [
            "-preset", "p4",
            "-rc", "vbr",
            "-cq", str(quality),
            "-b:v", "8M",
            "-maxrate", "12M",
            "-bufsize", "16M",
        ]
    elif encoder == QSV:
        args += [
            "-preset", "medium",
            "-global_quality", str(quality),
            "-look_ahead", "1",
        ]
    elif encoder == AMF:
        # AMF has no constant-quality mode; fixed QP with P frames two
        # steps coarser lands close to the same visual quality.
        args += [
            "-quality", "quality",
            "-rc", "cqp",
            "-qp_i", str(quality),
            "-qp_p", str(quality + 2),
        ]
    else:
        threads = max(2, (os.cpu_count() or 2) - 2)
        args += [
            "-preset", "fast",
            "-crf", str(quality),
            "-tune", "film",
            "-threads", str(threads),
        ]

    args += COLOR_ARGS
    return args


# ---------------------------------------------------------------------------
# ffmpeg command builder
# ---------------------------------------------------------------------------

def build_ffmpeg_cmd(
    session: Path,
    fps: float,
    encoder: str,
    quality: int = render_config.DEFAULT_QUALITY,
    output_path: Optional[Path] = None,
    ffmpeg_bin: Optional[str] = None,
) -> list[str]:
    """
    Build the full command that stitches session/frame%06d.jpg (+ audio.mp3
    when present) into an MP4. Frame numbering starts at 0.
    """
    ffmpeg_bin = ffmpeg_bin or render_config.FFMPEG_BIN
    session = Path(session)
    audio_path = session / render_config.AUDIO_FILENAME
    output_path = Path(output_path) if output_path else session / render_config.OUTPUT_FILENAME
    has_audio = audio_path.exists()

    cmd = [ffmpeg_bin]
    cmd += ["-y"]
    cmd += ["-hide_banner"]
    cmd += ["-loglevel", "info"]

    cmd += ["-framerate", str(fps)]
    cmd += ["-start_number", "0"]
    cmd += ["-i", str(session / render_config.FRAME_PATTERN)]
    if has_audio:
        cmd += ["-i", str(audio_path)]

    cmd += encoder_args(encoder, quality)

    if has_audio:
        cmd += ["-c:a", "aac", "-b:a", AUDIO_BITRATE, "-shortest"]

    # moov atom first so the file can be streamed while downloading
    cmd += ["-movflags", "+faststart"]
    cmd += [str(output_path)]
    return cmd


# ---------------------------------------------------------------------------
# Hardware failure detection
# ---------------------------------------------------------------------------

FALLBACK_PATTERNS = [
    # NVENC
    "OpenEncodeSessionEx failed",
    "No capable devices found",
    "incompatible client key",
    "Cannot load libnvidia-encode",
    # Quick Sync
    "Error initializing an internal MFX session",
    "Failed to create a VAAPI device",
    # AMF
    "DLL amfrt64.dll failed to open",
    "AMF failed to initialise",
    # generic
    "Function not implemented",
    "Error while opening encoder",
]


def needs_software_fallback(encoder: str, stderr: str) -> bool:
    """True when a hardware encode failed in a way a software retry can fix."""
    if not is_hardware(encoder):
        return False
    return any(pat in stderr for pat in FALLBACK_PATTERNS)


def retry_chain(encoder: str, fallbacks=()) -> list[str]:
    """encoder, then each fallback once, always ending with the software encoder."""
    chain = [encoder]
    for enc in fallbacks:
        if enc not in chain:
            chain.append(enc)
    if SOFTWARE in chain:
        chain = chain[:chain.index(SOFTWARE) + 1]
    else:
        chain.append(SOFTWARE)
    return chain


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def list_encoders(ffmpeg_bin: str) -> str:
    """Raw `ffmpeg -encoders` listing. Raises RuntimeError if ffmpeg is unusable."""
    try:
        result = subprocess.run(
            [ffmpeg_bin, "-hide_banner", "-encoders"],
            capture_output=True, text=True, timeout=30,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise RuntimeError(f"ffmpeg -encoders failed: {e}")
    if result.returncode != 0:
        raise RuntimeError(f"ffmpeg -encoders exited with rc={result.returncode}: {result.stderr[:500]}")
    return result.stdout + result.stderr


def probe_encoder(ffmpeg_bin: str, encoder: str) -> bool:
    """
    Null-encode 0.1s of black video. NVENC refuses very small frames, so
    the probe uses 1280x720 to match real workloads.
    """
    cmd = [
        ffmpeg_bin, "-hide_banner", "-loglevel", "error",
        "-f", "lavfi", "-i", "color=black:s=1280x720:d=0.1",
        "-c:v", encoder,
        "-f", "null", "-",
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Test encode with {encoder} failed: {e}")
        return False
    if result.returncode != 0:
        logger.debug(f"Test encode with {encoder} rc={result.returncode}: {result.stderr[-500:].strip()}")
    return result.returncode == 0


class EncoderStrategy:
    """
    Holds the detection result for the lifetime of the service. detect() is
    safe to call when ffmpeg is missing: everything degrades to libx264.
    """

    def __init__(self, ffmpeg_bin: Optional[str] = None, test_encode: Optional[bool] = None) -> None:
        self.ffmpeg_bin  = ffmpeg_bin or render_config.FFMPEG_BIN
        self.test_encode = render_config.ENCODER_TEST_ENCODE if test_encode is None else test_encode
        self.available: dict[str, bool] = {e["type"]: e["type"] == SOFTWARE for e in ENCODERS}
        self.errors:    dict[str, str]  = {}
        self.selected:  str = SOFTWARE
        self.detected:  bool = False

    def detect(self) -> str:
        logger.info("Detecting available encoders...")
        try:
            listing = list_encoders(self.ffmpeg_bin)
        except RuntimeError as e:
            logger.warning(f"Encoder detection failed, using {SOFTWARE}: {e}")
            listing = ""

        for e in ENCODERS:
            enc = e["type"]
            if not e["hardware"]:
                self.available[enc] = True
                continue
            if enc not in listing:
                self.available[enc] = False
                self.errors[enc] = "not listed by ffmpeg"
                continue
            works = probe_encoder(self.ffmpeg_bin, enc) if self.test_encode else True
            self.available[enc] = works
            if works:
                logger.info(f"{e['name']} ({enc}) available")
            else:
                self.errors[enc] = "test encode failed"
                logger.info(f"{e['name']} ({enc}) listed but test encode failed")

        self.selected = next(
            (e["type"] for e in ENCODERS if self.available.get(e["type"])), SOFTWARE,
        )
        self.detected = True
        logger.info(f"Selected encoder: {self.selected}")
        return self.selected

    def args_for(self, encoder: str, quality: int = render_config.DEFAULT_QUALITY) -> list[str]:
        return encoder_args(encoder, quality)

    def is_available(self, encoder: str) -> bool:
        return self.available.get(encoder, False)

    def fallback_chain(self, primary: str) -> list[str]:
        """primary first, then every other available encoder in preference order."""
        chain = [primary]
        for e in ENCODERS:
            if e["type"] != primary and self.available.get(e["type"]):
                chain.append(e["type"])
        return chain

    def info(self) -> dict:
        return {
            "selected":   self.selected,
            "isHardware": is_hardware(self.selected),
            "available":  [
                {"type": e["type"], "name": e["name"], "isHardware": e["hardware"]}
                for e in ENCODERS if self.available.get(e["type"])
            ],
        }
