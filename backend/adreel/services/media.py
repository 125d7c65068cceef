"""
Media transforms.

Every transform takes bytes and returns bytes:

    scratch dir -> write inputs -> run ffmpeg -> read output -> drop scratch dir

The scratch directory is a `tempfile.TemporaryDirectory`, released on every
exit path. ffmpeg runs as an asyncio subprocess, bounded by a transcoder slot
and PIPELINE_FFMPEG_TIMEOUT_SEC; a non-zero exit raises TransformError with
the tail of stderr.

All transforms accept `runner=` so tests can capture argv instead of
spawning ffmpeg.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterator

from adreel.errors import TransformError
from adreel.services.transcoder_slots import transcoder_slot
from adreel.settings import get_settings

logger = logging.getLogger("media")

Runner = Callable[[list[str]], Awaitable[tuple[str, str]]]


# ============== Profiles and options ==============

@dataclass(frozen=True)
class PlatformProfile:
    name: str
    width: int
    height: int
    video_bitrate: str
    audio_bitrate: str
    fps: int = 30
    codec: str = "libx264"


PLATFORM_PROFILES: dict[str, PlatformProfile] = {
    "tiktok": PlatformProfile("tiktok", 1080, 1920, "4M", "128k"),
    "facebook": PlatformProfile("facebook", 1080, 1920, "6M", "128k"),
    "youtube": PlatformProfile("youtube", 1920, 1080, "8M", "192k"),
    "instagram": PlatformProfile("instagram", 1080, 1920, "3.5M", "128k"),
}

# Frame size used for generated footage, by aspect ratio
RESOLUTIONS: dict[str, tuple[int, int]] = {
    "9:16": (1080, 1920),
    "16:9": (1920, 1080),
    "1:1": (1080, 1080),
}


def get_profile(name: str) -> PlatformProfile:
    try:
        return PLATFORM_PROFILES[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown platform profile: {name}") from None


def profile_for_aspect_ratio(aspect_ratio: str) -> PlatformProfile:
    """Re-encode profile matching the frame orientation of a production."""
    if aspect_ratio == "16:9":
        return PLATFORM_PROFILES["youtube"]
    return PLATFORM_PROFILES["tiktok"]


SUBTITLE_FONT_SIZES = {"small": 18, "medium": 24, "large": 32, "bold": 28}

# libass numpad alignment
_SUBTITLE_ALIGNMENT = {"bottom": (2, 30), "top": (8, 50), "center": (5, 0)}


@dataclass
class SubtitleStyle:
    position: str = "bottom"
    color: str = "#FFFFFF"
    font_size: int = 24
    background_color: str = "#000000"
    background_alpha: int = 0x80

    @classmethod
    def from_request(cls, style: str | None, position: str | None, color: str | None) -> "SubtitleStyle":
        return cls(
            position=position if position in _SUBTITLE_ALIGNMENT else "bottom",
            color=color or "#FFFFFF",
            font_size=SUBTITLE_FONT_SIZES.get((style or "").lower(), 24),
        )


WATERMARK_POSITIONS = {
    "top-left": "x=10:y=10",
    "top-right": "x=w-tw-10:y=10",
    "bottom-left": "x=10:y=h-th-10",
    "bottom-right": "x=w-tw-10:y=h-th-10",
    "center": "x=(w-tw)/2:y=(h-th)/2",
}


@dataclass
class WatermarkOptions:
    text: str
    position: str = "bottom-right"
    opacity: float = 0.7
    size: int = 24
    color: str = "white"


# ============== Process helpers ==============

def _ffmpeg() -> str:
    return get_settings().ffmpeg_bin


def _ffprobe() -> str:
    return get_settings().ffprobe_bin


async def run_transcoder(cmd: list[str], *, timeout_sec: float | None = None) -> tuple[str, str]:
    """Run a transcoder command and return (stdout, stderr)."""
    settings = get_settings()
    if timeout_sec is None:
        timeout_sec = settings.pipeline_ffmpeg_timeout_sec

    async with transcoder_slot():
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_sec)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TransformError(f"{Path(cmd[0]).name} timed out after {timeout_sec}s", returncode=None)

    stdout_dec = stdout.decode(errors="ignore") if stdout else ""
    stderr_dec = stderr.decode(errors="ignore") if stderr else ""

    if proc.returncode != 0:
        tail = stderr_dec[-400:]
        logger.error("[media] %s exited with %s: %s", Path(cmd[0]).name, proc.returncode, tail)
        raise TransformError(
            f"Command failed with code {proc.returncode}: {' '.join(cmd[:5])}...; stderr: {tail}",
            returncode=proc.returncode,
            stderr=tail,
        )
    return stdout_dec, stderr_dec


@contextmanager
def scratch_dir() -> Iterator[Path]:
    """Per-transform scratch space, removed on every exit path."""
    with tempfile.TemporaryDirectory(prefix="adreel-") as tmp:
        yield Path(tmp)


def _read_output(path: Path) -> bytes:
    if not path.exists() or path.stat().st_size == 0:
        raise TransformError(f"Transcoder produced no output at {path.name}")
    return path.read_bytes()


# ============== Text helpers ==============

_SENTENCE_SPLIT = re.compile(r"[.!?。！？]+")


def format_srt_time(seconds: float) -> str:
    """Format seconds as HH:MM:SS,mmm."""
    total_ms = int(round(seconds * 1000))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def generate_srt(script: str, seconds_per_cue: float = 3.0) -> str:
    """One cue per sentence, each lasting `seconds_per_cue`."""
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(script or "") if s.strip()]
    cues = []
    for index, sentence in enumerate(sentences):
        start = index * seconds_per_cue
        end = start + seconds_per_cue
        cues.append(f"{index + 1}\n{format_srt_time(start)} --> {format_srt_time(end)}\n{sentence}\n")
    return "\n".join(cues)


def hex_to_ass_color(color: str, alpha: int = 0) -> str:
    """#RRGGBB -> &HAABBGGRR (libass byte order)."""
    value = color.lstrip("#")
    if not re.fullmatch(r"[0-9A-Fa-f]{6}", value):
        value = "FFFFFF"
    rr, gg, bb = value[0:2], value[2:4], value[4:6]
    return f"&H{alpha:02X}{bb}{gg}{rr}".upper()


def escape_drawtext(text: str) -> str:
    """Escape user text for a drawtext `text='...'` value."""
    escaped = text.replace("\\", "\\\\")
    for ch in ("'", ":", "%", ",", "[", "]", ";"):
        escaped = escaped.replace(ch, "\\" + ch)
    return escaped.replace("\n", " ")


def _escape_filter_path(path: Path) -> str:
    return str(path).replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


def build_subtitle_filter(srt_path: Path, style: SubtitleStyle) -> str:
    alignment, margin_v = _SUBTITLE_ALIGNMENT.get(style.position, _SUBTITLE_ALIGNMENT["bottom"])
    style_parts = [
        f"FontSize={style.font_size}",
        f"PrimaryColour={hex_to_ass_color(style.color)}",
        "OutlineColour=&H80000000",
        "BorderStyle=4",
        f"BackColour={hex_to_ass_color(style.background_color, style.background_alpha)}",
        f"Alignment={alignment}",
        f"MarginV={margin_v}",
    ]
    return f"subtitles={_escape_filter_path(srt_path)}:force_style='{','.join(style_parts)}'"


def build_watermark_filter(options: WatermarkOptions) -> str:
    pos_expr = WATERMARK_POSITIONS.get(options.position, WATERMARK_POSITIONS["bottom-right"])
    opacity = min(max(options.opacity, 0.0), 1.0)
    return (
        f"drawtext=text='{escape_drawtext(options.text)}'"
        f":fontsize={options.size}:fontcolor={options.color}@{opacity}:{pos_expr}"
        ":shadowcolor=black@0.5:shadowx=2:shadowy=2"
    )


def build_scale_filter(profile: PlatformProfile) -> str:
    w, h = profile.width, profile.height
    return f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2"


# ============== Transforms ==============

async def mux_voiceover(video: bytes, audio: bytes, *, runner: Runner | None = None) -> bytes:
    """Replace the audio track; video stream is copied, output ends with the shorter input."""
    runner = runner or run_transcoder
    with scratch_dir() as tmp:
        video_path, audio_path, out_path = tmp / "input.mp4", tmp / "voice.mp3", tmp / "output.mp4"
        video_path.write_bytes(video)
        audio_path.write_bytes(audio)
        await runner([
            _ffmpeg(), "-y",
            "-i", str(video_path),
            "-i", str(audio_path),
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", "192k",
            "-shortest",
            str(out_path),
        ])
        return _read_output(out_path)


async def burn_subtitles(
    video: bytes,
    script: str,
    style: SubtitleStyle | None = None,
    *,
    seconds_per_cue: float = 3.0,
    runner: Runner | None = None,
) -> bytes:
    runner = runner or run_transcoder
    style = style or SubtitleStyle()
    srt = generate_srt(script, seconds_per_cue)
    if not srt:
        raise TransformError("Script has no sentences to caption")

    with scratch_dir() as tmp:
        video_path, srt_path, out_path = tmp / "input.mp4", tmp / "captions.srt", tmp / "output.mp4"
        video_path.write_bytes(video)
        srt_path.write_text(srt, encoding="utf-8")
        await runner([
            _ffmpeg(), "-y",
            "-i", str(video_path),
            "-vf", build_subtitle_filter(srt_path, style),
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-crf", "20",
            "-c:a", "copy",
            str(out_path),
        ])
        return _read_output(out_path)


async def add_watermark(video: bytes, options: WatermarkOptions, *, runner: Runner | None = None) -> bytes:
    runner = runner or run_transcoder
    with scratch_dir() as tmp:
        video_path, out_path = tmp / "input.mp4", tmp / "output.mp4"
        video_path.write_bytes(video)
        await runner([
            _ffmpeg(), "-y",
            "-i", str(video_path),
            "-vf", build_watermark_filter(options),
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-crf", "20",
            "-c:a", "copy",
            str(out_path),
        ])
        return _read_output(out_path)


async def add_background_music(
    video: bytes,
    music: bytes,
    volume: float = 0.3,
    *,
    runner: Runner | None = None,
) -> bytes:
    """Mix `music` under the existing audio at `volume`; ends with the shorter stream."""
    runner = runner or run_transcoder
    with scratch_dir() as tmp:
        video_path, music_path, out_path = tmp / "input.mp4", tmp / "music.mp3", tmp / "output.mp4"
        video_path.write_bytes(video)
        music_path.write_bytes(music)
        await runner([
            _ffmpeg(), "-y",
            "-i", str(video_path),
            "-i", str(music_path),
            "-filter_complex",
            f"[1:a]volume={volume}[music];[0:a][music]amix=inputs=2:duration=first[out]",
            "-map", "0:v:0",
            "-map", "[out]",
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", "192k",
            "-shortest",
            str(out_path),
        ])
        return _read_output(out_path)


async def optimize_for_platform(
    video: bytes,
    profile: PlatformProfile | str,
    *,
    runner: Runner | None = None,
) -> bytes:
    """Scale-and-pad to the profile's frame, fps, bitrate and codec."""
    runner = runner or run_transcoder
    if isinstance(profile, str):
        profile = get_profile(profile)
    with scratch_dir() as tmp:
        video_path, out_path = tmp / "input.mp4", tmp / "output.mp4"
        video_path.write_bytes(video)
        await runner([
            _ffmpeg(), "-y",
            "-i", str(video_path),
            "-vf", build_scale_filter(profile),
            "-r", str(profile.fps),
            "-c:v", profile.codec,
            "-preset", "medium",
            "-b:v", profile.video_bitrate,
            "-maxrate", profile.video_bitrate,
            "-bufsize", profile.video_bitrate,
            "-pix_fmt", "yuv420p",
            "-c:a", "aac",
            "-b:a", profile.audio_bitrate,
            "-ar", "44100",
            "-movflags", "+faststart",
            str(out_path),
        ])
        return _read_output(out_path)


async def extract_thumbnail(video: bytes, offset_sec: float = 1.0, *, runner: Runner | None = None) -> bytes:
    runner = runner or run_transcoder
    with scratch_dir() as tmp:
        video_path, out_path = tmp / "input.mp4", tmp / "thumb.jpg"
        video_path.write_bytes(video)
        await runner([
            _ffmpeg(), "-y",
            "-ss", f"{offset_sec:.3f}",
            "-i", str(video_path),
            "-frames:v", "1",
            "-q:v", "2",
            str(out_path),
        ])
        return _read_output(out_path)


async def get_duration(video: bytes, *, runner: Runner | None = None) -> float:
    """Container duration in seconds, from ffprobe."""
    runner = runner or run_transcoder
    with scratch_dir() as tmp:
        video_path = tmp / "input.mp4"
        video_path.write_bytes(video)
        stdout, _ = await runner([
            _ffprobe(), "-v", "error",
            "-print_format", "json",
            "-show_format",
            str(video_path),
        ])
    try:
        probe = json.loads(stdout) if stdout else {}
        return float(probe["format"]["duration"])
    except (ValueError, KeyError, TypeError) as exc:
        raise TransformError(f"Could not read duration from probe output: {exc}") from exc


async def generate_placeholder_video(
    duration: float,
    aspect_ratio: str = "9:16",
    *,
    color: str = "0x1f2937",
    runner: Runner | None = None,
) -> bytes:
    """Solid-colour clip with a silent audio track."""
    runner = runner or run_transcoder
    width, height = RESOLUTIONS.get(aspect_ratio, RESOLUTIONS["9:16"])
    with scratch_dir() as tmp:
        out_path = tmp / "placeholder.mp4"
        await runner([
            _ffmpeg(), "-y",
            "-f", "lavfi", "-i", f"color=c={color}:s={width}x{height}:r=30:d={duration}",
            "-f", "lavfi", "-i", "anullsrc=channel_layout=stereo:sample_rate=44100",
            "-t", str(duration),
            "-c:v", "libx264",
            "-pix_fmt", "yuv420p",
            "-c:a", "aac",
            "-shortest",
            str(out_path),
        ])
        return _read_output(out_path)
