"""
Content generators used by the production job.

- ScriptGenerator: product -> narration script (text)
- VideoGenerator: script + reference images -> raw video bytes
- SpeechSynthesizer: script -> voiceover audio bytes (stub, HTTP or edge-tts)

Each has a deterministic stub (default, no credentials needed) and an HTTP
implementation talking to an OpenAI-style API. Swap the bundle with
`set_generators()`.
"""
from __future__ import annotations

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from adreel.errors import GenerationError, TransientExternalError
from adreel.services import media
from adreel.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class ProductBrief:
    name: str
    description: str | None = None
    price: float | None = None
    category: str | None = None
    images: list[str] = field(default_factory=list)


# ── Interfaces ───────────────────────────────────────────────

class ScriptGenerator(ABC):
    @abstractmethod
    async def generate(
        self,
        *,
        product: ProductBrief,
        style: str | None,
        duration: int,
        language: str,
        model: str | None = None,
    ) -> str:
        ...

    async def analyze(self, *, product: ProductBrief, model: str | None = None) -> dict[str, Any]:
        """Optional product analysis (selling points, camera angles)."""
        return {}


class VideoGenerator(ABC):
    @abstractmethod
    async def generate(
        self,
        *,
        script: str,
        images: list[bytes],
        aspect_ratio: str,
        duration: int,
        style: str | None = None,
        model: str | None = None,
    ) -> bytes:
        ...


class SpeechSynthesizer(ABC):
    @abstractmethod
    async def synthesize(self, *, script: str, voice: str, model: str | None = None) -> bytes:
        ...


# ── Stubs ────────────────────────────────────────────────────

class StubScriptGenerator(ScriptGenerator):
    """Deterministic script built from the product fields."""

    async def generate(self, *, product, style, duration, language, model=None) -> str:
        lines = [f"Meet {product.name}."]
        if product.description:
            lines.append(product.description.strip().rstrip(".") + ".")
        if product.price is not None:
            lines.append(f"Now only {product.price:g}.")
        if style:
            lines.append(f"Made for your {style} feed.")
        lines.append("Tap the link and get yours today!")
        return " ".join(lines)

    async def analyze(self, *, product, model=None) -> dict[str, Any]:
        return {
            "sellingPoints": [product.name],
            "suggestedCameraAngles": ["close-up", "wide", "detail"],
        }


class StubVideoGenerator(VideoGenerator):
    """Solid-colour placeholder clip rendered locally by ffmpeg."""

    async def generate(self, *, script, images, aspect_ratio, duration, style=None, model=None) -> bytes:
        return await media.generate_placeholder_video(duration, aspect_ratio)


class StubSpeechSynthesizer(SpeechSynthesizer):
    """Low sine tone whose length follows the script's word count."""

    async def synthesize(self, *, script: str, voice: str, model: str | None = None) -> bytes:
        seconds = max(1.0, len(script.split()) / 2.5)
        with media.scratch_dir() as tmp:
            out_path = tmp / "voice.m4a"
            await media.run_transcoder([
                get_settings().ffmpeg_bin, "-y",
                "-f", "lavfi", "-i", f"sine=frequency=220:duration={seconds:.2f}",
                "-c:a", "aac",
                str(out_path),
            ])
            return out_path.read_bytes()


# ── HTTP implementations ─────────────────────────────────────

def _raise_for_status(resp: httpx.Response, what: str) -> None:
    if resp.status_code >= 500 or resp.status_code == 429:
        raise TransientExternalError(f"{what} HTTP {resp.status_code}: {resp.text[:300]}")
    resp.raise_for_status()


class HttpScriptGenerator(ScriptGenerator):
    """Chat-completions endpoint (OpenAI-compatible)."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = settings.llm_api_url.rstrip("/")
        self.api_key = settings.llm_api_key
        self.transport = transport

    def _prompt(self, product: ProductBrief, style: str | None, duration: int, language: str) -> str:
        details = [f"Product: {product.name}"]
        if product.description:
            details.append(f"Description: {product.description}")
        if product.price is not None:
            details.append(f"Price: {product.price}")
        if product.category:
            details.append(f"Category: {product.category}")
        return (
            f"Write a {duration}-second {style or 'tiktok'} style voiceover script for a short "
            f"marketing video in language '{language}'. Plain sentences only, no stage directions.\n"
            + "\n".join(details)
        )

    async def generate(self, *, product, style, duration, language, model=None) -> str:
        payload = {
            "model": model or "gpt-4o-mini",
            "messages": [{"role": "user", "content": self._prompt(product, style, duration, language)}],
            "temperature": 0.8,
        }
        async with httpx.AsyncClient(timeout=60, transport=self.transport) as client:
            resp = await client.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=payload,
            )
            _raise_for_status(resp, "Script generation")
            data = resp.json()

        try:
            text = data["choices"][0]["message"]["content"].strip()
        except (KeyError, IndexError, AttributeError) as exc:
            raise GenerationError(f"Unexpected script response shape: {exc}") from exc
        if not text:
            raise GenerationError("Script generator returned empty text")
        return text


class HttpVideoGenerator(VideoGenerator):
    """Submit a generation job, poll until done, download the clip."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        if not settings.video_api_url:
            raise GenerationError("VIDEO_API_URL is not configured")
        self.base_url = settings.video_api_url.rstrip("/")
        self.api_key = settings.video_api_key
        self.poll_interval = settings.video_poll_interval_sec
        self.max_polls = settings.video_poll_max_attempts
        self.transport = transport

    async def generate(self, *, script, images, aspect_ratio, duration, style=None, model=None) -> bytes:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        payload = {
            "model": model,
            "prompt": script,
            "aspect_ratio": aspect_ratio,
            "duration": duration,
            "style": style,
            "images": [base64.b64encode(img).decode() for img in images[:4]],
        }
        async with httpx.AsyncClient(timeout=120, transport=self.transport) as client:
            resp = await client.post(f"{self.base_url}/generations", headers=headers, json=payload)
            _raise_for_status(resp, "Video generation")
            generation_id = resp.json().get("id")
            if not generation_id:
                raise GenerationError("Video generator did not return a generation id")
            logger.info("[video-gen] started generation %s", generation_id)

            for _ in range(self.max_polls):
                status_resp = await client.get(f"{self.base_url}/generations/{generation_id}", headers=headers)
                _raise_for_status(status_resp, "Video generation status")
                data = status_resp.json()
                state = data.get("status")
                if state == "completed" and data.get("video_url"):
                    video_resp = await client.get(data["video_url"])
                    _raise_for_status(video_resp, "Video download")
                    return video_resp.content
                if state == "failed":
                    raise GenerationError(f"Video generation failed: {data.get('error') or 'unknown error'}")
                await asyncio.sleep(self.poll_interval)

        raise TransientExternalError(f"Video generation {generation_id} still running after {self.max_polls} polls")


class HttpSpeechSynthesizer(SpeechSynthesizer):
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        if not settings.tts_api_url:
            raise GenerationError("TTS_API_URL is not configured")
        self.base_url = settings.tts_api_url.rstrip("/")
        self.api_key = settings.tts_api_key
        self.transport = transport

    async def synthesize(self, *, script: str, voice: str, model: str | None = None) -> bytes:
        async with httpx.AsyncClient(timeout=120, transport=self.transport) as client:
            resp = await client.post(
                f"{self.base_url}/audio/speech",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"model": model or "tts-1", "voice": voice, "input": script, "response_format": "mp3"},
            )
            _raise_for_status(resp, "Speech synthesis")
        if not resp.content:
            raise GenerationError("Speech synthesizer returned no audio")
        return resp.content


class EdgeSpeechSynthesizer(SpeechSynthesizer):
    """Microsoft Edge neural voices through edge-tts. Voice names look like en-US-AriaNeural."""

    def __init__(self, settings: Settings):
        self.default_voice = settings.edge_tts_voice

    def _voice(self, voice: str) -> str:
        # Request voices are short names ("female", "calm"); only full Edge voice ids pass through
        return voice if voice.count("-") >= 2 else self.default_voice

    async def synthesize(self, *, script: str, voice: str, model: str | None = None) -> bytes:
        import edge_tts

        with media.scratch_dir() as tmp:
            out_path = tmp / "voice.mp3"
            try:
                communicate = edge_tts.Communicate(script, self._voice(voice))
                await communicate.save(str(out_path))
            except edge_tts.exceptions.NoAudioReceived as e:
                raise GenerationError(f"Speech synthesis failed: {e}") from e
            except (edge_tts.exceptions.WebSocketError, OSError) as e:
                raise TransientExternalError(f"Speech synthesis unavailable: {e}") from e
            if not out_path.exists() or out_path.stat().st_size == 0:
                raise GenerationError("Speech synthesizer returned no audio")
            return out_path.read_bytes()


# ── Bundle ───────────────────────────────────────────────────

@dataclass
class Generators:
    script: ScriptGenerator
    video: VideoGenerator
    speech: SpeechSynthesizer


def build_speech(settings: Settings) -> SpeechSynthesizer:
    provider = settings.tts_provider or settings.generator_provider
    if provider == "edge":
        return EdgeSpeechSynthesizer(settings)
    if provider == "http":
        return HttpSpeechSynthesizer(settings)
    return StubSpeechSynthesizer()


def build_generators(settings: Settings) -> Generators:
    if settings.generator_provider == "http":
        return Generators(
            script=HttpScriptGenerator(settings),
            video=HttpVideoGenerator(settings),
            speech=build_speech(settings),
        )
    return Generators(
        script=StubScriptGenerator(),
        video=StubVideoGenerator(),
        speech=build_speech(settings),
    )


_generators: Generators | None = None


def get_generators() -> Generators:
    global _generators
    if _generators is None:
        _generators = build_generators(get_settings())
    return _generators


def set_generators(generators: Generators | None) -> None:
    global _generators
    _generators = generators


def load_music_track(name: str, music_dir: str | None = None) -> bytes:
    """Background music by track name from MUSIC_DIR."""
    base = Path(music_dir or get_settings().music_dir)
    candidate = (base / f"{Path(name).name}.mp3")
    if not candidate.is_file():
        candidate = base / Path(name).name
    if not candidate.is_file():
        raise GenerationError(f"Music track not found: {name}")
    return candidate.read_bytes()
