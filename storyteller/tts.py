"""Synthesis backends behind one interface, with retry logic for cloud calls."""

import asyncio
import logging
from typing import Awaitable, Callable, Protocol, TypeVar, runtime_checkable

import edge_tts
from openai import AsyncOpenAI

from storyteller.constants import (
    EDGE_VOICE,
    LOCAL_PITCH,
    LOCAL_RATE,
    OPENAI_VOICE,
    PCM_SAMPLE_RATE,
    TTS_RETRY_BASE_DELAY,
    TTS_RETRY_COUNT,
)
from storyteller.emotion import decode_pcm, detect_tone, request_speech
from storyteller.models import (
    ContextWindow,
    EncodedAudio,
    PcmAudio,
    SynthesisOutcome,
    Utterance,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SynthesisError(Exception):
    """A backend call was rejected or returned no usable audio."""


@runtime_checkable
class SynthesisBackend(Protocol):
    name: str

    async def synthesize(
        self, index: int, text: str, context: ContextWindow
    ) -> SynthesisOutcome:  # pragma: no cover - interface
        ...


async def with_retries(
    call: Callable[[], Awaitable[T]],
    description: str,
    attempts: int = TTS_RETRY_COUNT,
    base_delay: float = TTS_RETRY_BASE_DELAY,
) -> T:
    """Await call() until it succeeds, backing off exponentially between attempts.

    Raises SynthesisError chained to the last failure once attempts run out.
    """
    last_error = None
    for attempt in range(attempts):
        try:
            return await call()
        except Exception as e:
            last_error = e
            logger.debug("%s failed (attempt %d/%d): %s", description, attempt + 1, attempts, e)

        if attempt < attempts - 1:
            await asyncio.sleep(base_delay * (2 ** attempt))

    raise SynthesisError(f"{description} failed: {last_error}") from last_error


def edge_rate(speed: float) -> str:
    """Speed multiplier -> edge-tts relative rate string (1.1 -> "+10%")."""
    return f"{round((speed - 1.0) * 100):+d}%"


class EdgeBackend:
    """Cloud-plain: one edge-tts request, streamed into an in-memory MP3."""

    name = "edge"

    def __init__(
        self,
        voice: str = EDGE_VOICE,
        speed: float = 1.0,
        retry_delay: float = TTS_RETRY_BASE_DELAY,
    ):
        self.voice = voice
        self.rate = edge_rate(speed)
        self.retry_delay = retry_delay

    async def synthesize(self, index: int, text: str, context: ContextWindow) -> SynthesisOutcome:
        data = await with_retries(
            lambda: self._stream(text),
            f"edge-tts segment {index}",
            base_delay=self.retry_delay,
        )
        return SynthesisOutcome(audio=EncodedAudio(data=data, format="mp3"))

    async def _stream(self, text: str) -> bytes:
        communicate = edge_tts.Communicate(text, self.voice, rate=self.rate)
        audio = bytearray()
        async for chunk in communicate.stream():
            if chunk["type"] == "audio":
                audio.extend(chunk["data"])

        # Empty output counts as failure
        if not audio:
            raise SynthesisError(f"edge-tts returned no audio for: {text[:50]}...")
        return bytes(audio)


class EmotiveBackend:
    """Cloud-emotive: infer a tone from nearby text, then speak in that tone."""

    name = "openai"

    def __init__(
        self,
        voice: str = OPENAI_VOICE,
        speed: float = 1.0,
        client: AsyncOpenAI | None = None,
        retry_delay: float = TTS_RETRY_BASE_DELAY,
    ):
        self.voice = voice
        self.speed = speed
        self.retry_delay = retry_delay
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # Created on first use; reads OPENAI_API_KEY from the environment
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    async def synthesize(self, index: int, text: str, context: ContextWindow) -> SynthesisOutcome:
        tone = await detect_tone(self.client, text, context.previous, context.upcoming)
        logger.debug("Segment %d tone: %s", index, tone)

        async def speak() -> bytes:
            data = await request_speech(self.client, text, self.voice, tone, self.speed)
            if not data:
                raise SynthesisError(f"No audio returned for segment {index}")
            return data

        data = await with_retries(speak, f"OpenAI speech segment {index}", base_delay=self.retry_delay)
        samples = decode_pcm(data)
        if samples.size == 0:
            raise SynthesisError(f"Audio for segment {index} held no complete samples")
        return SynthesisOutcome(audio=PcmAudio(samples=samples, sample_rate=PCM_SAMPLE_RATE), tone=tone)


class LocalBackend:
    """Local-device: the device voice speaks at play time, so this only builds a handle."""

    name = "local"

    def __init__(self, voice: str | None = None, speed: float = 1.0, pitch: float = 1.0):
        self.voice = voice
        self.rate = int(LOCAL_RATE * speed)
        # Pitch multiplier 0.0-2.0; left to the driver default at 1.0
        self.pitch = None if pitch == 1.0 else max(0, min(100, round(LOCAL_PITCH * pitch)))

    async def synthesize(self, index: int, text: str, context: ContextWindow) -> SynthesisOutcome:
        return SynthesisOutcome(audio=Utterance(text=text, voice=self.voice, rate=self.rate, pitch=self.pitch))


def build_backend(
    engine: str, voice: str | None = None, speed: float = 1.0, pitch: float = 1.0
) -> SynthesisBackend:
    """Select a backend by engine name: "edge", "openai" or "local".

    pitch only applies to the local device voice.
    """
    if engine == "edge":
        return EdgeBackend(voice=voice or EDGE_VOICE, speed=speed)
    if engine == "openai":
        return EmotiveBackend(voice=voice or OPENAI_VOICE, speed=speed)
    if engine == "local":
        return LocalBackend(voice=voice, speed=speed, pitch=pitch)
    raise ValueError(f"Unknown engine: {engine}")
