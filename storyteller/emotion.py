"""Tone inference and raw PCM speech via the OpenAI API."""

import logging

import numpy as np
from openai import AsyncOpenAI

from storyteller.constants import (
    DEFAULT_TONE,
    OPENAI_SPEECH_MODEL,
    OPENAI_TONE_MODEL,
    PCM_SAMPLE_WIDTH,
    TONE_EXAMPLES,
)

logger = logging.getLogger(__name__)


def _quote_safe(text: str) -> str:
    return text.replace('"', "'")


def build_tone_prompt(text: str, previous: str | None, upcoming: tuple[str, ...] | list[str]) -> str:
    """Prompt asking for one adjective describing how to read the target sentence.

    Double quotes in the inputs become apostrophes so they cannot close the
    quoted blocks of the prompt.
    """
    lines = [
        "You are a professional audiobook narrator. Decide the single best "
        'emotional tone for reading the "Target sentence" aloud.',
        "",
    ]
    if previous:
        lines.append(f'Previous sentence: "{_quote_safe(previous)}"')
    lines.append(f'Target sentence: "{_quote_safe(text)}"')
    if upcoming:
        joined = " ".join(_quote_safe(s) for s in upcoming)
        lines.append(f'Upcoming context (next {len(upcoming)} lines): "{joined}"')
    lines.append("")
    lines.append(
        "Answer with one adjective only (for example "
        + ", ".join(TONE_EXAMPLES)
        + ")."
    )
    return "\n".join(lines)


def _clean_tone(raw: str | None) -> str:
    if not raw:
        return ""
    words = raw.strip().split()
    if not words:
        return ""
    return words[0].strip(".,;:!?\"'").capitalize()


async def detect_tone(
    client: AsyncOpenAI,
    text: str,
    previous: str | None = None,
    upcoming: tuple[str, ...] | list[str] = (),
    model: str = OPENAI_TONE_MODEL,
) -> str:
    """Infer the narration tone for text. Never raises: falls back to DEFAULT_TONE."""
    prompt = build_tone_prompt(text, previous, upcoming)
    try:
        response = await client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
        )
        tone = _clean_tone(response.choices[0].message.content)
    except Exception as e:
        logger.warning("Tone detection failed, using %s: %s", DEFAULT_TONE, e)
        return DEFAULT_TONE
    return tone or DEFAULT_TONE


async def request_speech(
    client: AsyncOpenAI,
    text: str,
    voice: str,
    tone: str,
    speed: float = 1.0,
    model: str = OPENAI_SPEECH_MODEL,
) -> bytes:
    """Request raw 24 kHz mono int16 PCM for text spoken in the given tone."""
    # The tone goes in the instructions so it is never read out as part of the text
    response = await client.audio.speech.create(
        model=model,
        voice=voice,
        input=text,
        instructions=f"Speak with a {tone.lower()} tone.",
        response_format="pcm",
        speed=speed,
    )
    return response.content


def decode_pcm(data: bytes) -> np.ndarray:
    """Little-endian int16 PCM bytes -> float32 samples in [-1.0, 1.0).

    A trailing odd byte is dropped.
    """
    usable = len(data) - len(data) % PCM_SAMPLE_WIDTH
    samples = np.frombuffer(data[:usable], dtype="<i2")
    return samples.astype(np.float32) / 32768.0
