"""Data models for narration playback."""

from dataclasses import dataclass, field

import numpy as np


@dataclass
class Document:
    segments: list[str] = field(default_factory=list)       # one sentence per entry
    page_mapping: list[int] = field(default_factory=list)   # page -> index of its first segment

    def append(self, text: str) -> int:
        """Append a segment (e.g. from live transcription) and return its index."""
        self.segments.append(text)
        return len(self.segments) - 1


@dataclass(frozen=True)
class ContextWindow:
    """Neighboring text handed to a backend for prosody decisions."""
    previous: str | None = None
    upcoming: tuple[str, ...] = ()


@dataclass(frozen=True)
class Utterance:
    """Live device narration handle; nothing is synthesized ahead of time."""
    text: str
    voice: str | None = None
    rate: int | None = None
    pitch: int | None = None   # driver pitch, 0-100 with 50 normal (espeak)


@dataclass(frozen=True)
class EncodedAudio:
    data: bytes
    format: str = "mp3"


@dataclass(frozen=True, eq=False)
class PcmAudio:
    samples: np.ndarray        # float32 in [-1.0, 1.0)
    sample_rate: int


AudioPayload = Utterance | EncodedAudio | PcmAudio


@dataclass(frozen=True)
class SynthesisOutcome:
    audio: AudioPayload
    tone: str | None = None


@dataclass(frozen=True)
class PlaybackState:
    is_playing: bool = False
    is_loading: bool = False
    current_index: int = -1    # -1 = not yet started
    detected_tone: str | None = None
