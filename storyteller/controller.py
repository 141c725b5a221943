"""User intents (play/pause, seek, document changes) translated into scheduler calls."""

import asyncio
import logging

from storyteller.models import Document, PlaybackState
from storyteller.scheduler import PlaybackScheduler
from storyteller.tts import SynthesisBackend

logger = logging.getLogger(__name__)


class SequenceController:
    """Thin driver over a PlaybackScheduler for one document at a time.

    Methods that start playback return the background play task (or None
    when nothing was started) so callers can await the first segment.
    """

    def __init__(self, scheduler: PlaybackScheduler, document: Document | None = None):
        self.scheduler = scheduler
        self.document = document or Document(segments=list(scheduler.segments))
        if scheduler.segments is not self.document.segments:
            scheduler.replace_segments(self.document.segments)

    @property
    def state(self) -> PlaybackState:
        return self.scheduler.state

    async def play_from_start(self) -> asyncio.Task | None:
        if not self.document.segments:
            return None
        return await self.scheduler.seek(0)

    def toggle(self) -> asyncio.Task | None:
        """Pause when playing, otherwise resume at the current segment."""
        if not self.document.segments:
            return None
        if self.state.is_playing:
            self.scheduler.stop()
            return None
        index = self.state.current_index
        if index == -1:
            index = 0
            self.scheduler.reset_index(index)
        return self.scheduler.start(index)

    def stop(self) -> None:
        self.scheduler.stop()

    async def seek_to_index(self, index: int) -> asyncio.Task | None:
        if not 0 <= index < len(self.document.segments):
            logger.warning("No segment %d to seek to", index)
            return None
        return await self.scheduler.seek(index)

    async def seek_to_page(self, page: int) -> asyncio.Task | None:
        """Seek to the first segment of a 0-based page."""
        mapping = self.document.page_mapping
        if not 0 <= page < len(mapping):
            logger.warning("No page %d in document (%d pages)", page, len(mapping))
            return None
        return await self.seek_to_index(mapping[page])

    async def step(self, offset: int) -> asyncio.Task | None:
        """Seek relative to the current segment, clamped to the document."""
        if not self.document.segments:
            return None
        current = max(self.state.current_index, 0)
        target = min(max(current + offset, 0), len(self.document.segments) - 1)
        return await self.seek_to_index(target)

    def on_document_replaced(self, document: Document) -> None:
        """Full reset: stop, drop cached audio, install the new segments at index -1."""
        self.document = document
        self.scheduler.replace_segments(document.segments)

    def append_segment(self, text: str) -> int:
        """Append text to the live document; playback picks it up when it gets there."""
        return self.document.append(text)

    def change_backend(self, backend: SynthesisBackend) -> None:
        self.scheduler.set_backend(backend)
