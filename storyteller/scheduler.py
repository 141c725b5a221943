"""Playback state machine: synthesis through the prefetch cache, audio output, auto-advance.

States, by PlaybackState fields:
  Idle     is_playing=False
  Armed    is_playing=True, index set, nothing requested yet
  Loading  is_playing=True, is_loading=True
  Playing  is_playing=True, audio device active

Every asynchronous result (synthesis settling, audio finishing or failing)
carries the play token it was started under and takes effect only while that
token is still the active one. stop() and each new play_index() replace the
token, which is the only cancellation mechanism: in-flight backend calls run
to completion and their results are dropped.
"""

import asyncio
import dataclasses
import logging
from functools import partial
from typing import Awaitable, Callable, Sequence

from storyteller.cache import PrefetchCache
from storyteller.constants import PREFETCH_HORIZON, SEEK_QUIESCENCE_SECONDS, TONE_CONTEXT_AHEAD
from storyteller.device import AudioSink, DeviceError
from storyteller.models import ContextWindow, PlaybackState, SynthesisOutcome
from storyteller.tts import SynthesisBackend, SynthesisError

logger = logging.getLogger(__name__)

StateListener = Callable[[PlaybackState], None]
ErrorHandler = Callable[[int, Exception], None]


class _PlayToken:
    __slots__ = ("index",)

    def __init__(self, index: int):
        self.index = index

    def __repr__(self) -> str:
        return f"<play token {self.index}>"


class PlaybackScheduler:
    def __init__(
        self,
        segments: Sequence[str],
        backend: SynthesisBackend,
        sink: AudioSink,
        cache: PrefetchCache | None = None,
        prefetch_horizon: int = PREFETCH_HORIZON,
        quiescence: float = SEEK_QUIESCENCE_SECONDS,
        on_error: ErrorHandler | None = None,
    ):
        self._segments = segments
        self._backend = backend
        self._sink = sink
        self.cache = cache if cache is not None else PrefetchCache()
        self.prefetch_horizon = prefetch_horizon
        self.quiescence = quiescence
        self._on_error = on_error

        self._state = PlaybackState()
        self._active: _PlayToken | None = None
        self._intent = 0
        self._listeners: list[StateListener] = []
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    # --- state ---

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def segments(self) -> Sequence[str]:
        return self._segments

    @property
    def backend(self) -> SynthesisBackend:
        return self._backend

    @property
    def active_index(self) -> int | None:
        return self._active.index if self._active is not None else None

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _update(self, **changes) -> None:
        new_state = dataclasses.replace(self._state, **changes)
        if new_state.is_playing:
            self._idle.clear()
        else:
            self._idle.set()
        if new_state == self._state:
            return
        self._state = new_state
        for listener in list(self._listeners):
            listener(new_state)

    async def wait_until_idle(self) -> PlaybackState:
        await self._idle.wait()
        return self._state

    # --- configuration ---

    def set_backend(self, backend: SynthesisBackend) -> None:
        """Switch backends; cached audio from the old one no longer applies."""
        self._backend = backend
        self.cache.clear()
        logger.info("Synthesis backend set to %s", getattr(backend, "name", type(backend).__name__))

    def replace_segments(self, segments: Sequence[str]) -> None:
        self.stop()
        self.cache.clear()
        self._segments = segments
        self._update(current_index=-1)

    def reset_index(self, index: int = -1) -> None:
        self._update(current_index=index)

    # --- operations ---

    def start(self, index: int) -> asyncio.Task:
        """Begin play_index(index) in the background."""
        if 0 <= index < len(self._segments):
            # Not idle from here on, even before the task first runs
            self._idle.clear()
        return self._spawn(self._play_unless_stopped(index, self._intent))

    async def _play_unless_stopped(self, index: int, intent: int) -> None:
        if intent != self._intent:
            logger.debug("Play of segment %d cancelled before it began", index)
            if not self._state.is_playing:
                self._idle.set()
            return
        await self.play_index(index)

    async def play_index(self, index: int) -> None:
        """Play one segment; natural completion advances to the next one."""
        if not 0 <= index < len(self._segments):
            logger.warning("Ignoring play request for segment %d (document has %d)", index, len(self._segments))
            if not self._state.is_playing:
                self._idle.set()
            return

        token = _PlayToken(index)
        self._active = token
        self._sink.stop()
        self._update(is_playing=True, is_loading=False, current_index=index, detected_tone=None)

        text = self._segments[index]
        if not text.strip():
            logger.debug("Skipping empty segment %d", index)
            self._advance(token)
            return

        pending = self.cache.ensure(index, self._synthesize)
        for ahead in range(index + 1, index + 1 + self.prefetch_horizon):
            self._prefetch(ahead)

        if not pending.done():
            self._update(is_loading=True)
            # wait() leaves the shared task running if this play is cancelled,
            # and returns normally if the shared task is the one cancelled
            await asyncio.wait([pending])

        outcome = None
        if pending.cancelled():
            error = SynthesisError(f"Synthesis for segment {index} was cancelled")
        else:
            error = pending.exception()
            if error is None:
                outcome = pending.result()

        if error is not None:
            if self._active is not token:
                logger.debug("Dropping stale failure for segment %d: %s", index, error)
                return
            self._fail(token, error)
            return

        if self._active is not token:
            logger.debug("Discarding stale audio for segment %d", index)
            return

        self._update(is_loading=False, detected_tone=outcome.tone)
        try:
            self._sink.start(
                outcome.audio,
                on_finished=partial(self._finished, token),
                on_error=partial(self._device_failed, token),
            )
        except Exception as e:
            self._device_failed(token, e)

    def stop(self) -> None:
        """Halt any sounding audio and go Idle. Safe to call when nothing plays."""
        self._active = None
        self._intent += 1
        self._sink.stop()
        self._update(is_playing=False, is_loading=False, detected_tone=None)

    async def seek(self, index: int) -> asyncio.Task | None:
        """Stop, let interrupted callbacks settle, then play index.

        Returns the play task, or None when another stop or seek superseded
        this one during the pause.
        """
        self.stop()
        intent = self._intent
        await asyncio.sleep(self.quiescence)
        if intent != self._intent:
            logger.debug("Seek to segment %d superseded", index)
            return None
        return self.start(index)

    def advance(self) -> None:
        """Move past the active segment, as if it finished playing."""
        if self._active is not None:
            self._advance(self._active)

    # --- internals ---

    def _advance(self, token: _PlayToken) -> None:
        if self._active is not token:
            return
        next_index = token.index + 1
        if next_index < len(self._segments):
            # Retire the old token now; the new play installs its own when it runs
            self._active = _PlayToken(next_index)
            self.start(next_index)
            return
        logger.info("Reached end of document")
        self._active = None
        self._update(is_playing=False, is_loading=False, current_index=0, detected_tone=None)

    def _finished(self, token: _PlayToken) -> None:
        if self._active is not token:
            return
        logger.debug("Segment %d finished", token.index)
        self._advance(token)

    def _device_failed(self, token: _PlayToken, error: Exception) -> None:
        if self._active is not token:
            return
        if not isinstance(error, DeviceError):
            error = DeviceError(str(error))
        self._fail(token, error)

    def _fail(self, token: _PlayToken, error: Exception) -> None:
        logger.error("Playback of segment %d failed: %s", token.index, error)
        self._active = None
        self._sink.stop()
        self._update(is_playing=False, is_loading=False, detected_tone=None)
        if self._on_error is not None:
            self._on_error(token.index, error)

    def _prefetch(self, index: int) -> None:
        if not 0 <= index < len(self._segments):
            return
        if not self._segments[index].strip():
            return
        self.cache.ensure(index, self._synthesize)

    def context_for(self, index: int) -> ContextWindow:
        previous = self._segments[index - 1] if index > 0 else None
        upcoming = tuple(self._segments[index + 1:index + 1 + TONE_CONTEXT_AHEAD])
        return ContextWindow(previous=previous, upcoming=upcoming)

    def _synthesize(self, index: int) -> Awaitable[SynthesisOutcome]:
        # Text, context and backend are captured at request time
        backend = self._backend
        text = self._segments[index]
        context = self.context_for(index)
        return backend.synthesize(index, text, context)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def shutdown(self) -> None:
        """Stop playback and cancel background play tasks."""
        self.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
