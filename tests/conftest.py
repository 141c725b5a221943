"""Shared fakes and fixtures for storyteller tests."""

import asyncio

import pytest

from storyteller.models import EncodedAudio, SynthesisOutcome
from storyteller.scheduler import PlaybackScheduler
from storyteller.tts import SynthesisError


def payload_for(index: int) -> EncodedAudio:
    return EncodedAudio(data=f"audio-{index}".encode(), format="raw")


def index_of(audio: EncodedAudio) -> int:
    return int(audio.data.decode().split("-")[1])


class RecordingBackend:
    """Resolves at once with a payload naming its index; records every call."""

    name = "recording"

    def __init__(self, tone=None, fail_once=(), fail_always=()):
        self.tone = tone
        self.calls = []
        self.contexts = {}
        self._fail_once = set(fail_once)
        self._fail_always = set(fail_always)

    async def synthesize(self, index, text, context):
        self.calls.append(index)
        self.contexts[index] = context
        if index in self._fail_always:
            raise SynthesisError(f"backend rejected segment {index}")
        if index in self._fail_once:
            self._fail_once.discard(index)
            raise SynthesisError(f"backend rejected segment {index} once")
        return SynthesisOutcome(audio=payload_for(index), tone=self.tone)


class GatedBackend:
    """Each index waits on a future that the test settles by hand."""

    name = "gated"

    def __init__(self):
        self.calls = []
        self._gates = {}

    def gate(self, index) -> asyncio.Future:
        if index not in self._gates:
            self._gates[index] = asyncio.get_running_loop().create_future()
        return self._gates[index]

    async def synthesize(self, index, text, context):
        self.calls.append(index)
        return await self.gate(index)

    def resolve(self, index, tone=None):
        self.gate(index).set_result(SynthesisOutcome(audio=payload_for(index), tone=tone))

    def fail(self, index, error=None):
        self.gate(index).set_exception(error or SynthesisError(f"segment {index} failed"))


class RecordingSink:
    """Records started payloads. With auto_finish, each playback ends on the next loop turn."""

    def __init__(self, auto_finish=True):
        self.auto_finish = auto_finish
        self.started = []
        self.stops = 0
        self.closed = False
        self._current = None

    @property
    def started_indices(self):
        return [index_of(audio) for audio in self.started]

    @property
    def is_sounding(self):
        return self._current is not None

    def start(self, audio, on_finished, on_error):
        self.started.append(audio)
        self._current = (on_finished, on_error)
        if self.auto_finish:
            asyncio.get_running_loop().call_soon(self._finish_if_current, on_finished)

    def _finish_if_current(self, on_finished):
        if self._current is not None and self._current[0] is on_finished:
            self._current = None
            on_finished()

    def stop(self):
        self.stops += 1
        self._current = None

    def close(self):
        self.stop()
        self.closed = True

    def finish(self):
        on_finished, _ = self._current
        self._current = None
        on_finished()

    def error(self, exc):
        _, on_error = self._current
        self._current = None
        on_error(exc)


async def settle(turns=5):
    """Let pending callbacks and tasks run."""
    for _ in range(turns):
        await asyncio.sleep(0)


def make_scheduler(segments, backend, sink, **kwargs):
    kwargs.setdefault("quiescence", 0)
    return PlaybackScheduler(segments, backend, sink, **kwargs)


@pytest.fixture
def sentences():
    return [f"Sentence number {i}." for i in range(10)]


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def manual_sink():
    return RecordingSink(auto_finish=False)
