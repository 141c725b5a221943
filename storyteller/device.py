"""Audio output: one sounding source at a time across sample buffers, encoded streams and device speech."""

import asyncio
import io
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Protocol, runtime_checkable

import numpy as np
import pyttsx3
from pydub import AudioSegment

from storyteller.models import AudioPayload, EncodedAudio, PcmAudio, Utterance

logger = logging.getLogger(__name__)

# sounddevice needs the PortAudio system library at import time
try:
    import sounddevice as sd
except (ImportError, OSError):
    sd = None


class DeviceError(Exception):
    """The output device rejected or failed a playback."""


@runtime_checkable
class AudioSink(Protocol):
    def start(
        self,
        audio: AudioPayload,
        on_finished: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None:  # pragma: no cover - interface
        ...

    def stop(self) -> None:  # pragma: no cover - interface
        ...


def decode_encoded(audio: EncodedAudio) -> tuple[np.ndarray, int]:
    """Decode an encoded stream (MP3 etc.) to float32 samples plus its frame rate."""
    segment = AudioSegment.from_file(io.BytesIO(audio.data), format=audio.format)
    samples = np.array(segment.get_array_of_samples(), dtype=np.float32)

    # Reshape interleaved samples to (frames, channels)
    if segment.channels > 1:
        samples = samples.reshape((-1, segment.channels))

    full_scale = float(1 << (8 * segment.sample_width - 1))
    return samples / full_scale, segment.frame_rate


class _Playback:
    def __init__(self, loop, on_finished, on_error):
        self.loop = loop
        self.on_finished = on_finished
        self.on_error = on_error
        self.stopped = threading.Event()
        self.halt: Callable[[], None] | None = None


class DeviceAudioSink:
    """Plays each payload in a worker thread and reports back on the event loop.

    A playback that was stopped never reports completion or errors. All
    pyttsx3 work runs on one dedicated thread: the engine allows a single run
    loop at a time, so an utterance only starts once the previous one has
    fully returned from runAndWait().
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._current: _Playback | None = None
        self._engine = None
        self._speech = ThreadPoolExecutor(max_workers=1, thread_name_prefix="storyteller-speech")

    def start(self, audio, on_finished, on_error) -> None:
        executor = None
        if isinstance(audio, Utterance):
            target = self._speak
            executor = self._speech
        elif isinstance(audio, EncodedAudio):
            target = self._play_encoded
        elif isinstance(audio, PcmAudio):
            target = self._play_pcm
        else:
            raise DeviceError(f"Unsupported audio payload: {type(audio).__name__}")

        self.stop()
        loop = asyncio.get_running_loop()
        playback = _Playback(loop, on_finished, on_error)
        self._current = playback
        loop.run_in_executor(executor, self._run, playback, target, audio)

    def stop(self) -> None:
        playback, self._current = self._current, None
        if playback is None:
            return
        with self._lock:
            playback.stopped.set()
            if playback.halt is not None:
                try:
                    playback.halt()
                except Exception as e:
                    logger.warning("Stopping audio output failed: %s", e)

    def close(self) -> None:
        """Stop playback and release the speech thread."""
        self.stop()
        self._speech.shutdown(wait=False)

    # --- worker thread side ---

    def _run(self, playback: _Playback, target, audio) -> None:
        try:
            target(playback, audio)
        except Exception as e:
            logger.debug("Playback failed: %s", e)
            self._report(playback, playback.on_error, DeviceError(str(e)))
        else:
            self._report(playback, playback.on_finished)

    def _report(self, playback: _Playback, callback, *args) -> None:
        if playback.stopped.is_set():
            return
        playback.loop.call_soon_threadsafe(self._deliver, playback, callback, *args)

    @staticmethod
    def _deliver(playback: _Playback, callback, *args) -> None:
        # stop() may have run on the loop after the worker reported
        if not playback.stopped.is_set():
            callback(*args)

    def _play_samples(self, playback: _Playback, samples: np.ndarray, sample_rate: int) -> None:
        if sd is None:
            raise DeviceError("sounddevice is not available (is PortAudio installed?)")
        with self._lock:
            if playback.stopped.is_set():
                return
            sd.play(samples, sample_rate)
            playback.halt = lambda: sd.stop(ignore_errors=True)

        duration = len(samples) / float(sample_rate) if sample_rate else 0.0
        if not playback.stopped.wait(duration):
            sd.wait()

    def _play_pcm(self, playback: _Playback, audio: PcmAudio) -> None:
        self._play_samples(playback, audio.samples, audio.sample_rate)

    def _play_encoded(self, playback: _Playback, audio: EncodedAudio) -> None:
        samples, sample_rate = decode_encoded(audio)
        self._play_samples(playback, samples, sample_rate)

    def _speak(self, playback: _Playback, audio: Utterance) -> None:
        with self._lock:
            if playback.stopped.is_set():
                return
            if self._engine is None:
                self._engine = pyttsx3.init()
            engine = self._engine
            if audio.rate:
                engine.setProperty("rate", audio.rate)
            if audio.voice:
                engine.setProperty("voice", audio.voice)
            if audio.pitch is not None:
                engine.setProperty("pitch", audio.pitch)
            engine.say(audio.text)
            playback.halt = engine.stop

        engine.runAndWait()
