"""Tests for the audio device sink."""

import asyncio
import io
import threading
import time
from unittest.mock import patch

import numpy as np
import pytest
from pydub import AudioSegment

from storyteller.device import DeviceAudioSink, DeviceError, decode_encoded
from storyteller.models import EncodedAudio, PcmAudio, Utterance


def _wav_bytes(samples, channels=1, frame_rate=8000):
    segment = AudioSegment(
        data=np.array(samples, dtype="<i2").tobytes(),
        sample_width=2,
        frame_rate=frame_rate,
        channels=channels,
    )
    buf = io.BytesIO()
    segment.export(buf, format="wav")
    return buf.getvalue()


def _pcm(seconds=0.01, rate=24000):
    return PcmAudio(samples=np.zeros(int(seconds * rate), dtype=np.float32), sample_rate=rate)


async def _play(sink, audio, timeout=2.0):
    """Start audio and wait for it to report; returns "finished" or the error."""
    loop = asyncio.get_running_loop()
    outcome = loop.create_future()
    sink.start(
        audio,
        on_finished=lambda: outcome.set_result("finished"),
        on_error=lambda e: outcome.set_result(e),
    )
    return await asyncio.wait_for(outcome, timeout)


# --- decoding ---

def test_decode_encoded_mono():
    samples, rate = decode_encoded(EncodedAudio(data=_wav_bytes([0, 16384, -16384]), format="wav"))
    assert rate == 8000
    assert samples.shape == (3,)
    np.testing.assert_allclose(samples, [0.0, 0.5, -0.5])


def test_decode_encoded_stereo_frames():
    data = _wav_bytes([0, 8192, 16384, -16384], channels=2, frame_rate=22050)
    samples, rate = decode_encoded(EncodedAudio(data=data, format="wav"))
    assert rate == 22050
    assert samples.shape == (2, 2)
    np.testing.assert_allclose(samples[1], [0.5, -0.5])


# --- playback ---

@patch("storyteller.device.sd")
def test_pcm_playback_reports_finished(mock_sd):
    audio = _pcm()
    result = asyncio.run(_play(DeviceAudioSink(), audio))
    assert result == "finished"
    played, rate = mock_sd.play.call_args.args
    assert played is audio.samples
    assert rate == 24000


@patch("storyteller.device.sd")
def test_encoded_playback_decodes_first(mock_sd):
    audio = EncodedAudio(data=_wav_bytes([0, 16384] * 40), format="wav")
    assert asyncio.run(_play(DeviceAudioSink(), audio)) == "finished"
    played, rate = mock_sd.play.call_args.args
    assert rate == 8000
    assert len(played) == 80


@patch("storyteller.device.sd")
def test_device_failure_reported_as_device_error(mock_sd):
    mock_sd.play.side_effect = RuntimeError("PortAudio error: device unavailable")
    result = asyncio.run(_play(DeviceAudioSink(), _pcm()))
    assert isinstance(result, DeviceError)
    assert "device unavailable" in str(result)


def test_missing_sounddevice_reported_as_device_error():
    with patch("storyteller.device.sd", None):
        result = asyncio.run(_play(DeviceAudioSink(), _pcm()))
    assert isinstance(result, DeviceError)
    assert "sounddevice" in str(result)


@patch("storyteller.device.sd")
def test_stop_silences_and_suppresses_callbacks(mock_sd):
    """A stopped playback never reports finished."""
    sounding = threading.Event()
    mock_sd.play.side_effect = lambda *args: sounding.set()

    async def scenario():
        loop = asyncio.get_running_loop()
        sink = DeviceAudioSink()
        reports = []
        sink.start(_pcm(seconds=5), on_finished=lambda: reports.append("finished"), on_error=reports.append)
        assert await loop.run_in_executor(None, sounding.wait, 2)
        sink.stop()
        await asyncio.sleep(0.05)
        return reports

    assert asyncio.run(scenario()) == []
    mock_sd.stop.assert_called_with(ignore_errors=True)
    mock_sd.wait.assert_not_called()


@patch("storyteller.device.sd")
def test_new_playback_replaces_previous(mock_sd):
    first_sounding = threading.Event()
    mock_sd.play.side_effect = lambda *args: first_sounding.set()

    async def scenario():
        loop = asyncio.get_running_loop()
        sink = DeviceAudioSink()
        reports = []
        sink.start(_pcm(seconds=5), on_finished=lambda: reports.append("first"), on_error=reports.append)
        await loop.run_in_executor(None, first_sounding.wait, 2)
        second = await _play(sink, _pcm())
        await asyncio.sleep(0.05)
        return reports, second

    reports, second = asyncio.run(scenario())
    assert reports == []
    assert second == "finished"
    assert mock_sd.play.call_count == 2


def test_stop_without_playback_is_safe():
    sink = DeviceAudioSink()
    sink.stop()
    sink.stop()


def test_unsupported_payload_rejected():
    with pytest.raises(DeviceError, match="Unsupported"):
        DeviceAudioSink().start("raw text", on_finished=lambda: None, on_error=lambda e: None)


# --- device speech ---

@patch("storyteller.device.pyttsx3")
def test_utterance_spoken_by_device_voice(mock_pyttsx3):
    engine = mock_pyttsx3.init.return_value

    async def scenario():
        sink = DeviceAudioSink()
        first = await _play(sink, Utterance(text="Hello there.", voice="english", rate=200))
        second = await _play(sink, Utterance(text="Again."))
        return first, second

    assert asyncio.run(scenario()) == ("finished", "finished")
    mock_pyttsx3.init.assert_called_once_with()
    engine.setProperty.assert_any_call("rate", 200)
    engine.setProperty.assert_any_call("voice", "english")
    assert [c.args[0] for c in engine.say.call_args_list] == ["Hello there.", "Again."]
    assert engine.runAndWait.call_count == 2


@patch("storyteller.device.pyttsx3")
def test_utterance_engine_failure_is_device_error(mock_pyttsx3):
    mock_pyttsx3.init.side_effect = RuntimeError("no speech driver")
    result = asyncio.run(_play(DeviceAudioSink(), Utterance(text="Hi.")))
    assert isinstance(result, DeviceError)


@patch("storyteller.device.pyttsx3")
def test_stopping_utterance_halts_engine(mock_pyttsx3):
    engine = mock_pyttsx3.init.return_value
    speaking = threading.Event()
    released = threading.Event()
    engine.runAndWait.side_effect = lambda: (speaking.set(), released.wait(2))
    engine.stop.side_effect = released.set

    async def scenario():
        loop = asyncio.get_running_loop()
        sink = DeviceAudioSink()
        reports = []
        sink.start(Utterance(text="A long sentence."), on_finished=lambda: reports.append("finished"),
                   on_error=reports.append)
        await loop.run_in_executor(None, speaking.wait, 2)
        sink.stop()
        await asyncio.sleep(0.05)
        return reports

    assert asyncio.run(scenario()) == []
    engine.stop.assert_called_once_with()


@patch("storyteller.device.pyttsx3")
def test_utterance_pitch_applied_only_when_set(mock_pyttsx3):
    engine = mock_pyttsx3.init.return_value

    async def scenario():
        sink = DeviceAudioSink()
        await _play(sink, Utterance(text="Plain."))
        assert all(c.args[0] != "pitch" for c in engine.setProperty.call_args_list)
        await _play(sink, Utterance(text="Higher.", pitch=60))
        sink.close()

    asyncio.run(scenario())
    engine.setProperty.assert_any_call("pitch", 60)


class _SingleLoopEngine:
    """Speech engine that, like pyttsx3, allows one runAndWait() loop at a time.

    The first utterance speaks until stop() and then takes a moment to
    drain before its loop ends.
    """

    def __init__(self):
        self.in_loop = False
        self.spoken = []
        self.threads = []
        self.speaking = threading.Event()
        self._released = threading.Event()

    def setProperty(self, name, value):
        pass

    def say(self, text):
        self.spoken.append(text)

    def stop(self):
        self._released.set()

    def runAndWait(self):
        if self.in_loop:
            raise RuntimeError("run loop already started")
        self.in_loop = True
        self.threads.append(threading.get_ident())
        try:
            if len(self.threads) == 1:
                self.speaking.set()
                self._released.wait(2)
                time.sleep(0.05)
        finally:
            self.in_loop = False


@patch("storyteller.device.pyttsx3")
def test_utterance_after_stop_waits_for_engine_loop(mock_pyttsx3):
    engine = _SingleLoopEngine()
    mock_pyttsx3.init.return_value = engine

    async def scenario():
        loop = asyncio.get_running_loop()
        sink = DeviceAudioSink()
        reports = []
        sink.start(Utterance(text="Interrupted."), on_finished=lambda: reports.append("finished"),
                   on_error=reports.append)
        await loop.run_in_executor(None, engine.speaking.wait, 2)
        sink.stop()
        result = await _play(sink, Utterance(text="Next sentence."))
        sink.close()
        return reports, result

    reports, result = asyncio.run(scenario())
    assert reports == []
    assert result == "finished"
    assert engine.spoken == ["Interrupted.", "Next sentence."]
    assert len(set(engine.threads)) == 1
