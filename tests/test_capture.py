import asyncio

import numpy as np
import pytest

from lineinbridge.capture import CaptureSession, handle_samples
from lineinbridge.resample import Resampler, ResamplerMode


class FakeDevice:
    def __init__(self):
        self.calls = []

    def pause(self, on):
        self.calls.append(("pause", on))

    def close(self):
        self.calls.append(("close",))


def _linear(in_rate=48000, channels=2, target=48000):
    return Resampler(in_rate, channels, target, ResamplerMode.LINEAR)


def _decode(payload):
    return np.frombuffer(payload, dtype="<i2").tolist()


def test_handle_samples_stereo_direct():
    out = handle_samples(np.array([1.0, -1.0, 0.0, 0.0], dtype=np.float32), 2, _linear())
    assert _decode(out) == [32767, -32767, 0, 0]


def test_handle_samples_clamps():
    out = handle_samples([2.0, -3.0], 2, _linear())
    assert _decode(out) == [32767, -32767]


def test_handle_samples_mono_duplicated():
    out = handle_samples([1.0, -1.0], 1, _linear(channels=1))
    assert _decode(out) == [32767, 32767, -32767, -32767]


def test_handle_samples_empty():
    assert handle_samples([], 2, _linear()) == b""


def test_handle_samples_resamples_down():
    data = np.zeros(4000, dtype=np.float32)
    out = handle_samples(data, 2, _linear(target=24000))
    assert len(out) % 4 == 0
    assert 0 < len(out) < len(data) * 2
    assert set(_decode(out)) == {0}


def test_session_rejects_unknown_format():
    with pytest.raises(ValueError):
        CaptureSession(FakeDevice(), 48000, 2, "S24", _linear(), asyncio.new_event_loop())


def test_close_is_idempotent():
    device = FakeDevice()
    loop = asyncio.new_event_loop()
    try:
        session = CaptureSession(device, 48000, 2, "F32", _linear(), loop)
        session.close()
        session.close()
    finally:
        loop.close()
    assert device.calls == [("pause", 1), ("close",)]


def test_context_manager_closes():
    device = FakeDevice()
    loop = asyncio.new_event_loop()
    try:
        with CaptureSession(device, 48000, 2, "F32", _linear(), loop) as session:
            assert session.format == "F32"
    finally:
        loop.close()
    assert ("close",) in device.calls


@pytest.mark.asyncio
async def test_session_delivers_i16_chunks():
    loop = asyncio.get_running_loop()
    session = CaptureSession(FakeDevice(), 48000, 2, "I16", _linear(), loop)
    raw = np.array([32767, -32767], dtype="<i2").tobytes()
    session._on_audio(None, memoryview(raw))
    chunk = await asyncio.wait_for(session.receiver.get(), 1.0)
    assert _decode(chunk) == [32767, -32767]


@pytest.mark.asyncio
async def test_session_delivers_u16_chunks():
    loop = asyncio.get_running_loop()
    session = CaptureSession(FakeDevice(), 48000, 2, "U16", _linear(), loop)
    raw = np.array([32768, 0], dtype="<u2").tobytes()
    session._on_audio(None, raw)
    chunk = await asyncio.wait_for(session.receiver.get(), 1.0)
    assert _decode(chunk) == [0, -32767]


@pytest.mark.asyncio
async def test_session_f32_and_observed_rate():
    loop = asyncio.get_running_loop()
    session = CaptureSession(FakeDevice(), 48000, 2, "F32", _linear(), loop)
    assert session.observed_rate is None
    raw = np.array([1.0, 0.0], dtype="<f4").tobytes()
    session._on_audio(None, raw)
    chunk = await asyncio.wait_for(session.receiver.get(), 1.0)
    assert _decode(chunk) == [32767, 0]
    assert session.sample_rate == 48000