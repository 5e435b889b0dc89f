"""Audio capture from input devices as interleaved 16-bit stereo PCM."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from collections.abc import Sequence
from enum import Enum
from typing import Any

import numpy as np

from .models import CaptureDeviceInfo
from .resample import (
    TARGET_CHANNELS,
    Resampler,
    ResamplerMode,
    convert_direct_to_i16,
    samples_to_bytes,
)

logger = logging.getLogger(__name__)

_CHUNK_FRAMES = 1024
_PROBE_RATE = 48_000
_ERROR_QUEUE_SIZE = 4


class CaptureError(Exception):
    """Raised when an input device cannot be found, opened or started."""


class _SampleFormat(Enum):
    F32 = "F32"
    I16 = "I16"
    U16 = "U16"

    def decode(self, raw: bytes) -> np.ndarray:
        """Decode little-endian raw samples to floats in [-1, 1]."""
        dtype = {"F32": "<f4", "I16": "<i2", "U16": "<u2"}[self.value]
        size = np.dtype(dtype).itemsize
        raw = raw[: len(raw) - len(raw) % size]
        values = np.frombuffer(raw, dtype=dtype)
        if self is _SampleFormat.F32:
            return values.astype(np.float32)
        if self is _SampleFormat.I16:
            return values.astype(np.float32) / np.float32(32767.0)
        shifted = values.astype(np.int32) - 32768
        return shifted.astype(np.float32) / np.float32(32768.0)


def handle_samples(
    data: Sequence[float] | np.ndarray, channels: int, resampler: Resampler
) -> bytes:
    """Turn one block of float samples into little-endian 16-bit stereo PCM."""
    resampler.observe_input(len(data), channels)
    if resampler.needs_resample_rate():
        output = resampler.process(data, channels)
    else:
        output = convert_direct_to_i16(data, channels)
    if len(output) == 0:
        return b""
    return samples_to_bytes(output)


class CaptureSession:
    """A running capture whose PCM chunks arrive on ``receiver``.

    Errors from the audio thread arrive on ``error_receiver``.
    """

    def __init__(
        self,
        device: Any,
        sample_rate: int,
        channels: int,
        format: str,
        resampler: Resampler,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._sample_format = _SampleFormat(format)
        self._device = device
        self._resampler = resampler
        self._loop = loop
        self._lock = threading.Lock()
        self.sample_rate = sample_rate
        self.channels = channels
        self.format = self._sample_format.value
        self.receiver: asyncio.Queue[bytes] = asyncio.Queue()
        self.error_receiver: asyncio.Queue[str] = asyncio.Queue(maxsize=_ERROR_QUEUE_SIZE)

    @property
    def observed_rate(self) -> int | None:
        """Input rate measured from delivered frames, once known."""
        with self._lock:
            return self._resampler.observed_rate

    def _on_audio(self, _device: Any, buffer: Any) -> None:
        try:
            samples = self._sample_format.decode(bytes(buffer))
            with self._lock:
                payload = handle_samples(samples, self.channels, self._resampler)
        except Exception as err:  # the audio thread must never die
            self._report(f"capture error: {err}")
            return
        if payload:
            self._deliver(self.receiver.put_nowait, payload)

    def _deliver(self, push: Any, item: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(push, item)
        except RuntimeError:
            pass

    def _report(self, message: str) -> None:
        logger.warning("%s", message)
        self._deliver(self._push_error, message)

    def _push_error(self, message: str) -> None:
        try:
            self.error_receiver.put_nowait(message)
        except asyncio.QueueFull:
            pass

    def close(self) -> None:
        """Stop the device; further calls do nothing."""
        device, self._device = self._device, None
        if device is None:
            return
        device.pause(1)
        device.close()

    def __enter__(self) -> CaptureSession:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def _audio_backend() -> Any:
    os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")
    import pygame
    from pygame._sdl2 import audio

    if not pygame.get_init():
        pygame.init()
    return audio


def _input_device_names(sdl: Any) -> list[str]:
    try:
        return list(sdl.get_audio_device_names(True))
    except RuntimeError as err:
        raise CaptureError(f"enumerate input devices: {err}") from err


def _open_device(sdl: Any, name: str, rate: int, callback: Any) -> Any:
    return sdl.AudioDevice(
        devicename=name,
        iscapture=True,
        frequency=rate,
        audioformat=sdl.AUDIO_F32,
        numchannels=TARGET_CHANNELS,
        chunksize=_CHUNK_FRAMES,
        allowed_changes=sdl.AUDIO_ALLOW_ANY_CHANGE,
        callback=callback,
    )


def _probe(sdl: Any, name: str) -> tuple[int, list[int]]:
    try:
        device = _open_device(sdl, name, _PROBE_RATE, lambda *_: None)
    except RuntimeError:
        return 0, []
    try:
        return int(device.numchannels), sorted({int(device.frequency)})
    finally:
        device.close()


def list_input_device_details() -> list[CaptureDeviceInfo]:
    """Describe every input device: name, channel count and sample rate."""
    sdl = _audio_backend()
    details = []
    for name in _input_device_names(sdl):
        channels, rates = _probe(sdl, name)
        details.append(
            CaptureDeviceInfo(id=name, name=name, channels=channels, sample_rates=tuple(rates))
        )
    return details


def start_capture(
    device_name: str, target_rate: int, resampler_mode: ResamplerMode
) -> CaptureSession:
    """Open ``device_name`` and start delivering PCM at ``target_rate``.

    Must be called from a running event loop; chunks are queued on it.
    """
    loop = asyncio.get_running_loop()
    sdl = _audio_backend()
    if device_name not in _input_device_names(sdl):
        raise CaptureError("capture device not found")

    sink: list[CaptureSession] = []

    def callback(device: Any, buffer: Any) -> None:
        if sink:
            sink[0]._on_audio(device, buffer)

    try:
        device = _open_device(sdl, device_name, target_rate, callback)
    except RuntimeError as err:
        raise CaptureError(f"open capture device {device_name}: {err}") from err

    formats = {sdl.AUDIO_F32: "F32", sdl.AUDIO_S16: "I16", sdl.AUDIO_U16: "U16"}
    sample_format = formats.get(device.audioformat)
    if sample_format is None:
        device.close()
        raise CaptureError("unsupported sample format")
    rate = int(device.frequency)
    channels = int(device.numchannels)
    try:
        resampler = Resampler(rate, channels, target_rate, resampler_mode)
    except ValueError as err:
        device.close()
        raise CaptureError(f"build resampler: {err}") from err

    session = CaptureSession(device, rate, channels, sample_format, resampler, loop)
    sink.append(session)
    try:
        device.pause(0)
    except RuntimeError as err:
        session.close()
        raise CaptureError(f"start capture stream: {err}") from err
    return session