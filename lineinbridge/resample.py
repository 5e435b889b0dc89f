"""Sample conversion and rate conversion to interleaved 16-bit stereo."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

import numpy as np

logger = logging.getLogger(__name__)

TARGET_CHANNELS = 2
_I16_MAX = np.float32(32767.0)
_SINC_CHUNK_FRAMES = 1024
_RATE_WINDOW = 2.0
_RATE_LOG_INTERVAL = 10.0

_BH_COEFFS = (0.35875, 0.48829, 0.14128, 0.01168)


class ResamplerMode(Enum):
    """How captured audio is brought to the target rate."""

    LINEAR = "linear"
    SINC_FAST = "sinc-fast"
    SINC_QUALITY = "sinc"

    @classmethod
    def parse(cls, name: str) -> ResamplerMode | None:
        """Map a configuration name to a mode, or ``None`` if unknown."""
        return _MODE_ALIASES.get(name.strip().lower())

    def label(self) -> str:
        return self.value


_MODE_ALIASES = {
    "linear": ResamplerMode.LINEAR,
    "basic": ResamplerMode.LINEAR,
    "sinc": ResamplerMode.SINC_QUALITY,
    "rubato": ResamplerMode.SINC_QUALITY,
    "quality": ResamplerMode.SINC_QUALITY,
    "hq": ResamplerMode.SINC_QUALITY,
    "sinc-fast": ResamplerMode.SINC_FAST,
    "fast": ResamplerMode.SINC_FAST,
    "medium": ResamplerMode.SINC_FAST,
}


def _to_i16(values: Sequence[float] | np.ndarray) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float32)
    scaled = np.clip(arr, np.float32(-1.0), np.float32(1.0)) * _I16_MAX
    scaled = np.nan_to_num(scaled, nan=0.0)
    return np.trunc(scaled).astype(np.int16)


def f32_to_i16(sample: float) -> int:
    """Clamp a float sample to [-1, 1] and scale it to a 16-bit integer."""
    return int(_to_i16([sample])[0])


def map_channels(frame: Sequence[float], channels: int) -> tuple[float, float]:
    """Pick the left and right sample of one frame; mono is duplicated."""
    if channels == 0:
        return 0.0, 0.0
    if channels == 1:
        return float(frame[0]), float(frame[0])
    return float(frame[0]), float(frame[1])


def _stereo_columns(arr: np.ndarray, channels: int) -> tuple[np.ndarray, np.ndarray]:
    frames = arr.size // channels
    block = arr[: frames * channels].reshape(frames, channels)
    left = block[:, 0]
    right = block[:, 1] if channels > 1 else left
    return left, right


def _interleave(left: np.ndarray, right: np.ndarray) -> np.ndarray:
    return np.column_stack((left, right)).ravel()


def convert_direct_to_i16(data: Sequence[float] | np.ndarray, channels: int) -> np.ndarray:
    """Convert float samples to interleaved 16-bit stereo without changing the rate.

    Trailing samples that do not make a whole frame are dropped.
    """
    arr = np.asarray(data, dtype=np.float32).ravel()
    if channels == TARGET_CHANNELS and arr.size % 2 == 0:
        return _to_i16(arr)
    if channels <= 0:
        return np.empty(0, dtype=np.int16)
    left, right = _stereo_columns(arr, channels)
    return _to_i16(_interleave(left, right))


def interleave_to_i16(
    left: Sequence[float] | np.ndarray, right: Sequence[float] | np.ndarray
) -> np.ndarray:
    """Interleave two channels into 16-bit stereo, up to the shorter one."""
    left_arr = np.asarray(left, dtype=np.float32)
    right_arr = np.asarray(right, dtype=np.float32)
    frames = min(left_arr.size, right_arr.size)
    return _to_i16(_interleave(left_arr[:frames], right_arr[:frames]))


def samples_to_bytes(samples: Sequence[int] | np.ndarray) -> bytes:
    """Encode 16-bit samples as little-endian PCM bytes."""
    return np.asarray(samples, dtype="<i2").tobytes()


def _check_rates(in_rate: int, target_rate: int) -> None:
    if in_rate <= 0 or target_rate <= 0:
        raise ValueError(f"invalid resampling rates {in_rate} -> {target_rate}")


class LinearResampler:
    """Streaming linear interpolation, keeping at most one second of input."""

    def __init__(self, in_channels: int = TARGET_CHANNELS) -> None:
        self._in_channels = in_channels
        self._pos = 0.0
        self._buffer = np.empty(0, dtype=np.float32)

    def reset(self) -> None:
        self._pos = 0.0
        self._buffer = np.empty(0, dtype=np.float32)

    def process(
        self,
        data: Sequence[float] | np.ndarray,
        in_channels: int,
        in_rate: int,
        target_rate: int,
    ) -> np.ndarray:
        """Resample interleaved float input; return interleaved 16-bit stereo."""
        arr = np.asarray(data, dtype=np.float32).ravel()
        if arr.size == 0 or in_channels == 0:
            return np.empty(0, dtype=np.int16)
        _check_rates(in_rate, target_rate)

        self._buffer = np.concatenate((self._buffer, arr))
        step = in_rate / target_rate
        max_samples = in_channels * target_rate
        if self._buffer.size > max_samples:
            drop_samples = self._buffer.size - max_samples
            self._buffer = self._buffer[drop_samples:]
            self._pos = max(self._pos - drop_samples // in_channels, 0.0)

        available = self._buffer.size // in_channels
        out = np.empty(0, dtype=np.int16)
        if self._pos + 1.0 < available:
            bound = int((available - 1 - self._pos) / step) + 2
            steps = np.concatenate(([self._pos], np.full(bound, step)))
            seq = np.cumsum(steps)
            count = int(np.count_nonzero(seq + 1.0 < available))
            positions = seq[:count]
            self._pos = float(seq[count])

            left, right = _stereo_columns(self._buffer[: available * in_channels], in_channels)
            idx = np.floor(positions).astype(np.int64)
            frac = (positions - idx).astype(np.float32)
            mixed_left = left[idx] + (left[idx + 1] - left[idx]) * frac
            mixed_right = right[idx] + (right[idx + 1] - right[idx]) * frac
            out = _to_i16(_interleave(mixed_left, mixed_right))

        drop_frames = math.floor(self._pos)
        if drop_frames > 0:
            self._buffer = self._buffer[drop_frames * in_channels :]
            self._pos -= drop_frames
        return out


@dataclass(frozen=True)
class _SincParams:
    sinc_len: int
    f_cutoff: float


class SincQuality(Enum):
    """Filter length and cutoff of the band-limited resampler."""

    FAST = _SincParams(sinc_len=128, f_cutoff=0.9)
    QUALITY = _SincParams(sinc_len=256, f_cutoff=0.95)


def _window(position: np.ndarray) -> np.ndarray:
    """Squared Blackman-Harris window over [0, 1]."""
    a0, a1, a2, a3 = _BH_COEFFS
    angle = 2.0 * np.pi * position
    value = a0 - a1 * np.cos(angle) + a2 * np.cos(2 * angle) - a3 * np.cos(3 * angle)
    return value * value


class _SincKernel:
    """Windowed-sinc resampler consuming fixed-size stereo chunks."""

    def __init__(self, in_rate: int, target_rate: int, quality: SincQuality) -> None:
        _check_rates(in_rate, target_rate)
        params = quality.value
        self._half = params.sinc_len // 2
        self._taps = np.arange(-self._half + 1, self._half + 1)
        self._step = in_rate / target_rate
        self._cutoff = params.f_cutoff * min(1.0, target_rate / in_rate)
        self._buffer = np.zeros((2, self._half), dtype=np.float64)
        self._time = float(self._half)

    @property
    def input_frames_next(self) -> int:
        return _SINC_CHUNK_FRAMES

    def process(self, left: np.ndarray, right: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        self._buffer = np.concatenate((self._buffer, np.vstack((left, right))), axis=1)
        limit = self._buffer.shape[1] - self._half
        count = 0
        if self._time < limit:
            count = math.ceil((limit - self._time) / self._step) + 1
        positions = self._time + self._step * np.arange(count)
        positions = positions[positions < limit]

        if positions.size:
            self._time = float(positions[-1]) + self._step
            base = np.floor(positions).astype(np.int64)
            idx = base[:, None] + self._taps[None, :]
            offsets = positions[:, None] - idx
            weights = (
                self._cutoff
                * np.sinc(self._cutoff * offsets)
                * _window((offsets + self._half) / (2 * self._half))
            )
            weights /= weights.sum(axis=1, keepdims=True)
            out_left = (weights * self._buffer[0][idx]).sum(axis=1)
            out_right = (weights * self._buffer[1][idx]).sum(axis=1)
        else:
            out_left = out_right = np.empty(0)

        drop = max(0, math.floor(self._time) - self._half)
        if drop:
            self._buffer = self._buffer[:, drop:]
            self._time -= drop
        return out_left, out_right


class SincResampler:
    """Band-limited resampler fed with frames of any channel count."""

    def __init__(
        self,
        in_rate: int,
        target_rate: int,
        quality: SincQuality = SincQuality.QUALITY,
        in_channels: int = TARGET_CHANNELS,
    ) -> None:
        self._kernel = _SincKernel(in_rate, target_rate, quality)
        self._in_channels = in_channels
        self._clear_pending()

    def _clear_pending(self) -> None:
        self._pending_left = np.empty(0, dtype=np.float32)
        self._pending_right = np.empty(0, dtype=np.float32)
        self._pending_offset = 0

    def reset(self, in_rate: int, target_rate: int, quality: SincQuality) -> None:
        """Rebuild the filter for new rates and drop buffered input."""
        self._kernel = _SincKernel(in_rate, target_rate, quality)
        self._clear_pending()

    def process(self, data: Sequence[float] | np.ndarray, in_channels: int) -> np.ndarray:
        """Buffer input and return all stereo output that whole chunks allow."""
        self._push_stereo_frames(data, in_channels)
        pieces: list[np.ndarray] = []
        while True:
            needed = self._kernel.input_frames_next
            available = self._pending_left.size - self._pending_offset
            if available < needed:
                break
            start = self._pending_offset
            end = start + needed
            left, right = self._kernel.process(
                self._pending_left[start:end], self._pending_right[start:end]
            )
            pieces.append(interleave_to_i16(left, right))
            self._pending_offset = end
            if self._pending_offset >= self._pending_left.size // 2:
                self._pending_left = self._pending_left[self._pending_offset :]
                self._pending_right = self._pending_right[self._pending_offset :]
                self._pending_offset = 0
        if not pieces:
            return np.empty(0, dtype=np.int16)
        return np.concatenate(pieces)

    def _push_stereo_frames(self, data: Sequence[float] | np.ndarray, in_channels: int) -> None:
        if in_channels <= 0:
            return
        arr = np.asarray(data, dtype=np.float32).ravel()
        left, right = _stereo_columns(arr, in_channels)
        self._pending_left = np.concatenate((self._pending_left, left))
        self._pending_right = np.concatenate((self._pending_right, right))


def _quality_for(mode: ResamplerMode) -> SincQuality | None:
    if mode is ResamplerMode.SINC_FAST:
        return SincQuality.FAST
    if mode is ResamplerMode.SINC_QUALITY:
        return SincQuality.QUALITY
    return None


class Resampler:
    """Rate converter that follows the rate the device actually delivers."""

    def __init__(
        self,
        in_rate: int,
        in_channels: int,
        target_rate: int,
        mode: ResamplerMode,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        quality = _quality_for(mode)
        self.mode = mode
        self.in_rate = in_rate
        self.target_rate = target_rate
        self.observed_rate: int | None = None
        self._linear = LinearResampler(in_channels)
        self._sinc = (
            SincResampler(in_rate, target_rate, quality, in_channels)
            if quality is not None
            else None
        )
        self._clock = clock
        self._rate_frames = 0
        self._rate_start = clock()
        self._last_rate_log = self._rate_start

    def needs_resample_rate(self) -> bool:
        return self.in_rate != self.target_rate

    def process(self, data: Sequence[float] | np.ndarray, in_channels: int) -> np.ndarray:
        """Resample interleaved float input to interleaved 16-bit stereo."""
        if len(data) == 0 or in_channels == 0:
            return np.empty(0, dtype=np.int16)
        if self.mode is ResamplerMode.LINEAR:
            return self._linear.process(data, in_channels, self.in_rate, self.target_rate)
        if self._sinc is None:
            return np.empty(0, dtype=np.int16)
        return self._sinc.process(data, in_channels)

    def observe_input(self, samples: int, in_channels: int) -> None:
        """Count delivered frames and adopt the measured rate every two seconds."""
        if in_channels <= 0:
            return
        self._rate_frames += samples // in_channels
        now = self._clock()
        elapsed = now - self._rate_start
        if elapsed < _RATE_WINDOW:
            return
        observed = math.floor(self._rate_frames / elapsed + 0.5)
        if observed == 0:
            return

        if observed != self.in_rate:
            logger.info(
                "observed input rate: %d Hz (was %d Hz, target %d Hz, resampler=%s)",
                observed,
                self.in_rate,
                self.target_rate,
                self.mode.label(),
            )
            self.in_rate = observed
            self.reset_resampler()
            self._last_rate_log = now
        elif now - self._last_rate_log >= _RATE_LOG_INTERVAL:
            logger.info(
                "observed input rate: %d Hz (target %d Hz, resampler=%s)",
                observed,
                self.target_rate,
                self.mode.label(),
            )
            self._last_rate_log = now
        self.observed_rate = observed
        self._rate_frames = 0
        self._rate_start = now

    def reset_resampler(self) -> None:
        """Drop buffered state and rebuild for the current rates."""
        quality = _quality_for(self.mode)
        if quality is None:
            self._linear.reset()
            return
        if self._sinc is None:
            return
        try:
            self._sinc.reset(self.in_rate, self.target_rate, quality)
        except ValueError as err:
            logger.warning("resampler reset failed: %s", err)