import math

import numpy as np
import pytest

from lineinbridge.resample import (
    LinearResampler,
    Resampler,
    ResamplerMode,
    SincQuality,
    SincResampler,
    convert_direct_to_i16,
    f32_to_i16,
    interleave_to_i16,
    map_channels,
    samples_to_bytes,
)


@pytest.mark.parametrize(
    "name, mode",
    [
        ("linear", ResamplerMode.LINEAR),
        ("basic", ResamplerMode.LINEAR),
        ("sinc", ResamplerMode.SINC_QUALITY),
        ("rubato", ResamplerMode.SINC_QUALITY),
        ("quality", ResamplerMode.SINC_QUALITY),
        ("hq", ResamplerMode.SINC_QUALITY),
        ("sinc-fast", ResamplerMode.SINC_FAST),
        ("fast", ResamplerMode.SINC_FAST),
        ("medium", ResamplerMode.SINC_FAST),
        ("  HQ  ", ResamplerMode.SINC_QUALITY),
    ],
)
def test_parse_aliases(name, mode):
    assert ResamplerMode.parse(name) is mode


def test_parse_unknown():
    assert ResamplerMode.parse("cubic") is None


@pytest.mark.parametrize("mode", list(ResamplerMode))
def test_label_round_trips(mode):
    assert ResamplerMode.parse(mode.label()) is mode


def test_labels():
    assert ResamplerMode.LINEAR.label() == "linear"
    assert ResamplerMode.SINC_FAST.label() == "sinc-fast"
    assert ResamplerMode.SINC_QUALITY.label() == "sinc"


def test_f32_to_i16_limits_and_clamping():
    assert f32_to_i16(1.0) == 32767
    assert f32_to_i16(-1.0) == -32767
    assert f32_to_i16(2.5) == f32_to_i16(1.0)
    assert f32_to_i16(-7.0) == f32_to_i16(-1.0)
    assert f32_to_i16(0.0) == 0
    assert f32_to_i16(float("nan")) == 0


def test_f32_to_i16_is_symmetric():
    for value in (0.1, 0.25, 0.333, 0.9):
        assert f32_to_i16(-value) == -f32_to_i16(value)


def test_map_channels():
    assert map_channels([], 0) == (0.0, 0.0)
    assert map_channels([0.5], 1) == (0.5, 0.5)
    assert map_channels([0.25, -0.5, 0.75], 3) == (0.25, -0.5)


def test_convert_direct_stereo_keeps_every_sample():
    data = [0.0, 1.0, -1.0, 0.5]
    out = convert_direct_to_i16(data, 2)
    assert list(out) == [f32_to_i16(v) for v in data]


def test_convert_direct_mono_duplicates():
    out = convert_direct_to_i16([0.0, 1.0], 1)
    assert list(out) == [0, 0, 32767, 32767]


def test_convert_direct_drops_partial_frames_and_extra_channels():
    data = [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7]
    out = convert_direct_to_i16(data, 3)
    expected = [f32_to_i16(v) for v in (0.1, 0.2, 0.4, 0.5)]
    assert list(out) == expected


def test_convert_direct_zero_channels_is_empty():
    assert convert_direct_to_i16([0.5, 0.5], 0).size == 0


def test_interleave_uses_shorter_channel():
    out = interleave_to_i16([1.0, 0.0, -1.0], [0.5, 0.25])
    assert list(out) == [f32_to_i16(1.0), f32_to_i16(0.5), 0, f32_to_i16(0.25)]


def test_samples_to_bytes_little_endian():
    assert samples_to_bytes([1, -1]) == b"\x01\x00\xff\xff"
    assert len(samples_to_bytes(np.zeros(8, dtype=np.int16))) == 16


def test_linear_same_rate_passes_frames_through():
    data = [0.0, 0.5, -0.5, 1.0, 0.25, -0.25, 0.75, -0.75]
    resampler = LinearResampler(2)
    out = resampler.process(data, 2, 100, 100)
    # The newest frame is held back until the next one arrives.
    assert list(out) == list(convert_direct_to_i16(data[:-2], 2))
    more = resampler.process([0.1, 0.2], 2, 100, 100)
    assert list(more) == list(convert_direct_to_i16(data[-2:], 2))


def test_linear_constant_signal_stays_constant():
    resampler = LinearResampler(2)
    out = resampler.process([0.5] * 2000, 2, 44100, 48000)
    assert out.size > 0
    assert set(out.tolist()) == {f32_to_i16(0.5)}


def test_linear_downsampling_ratio():
    resampler = LinearResampler(2)
    total_in = 0
    total_out = 0
    for _ in range(20):
        block = np.zeros(960 * 2, dtype=np.float32)
        total_in += 960
        total_out += resampler.process(block, 2, 48000, 24000).size // 2
    assert abs(total_out / total_in - 0.5) < 0.01


def test_linear_trims_to_one_second():
    resampler = LinearResampler(2)
    data = np.linspace(-1.0, 1.0, 100, dtype=np.float32)
    out = resampler.process(data, 2, 10, 10)
    assert list(out) == list(convert_direct_to_i16(data[-20:-2], 2))


def test_linear_reset_clears_buffer():
    resampler = LinearResampler(2)
    resampler.process([0.9, 0.9, 0.9, 0.9], 2, 100, 100)
    resampler.reset()
    out = resampler.process([0.0, 0.0, 0.0, 0.0], 2, 100, 100)
    assert list(out) == [0, 0]


def test_linear_empty_input():
    assert LinearResampler(2).process([], 2, 100, 200).size == 0


def test_linear_invalid_rate():
    with pytest.raises(ValueError):
        LinearResampler(2).process([0.1, 0.1], 2, 0, 48000)


def test_sinc_waits_for_full_chunk():
    resampler = SincResampler(44100, 48000, SincQuality.FAST, 2)
    assert resampler.process(np.zeros(500 * 2), 2).size == 0


@pytest.mark.parametrize("quality", list(SincQuality))
def test_sinc_dc_level_and_ratio(quality):
    resampler = SincResampler(44100, 48000, quality, 2)
    out = resampler.process(np.full(4096 * 2, 0.5, dtype=np.float32), 2)
    frames = out.size // 2
    assert out.size % 2 == 0
    assert abs(frames / 4096 - 48000 / 44100) < 0.05
    tail = out[out.size // 2 : -400]
    assert np.all(np.abs(tail.astype(int) - f32_to_i16(0.5)) <= 2)


def test_sinc_mono_input_is_duplicated():
    resampler = SincResampler(48000, 32000, SincQuality.FAST, 1)
    signal = np.sin(np.arange(2048) * 0.01).astype(np.float32)
    out = resampler.process(signal, 1)
    assert out.size > 0
    assert np.array_equal(out[0::2], out[1::2])


def test_sinc_rejects_zero_rate():
    with pytest.raises(ValueError):
        SincResampler(0, 48000, SincQuality.QUALITY, 2)
    resampler = SincResampler(44100, 48000, SincQuality.QUALITY, 2)
    with pytest.raises(ValueError):
        resampler.reset(44100, 0, SincQuality.QUALITY)


def test_resampler_needs_resample_rate():
    assert Resampler(44100, 2, 48000, ResamplerMode.LINEAR).needs_resample_rate()
    assert not Resampler(48000, 2, 48000, ResamplerMode.SINC_FAST).needs_resample_rate()


def test_resampler_process_empty_or_no_channels():
    resampler = Resampler(44100, 2, 48000, ResamplerMode.LINEAR)
    assert resampler.process([], 2).size == 0
    assert resampler.process([0.5, 0.5], 0).size == 0


def test_resampler_linear_matches_linear_resampler():
    data = np.linspace(-0.8, 0.8, 2000, dtype=np.float32)
    expected = LinearResampler(2).process(data, 2, 44100, 48000)
    out = Resampler(44100, 2, 48000, ResamplerMode.LINEAR).process(data, 2)
    assert np.array_equal(out, expected)


def _clock(times):
    return lambda: times[0]


def test_observe_input_adopts_measured_rate():
    times = [0.0]
    resampler = Resampler(48000, 2, 48000, ResamplerMode.SINC_QUALITY, clock=_clock(times))
    times[0] = 1.0
    resampler.observe_input(44100 * 2, 2)
    assert resampler.observed_rate is None
    assert resampler.in_rate == 48000
    times[0] = 2.0
    resampler.observe_input(44100 * 2, 2)
    assert resampler.observed_rate == 44100
    assert resampler.in_rate == 44100
    assert resampler.needs_resample_rate()


def test_observe_input_keeps_matching_rate():
    times = [0.0]
    resampler = Resampler(48000, 2, 48000, ResamplerMode.LINEAR, clock=_clock(times))
    times[0] = 2.0
    resampler.observe_input(96000 * 2, 2)
    assert resampler.observed_rate == 48000
    assert not resampler.needs_resample_rate()


def test_observe_input_ignores_zero_rate():
    times = [0.0]
    resampler = Resampler(48000, 2, 48000, ResamplerMode.LINEAR, clock=_clock(times))
    times[0] = 3.0
    resampler.observe_input(0, 2)
    assert resampler.observed_rate is None
    assert resampler.in_rate == 48000


def test_observed_rate_is_rounded():
    times = [0.0]
    resampler = Resampler(48000, 1, 48000, ResamplerMode.LINEAR, clock=_clock(times))
    times[0] = 2.0
    resampler.observe_input(96001, 1)
    assert resampler.observed_rate == math.floor(96001 / 2.0 + 0.5)
    assert resampler.in_rate == resampler.observed_rate