import pytest

from lineinbridge.models import BridgeConfigResponse, CaptureDeviceInfo
from lineinbridge.resample import ResamplerMode
from lineinbridge.runtime import (
    RuntimeConfig,
    StreamKey,
    hash_capture_devices,
    parse_resampler,
)
from lineinbridge.stream import TcpTarget, WsTarget


def tcp_response(**overrides):
    values = dict(
        assigned_input_id="input-1",
        ingest_tcp_host="10.0.0.5",
        ingest_tcp_port=7000,
        capture_device="hw:0",
    )
    values.update(overrides)
    return BridgeConfigResponse(**values)


def test_from_response_defaults():
    config = RuntimeConfig.from_response(BridgeConfigResponse())
    assert config.vad_threshold_db == -45.0
    assert config.vad_hold_ms == 2000
    assert config.target_rate == 48000
    assert config.resampler is ResamplerMode.SINC_QUALITY
    assert config.assigned_input_id is None


def test_from_response_takes_values():
    response = tcp_response(
        vad_threshold_db=-30.0,
        vad_hold_ms=500,
        ingest_sample_rate=44100,
        ingest_resampler="linear",
    )
    config = RuntimeConfig.from_response(response)
    assert config.assigned_input_id == "input-1"
    assert config.ingest_tcp_port == 7000
    assert config.vad_threshold_db == -30.0
    assert config.vad_hold_ms == 500
    assert config.target_rate == 44100
    assert config.resampler is ResamplerMode.LINEAR


def test_update_without_change_returns_none():
    response = tcp_response()
    config = RuntimeConfig.from_response(response)
    assert config.update(response) is None


def test_update_returns_copy_of_new_settings():
    config = RuntimeConfig.from_response(tcp_response())
    updated = config.update(tcp_response(capture_device="hw:1"))
    assert updated == config
    assert updated is not config
    assert config.capture_device == "hw:1"


def test_update_clears_missing_assignment():
    config = RuntimeConfig.from_response(tcp_response())
    updated = config.update(tcp_response(assigned_input_id=None))
    assert updated.assigned_input_id is None
    assert config.is_ready() is False


def test_update_keeps_tuning_when_absent():
    config = RuntimeConfig.from_response(
        tcp_response(ingest_sample_rate=44100, vad_hold_ms=500, ingest_resampler="fast")
    )
    assert config.update(tcp_response()) is None
    assert config.target_rate == 44100
    assert config.vad_hold_ms == 500
    assert config.resampler is ResamplerMode.SINC_FAST


def test_update_changes_tuning():
    config = RuntimeConfig.from_response(tcp_response())
    updated = config.update(
        tcp_response(vad_threshold_db=-20.0, vad_hold_ms=100, ingest_resampler="linear")
    )
    assert updated.vad_threshold_db == -20.0
    assert updated.vad_hold_ms == 100
    assert updated.resampler is ResamplerMode.LINEAR


def test_update_ignores_tiny_threshold_change():
    config = RuntimeConfig.from_response(tcp_response(vad_threshold_db=-30.0))
    assert config.update(tcp_response(vad_threshold_db=-30.0 + 1e-9)) is None
    assert config.vad_threshold_db == -30.0


def test_unknown_resampler_name_falls_back():
    config = RuntimeConfig.from_response(tcp_response(ingest_resampler="linear"))
    updated = config.update(tcp_response(ingest_resampler="bogus"))
    assert updated.resampler is ResamplerMode.SINC_QUALITY


@pytest.mark.parametrize(
    "response, ready",
    [
        (tcp_response(), True),
        (tcp_response(ingest_tcp_port=None), False),
        (tcp_response(ingest_tcp_host=None, ingest_tcp_port=None, ingest_ws_url="ws://localhost/in"), True),
        (tcp_response(capture_device=None), False),
        (tcp_response(assigned_input_id=None), False),
    ],
)
def test_is_ready(response, ready):
    assert RuntimeConfig.from_response(response).is_ready() is ready


def test_ingest_target_prefers_websocket():
    config = RuntimeConfig.from_response(tcp_response(ingest_ws_url="ws://localhost/in"))
    assert config.ingest_target() == WsTarget("ws://localhost/in")
    assert config.ingest_label() == "ws://localhost/in"


def test_ingest_target_tcp_uses_input_id_header():
    config = RuntimeConfig.from_response(tcp_response())
    assert config.ingest_target() == TcpTarget("10.0.0.5", 7000, "input-1")
    assert config.ingest_label() == "10.0.0.5:7000"


def test_ingest_target_needs_input_id():
    config = RuntimeConfig.from_response(tcp_response(assigned_input_id=None))
    assert config.ingest_target() is None
    assert config.ingest_label() == "10.0.0.5:7000"


def test_ingest_label_unassigned():
    assert RuntimeConfig.from_response(BridgeConfigResponse()).ingest_label() == "unassigned"


def test_stream_key_ignores_vad_settings():
    first = RuntimeConfig.from_response(tcp_response())
    second = RuntimeConfig.from_response(tcp_response(vad_threshold_db=-10.0, vad_hold_ms=10))
    assert first.stream_key() == second.stream_key()
    assert first.stream_key() == StreamKey("input-1", None, "10.0.0.5", 7000, "hw:0", 48000, ResamplerMode.SINC_QUALITY)


def test_stream_key_changes_with_rate():
    first = RuntimeConfig.from_response(tcp_response())
    second = RuntimeConfig.from_response(tcp_response(ingest_sample_rate=44100))
    assert first.stream_key() != second.stream_key()
    assert second.stream_key().target_rate == 44100


@pytest.mark.parametrize(
    "value, mode",
    [
        (None, ResamplerMode.SINC_QUALITY),
        ("fast", ResamplerMode.SINC_FAST),
        (" Linear ", ResamplerMode.LINEAR),
        ("bogus", ResamplerMode.SINC_QUALITY),
    ],
)
def test_parse_resampler(value, mode):
    assert parse_resampler(value) is mode


def test_hash_capture_devices_is_stable_and_order_sensitive():
    a = CaptureDeviceInfo("hw:0", "hw:0", 2, (44100, 48000))
    b = CaptureDeviceInfo("hw:1", "hw:1", 1, (48000,))
    same = CaptureDeviceInfo("hw:0", "hw:0", 2, (44100, 48000))
    assert hash_capture_devices([a, b]) == hash_capture_devices([same, b])
    assert hash_capture_devices([a, b]) != hash_capture_devices([b, a])
    assert hash_capture_devices([a]) != hash_capture_devices([a, b])
    assert 0 <= hash_capture_devices([]) < 2**64