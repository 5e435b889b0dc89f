"""Messages exchanged with the audio server."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

_U16_MAX = 0xFFFF
_U32_MAX = 0xFFFF_FFFF
_U64_MAX = 0xFFFF_FFFF_FFFF_FFFF


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError(f"{what}: expected an object, got {type(data).__name__}")
    return data


def _is_uint(value: Any, maximum: int) -> bool:
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and 0 <= value <= maximum
    )


def _opt_str(data: Mapping[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None or isinstance(value, str):
        return value
    raise ValueError(f"{key}: expected a string, got {value!r}")


def _opt_uint(data: Mapping[str, Any], key: str, maximum: int) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if not _is_uint(value, maximum):
        raise ValueError(f"{key}: expected an integer in 0..={maximum}, got {value!r}")
    return value


def _opt_float(data: Mapping[str, Any], key: str) -> float | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key}: expected a number, got {value!r}")
    return float(value)


@dataclass(frozen=True)
class CaptureDeviceInfo:
    """An audio input device and the formats it offers."""

    id: str
    name: str
    channels: int
    sample_rates: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "sample_rates", tuple(self.sample_rates))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "channels": self.channels,
            "sample_rates": list(self.sample_rates),
        }

    @classmethod
    def from_dict(cls, data: Any) -> CaptureDeviceInfo:
        data = _require_mapping(data, "capture device")
        for key in ("id", "name"):
            if not isinstance(data.get(key), str):
                raise ValueError(f"{key}: expected a string")
        channels = data.get("channels")
        if not _is_uint(channels, _U16_MAX):
            raise ValueError(f"channels: expected an integer, got {channels!r}")
        rates = data.get("sample_rates")
        if not isinstance(rates, (list, tuple)) or not all(
            _is_uint(rate, _U32_MAX) for rate in rates
        ):
            raise ValueError(f"sample_rates: expected a list of integers, got {rates!r}")
        return cls(
            id=data["id"],
            name=data["name"],
            channels=channels,
            sample_rates=tuple(rates),
        )


@dataclass
class BridgeRegisterRequest:
    """Body of the bridge registration call."""

    bridge_id: str
    hostname: str
    version: str
    ip: str
    mac: str
    capture_devices: list[CaptureDeviceInfo]

    def to_dict(self) -> dict[str, Any]:
        return {
            "bridge_id": self.bridge_id,
            "hostname": self.hostname,
            "version": self.version,
            "ip": self.ip,
            "mac": self.mac,
            "capture_devices": [device.to_dict() for device in self.capture_devices],
        }


@dataclass
class BridgeStatusRequest:
    """Body of the periodic status report."""

    state: str
    device: str | None = None
    rate: int | None = None
    channels: int | None = None
    format: str | None = None
    observed_rate: int | None = None
    rms_db: float | None = None
    last_error: str | None = None
    track_change: bool | None = None
    capture_devices: list[CaptureDeviceInfo] | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "state": self.state,
            "device": self.device,
            "rate": self.rate,
            "channels": self.channels,
            "format": self.format,
            "observed_rate": self.observed_rate,
            "rms_db": self.rms_db,
            "last_error": self.last_error,
        }
        if self.track_change is not None:
            body["track_change"] = self.track_change
        if self.capture_devices is not None:
            body["capture_devices"] = [d.to_dict() for d in self.capture_devices]
        return body


@dataclass(frozen=True)
class BridgeConfigResponse:
    """Configuration the server hands back to the bridge."""

    assigned_input_id: str | None = None
    ingest_ws_url: str | None = None
    ingest_tcp_host: str | None = None
    ingest_tcp_port: int | None = None
    capture_device: str | None = None
    vad_threshold_db: float | None = None
    vad_hold_ms: int | None = None
    ingest_sample_rate: int | None = None
    ingest_resampler: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> BridgeConfigResponse:
        data = _require_mapping(data, "bridge config")
        return cls(
            assigned_input_id=_opt_str(data, "assigned_input_id"),
            ingest_ws_url=_opt_str(data, "ingest_ws_url"),
            ingest_tcp_host=_opt_str(data, "ingest_tcp_host"),
            ingest_tcp_port=_opt_uint(data, "ingest_tcp_port", _U16_MAX),
            capture_device=_opt_str(data, "capture_device"),
            vad_threshold_db=_opt_float(data, "vad_threshold_db"),
            vad_hold_ms=_opt_uint(data, "vad_hold_ms", _U64_MAX),
            ingest_sample_rate=_opt_uint(data, "ingest_sample_rate", _U32_MAX),
            ingest_resampler=_opt_str(data, "ingest_resampler"),
        )