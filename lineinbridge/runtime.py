"""Configuration assigned by the server and what it means for streaming."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass, replace

from .models import BridgeConfigResponse, CaptureDeviceInfo
from .resample import ResamplerMode
from .stream import TcpTarget, WsTarget

DEFAULT_VAD_THRESHOLD_DB = -45.0
DEFAULT_VAD_HOLD_MS = 2000
DEFAULT_TARGET_RATE = 48_000
_F32_EPSILON = 1.1920929e-07

_REPLACED_FIELDS = (
    "assigned_input_id",
    "ingest_ws_url",
    "ingest_tcp_host",
    "ingest_tcp_port",
    "capture_device",
)


def parse_resampler(value: str | None) -> ResamplerMode:
    """Resampler named by the server, defaulting to the high-quality sinc one."""
    mode = ResamplerMode.parse(value) if value is not None else None
    return mode if mode is not None else ResamplerMode.SINC_QUALITY


def hash_capture_devices(devices: Iterable[CaptureDeviceInfo]) -> int:
    """Stable 64-bit fingerprint of a device list, sensitive to order."""
    encoded = json.dumps([device.to_dict() for device in devices], sort_keys=True)
    digest = hashlib.blake2b(encoded.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "little")


@dataclass(frozen=True)
class StreamKey:
    """The settings whose change requires restarting the stream."""

    assigned_input_id: str | None
    ingest_ws_url: str | None
    ingest_tcp_host: str | None
    ingest_tcp_port: int | None
    capture_device: str | None
    target_rate: int
    resampler: ResamplerMode


@dataclass
class RuntimeConfig:
    """Current streaming settings of the bridge."""

    assigned_input_id: str | None = None
    ingest_ws_url: str | None = None
    ingest_tcp_host: str | None = None
    ingest_tcp_port: int | None = None
    capture_device: str | None = None
    vad_threshold_db: float = DEFAULT_VAD_THRESHOLD_DB
    vad_hold_ms: int = DEFAULT_VAD_HOLD_MS
    target_rate: int = DEFAULT_TARGET_RATE
    resampler: ResamplerMode = ResamplerMode.SINC_QUALITY

    @classmethod
    def from_response(cls, response: BridgeConfigResponse) -> RuntimeConfig:
        return cls(
            assigned_input_id=response.assigned_input_id,
            ingest_ws_url=response.ingest_ws_url,
            ingest_tcp_host=response.ingest_tcp_host,
            ingest_tcp_port=response.ingest_tcp_port,
            capture_device=response.capture_device,
            vad_threshold_db=(
                response.vad_threshold_db
                if response.vad_threshold_db is not None
                else DEFAULT_VAD_THRESHOLD_DB
            ),
            vad_hold_ms=(
                response.vad_hold_ms if response.vad_hold_ms is not None else DEFAULT_VAD_HOLD_MS
            ),
            target_rate=(
                response.ingest_sample_rate
                if response.ingest_sample_rate is not None
                else DEFAULT_TARGET_RATE
            ),
            resampler=parse_resampler(response.ingest_resampler),
        )

    def update(self, response: BridgeConfigResponse) -> RuntimeConfig | None:
        """Apply a server response; return a copy of the new settings if anything changed.

        Assignment fields are replaced as given; tuning fields change only when present.
        """
        changed = False
        for name in _REPLACED_FIELDS:
            value = getattr(response, name)
            if value != getattr(self, name):
                setattr(self, name, value)
                changed = True
        if response.ingest_sample_rate is not None and response.ingest_sample_rate != self.target_rate:
            self.target_rate = response.ingest_sample_rate
            changed = True
        if response.ingest_resampler is not None:
            mode = parse_resampler(response.ingest_resampler)
            if mode is not self.resampler:
                self.resampler = mode
                changed = True
        if (
            response.vad_threshold_db is not None
            and abs(response.vad_threshold_db - self.vad_threshold_db) > _F32_EPSILON
        ):
            self.vad_threshold_db = response.vad_threshold_db
            changed = True
        if response.vad_hold_ms is not None and response.vad_hold_ms != self.vad_hold_ms:
            self.vad_hold_ms = response.vad_hold_ms
            changed = True
        return replace(self) if changed else None

    def is_ready(self) -> bool:
        """True once an input, a device and an ingest endpoint are all assigned."""
        has_tcp = self.ingest_tcp_host is not None and self.ingest_tcp_port is not None
        return (
            self.assigned_input_id is not None
            and self.capture_device is not None
            and (self.ingest_ws_url is not None or has_tcp)
        )

    def ingest_target(self) -> TcpTarget | WsTarget | None:
        """Where to stream: WebSocket if given, else TCP with the input id as header."""
        if self.ingest_ws_url is not None:
            return WsTarget(self.ingest_ws_url)
        if (
            self.ingest_tcp_host is None
            or self.ingest_tcp_port is None
            or self.assigned_input_id is None
        ):
            return None
        return TcpTarget(self.ingest_tcp_host, self.ingest_tcp_port, self.assigned_input_id)

    def ingest_label(self) -> str:
        """Human-readable ingest endpoint."""
        if self.ingest_ws_url is not None:
            return self.ingest_ws_url
        if self.ingest_tcp_host is not None and self.ingest_tcp_port is not None:
            return f"{self.ingest_tcp_host}:{self.ingest_tcp_port}"
        return "unassigned"

    def stream_key(self) -> StreamKey:
        return StreamKey(
            assigned_input_id=self.assigned_input_id,
            ingest_ws_url=self.ingest_ws_url,
            ingest_tcp_host=self.ingest_tcp_host,
            ingest_tcp_port=self.ingest_tcp_port,
            capture_device=self.capture_device,
            target_rate=self.target_rate,
            resampler=self.resampler,
        )