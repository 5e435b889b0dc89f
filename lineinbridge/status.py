"""Shared, thread-safe view of what the bridge is doing."""

from __future__ import annotations

import threading

from .health import HealthSnapshot
from .models import BridgeStatusRequest
from .timestamp import now_rfc3339

_U64_MAX = 0xFFFF_FFFF_FFFF_FFFF


class StatusHandle:
    """Mutable bridge status shared between capture, streaming and reporting."""

    def __init__(self, device: str = "", ingest: str = "") -> None:
        self._lock = threading.Lock()
        self._state = "IDLE"
        self._device = device
        self._ingest = ingest
        self._last_error: str | None = None
        self._rate: int | None = None
        self._channels: int | None = None
        self._format: str | None = None
        self._observed_rate: int | None = None
        self._rms_db: float | None = None
        self._track_change = False
        self._bytes_sent_total = 0
        self._last_chunk_ts: str | None = None

    def set_state(self, state: str) -> None:
        with self._lock:
            self._state = state

    def set_last_error(self, error: str | None) -> None:
        with self._lock:
            self._last_error = error

    def set_device(self, device: str) -> None:
        with self._lock:
            self._device = device

    def set_capture_info(self, rate: int, channels: int, format: str) -> None:
        with self._lock:
            self._rate = rate
            self._channels = channels
            self._format = format

    def set_observed_rate(self, rate: int) -> None:
        with self._lock:
            self._observed_rate = rate

    def set_rms_db(self, rms_db: float | None) -> None:
        with self._lock:
            self._rms_db = rms_db

    def set_track_change(self) -> None:
        with self._lock:
            self._track_change = True

    def set_ingest(self, ingest: str) -> None:
        with self._lock:
            self._ingest = ingest

    def record_bytes(self, count: int) -> None:
        """Account for ``count`` bytes sent and stamp the time of the chunk."""
        with self._lock:
            self._bytes_sent_total = min(self._bytes_sent_total + count, _U64_MAX)
            self._last_chunk_ts = now_rfc3339()

    def health_snapshot(self) -> HealthSnapshot:
        with self._lock:
            return HealthSnapshot(
                ts=now_rfc3339(),
                state=self._state,
                device=self._device,
                ingest=self._ingest,
                last_error=self._last_error,
                bytes_sent_total=self._bytes_sent_total,
                last_chunk_ts=self._last_chunk_ts,
            )

    def bridge_status(self) -> BridgeStatusRequest:
        """Build a status report; a pending track change is reported once."""
        with self._lock:
            track_change = True if self._track_change else None
            self._track_change = False
            return BridgeStatusRequest(
                state=self._state,
                device=self._device or None,
                rate=self._rate,
                channels=self._channels,
                format=self._format,
                observed_rate=self._observed_rate,
                rms_db=self._rms_db,
                last_error=self._last_error,
                track_change=track_change,
                capture_devices=None,
            )