"""Paced delivery of captured PCM to the ingest server over TCP or WebSocket."""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Protocol

import numpy as np
import websockets
from websockets.exceptions import WebSocketException

from .delays import Backoff
from .status import StatusHandle

logger = logging.getLogger(__name__)

TRACK_GAP = 2.0
_CHUNK_MS = 40
_BUFFER_SECONDS = 2
_BYTES_PER_FRAME = 4
_U32_MAX = 0xFFFF_FFFF
_LOG_INTERVAL = 5.0
_I16_MAX = 32767.0


class StreamError(Exception):
    """Raised when streaming cannot go on: capture ended or reported an error."""


@dataclass(frozen=True)
class TcpTarget:
    """Raw TCP ingest; ``header`` is sent as the first line."""

    host: str
    port: int
    header: str


@dataclass(frozen=True)
class WsTarget:
    """WebSocket ingest receiving binary frames."""

    url: str


@dataclass
class StreamParams:
    """Everything one streaming run needs.

    A ``None`` item on ``rx`` or ``err_rx`` means that channel was closed.
    ``vad_updates`` carries ``(threshold_db, hold_seconds)`` pairs.
    """

    ingest: TcpTarget | WsTarget
    rx: asyncio.Queue[bytes | None]
    err_rx: asyncio.Queue[str | None]
    threshold_db: float
    hold_duration: float
    status: StatusHandle
    output_rate: int
    vad_updates: asyncio.Queue[tuple[float, float]] | None = None


@dataclass
class VadGate:
    """Voice-activity gate that stays open for a hold time after the last sound."""

    active: bool = False
    last_active: float | None = None

    def set_active(self, now: float) -> None:
        self.active = True
        self.last_active = now

    def set_inactive(self) -> None:
        self.active = False

    def should_keep_active(self, now: float, hold: float) -> bool:
        if self.last_active is None:
            return False
        return now - self.last_active <= hold


@dataclass(frozen=True)
class _PushResult:
    rms_db: float | None
    dropped: int
    started: bool
    stopped: bool
    track_change: bool


def rms_db_from_pcm_i16_le(data: bytes) -> float | None:
    """RMS level in dBFS of 16-bit little-endian PCM; ``None`` if there is no sample."""
    usable = len(data) - len(data) % 2
    if usable == 0:
        return None
    samples = np.frombuffer(data[:usable], dtype="<i2").astype(np.float64) / _I16_MAX
    rms = float(np.sqrt(np.mean(samples * samples)))
    if rms <= 0.0:
        return -100.0
    return 20.0 * float(np.log10(rms))


def chunk_bytes_for_rate(rate: int) -> int:
    """Bytes of stereo 16-bit audio in one 40 ms chunk, at least one frame."""
    bytes_per_sec = min(rate * _BYTES_PER_FRAME, _U32_MAX)
    return max(min(bytes_per_sec * _CHUNK_MS, _U32_MAX) // 1000, _BYTES_PER_FRAME)


def chunk_interval() -> float:
    """Seconds between two paced writes."""
    return _CHUNK_MS / 1000


def max_buffer_bytes_for_rate(rate: int) -> int:
    """Most audio kept waiting to be sent: two seconds."""
    bytes_per_sec = min(rate * _BYTES_PER_FRAME, _U32_MAX)
    return min(bytes_per_sec * _BUFFER_SECONDS, _U32_MAX)


class StreamPacer:
    """Buffers PCM, gates it on voice activity and hands out fixed-size chunks."""

    def __init__(self, output_rate: int, threshold_db: float, hold: float) -> None:
        self.threshold_db = threshold_db
        self.hold = hold
        self.chunk_bytes = chunk_bytes_for_rate(output_rate)
        self.max_pending = max_buffer_bytes_for_rate(output_rate)
        self._pending = bytearray()
        self._gate = VadGate()
        self._idle_since: float | None = None

    @property
    def active(self) -> bool:
        return self._gate.active

    @property
    def buffered(self) -> int:
        """Bytes waiting to be sent."""
        return len(self._pending)

    def push(self, chunk: bytes, now: float) -> _PushResult:
        """Queue ``chunk`` received at ``now`` and update the gate from its level."""
        rms_db = rms_db_from_pcm_i16_le(chunk)
        self._pending.extend(chunk)
        dropped = max(len(self._pending) - self.max_pending, 0)
        if dropped:
            del self._pending[:dropped]

        started = stopped = track_change = False
        if rms_db is not None:
            gate = self._gate
            was_active = gate.active
            if rms_db >= self.threshold_db:
                gate.set_active(now)
            elif not gate.should_keep_active(now, self.hold):
                gate.set_inactive()

            if gate.active and not was_active:
                started = True
                if self._idle_since is not None:
                    track_change = now - self._idle_since >= TRACK_GAP
                    self._idle_since = None
            elif was_active and not gate.active:
                stopped = True
                self._idle_since = now
                self._pending.clear()
        return _PushResult(rms_db, dropped, started, stopped, track_change)

    def take_chunk(self) -> tuple[bytes, int]:
        """Remove one chunk; pad with silence if short. Returns the payload and the padding."""
        size = self.chunk_bytes
        payload = bytes(self._pending[:size])
        del self._pending[:size]
        missing = size - len(payload)
        return payload + bytes(missing), missing


class _Sink(Protocol):
    async def send(self, payload: bytes) -> None: ...

    async def close(self) -> None: ...


class _TcpSink:
    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer

    async def send(self, payload: bytes) -> None:
        self._writer.write(payload)
        await self._writer.drain()

    async def close(self) -> None:
        self._writer.close()
        with suppress(OSError):
            await self._writer.wait_closed()


class _WsSink:
    def __init__(self, connection: Any) -> None:
        self._connection = connection

    async def send(self, payload: bytes) -> None:
        await self._connection.send(payload)

    async def close(self) -> None:
        with suppress(OSError, WebSocketException):
            await self._connection.close()


async def _connect_tcp(target: TcpTarget) -> _Sink:
    addr = f"{target.host}:{target.port}"
    try:
        _reader, writer = await asyncio.open_connection(target.host, target.port)
    except OSError as err:
        raise StreamError(f"connect to {addr}: {err}") from err
    sink = _TcpSink(writer)
    try:
        sock = writer.get_extra_info("socket")
        if sock is not None:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        await sink.send(f"{target.header}\n".encode())
    except OSError as err:
        await sink.close()
        raise StreamError(f"send input id: {err}") from err
    return sink


async def _connect_ws(target: WsTarget) -> _Sink:
    try:
        connection = await websockets.connect(target.url)
    except (OSError, WebSocketException, ValueError) as err:
        raise StreamError(f"connect ws {target.url}: {err}") from err
    return _WsSink(connection)


class _StreamSession:
    def __init__(self, params: StreamParams, connect: Callable[[], Awaitable[_Sink]]) -> None:
        self._params = params
        self._status = params.status
        self._connect_sink = connect
        self._pacer = StreamPacer(params.output_rate, params.threshold_db, params.hold_duration)
        self._backoff = Backoff()
        self._interval = chunk_interval()
        self._clock = time.monotonic
        now = self._clock()
        self._next_tick = now
        self._last_rate_log = now
        self._overrun_since = now
        self._underrun_since = now
        self._bytes_since_log = 0
        self._underrun_bytes = 0
        self._sink: _Sink | None = None
        self._waiters: dict[str, asyncio.Task[Any]] = {}

    async def run(self) -> None:
        try:
            while True:
                if self._sink is None and not await self._connect():
                    continue
                self._arm()
                await asyncio.wait(
                    set(self._waiters.values()), return_when=asyncio.FIRST_COMPLETED
                )
                key, value = self._take_ready()
                if key == "chunk":
                    if value is None:
                        raise StreamError("audio capture channel closed")
                    self._on_chunk(value)
                elif key == "error":
                    message = value if value is not None else "audio capture error channel closed"
                    self._status.set_last_error(message)
                    raise StreamError(message)
                elif key == "vad":
                    self._pacer.threshold_db, self._pacer.hold = value
                else:
                    await self._on_tick()
        finally:
            waiters = list(self._waiters.values())
            self._waiters.clear()
            for task in waiters:
                task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)
            await self._drop_sink()

    async def _connect(self) -> bool:
        self._status.set_state("RECONNECTING")
        try:
            self._sink = await self._connect_sink()
        except StreamError as err:
            self._status.set_last_error(str(err))
            await asyncio.sleep(self._backoff.next_delay())
            return False
        self._status.set_state("STREAMING")
        self._status.set_last_error(None)
        self._backoff.reset()
        return True

    def _arm(self) -> None:
        waiters = self._waiters
        if "chunk" not in waiters:
            waiters["chunk"] = asyncio.create_task(self._params.rx.get())
        if "error" not in waiters:
            waiters["error"] = asyncio.create_task(self._params.err_rx.get())
        if self._params.vad_updates is not None and "vad" not in waiters:
            waiters["vad"] = asyncio.create_task(self._params.vad_updates.get())
        if "tick" not in waiters:
            delay = max(self._next_tick - self._clock(), 0.0)
            waiters["tick"] = asyncio.create_task(asyncio.sleep(delay))

    def _take_ready(self) -> tuple[str, Any]:
        for key in ("chunk", "error", "vad", "tick"):
            task = self._waiters.get(key)
            if task is not None and task.done():
                del self._waiters[key]
                return key, task.result()
        raise RuntimeError("no stream event is ready")

    def _on_chunk(self, chunk: bytes) -> None:
        now = self._clock()
        result = self._pacer.push(chunk, now)
        if result.dropped and now - self._overrun_since >= _LOG_INTERVAL:
            logger.warning("audio buffer overrun, dropping %d bytes", result.dropped)
            self._overrun_since = now
        self._status.set_rms_db(result.rms_db)
        if result.track_change:
            self._status.set_track_change()
            logger.info("track change detected")
        if result.started:
            logger.info("audio detected, streaming (rms_db=%.1f)", result.rms_db)
        if result.stopped:
            logger.info("silence detected, pausing stream (rms_db=%.1f)", result.rms_db)
        if not self._pacer.active:
            self._status.set_state("IDLE")

    async def _on_tick(self) -> None:
        now = self._clock()
        self._next_tick = max(self._next_tick, now) + self._interval
        if not self._pacer.active or self._sink is None:
            return
        payload, padded = self._pacer.take_chunk()
        self._underrun_bytes += padded
        try:
            await self._sink.send(payload)
        except (OSError, WebSocketException) as err:
            self._status.set_last_error(str(err))
            await self._drop_sink()
        else:
            self._status.set_state("STREAMING")
            self._status.record_bytes(self._pacer.chunk_bytes)
            self._bytes_since_log += self._pacer.chunk_bytes
        self._log_rates()

    def _log_rates(self) -> None:
        now = self._clock()
        elapsed = now - self._last_rate_log
        if elapsed >= _LOG_INTERVAL:
            bytes_per_sec = round(self._bytes_since_log / elapsed)
            logger.info(
                "stream throughput: %d B/s (~%.0f Hz)",
                bytes_per_sec,
                bytes_per_sec / _BYTES_PER_FRAME,
            )
            self._bytes_since_log = 0
            self._last_rate_log = now
        underrun_elapsed = now - self._underrun_since
        if underrun_elapsed >= _LOG_INTERVAL and self._underrun_bytes > 0:
            logger.warning(
                "audio buffer underrun: %d bytes padded in last %.1fs",
                self._underrun_bytes,
                underrun_elapsed,
            )
            self._underrun_bytes = 0
            self._underrun_since = now

    async def _drop_sink(self) -> None:
        sink, self._sink = self._sink, None
        if sink is not None:
            with suppress(OSError, WebSocketException):
                await sink.close()


async def stream_audio(params: StreamParams) -> None:
    """Stream captured audio to the ingest target until capture fails or ends.

    Connection failures are retried with backoff; capture problems raise
    :class:`StreamError`.
    """
    ingest = params.ingest
    if isinstance(ingest, TcpTarget):
        session = _StreamSession(params, lambda: _connect_tcp(ingest))
    elif isinstance(ingest, WsTarget):
        session = _StreamSession(params, lambda: _connect_ws(ingest))
    else:
        raise StreamError(f"invalid ingest target: {ingest!r}")
    await session.run()