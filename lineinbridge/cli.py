"""Command line entry point: run the bridge or install it as a service."""

from __future__ import annotations

import asyncio
import dataclasses
import ipaddress
import logging
import socket
import sys
from collections.abc import Sequence
from typing import Any

import psutil

from . import health
from .capture import CaptureError, CaptureSession, list_input_device_details, start_capture
from .config import Config, ConfigError, load_or_create_config
from .delays import Backoff
from .discovery import DiscoveredServer, DiscoveryError, discover_server
from .install import InstallError, run_install
from .models import BridgeRegisterRequest, CaptureDeviceInfo
from .runtime import RuntimeConfig, hash_capture_devices
from .server_api import ApiError, ServerApi
from .status import StatusHandle
from .stream import StreamError, StreamParams, stream_audio

logger = logging.getLogger(__name__)

PROGRAM = "lox-linein-bridge"
VERSION = "1.9.1"
DEFAULT_IP = "0.0.0.0"
DEFAULT_MAC = "00:00:00:00:00:00"

_DISCOVERY_RETRY = 5.0
_STATUS_INTERVAL = 5.0
_OBSERVED_RATE_INTERVAL = 2.0
_MAX_STATUS_FAILURES = 3
_LOG_OFF = logging.CRITICAL + 1

_LEVELS = {
    "off": _LOG_OFF,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}

_USAGE = (
    "Usage:",
    f"  {PROGRAM} [--log-level <level>]",
    f"  {PROGRAM} [--log-level <level>] install",
    f"  {PROGRAM} --help",
    f"  {PROGRAM} --version",
    "",
    "Examples:",
    f"  {PROGRAM} --log-level info run",
    f"  {PROGRAM} install",
    f"  {PROGRAM} run",
)

_handler: logging.Handler | None = None


def parse_args(argv: Sequence[str]) -> tuple[str | None, str | None]:
    """Split arguments into the first command and the ``--log-level`` value.

    Raises :class:`ValueError` when ``--log-level`` has no value.
    """
    command: str | None = None
    log_level: str | None = None
    args = iter(argv)
    for arg in args:
        if arg == "--log-level":
            try:
                log_level = next(args)
            except StopIteration:
                raise ValueError("--log-level requires a value") from None
            continue
        if arg.startswith("--log-level="):
            log_level = arg.removeprefix("--log-level=")
            continue
        if command is None:
            command = arg
    return command, log_level


def print_usage() -> None:
    """Write the usage text to standard error."""
    print("\n".join(_USAGE), file=sys.stderr)


def _configure_logging(level_name: str | None) -> None:
    global _handler
    level = _LEVELS.get((level_name or "off").strip().lower(), _LOG_OFF)
    package_logger = logging.getLogger(__package__ or "lineinbridge")
    if _handler is not None:
        package_logger.removeHandler(_handler)
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    package_logger.addHandler(_handler)
    package_logger.setLevel(level)
    package_logger.propagate = False


def _normalize_mac(address: str) -> str | None:
    parts = address.replace("-", ":").split(":")
    if len(parts) != 6 or not all(len(part) == 2 for part in parts):
        return None
    mac = ":".join(parts).upper()
    return None if mac == DEFAULT_MAC else mac


def _is_loopback(address: str) -> bool:
    try:
        return ipaddress.ip_address(address).is_loopback
    except ValueError:
        return False


def local_identity() -> tuple[str, str]:
    """First non-loopback IPv4 address and a hardware address, with zero defaults."""
    try:
        interfaces = psutil.net_if_addrs()
    except OSError:
        interfaces = {}
    ip: str | None = None
    mac: str | None = None
    for addresses in interfaces.values():
        ipv4 = [a.address for a in addresses if a.family == socket.AF_INET]
        loopback = any(_is_loopback(address) for address in ipv4)
        if ip is None:
            ip = next((address for address in ipv4 if not _is_loopback(address)), None)
        if mac is None and not loopback:
            links = (a.address for a in addresses if a.family == psutil.AF_LINK)
            mac = next((m for m in map(_normalize_mac, links) if m is not None), None)
    return ip or DEFAULT_IP, mac or DEFAULT_MAC


def _hostname() -> str:
    try:
        return socket.gethostname() or "unknown"
    except OSError:
        return "unknown"


class _Watch:
    """Latest value plus a version counter that waiters can follow."""

    def __init__(self, value: Any) -> None:
        self.value = value
        self.version = 0
        self._event = asyncio.Event()

    def send(self, value: Any) -> None:
        self.value = value
        self.version += 1
        event, self._event = self._event, asyncio.Event()
        event.set()

    async def changed(self, since: int) -> None:
        while self.version == since:
            await self._event.wait()


async def _discover(config: Config) -> DiscoveredServer:
    while True:
        try:
            server = await asyncio.to_thread(
                discover_server,
                config.preferred_server_name,
                config.preferred_server_mac,
            )
        except (DiscoveryError, OSError) as err:
            logger.warning("mDNS discovery failed: %s", err)
            await asyncio.sleep(_DISCOVERY_RETRY)
            continue
        logger.info("discovered server: %s", server.base_url)
        return server


async def _report_status(
    api: ServerApi,
    bridge_id: str,
    status: StatusHandle,
    runtime: RuntimeConfig,
    devices: list[CaptureDeviceInfo],
    config_watch: _Watch,
    vad_queues: set[asyncio.Queue[tuple[float, float]]],
    rediscover: asyncio.Event,
) -> None:
    last_hash: int | None = None
    failures = 0
    while not rediscover.is_set():
        snapshot = status.bridge_status()
        current_hash = hash_capture_devices(devices)
        if last_hash != current_hash:
            snapshot = dataclasses.replace(snapshot, capture_devices=list(devices))
            last_hash = current_hash
        try:
            response = await api.post_status(bridge_id, snapshot)
        except ApiError as err:
            failures += 1
            logger.debug("status post failed: %s", err)
            if failures >= _MAX_STATUS_FAILURES:
                logger.warning("status posts failed repeatedly, re-discovering server")
                rediscover.set()
                break
        else:
            failures = 0
            updated = runtime.update(response)
            if updated is not None:
                logger.info(
                    "config update: assigned_input_id=%r, capture_device=%r, "
                    "vad_threshold_db=%s, vad_hold_ms=%s, target_rate=%s, resampler=%s",
                    updated.assigned_input_id,
                    updated.capture_device,
                    updated.vad_threshold_db,
                    updated.vad_hold_ms,
                    updated.target_rate,
                    updated.resampler.label(),
                )
                vad = (updated.vad_threshold_db, updated.vad_hold_ms / 1000)
                for queue in vad_queues:
                    queue.put_nowait(vad)
                config_watch.send(updated)
        await asyncio.sleep(_STATUS_INTERVAL)
        try:
            devices = list_input_device_details()
        except CaptureError:
            pass


async def _track_observed_rate(session: CaptureSession, status: StatusHandle) -> None:
    while True:
        rate = session.observed_rate
        if rate is not None:
            status.set_observed_rate(rate)
        await asyncio.sleep(_OBSERVED_RATE_INTERVAL)


async def _wait_for_change(config_watch: _Watch, rediscover: asyncio.Event) -> None:
    waiters = [
        asyncio.create_task(config_watch.changed(config_watch.version)),
        asyncio.create_task(rediscover.wait()),
    ]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in waiters:
            task.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)


async def _sleep_unless(rediscover: asyncio.Event, delay: float) -> None:
    try:
        await asyncio.wait_for(rediscover.wait(), timeout=delay)
    except TimeoutError:
        pass


async def _stream_session(
    session: CaptureSession,
    current: RuntimeConfig,
    target: Any,
    status: StatusHandle,
    config_watch: _Watch,
    vad_queues: set[asyncio.Queue[tuple[float, float]]],
    rediscover: asyncio.Event,
) -> None:
    vad_queue: asyncio.Queue[tuple[float, float]] = asyncio.Queue()
    vad_queues.add(vad_queue)
    params = StreamParams(
        ingest=target,
        rx=session.receiver,
        err_rx=session.error_receiver,
        threshold_db=current.vad_threshold_db,
        hold_duration=current.vad_hold_ms / 1000,
        status=status,
        output_rate=current.target_rate,
        vad_updates=vad_queue,
    )
    key = current.stream_key()
    observer = asyncio.create_task(_track_observed_rate(session, status))
    stream_task = asyncio.create_task(stream_audio(params))
    try:
        while True:
            config_wait = asyncio.create_task(config_watch.changed(config_watch.version))
            rediscover_wait = asyncio.create_task(rediscover.wait())
            try:
                done, _ = await asyncio.wait(
                    {stream_task, config_wait, rediscover_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                config_wait.cancel()
                rediscover_wait.cancel()
                await asyncio.gather(config_wait, rediscover_wait, return_exceptions=True)
            if stream_task in done:
                try:
                    stream_task.result()
                except StreamError as err:
                    status.set_state("ERROR")
                    status.set_last_error(str(err))
                    logger.warning("streaming stopped: %s", err)
                return
            if rediscover.is_set():
                return
            if config_watch.value.stream_key() != key:
                return
    finally:
        vad_queues.discard(vad_queue)
        for task in (stream_task, observer):
            task.cancel()
        await asyncio.gather(stream_task, observer, return_exceptions=True)


async def _serve(
    api: ServerApi,
    config: Config,
    hostname: str,
    ip: str,
    mac: str,
    status: StatusHandle,
) -> None:
    capture_devices = list_input_device_details()
    request = BridgeRegisterRequest(
        bridge_id=config.bridge_id,
        hostname=hostname,
        version=VERSION,
        ip=ip,
        mac=mac,
        capture_devices=list(capture_devices),
    )
    logger.info("registering bridge %s", config.bridge_id)
    initial = await api.register_bridge(request)
    logger.info(
        "registration response: assigned_input_id=%r, capture_device=%r",
        initial.assigned_input_id,
        initial.capture_device,
    )

    runtime = RuntimeConfig.from_response(initial)
    config_watch = _Watch(dataclasses.replace(runtime))
    rediscover = asyncio.Event()
    vad_queues: set[asyncio.Queue[tuple[float, float]]] = set()
    reporter = asyncio.create_task(
        _report_status(
            api,
            config.bridge_id,
            status,
            runtime,
            list(capture_devices),
            config_watch,
            vad_queues,
            rediscover,
        )
    )
    backoff = Backoff()
    try:
        while not rediscover.is_set():
            current: RuntimeConfig = config_watch.value
            target = current.ingest_target() if current.is_ready() else None
            if target is None:
                status.set_state("IDLE")
                await _wait_for_change(config_watch, rediscover)
                continue
            capture_device = current.capture_device or ""
            status.set_device(capture_device)
            status.set_ingest(current.ingest_label())
            try:
                session = start_capture(capture_device, current.target_rate, current.resampler)
            except CaptureError as err:
                status.set_state("ERROR")
                status.set_last_error(str(err))
                logger.warning("capture failed: %s", err)
                await _sleep_unless(rediscover, backoff.next_delay())
                continue
            backoff.reset()
            status.set_capture_info(session.sample_rate, session.channels, session.format)
            logger.info(
                "capture format: %d Hz, %d channels, %s (target %d Hz, 2 channels, resampler=%s)",
                session.sample_rate,
                session.channels,
                session.format,
                current.target_rate,
                current.resampler.label(),
            )
            with session:
                await _stream_session(
                    session, current, target, status, config_watch, vad_queues, rediscover
                )
    finally:
        reporter.cancel()
        await asyncio.gather(reporter, return_exceptions=True)


async def run() -> None:
    """Discover the server, register, and stream audio as configured, forever."""
    config, path = load_or_create_config()
    logger.info("loaded config from %s", path)
    hostname = _hostname()
    ip, mac = local_identity()
    status = StatusHandle("", "")
    health_writer = health.spawn(status)
    try:
        while True:
            server = await _discover(config)
            async with ServerApi(
                server.base_url, server.register_path, server.status_path
            ) as api:
                logger.info("server: %s", server.base_url)
                await _serve(api, config, hostname, ip, mac, status)
    finally:
        cancel = getattr(health_writer, "cancel", None)
        if callable(cancel):
            cancel()


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command named in ``argv``; return the process exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        command, log_level = parse_args(args)
    except ValueError as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1
    _configure_logging(log_level)

    try:
        if command in ("--help", "-h"):
            print_usage()
            return 0
        if command in ("--version", "-V"):
            print(f"{PROGRAM} {VERSION}")
            return 0
        if command == "install":
            run_install()
            return 0
        if command in ("run", None):
            asyncio.run(run())
            return 0
        print_usage()
        print("Error: unknown command", file=sys.stderr)
        return 1
    except (
        ConfigError,
        InstallError,
        ApiError,
        DiscoveryError,
        CaptureError,
        StreamError,
        OSError,
        ValueError,
    ) as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())