"""Periodic health snapshot written to a JSON file."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_PATH = "/tmp/lox-linein-bridge.status.json"
HEALTH_PATH_ENV = "LOX_LINEIN_BRIDGE_HEALTH_PATH"
WRITE_INTERVAL = 5.0


@dataclass(frozen=True)
class HealthSnapshot:
    """State of the bridge at one moment."""

    ts: str
    state: str
    device: str
    ingest: str
    last_error: str | None
    bytes_sent_total: int
    last_chunk_ts: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class _SnapshotSource(Protocol):
    def health_snapshot(self) -> HealthSnapshot: ...


def health_path() -> Path:
    """Location of the health file, overridable through the environment."""
    return Path(os.environ.get(HEALTH_PATH_ENV, DEFAULT_HEALTH_PATH))


def write_health(status: _SnapshotSource, path: str | os.PathLike[str]) -> HealthSnapshot:
    """Write one snapshot of ``status`` to ``path`` and return it."""
    snapshot = status.health_snapshot()
    payload = json.dumps(snapshot.to_dict(), indent=2)
    Path(path).write_text(payload, encoding="utf-8")
    return snapshot


async def run_health_writer(status: _SnapshotSource, path: str | os.PathLike[str]) -> None:
    """Write a snapshot every few seconds until cancelled."""
    last_write_ok = True
    while True:
        try:
            write_health(status, path)
        except (TypeError, ValueError) as err:
            if last_write_ok:
                logger.warning("health snapshot serialize failed: %s", err)
                last_write_ok = False
        except OSError as err:
            if last_write_ok:
                logger.warning("health snapshot write failed: %s", err)
                last_write_ok = False
        else:
            last_write_ok = True
        await asyncio.sleep(WRITE_INTERVAL)


def spawn(status: _SnapshotSource) -> asyncio.Task[None]:
    """Start the health writer on the running event loop."""
    return asyncio.get_running_loop().create_task(run_health_writer(status, health_path()))