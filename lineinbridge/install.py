"""Installing the bridge as a systemd service."""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path

from . import config

SYSTEMD_UNIT_PATH = Path("/etc/systemd/system/lox-linein-bridge.service")
SERVICE_NAME = "lox-linein-bridge"
EXECUTABLE = "/usr/local/bin/lox-linein-bridge"

_UNIT_SECTIONS: dict[str, dict[str, str]] = {
    "Unit": {
        "Description": "Lox Line-in Bridge",
        "After": "network-online.target",
    },
    "Service": {
        "Type": "simple",
        "ExecStart": EXECUTABLE,
        "Nice": "-5",
        "CPUSchedulingPolicy": "rr",
        "CPUSchedulingPriority": "50",
        "LimitRTPRIO": "99",
        "Restart": "always",
        "RestartSec": "2",
    },
    "Install": {
        "WantedBy": "multi-user.target",
    },
}


class InstallError(Exception):
    """Raised when the service cannot be installed or started."""


def _render_section(name: str, entries: dict[str, str]) -> str:
    body = "\n".join(f"{key}={value}" for key, value in entries.items())
    return f"[{name}]\n{body}"


def systemd_unit() -> str:
    """Text of the systemd unit that runs the bridge."""
    sections = (_render_section(name, entries) for name, entries in _UNIT_SECTIONS.items())
    return "\n\n".join(sections) + "\n"


def run_systemctl(args: Sequence[str]) -> None:
    """Run ``systemctl`` with ``args``; raise if it cannot run or fails."""
    joined = " ".join(args)
    try:
        result = subprocess.run(["systemctl", *args], check=False)
    except OSError as err:
        raise InstallError(f"run systemctl {joined}: {err}") from err
    if result.returncode != 0:
        raise InstallError(f"systemctl {joined} failed")


def run_install() -> None:
    """Ensure a configuration exists, write the unit and enable the service."""
    _config, config_path = config.load_or_create_config()
    print(f"Config: {config_path}")

    unit_path = Path(SYSTEMD_UNIT_PATH)
    try:
        unit_path.write_text(systemd_unit(), encoding="utf-8")
    except OSError as err:
        raise InstallError(f"write systemd unit: {err}") from err
    print(f"Wrote systemd unit: {unit_path}")

    for command in (
        ["daemon-reload"],
        ["enable", "--now", SERVICE_NAME],
        ["restart", SERVICE_NAME],
    ):
        run_systemctl(command)