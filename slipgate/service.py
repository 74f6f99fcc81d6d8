"""Creation and control of systemd service units."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path

SYSTEMD_DIR = Path("/etc/systemd/system")
SERVICE_PREFIX = "slipgate-"


class ServiceError(RuntimeError):
    """A systemd operation failed."""


def tunnel_service_name(tag: str) -> str:
    """Return the systemd service name for a tunnel."""
    return SERVICE_PREFIX + tag


@dataclass
class Unit:
    """A systemd service unit description."""

    name: str
    description: str = ""
    exec_start: str = ""
    exec_reload: str = ""
    user: str = ""
    group: str = ""
    after: str = ""
    restart: str = ""
    working_dir: str = ""
    environment: list[str] = field(default_factory=list)

    def render(self) -> str:
        """Return the unit file contents."""
        lines = [
            "[Unit]",
            f"Description={self.description}",
            f"After={self.after}",
            "StartLimitBurst=0",
            "StartLimitIntervalSec=0",
            "",
            "[Service]",
            "Type=simple",
            f"User={self.user}",
            f"Group={self.group}",
            f"ExecStart={self.exec_start}",
            f"Restart={self.restart}",
            "RestartSec=5",
            "LogRateLimitIntervalSec=30",
            "LogRateLimitBurst=100",
        ]
        if self.exec_reload:
            lines.append(f"ExecReload={self.exec_reload}")
        if self.working_dir:
            lines.append(f"WorkingDirectory={self.working_dir}")
        lines.extend(f"Environment={env}" for env in self.environment)
        lines.extend(["", "[Install]", "WantedBy=multi-user.target"])
        return "\n".join(lines) + "\n"


def _unit_path(name: str) -> Path:
    return Path(SYSTEMD_DIR) / f"{name}.service"


def _run(*args: str, quiet: bool = False) -> None:
    target = subprocess.DEVNULL if quiet else None
    try:
        result = subprocess.run(list(args), stdout=target, stderr=target, check=False)
    except OSError as exc:
        raise ServiceError(f"{args[0]}: {exc}") from exc
    if result.returncode != 0:
        raise ServiceError(f"{' '.join(args)} exited with status {result.returncode}")


def _daemon_reload() -> None:
    _run("systemctl", "daemon-reload")


def create(unit: Unit) -> None:
    """Write the unit file and reload the systemd daemon."""
    try:
        _unit_path(unit.name).write_text(unit.render())
    except OSError as exc:
        raise ServiceError(f"write unit file: {exc}") from exc
    _daemon_reload()


def start(name: str) -> None:
    """Enable and start a service."""
    _run("systemctl", "enable", f"{name}.service")
    _run("systemctl", "start", f"{name}.service")


def stop(name: str) -> None:
    """Stop and disable a service; does nothing if it is not installed."""
    if not exists(name):
        return
    for action in ("stop", "disable"):
        try:
            _run("systemctl", action, f"{name}.service", quiet=True)
        except ServiceError:
            pass


def restart(name: str) -> None:
    """Restart a service."""
    _run("systemctl", "restart", f"{name}.service")


def reload(name: str) -> None:
    """Run the service's ExecReload without dropping live connections."""
    _run("systemctl", "reload", f"{name}.service")


def read_unit_file(name: str) -> str:
    """Return the raw unit file contents, or an empty string if absent."""
    try:
        return _unit_path(name).read_text()
    except OSError:
        return ""


def status(name: str) -> str:
    """Return the active state of a service, e.g. ``active`` or ``inactive``."""
    try:
        result = subprocess.run(
            ["systemctl", "is-active", f"{name}.service"],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise ServiceError(f"systemctl: {exc}") from exc
    return result.stdout.strip()


def logs(name: str, lines: str | int) -> str:
    """Return recent journal lines for a service."""
    try:
        result = subprocess.run(
            ["journalctl", "-u", f"{name}.service", "-n", str(lines), "--no-pager"],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise ServiceError(f"journalctl: {exc}") from exc
    if result.returncode != 0:
        raise ServiceError(f"journalctl: exited with status {result.returncode}")
    return result.stdout


def remove(name: str) -> None:
    """Delete a unit file and reload the daemon; does nothing if it is absent."""
    path = _unit_path(name)
    if not path.exists():
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        raise ServiceError(f"remove unit file: {exc}") from exc
    _daemon_reload()


def exists(name: str) -> bool:
    """Return True if the unit file exists."""
    return _unit_path(name).exists()


def get_user(name: str) -> str:
    """Return the User= value of a service's unit file, or an empty string."""
    for line in read_unit_file(name).split("\n"):
        line = line.strip()
        if line.startswith("User="):
            return line[len("User="):]
    return ""


def list_slipgate_services() -> list[str]:
    """Return the names of all installed slipgate-* services."""
    try:
        entries = sorted(entry.name for entry in Path(SYSTEMD_DIR).iterdir())
    except OSError:
        return []
    return [
        entry[: -len(".service")]
        for entry in entries
        if entry.startswith(SERVICE_PREFIX) and entry.endswith(".service")
    ]