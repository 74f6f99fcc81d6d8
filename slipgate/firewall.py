"""Host firewall and resolver management."""

from __future__ import annotations

import shutil
import socket
import subprocess
from pathlib import Path

IPTABLES_RULES_PATH = Path("/etc/iptables/slipgate-rules.v4")
IPTABLES_UNIT_PATH = Path("/etc/systemd/system/slipgate-iptables.service")
IPTABLES_UNIT_NAME = "slipgate-iptables.service"
RESOLV_CONF_PATH = Path("/etc/resolv.conf")
UPLINK_RESOLV_PATH = Path("/run/systemd/resolve/resolv.conf")
RESOLVED_CONF_DIR = Path("/etc/systemd/resolved.conf.d")
RESOLVED_NO_STUB_CONF = RESOLVED_CONF_DIR / "slipgate-no-stub.conf"
STUB_NAMESERVER = "nameserver 127.0.0.53"
FALLBACK_RESOLV = "nameserver 1.1.1.1\nnameserver 8.8.8.8\n"

_IPTABLES_UNIT_TEMPLATE = """[Unit]
Description=Restore slipgate iptables rules
DefaultDependencies=no
Before=network-pre.target
Wants=network-pre.target

[Service]
Type=oneshot
ExecStart={restore} {rules}
RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
"""


class FirewallError(RuntimeError):
    """A firewall or resolver operation failed."""


def _run(*args: str) -> None:
    try:
        result = subprocess.run(
            list(args), stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False
        )
    except OSError as exc:
        raise FirewallError(f"{args[0]}: {exc}") from exc
    if result.returncode != 0:
        raise FirewallError(f"{' '.join(args)} exited with status {result.returncode}")


def _succeeds(*args: str) -> bool:
    try:
        _run(*args)
    except FirewallError:
        return False
    return True


def _output(*args: str) -> str | None:
    """Return the command's stdout, or None if it could not run or failed."""
    try:
        result = subprocess.run(
            list(args), capture_output=True, text=True, check=False
        )
    except OSError:
        return None
    if result.returncode != 0:
        return None
    return result.stdout


def _ufw_active() -> bool:
    out = _output("ufw", "status")
    return out is not None and "Status: active" in out


def _firewalld_active() -> bool:
    return _succeeds("firewall-cmd", "--state")


def iptables_rules_filter(output: str) -> bool:
    """Tell from ``iptables -S INPUT`` output whether INPUT filters traffic."""
    for line in output.splitlines():
        if line.startswith("-P INPUT "):
            if not line.endswith(" ACCEPT"):
                return True
            continue
        if "-j DROP" in line or "-j REJECT" in line:
            return True
    return False


def host_firewall_active() -> bool:
    """Report whether the host actually filters inbound traffic."""
    if shutil.which("ufw") and _ufw_active():
        return True
    if shutil.which("firewall-cmd") and _firewalld_active():
        return True
    if shutil.which("iptables"):
        out = _output("iptables", "-S", "INPUT")
        if out is not None and iptables_rules_filter(out):
            return True
    return False


def _iptables_rule(port: int, proto: str) -> list[str]:
    return ["INPUT", "-p", proto, "--dport", str(port), "-j", "ACCEPT"]


def allow_port(port: int, proto: str) -> None:
    """Open a port with the first active firewall tool."""
    spec = f"{port}/{proto}"
    if shutil.which("ufw") and _ufw_active():
        _run("ufw", "allow", spec)
        return
    if shutil.which("firewall-cmd") and _firewalld_active():
        _run("firewall-cmd", "--permanent", "--add-port", spec)
        _run("firewall-cmd", "--reload")
        return
    if shutil.which("iptables"):
        rule = _iptables_rule(port, proto)
        if _succeeds("iptables", "-C", *rule):
            return
        _run("iptables", "-A", *rule)
        _persist_quietly()


def remove_port(port: int, proto: str) -> None:
    """Remove the firewall rule for a port."""
    spec = f"{port}/{proto}"
    if shutil.which("ufw") and _ufw_active():
        _run("ufw", "delete", "allow", spec)
        return
    if shutil.which("firewall-cmd") and _firewalld_active():
        _succeeds("firewall-cmd", "--permanent", "--remove-port", spec)
        _run("firewall-cmd", "--reload")
        return
    if shutil.which("iptables"):
        _run("iptables", "-D", *_iptables_rule(port, proto))
        _persist_quietly()


def restore_unit(restore_path: str, rules_path: str | Path = IPTABLES_RULES_PATH) -> str:
    """Return the systemd unit that re-applies saved iptables rules at boot."""
    return _IPTABLES_UNIT_TEMPLATE.format(restore=restore_path, rules=rules_path)


def _iptables_persist() -> None:
    restore_path = shutil.which("iptables-restore")
    if restore_path is None:
        raise FirewallError("iptables-restore not found")
    rules = _output("iptables-save")
    if rules is None:
        raise FirewallError("iptables-save failed")
    IPTABLES_RULES_PATH.parent.mkdir(parents=True, exist_ok=True)
    IPTABLES_RULES_PATH.write_text(rules)

    unit = restore_unit(restore_path, IPTABLES_RULES_PATH)
    try:
        existing = IPTABLES_UNIT_PATH.read_text()
    except OSError:
        existing = ""
    if existing != unit:
        IPTABLES_UNIT_PATH.write_text(unit)
        _run("systemctl", "daemon-reload")
        _run("systemctl", "enable", IPTABLES_UNIT_NAME)


def _persist_quietly() -> None:
    # The runtime rule is already in effect; persistence is best-effort.
    try:
        _iptables_persist()
    except (FirewallError, OSError):
        pass


def disable_resolved_stub() -> None:
    """Turn off systemd-resolved's port 53 stub listener so port 53 is free."""
    if not _succeeds("systemctl", "is-active", "systemd-resolved"):
        return
    try:
        RESOLVED_CONF_DIR.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FirewallError(f"create resolved conf dir: {exc}") from exc
    try:
        RESOLVED_NO_STUB_CONF.write_text("[Resolve]\nDNSStubListener=no\n")
    except OSError as exc:
        raise FirewallError(f"write resolved config: {exc}") from exc
    try:
        _run("systemctl", "restart", "systemd-resolved")
    except FirewallError as exc:
        raise FirewallError(f"restart systemd-resolved: {exc}") from exc

    repair_resolv_conf()
    try:
        socket.getaddrinfo("api.cloudflare.com", None)
    except OSError as exc:
        raise FirewallError(f"verify DNS after disabling resolved stub: {exc}") from exc


def repair_resolv_conf(
    resolv_path: str | Path = RESOLV_CONF_PATH,
    uplink_path: str | Path = UPLINK_RESOLV_PATH,
) -> None:
    """Point resolv.conf away from the disabled stub resolver if needed."""
    resolv = Path(resolv_path)
    uplink = Path(uplink_path)
    try:
        content: str | None = resolv.read_text()
    except FileNotFoundError:
        content = None
    except OSError as exc:
        raise FirewallError(f"read {resolv}: {exc}") from exc
    if content is not None and not resolver_points_at_stub(content):
        return

    try:
        resolv.unlink(missing_ok=True)
    except OSError as exc:
        raise FirewallError(f"remove stale {resolv}: {exc}") from exc

    if uplink.exists():
        try:
            resolv.symlink_to(uplink)
        except OSError as exc:
            raise FirewallError(f"link {resolv} to {uplink}: {exc}") from exc
        return

    try:
        resolv.write_text(FALLBACK_RESOLV)
    except OSError as exc:
        raise FirewallError(f"write fallback {resolv}: {exc}") from exc


def resolver_points_at_stub(content: str) -> bool:
    """Return True if resolv.conf content names the local stub resolver."""
    return any(line.strip() == STUB_NAMESERVER for line in content.split("\n"))


def pids_from_ss(output: str) -> list[str]:
    """Extract ``pid=N`` values from ``ss -p`` output."""
    pids = []
    for line in output.splitlines():
        for token in line.split():
            if len(token) > 4 and token.startswith("pid="):
                pids.append(token[4:].rstrip(",)"))
    return pids


def free_port(port: int, proto: str) -> None:
    """Kill any process listening on the given port."""
    if shutil.which("fuser"):
        _succeeds("fuser", "-k", f"{port}/{proto}")
        return
    out = _output("ss", "-tlnp", f"sport = :{port}")
    if out is None:
        return
    for pid in pids_from_ss(out):
        _succeeds("kill", "-9", pid)