"""Read-only discovery probes run by the agent.

Each probe takes the request ``params`` dict and returns a protocol payload
dataclass.  A probe that cannot gather its category on this host raises
:class:`ProbeError`; the service turns that into a per-request failure.
Nothing here writes to the host.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import platform
import shutil
import socket
from pathlib import Path

from outpost.agent.baseline import baseline_for, detect_distribution
from outpost.errors import ProbeError
from outpost.protocol import (
    CapabilityTag,
    ContainerInfo,
    ContainersListResponse,
    DirEntry,
    Listener,
    ListDirResponse,
    NetListenersResponse,
    ProcessesSummary,
    ProcessInfo,
    ServiceInfo,
    ServicesListResponse,
    StaticConfig,
    SysInfo,
)

logger = logging.getLogger(__name__)

PROC = Path("/proc")
OS_RELEASE = Path("/etc/os-release")

_COMMAND_TIMEOUT = 10.0
_LIST_DIR_DEFAULT = 2000
_LIST_DIR_MAX = 10_000


def _read(path: Path) -> str | None:
    try:
        return path.read_text(errors="replace")
    except OSError:
        return None


async def _run(*cmd: str, timeout: float = _COMMAND_TIMEOUT) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ProbeError(f"{cmd[0]} timed out after {timeout:.0f}s")
    return (
        proc.returncode or 0,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


# ── System info ───────────────────────────────────────────────────


async def sys_info(params: dict) -> SysInfo:
    kernel = (_read(PROC / "sys/kernel/osrelease") or platform.release() or "unknown").strip()

    uptime_secs = 0
    uptime = _read(PROC / "uptime")
    if uptime:
        try:
            uptime_secs = int(float(uptime.split()[0]))
        except (IndexError, ValueError):
            pass

    hostname = (_read(PROC / "sys/kernel/hostname") or socket.gethostname() or "unknown").strip()

    return SysInfo(
        os=platform.system().lower() or "unknown",
        kernel=kernel,
        arch=platform.machine() or "unknown",
        uptime_secs=uptime_secs,
        hostname=hostname,
    )


async def static_config(params: dict) -> StaticConfig:
    cpuinfo = _read(PROC / "cpuinfo")
    if cpuinfo:
        cpu_count = sum(1 for line in cpuinfo.splitlines() if line.startswith("processor"))
    else:
        cpu_count = os.cpu_count() or 0

    mem_total = 0
    for line in (_read(PROC / "meminfo") or "").splitlines():
        if line.startswith("MemTotal:"):
            try:
                mem_total = int(line.split()[1]) * 1024
            except (IndexError, ValueError):
                pass
            break

    return StaticConfig(
        cpu_count=cpu_count,
        mem_total_bytes=mem_total,
        os_release=_read(OS_RELEASE),
    )


# ── Services ──────────────────────────────────────────────────────


async def services_list(params: dict) -> ServicesListResponse:
    """List systemd services, hiding the distribution's standard ones.

    Pass ``{"include_baseline": true}`` to get every unit.
    """
    if shutil.which("systemctl") is None:
        raise ProbeError("systemctl not available on this host")

    enabled_map: dict[str, bool | None] = {}
    rc, out, _ = await _run("systemctl", "list-unit-files", "--type=service", "--no-legend", "--no-pager")
    if rc == 0:
        for line in out.splitlines():
            parts = line.split()
            if len(parts) >= 2:
                state = parts[1]
                if state in ("enabled", "enabled-runtime"):
                    enabled_map[parts[0]] = True
                elif state == "disabled":
                    enabled_map[parts[0]] = False
                else:
                    enabled_map[parts[0]] = None

    rc, out, err = await _run("systemctl", "list-units", "--type=service", "--all", "--no-legend", "--no-pager")
    if rc != 0:
        raise ProbeError(f"systemctl list-units failed (rc={rc}): {err.strip()[:200]}")

    services = []
    for line in out.splitlines():
        # UNIT LOAD ACTIVE SUB DESCRIPTION; failed units are prefixed with a bullet
        parts = line.replace("●", " ").split()
        if len(parts) < 4:
            continue
        unit = parts[0]
        services.append(ServiceInfo(
            name=unit,
            active_state=parts[2],
            sub_state=parts[3],
            description=" ".join(parts[4:]) or None,
            enabled=enabled_map.get(unit),
        ))

    distro = detect_distribution(_read(OS_RELEASE))
    if params.get("include_baseline"):
        return ServicesListResponse(services=services, baseline=distro)

    baseline = baseline_for(distro)
    kept = [s for s in services if s.name not in baseline]
    skipped = sorted(s.name for s in services if s.name in baseline)
    return ServicesListResponse(services=kept, baseline=distro, baseline_skipped=skipped)


# ── Containers ────────────────────────────────────────────────────


async def containers_list(params: dict) -> ContainersListResponse:
    runtime = next((r for r in ("docker", "podman") if shutil.which(r)), None)
    if runtime is None:
        raise ProbeError("No container runtime found (docker, podman)")

    rc, out, err = await _run(
        runtime, "ps", "--all", "--no-trunc",
        "--format", "{{.ID}}\t{{.Names}}\t{{.Image}}\t{{.Status}}",
    )
    if rc != 0:
        raise ProbeError(f"{runtime} ps failed (rc={rc}): {err.strip()[:200]}")

    containers = []
    for line in out.splitlines():
        parts = line.split("\t")
        if len(parts) < 4:
            continue
        containers.append(ContainerInfo(id=parts[0][:12], name=parts[1], image=parts[2], status=parts[3]))
    return ContainersListResponse(runtime=runtime, containers=containers)


# ── Network listeners ─────────────────────────────────────────────

_TCP_LISTEN = "0A"
_UDP_UNCONNECTED = "07"


def decode_proc_address(hex_addr: str) -> tuple[str, int]:
    """Decode ``0100007F:1F90`` style /proc/net addresses."""
    addr_hex, port_hex = hex_addr.split(":")
    raw = bytes.fromhex(addr_hex)
    # The kernel prints each 32-bit word in host (little-endian) order.
    packed = b"".join(raw[i:i + 4][::-1] for i in range(0, len(raw), 4))
    return str(ipaddress.ip_address(packed)), int(port_hex, 16)


def parse_proc_net(text: str, protocol: str) -> list[Listener]:
    wanted = _TCP_LISTEN if protocol.startswith("tcp") else _UDP_UNCONNECTED
    listeners = []
    for line in text.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 10 or parts[3] != wanted:
            continue
        try:
            address, port = decode_proc_address(parts[1])
            inode = int(parts[9])
        except ValueError:
            continue
        listeners.append(Listener(protocol=protocol, address=address, port=port, inode=inode))
    return listeners


async def net_listeners(params: dict) -> NetListenersResponse:
    listeners: list[Listener] = []
    readable = 0
    for proto in ("tcp", "tcp6", "udp", "udp6"):
        text = _read(PROC / "net" / proto)
        if text is None:
            continue
        readable += 1
        listeners.extend(parse_proc_net(text, proto))
    if not readable:
        raise ProbeError("/proc/net is not readable on this host")
    listeners.sort(key=lambda l: (l.protocol, l.port, l.address))
    return NetListenersResponse(listeners=listeners)


# ── Processes ─────────────────────────────────────────────────────


def parse_proc_stat(pid: int, text: str, page_kb: int) -> tuple[ProcessInfo, int]:
    """Parse ``/proc/<pid>/stat``; returns (info, thread count)."""
    # comm may contain spaces and parentheses; it ends at the last ')'
    start, end = text.index("("), text.rindex(")")
    name = text[start + 1:end]
    rest = text[end + 2:].split()
    threads = int(rest[17])
    rss_kb = int(rest[21]) * page_kb
    return ProcessInfo(pid=pid, name=name, state=rest[0], rss_kb=rss_kb), threads


async def processes_summary(params: dict) -> ProcessesSummary:
    if not (PROC / "self").exists():
        raise ProbeError("/proc is not available on this host")

    top_n = max(0, int(params.get("top", 10)))
    page_kb = os.sysconf("SC_PAGE_SIZE") // 1024 if hasattr(os, "sysconf") else 4

    summary = ProcessesSummary(total=0)
    infos = []
    for entry in PROC.iterdir():
        if not entry.name.isdigit():
            continue
        text = _read(entry / "stat")
        if text is None:
            continue  # exited while scanning
        try:
            info, threads = parse_proc_stat(int(entry.name), text, page_kb)
        except (ValueError, IndexError):
            continue
        summary.total += 1
        summary.threads += threads
        if info.state == "R":
            summary.running += 1
        elif info.state in ("S", "D", "I"):
            summary.sleeping += 1
        elif info.state == "Z":
            summary.zombie += 1
        infos.append(info)

    infos.sort(key=lambda p: p.rss_kb, reverse=True)
    summary.top = infos[:top_n]
    return summary


# ── Directory listing ─────────────────────────────────────────────


async def list_dir(params: dict) -> ListDirResponse:
    path = Path(os.path.expanduser(str(params.get("path") or "~")))
    limit = min(int(params.get("max") or _LIST_DIR_DEFAULT), _LIST_DIR_MAX)
    skip = max(0, int(params.get("skip") or 0))

    entries = []
    try:
        with os.scandir(path) as it:
            for ent in it:
                try:
                    is_dir = ent.is_dir()
                    size = ent.stat().st_size if ent.is_file() else None
                except OSError:
                    is_dir, size = False, None
                entries.append(DirEntry(name=ent.name, path=ent.path, is_dir=is_dir, size=size))
    except OSError as exc:
        raise ProbeError(f"Cannot list {path}: {exc.strerror or exc}")

    entries.sort(key=lambda e: (not e.is_dir, e.name.lower()))
    return ListDirResponse(entries=entries[skip:skip + limit], eof=skip + limit >= len(entries))


DEFAULT_PROBES = {
    CapabilityTag.SYS_INFO: sys_info,
    CapabilityTag.STATIC_CONFIG: static_config,
    CapabilityTag.SERVICES_LIST: services_list,
    CapabilityTag.CONTAINERS_LIST: containers_list,
    CapabilityTag.NET_LISTENERS: net_listeners,
    CapabilityTag.PROCESSES_SUMMARY: processes_summary,
    CapabilityTag.LIST_DIR: list_dir,
}
