"""Baseline services per distribution.

These are units every stock install of the distribution runs; they are
hidden from ``services_list`` by default and reported back by name in
``baseline_skipped``.
"""

from __future__ import annotations

import shlex

_COMMON = frozenset({
    "dbus.service",
    "getty@tty1.service",
    "serial-getty@ttyS0.service",
    "systemd-journald.service",
    "systemd-logind.service",
    "systemd-udevd.service",
    "systemd-tmpfiles-setup.service",
    "systemd-tmpfiles-setup-dev.service",
    "systemd-sysctl.service",
    "systemd-modules-load.service",
    "systemd-random-seed.service",
    "systemd-remount-fs.service",
    "systemd-update-utmp.service",
    "systemd-user-sessions.service",
    "systemd-journal-flush.service",
    "systemd-fsck-root.service",
    "systemd-timesyncd.service",
    "user@0.service",
    "user-runtime-dir@0.service",
})

_DEBIAN = _COMMON | {
    "apparmor.service",
    "console-setup.service",
    "cron.service",
    "keyboard-setup.service",
    "networking.service",
    "rsyslog.service",
    "ssh.service",
    "ifupdown-pre.service",
    "kmod-static-nodes.service",
}

_UBUNTU = _DEBIAN | {
    "snapd.service",
    "snapd.seeded.service",
    "snapd.apparmor.service",
    "systemd-networkd.service",
    "systemd-resolved.service",
    "networkd-dispatcher.service",
    "unattended-upgrades.service",
    "multipathd.service",
    "cloud-init.service",
    "cloud-init-local.service",
    "cloud-config.service",
    "cloud-final.service",
    "ufw.service",
}

_RHEL = _COMMON | {
    "auditd.service",
    "chronyd.service",
    "crond.service",
    "firewalld.service",
    "irqbalance.service",
    "NetworkManager.service",
    "NetworkManager-wait-online.service",
    "polkit.service",
    "rsyslog.service",
    "sshd.service",
    "sssd.service",
    "tuned.service",
    "kdump.service",
}

_ARCH = _COMMON | {
    "systemd-networkd.service",
    "systemd-resolved.service",
    "sshd.service",
}

BASELINES: dict[str, frozenset[str]] = {
    "debian": frozenset(_DEBIAN),
    "raspbian": frozenset(_DEBIAN),
    "ubuntu": frozenset(_UBUNTU),
    "rhel": frozenset(_RHEL),
    "centos": frozenset(_RHEL),
    "rocky": frozenset(_RHEL),
    "almalinux": frozenset(_RHEL),
    "fedora": frozenset(_RHEL),
    "arch": frozenset(_ARCH),
}


def parse_os_release(text: str) -> dict[str, str]:
    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        try:
            parts = shlex.split(raw)
        except ValueError:
            parts = [raw.strip("\"'")]
        values[key] = parts[0] if parts else ""
    return values


def detect_distribution(os_release: str | None) -> str:
    """Return the first distribution id (ID, then ID_LIKE) that has a baseline."""
    if not os_release:
        return "unknown"
    info = parse_os_release(os_release)
    candidates = [info.get("ID", "")] + info.get("ID_LIKE", "").split()
    for candidate in candidates:
        if candidate.lower() in BASELINES:
            return candidate.lower()
    return info.get("ID", "unknown").lower() or "unknown"


def baseline_for(distribution: str) -> frozenset[str]:
    return BASELINES.get(distribution, _COMMON)
