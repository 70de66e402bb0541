"""Configuration for the Outpost client."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

from outpost.transport.base import SSHTarget

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/outpost/config.json")


def _default_data_dir() -> str:
    return os.environ.get("OUTPOST_DATA_DIR") or os.path.expanduser("~/.local/share/outpost")


@dataclass
class OutpostConfig:
    """Client configuration, loaded from config.json."""

    data_dir: str = field(default_factory=_default_data_dir)
    artifact_dir: str = ""  # default <data_dir>/artifacts
    state_dir: str = ""  # default <data_dir>/hosts

    # Timeouts (seconds)
    quick_connect_timeout: float = 2.0
    command_timeout: float = 15.0
    sync_timeout: float = 120.0
    request_timeout: float = 30.0

    # SSH identity, applied to every target
    ssh_config_paths: list = field(default_factory=list)
    client_keys: list = field(default_factory=list)
    known_hosts: str = ""
    agent_forwarding: bool = False

    # Per-alias overrides: alias → {"hostname": ..., "username": ..., "port": ...}
    hosts: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.data_dir = os.path.expanduser(self.data_dir)
        if not self.artifact_dir:
            self.artifact_dir = os.path.join(self.data_dir, "artifacts")
        if not self.state_dir:
            self.state_dir = os.path.join(self.data_dir, "hosts")

    @classmethod
    def load(cls, path: str | Path) -> OutpostConfig:
        path = Path(os.path.expanduser(str(path)))
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    @classmethod
    def load_default(cls) -> OutpostConfig:
        return cls.load(os.environ.get("OUTPOST_CONFIG") or DEFAULT_CONFIG_PATH)

    def save(self, path: str | Path) -> None:
        path = Path(os.path.expanduser(str(path)))
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    def target_for(self, alias: str) -> SSHTarget:
        """Build the explicit connection parameters for *alias*."""
        override = self.hosts.get(alias) or {}
        port = override.get("port")
        return SSHTarget(
            alias=alias,
            hostname=override.get("hostname"),
            username=override.get("username"),
            port=int(port) if port else None,
            client_keys=tuple(os.path.expanduser(k) for k in self.client_keys),
            known_hosts=os.path.expanduser(self.known_hosts) if self.known_hosts else None,
            agent_forwarding=self.agent_forwarding,
            config_paths=tuple(os.path.expanduser(p) for p in self.ssh_config_paths),
            connect_timeout=max(self.quick_connect_timeout, self.command_timeout),
        )
