#!/usr/bin/env python3
"""
Container Metadata Storage for tinydock.

Stores container configuration and state in JSON format:
<root>/containers/<id>/config.json

Metadata includes:
- Container ID, name and source image
- Command, environment, working directory and user
- Mounts, network attachments and published ports
- Healthcheck definition and current health
- Restart policy and lifecycle state (status, PID, exit code)
"""

import os
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from tinydock.health import HealthState
from tinydock.utils import (containers_path, dataclass_from_dict,
                            ensure_directories, generate_container_name,
                            generate_id, get_container_path, read_json,
                            write_json)

STATUS_CREATED = "created"
STATUS_RUNNING = "running"
STATUS_EXITED = "exited"

RESTART_POLICIES = ("no", "always", "on-failure", "unless-stopped")


def parse_restart_policy(value: str) -> Tuple[str, int]:
    """
    Parse a restart policy.

    Returns:
        (policy, max_retries); max_retries is 0 (unlimited) unless given as
        ``on-failure:N``

    Raises:
        ValueError: For unknown policies
    """
    name, sep, count = value.partition(":")
    if name not in RESTART_POLICIES:
        raise ValueError(f"invalid restart policy: {value!r}")
    if not sep:
        return name, 0
    if name != "on-failure" or not count.isdigit():
        raise ValueError(f"invalid restart policy: {value!r}")
    return name, int(count)


@dataclass
class MountConfig:
    """A mount realised inside the container root filesystem."""

    type: str  # volume or bind
    source: str  # volume name or host path
    target: str
    read_only: bool = False
    # Host directory the target points at
    path: str = ""


@dataclass
class NetworkAttachment:
    network: str
    ip: str = ""
    aliases: List[str] = field(default_factory=list)


@dataclass
class ContainerConfig:
    """Complete container configuration."""

    id: str = ""
    name: str = ""
    image: str = ""
    image_id: str = ""
    rootfs: str = ""
    command: List[str] = field(default_factory=list)

    env: Dict[str, str] = field(default_factory=dict)
    workdir: str = "/"
    user: str = ""
    hostname: str = ""

    # "host_ip:published:target/proto" strings
    ports: List[str] = field(default_factory=list)
    mounts: List[MountConfig] = field(default_factory=list)
    networks: List[NetworkAttachment] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)

    healthcheck: Optional[Dict[str, Any]] = None
    health: HealthState = field(default_factory=HealthState)

    restart_policy: str = "no"
    restart_count: int = 0
    stop_signal: str = "SIGTERM"
    stop_timeout: float = 10.0

    # State
    status: str = STATUS_CREATED  # created, running, exited
    pid: Optional[int] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    exit_code: Optional[int] = None
    stopped_by_user: bool = False

    def __post_init__(self):
        if not self.id:
            self.id = generate_id()
        if not self.name:
            self.name = generate_container_name()
        if not self.hostname:
            self.hostname = self.id[:12]

    @property
    def short_id(self) -> str:
        return self.id[:12]


def _from_dict(data: Dict[str, Any]) -> ContainerConfig:
    data = dict(data)
    data["mounts"] = [dataclass_from_dict(MountConfig, m) for m in data.get("mounts", [])]
    data["networks"] = [dataclass_from_dict(NetworkAttachment, n) for n in data.get("networks", [])]
    data["health"] = dataclass_from_dict(HealthState, data.get("health") or {})
    return dataclass_from_dict(ContainerConfig, data)


def container_exists(container_id: str) -> bool:
    """Check if a container exists."""
    return os.path.exists(os.path.join(get_container_path(container_id), "config.json"))


def save_container_config(config: ContainerConfig) -> str:
    """
    Save container configuration to disk.

    Args:
        config: ContainerConfig instance

    Returns:
        Path to the config file
    """
    config_path = os.path.join(get_container_path(config.id), "config.json")
    write_json(config_path, asdict(config))
    return config_path


def _read_config(container_id: str) -> Optional[ContainerConfig]:
    data = read_json(os.path.join(get_container_path(container_id), "config.json"))
    if not isinstance(data, dict):
        return None
    try:
        return _from_dict(data)
    except (TypeError, KeyError):
        return None


def load_container_config(container_id: str) -> Optional[ContainerConfig]:
    """
    Load container configuration from disk.

    Args:
        container_id: Container ID, ID prefix or name

    Returns:
        ContainerConfig instance or None if not found
    """
    full_id = find_container_id(container_id)
    if not full_id:
        return None
    return _read_config(full_id)


def _container_ids() -> List[str]:
    if not os.path.exists(containers_path()):
        return []
    return [name for name in os.listdir(containers_path()) if not name.startswith(".")]


def find_container_id(reference: str) -> Optional[str]:
    """
    Find a full container ID.

    Exact IDs win over exact names, which win over unique ID prefixes.

    Args:
        reference: Container ID, name or ID prefix

    Returns:
        Full container ID or None (also when a prefix is ambiguous)
    """
    if not reference:
        return None

    ids = _container_ids()
    if reference in ids and container_exists(reference):
        return reference

    for container_id in ids:
        config = _read_config(container_id)
        if config and config.name == reference:
            return container_id

    matches = [cid for cid in ids if cid.startswith(reference)]
    if len(matches) == 1:
        return matches[0]
    return None


def find_container_by_name(name: str) -> Optional[ContainerConfig]:
    for container_id in _container_ids():
        config = _read_config(container_id)
        if config and config.name == name:
            return config
    return None


def list_containers(
    all_containers: bool = False, labels: Optional[Mapping[str, str]] = None
) -> List[ContainerConfig]:
    """
    List containers.

    Args:
        all_containers: If True, include containers that are not running
        labels: Only include containers carrying all these labels

    Returns:
        List of ContainerConfig instances, newest first
    """
    containers = []
    for container_id in _container_ids():
        config = _read_config(container_id)
        if not config:
            continue
        if not all_containers and config.status != STATUS_RUNNING:
            continue
        if labels and any(config.labels.get(k) != v for k, v in labels.items()):
            continue
        containers.append(config)

    containers.sort(key=lambda c: c.created_at, reverse=True)
    return containers


def get_container_log_path(container_id: str) -> str:
    """Get path to container output log file."""
    return os.path.join(get_container_path(container_id), "container.log")


def get_container_exit_path(container_id: str) -> str:
    """Get path to the file the process shim writes the exit code to."""
    return os.path.join(get_container_path(container_id), "exitcode")


class MetadataStore:
    """
    Metadata store manager.

    Example:
        store = MetadataStore()
        config = store.create(image="app:latest", command=["sh"])
        running = store.list(labels={"tinydock.project": "demo"})
    """

    def __init__(self):
        ensure_directories()

    def create(self, **kwargs) -> ContainerConfig:
        """Create and save a new container configuration."""
        config = ContainerConfig(**kwargs)
        save_container_config(config)
        return config

    def get(self, reference: str) -> Optional[ContainerConfig]:
        """Get container configuration by ID, name or ID prefix."""
        return load_container_config(reference)

    def get_by_name(self, name: str) -> Optional[ContainerConfig]:
        return find_container_by_name(name)

    def list(
        self, all_containers: bool = False, labels: Optional[Mapping[str, str]] = None
    ) -> List[ContainerConfig]:
        """List containers."""
        return list_containers(all_containers, labels)

    def find(self, reference: str) -> Optional[str]:
        """Find container ID by ID, name or ID prefix."""
        return find_container_id(reference)
