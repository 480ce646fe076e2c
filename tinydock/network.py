#!/usr/bin/env python3
"""
Container Networking for tinydock.

Networks are logical: each one owns a /24 carved out of 10.0.0.0/16 and
hands out addresses to the containers attached to it. Name resolution is
provided through an /etc/hosts file written into every container's root
filesystem, listing the peers it shares a network with.

Network Layout:
    ┌───────────────────────────────────────────────────┐
    │  network "app_default"   10.0.1.0/24              │
    │  gateway 10.0.1.1                                 │
    │                                                   │
    │  ┌──────────────┐      ┌──────────────┐           │
    │  │ app-web-1    │      │ app-db-1     │           │
    │  │ 10.0.1.2     │      │ 10.0.1.3     │           │
    │  │ alias: web   │      │ alias: db    │           │
    │  └──────────────┘      └──────────────┘           │
    └───────────────────────────────────────────────────┘

Stored at <root>/networks/<name>.json.
"""

import ipaddress
import os
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from tinydock.utils import (dataclass_from_dict, inside_root, networks_path,
                            read_json, write_json)

# Address pool split into per-network /24 subnets
NETWORK_POOL = "10.0.0.0/16"
SUBNET_PREFIX = 24

DEFAULT_BRIDGE = "bridge"

DRIVERS = ("bridge",)

_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


class NetworkError(Exception):
    """Exception raised for network operations."""

    pass


@dataclass
class Endpoint:
    """A container attached to a network."""

    container_id: str
    name: str
    ip: str
    aliases: List[str] = field(default_factory=list)


@dataclass
class NetworkConfig:
    name: str
    subnet: str
    gateway: str
    driver: str = "bridge"
    internal: bool = False
    labels: Dict[str, str] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    endpoints: Dict[str, Endpoint] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict) -> "NetworkConfig":
        data = dict(data)
        data["endpoints"] = {
            cid: dataclass_from_dict(Endpoint, ep) for cid, ep in data.get("endpoints", {}).items()
        }
        return dataclass_from_dict(cls, data)


def _network_file(name: str) -> str:
    return os.path.join(networks_path(), f"{name}.json")


class NetworkManager:
    """
    Network manager.

    Example:
        networks = NetworkManager()
        networks.create("backend")
        ip = networks.connect("backend", container_id, "db", aliases=["db"])
    """

    def __init__(self):
        os.makedirs(networks_path(), exist_ok=True)

    def _save(self, config: NetworkConfig) -> None:
        write_json(_network_file(config.name), asdict(config))

    def get(self, name: str) -> Optional[NetworkConfig]:
        data = read_json(_network_file(name))
        if not isinstance(data, dict):
            return None
        return NetworkConfig.from_dict(data)

    def exists(self, name: str) -> bool:
        return os.path.exists(_network_file(name))

    def list(self) -> List[NetworkConfig]:
        networks = []
        for filename in sorted(os.listdir(networks_path())):
            if filename.startswith(".") or not filename.endswith(".json"):
                continue
            config = self.get(filename[: -len(".json")])
            if config:
                networks.append(config)
        return networks

    def _allocate_subnet(self) -> ipaddress.IPv4Network:
        used = {config.subnet for config in self.list()}
        pool = ipaddress.ip_network(NETWORK_POOL)
        for subnet in pool.subnets(new_prefix=SUBNET_PREFIX):
            if str(subnet) not in used:
                return subnet
        raise NetworkError(f"address pool {NETWORK_POOL} exhausted")

    def create(
        self,
        name: str,
        driver: str = "bridge",
        labels: Optional[Dict[str, str]] = None,
        internal: bool = False,
        exist_ok: bool = False,
    ) -> NetworkConfig:
        """
        Create a network.

        Args:
            name: Network name
            driver: Network driver (only "bridge")
            labels: Labels to attach
            internal: Mark the network as internal
            exist_ok: Return the existing network instead of failing

        Returns:
            NetworkConfig
        """
        if not _NAME_RE.match(name):
            raise NetworkError(f"invalid network name: {name!r}")
        if driver not in DRIVERS:
            raise NetworkError(f"unsupported network driver: {driver}")

        existing = self.get(name)
        if existing:
            if exist_ok:
                return existing
            raise NetworkError(f"network {name} already exists")

        subnet = self._allocate_subnet()
        config = NetworkConfig(
            name=name,
            subnet=str(subnet),
            gateway=str(next(subnet.hosts())),
            driver=driver,
            internal=internal,
            labels=dict(labels or {}),
        )
        self._save(config)
        return config

    def remove(self, name: str, force: bool = False) -> None:
        """Remove a network. Fails while containers are attached unless forced."""
        config = self.get(name)
        if not config:
            raise NetworkError(f"No such network: {name}")
        if config.endpoints and not force:
            names = ", ".join(sorted(ep.name for ep in config.endpoints.values()))
            raise NetworkError(f"network {name} has active endpoints: {names}")
        os.remove(_network_file(name))

    def prune(self) -> List[str]:
        """Remove networks without endpoints, except the default bridge."""
        removed = []
        for config in self.list():
            if config.name == DEFAULT_BRIDGE or config.endpoints:
                continue
            os.remove(_network_file(config.name))
            removed.append(config.name)
        return removed

    def connect(
        self,
        name: str,
        container_id: str,
        container_name: str,
        aliases: Optional[List[str]] = None,
        ip: Optional[str] = None,
    ) -> str:
        """
        Attach a container to a network.

        Args:
            name: Network name
            container_id: Container ID
            container_name: Container name (resolvable by peers)
            aliases: Additional resolvable names
            ip: Requested address (must be free and inside the subnet)

        Returns:
            Assigned IP address
        """
        config = self.get(name)
        if not config:
            raise NetworkError(f"No such network: {name}")

        subnet = ipaddress.ip_network(config.subnet)
        used = {ep.ip for cid, ep in config.endpoints.items() if cid != container_id}
        used.add(config.gateway)

        if ip:
            try:
                address = ipaddress.ip_address(ip)
            except ValueError:
                raise NetworkError(f"invalid IP address: {ip}")
            if address not in subnet or str(address) in used:
                raise NetworkError(f"address {ip} is not available on network {name}")
            assigned = str(address)
        else:
            for host in subnet.hosts():
                if str(host) not in used:
                    assigned = str(host)
                    break
            else:
                raise NetworkError(f"no free addresses on network {name}")

        config.endpoints[container_id] = Endpoint(
            container_id=container_id,
            name=container_name,
            ip=assigned,
            aliases=list(aliases or []),
        )
        self._save(config)
        return assigned

    def disconnect(self, name: str, container_id: str) -> bool:
        config = self.get(name)
        if not config or container_id not in config.endpoints:
            return False
        del config.endpoints[container_id]
        self._save(config)
        return True

    def peers(self, container_id: str) -> List[Endpoint]:
        """Endpoints (including the container's own) on networks shared with it."""
        endpoints: List[Endpoint] = []
        for config in self.list():
            if container_id in config.endpoints:
                endpoints.extend(config.endpoints.values())
        return endpoints


def hosts_entries(
    container_id: str, hostname: str, networks: NetworkManager
) -> List[str]:
    """Lines of an /etc/hosts file for a container."""
    lines = [
        "127.0.0.1\tlocalhost",
        "::1\tlocalhost ip6-localhost ip6-loopback",
    ]
    seen = set()
    for endpoint in networks.peers(container_id):
        names = [endpoint.name] + endpoint.aliases
        if endpoint.container_id == container_id:
            names.insert(0, hostname)
        names = [n for n in dict.fromkeys(names) if n]
        key = (endpoint.ip, tuple(names))
        if key in seen:
            continue
        seen.add(key)
        lines.append(f"{endpoint.ip}\t{' '.join(names)}")
    return lines


def write_hosts_file(
    rootfs: str, container_id: str, hostname: str, networks: NetworkManager
) -> str:
    """Write /etc/hosts into a container root filesystem."""
    path = inside_root(rootfs, "/etc/hosts")
    os.makedirs(os.path.dirname(path), exist_ok=True)
    if os.path.islink(path):
        os.remove(path)
    with open(path, "w") as f:
        f.write("\n".join(hosts_entries(container_id, hostname, networks)) + "\n")

    hostname_path = inside_root(rootfs, "/etc/hostname")
    if os.path.islink(hostname_path):
        os.remove(hostname_path)
    with open(hostname_path, "w") as f:
        f.write(hostname + "\n")
    return path
