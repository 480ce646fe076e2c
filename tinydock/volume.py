#!/usr/bin/env python3
"""
Volumes for tinydock.

A named volume is a directory that outlives the containers using it:

    <root>/volumes/<name>/
    ├── volume.json
    └── _data/

Mounts (named volumes and bind mounts) are realised inside a container's
root filesystem as a symlink at the target path pointing at the host
directory. An empty named volume is first populated with whatever the
image has at the target path.
"""

import os
import re
import shutil
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from tinydock.metadata import MountConfig, list_containers
from tinydock.utils import (dataclass_from_dict, inside_root, read_json,
                            volumes_path, write_json)

_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


class VolumeError(Exception):
    """Exception raised for volume operations."""

    pass


@dataclass
class VolumeConfig:
    name: str
    driver: str = "local"
    mountpoint: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    anonymous: bool = False
    created_at: float = field(default_factory=time.time)


class VolumeManager:
    """
    Volume manager.

    Example:
        volumes = VolumeManager()
        vol = volumes.create("pgdata")
        print(vol.mountpoint)
    """

    def __init__(self):
        os.makedirs(volumes_path(), exist_ok=True)

    def _path(self, name: str) -> str:
        return os.path.join(volumes_path(), name)

    def get(self, name: str) -> Optional[VolumeConfig]:
        data = read_json(os.path.join(self._path(name), "volume.json"))
        if not isinstance(data, dict):
            return None
        return dataclass_from_dict(VolumeConfig, data)

    def list(self) -> List[VolumeConfig]:
        volumes = []
        for name in sorted(os.listdir(volumes_path())):
            if name.startswith("."):
                continue
            config = self.get(name)
            if config:
                volumes.append(config)
        return volumes

    def create(
        self,
        name: str,
        driver: str = "local",
        labels: Optional[Dict[str, str]] = None,
        exist_ok: bool = False,
        anonymous: bool = False,
    ) -> VolumeConfig:
        """
        Create a named volume.

        Args:
            name: Volume name
            driver: Volume driver (only "local")
            labels: Labels to attach
            exist_ok: Return the existing volume instead of failing
            anonymous: Volume was created for an unnamed mount

        Returns:
            VolumeConfig
        """
        if not _NAME_RE.match(name):
            raise VolumeError(f"invalid volume name: {name!r}")
        if driver != "local":
            raise VolumeError(f"unsupported volume driver: {driver}")

        existing = self.get(name)
        if existing:
            if exist_ok:
                return existing
            raise VolumeError(f"volume {name} already exists")

        mountpoint = os.path.join(self._path(name), "_data")
        os.makedirs(mountpoint, exist_ok=True)
        config = VolumeConfig(
            name=name,
            driver=driver,
            mountpoint=mountpoint,
            labels=dict(labels or {}),
            anonymous=anonymous,
        )
        write_json(os.path.join(self._path(name), "volume.json"), asdict(config))
        return config

    def in_use(self, name: str) -> List[str]:
        """Names of containers mounting a volume."""
        return [
            c.name
            for c in list_containers(all_containers=True)
            if any(m.type == "volume" and m.source == name for m in c.mounts)
        ]

    def remove(self, name: str, force: bool = False) -> None:
        """Remove a volume. Fails while a container uses it unless forced."""
        if not self.get(name):
            raise VolumeError(f"No such volume: {name}")
        users = self.in_use(name)
        if users and not force:
            raise VolumeError(f"volume {name} is in use by: {', '.join(users)}")
        shutil.rmtree(self._path(name))

    def prune(self) -> List[str]:
        """Remove volumes no container uses."""
        removed = []
        for config in self.list():
            if self.in_use(config.name):
                continue
            shutil.rmtree(self._path(config.name))
            removed.append(config.name)
        return removed


def mount_into_rootfs(rootfs: str, mount: MountConfig) -> None:
    """
    Realise a mount inside a container root filesystem.

    The target path becomes a symlink to ``mount.path``. For a named volume
    that is still empty, existing image content at the target is copied
    into the volume first. A missing bind source is created as a directory.
    """
    target = inside_root(rootfs, mount.target)
    if target == os.path.abspath(rootfs):
        raise VolumeError("cannot mount over the container root")

    if mount.type == "bind" and not os.path.exists(mount.path):
        os.makedirs(mount.path, exist_ok=True)

    if os.path.lexists(target):
        if mount.type == "volume" and os.path.isdir(target) and not os.path.islink(target):
            if not os.listdir(mount.path):
                shutil.copytree(target, mount.path, symlinks=True, dirs_exist_ok=True)
        if os.path.isdir(target) and not os.path.islink(target):
            shutil.rmtree(target)
        else:
            os.remove(target)

    os.makedirs(os.path.dirname(target), exist_ok=True)
    os.symlink(mount.path, target)
