#!/usr/bin/env python3
"""
Content-addressed layer cache for tinydock.

Every filesystem-changing build step produces a layer: a full snapshot of
the root filesystem after the step. A layer's digest is derived from its
inputs (parent digest, instruction text, hashes of copied content), so a
rebuild with unchanged inputs finds the existing layer and skips the step.

Layer layout:
    <root>/layers/<hex>/
    ├── layer.json    # digest, parent, instruction, created_at, size
    └── rootfs/       # root filesystem snapshot

Layers are written to a staging directory and renamed into place once
complete, so a layer with a layer.json is always whole.
"""

import hashlib
import os
import shutil
import tempfile
import time
from dataclasses import asdict, dataclass
from typing import Iterable, List, Optional, Set

from tinydock.utils import (dataclass_from_dict, digest_hex, dir_size,
                            layers_path, read_json, write_json)


@dataclass
class LayerInfo:
    """Metadata for a stored layer."""

    digest: str
    parent: str = ""
    instruction: str = ""
    created_at: float = 0
    size: int = 0


class LayerStore:
    """
    Layer cache manager.

    Example:
        store = LayerStore()
        digest = store.key(parent, "RUN make")
        if not store.exists(digest):
            staging = store.prepare(parent)
            ...  # modify staging/rootfs
            store.commit(staging, digest, parent, "RUN make")
        rootfs = store.rootfs(digest)
    """

    def __init__(self, root: Optional[str] = None):
        self.root = root or layers_path()
        os.makedirs(self.root, exist_ok=True)

    @staticmethod
    def key(parent: str, instruction: str, extra: Iterable[str] = ()) -> str:
        """Cache key (and layer digest) for a build step."""
        digest = hashlib.sha256()
        for part in (parent or "", instruction, *extra):
            digest.update(part.encode("utf-8", "surrogateescape"))
            digest.update(b"\0")
        return "sha256:" + digest.hexdigest()

    def path(self, digest: str) -> str:
        return os.path.join(self.root, digest_hex(digest))

    def rootfs(self, digest: str) -> str:
        return os.path.join(self.path(digest), "rootfs")

    def exists(self, digest: str) -> bool:
        return bool(digest) and os.path.exists(os.path.join(self.path(digest), "layer.json"))

    def get(self, digest: str) -> Optional[LayerInfo]:
        data = read_json(os.path.join(self.path(digest), "layer.json"))
        if not isinstance(data, dict):
            return None
        return dataclass_from_dict(LayerInfo, data)

    def prepare(self, parent: str = "") -> str:
        """
        Create a staging directory whose rootfs is a copy of ``parent``.

        Returns:
            Staging directory path (the root filesystem is ``<staging>/rootfs``)
        """
        staging = tempfile.mkdtemp(dir=self.root, prefix=".staging-")
        target = os.path.join(staging, "rootfs")
        if parent:
            if not self.exists(parent):
                shutil.rmtree(staging, ignore_errors=True)
                raise FileNotFoundError(f"layer not found: {parent}")
            shutil.copytree(self.rootfs(parent), target, symlinks=True)
        else:
            os.makedirs(target)
        return staging

    def commit(self, staging: str, digest: str, parent: str, instruction: str) -> LayerInfo:
        """Move a staging directory into place as layer ``digest``."""
        info = LayerInfo(
            digest=digest,
            parent=parent or "",
            instruction=instruction,
            created_at=time.time(),
            size=dir_size(os.path.join(staging, "rootfs")),
        )
        write_json(os.path.join(staging, "layer.json"), asdict(info))

        final = self.path(digest)
        if os.path.exists(final):
            shutil.rmtree(final)
        os.rename(staging, final)
        return info

    def discard(self, staging: str) -> None:
        shutil.rmtree(staging, ignore_errors=True)

    def delete(self, digest: str) -> bool:
        path = self.path(digest)
        if not os.path.exists(path):
            return False
        shutil.rmtree(path)
        return True

    def list(self) -> List[LayerInfo]:
        layers = []
        for name in sorted(os.listdir(self.root)):
            if name.startswith("."):
                continue
            info = self.get(name)
            if info:
                layers.append(info)
        return layers

    def ancestors(self, digest: str) -> List[str]:
        """The digest followed by its parent chain."""
        chain = []
        while digest and digest not in chain:
            chain.append(digest)
            info = self.get(digest)
            digest = info.parent if info else ""
        return chain

    def prune(self, keep: Iterable[str]) -> List[str]:
        """
        Delete layers not reachable from ``keep``, plus stale staging dirs.

        Returns:
            Digests of removed layers
        """
        reachable: Set[str] = set()
        for digest in keep:
            reachable.update(self.ancestors(digest))

        removed = []
        for name in os.listdir(self.root):
            path = os.path.join(self.root, name)
            if name.startswith(".staging-"):
                shutil.rmtree(path, ignore_errors=True)
                continue
            info = self.get(name)
            if info is None or info.digest in reachable:
                continue
            shutil.rmtree(path)
            removed.append(info.digest)
        return removed
