#!/usr/bin/env python3
"""
Utility functions for tinydock.

Provides:
- Storage paths (resolved from TINYDOCK_ROOT on every call)
- Random ID generation (12-char hex) and Docker-style names
- Content digests for byte strings, files and directory trees
- Atomic JSON persistence for dataclass-backed metadata
- ${VAR} interpolation shared by the Dockerfile and compose parsers

Storage Layout
==============

    <root>/
    ├── containers/<id>/      config.json, container.log, events.log, rootfs/
    ├── images/<hex>/         config.json
    ├── layers/<hex>/         layer.json, rootfs/
    ├── volumes/<name>/       volume.json, _data/
    └── networks/<name>.json

The root is TINYDOCK_ROOT when set, /var/lib/tinydock for root, and
$XDG_DATA_HOME/tinydock otherwise.
"""

import dataclasses
import hashlib
import json
import os
import random
import re
import stat
import string
import tempfile
from typing import Any, Callable, Dict, Mapping, Optional, Type, TypeVar

T = TypeVar("T")

# Adjectives for Docker-style names
ADJECTIVES = [
    "admiring", "amazing", "awesome", "blissful", "bold", "brave", "busy",
    "charming", "clever", "cool", "dazzling", "determined", "eager",
    "elegant", "epic", "festive", "focused", "friendly", "frosty", "gallant",
    "gifted", "happy", "hopeful", "jolly", "keen", "kind", "lucid", "magical",
    "modest", "nifty", "peaceful", "pensive", "quirky", "relaxed", "serene",
    "sharp", "silent", "stoic", "swift", "tender", "upbeat", "vibrant",
    "vigilant", "wizardly", "youthful", "zealous", "zen",
]

# Animals for Docker-style names
ANIMALS = [
    "albatross", "alpaca", "badger", "bat", "bear", "beaver", "bison",
    "camel", "cheetah", "cobra", "crane", "crow", "dolphin", "eagle", "elk",
    "falcon", "ferret", "finch", "fox", "gazelle", "gecko", "hawk", "heron",
    "ibis", "jaguar", "koala", "lemur", "lion", "lynx", "magpie", "marten",
    "narwhal", "newt", "ocelot", "orca", "otter", "owl", "panda", "puffin",
    "raven", "seal", "sloth", "swan", "tiger", "walrus", "wolf", "yak",
]


def storage_root() -> str:
    """Return the tinydock storage root directory."""
    if os.environ.get("TINYDOCK_ROOT"):
        return os.environ["TINYDOCK_ROOT"]
    if os.geteuid() == 0:
        return "/var/lib/tinydock"
    xdg_data = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    return os.path.join(xdg_data, "tinydock")


def containers_path() -> str:
    return os.path.join(storage_root(), "containers")


def images_path() -> str:
    return os.path.join(storage_root(), "images")


def layers_path() -> str:
    return os.path.join(storage_root(), "layers")


def volumes_path() -> str:
    return os.path.join(storage_root(), "volumes")


def networks_path() -> str:
    return os.path.join(storage_root(), "networks")


def ensure_directories() -> None:
    """Create all required tinydock directories."""
    for directory in (
        storage_root(),
        containers_path(),
        images_path(),
        layers_path(),
        volumes_path(),
        networks_path(),
    ):
        os.makedirs(directory, exist_ok=True)


def get_container_path(container_id: str) -> str:
    """Get the path to a container's directory."""
    return os.path.join(containers_path(), container_id)


def generate_id(length: int = 12) -> str:
    """
    Generate a random lowercase hexadecimal ID.

    Examples:
        >>> len(generate_id())
        12
    """
    return "".join(random.choices(string.hexdigits.lower()[:16], k=length))


def generate_container_name() -> str:
    """Generate a Docker-style random name (adjective_animal)."""
    return f"{random.choice(ADJECTIVES)}_{random.choice(ANIMALS)}"


def sha256_digest(data: bytes) -> str:
    """Return "sha256:<hex>" for a byte string."""
    return "sha256:" + hashlib.sha256(data).hexdigest()


def digest_hex(digest: str) -> str:
    """Strip the algorithm prefix from a digest."""
    return digest.split(":", 1)[1] if ":" in digest else digest


def short_id(digest: str, length: int = 12) -> str:
    """Shorten an ID or digest for display."""
    return digest_hex(digest)[:length]


def _join_rel(rel_dir: str, name: str) -> str:
    return name if rel_dir in ("", ".") else f"{rel_dir}/{name}"


def _update_entry(digest: "hashlib._Hash", rel: str, full: str) -> None:
    st = os.lstat(full)
    digest.update(rel.encode("utf-8", "surrogateescape") + b"\0")
    digest.update(f"{stat.S_IMODE(st.st_mode):o}".encode() + b"\0")
    if stat.S_ISLNK(st.st_mode):
        digest.update(b"L" + os.readlink(full).encode("utf-8", "surrogateescape"))
    elif stat.S_ISDIR(st.st_mode):
        digest.update(b"D")
    elif stat.S_ISREG(st.st_mode):
        digest.update(b"F")
        with open(full, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
    digest.update(b"\0")


def hash_path(path: str, ignore: Optional[Callable[[str], bool]] = None) -> str:
    """
    Compute a deterministic content digest of a file or directory tree.

    Names, permission bits, file contents and symlink targets contribute
    to the digest; timestamps and ownership do not.

    Args:
        path: File or directory to hash
        ignore: Optional predicate on "/"-separated paths relative to
            ``path``; matching entries are skipped

    Returns:
        "sha256:<hex>" digest
    """
    digest = hashlib.sha256()

    if os.path.islink(path) or not os.path.isdir(path):
        _update_entry(digest, os.path.basename(path), path)
        return "sha256:" + digest.hexdigest()

    for dirpath, dirnames, filenames in os.walk(path):
        rel_dir = os.path.relpath(dirpath, path).replace(os.sep, "/")
        if ignore:
            dirnames[:] = [d for d in dirnames if not ignore(_join_rel(rel_dir, d))]
        dirnames.sort()
        for name in sorted(dirnames + filenames):
            rel = _join_rel(rel_dir, name)
            if ignore and ignore(rel):
                continue
            _update_entry(digest, rel, os.path.join(dirpath, name))

    return "sha256:" + digest.hexdigest()


def dir_size(path: str) -> int:
    """Total size in bytes of the regular files under a directory."""
    total = 0
    for dirpath, _, filenames in os.walk(path):
        for name in filenames:
            try:
                st = os.lstat(os.path.join(dirpath, name))
            except OSError:
                continue
            if stat.S_ISREG(st.st_mode):
                total += st.st_size
    return total


def format_size(size: int) -> str:
    """Human readable size, e.g. 1.5MB."""
    value = float(size)
    for unit in ("B", "kB", "MB", "GB"):
        if value < 1000 or unit == "GB":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1000
    return f"{value:.1f}GB"


def inside_root(root: str, path: str) -> str:
    """
    Resolve an absolute container path inside a root filesystem.

    Raises:
        ValueError: If the path escapes the root
    """
    root = os.path.abspath(root)
    resolved = os.path.normpath(os.path.join(root, path.lstrip("/")))
    if resolved != root and not resolved.startswith(root + os.sep):
        raise ValueError(f"path escapes root filesystem: {path}")
    return resolved


def read_json(path: str) -> Optional[Any]:
    """Safely read a JSON file; returns None if missing or invalid."""
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, ValueError):
        return None


def write_json(path: str, data: Any) -> None:
    """Write JSON atomically (temp file + rename)."""
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


def dataclass_from_dict(cls: Type[T], data: Mapping[str, Any]) -> T:
    """Build a dataclass from a dict, ignoring unknown keys."""
    names = {f.name for f in dataclasses.fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


# =============================================================================
# Variable interpolation
# =============================================================================

_VARIABLE_RE = re.compile(
    r"\$(?:(?P<escaped>\$)|\{(?P<braced>[^}]*)\}|(?P<named>[A-Za-z_][A-Za-z0-9_]*))"
)
_BRACED_RE = re.compile(
    r"^(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:?[-+?])(?P<arg>.*))?$", re.S
)


def expand_variables(text: str, variables: Mapping[str, str]) -> str:
    """
    Expand shell-style variable references.

    Supported forms:
        $VAR, ${VAR}          value or empty string
        ${VAR:-default}       default when unset or empty
        ${VAR-default}        default when unset
        ${VAR:+alt}           alt when set and non-empty
        ${VAR+alt}            alt when set
        ${VAR:?message}       error when unset or empty
        ${VAR?message}        error when unset
        $$                    literal "$"

    Raises:
        ValueError: On malformed expressions or a failed ``?`` check
    """

    def replace(match: "re.Match") -> str:
        if match.group("escaped") is not None:
            return "$"
        named = match.group("named")
        if named is not None:
            return variables.get(named) or ""
        return _expand_braced(match.group("braced"), variables)

    return _VARIABLE_RE.sub(replace, text)


def _expand_braced(expr: str, variables: Mapping[str, str]) -> str:
    match = _BRACED_RE.match(expr)
    if not match:
        raise ValueError(f"invalid variable expression: ${{{expr}}}")

    name, op, arg = match.group("name"), match.group("op"), match.group("arg")
    value = variables.get(name)

    if op is None:
        return value or ""

    is_set = bool(value) if op.startswith(":") else value is not None
    kind = op[-1]

    if kind == "-":
        return value if is_set else expand_variables(arg, variables)
    if kind == "+":
        return expand_variables(arg, variables) if is_set else ""
    if not is_set:
        raise ValueError(arg or f"required variable {name} is missing a value")
    return value
