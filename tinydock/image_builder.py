#!/usr/bin/env python3
"""
Image Builder for tinydock.

Builds images from Dockerfiles against the content-addressed layer cache
and keeps the local image store.

Build model:
    - FROM starts a stage from scratch, an earlier stage, a stored image,
      or a directory inside the build context (imported as a base layer).
    - RUN, COPY and ADD produce filesystem layers. Their digest is the
      cache key: parent digest + instruction + hashes of copied content.
    - ENV, LABEL, WORKDIR, CMD, ... only change the image config; they roll
      the cache chain forward so later steps see different keys.
    - The image ID is the digest of the final config, so rebuilding
      unchanged inputs yields the same image.

RUN steps execute on the host with their working directory inside the
layer's root filesystem; there is no process isolation.
"""

import copy
import fnmatch
import glob
import json
import os
import re
import shutil
import subprocess
import sys
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, TextIO, Tuple

from tinydock.cache import LayerStore
from tinydock.dockerfile import (DockerfileError, Instruction, parse_arg,
                                 parse_command, parse_dockerfile, parse_from,
                                 parse_healthcheck, parse_key_values,
                                 parse_list)
from tinydock.utils import (dataclass_from_dict, digest_hex, ensure_directories,
                            expand_variables, hash_path, images_path,
                            inside_root, read_json, sha256_digest, short_id,
                            write_json)

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# Lines of RUN output shown in a build error
ERROR_OUTPUT_LINES = 20


@dataclass
class ImageLayer:
    """One history entry of an image (one build step)."""

    digest: str
    instruction: str
    command: str
    created_at: float = 0
    empty_layer: bool = False


@dataclass
class ImageConfig:
    """Image configuration."""

    id: str = ""
    tags: List[str] = field(default_factory=list)
    parent: str = ""
    rootfs_layer: str = ""
    layers: List[ImageLayer] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    workdir: str = "/"
    cmd: List[str] = field(default_factory=list)
    entrypoint: List[str] = field(default_factory=list)
    user: str = ""
    exposed_ports: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    volumes: List[str] = field(default_factory=list)
    healthcheck: Optional[Dict[str, Any]] = None
    stop_signal: str = ""
    created_at: float = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageConfig":
        data = dict(data)
        data["layers"] = [dataclass_from_dict(ImageLayer, layer) for layer in data.get("layers", [])]
        return dataclass_from_dict(cls, data)


class BuildError(Exception):
    """Exception raised during image build."""

    pass


class ImageError(Exception):
    """Exception raised during image operations."""

    pass


# =============================================================================
# Image store
# =============================================================================


def get_image_path(image_id: str) -> str:
    """Get path to image directory."""
    return os.path.join(images_path(), digest_hex(image_id))


def save_image(config: ImageConfig) -> None:
    write_json(os.path.join(get_image_path(config.id), "config.json"), asdict(config))


def load_image(image_id: str) -> Optional[ImageConfig]:
    data = read_json(os.path.join(get_image_path(image_id), "config.json"))
    if not isinstance(data, dict):
        return None
    try:
        return ImageConfig.from_dict(data)
    except TypeError:
        return None


def list_images() -> List[ImageConfig]:
    """List all stored images, newest first."""
    images = []
    if not os.path.exists(images_path()):
        return images

    for name in os.listdir(images_path()):
        if name.startswith("."):
            continue
        image = load_image(name)
        if image:
            images.append(image)

    images.sort(key=lambda img: img.created_at, reverse=True)
    return images


def split_tag(reference: str) -> Tuple[str, str]:
    """Split "name[:tag]" into (name, tag); the tag defaults to latest."""
    name, sep, tag = reference.rpartition(":")
    if not sep or "/" in tag:
        return reference, "latest"
    return name, tag


def normalize_tag(reference: str) -> str:
    name, tag = split_tag(reference)
    return f"{name}:{tag}"


def resolve_image(reference: str) -> Optional[ImageConfig]:
    """
    Resolve an image reference.

    Args:
        reference: "name", "name:tag", full ID, or ID prefix (with or
            without the "sha256:" prefix)

    Returns:
        ImageConfig or None if not found

    Raises:
        ImageError: If an ID prefix matches more than one image
    """
    if not reference:
        return None

    images = list_images()
    tag = normalize_tag(reference)
    for image in images:
        if tag in image.tags:
            return image

    hex_ref = digest_hex(reference).lower()
    if re.fullmatch(r"[0-9a-f]{4,64}", hex_ref):
        matches = [img for img in images if digest_hex(img.id).startswith(hex_ref)]
        if len(matches) > 1:
            raise ImageError(f"ambiguous image ID prefix: {reference}")
        if matches:
            return matches[0]

    return None


def get_image_rootfs(image: ImageConfig, layers: Optional[LayerStore] = None) -> Optional[str]:
    """Path to the image's root filesystem, or None for an empty image."""
    if not image.rootfs_layer:
        return None
    layers = layers or LayerStore()
    if not layers.exists(image.rootfs_layer):
        raise ImageError(f"layer {short_id(image.rootfs_layer)} of image {short_id(image.id)} is missing")
    return layers.rootfs(image.rootfs_layer)


def tag_image(reference: str, tag: str) -> ImageConfig:
    """Point ``tag`` at an image, removing it from any other image."""
    image = resolve_image(reference)
    if not image:
        raise ImageError(f"No such image: {reference}")

    tag = normalize_tag(tag)
    for other in list_images():
        if other.id != image.id and tag in other.tags:
            other.tags.remove(tag)
            save_image(other)

    if tag not in image.tags:
        image.tags.append(tag)
        save_image(image)
    return image


def image_users(image_id: str) -> List[str]:
    """Names of containers created from an image."""
    from tinydock.metadata import list_containers

    return [c.name for c in list_containers(all_containers=True) if c.image_id == image_id]


def remove_image(reference: str, force: bool = False) -> List[str]:
    """
    Remove an image by name or ID.

    Removing one tag of a multi-tagged image only untags it.

    Returns:
        Messages describing what was untagged and deleted

    Raises:
        ImageError: If the image is not found or is used by containers
    """
    image = resolve_image(reference)
    if not image:
        raise ImageError(f"No such image: {reference}")

    tag = normalize_tag(reference)
    if tag in image.tags and len(image.tags) > 1 and not force:
        image.tags.remove(tag)
        save_image(image)
        return [f"Untagged: {tag}"]

    users = image_users(image.id)
    if users and not force:
        raise ImageError(
            f"image {short_id(image.id)} is being used by container(s): {', '.join(users)}"
        )

    try:
        shutil.rmtree(get_image_path(image.id))
    except OSError as e:
        raise ImageError(f"Cannot remove image: {e}")

    return [f"Untagged: {t}" for t in image.tags] + [f"Deleted: {image.id}"]


def prune_images() -> List[str]:
    """Remove untagged images no container uses. Returns removed IDs."""
    removed = []
    for image in list_images():
        if image.tags or image_users(image.id):
            continue
        shutil.rmtree(get_image_path(image.id), ignore_errors=True)
        removed.append(image.id)
    return removed


def prune_layers(layers: Optional[LayerStore] = None) -> List[str]:
    """Remove cached layers not reachable from any stored image."""
    layers = layers or LayerStore()
    keep = [img.rootfs_layer for img in list_images() if img.rootfs_layer]
    return layers.prune(keep)


# =============================================================================
# .dockerignore
# =============================================================================


class IgnoreMatcher:
    """
    Matches build-context paths against .dockerignore patterns.

    A pattern that matches a directory also excludes everything below it.
    Later ``!pattern`` lines re-include paths.
    """

    def __init__(self, patterns: Optional[List[str]] = None):
        self.rules: List[Tuple[str, bool]] = []
        for pattern in patterns or []:
            pattern = pattern.strip()
            if not pattern or pattern.startswith("#"):
                continue
            negate = pattern.startswith("!")
            if negate:
                pattern = pattern[1:].strip()
            pattern = os.path.normpath(pattern).replace(os.sep, "/").strip("/")
            if pattern and pattern != ".":
                self.rules.append((pattern, negate))

    def __bool__(self) -> bool:
        return bool(self.rules)

    def __call__(self, rel: str) -> bool:
        rel = rel.replace(os.sep, "/").strip("/")
        if rel in ("", "."):
            return False

        parts = rel.split("/")
        prefixes = ["/".join(parts[:i]) for i in range(1, len(parts) + 1)]
        ignored = False
        for pattern, negate in self.rules:
            if any(fnmatch.fnmatchcase(prefix, pattern) for prefix in prefixes):
                ignored = not negate
        return ignored


def load_dockerignore(context: str) -> IgnoreMatcher:
    path = os.path.join(context, ".dockerignore")
    if not os.path.isfile(path):
        return IgnoreMatcher()
    with open(path, "r") as f:
        return IgnoreMatcher(f.read().splitlines())


# =============================================================================
# Builder
# =============================================================================


@dataclass
class _Stage:
    """Per-stage build state."""

    name: str
    index: int
    config: ImageConfig
    chain: str = ""
    layer: str = ""
    args: Dict[str, str] = field(default_factory=dict)
    cmd_set: bool = False


@dataclass
class _BuildState:
    context: str
    ignore: IgnoreMatcher
    build_args: Dict[str, str]
    global_args: Dict[str, Optional[str]]
    no_cache: bool
    stages: List[_Stage] = field(default_factory=list)


class ImageBuilder:
    """
    Build container images from Dockerfiles.

    Example:
        builder = ImageBuilder()
        image_id = builder.build("./app", tag="my-app:latest")
    """

    def __init__(
        self,
        layers: Optional[LayerStore] = None,
        quiet: bool = False,
        output: Optional[TextIO] = None,
    ):
        ensure_directories()
        self.layers = layers or LayerStore()
        self.quiet = quiet
        self.output = output

    def _log(self, message: str) -> None:
        if not self.quiet:
            print(message, file=self.output or sys.stdout)

    def build(
        self,
        context: str,
        dockerfile: str = "Dockerfile",
        tag: str = "",
        build_args: Optional[Dict[str, str]] = None,
        no_cache: bool = False,
        target: Optional[str] = None,
    ) -> str:
        """
        Build an image.

        Args:
            context: Build context directory
            dockerfile: Dockerfile path, relative to the context
            tag: Optional "name:tag" to apply
            build_args: Values for ARG instructions
            no_cache: Re-run every step even when a cached layer exists
            target: Stop after this stage

        Returns:
            Image ID ("sha256:<hex>")
        """
        context = os.path.abspath(context)
        if not os.path.isdir(context):
            raise BuildError(f"Build context not found: {context}")

        dockerfile_path = dockerfile if os.path.isabs(dockerfile) else os.path.join(context, dockerfile)
        if not os.path.isfile(dockerfile_path):
            raise BuildError(f"Dockerfile not found: {dockerfile_path}")

        with open(dockerfile_path, "r") as f:
            content = f.read()

        try:
            instructions = parse_dockerfile(content)
        except DockerfileError as e:
            raise BuildError(f"{os.path.basename(dockerfile_path)}: {e}") from e

        state = _BuildState(
            context=context,
            ignore=load_dockerignore(context),
            build_args=dict(build_args or {}),
            global_args={},
            no_cache=no_cache,
        )
        target = target.lower() if target else None
        stage: Optional[_Stage] = None
        total = len(instructions)

        for step, instruction in enumerate(instructions, 1):
            if instruction.keyword == "FROM" and stage and target and stage.name == target:
                break

            self._log(f"Step {step}/{total} : {instruction}")

            try:
                if instruction.keyword == "FROM":
                    stage = self._start_stage(instruction, state)
                    state.stages.append(stage)
                elif stage is None:
                    name, default = parse_arg(instruction.args)
                    state.global_args[name] = state.build_args.get(name, default)
                else:
                    self._process_instruction(stage, instruction, state)
            except (DockerfileError, ValueError) as e:
                raise BuildError(f"line {instruction.lineno}: {e}") from e

        if stage is None:
            raise BuildError("No FROM instruction")
        if target and stage.name != target:
            raise BuildError(f"Target stage not found: {target}")

        image = self._commit_image(stage, tag)
        self._log(f"Successfully built {short_id(image.id)}")
        if tag:
            self._log(f"Successfully tagged {normalize_tag(tag)}")
        return image.id

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _find_stage(self, stages: List[_Stage], reference: str) -> Optional[_Stage]:
        for stage in stages:
            if stage.name and stage.name == reference.lower():
                return stage
        if reference.isdigit() and int(reference) < len(stages):
            return stages[int(reference)]
        return None

    def _start_stage(self, instruction: Instruction, state: _BuildState) -> _Stage:
        """Handle FROM instruction."""
        variables = {k: v for k, v in state.global_args.items() if v is not None}
        base, name = parse_from(expand_variables(instruction.args, variables))
        stage = _Stage(name=name, index=len(state.stages), config=ImageConfig())

        previous = self._find_stage(state.stages, base)
        if base == "scratch":
            stage.chain = LayerStore.key("", "FROM scratch")
            self._record(stage, "FROM", base, stage.chain, empty=True)
            return stage

        if previous:
            stage.config = copy.deepcopy(previous.config)
            stage.chain = previous.chain
            stage.layer = previous.layer
            return stage

        image = resolve_image(base)
        if image:
            config = copy.deepcopy(image)
            config.id, config.tags, config.created_at = "", [], 0
            config.parent = image.id
            stage.config = config
            stage.chain = image.id
            stage.layer = image.rootfs_layer
            return stage

        base_dir = os.path.normpath(os.path.join(state.context, base))
        if not os.path.isdir(base_dir):
            raise BuildError(f"Base image not found: {base}")

        digest = LayerStore.key("", "FROM directory", [hash_path(base_dir)])
        if self._use_cache(digest, state):
            pass
        else:
            staging = self.layers.prepare("")
            try:
                shutil.copytree(base_dir, os.path.join(staging, "rootfs"), symlinks=True, dirs_exist_ok=True)
            except (OSError, shutil.Error) as e:
                self.layers.discard(staging)
                raise BuildError(f"Failed to import base directory {base}: {e}") from e
            self.layers.commit(staging, digest, "", f"FROM {base}")
            self._log(f" ---> {short_id(digest)}")

        stage.chain = stage.layer = digest
        self._record(stage, "FROM", base, digest)
        return stage

    def _record(self, stage: _Stage, keyword: str, args: str, digest: str, empty: bool = False) -> None:
        stage.config.layers.append(
            ImageLayer(
                digest=digest,
                instruction=keyword,
                command=args,
                created_at=time.time(),
                empty_layer=empty,
            )
        )

    def _use_cache(self, digest: str, state: _BuildState) -> bool:
        if state.no_cache or not self.layers.exists(digest):
            return False
        self._log(" ---> Using cache")
        self._log(f" ---> {short_id(digest)}")
        return True

    def _variables(self, stage: _Stage) -> Dict[str, str]:
        variables = dict(stage.args)
        variables.update(stage.config.env)
        return variables

    # -------------------------------------------------------------------------
    # Instructions
    # -------------------------------------------------------------------------

    def _process_instruction(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        """Process a single build instruction."""
        handlers: Dict[str, Callable[[_Stage, Instruction, _BuildState], None]] = {
            "ARG": self._handle_arg,
            "ENV": self._handle_env,
            "LABEL": self._handle_label,
            "WORKDIR": self._handle_workdir,
            "RUN": self._handle_run,
            "COPY": self._handle_copy,
            "ADD": self._handle_copy,
            "CMD": self._handle_cmd,
            "ENTRYPOINT": self._handle_entrypoint,
            "EXPOSE": self._handle_expose,
            "USER": self._handle_user,
            "VOLUME": self._handle_volume,
            "HEALTHCHECK": self._handle_healthcheck,
            "STOPSIGNAL": self._handle_stopsignal,
        }
        handlers[instruction.keyword](stage, instruction, state)

    def _roll(self, stage: _Stage, keyword: str, text: str) -> None:
        """Advance the cache chain for a config-only instruction."""
        stage.chain = LayerStore.key(stage.chain, f"{keyword} {text}")
        self._record(stage, keyword, text, stage.chain, empty=True)

    def _handle_arg(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        name, default = parse_arg(instruction.args)
        if name in state.build_args:
            value: Optional[str] = state.build_args[name]
        elif default is not None:
            value = expand_variables(default, self._variables(stage))
        else:
            value = state.global_args.get(name)

        if value is not None:
            stage.args[name] = value
        self._roll(stage, "ARG", f"{name}={value}" if value is not None else name)

    def _handle_env(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        values = parse_key_values(instruction.args, self._variables(stage))
        stage.config.env.update(values)
        self._roll(stage, "ENV", " ".join(f"{k}={v}" for k, v in values.items()))

    def _handle_label(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        values = parse_key_values(instruction.args, self._variables(stage))
        stage.config.labels.update(values)
        self._roll(stage, "LABEL", " ".join(f"{k}={v}" for k, v in values.items()))

    def _handle_workdir(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        path = expand_variables(instruction.args.strip(), self._variables(stage))
        if not path:
            raise BuildError(f"line {instruction.lineno}: WORKDIR requires a path")
        if not path.startswith("/"):
            path = os.path.join(stage.config.workdir or "/", path)
        stage.config.workdir = os.path.normpath(path)
        self._roll(stage, "WORKDIR", stage.config.workdir)

    def _handle_cmd(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        stage.config.cmd, _ = parse_command(instruction.args)
        stage.cmd_set = True
        self._roll(stage, "CMD", json.dumps(stage.config.cmd))

    def _handle_entrypoint(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        stage.config.entrypoint, _ = parse_command(instruction.args)
        # An ENTRYPOINT resets a CMD inherited from the base image
        if not stage.cmd_set:
            stage.config.cmd = []
        self._roll(stage, "ENTRYPOINT", json.dumps(stage.config.entrypoint))

    def _handle_expose(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        text = expand_variables(instruction.args, self._variables(stage))
        for port in text.split():
            number, _, protocol = port.partition("/")
            if not number.isdigit():
                raise BuildError(f"line {instruction.lineno}: invalid port: {port}")
            entry = f"{number}/{protocol or 'tcp'}"
            if entry not in stage.config.exposed_ports:
                stage.config.exposed_ports.append(entry)
        self._roll(stage, "EXPOSE", text)

    def _handle_user(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        stage.config.user = expand_variables(instruction.args.strip(), self._variables(stage))
        self._roll(stage, "USER", stage.config.user)

    def _handle_volume(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        text = expand_variables(instruction.args, self._variables(stage))
        for path in parse_list(text):
            if path not in stage.config.volumes:
                stage.config.volumes.append(path)
        self._roll(stage, "VOLUME", text)

    def _handle_healthcheck(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        healthcheck = parse_healthcheck(instruction.args, instruction.flags)
        stage.config.healthcheck = asdict(healthcheck)
        self._roll(stage, "HEALTHCHECK", str(instruction))

    def _handle_stopsignal(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        stage.config.stop_signal = expand_variables(instruction.args.strip(), self._variables(stage))
        self._roll(stage, "STOPSIGNAL", stage.config.stop_signal)

    def _run_env(self, stage: _Stage) -> Dict[str, str]:
        env = {"PATH": DEFAULT_PATH, "HOME": "/root"}
        env.update(stage.args)
        env.update(stage.config.env)
        return env

    def _handle_run(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        """Handle RUN instruction."""
        if not instruction.args.strip():
            raise BuildError(f"line {instruction.lineno}: RUN requires a command")

        argv, _ = parse_command(instruction.args)
        digest = LayerStore.key(stage.chain, f"RUN {instruction.args}")

        if not self._use_cache(digest, state):
            staging = self.layers.prepare(stage.layer)
            rootfs = os.path.join(staging, "rootfs")
            try:
                cwd = inside_root(rootfs, stage.config.workdir)
                os.makedirs(cwd, exist_ok=True)
                result = subprocess.run(
                    argv,
                    cwd=cwd,
                    env=self._run_env(stage),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                )
            except (OSError, ValueError) as e:
                self.layers.discard(staging)
                raise BuildError(f"RUN failed: {e}") from e

            if result.returncode != 0:
                self.layers.discard(staging)
                tail = "\n".join(result.stdout.splitlines()[-ERROR_OUTPUT_LINES:])
                raise BuildError(
                    f"The command '{instruction.args}' returned a non-zero code: "
                    f"{result.returncode}\n{tail}".rstrip()
                )

            for line in result.stdout.splitlines():
                self._log(f"  {line}")
            self.layers.commit(staging, digest, stage.layer, f"RUN {instruction.args}")
            self._log(f" ---> {short_id(digest)}")

        stage.chain = stage.layer = digest
        self._record(stage, "RUN", instruction.args, digest)

    def _source_root(self, reference: str, state: _BuildState) -> str:
        """Root directory for COPY --from."""
        source = self._find_stage(state.stages[:-1], reference)
        if source:
            if not source.layer:
                raise BuildError(f"stage {reference} has an empty filesystem")
            return self.layers.rootfs(source.layer)

        image = resolve_image(reference)
        if image:
            rootfs = get_image_rootfs(image, self.layers)
            if rootfs:
                return rootfs
            raise BuildError(f"image {reference} has an empty filesystem")

        raise BuildError(f"COPY --from: stage or image not found: {reference}")

    def _expand_sources(
        self, root: str, sources: List[str], ignore: Optional[IgnoreMatcher]
    ) -> List[Tuple[str, str]]:
        """
        Resolve COPY sources to (absolute path, path relative to root).

        Symlinked directories along a source path are resolved before the
        containment check; a source that is itself a symlink is copied as a
        link and is only checked up to its parent.
        """
        real_root = os.path.realpath(root)

        def escapes(path: str) -> bool:
            if os.path.islink(path):
                resolved = os.path.join(os.path.realpath(os.path.dirname(path)), os.path.basename(path))
            else:
                resolved = os.path.realpath(path)
            return resolved != real_root and not resolved.startswith(real_root + os.sep)

        matches: List[Tuple[str, str]] = []
        for source in sources:
            pattern = os.path.normpath(os.path.join(root, source.lstrip("/")))
            if pattern != root and not pattern.startswith(root + os.sep):
                raise BuildError(f"forbidden path outside the build context: {source}")

            if any(c in source for c in "*?["):
                found = sorted(glob.glob(pattern))
            else:
                found = [pattern] if os.path.lexists(pattern) else []

            found = [
                path for path in found
                if not (ignore and ignore(os.path.relpath(path, root)))
            ]
            if not found:
                raise BuildError(f"COPY failed: file not found in build context: {source}")
            if any(escapes(path) for path in found):
                raise BuildError(f"forbidden path outside the build context: {source}")

            matches.extend((path, os.path.relpath(path, root).replace(os.sep, "/")) for path in found)
        return matches

    def _handle_copy(self, stage: _Stage, instruction: Instruction, state: _BuildState) -> None:
        """Handle COPY and ADD instructions."""
        keyword = instruction.keyword
        variables = self._variables(stage)
        args, exec_form = parse_command(instruction.args)
        tokens = args if exec_form else instruction.args.split()
        tokens = [expand_variables(token, variables) for token in tokens]

        if len(tokens) < 2:
            raise BuildError(f"line {instruction.lineno}: {keyword} requires at least one source and a destination")

        *sources, dest = tokens
        if keyword == "ADD" and any(re.match(r"^[a-z]+://", s) for s in sources):
            raise BuildError(f"line {instruction.lineno}: remote ADD sources are not supported")

        source_from = instruction.flags.get("from")
        if source_from:
            root = self._source_root(source_from, state)
            ignore: Optional[IgnoreMatcher] = None
        else:
            root = state.context
            ignore = state.ignore if state.ignore else None

        matches = self._expand_sources(root, sources, ignore)

        hashes = []
        for path, rel in matches:
            scoped = None
            if ignore and os.path.isdir(path) and rel != ".":
                scoped = lambda sub, rel=rel: ignore(f"{rel}/{sub}")
            elif ignore and os.path.isdir(path):
                scoped = ignore
            hashes.append(f"{rel}={hash_path(path, scoped)}")

        if not dest.startswith("/"):
            dest = os.path.join(stage.config.workdir or "/", dest)
        dest_is_dir = os.path.basename(tokens[-1]) in ("", ".") or len(matches) > 1

        digest = LayerStore.key(
            stage.chain, f"{keyword} {dest} dir={dest_is_dir}", hashes
        )

        if not self._use_cache(digest, state):
            staging = self.layers.prepare(stage.layer)
            rootfs = os.path.join(staging, "rootfs")
            try:
                for path, rel in matches:
                    self._copy_into(rootfs, path, rel, dest, dest_is_dir, ignore)
            except (OSError, ValueError, shutil.Error) as e:
                self.layers.discard(staging)
                raise BuildError(f"{keyword} failed: {e}") from e
            self.layers.commit(staging, digest, stage.layer, str(instruction))
            self._log(f" ---> {short_id(digest)}")

        stage.chain = stage.layer = digest
        self._record(stage, keyword, instruction.args, digest)

    def _copy_into(
        self,
        rootfs: str,
        source: str,
        rel: str,
        dest: str,
        dest_is_dir: bool,
        ignore: Optional[IgnoreMatcher],
    ) -> None:
        target = inside_root(rootfs, dest)

        if os.path.isdir(source) and not os.path.islink(source):
            def skip(directory: str, names: List[str]) -> List[str]:
                if not ignore:
                    return []
                base = os.path.relpath(directory, source).replace(os.sep, "/")
                prefix = "" if rel == "." else rel
                result = []
                for name in names:
                    sub = name if base == "." else f"{base}/{name}"
                    if ignore(f"{prefix}/{sub}" if prefix else sub):
                        result.append(name)
                return result

            shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True, ignore=skip)
            return

        if dest_is_dir or os.path.isdir(target):
            target = os.path.join(target, os.path.basename(source))
        os.makedirs(os.path.dirname(target), exist_ok=True)
        if os.path.lexists(target) and not os.path.isdir(target):
            os.remove(target)
        shutil.copy2(source, target, follow_symlinks=False)

    # -------------------------------------------------------------------------
    # Commit
    # -------------------------------------------------------------------------

    def _commit_image(self, stage: _Stage, tag: str) -> ImageConfig:
        """Compute the image ID, save the config and apply the tag."""
        config = stage.config
        config.rootfs_layer = stage.layer

        payload = asdict(config)
        for key in ("id", "tags", "created_at"):
            payload.pop(key)
        for layer in payload["layers"]:
            layer.pop("created_at", None)
        image_id = sha256_digest(json.dumps(payload, sort_keys=True).encode())

        existing = load_image(image_id)
        config.id = image_id
        config.tags = existing.tags if existing else []
        config.created_at = existing.created_at if existing else time.time()
        save_image(config)

        if tag:
            return tag_image(image_id, tag)
        return config
