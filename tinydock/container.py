#!/usr/bin/env python3
"""
Container Management for tinydock.

A container is a host process supervised through a small shim (see
tinydock/shim.py) running inside a private copy of its image's root
filesystem:

    <root>/containers/<id>/
    ├── config.json       # ContainerConfig
    ├── rootfs/           # copy of the image root filesystem
    ├── container.log     # process stdout/stderr
    ├── events.log        # lifecycle events
    └── exitcode          # written by the shim when the process exits

Mounts are symlinks inside rootfs/, networks are logical (see
tinydock/network.py). There is no kernel-level isolation.

Container Lifecycle:
    create → start → running → stop → exited → remove
                        ↑                │
                        └──── restart ───┘
"""

import os
import shutil
import signal
import subprocess
import sys
import time
from dataclasses import asdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from tinydock.cache import LayerStore
from tinydock.compose import (ComposeError, PortMapping, VolumeMount, parse_port,
                              parse_volume_mount, ports_overlap)
from tinydock.health import (HEALTH_STARTING, Healthcheck, HealthState, probe,
                             probe_due, record_probe)
from tinydock.image_builder import (DEFAULT_PATH, ImageConfig, ImageError,
                                    get_image_rootfs, resolve_image)
from tinydock.logger import log_event, print_logs
from tinydock.metadata import (STATUS_EXITED, STATUS_RUNNING, ContainerConfig, MetadataStore, MountConfig,
                               NetworkAttachment, get_container_exit_path,
                               get_container_log_path, parse_restart_policy,
                               save_container_config)
from tinydock.network import (DEFAULT_BRIDGE, NetworkError, NetworkManager,
                              write_hosts_file)
from tinydock.utils import (ensure_directories, generate_container_name,
                            generate_id, get_container_path, inside_root)
from tinydock.volume import VolumeError, VolumeManager, mount_into_rootfs

SHIM_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "shim.py")

# Exit code recorded when the process is gone without an exit file
UNKNOWN_EXIT_CODE = -1

# Seconds to wait for the process group after SIGKILL
KILL_GRACE = 5.0

PortSpec = Union[str, int, PortMapping]
MountSpec = Union[str, VolumeMount]


class ContainerError(Exception):
    """Exception raised for container operations."""

    pass


def signal_number(name: Union[str, int]) -> int:
    """Resolve "SIGTERM", "TERM" or "15" to a signal number."""
    text = str(name).strip().upper()
    if text.isdigit():
        return int(text)
    if not text.startswith("SIG"):
        text = "SIG" + text
    try:
        return int(signal.Signals[text])
    except KeyError:
        raise ContainerError(f"invalid signal: {name}")


def _lookup_id(path: str, name: str) -> Optional[Tuple[int, int]]:
    """Find (id, primary gid) for a name in a passwd/group style file."""
    try:
        with open(path, "r") as f:
            for line in f:
                fields = line.strip().split(":")
                if len(fields) >= 3 and fields[0] == name and fields[2].isdigit():
                    gid = int(fields[3]) if len(fields) > 3 and fields[3].isdigit() else int(fields[2])
                    return int(fields[2]), gid
    except OSError:
        pass
    return None


def resolve_user(rootfs: str, user: str) -> Tuple[int, int]:
    """
    Resolve "user[:group]" against the container's /etc/passwd and /etc/group.

    Returns:
        (uid, gid)
    """
    name, _, group = user.partition(":")

    if name.isdigit():
        uid = int(name)
        entry = None
    else:
        entry = _lookup_id(inside_root(rootfs, "/etc/passwd"), name)
        if entry is None:
            raise ContainerError(f"unable to find user {name}: no matching entries in passwd file")
        uid = entry[0]
    gid = entry[1] if entry else 0

    if group:
        if group.isdigit():
            gid = int(group)
        else:
            group_entry = _lookup_id(inside_root(rootfs, "/etc/group"), group)
            if group_entry is None:
                raise ContainerError(f"unable to find group {group}: no matching entries in group file")
            gid = group_entry[0]

    return uid, gid


def _published_ports(ports: Iterable[str]) -> List[PortMapping]:
    return [mapping for mapping in map(parse_port, ports) if mapping.published is not None]


def _ports_conflict(a: List[PortMapping], b: List[PortMapping]) -> Optional[str]:
    for mapping in a:
        if any(ports_overlap(mapping, other) for other in b):
            return f"{mapping.published}/{mapping.protocol}"
    return None


def _pid_alive(pid: int, marker: str) -> bool:
    """Whether ``pid`` still runs the shim identified by ``marker``."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True

    try:
        with open(f"/proc/{pid}/stat", "r") as f:
            if f.read().rsplit(")", 1)[-1].split()[0] == "Z":
                return False
        with open(f"/proc/{pid}/cmdline", "rb") as f:
            return marker.encode() in f.read()
    except (OSError, IndexError):
        # No procfs: trust the signal check
        return True


class Container:
    """
    Container manager class.

    Example:
        container = Container()
        config = container.create("alpine-local", ["sleep", "60"])
        container.start(config.id)
        container.stop(config.id)
        container.remove(config.id)
    """

    def __init__(self, layers: Optional[LayerStore] = None):
        ensure_directories()
        self.store = MetadataStore()
        self.networks = NetworkManager()
        self.volumes = VolumeManager()
        self.layers = layers or LayerStore()
        self._processes: Dict[str, subprocess.Popen] = {}

    def _get(self, reference: str) -> ContainerConfig:
        config = self.store.get(reference)
        if not config:
            raise ContainerError(f"No such container: {reference}")
        return config

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create(
        self,
        image: str,
        command: Optional[List[str]] = None,
        name: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        workdir: Optional[str] = None,
        user: Optional[str] = None,
        entrypoint: Optional[List[str]] = None,
        mounts: Optional[List[MountSpec]] = None,
        networks: Optional[Union[Mapping[str, List[str]], List[str]]] = None,
        ports: Optional[List[PortSpec]] = None,
        labels: Optional[Dict[str, str]] = None,
        healthcheck: Optional[Healthcheck] = None,
        restart: str = "no",
        hostname: Optional[str] = None,
        stop_signal: Optional[str] = None,
        stop_timeout: float = 10,
    ) -> ContainerConfig:
        """
        Create a new container.

        Args:
            image: Image reference, or a directory to use as root filesystem
            command: Command (replaces the image CMD)
            name: Unique container name (generated when omitted)
            env: Environment variables (merged over the image ENV)
            workdir: Working directory (defaults to the image WORKDIR)
            user: "user[:group]" (defaults to the image USER)
            entrypoint: Replaces the image ENTRYPOINT and drops its CMD
            mounts: VolumeMount objects or "SRC:DST[:ro]" strings
            networks: Network names, or a mapping of name to aliases
            ports: PortMapping objects or "[IP:]HOST:CONTAINER[/proto]" strings
            labels: Container labels
            healthcheck: Overrides the image HEALTHCHECK; a check without a
                test keeps the image test with the given timings
            restart: Restart policy
            hostname: Hostname (defaults to the short container ID)
            stop_signal: Signal sent by stop (defaults to the image STOPSIGNAL)
            stop_timeout: Seconds stop waits before SIGKILL

        Returns:
            ContainerConfig instance
        """
        if name and self.store.get_by_name(name):
            raise ContainerError(f"container name {name!r} is already in use")

        try:
            image_config = resolve_image(image)
        except ImageError as e:
            raise ContainerError(str(e)) from e

        if image_config is None:
            if not os.path.isdir(image):
                raise ContainerError(f"No such image: {image}")
            image_config = ImageConfig()
            source_rootfs: Optional[str] = os.path.abspath(image)
            image_ref = source_rootfs
        else:
            try:
                source_rootfs = get_image_rootfs(image_config, self.layers)
            except ImageError as e:
                raise ContainerError(str(e)) from e
            image_ref = image

        if entrypoint is not None:
            full_command = list(entrypoint) + list(command or [])
        else:
            full_command = list(image_config.entrypoint) + list(command or image_config.cmd)
        if not full_command:
            raise ContainerError("no command specified")

        try:
            parse_restart_policy(restart)
            port_specs = [p if isinstance(p, PortMapping) else parse_port(p) for p in ports or []]
            mount_specs = [
                m if isinstance(m, VolumeMount) else parse_volume_mount(m, os.getcwd())
                for m in mounts or []
            ]
        except (ValueError, ComposeError) as e:
            raise ContainerError(str(e)) from e

        stop_signal = stop_signal or image_config.stop_signal or "SIGTERM"
        signal_number(stop_signal)

        config = ContainerConfig(
            id=generate_id(64),
            name=name or "",
            image=image_ref,
            image_id=image_config.id,
            command=full_command,
            workdir=workdir or image_config.workdir or "/",
            user=user if user is not None else image_config.user,
            hostname=hostname or "",
            ports=[str(p) for p in port_specs],
            labels=dict(labels or {}),
            healthcheck=self._merge_healthcheck(image_config.healthcheck, healthcheck),
            restart_policy=restart,
            stop_signal=stop_signal,
            stop_timeout=stop_timeout,
        )
        if not name:
            while self.store.get_by_name(config.name):
                config.name = generate_container_name()

        config.env = {"PATH": DEFAULT_PATH, "HOSTNAME": config.hostname, "HOME": "/root"}
        config.env.update(image_config.env)
        config.env.update(env or {})
        config.rootfs = os.path.join(get_container_path(config.id), "rootfs")

        if isinstance(networks, Mapping):
            network_aliases = {net: list(aliases) for net, aliases in networks.items()}
        else:
            network_aliases = {net: [] for net in networks or []}

        save_container_config(config)
        try:
            self._setup_rootfs(config, source_rootfs)
            self._setup_mounts(config, mount_specs, image_config.volumes)
            self._setup_networks(config, network_aliases)
            os.makedirs(inside_root(config.rootfs, config.workdir), exist_ok=True)
            save_container_config(config)
        except (OSError, ValueError, shutil.Error, NetworkError, VolumeError, ContainerError) as e:
            self._cleanup(config, remove_volumes=True)
            if isinstance(e, ContainerError):
                raise
            raise ContainerError(f"Failed to create container: {e}") from e

        log_event(config.id, f"create image={config.image} name={config.name}")
        return config

    @staticmethod
    def _merge_healthcheck(
        image_healthcheck: Optional[Dict[str, Any]], override: Optional[Healthcheck]
    ) -> Optional[Dict[str, Any]]:
        base = Healthcheck.from_dict(image_healthcheck)
        if override is not None:
            if override.disable:
                return None
            if not override.test:
                if base is None:
                    return None
                override = Healthcheck(
                    test=base.test,
                    interval=override.interval,
                    timeout=override.timeout,
                    retries=override.retries,
                    start_period=override.start_period,
                )
            base = override
        if base is None or not base.enabled:
            return None
        return asdict(base)

    def _setup_rootfs(self, config: ContainerConfig, source: Optional[str]) -> None:
        if source:
            shutil.copytree(source, config.rootfs, symlinks=True)
        else:
            os.makedirs(config.rootfs)

    def _setup_mounts(
        self, config: ContainerConfig, mounts: List[VolumeMount], image_volumes: List[str]
    ) -> None:
        targets = {os.path.normpath(m.target) for m in mounts}
        mounts = list(mounts) + [
            VolumeMount(type="volume", source="", target=path)
            for path in image_volumes
            if os.path.normpath(path) not in targets
        ]

        for spec in mounts:
            if spec.type == "bind":
                mount = MountConfig(
                    type="bind",
                    source=spec.source,
                    target=spec.target,
                    read_only=spec.read_only,
                    path=os.path.abspath(spec.source),
                )
            else:
                anonymous = not spec.source
                volume = self.volumes.create(
                    spec.source or generate_id(64),
                    exist_ok=not anonymous,
                    anonymous=anonymous,
                )
                mount = MountConfig(
                    type="volume",
                    source=volume.name,
                    target=spec.target,
                    read_only=spec.read_only,
                    path=volume.mountpoint,
                )
            config.mounts.append(mount)
            mount_into_rootfs(config.rootfs, mount)

    def _setup_networks(self, config: ContainerConfig, networks: Dict[str, List[str]]) -> None:
        for name, aliases in networks.items():
            if name == DEFAULT_BRIDGE:
                self.networks.create(DEFAULT_BRIDGE, exist_ok=True)
            ip = self.networks.connect(name, config.id, config.name, aliases)
            config.networks.append(NetworkAttachment(network=name, ip=ip, aliases=list(aliases)))

        save_container_config(config)
        self._refresh_hosts(config)

    def _refresh_hosts(self, config: ContainerConfig) -> None:
        """Rewrite /etc/hosts of the container and its network peers."""
        if os.path.isdir(config.rootfs):
            write_hosts_file(config.rootfs, config.id, config.hostname, self.networks)
        for endpoint in self.networks.peers(config.id):
            if endpoint.container_id == config.id:
                continue
            peer = self.store.get(endpoint.container_id)
            if peer and os.path.isdir(peer.rootfs):
                write_hosts_file(peer.rootfs, peer.id, peer.hostname, self.networks)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _check_ports(self, config: ContainerConfig) -> None:
        mine = _published_ports(config.ports)
        if not mine:
            return
        for other in self.store.list(all_containers=False):
            if other.id == config.id:
                continue
            other = self.refresh(other.id)
            if other.status != STATUS_RUNNING:
                continue
            conflict = _ports_conflict(mine, _published_ports(other.ports))
            if conflict:
                raise ContainerError(
                    f"port {conflict} is already published by container {other.name}"
                )

    def _user_kwargs(self, config: ContainerConfig) -> Dict[str, int]:
        if not config.user:
            return {}
        uid, gid = resolve_user(config.rootfs, config.user)
        if os.geteuid() != 0:
            if uid != os.geteuid():
                print(
                    f"Warning: cannot switch to user {config.user} without root privileges; "
                    f"running {config.name} as the current user",
                    file=sys.stderr,
                )
            return {}
        return {"user": uid, "group": gid}

    def start(self, container_id: str) -> int:
        """
        Start a container.

        Args:
            container_id: Container ID or name

        Returns:
            PID of the container's shim process
        """
        config = self.refresh(container_id)
        if config.status == STATUS_RUNNING:
            raise ContainerError(f"Container already running: {config.name}")

        if not os.path.isdir(config.rootfs):
            raise ContainerError(f"Root filesystem missing for container {config.name}")

        self._check_ports(config)

        cwd = inside_root(config.rootfs, config.workdir)
        os.makedirs(cwd, exist_ok=True)

        exit_file = get_container_exit_path(config.id)
        if os.path.exists(exit_file):
            os.remove(exit_file)

        user_kwargs = self._user_kwargs(config)
        argv = [sys.executable, "-I", SHIM_PATH, exit_file, "--"] + config.command

        with open(get_container_log_path(config.id), "ab") as log:
            try:
                process = subprocess.Popen(
                    argv,
                    cwd=cwd,
                    env=config.env,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                    **user_kwargs,
                )
            except OSError as e:
                raise ContainerError(f"Failed to start container {config.name}: {e}") from e

        self._processes[config.id] = process

        config.status = STATUS_RUNNING
        config.pid = process.pid
        config.started_at = time.time()
        config.finished_at = None
        config.exit_code = None
        config.stopped_by_user = False
        if config.healthcheck:
            config.health = HealthState(status=HEALTH_STARTING)
        save_container_config(config)

        log_event(config.id, f"start pid={process.pid}")
        return process.pid

    def refresh(self, container_id: str) -> ContainerConfig:
        """
        Reconcile a container's recorded state with its process.

        A finished process is reaped and its exit code recorded.
        """
        config = self._get(container_id)
        if config.status != STATUS_RUNNING or not config.pid:
            return config

        exit_file = get_container_exit_path(config.id)
        returncode: Optional[int] = None

        process = self._processes.get(config.id)
        if process is not None and process.pid == config.pid:
            returncode = process.poll()
            if returncode is None:
                return config
            del self._processes[config.id]
        else:
            try:
                pid, status = os.waitpid(config.pid, os.WNOHANG)
                if pid == 0:
                    return config
                returncode = os.waitstatus_to_exitcode(status)
            except ChildProcessError:
                if _pid_alive(config.pid, exit_file):
                    return config

        exit_code = self._read_exit_file(exit_file)
        if exit_code is None:
            if returncode is None:
                exit_code = UNKNOWN_EXIT_CODE
            else:
                exit_code = 128 - returncode if returncode < 0 else returncode

        config.status = STATUS_EXITED
        config.pid = None
        config.exit_code = exit_code
        config.finished_at = time.time()
        save_container_config(config)

        log_event(config.id, f"exit code={exit_code}")
        return config

    @staticmethod
    def _read_exit_file(path: str) -> Optional[int]:
        try:
            with open(path, "r") as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def wait(self, container_id: str, timeout: Optional[float] = None) -> int:
        """
        Wait for a container to exit.

        Returns:
            Exit code

        Raises:
            ContainerError: If the timeout expires first
        """
        deadline = None if timeout is None else time.time() + timeout
        while True:
            config = self.refresh(container_id)
            if config.status != STATUS_RUNNING:
                if config.exit_code is None:
                    raise ContainerError(f"Container {config.name} has not been started")
                return config.exit_code
            if deadline is not None and time.time() >= deadline:
                raise ContainerError(f"Timed out waiting for container {config.name}")
            time.sleep(0.05)

    def _wait_exited(self, container_id: str, timeout: float) -> bool:
        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.refresh(container_id).status != STATUS_RUNNING:
                return True
            time.sleep(0.05)
        return self.refresh(container_id).status != STATUS_RUNNING

    def stop(self, container_id: str, timeout: Optional[float] = None) -> bool:
        """
        Stop a running container.

        The stop signal goes to the shim, which forwards it to the command.
        Whatever is left of the process group after ``timeout`` seconds is
        killed with SIGKILL.

        Args:
            container_id: Container ID or name
            timeout: Seconds to wait before SIGKILL (defaults to the
                container's stop timeout)

        Returns:
            True if the container is no longer running
        """
        config = self.refresh(container_id)
        if config.status != STATUS_RUNNING:
            return True

        config.stopped_by_user = True
        save_container_config(config)

        timeout = config.stop_timeout if timeout is None else timeout
        try:
            os.kill(config.pid, signal_number(config.stop_signal))
        except ProcessLookupError:
            pass
        except PermissionError as e:
            raise ContainerError(f"Failed to stop container: {e}") from e

        log_event(config.id, f"stop signal={config.stop_signal}")

        if not self._wait_exited(config.id, timeout):
            self._killpg(config.pid, signal.SIGKILL)
            log_event(config.id, "kill signal=SIGKILL")
            if not self._wait_exited(config.id, KILL_GRACE):
                raise ContainerError(f"Container {config.name} did not exit after SIGKILL")

        return True

    @staticmethod
    def _killpg(pid: int, sig: int) -> None:
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            raise ContainerError(f"Failed to signal container: {e}") from e

    def kill(self, container_id: str, sig: Union[str, int] = "SIGKILL") -> None:
        """Send a signal to a running container (SIGKILL hits the whole process group)."""
        config = self.refresh(container_id)
        if config.status != STATUS_RUNNING:
            raise ContainerError(f"Container {config.name} is not running")

        number = signal_number(sig)
        config.stopped_by_user = True
        save_container_config(config)

        if number == signal.SIGKILL:
            self._killpg(config.pid, number)
        else:
            try:
                os.kill(config.pid, number)
            except ProcessLookupError:
                pass
        log_event(config.id, f"kill signal={signal.Signals(number).name}")

    def restart(self, container_id: str, timeout: Optional[float] = None) -> int:
        """Stop (if running) and start a container. Returns the new PID."""
        config = self._get(container_id)
        self.stop(config.id, timeout)
        return self.start(config.id)

    def remove(
        self, container_id: str, force: bool = False, remove_volumes: bool = False
    ) -> bool:
        """
        Remove a container.

        Args:
            container_id: Container ID or name
            force: Kill a running container first
            remove_volumes: Also remove the container's anonymous volumes

        Returns:
            True if removed successfully
        """
        config = self.refresh(container_id)

        if config.status == STATUS_RUNNING:
            if not force:
                raise ContainerError(
                    f"Container {config.name} is running. Stop it first or use force"
                )
            self.kill(config.id)
            self._wait_exited(config.id, KILL_GRACE)

        errors = self._cleanup(config, remove_volumes)
        for err in errors:
            print(f"Warning during cleanup: {err}", file=sys.stderr)

        return not os.path.exists(get_container_path(config.id))

    def _cleanup(self, config: ContainerConfig, remove_volumes: bool) -> List[str]:
        """Release networks and volumes and delete the container directory."""
        errors = []

        attached = [n.network for n in config.networks]
        for name in attached:
            try:
                self.networks.disconnect(name, config.id)
            except (OSError, NetworkError) as e:
                errors.append(f"Network {name}: {e}")

        anonymous = []
        if remove_volumes:
            for mount in config.mounts:
                volume = self.volumes.get(mount.source) if mount.type == "volume" else None
                if volume and volume.anonymous:
                    anonymous.append(volume.name)

        self._processes.pop(config.id, None)

        path = get_container_path(config.id)
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
            except OSError as e:
                errors.append(f"Container directory: {e}")

        # Only after the container directory is gone are the volumes unused
        for volume_name in anonymous:
            try:
                self.volumes.remove(volume_name)
            except (OSError, VolumeError) as e:
                errors.append(f"Volume {volume_name}: {e}")

        for name in attached:
            network = self.networks.get(name)
            if not network:
                continue
            for endpoint in network.endpoints.values():
                peer = self.store.get(endpoint.container_id)
                if peer and os.path.isdir(peer.rootfs):
                    try:
                        write_hosts_file(peer.rootfs, peer.id, peer.hostname, self.networks)
                    except OSError as e:
                        errors.append(f"Hosts file of {peer.name}: {e}")

        return errors

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list(
        self, all_containers: bool = False, labels: Optional[Mapping[str, str]] = None
    ) -> List[ContainerConfig]:
        """List containers, refreshing the state of running ones."""
        result = []
        for config in self.store.list(all_containers=True, labels=labels):
            if config.status == STATUS_RUNNING:
                config = self.refresh(config.id)
            if all_containers or config.status == STATUS_RUNNING:
                result.append(config)
        return result

    def inspect(self, container_id: str) -> Optional[ContainerConfig]:
        """Get container details."""
        if not self.store.find(container_id):
            return None
        return self.refresh(container_id)

    def logs(
        self,
        container_id: str,
        follow: bool = False,
        tail: Optional[int] = None,
        timestamps: bool = False,
    ) -> None:
        """Print container logs.

        Args:
            container_id: Container ID or name
            follow: Follow log output until the container exits
            tail: Number of lines from end
            timestamps: Show timestamps
        """
        config = self._get(container_id)

        def stopped() -> bool:
            return self.refresh(config.id).status != STATUS_RUNNING

        print_logs(config.id, follow=follow, tail=tail, timestamps=timestamps, stop=stopped)

    def check_health(self, container_id: str, now: Optional[float] = None) -> HealthState:
        """
        Run the healthcheck probe if one is due.

        Returns:
            The container's (possibly updated) health state
        """
        config = self.refresh(container_id)
        healthcheck = Healthcheck.from_dict(config.healthcheck)
        if config.status != STATUS_RUNNING or not healthcheck or not healthcheck.enabled:
            return config.health
        if not probe_due(config.health, healthcheck, now):
            return config.health

        result = probe(
            healthcheck,
            cwd=inside_root(config.rootfs, config.workdir),
            env=config.env,
        )

        # The probe may take a while; pick up any state change meanwhile
        config = self.refresh(config.id)
        previous = config.health.status
        record_probe(config.health, result, healthcheck, config.started_at)
        save_container_config(config)

        if config.health.status != previous:
            log_event(config.id, f"health_status: {config.health.status}")
        return config.health
