#!/usr/bin/env python3
"""
Multi-service project orchestration for tinydock.

A Project drives the containers, networks and volumes described by one
compose file:

    up:    build/resolve images → create networks and volumes →
           for each dependency batch: wait for dependency conditions,
           then create, recreate or start the service's container
    down:  stop and remove containers (dependents first) →
           remove project networks (and volumes on request)

Every resource created for a project is labelled with the project name so
later commands find it again. Containers also carry a hash of their service
configuration; ``up`` recreates a container whose hash no longer matches.
"""

import hashlib
import json
import sys
import time
from typing import Callable, Dict, List, Optional, Set, TextIO

from tinydock.compose import (ProjectConfig, ServiceConfig, VolumeMount,
                              service_to_dict)
from tinydock.container import Container
from tinydock.health import HEALTH_HEALTHY, HEALTH_UNHEALTHY
from tinydock.image_builder import ImageBuilder, resolve_image
from tinydock.logger import LogFollower, follow_logs, log_event
from tinydock.metadata import (STATUS_EXITED, STATUS_RUNNING, ContainerConfig,
                               parse_restart_policy, save_container_config)
from tinydock.network import NetworkError
from tinydock.volume import VolumeError

LABEL_PROJECT = "tinydock.project"
LABEL_SERVICE = "tinydock.service"
LABEL_CONFIG_HASH = "tinydock.config-hash"

# Restart backoff: 0.1s doubling per restart, capped
RESTART_BACKOFF_BASE = 0.1
RESTART_BACKOFF_MAX = 10.0


class OrchestratorError(Exception):
    """Exception raised for project operations."""

    pass


class Project:
    """
    Compose project manager.

    Example:
        project = Project(load_project("compose.yaml"))
        project.up()
        project.supervise()
        project.down()
    """

    def __init__(
        self,
        config: ProjectConfig,
        container: Optional[Container] = None,
        builder: Optional[ImageBuilder] = None,
        output: Optional[TextIO] = None,
    ):
        self.config = config
        self.output = output or sys.stdout
        self.container = container or Container()
        self.builder = builder or ImageBuilder(layers=self.container.layers, output=self.output)
        self.graph = config.graph()

    @property
    def name(self) -> str:
        return self.config.name

    def _log(self, message: str) -> None:
        print(message, file=self.output, flush=True)

    # -------------------------------------------------------------------------
    # Naming
    # -------------------------------------------------------------------------

    def container_name(self, service: ServiceConfig) -> str:
        return service.container_name or f"{self.name}-{service.name}-1"

    def image_name(self, service: ServiceConfig) -> str:
        return service.image or f"{self.name}-{service.name}:latest"

    def network_name(self, key: str) -> str:
        return self.config.networks[key].name

    def volume_name(self, key: str) -> str:
        return self.config.volumes[key].name

    def _project_labels(self) -> Dict[str, str]:
        return {LABEL_PROJECT: self.name}

    def service_containers(
        self, service: Optional[str] = None, all_containers: bool = True
    ) -> List[ContainerConfig]:
        """Containers of the project, or of one of its services."""
        labels = self._project_labels()
        if service:
            labels[LABEL_SERVICE] = service
        return self.container.list(all_containers=all_containers, labels=labels)

    def _service_container(self, service: str) -> Optional[ContainerConfig]:
        containers = self.service_containers(service)
        return containers[0] if containers else None

    def _select(self, services: Optional[List[str]] = None, with_dependencies: bool = True) -> List[str]:
        """Selected services in start order; required dependencies are pulled in."""
        if not services:
            return self.graph.order()

        for name in services:
            if name not in self.config.services:
                raise OrchestratorError(f"no such service: {name}")

        selected: Set[str] = set()
        pending = list(services)
        while pending:
            name = pending.pop()
            if name in selected:
                continue
            selected.add(name)
            if with_dependencies:
                pending.extend(
                    dep.service for dep in self.config.services[name].depends_on if dep.required
                )
        return [name for name in self.graph.order() if name in selected]

    # -------------------------------------------------------------------------
    # Build and resources
    # -------------------------------------------------------------------------

    def build(self, services: Optional[List[str]] = None, no_cache: bool = False) -> Dict[str, str]:
        """
        Build the images of services with a build section.

        Returns:
            Mapping of service name to image ID
        """
        built = {}
        for name in self._select(services, with_dependencies=False):
            service = self.config.services[name]
            if not service.build:
                continue
            self._log(f"Building {name}")
            built[name] = self.builder.build(
                service.build.context,
                dockerfile=service.build.dockerfile,
                tag=self.image_name(service),
                build_args=service.build.args,
                no_cache=no_cache,
                target=service.build.target,
            )
        return built

    def _ensure_image(self, service: ServiceConfig, build: bool, no_cache: bool) -> str:
        tag = self.image_name(service)
        image = resolve_image(tag)
        if service.build and (build or image is None):
            self.build([service.name], no_cache=no_cache)
            image = resolve_image(tag)
        if image is None:
            raise OrchestratorError(
                f"image {tag} for service {service.name} not found; build it first "
                f"(pulling from registries is not supported)"
            )
        return image.id

    def _ensure_networks(self, services: List[str]) -> None:
        keys = sorted({key for name in services for key in self.config.services[name].networks})
        for key in keys:
            spec = self.config.networks[key]
            if spec.external:
                if not self.container.networks.exists(spec.name):
                    raise OrchestratorError(f"external network {spec.name} not found")
                continue
            if self.container.networks.exists(spec.name):
                continue
            labels = dict(spec.labels)
            labels.update(self._project_labels())
            self.container.networks.create(
                spec.name, driver=spec.driver, labels=labels, internal=spec.internal
            )
            self._log(f"Network {spec.name} Created")

    def _ensure_volumes(self, services: List[str]) -> None:
        keys = sorted(
            {
                mount.source
                for name in services
                for mount in self.config.services[name].volumes
                if mount.type == "volume" and mount.source
            }
        )
        for key in keys:
            spec = self.config.volumes[key]
            if spec.external:
                if not self.container.volumes.get(spec.name):
                    raise OrchestratorError(f"external volume {spec.name} not found")
                continue
            if self.container.volumes.get(spec.name):
                continue
            labels = dict(spec.labels)
            labels.update(self._project_labels())
            self.container.volumes.create(spec.name, driver=spec.driver, labels=labels)
            self._log(f"Volume {spec.name} Created")

    def config_hash(self, service: ServiceConfig, image_id: str) -> str:
        """Digest of everything that requires recreating the container when changed."""
        data = {
            "service": service_to_dict(service),
            "image_id": image_id,
            "networks": sorted(self.network_name(key) for key in service.networks),
        }
        return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()

    # -------------------------------------------------------------------------
    # Up / down
    # -------------------------------------------------------------------------

    def _create(self, service: ServiceConfig, image_id: str) -> ContainerConfig:
        mounts = []
        for mount in service.volumes:
            if mount.type == "volume" and mount.source:
                mount = VolumeMount(
                    type="volume",
                    source=self.volume_name(mount.source),
                    target=mount.target,
                    read_only=mount.read_only,
                )
            mounts.append(mount)

        networks = {
            self.network_name(key): list(dict.fromkeys([service.name] + aliases))
            for key, aliases in service.networks.items()
        }

        labels = dict(service.labels)
        labels.update(self._project_labels())
        labels[LABEL_SERVICE] = service.name
        labels[LABEL_CONFIG_HASH] = self.config_hash(service, image_id)

        return self.container.create(
            self.image_name(service),
            command=service.command,
            name=self.container_name(service),
            env=service.environment,
            workdir=service.working_dir or None,
            user=service.user or None,
            entrypoint=service.entrypoint,
            mounts=mounts,
            networks=networks,
            ports=service.ports,
            labels=labels,
            healthcheck=service.healthcheck,
            restart=service.restart,
            hostname=service.hostname or None,
            stop_signal=service.stop_signal or None,
            stop_timeout=service.stop_grace_period,
        )

    def _converge(self, service: ServiceConfig, image_id: str, force_recreate: bool) -> ContainerConfig:
        """Make the service's container match its configuration and run it."""
        desired = self.config_hash(service, image_id)
        existing = self._service_container(service.name)

        if existing and (force_recreate or existing.labels.get(LABEL_CONFIG_HASH) != desired):
            self._log(f"Container {existing.name} Recreate")
            self.container.stop(existing.id)
            self.container.remove(existing.id, force=True)
            existing = None

        if existing is None:
            existing = self._create(service, image_id)
            self._log(f"Container {existing.name} Created")

        if existing.status == STATUS_RUNNING:
            self._log(f"Container {existing.name} Running")
            return existing

        self.container.start(existing.id)
        self._log(f"Container {existing.name} Started")
        return self.container.refresh(existing.id)

    def up(
        self,
        services: Optional[List[str]] = None,
        build: bool = False,
        no_cache: bool = False,
        force_recreate: bool = False,
        timeout: float = 60,
    ) -> List[ContainerConfig]:
        """
        Create and start the selected services and their dependencies.

        Args:
            services: Services to bring up (default: all)
            build: Rebuild images of services with a build section
            no_cache: Build without the layer cache
            force_recreate: Recreate containers even if unchanged
            timeout: Seconds to wait for each dependency condition

        Returns:
            The service containers, in start order
        """
        names = self._select(services)
        images = {
            name: self._ensure_image(self.config.services[name], build, no_cache)
            for name in names
        }
        self._ensure_networks(names)
        self._ensure_volumes(names)

        started = []
        for batch in self.graph.batches():
            for name in batch:
                if name not in names:
                    continue
                service = self.config.services[name]
                for dep in service.depends_on:
                    self._wait_dependency(name, dep.service, dep.condition, dep.required, names, timeout)
                started.append(self._converge(service, images[name], force_recreate))
        return started

    def _wait_dependency(
        self,
        service: str,
        dependency: str,
        condition: str,
        required: bool,
        selected: List[str],
        timeout: float,
    ) -> None:
        if not required and dependency not in selected and self._service_container(dependency) is None:
            print(
                f"Warning: optional dependency {dependency} of {service} is not running; skipping",
                file=sys.stderr,
            )
            return
        try:
            self.wait_for_condition(dependency, condition, timeout)
        except OrchestratorError as e:
            if required:
                raise
            print(f"Warning: optional dependency of {service}: {e}", file=sys.stderr)

    def wait_for_condition(
        self, service: str, condition: str, timeout: float = 60, poll_interval: float = 0.1
    ) -> None:
        """
        Block until a service satisfies a dependency condition.

        Raises:
            OrchestratorError: If the condition fails or the timeout expires
        """
        deadline = time.time() + timeout
        while True:
            config = self._service_container(service)
            if config is None:
                raise OrchestratorError(f"dependency {service} has no container")

            if condition == "service_started":
                if config.status == STATUS_RUNNING or config.started_at:
                    return

            elif condition == "service_healthy":
                if not config.healthcheck:
                    raise OrchestratorError(f"dependency {service} has no healthcheck configured")
                health = self.container.check_health(config.id)
                if health.status == HEALTH_HEALTHY:
                    return
                if health.status == HEALTH_UNHEALTHY:
                    raise OrchestratorError(f"dependency {service} is unhealthy")
                if self.container.refresh(config.id).status == STATUS_EXITED:
                    raise OrchestratorError(f"dependency {service} exited before becoming healthy")

            elif condition == "service_completed_successfully":
                if config.status == STATUS_EXITED:
                    if config.exit_code == 0:
                        return
                    raise OrchestratorError(
                        f"dependency {service} did not complete successfully: exit {config.exit_code}"
                    )

            else:
                raise OrchestratorError(f"unknown dependency condition: {condition}")

            if time.time() >= deadline:
                raise OrchestratorError(
                    f"timed out after {timeout:g}s waiting for {service} ({condition})"
                )
            time.sleep(poll_interval)

    def _stop_order(self, containers: List[ContainerConfig]) -> List[ContainerConfig]:
        """Dependents first; containers of unknown services first of all."""
        order = {name: i for i, name in enumerate(self.graph.reverse_order())}
        return sorted(containers, key=lambda c: order.get(c.labels.get(LABEL_SERVICE, ""), -1))

    def down(self, remove_volumes: bool = False, timeout: Optional[float] = None) -> None:
        """Stop and remove the project's containers, networks and (optionally) volumes."""
        for config in self._stop_order(self.service_containers()):
            if config.status == STATUS_RUNNING:
                self._log(f"Container {config.name} Stopping")
                self.container.stop(config.id, timeout)
            self.container.remove(config.id, force=True, remove_volumes=remove_volumes)
            self._log(f"Container {config.name} Removed")

        for network in self.container.networks.list():
            if network.labels.get(LABEL_PROJECT) != self.name:
                continue
            try:
                self.container.networks.remove(network.name)
                self._log(f"Network {network.name} Removed")
            except NetworkError as e:
                print(f"Warning: {e}", file=sys.stderr)

        if not remove_volumes:
            return
        for volume in self.container.volumes.list():
            if volume.labels.get(LABEL_PROJECT) != self.name:
                continue
            try:
                self.container.volumes.remove(volume.name)
                self._log(f"Volume {volume.name} Removed")
            except VolumeError as e:
                print(f"Warning: {e}", file=sys.stderr)

    # -------------------------------------------------------------------------
    # Lifecycle of existing containers
    # -------------------------------------------------------------------------

    def _existing(self, services: Optional[List[str]], with_dependencies: bool) -> List[ContainerConfig]:
        containers = []
        for name in self._select(services, with_dependencies):
            found = self.service_containers(name)
            if not found:
                raise OrchestratorError(f"service {name} has no container; run up first")
            containers.extend(found)
        return containers

    def start(self, services: Optional[List[str]] = None) -> None:
        for config in self._existing(services, with_dependencies=True):
            if config.status != STATUS_RUNNING:
                self.container.start(config.id)
                self._log(f"Container {config.name} Started")

    def stop(self, services: Optional[List[str]] = None, timeout: Optional[float] = None) -> None:
        for config in self._stop_order(self._existing(services, with_dependencies=False)):
            if config.status == STATUS_RUNNING:
                self.container.stop(config.id, timeout)
                self._log(f"Container {config.name} Stopped")

    def restart(self, services: Optional[List[str]] = None, timeout: Optional[float] = None) -> None:
        self.stop(services, timeout)
        for config in self._existing(services, with_dependencies=False):
            self.container.start(config.id)
            self._log(f"Container {config.name} Started")

    def ps(self, all_containers: bool = True) -> List[ContainerConfig]:
        """Project containers in start order."""
        order = {name: i for i, name in enumerate(self.graph.order())}
        containers = self.service_containers(all_containers=all_containers)
        return sorted(containers, key=lambda c: (order.get(c.labels.get(LABEL_SERVICE, ""), -1), c.name))

    def _log_sources(self, services: Optional[List[str]] = None):
        selected = set(self._select(services, with_dependencies=False))
        return [
            (c.labels.get(LABEL_SERVICE, c.name), c.id)
            for c in self.ps()
            if c.labels.get(LABEL_SERVICE) in selected
        ]

    def logs(
        self,
        services: Optional[List[str]] = None,
        follow: bool = False,
        tail: Optional[int] = None,
        output: Optional[TextIO] = None,
    ) -> None:
        """Print service output prefixed with the service name."""
        sources = self._log_sources(services)

        def all_exited() -> bool:
            return all(self.container.refresh(cid).status != STATUS_RUNNING for _, cid in sources)

        follow_logs(sources, follow=follow, tail=tail, stop=all_exited, output=output or self.output)

    def attach(self, services: Optional[List[str]] = None) -> LogFollower:
        """Log follower over the selected services' containers."""
        return LogFollower(self._log_sources(services), output=self.output)

    # -------------------------------------------------------------------------
    # Supervision
    # -------------------------------------------------------------------------

    def _should_restart(self, config: ContainerConfig) -> bool:
        if config.stopped_by_user:
            return False
        policy, max_retries = parse_restart_policy(config.restart_policy)
        if policy in ("always", "unless-stopped"):
            return True
        if policy == "on-failure":
            return config.exit_code != 0 and (max_retries == 0 or config.restart_count < max_retries)
        return False

    def _restart_due(self, config: ContainerConfig, now: float) -> bool:
        delay = min(RESTART_BACKOFF_BASE * (2 ** config.restart_count), RESTART_BACKOFF_MAX)
        return now - (config.finished_at or 0) >= delay

    def supervise_once(self, now: Optional[float] = None) -> bool:
        """
        One supervision pass: probe health and apply restart policies.

        Returns:
            True while any container is running or waiting to be restarted
        """
        active = False
        for config in self.service_containers():
            config = self.container.refresh(config.id)

            if config.status == STATUS_RUNNING:
                active = True
                if config.healthcheck:
                    self.container.check_health(config.id, now)
                continue

            if config.status != STATUS_EXITED or not self._should_restart(config):
                continue

            active = True
            if not self._restart_due(config, time.time() if now is None else now):
                continue

            config.restart_count += 1
            save_container_config(config)
            log_event(config.id, f"restart count={config.restart_count} exit_code={config.exit_code}")
            self._log(f"Container {config.name} Restarting (exit code {config.exit_code})")
            self.container.start(config.id)

        return active

    def supervise(
        self,
        poll_interval: float = 0.5,
        on_tick: Optional[Callable[[], None]] = None,
    ) -> None:
        """Supervise the project until every container has exited for good."""
        while True:
            active = self.supervise_once()
            if on_tick:
                on_tick()
            if not active:
                return
            time.sleep(poll_interval)
