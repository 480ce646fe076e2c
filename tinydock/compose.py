#!/usr/bin/env python3
"""
Compose file loader for tinydock.

Reads a Compose-style YAML project description, interpolates ${VAR}
references, and normalises every service into a ServiceConfig.

Example compose.yaml:

    services:
      db:
        image: postgres-local
        healthcheck:
          test: ["CMD", "pg_isready"]
          interval: 2s
      web:
        build: ./web
        ports: ["8080:80"]
        depends_on:
          db:
            condition: service_healthy
        volumes:
          - data:/var/lib/web
    volumes:
      data: {}
"""

import os
import re
import shlex
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from dotenv import dotenv_values

from tinydock.health import Healthcheck, normalize_test, parse_duration
from tinydock.metadata import parse_restart_policy
from tinydock.resolver import DependencyError, DependencyGraph
from tinydock.utils import expand_variables

COMPOSE_FILENAMES = (
    "compose.yaml",
    "compose.yml",
    "docker-compose.yaml",
    "docker-compose.yml",
)

DEPENDENCY_CONDITIONS = (
    "service_started",
    "service_healthy",
    "service_completed_successfully",
)

KNOWN_SERVICE_KEYS = {
    "build",
    "command",
    "container_name",
    "depends_on",
    "entrypoint",
    "env_file",
    "environment",
    "healthcheck",
    "hostname",
    "image",
    "labels",
    "networks",
    "ports",
    "restart",
    "stop_grace_period",
    "stop_signal",
    "user",
    "volumes",
    "working_dir",
}

DEFAULT_NETWORK = "default"

_INT_TAG = "tag:yaml.org,2002:int"
_FLOAT_TAG = "tag:yaml.org,2002:float"


class ComposeError(Exception):
    """Exception raised for invalid compose files."""

    pass


@dataclass
class BuildSpec:
    context: str
    dockerfile: str = "Dockerfile"
    args: Dict[str, str] = field(default_factory=dict)
    target: Optional[str] = None


@dataclass
class PortMapping:
    """A published port. ``published`` None means not bound on the host."""

    target: int
    published: Optional[int] = None
    host_ip: str = ""
    protocol: str = "tcp"

    def __str__(self) -> str:
        text = str(self.target)
        if self.published is not None:
            text = f"{self.published}:{text}"
            if self.host_ip:
                text = f"{self.host_ip}:{text}"
        if self.protocol != "tcp":
            text += f"/{self.protocol}"
        return text


@dataclass
class VolumeMount:
    """A service mount; an empty ``source`` on a volume mount is anonymous."""

    type: str
    source: str
    target: str
    read_only: bool = False

    def __str__(self) -> str:
        text = f"{self.source}:{self.target}" if self.source else self.target
        return text + (":ro" if self.read_only else "")


@dataclass
class Dependency:
    service: str
    condition: str = "service_started"
    required: bool = True


@dataclass
class ServiceConfig:
    """A normalised service definition."""

    name: str
    image: str = ""
    build: Optional[BuildSpec] = None
    command: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    environment: Dict[str, str] = field(default_factory=dict)
    ports: List[PortMapping] = field(default_factory=list)
    volumes: List[VolumeMount] = field(default_factory=list)
    networks: Dict[str, List[str]] = field(default_factory=dict)
    depends_on: List[Dependency] = field(default_factory=list)
    healthcheck: Optional[Healthcheck] = None
    restart: str = "no"
    container_name: str = ""
    working_dir: str = ""
    user: str = ""
    hostname: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    stop_signal: str = ""
    stop_grace_period: float = 10.0


@dataclass
class NetworkSpec:
    """Top-level network entry. ``name`` is the name created on the host."""

    key: str
    name: str
    external: bool = False
    driver: str = "bridge"
    internal: bool = False
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class VolumeSpec:
    """Top-level volume entry. ``name`` is the name created on the host."""

    key: str
    name: str
    external: bool = False
    driver: str = "local"
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class ProjectConfig:
    name: str
    working_dir: str
    services: Dict[str, ServiceConfig] = field(default_factory=dict)
    networks: Dict[str, NetworkSpec] = field(default_factory=dict)
    volumes: Dict[str, VolumeSpec] = field(default_factory=dict)
    compose_file: str = ""

    def graph(self) -> DependencyGraph:
        return DependencyGraph(
            {name: [dep.service for dep in svc.depends_on] for name, svc in self.services.items()}
        )


# =============================================================================
# Loading
# =============================================================================


class ComposeLoader(yaml.SafeLoader):
    """
    SafeLoader without the YAML 1.1 base-60 numbers.

    Unquoted ``22:22`` or ``1:30`` would otherwise load as the integers
    1342 and 90, which breaks the short port syntax.
    """


ComposeLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag not in (_INT_TAG, _FLOAT_TAG)]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
ComposeLoader.add_implicit_resolver(
    _INT_TAG,
    re.compile(
        r"""^(?:[-+]?0b[0-1_]+
            |[-+]?0[0-7_]+
            |[-+]?(?:0|[1-9][0-9_]*)
            |[-+]?0x[0-9a-fA-F_]+)$""",
        re.X,
    ),
    list("-+0123456789"),
)
ComposeLoader.add_implicit_resolver(
    _FLOAT_TAG,
    re.compile(
        r"""^(?:[-+]?(?:[0-9][0-9_]*)\.[0-9_]*(?:[eE][-+][0-9]+)?
            |\.[0-9_]+(?:[eE][-+][0-9]+)?
            |[-+]?\.(?:inf|Inf|INF)
            |\.(?:nan|NaN|NAN))$""",
        re.X,
    ),
    list("-+0123456789."),
)


def find_compose_file(directory: str = ".") -> Optional[str]:
    """Return the first known compose file name found in ``directory``."""
    for name in COMPOSE_FILENAMES:
        path = os.path.join(directory, name)
        if os.path.isfile(path):
            return os.path.abspath(path)
    return None


def load_env_file(path: str, required: bool = True) -> Dict[str, str]:
    """
    Read a dotenv file.

    A key listed without a value maps to an empty string.
    """
    if not os.path.isfile(path):
        if required:
            raise ComposeError(f"env file not found: {path}")
        return {}

    return {key: value or "" for key, value in dotenv_values(path).items()}


def interpolate(data: Any, variables: Mapping[str, str]) -> Any:
    """Expand ${VAR} references in every string value (not in keys)."""
    if isinstance(data, str):
        try:
            return expand_variables(data, variables)
        except ValueError as e:
            raise ComposeError(f"interpolation failed for {data!r}: {e}") from e
    if isinstance(data, dict):
        return {key: interpolate(value, variables) for key, value in data.items()}
    if isinstance(data, list):
        return [interpolate(item, variables) for item in data]
    return data


def normalize_project_name(name: str) -> str:
    normalized = re.sub(r"[^a-z0-9_-]", "", name.lower())
    if not normalized:
        raise ComposeError(f"invalid project name: {name!r}")
    return normalized


def load_project(
    path: Optional[str] = None,
    project_name: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ProjectConfig:
    """
    Load and validate a compose project.

    Args:
        path: Compose file or directory; defaults to COMPOSE_FILE, then the
            known file names in the current directory
        project_name: Overrides COMPOSE_PROJECT_NAME and the file's ``name``
        environ: Interpolation environment (defaults to os.environ)

    Returns:
        ProjectConfig
    """
    environ = os.environ if environ is None else environ

    if path is None:
        path = environ.get("COMPOSE_FILE") or None
    if path is None or os.path.isdir(path):
        directory = path or os.getcwd()
        path = find_compose_file(directory)
        if path is None:
            raise ComposeError(
                f"no compose file found in {os.path.abspath(directory)} "
                f"(looked for {', '.join(COMPOSE_FILENAMES)})"
            )

    path = os.path.abspath(path)
    try:
        with open(path, "r") as f:
            data = yaml.load(f, Loader=ComposeLoader)
    except OSError as e:
        raise ComposeError(f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ComposeError(f"invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ComposeError(f"{path}: top level must be a mapping")

    working_dir = os.path.dirname(path)
    variables = load_env_file(os.path.join(working_dir, ".env"), required=False)
    variables.update(environ)
    data = interpolate(data, variables)

    name = (
        project_name
        or environ.get("COMPOSE_PROJECT_NAME")
        or data.get("name")
        or os.path.basename(working_dir)
    )

    project = parse_project(data, working_dir, normalize_project_name(str(name)), variables)
    project.compose_file = path
    return project


# =============================================================================
# Parsing
# =============================================================================


def _string_list(value: Any, what: str) -> List[str]:
    if isinstance(value, str):
        try:
            return shlex.split(value)
        except ValueError as e:
            raise ComposeError(f"invalid {what}: {value!r}") from e
    if isinstance(value, list):
        return [str(item) for item in value]
    raise ComposeError(f"{what} must be a string or a list")


def _mapping(value: Any, what: str) -> Dict[str, str]:
    """Parse a mapping or a KEY=VALUE list into a dict of strings."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): "" if v is None else _scalar(v) for k, v in value.items()}
    if isinstance(value, list):
        result = {}
        for item in value:
            key, _, val = str(item).partition("=")
            result[key] = val
        return result
    raise ComposeError(f"{what} must be a mapping or a list")


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _resolve_path(working_dir: str, path: str) -> str:
    return os.path.normpath(os.path.join(working_dir, os.path.expanduser(path)))


def _parse_port_number(value: Any, spec: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ComposeError(f"invalid port: {spec!r}")
    if not 1 <= number <= 65535:
        raise ComposeError(f"port out of range: {spec!r}")
    return number


def parse_port(spec: Any) -> PortMapping:
    """Parse "C", "H:C", "IP:H:C" (with optional /proto) or the long syntax."""
    if isinstance(spec, dict):
        if "target" not in spec:
            raise ComposeError(f"port mapping requires a target: {spec!r}")
        published = spec.get("published")
        return PortMapping(
            target=_parse_port_number(spec["target"], spec),
            published=_parse_port_number(published, spec) if published not in (None, "") else None,
            host_ip=str(spec.get("host_ip", "")),
            protocol=str(spec.get("protocol", "tcp")).lower(),
        )

    if isinstance(spec, bool) or not isinstance(spec, (int, str)):
        raise ComposeError(f"invalid port: {spec!r}")

    text, _, protocol = str(spec).partition("/")
    protocol = protocol.lower() or "tcp"
    if protocol not in ("tcp", "udp"):
        raise ComposeError(f"invalid port protocol: {spec!r}")

    parts = text.split(":")
    if len(parts) == 1:
        host_ip, published, target = "", "", parts[0]
    elif len(parts) == 2:
        host_ip, (published, target) = "", parts
    elif len(parts) == 3:
        host_ip, published, target = parts
    else:
        raise ComposeError(f"invalid port: {spec!r}")

    return PortMapping(
        target=_parse_port_number(target, spec),
        published=_parse_port_number(published, spec) if published else None,
        host_ip=host_ip,
        protocol=protocol,
    )


def ports_overlap(a: PortMapping, b: PortMapping) -> bool:
    """Whether two mappings publish the same host port; 0.0.0.0 overlaps every address."""
    if a.published is None or a.published != b.published or a.protocol != b.protocol:
        return False
    ip_a, ip_b = a.host_ip or "0.0.0.0", b.host_ip or "0.0.0.0"
    return ip_a == ip_b or "0.0.0.0" in (ip_a, ip_b)


def parse_volume_mount(spec: Any, working_dir: str) -> VolumeMount:
    """Parse "SRC:DST[:ro|rw]", "DST" or the long syntax."""
    if isinstance(spec, dict):
        mount_type = spec.get("type", "volume")
        source = str(spec.get("source", "") or "")
        target = str(spec.get("target", "") or "")
        read_only = bool(spec.get("read_only", False))
        if mount_type not in ("volume", "bind"):
            raise ComposeError(f"unsupported mount type: {mount_type}")
        if mount_type == "bind":
            if not source:
                raise ComposeError(f"bind mount requires a source: {spec!r}")
            source = _resolve_path(working_dir, source)
    elif isinstance(spec, str):
        parts = spec.split(":")
        if len(parts) == 1:
            source, target, mode = "", parts[0], ""
        elif len(parts) == 2:
            (source, target), mode = parts, ""
        elif len(parts) == 3:
            source, target, mode = parts
        else:
            raise ComposeError(f"invalid volume: {spec!r}")

        options = [opt for opt in mode.split(",") if opt]
        for option in options:
            if option not in ("ro", "rw"):
                raise ComposeError(f"invalid volume mode {option!r} in {spec!r}")
        read_only = "ro" in options

        if source.startswith((".", "/", "~")):
            mount_type = "bind"
            source = _resolve_path(working_dir, source)
        else:
            mount_type = "volume"
    else:
        raise ComposeError(f"invalid volume: {spec!r}")

    if not target.startswith("/"):
        raise ComposeError(f"volume target must be an absolute path: {spec!r}")
    return VolumeMount(type=mount_type, source=source, target=os.path.normpath(target), read_only=read_only)


def parse_depends_on(value: Any) -> List[Dependency]:
    if value is None:
        return []
    if isinstance(value, list):
        return [Dependency(service=str(name)) for name in value]
    if not isinstance(value, dict):
        raise ComposeError("depends_on must be a list or a mapping")

    dependencies = []
    for name, options in value.items():
        options = options or {}
        if not isinstance(options, dict):
            raise ComposeError(f"depends_on entry for {name} must be a mapping, got {options!r}")
        condition = options.get("condition", "service_started")
        if condition not in DEPENDENCY_CONDITIONS:
            raise ComposeError(
                f"invalid condition {condition!r} for dependency {name}; "
                f"expected one of {', '.join(DEPENDENCY_CONDITIONS)}"
            )
        dependencies.append(
            Dependency(service=str(name), condition=condition, required=bool(options.get("required", True)))
        )
    return dependencies


def parse_service_healthcheck(value: Any) -> Optional[Healthcheck]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ComposeError("healthcheck must be a mapping")

    try:
        healthcheck = Healthcheck(
            test=normalize_test(value.get("test")),
            disable=bool(value.get("disable", False)),
        )
        if "interval" in value:
            healthcheck.interval = parse_duration(value["interval"])
        if "timeout" in value:
            healthcheck.timeout = parse_duration(value["timeout"])
        if "start_period" in value:
            healthcheck.start_period = parse_duration(value["start_period"])
        if "retries" in value:
            healthcheck.retries = int(value["retries"])
    except ValueError as e:
        raise ComposeError(f"invalid healthcheck: {e}") from e
    return healthcheck


def parse_service(
    name: str, data: Any, working_dir: str, variables: Mapping[str, str]
) -> ServiceConfig:
    """Normalise one service definition."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ComposeError(f"service {name} must be a mapping")

    for key in sorted(set(data) - KNOWN_SERVICE_KEYS):
        print(f"Warning: service {name}: unsupported key {key!r} ignored", file=sys.stderr)

    service = ServiceConfig(name=name, image=str(data.get("image") or ""))

    build = data.get("build")
    if isinstance(build, str):
        service.build = BuildSpec(context=_resolve_path(working_dir, build))
    elif isinstance(build, dict):
        service.build = BuildSpec(
            context=_resolve_path(working_dir, str(build.get("context", "."))),
            dockerfile=str(build.get("dockerfile", "Dockerfile")),
            args=_mapping(build.get("args"), "build.args"),
            target=build.get("target"),
        )
    elif build is not None:
        raise ComposeError(f"service {name}: build must be a string or a mapping")

    if not service.image and not service.build:
        raise ComposeError(f"service {name} has neither an image nor a build section")

    if data.get("command") is not None:
        service.command = _string_list(data["command"], f"service {name}: command")
    if data.get("entrypoint") is not None:
        service.entrypoint = _string_list(data["entrypoint"], f"service {name}: entrypoint")

    env_files = data.get("env_file") or []
    if not isinstance(env_files, list):
        env_files = [env_files]
    for entry in env_files:
        if isinstance(entry, dict):
            path, required = str(entry.get("path", "")), bool(entry.get("required", True))
        else:
            path, required = str(entry), True
        service.environment.update(load_env_file(_resolve_path(working_dir, path), required))

    environment = data.get("environment")
    if isinstance(environment, list):
        for item in environment:
            key, sep, value = str(item).partition("=")
            if sep:
                service.environment[key] = value
            elif key in variables:
                service.environment[key] = variables[key]
    elif isinstance(environment, dict):
        for key, value in environment.items():
            if value is None:
                if key in variables:
                    service.environment[str(key)] = variables[key]
            else:
                service.environment[str(key)] = _scalar(value)
    elif environment is not None:
        raise ComposeError(f"service {name}: environment must be a mapping or a list")

    service.ports = [parse_port(port) for port in data.get("ports") or []]
    service.volumes = [parse_volume_mount(vol, working_dir) for vol in data.get("volumes") or []]

    networks = data.get("networks")
    if isinstance(networks, list):
        service.networks = {str(net): [] for net in networks}
    elif isinstance(networks, dict):
        service.networks = {
            str(net): [str(a) for a in (options or {}).get("aliases", [])]
            for net, options in networks.items()
        }
    elif networks is not None:
        raise ComposeError(f"service {name}: networks must be a list or a mapping")
    if not service.networks:
        service.networks = {DEFAULT_NETWORK: []}

    service.depends_on = parse_depends_on(data.get("depends_on"))
    service.healthcheck = parse_service_healthcheck(data.get("healthcheck"))

    restart = data.get("restart", "no")
    if restart is False:
        restart = "no"
    try:
        parse_restart_policy(str(restart))
    except ValueError as e:
        raise ComposeError(f"service {name}: {e}") from e
    service.restart = str(restart)

    service.container_name = str(data.get("container_name") or "")
    service.working_dir = str(data.get("working_dir") or "")
    service.user = str(data.get("user") or "")
    service.hostname = str(data.get("hostname") or "")
    service.labels = _mapping(data.get("labels"), f"service {name}: labels")
    service.stop_signal = str(data.get("stop_signal") or "")
    if data.get("stop_grace_period") is not None:
        try:
            service.stop_grace_period = parse_duration(data["stop_grace_period"])
        except ValueError as e:
            raise ComposeError(f"service {name}: {e}") from e

    return service


def _parse_resources(data: Any, project_name: str, kind: str) -> Dict[str, Dict[str, Any]]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ComposeError(f"top-level {kind} must be a mapping")

    result = {}
    for key, options in data.items():
        options = options or {}
        if not isinstance(options, dict):
            raise ComposeError(f"{kind} {key} must be a mapping")
        external = bool(options.get("external", False))
        default_name = str(key) if external else f"{project_name}_{key}"
        result[str(key)] = dict(options, name=str(options.get("name") or default_name), external=external)
    return result


def parse_project(
    data: Mapping[str, Any],
    working_dir: str,
    project_name: str,
    variables: Optional[Mapping[str, str]] = None,
) -> ProjectConfig:
    """
    Build a ProjectConfig from already interpolated compose data.

    Raises:
        ComposeError: On invalid or inconsistent definitions
    """
    variables = variables or {}
    services = data.get("services")
    if not isinstance(services, dict) or not services:
        raise ComposeError("compose file defines no services")

    project = ProjectConfig(name=project_name, working_dir=working_dir)

    for key, options in _parse_resources(data.get("networks"), project_name, "networks").items():
        project.networks[key] = NetworkSpec(
            key=key,
            name=options["name"],
            external=options["external"],
            driver=str(options.get("driver", "bridge")),
            internal=bool(options.get("internal", False)),
            labels=_mapping(options.get("labels"), f"network {key}: labels"),
        )
    if DEFAULT_NETWORK not in project.networks:
        project.networks[DEFAULT_NETWORK] = NetworkSpec(
            key=DEFAULT_NETWORK, name=f"{project_name}_{DEFAULT_NETWORK}"
        )

    for key, options in _parse_resources(data.get("volumes"), project_name, "volumes").items():
        project.volumes[key] = VolumeSpec(
            key=key,
            name=options["name"],
            external=options["external"],
            driver=str(options.get("driver", "local")),
            labels=_mapping(options.get("labels"), f"volume {key}: labels"),
        )

    for name, service_data in services.items():
        project.services[str(name)] = parse_service(str(name), service_data, working_dir, variables)

    validate_project(project)
    return project


def validate_project(project: ProjectConfig) -> None:
    """Check cross references between services, networks and volumes."""
    published: List[Tuple[str, PortMapping]] = []

    for name, service in project.services.items():
        for dep in service.depends_on:
            if dep.service not in project.services:
                raise ComposeError(f"service {name} depends on undefined service {dep.service}")

        for mount in service.volumes:
            if mount.type == "volume" and mount.source and mount.source not in project.volumes:
                raise ComposeError(
                    f"service {name} refers to undefined volume {mount.source}"
                )

        for network in service.networks:
            if network not in project.networks:
                raise ComposeError(f"service {name} refers to undefined network {network}")

        for port in service.ports:
            if port.published is None:
                continue
            for owner, other in published:
                if ports_overlap(port, other):
                    raise ComposeError(
                        f"services {owner} and {name} both publish port {port.published}/{port.protocol}"
                    )
            published.append((name, port))

    try:
        project.graph()
    except DependencyError as e:
        raise ComposeError(str(e)) from e


# =============================================================================
# Serialisation
# =============================================================================


def service_to_dict(service: ServiceConfig) -> Dict[str, Any]:
    """Normalised compose representation of a service."""
    data: Dict[str, Any] = {}
    if service.image:
        data["image"] = service.image
    if service.build:
        build: Dict[str, Any] = {"context": service.build.context, "dockerfile": service.build.dockerfile}
        if service.build.args:
            build["args"] = dict(service.build.args)
        if service.build.target:
            build["target"] = service.build.target
        data["build"] = build
    if service.container_name:
        data["container_name"] = service.container_name
    if service.entrypoint is not None:
        data["entrypoint"] = list(service.entrypoint)
    if service.command is not None:
        data["command"] = list(service.command)
    if service.environment:
        data["environment"] = dict(service.environment)
    if service.ports:
        data["ports"] = [str(port) for port in service.ports]
    if service.volumes:
        data["volumes"] = [str(mount) for mount in service.volumes]
    data["networks"] = {
        net: ({"aliases": list(aliases)} if aliases else None)
        for net, aliases in service.networks.items()
    }
    if service.depends_on:
        data["depends_on"] = {
            dep.service: {"condition": dep.condition, "required": dep.required}
            for dep in service.depends_on
        }
    if service.healthcheck:
        hc = service.healthcheck
        data["healthcheck"] = {
            "test": list(hc.test),
            "interval": hc.interval,
            "timeout": hc.timeout,
            "retries": hc.retries,
            "start_period": hc.start_period,
            "disable": hc.disable,
        }
    if service.restart != "no":
        data["restart"] = service.restart
    for key in ("working_dir", "user", "hostname", "stop_signal"):
        if getattr(service, key):
            data[key] = getattr(service, key)
    if service.labels:
        data["labels"] = dict(service.labels)
    data["stop_grace_period"] = service.stop_grace_period
    return data


def project_to_dict(project: ProjectConfig) -> Dict[str, Any]:
    """Normalised compose representation of a project (``compose config``)."""
    return {
        "name": project.name,
        "services": {name: service_to_dict(svc) for name, svc in project.services.items()},
        "networks": {
            key: {"name": net.name, "driver": net.driver, "external": net.external}
            for key, net in project.networks.items()
        },
        "volumes": {
            key: {"name": vol.name, "driver": vol.driver, "external": vol.external}
            for key, vol in project.volumes.items()
        },
    }
