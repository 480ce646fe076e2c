#!/usr/bin/env python3
"""
Command Line Interface for tinydock.

Provides Docker-like CLI commands:
    tinydock build <path>                  - Build an image
    tinydock images                        - List images
    tinydock rmi <image>                   - Remove an image
    tinydock tag <image> <tag>             - Tag an image
    tinydock run <image> [command]         - Run a container
    tinydock start|stop|restart <id>       - Container lifecycle
    tinydock rm <container>                - Remove a container
    tinydock ps                            - List containers
    tinydock logs <container>              - Fetch container logs
    tinydock inspect <container|image>     - Inspect a container or image
    tinydock volume <subcommand>           - Volume management
    tinydock network <subcommand>          - Network management
    tinydock compose <subcommand>          - Multi-service projects
    tinydock info                          - System information
    tinydock version                       - Version information
    tinydock cleanup                       - Clean up resources
"""

import argparse
import json
import os
import sys
import time
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

import yaml

from tinydock import __version__


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser with all commands and options."""
    parser = argparse.ArgumentParser(
        prog="tinydock",
        description="tinydock: build images and run multi-service projects as supervised processes",
    )

    # Global options
    parser.add_argument(
        "--version", "-v", action="version", version=f"tinydock {__version__}"
    )
    parser.add_argument("--debug", action="store_true", help="Re-raise unexpected errors")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # =========================================================================
    # build command
    # =========================================================================
    build_parser = subparsers.add_parser("build", help="Build an image from a Dockerfile")
    build_parser.add_argument("path", help="Build context directory")
    build_parser.add_argument("--tag", "-t", help="Image name:tag")
    build_parser.add_argument(
        "--file", "-f", default="Dockerfile", help="Dockerfile path (relative to the context)"
    )
    build_parser.add_argument(
        "--build-arg", action="append", default=[], help="Build argument (KEY=VALUE)"
    )
    build_parser.add_argument("--target", help="Build up to this stage")
    build_parser.add_argument(
        "--no-cache", action="store_true", help="Do not use the layer cache"
    )
    build_parser.add_argument(
        "--quiet", "-q", action="store_true", help="Only print the image ID"
    )

    # =========================================================================
    # images command
    # =========================================================================
    images_parser = subparsers.add_parser("images", help="List images")
    images_parser.add_argument(
        "--quiet", "-q", action="store_true", help="Only display image IDs"
    )
    images_parser.add_argument(
        "--format", choices=["table", "json"], default="table", help="Output format"
    )

    # =========================================================================
    # rmi command
    # =========================================================================
    rmi_parser = subparsers.add_parser("rmi", help="Remove images")
    rmi_parser.add_argument("image", nargs="+", help="Image name(s) or ID(s)")
    rmi_parser.add_argument(
        "--force", "-f", action="store_true", help="Remove even if used by containers"
    )

    # =========================================================================
    # tag command
    # =========================================================================
    tag_parser = subparsers.add_parser("tag", help="Tag an image")
    tag_parser.add_argument("source", help="Source image name or ID")
    tag_parser.add_argument("target", help="New name:tag")

    # =========================================================================
    # run command
    # =========================================================================
    run_parser = subparsers.add_parser("run", help="Run a container")
    run_parser.add_argument("image", help="Image name or ID, or a rootfs directory")
    run_parser.add_argument("cmd", nargs=argparse.REMAINDER, help="Command to run")
    run_parser.add_argument("--name", "-n", help="Container name")
    run_parser.add_argument("--hostname", "-H", help="Container hostname")
    run_parser.add_argument(
        "--env", "-e", action="append", default=[], help="Set environment variable (KEY=VALUE)"
    )
    run_parser.add_argument(
        "--volume", "-v", action="append", default=[], help="Mount a volume (SRC:DST[:ro])"
    )
    run_parser.add_argument(
        "--publish", "-p", action="append", default=[], help="Publish a port ([IP:]HOST:CONTAINER)"
    )
    run_parser.add_argument(
        "--network",
        action="append",
        default=[],
        help="Connect to a network (default: bridge, 'none' for no network)",
    )
    run_parser.add_argument(
        "--label", "-l", action="append", default=[], help="Set a label (KEY=VALUE)"
    )
    run_parser.add_argument("--workdir", "-w", help="Working directory inside container")
    run_parser.add_argument("--user", "-u", help="User to run as (user[:group])")
    run_parser.add_argument("--entrypoint", help="Override the image ENTRYPOINT")
    run_parser.add_argument(
        "--restart", default="no", help="Restart policy (no, always, on-failure[:N], unless-stopped)"
    )
    run_parser.add_argument("--health-cmd", help="Healthcheck command (run with /bin/sh -c)")
    run_parser.add_argument("--health-interval", default="30s", help="Time between probes")
    run_parser.add_argument("--health-timeout", default="30s", help="Probe timeout")
    run_parser.add_argument("--health-retries", type=int, default=3, help="Failures before unhealthy")
    run_parser.add_argument(
        "--no-healthcheck", action="store_true", help="Disable the image healthcheck"
    )
    run_parser.add_argument("--stop-signal", help="Signal used to stop the container")
    run_parser.add_argument(
        "--stop-timeout", type=float, default=10, help="Seconds to wait before SIGKILL"
    )
    run_parser.add_argument(
        "--detach", "-d", action="store_true", help="Run container in background"
    )
    run_parser.add_argument(
        "--rm", action="store_true", help="Automatically remove container when it exits"
    )

    # =========================================================================
    # start / stop / restart commands
    # =========================================================================
    start_parser = subparsers.add_parser("start", help="Start stopped containers")
    start_parser.add_argument("container", nargs="+", help="Container ID(s) or name(s)")

    stop_parser = subparsers.add_parser("stop", help="Stop running containers")
    stop_parser.add_argument("container", nargs="+", help="Container ID(s) or name(s)")
    stop_parser.add_argument(
        "--time", "-t", type=float, help="Seconds to wait before SIGKILL"
    )

    restart_parser = subparsers.add_parser("restart", help="Restart containers")
    restart_parser.add_argument("container", nargs="+", help="Container ID(s) or name(s)")
    restart_parser.add_argument(
        "--time", "-t", type=float, help="Seconds to wait before SIGKILL"
    )

    # =========================================================================
    # rm command
    # =========================================================================
    rm_parser = subparsers.add_parser("rm", help="Remove containers")
    rm_parser.add_argument("container", nargs="+", help="Container ID(s) or name(s)")
    rm_parser.add_argument(
        "--force", "-f", action="store_true", help="Kill running containers first"
    )
    rm_parser.add_argument(
        "--volumes", "-v", action="store_true", help="Remove anonymous volumes"
    )

    # =========================================================================
    # ps command
    # =========================================================================
    ps_parser = subparsers.add_parser("ps", help="List containers")
    ps_parser.add_argument(
        "--all", "-a", action="store_true", help="Show all containers (default: running)"
    )
    ps_parser.add_argument(
        "--quiet", "-q", action="store_true", help="Only display container IDs"
    )
    ps_parser.add_argument(
        "--format", choices=["table", "json"], default="table", help="Output format"
    )

    # =========================================================================
    # logs command
    # =========================================================================
    logs_parser = subparsers.add_parser("logs", help="Fetch container logs")
    logs_parser.add_argument("container", help="Container ID or name")
    logs_parser.add_argument(
        "--follow", "-f", action="store_true", help="Follow log output"
    )
    logs_parser.add_argument("--tail", "-n", type=int, help="Number of lines to show")
    logs_parser.add_argument(
        "--timestamps", "-t", action="store_true", help="Show timestamps"
    )

    # =========================================================================
    # inspect command
    # =========================================================================
    inspect_parser = subparsers.add_parser("inspect", help="Inspect containers or images")
    inspect_parser.add_argument("target", nargs="+", help="Container or image reference(s)")
    inspect_parser.add_argument(
        "--format", "-f", choices=["json", "yaml"], default="json", help="Output format"
    )

    # =========================================================================
    # volume command
    # =========================================================================
    volume_parser = subparsers.add_parser("volume", help="Manage volumes")
    volume_subparsers = volume_parser.add_subparsers(dest="volume_command")

    volume_create = volume_subparsers.add_parser("create", help="Create a volume")
    volume_create.add_argument("name", help="Volume name")
    volume_create.add_argument(
        "--label", "-l", action="append", default=[], help="Set a label (KEY=VALUE)"
    )

    volume_list = volume_subparsers.add_parser("ls", help="List volumes")
    volume_list.add_argument(
        "--quiet", "-q", action="store_true", help="Only display volume names"
    )

    volume_rm = volume_subparsers.add_parser("rm", help="Remove volumes")
    volume_rm.add_argument("name", nargs="+", help="Volume name(s)")
    volume_rm.add_argument(
        "--force", "-f", action="store_true", help="Remove even if in use"
    )

    volume_inspect = volume_subparsers.add_parser("inspect", help="Inspect volumes")
    volume_inspect.add_argument("name", nargs="+", help="Volume name(s)")

    volume_subparsers.add_parser("prune", help="Remove unused volumes")

    # =========================================================================
    # network command
    # =========================================================================
    network_parser = subparsers.add_parser("network", help="Manage networks")
    network_subparsers = network_parser.add_subparsers(dest="network_command")

    network_create = network_subparsers.add_parser("create", help="Create a network")
    network_create.add_argument("name", help="Network name")
    network_create.add_argument("--driver", "-d", default="bridge", help="Network driver")
    network_create.add_argument(
        "--internal", action="store_true", help="Mark the network as internal"
    )
    network_create.add_argument(
        "--label", "-l", action="append", default=[], help="Set a label (KEY=VALUE)"
    )

    network_list = network_subparsers.add_parser("ls", help="List networks")
    network_list.add_argument(
        "--quiet", "-q", action="store_true", help="Only display network names"
    )

    network_rm = network_subparsers.add_parser("rm", help="Remove networks")
    network_rm.add_argument("name", nargs="+", help="Network name(s)")
    network_rm.add_argument(
        "--force", "-f", action="store_true", help="Remove even with attached containers"
    )

    network_inspect = network_subparsers.add_parser("inspect", help="Inspect networks")
    network_inspect.add_argument("name", nargs="+", help="Network name(s)")

    # =========================================================================
    # compose command
    # =========================================================================
    compose_parser = subparsers.add_parser("compose", help="Run multi-service projects")
    compose_parser.add_argument("--file", "-f", help="Compose file (default: compose.yaml)")
    compose_parser.add_argument("--project-name", "-p", help="Project name")
    compose_subparsers = compose_parser.add_subparsers(dest="compose_command")

    compose_up = compose_subparsers.add_parser("up", help="Create and start services")
    compose_up.add_argument("services", nargs="*", help="Services (default: all)")
    compose_up.add_argument(
        "--detach", "-d", action="store_true", help="Run in the background"
    )
    compose_up.add_argument("--build", action="store_true", help="Build images first")
    compose_up.add_argument(
        "--no-cache", action="store_true", help="Build without the layer cache"
    )
    compose_up.add_argument(
        "--force-recreate", action="store_true", help="Recreate unchanged containers"
    )
    compose_up.add_argument(
        "--timeout", "-t", type=float, default=60, help="Seconds to wait for dependencies"
    )

    compose_down = compose_subparsers.add_parser("down", help="Stop and remove the project")
    compose_down.add_argument(
        "--volumes", "-v", action="store_true", help="Also remove named volumes"
    )
    compose_down.add_argument(
        "--timeout", "-t", type=float, help="Seconds to wait before SIGKILL"
    )

    compose_build = compose_subparsers.add_parser("build", help="Build service images")
    compose_build.add_argument("services", nargs="*", help="Services (default: all)")
    compose_build.add_argument(
        "--no-cache", action="store_true", help="Build without the layer cache"
    )

    compose_ps = compose_subparsers.add_parser("ps", help="List project containers")
    compose_ps.add_argument(
        "--quiet", "-q", action="store_true", help="Only display container IDs"
    )
    compose_ps.add_argument(
        "--format", choices=["table", "json"], default="table", help="Output format"
    )

    compose_logs = compose_subparsers.add_parser("logs", help="View service output")
    compose_logs.add_argument("services", nargs="*", help="Services (default: all)")
    compose_logs.add_argument(
        "--follow", "-f", action="store_true", help="Follow log output"
    )
    compose_logs.add_argument("--tail", "-n", type=int, help="Number of lines per service")

    compose_config = compose_subparsers.add_parser(
        "config", help="Validate and print the normalised compose file"
    )
    compose_config.add_argument(
        "--services", action="store_true", help="Only print service names"
    )
    compose_config.add_argument(
        "--quiet", "-q", action="store_true", help="Only validate"
    )

    for action in ("start", "stop", "restart"):
        sub = compose_subparsers.add_parser(action, help=f"{action.capitalize()} services")
        sub.add_argument("services", nargs="*", help="Services (default: all)")
        if action != "start":
            sub.add_argument(
                "--timeout", "-t", type=float, help="Seconds to wait before SIGKILL"
            )

    # =========================================================================
    # info / version / cleanup commands
    # =========================================================================
    info_parser = subparsers.add_parser("info", help="Display system information")
    info_parser.add_argument(
        "--format", choices=["table", "json"], default="table", help="Output format"
    )

    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.add_argument(
        "--format", choices=["table", "json"], default="table", help="Output format"
    )

    cleanup_parser = subparsers.add_parser("cleanup", help="Remove unused resources")
    cleanup_parser.add_argument(
        "--force", "-f", action="store_true", help="Do not prompt for confirmation"
    )
    cleanup_parser.add_argument(
        "--volumes", action="store_true", help="Also remove unused volumes"
    )

    return parser


# =============================================================================
# Helpers
# =============================================================================


def parse_key_value_list(items: List[str], from_environ: bool = False) -> Dict[str, str]:
    """
    Parse KEY=VALUE arguments.

    With ``from_environ``, a bare KEY takes its value from the environment
    (and is skipped when unset).
    """
    result = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not key:
            raise ValueError(f"invalid KEY=VALUE argument: {item!r}")
        if sep:
            result[key] = value
        elif from_environ:
            if key in os.environ:
                result[key] = os.environ[key]
        else:
            result[key] = ""
    return result


def format_timestamp(ts: Optional[float]) -> str:
    if not ts:
        return ""
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def format_status(config) -> str:
    """Docker-style status column, e.g. "Up 5s (healthy)" or "Exited (0)"."""
    if config.status == "running":
        text = f"Up {max(int(time.time() - (config.started_at or time.time())), 0)}s"
        if config.healthcheck:
            text += f" ({config.health.status})"
        return text
    if config.status == "exited":
        return f"Exited ({config.exit_code})"
    return "Created"


def print_containers(containers, quiet: bool, output_format: str, show_service: bool = False) -> None:
    if quiet:
        for c in containers:
            print(c.short_id)
        return

    if output_format == "json":
        print(json.dumps([asdict(c) for c in containers], indent=2, default=str))
        return

    first = "SERVICE" if show_service else "CONTAINER ID"
    print(f"{first:<14} {'NAME':<24} {'IMAGE':<24} {'STATUS':<22} {'PORTS':<20} {'CREATED'}")
    for c in containers:
        key = c.labels.get("tinydock.service", "") if show_service else c.short_id
        print(
            f"{key[:14]:<14} {c.name[:24]:<24} {c.image[:24]:<24} {format_status(c)[:22]:<22} "
            f"{', '.join(c.ports)[:20]:<20} {format_timestamp(c.created_at)}"
        )


def dump(data: Any, output_format: str = "json") -> None:
    if output_format == "yaml":
        print(yaml.safe_dump(json.loads(json.dumps(data, default=str)), default_flow_style=False, sort_keys=False))
    else:
        print(json.dumps(data, indent=2, default=str))


# =============================================================================
# Image commands
# =============================================================================


def cmd_build(args: argparse.Namespace) -> int:
    """Handle build command."""
    from tinydock.image_builder import BuildError, ImageBuilder, ImageError

    try:
        build_args = parse_key_value_list(args.build_arg, from_environ=True)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    builder = ImageBuilder(quiet=args.quiet)
    try:
        image_id = builder.build(
            args.path,
            dockerfile=args.file,
            tag=args.tag or "",
            build_args=build_args,
            no_cache=args.no_cache,
            target=args.target,
        )
    except (BuildError, ImageError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.quiet:
        print(image_id)
    return 0


def cmd_images(args: argparse.Namespace) -> int:
    """Handle images command."""
    from tinydock.cache import LayerStore
    from tinydock.image_builder import list_images, split_tag
    from tinydock.utils import format_size, short_id

    images = list_images()

    if args.quiet:
        for img in images:
            print(short_id(img.id))
    elif args.format == "json":
        print(json.dumps([asdict(img) for img in images], indent=2, default=str))
    else:
        layers = LayerStore()
        print(f"{'REPOSITORY':<30} {'TAG':<12} {'IMAGE ID':<14} {'LAYERS':<8} {'CREATED':<18} {'SIZE'}")
        for img in images:
            info = layers.get(img.rootfs_layer) if img.rootfs_layer else None
            size = format_size(info.size if info else 0)
            filesystem_layers = sum(1 for layer in img.layers if not layer.empty_layer)
            for tag in img.tags or ["<none>:<none>"]:
                name, version = split_tag(tag) if tag != "<none>:<none>" else ("<none>", "<none>")
                print(
                    f"{name[:30]:<30} {version[:12]:<12} {short_id(img.id):<14} "
                    f"{filesystem_layers:<8} {format_timestamp(img.created_at):<18} {size}"
                )

    return 0


def cmd_rmi(args: argparse.Namespace) -> int:
    """Handle rmi (remove image) command."""
    from tinydock.image_builder import ImageError, remove_image

    exit_code = 0

    for reference in args.image:
        try:
            for message in remove_image(reference, force=args.force):
                print(message)
        except ImageError as e:
            print(f"Error removing {reference}: {e}", file=sys.stderr)
            exit_code = 1

    return exit_code


def cmd_tag(args: argparse.Namespace) -> int:
    """Handle tag command."""
    from tinydock.image_builder import ImageError, tag_image

    try:
        tag_image(args.source, args.target)
        return 0
    except ImageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


# =============================================================================
# Container commands
# =============================================================================


def cmd_run(args: argparse.Namespace) -> int:
    """Handle run command."""
    import shlex

    from tinydock.container import Container, ContainerError
    from tinydock.health import Healthcheck, parse_duration

    try:
        env = parse_key_value_list(args.env, from_environ=True)
        labels = parse_key_value_list(args.label)
        healthcheck = None
        if args.no_healthcheck:
            healthcheck = Healthcheck(test=["NONE"], disable=True)
        elif args.health_cmd:
            healthcheck = Healthcheck(
                test=["CMD-SHELL", args.health_cmd],
                interval=parse_duration(args.health_interval),
                timeout=parse_duration(args.health_timeout),
                retries=args.health_retries,
            )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    cmd = args.cmd
    if cmd and cmd[0] == "--":
        cmd = cmd[1:]

    networks = args.network or ["bridge"]
    if networks == ["none"]:
        networks = []

    container = Container()

    try:
        config = container.create(
            args.image,
            command=cmd or None,
            name=args.name,
            env=env,
            workdir=args.workdir,
            user=args.user,
            entrypoint=shlex.split(args.entrypoint) if args.entrypoint is not None else None,
            mounts=args.volume,
            networks=networks,
            ports=args.publish,
            labels=labels,
            healthcheck=healthcheck,
            restart=args.restart,
            hostname=args.hostname,
            stop_signal=args.stop_signal,
            stop_timeout=args.stop_timeout,
        )

        container.start(config.id)

        if args.detach:
            print(config.id)
            return 0

        # Attached: stream output until the process exits
        container.logs(config.id, follow=True)
        if container.refresh(config.id).status == "running":
            # Following was interrupted
            container.stop(config.id)
        exit_code = container.wait(config.id)

        if args.rm:
            container.remove(config.id, remove_volumes=True)

        return exit_code

    except ContainerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_start(args: argparse.Namespace) -> int:
    """Handle start command."""
    from tinydock.container import Container, ContainerError

    container = Container()
    exit_code = 0

    for reference in args.container:
        try:
            container.start(reference)
            print(reference)
        except ContainerError as e:
            print(f"Error starting {reference}: {e}", file=sys.stderr)
            exit_code = 1

    return exit_code


def cmd_stop(args: argparse.Namespace) -> int:
    """Handle stop command."""
    from tinydock.container import Container, ContainerError

    container = Container()
    exit_code = 0

    for reference in args.container:
        try:
            container.stop(reference, timeout=args.time)
            print(reference)
        except ContainerError as e:
            print(f"Error stopping {reference}: {e}", file=sys.stderr)
            exit_code = 1

    return exit_code


def cmd_restart(args: argparse.Namespace) -> int:
    """Handle restart command."""
    from tinydock.container import Container, ContainerError

    container = Container()
    exit_code = 0

    for reference in args.container:
        try:
            container.restart(reference, timeout=args.time)
            print(reference)
        except ContainerError as e:
            print(f"Error restarting {reference}: {e}", file=sys.stderr)
            exit_code = 1

    return exit_code


def cmd_rm(args: argparse.Namespace) -> int:
    """Handle rm command."""
    from tinydock.container import Container, ContainerError

    container = Container()
    exit_code = 0

    for reference in args.container:
        try:
            container.remove(reference, force=args.force, remove_volumes=args.volumes)
            print(reference)
        except ContainerError as e:
            print(f"Error removing {reference}: {e}", file=sys.stderr)
            exit_code = 1

    return exit_code


def cmd_ps(args: argparse.Namespace) -> int:
    """Handle ps command."""
    from tinydock.container import Container

    containers = Container().list(all_containers=args.all)
    print_containers(containers, args.quiet, args.format)
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    """Handle logs command."""
    from tinydock.container import Container, ContainerError

    try:
        Container().logs(
            args.container,
            follow=args.follow,
            tail=args.tail,
            timestamps=args.timestamps,
        )
        return 0
    except ContainerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_inspect(args: argparse.Namespace) -> int:
    """Handle inspect command."""
    from tinydock.container import Container
    from tinydock.image_builder import ImageError, resolve_image

    container = Container()
    results = []

    for reference in args.target:
        config = container.inspect(reference)
        if config:
            results.append(asdict(config))
            continue
        try:
            image = resolve_image(reference)
        except ImageError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        if not image:
            print(f"Error: No such container or image: {reference}", file=sys.stderr)
            return 1
        results.append(asdict(image))

    dump(results, args.format)
    return 0


# =============================================================================
# Volume and network commands
# =============================================================================


def cmd_volume(args: argparse.Namespace) -> int:
    """Handle volume commands."""
    from tinydock.volume import VolumeError, VolumeManager

    volumes = VolumeManager()

    try:
        if args.volume_command == "create":
            volumes.create(args.name, labels=parse_key_value_list(args.label))
            print(args.name)

        elif args.volume_command == "ls":
            if args.quiet:
                for vol in volumes.list():
                    print(vol.name)
            else:
                print(f"{'DRIVER':<10} {'VOLUME NAME'}")
                for vol in volumes.list():
                    print(f"{vol.driver:<10} {vol.name}")

        elif args.volume_command == "rm":
            exit_code = 0
            for name in args.name:
                try:
                    volumes.remove(name, force=args.force)
                    print(name)
                except VolumeError as e:
                    print(f"Error removing {name}: {e}", file=sys.stderr)
                    exit_code = 1
            return exit_code

        elif args.volume_command == "inspect":
            results = []
            for name in args.name:
                vol = volumes.get(name)
                if not vol:
                    raise VolumeError(f"No such volume: {name}")
                results.append(asdict(vol))
            dump(results)

        elif args.volume_command == "prune":
            removed = volumes.prune()
            for name in removed:
                print(f"Deleted: {name}")
            print(f"Removed {len(removed)} volume(s)")

        else:
            print("Usage: tinydock volume {create,ls,rm,inspect,prune}", file=sys.stderr)
            return 1

    except (VolumeError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


def cmd_network(args: argparse.Namespace) -> int:
    """Handle network commands."""
    from tinydock.network import NetworkError, NetworkManager

    networks = NetworkManager()

    try:
        if args.network_command == "create":
            config = networks.create(
                args.name,
                driver=args.driver,
                labels=parse_key_value_list(args.label),
                internal=args.internal,
            )
            print(f"{config.name} {config.subnet}")

        elif args.network_command == "ls":
            if args.quiet:
                for net in networks.list():
                    print(net.name)
            else:
                print(f"{'NAME':<30} {'DRIVER':<10} {'SUBNET':<16} {'CONTAINERS'}")
                for net in networks.list():
                    print(f"{net.name[:30]:<30} {net.driver:<10} {net.subnet:<16} {len(net.endpoints)}")

        elif args.network_command == "rm":
            exit_code = 0
            for name in args.name:
                try:
                    networks.remove(name, force=args.force)
                    print(name)
                except NetworkError as e:
                    print(f"Error removing {name}: {e}", file=sys.stderr)
                    exit_code = 1
            return exit_code

        elif args.network_command == "inspect":
            results = []
            for name in args.name:
                net = networks.get(name)
                if not net:
                    raise NetworkError(f"No such network: {name}")
                results.append(asdict(net))
            dump(results)

        else:
            print("Usage: tinydock network {create,ls,rm,inspect}", file=sys.stderr)
            return 1

    except (NetworkError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


# =============================================================================
# Compose commands
# =============================================================================


def _compose_up(project, args: argparse.Namespace) -> int:
    from tinydock.metadata import STATUS_EXITED

    containers = project.up(
        args.services or None,
        build=args.build,
        no_cache=args.no_cache,
        force_recreate=args.force_recreate,
        timeout=args.timeout,
    )
    if args.detach:
        return 0

    follower = project.attach(args.services or None)
    try:
        project.supervise(poll_interval=0.2, on_tick=follower.poll)
        follower.flush()
    except KeyboardInterrupt:
        print("\nGracefully stopping... (press Ctrl+C again to force)")
        project.stop(args.services or None)
    finally:
        follower.close()

    for config in containers:
        config = project.container.refresh(config.id)
        if config.status == STATUS_EXITED:
            print(f"{config.name} exited with code {config.exit_code}")
    return 0


def cmd_compose(args: argparse.Namespace) -> int:
    """Handle compose commands."""
    from tinydock.compose import ComposeError, load_project, project_to_dict
    from tinydock.container import ContainerError
    from tinydock.image_builder import BuildError, ImageError
    from tinydock.network import NetworkError
    from tinydock.orchestrator import OrchestratorError, Project
    from tinydock.volume import VolumeError

    if not args.compose_command:
        print(
            "Usage: tinydock compose [-f FILE] [-p NAME] "
            "{up,down,build,ps,logs,config,start,stop,restart}",
            file=sys.stderr,
        )
        return 1

    try:
        config = load_project(args.file, project_name=args.project_name)

        if args.compose_command == "config":
            if args.services:
                for name in config.graph().order():
                    print(name)
            elif not args.quiet:
                print(yaml.safe_dump(project_to_dict(config), default_flow_style=False, sort_keys=False), end="")
            return 0

        project = Project(config)

        if args.compose_command == "up":
            return _compose_up(project, args)
        if args.compose_command == "down":
            project.down(remove_volumes=args.volumes, timeout=args.timeout)
        elif args.compose_command == "build":
            project.build(args.services or None, no_cache=args.no_cache)
        elif args.compose_command == "ps":
            print_containers(project.ps(), args.quiet, args.format, show_service=True)
        elif args.compose_command == "logs":
            project.logs(args.services or None, follow=args.follow, tail=args.tail)
        elif args.compose_command == "start":
            project.start(args.services or None)
        elif args.compose_command == "stop":
            project.stop(args.services or None, timeout=args.timeout)
        elif args.compose_command == "restart":
            project.restart(args.services or None, timeout=args.timeout)
        return 0

    except (
        ComposeError,
        OrchestratorError,
        BuildError,
        ImageError,
        ContainerError,
        NetworkError,
        VolumeError,
    ) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


# =============================================================================
# System commands
# =============================================================================


def cmd_info(args: argparse.Namespace) -> int:
    """Handle info command - display system information."""
    import platform

    from tinydock.cache import LayerStore
    from tinydock.container import Container
    from tinydock.image_builder import list_images
    from tinydock.utils import storage_root

    container = Container()
    all_containers = container.list(all_containers=True)
    running = sum(1 for c in all_containers if c.status == "running")

    info = {
        "Version": __version__,
        "Python": platform.python_version(),
        "Platform": platform.platform(),
        "Architecture": platform.machine(),
        "Containers": f"{running} running, {len(all_containers) - running} stopped",
        "Images": str(len(list_images())),
        "Layers": str(len(LayerStore().list())),
        "Volumes": str(len(container.volumes.list())),
        "Networks": str(len(container.networks.list())),
        "Storage": storage_root(),
    }

    if args.format == "json":
        print(json.dumps(info, indent=2))
    else:
        print("tinydock System Information")
        print("=" * 40)
        for key, value in info.items():
            print(f"{key + ':':<20} {value}")

    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Handle version command."""
    import platform

    version_info = {
        "tinydock": __version__,
        "Python": platform.python_version(),
        "PyYAML": yaml.__version__,
        "OS": platform.system(),
        "Architecture": platform.machine(),
    }

    if args.format == "json":
        print(json.dumps(version_info, indent=2))
    else:
        print(f"tinydock version {__version__}")
        print(f"Python version {platform.python_version()}")
        print(f"PyYAML version {yaml.__version__}")
        print(f"OS/Arch: {platform.system()}/{platform.machine()}")

    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    """Handle cleanup command - remove unused resources."""
    from tinydock.container import Container, ContainerError
    from tinydock.image_builder import prune_images, prune_layers

    if not args.force:
        print("This will remove:")
        print("  - All stopped containers")
        print("  - All untagged images not used by a container")
        print("  - All cached layers not used by an image")
        print("  - All networks without containers")
        if args.volumes:
            print("  - All volumes not used by a container")
        print("")
        response = input("Are you sure? [y/N] ")
        if response.lower() not in ("y", "yes"):
            print("Cancelled.")
            return 0

    container = Container()

    removed_containers = 0
    for c in container.list(all_containers=True):
        if c.status == "running":
            continue
        try:
            container.remove(c.id)
            removed_containers += 1
        except ContainerError as e:
            print(f"Warning: {e}", file=sys.stderr)

    removed_images = prune_images()
    removed_layers = prune_layers(container.layers)
    removed_networks = container.networks.prune()
    removed_volumes = container.volumes.prune() if args.volumes else []

    print(f"Removed {removed_containers} container(s)")
    print(f"Removed {len(removed_images)} image(s)")
    print(f"Removed {len(removed_layers)} layer(s)")
    print(f"Removed {len(removed_networks)} network(s)")
    print(f"Removed {len(removed_volumes)} volume(s)")

    return 0


# =============================================================================
# Main Entry Point
# =============================================================================


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    # Dispatch to command handler
    handlers = {
        "build": cmd_build,
        "images": cmd_images,
        "rmi": cmd_rmi,
        "tag": cmd_tag,
        "run": cmd_run,
        "start": cmd_start,
        "stop": cmd_stop,
        "restart": cmd_restart,
        "rm": cmd_rm,
        "ps": cmd_ps,
        "logs": cmd_logs,
        "inspect": cmd_inspect,
        "volume": cmd_volume,
        "network": cmd_network,
        "compose": cmd_compose,
        "info": cmd_info,
        "version": cmd_version,
        "cleanup": cmd_cleanup,
    }

    handler = handlers.get(args.command)
    if handler:
        try:
            return handler(args)
        except KeyboardInterrupt:
            print("\nInterrupted")
            return 130
        except Exception as e:
            if getattr(args, "debug", False):
                raise
            print(f"Error: {e}", file=sys.stderr)
            return 1
    else:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
