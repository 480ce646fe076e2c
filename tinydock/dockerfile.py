#!/usr/bin/env python3
"""
Dockerfile parser for tinydock.

Turns Dockerfile text into a list of Instruction objects. Parsing is purely
syntactic: variable substitution and execution happen in the image builder.

Supported Instructions:
    FROM <image|scratch|dir> [AS <stage>]
    ARG <name>[=<default>]
    ENV <key>=<value> ...        (or legacy ENV <key> <value>)
    LABEL <key>=<value> ...
    WORKDIR <path>
    RUN <command> | ["exec", "form"]
    COPY [--from=<stage>] <src>... <dest>
    ADD <src>... <dest>
    CMD, ENTRYPOINT              shell or exec form
    EXPOSE <port>[/<proto>] ...
    USER <user>[:<group>]
    VOLUME <path> ... | ["<path>", ...]
    HEALTHCHECK [--interval= --timeout= --retries= --start-period=] CMD ...
    HEALTHCHECK NONE
    STOPSIGNAL <signal>
"""

import json
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from tinydock.health import Healthcheck, parse_duration
from tinydock.utils import expand_variables

INSTRUCTIONS = (
    "FROM",
    "ARG",
    "ENV",
    "LABEL",
    "WORKDIR",
    "RUN",
    "COPY",
    "ADD",
    "CMD",
    "ENTRYPOINT",
    "EXPOSE",
    "USER",
    "VOLUME",
    "HEALTHCHECK",
    "STOPSIGNAL",
)

# Instructions that accept leading --flag=value options
FLAGGED_INSTRUCTIONS = ("FROM", "RUN", "COPY", "ADD", "HEALTHCHECK")

# Instructions whose arguments go through variable substitution
SUBSTITUTED_INSTRUCTIONS = (
    "FROM",
    "ARG",
    "ENV",
    "LABEL",
    "WORKDIR",
    "COPY",
    "ADD",
    "EXPOSE",
    "USER",
    "VOLUME",
    "STOPSIGNAL",
)


class DockerfileError(Exception):
    """Exception raised for malformed Dockerfiles."""

    def __init__(self, message: str, lineno: Optional[int] = None):
        if lineno is not None:
            message = f"line {lineno}: {message}"
        super().__init__(message)
        self.lineno = lineno


@dataclass
class Instruction:
    """A single parsed Dockerfile instruction."""

    keyword: str
    args: str
    lineno: int = 0
    flags: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        flags = " ".join(f"--{k}={v}" if v else f"--{k}" for k, v in self.flags.items())
        return " ".join(part for part in (self.keyword, flags, self.args) if part)


def _parse_line(text: str, lineno: int) -> Instruction:
    parts = text.split(None, 1)
    keyword = parts[0].upper()
    args = parts[1].strip() if len(parts) > 1 else ""

    if keyword not in INSTRUCTIONS:
        raise DockerfileError(f"unknown instruction: {parts[0]}", lineno)

    flags: Dict[str, str] = {}
    if keyword in FLAGGED_INSTRUCTIONS:
        while args.startswith("--"):
            pieces = args.split(None, 1)
            name, _, value = pieces[0][2:].partition("=")
            flags[name] = value
            args = pieces[1].strip() if len(pieces) > 1 else ""

    return Instruction(keyword=keyword, args=args, lineno=lineno, flags=flags)


def parse_dockerfile(content: str) -> List[Instruction]:
    """
    Parse Dockerfile content.

    Args:
        content: Dockerfile text

    Returns:
        List of instructions in file order

    Raises:
        DockerfileError: On unknown instructions, an empty file, or when the
            first non-ARG instruction is not FROM
    """
    instructions: List[Instruction] = []
    current = ""
    start_line = 0

    for lineno, line in enumerate(content.splitlines(), 1):
        stripped = line.strip()
        # Comments are dropped even inside a continuation
        if not stripped or stripped.startswith("#"):
            continue

        if not current:
            start_line = lineno

        if stripped.endswith("\\"):
            current += stripped[:-1].rstrip() + " "
            continue

        current += stripped
        instructions.append(_parse_line(current, start_line))
        current = ""

    if current.strip():
        instructions.append(_parse_line(current.strip(), start_line))

    if not instructions:
        raise DockerfileError("no instructions found")

    for instruction in instructions:
        if instruction.keyword == "ARG":
            continue
        if instruction.keyword != "FROM":
            raise DockerfileError(
                f"{instruction.keyword} before FROM; the first instruction must be FROM",
                instruction.lineno,
            )
        break
    else:
        raise DockerfileError("no FROM instruction found")

    return instructions


def parse_command(args: str) -> Tuple[List[str], bool]:
    """
    Parse RUN/CMD/ENTRYPOINT arguments.

    Returns:
        (argv, exec_form). Exec form is a JSON array of strings; anything
        else is shell form and runs through /bin/sh -c.
    """
    text = args.strip()
    if text.startswith("["):
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return value, True
    return ["/bin/sh", "-c", text], False


def parse_key_values(
    args: str, variables: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Parse ENV/LABEL arguments.

    Supports ``KEY=VALUE KEY2="value two"`` and the legacy ``KEY value``
    form. Values are expanded with ``variables`` when given.
    """
    variables = variables or {}
    text = args.strip()
    if not text:
        raise DockerfileError("missing key/value arguments")

    try:
        tokens = shlex.split(text)
    except ValueError as e:
        raise DockerfileError(f"invalid quoting: {text}") from e

    if "=" not in tokens[0]:
        pieces = text.split(None, 1)
        value = pieces[1].strip() if len(pieces) > 1 else ""
        return {pieces[0]: expand_variables(value, variables)}

    result = {}
    for token in tokens:
        if "=" not in token:
            raise DockerfileError(f"invalid key=value pair: {token}")
        key, value = token.split("=", 1)
        result[key] = expand_variables(value, variables)
    return result


def parse_arg(args: str) -> Tuple[str, Optional[str]]:
    """Parse ``ARG name[=default]``; a missing default is None."""
    text = args.strip()
    if not text or " " in text.split("=", 1)[0]:
        raise DockerfileError(f"invalid ARG: {text!r}")
    if "=" not in text:
        return text, None
    name, default = text.split("=", 1)
    if len(default) >= 2 and default[0] == default[-1] and default[0] in "\"'":
        default = default[1:-1]
    return name, default


def parse_from(args: str) -> Tuple[str, str]:
    """Parse ``FROM image [AS name]`` into (image, stage name)."""
    parts = args.split()
    if len(parts) == 1:
        return parts[0], ""
    if len(parts) == 3 and parts[1].upper() == "AS":
        return parts[0], parts[2].lower()
    raise DockerfileError(f"invalid FROM: {args!r}")


def parse_list(args: str) -> List[str]:
    """Parse VOLUME/EXPOSE style arguments (JSON array or words)."""
    text = args.strip()
    if text.startswith("["):
        try:
            value = json.loads(text)
        except json.JSONDecodeError as e:
            raise DockerfileError(f"invalid JSON array: {text}") from e
        return [str(v) for v in value]
    return text.split()


def parse_healthcheck(args: str, flags: Mapping[str, str]) -> Healthcheck:
    """Parse HEALTHCHECK arguments and options."""
    text = args.strip()
    if text.upper() == "NONE":
        return Healthcheck(test=["NONE"])

    pieces = text.split(None, 1)
    if not pieces or pieces[0].upper() != "CMD" or len(pieces) < 2:
        raise DockerfileError("HEALTHCHECK requires CMD <command> or NONE")

    argv, exec_form = parse_command(pieces[1])
    test = ["CMD"] + argv if exec_form else ["CMD-SHELL", pieces[1].strip()]
    healthcheck = Healthcheck(test=test)

    try:
        for name, value in flags.items():
            if name == "interval":
                healthcheck.interval = parse_duration(value)
            elif name == "timeout":
                healthcheck.timeout = parse_duration(value)
            elif name == "start-period":
                healthcheck.start_period = parse_duration(value)
            elif name == "retries":
                healthcheck.retries = int(value)
            else:
                raise DockerfileError(f"unknown HEALTHCHECK option: --{name}")
    except ValueError as e:
        raise DockerfileError(f"invalid HEALTHCHECK option: {e}") from e

    return healthcheck
