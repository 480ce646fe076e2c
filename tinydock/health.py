#!/usr/bin/env python3
"""
Container health checks for tinydock.

A healthcheck runs a test command next to the container process on a fixed
interval. Consecutive failures are counted; once ``retries`` failures in a
row have been seen the container is reported unhealthy. Failures during the
start period do not count until the first success.

Test forms:
    ["NONE"]                    disable the image's healthcheck
    ["CMD", "arg0", "arg1"]     run directly
    ["CMD-SHELL", "command"]    run with /bin/sh -c
    "command"                   shorthand for CMD-SHELL

Health status flow:
    none (no healthcheck)
    starting → healthy ⇄ unhealthy
"""

import re
import subprocess
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from tinydock.utils import dataclass_from_dict

HEALTH_NONE = "none"
HEALTH_STARTING = "starting"
HEALTH_HEALTHY = "healthy"
HEALTH_UNHEALTHY = "unhealthy"

# Probe results kept per container
MAX_LOG_ENTRIES = 5

# Probe output kept per result
MAX_OUTPUT = 4096

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|us|h|m|s)")
_DURATION_UNITS = {"us": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds) and Go-style strings: "10s", "1m30s",
    "500ms", "1h".

    Raises:
        ValueError: If the value is not a valid duration
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    if re.fullmatch(r"\d+(?:\.\d+)?", text):
        return float(text)

    total = 0.0
    position = 0
    for match in _DURATION_RE.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if not text or position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def normalize_test(test: Union[str, List[str], None]) -> List[str]:
    """Normalize a healthcheck test to its list form."""
    if test is None:
        return []
    if isinstance(test, str):
        return ["CMD-SHELL", test]
    test = [str(part) for part in test]
    if test and test[0] not in ("CMD", "CMD-SHELL", "NONE"):
        raise ValueError(f"healthcheck test must start with CMD, CMD-SHELL or NONE: {test}")
    return test


@dataclass
class Healthcheck:
    """Healthcheck definition (image HEALTHCHECK or compose healthcheck)."""

    test: List[str] = field(default_factory=list)
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3
    start_period: float = 0.0
    disable: bool = False

    @property
    def enabled(self) -> bool:
        return not self.disable and bool(self.test) and self.test[0] != "NONE"

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["Healthcheck"]:
        if not data:
            return None
        return dataclass_from_dict(cls, data)

    def argv(self) -> List[str]:
        """Command line for one probe."""
        kind, args = self.test[0], self.test[1:]
        if kind == "CMD":
            return list(args)
        if kind == "CMD-SHELL":
            return ["/bin/sh", "-c", " ".join(args)]
        raise ValueError(f"healthcheck is disabled: {self.test}")


@dataclass
class ProbeResult:
    """Outcome of a single probe."""

    exit_code: int
    output: str
    start: float
    end: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class HealthState:
    """Health tracking state stored with a container."""

    status: str = HEALTH_NONE
    failing_streak: int = 0
    log: List[Dict[str, Any]] = field(default_factory=list)
    last_probe: Optional[float] = None


def probe(
    healthcheck: Healthcheck,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> ProbeResult:
    """
    Run one healthcheck probe.

    A probe that exceeds the timeout or cannot be executed counts as a
    failure.
    """
    start = time.time()
    try:
        result = subprocess.run(
            healthcheck.argv(),
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=healthcheck.timeout or None,
        )
        exit_code, output = result.returncode, result.stdout or ""
    except subprocess.TimeoutExpired:
        exit_code = -1
        output = f"Health check exceeded timeout ({healthcheck.timeout:g}s)"
    except OSError as e:
        exit_code, output = 127, str(e)

    return ProbeResult(exit_code, output[-MAX_OUTPUT:], start, time.time())


def record_probe(
    state: HealthState,
    result: ProbeResult,
    healthcheck: Healthcheck,
    started_at: Optional[float] = None,
) -> HealthState:
    """Fold a probe result into the health state."""
    state.log.append(
        {
            "start": result.start,
            "end": result.end,
            "exit_code": result.exit_code,
            "output": result.output,
        }
    )
    state.log = state.log[-MAX_LOG_ENTRIES:]
    state.last_probe = result.end

    if result.ok:
        state.status = HEALTH_HEALTHY
        state.failing_streak = 0
        return state

    in_start_period = (
        started_at is not None
        and result.start - started_at < healthcheck.start_period
        and state.status != HEALTH_HEALTHY
    )
    if in_start_period:
        return state

    state.failing_streak += 1
    if state.failing_streak >= max(healthcheck.retries, 1):
        state.status = HEALTH_UNHEALTHY
    return state


def probe_due(
    state: HealthState, healthcheck: Healthcheck, now: Optional[float] = None
) -> bool:
    """Whether the next probe should run. The first probe runs immediately."""
    if state.last_probe is None:
        return True
    now = time.time() if now is None else now
    return now - state.last_probe >= healthcheck.interval
