#!/usr/bin/env python3
"""
Container Logging for tinydock.

Provides:
- Raw process output at <root>/containers/<id>/container.log
- Timestamped lifecycle events at <root>/containers/<id>/events.log
- Log rotation for the event log
- tail / follow readers, including a multiplexed follower that prefixes
  each line with the container's name
"""

import os
import sys
import time
from datetime import datetime
from typing import Callable, Dict, Generator, List, Optional, TextIO, Tuple

from tinydock.utils import get_container_path


def _timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]


class ContainerLogger:
    """
    Lifecycle event logger for a container.

    Example:
        logger = ContainerLogger(container_id)
        logger.write("started pid=1234")
        logger.close()
    """

    def __init__(self, container_id: str, max_size_mb: int = 10):
        self.container_id = container_id
        self.max_size = max_size_mb * 1024 * 1024
        self.log_path = os.path.join(get_container_path(container_id), "events.log")
        self._closed = False

        os.makedirs(os.path.dirname(self.log_path), exist_ok=True)

        self.file: Optional[TextIO] = None
        self._open()

    def _open(self) -> None:
        """Open the log file."""
        self.file = open(self.log_path, "a", buffering=1)  # Line buffered
        self._closed = False

    def _rotate_if_needed(self) -> None:
        """Rotate log file if it exceeds max size."""
        if not self.file or self._closed:
            return

        try:
            if os.path.getsize(self.log_path) > self.max_size:
                self.file.close()

                # Rotate: .log -> .log.1
                rotated = f"{self.log_path}.1"
                if os.path.exists(rotated):
                    os.remove(rotated)
                os.rename(self.log_path, rotated)

                self._open()
        except OSError as e:
            print(f"Warning: cannot rotate {self.log_path}: {e}", file=sys.stderr)

    def write(self, data: str, timestamp: bool = True) -> None:
        """
        Write data to the event log.

        Args:
            data: Data to write, one event per line
            timestamp: Whether to add timestamp
        """
        if not self.file or self._closed:
            return

        self._rotate_if_needed()

        if timestamp:
            ts = _timestamp()
            for line in data.split("\n"):
                if line:
                    self.file.write(f"{ts} {line}\n")
        else:
            self.file.write(data)
        self.file.flush()

    def close(self) -> None:
        """Close the log file."""
        if self._closed:
            return
        self._closed = True
        if self.file:
            self.file.close()
            self.file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def log_event(container_id: str, message: str) -> None:
    """Append one timestamped event to a container's event log."""
    with ContainerLogger(container_id) as logger:
        logger.write(message)


def read_events(container_id: str) -> List[str]:
    path = os.path.join(get_container_path(container_id), "events.log")
    try:
        with open(path, "r") as f:
            return [line.rstrip("\n") for line in f]
    except OSError:
        return []


def read_logs(
    container_id: str,
    follow: bool = False,
    tail: Optional[int] = None,
    stop: Optional[Callable[[], bool]] = None,
    poll_interval: float = 0.1,
) -> Generator[str, None, None]:
    """
    Read container output.

    Args:
        container_id: Container ID
        follow: If True, follow log output (like tail -f)
        tail: Number of lines to show from end
        stop: In follow mode, polled when no new output is available;
            reading ends once it returns True and the log is drained

    Yields:
        Log lines
    """
    log_path = os.path.join(get_container_path(container_id), "container.log")

    if not os.path.exists(log_path):
        return

    with open(log_path, "r", errors="replace") as f:
        lines = f.readlines()
        if tail is not None and tail >= 0:
            lines = lines[-tail:] if tail else []

        for line in lines:
            yield line.rstrip("\n")

        if not follow:
            return

        pending = ""
        while True:
            chunk = f.readline()
            if chunk:
                pending += chunk
                if pending.endswith("\n"):
                    yield pending.rstrip("\n")
                    pending = ""
                continue
            if stop and stop():
                if pending:
                    yield pending
                return
            time.sleep(poll_interval)


def get_log_size(container_id: str) -> int:
    """Get size of container output log in bytes."""
    log_path = os.path.join(get_container_path(container_id), "container.log")
    try:
        return os.path.getsize(log_path)
    except OSError:
        return 0


class LogFollower:
    """
    Multiplex the output of several containers.

    Each line is written as ``<label> | <line>`` with labels padded to the
    same width.

    Example:
        follower = LogFollower([("web", web_id), ("db", db_id)])
        while running:
            follower.poll()
            time.sleep(0.1)
        follower.close()
    """

    def __init__(
        self,
        sources: List[Tuple[str, str]],
        output: Optional[TextIO] = None,
        tail: Optional[int] = None,
        prefix: bool = True,
    ):
        self.output = output or sys.stdout
        self.prefix = prefix
        self.width = max((len(label) for label, _ in sources), default=0)
        self._files: Dict[str, TextIO] = {}
        self._labels: Dict[str, str] = {}
        self._pending: Dict[str, str] = {}
        self._tail = tail
        for label, container_id in sources:
            self.add(label, container_id)

    def add(self, label: str, container_id: str) -> None:
        """Start following another container (replacing an earlier one with the same label)."""
        if label in self._files:
            self._files.pop(label).close()
        self.width = max(self.width, len(label))
        self._labels[label] = container_id
        self._pending[label] = ""

        path = os.path.join(get_container_path(container_id), "container.log")
        if not os.path.exists(path):
            os.makedirs(os.path.dirname(path), exist_ok=True)
            open(path, "a").close()
        f = open(path, "r", errors="replace")

        if self._tail is not None:
            lines = f.readlines()
            for line in lines[-self._tail:] if self._tail else []:
                self._emit(label, line.rstrip("\n"))
        self._files[label] = f

    def _emit(self, label: str, line: str) -> None:
        if self.prefix:
            self.output.write(f"{label.ljust(self.width)} | {line}\n")
        else:
            self.output.write(f"{line}\n")

    def poll(self) -> int:
        """Write all complete new lines. Returns the number written."""
        count = 0
        for label, f in self._files.items():
            while True:
                chunk = f.readline()
                if not chunk:
                    break
                text = self._pending[label] + chunk
                if not text.endswith("\n"):
                    self._pending[label] = text
                    break
                self._pending[label] = ""
                self._emit(label, text.rstrip("\n"))
                count += 1
        if count:
            self.output.flush()
        return count

    def flush(self) -> None:
        """Write any trailing partial lines."""
        self.poll()
        for label, text in self._pending.items():
            if text:
                self._emit(label, text)
                self._pending[label] = ""
        self.output.flush()

    def close(self) -> None:
        for f in self._files.values():
            f.close()
        self._files.clear()


def follow_logs(
    sources: List[Tuple[str, str]],
    follow: bool = False,
    tail: Optional[int] = None,
    stop: Optional[Callable[[], bool]] = None,
    output: Optional[TextIO] = None,
    poll_interval: float = 0.1,
) -> None:
    """
    Print the output of several containers with name prefixes.

    Args:
        sources: (label, container ID) pairs
        follow: Keep following until ``stop`` returns True
        tail: Number of existing lines per container
        stop: Polled in follow mode
    """
    follower = LogFollower(sources, output=output, tail=tail)
    try:
        follower.poll()
        while follow and not (stop and stop()):
            time.sleep(poll_interval)
            follower.poll()
        follower.flush()
    except KeyboardInterrupt:
        pass
    finally:
        follower.close()


def print_logs(
    container_id: str,
    follow: bool = False,
    tail: Optional[int] = None,
    timestamps: bool = False,
    stop: Optional[Callable[[], bool]] = None,
) -> None:
    """
    Print container logs to stdout.

    Args:
        container_id: Container ID
        follow: Follow log output
        tail: Number of lines from end
        timestamps: Prefix each line with the time it is printed
    """
    try:
        for line in read_logs(container_id, follow=follow, tail=tail, stop=stop):
            if timestamps:
                print(f"{_timestamp()}Z {line}")
            else:
                print(line, flush=follow)
    except KeyboardInterrupt:
        pass
