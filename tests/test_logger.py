"""Tests for tinydock.logger."""

import io
import os

from tinydock.logger import (ContainerLogger, LogFollower, follow_logs,
                             get_log_size, log_event, read_events, read_logs)
from tinydock.utils import get_container_path


def write_output(container_id, text, mode="a"):
    path = os.path.join(get_container_path(container_id), "container.log")
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, mode) as f:
        f.write(text)


class TestEvents:
    """Test the lifecycle event log."""

    def test_log_event(self):
        """Test events are timestamped one per line."""
        log_event("abc", "start pid=1")
        log_event("abc", "exit code=0")
        events = read_events("abc")
        assert len(events) == 2
        assert events[0].endswith(" start pid=1")
        assert events[1].endswith(" exit code=0")

    def test_rotation(self):
        """Test the event log rotates once it exceeds its size limit."""
        with ContainerLogger("abc", max_size_mb=0) as logger:
            logger.write("first")
            logger.write("second")
        path = os.path.join(get_container_path("abc"), "events.log")
        assert os.path.exists(path + ".1")
        assert read_events("abc")[-1].endswith("second")

    def test_missing(self):
        """Test reading events of an unknown container."""
        assert read_events("missing") == []


class TestReadLogs:
    """Test reading container output."""

    def test_all_and_tail(self):
        """Test full output and tail."""
        write_output("abc", "one\ntwo\nthree\n")
        assert list(read_logs("abc")) == ["one", "two", "three"]
        assert list(read_logs("abc", tail=2)) == ["two", "three"]
        assert list(read_logs("abc", tail=0)) == []
        assert get_log_size("abc") == len("one\ntwo\nthree\n")

    def test_follow_until_stopped(self):
        """Test follow mode drains remaining output once stop returns True."""
        write_output("abc", "one\n")
        calls = []

        def stop():
            if not calls:
                write_output("abc", "two\npartial")
            calls.append(1)
            return len(calls) > 1

        lines = list(read_logs("abc", follow=True, stop=stop, poll_interval=0))
        assert lines == ["one", "two", "partial"]

    def test_missing(self):
        """Test a container without output."""
        assert list(read_logs("missing")) == []


class TestLogFollower:
    """Test multiplexed output."""

    def test_prefixed_lines(self):
        """Test lines are prefixed with padded labels."""
        write_output("c1", "ready\n")
        write_output("c2", "listening\n")
        output = io.StringIO()
        follower = LogFollower([("web", "c1"), ("database", "c2")], output=output)

        assert follower.poll() == 2
        write_output("c1", "request\nhalf")
        follower.poll()
        follower.flush()
        follower.close()

        assert output.getvalue().splitlines() == [
            "web      | ready",
            "database | listening",
            "web      | request",
            "web      | half",
        ]

    def test_tail(self):
        """Test tail limits the history per container."""
        write_output("c1", "a\nb\nc\n")
        output = io.StringIO()
        follower = LogFollower([("web", "c1")], output=output, tail=1)
        follower.poll()
        follower.close()
        assert output.getvalue() == "web | c\n"

    def test_follow_logs(self):
        """Test the one-shot multiplexed printer."""
        write_output("c1", "x\n")
        output = io.StringIO()
        follow_logs([("svc", "c1")], output=output)
        assert output.getvalue() == "svc | x\n"
