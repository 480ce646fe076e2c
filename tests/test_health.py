"""Tests for tinydock.health."""

import os
import sys

import pytest

from tinydock.health import (HEALTH_HEALTHY, HEALTH_STARTING, HEALTH_UNHEALTHY,
                             Healthcheck, HealthState, ProbeResult,
                             normalize_test, parse_duration, probe, probe_due,
                             record_probe)

requires_posix = pytest.mark.skipif(
    sys.platform == "win32" or not os.path.exists("/bin/sh"),
    reason="Requires a POSIX system with /bin/sh",
)


def result(exit_code, start=100.0):
    return ProbeResult(exit_code=exit_code, output="", start=start, end=start + 0.1)


class TestParseDuration:
    """Test duration parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [("10s", 10.0), ("1m30s", 90.0), ("500ms", 0.5), ("1h", 3600.0), ("2", 2.0), (3, 3.0)],
    )
    def test_valid(self, value, expected):
        """Test accepted duration forms."""
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "abc", "10x", "s10", True])
    def test_invalid(self, value):
        """Test rejected duration forms."""
        with pytest.raises(ValueError):
            parse_duration(value)


class TestHealthcheck:
    """Test healthcheck definitions."""

    def test_string_test_is_shell_form(self):
        """Test a plain string becomes CMD-SHELL."""
        assert normalize_test("curl -f localhost") == ["CMD-SHELL", "curl -f localhost"]

    def test_invalid_test_prefix(self):
        """Test a list must start with CMD, CMD-SHELL or NONE."""
        with pytest.raises(ValueError):
            normalize_test(["curl", "localhost"])

    def test_argv(self):
        """Test probe command lines."""
        assert Healthcheck(test=["CMD", "true"]).argv() == ["true"]
        assert Healthcheck(test=["CMD-SHELL", "exit 0"]).argv() == ["/bin/sh", "-c", "exit 0"]

    def test_enabled(self):
        """Test NONE and disable turn the check off."""
        assert Healthcheck(test=["CMD", "true"]).enabled
        assert not Healthcheck(test=["NONE"]).enabled
        assert not Healthcheck(test=["CMD", "true"], disable=True).enabled
        assert not Healthcheck().enabled

    def test_from_dict(self):
        """Test round trip through a stored dict."""
        assert Healthcheck.from_dict(None) is None
        check = Healthcheck.from_dict({"test": ["CMD", "true"], "retries": 5})
        assert check.retries == 5


class TestRecordProbe:
    """Test health state transitions."""

    def test_success_is_healthy(self):
        """Test a passing probe marks the container healthy."""
        state = record_probe(HealthState(status=HEALTH_STARTING), result(0), Healthcheck(test=["CMD", "true"]))
        assert state.status == HEALTH_HEALTHY
        assert state.failing_streak == 0

    def test_unhealthy_after_retries(self):
        """Test consecutive failures reach unhealthy."""
        check = Healthcheck(test=["CMD", "false"], retries=2)
        state = HealthState(status=HEALTH_STARTING)
        record_probe(state, result(1), check)
        assert state.status == HEALTH_STARTING
        record_probe(state, result(1), check)
        assert state.status == HEALTH_UNHEALTHY
        assert state.failing_streak == 2

    def test_success_resets_streak(self):
        """Test a success clears the failing streak."""
        check = Healthcheck(test=["CMD", "false"], retries=3)
        state = HealthState(status=HEALTH_STARTING)
        record_probe(state, result(1), check)
        record_probe(state, result(0), check)
        assert state.failing_streak == 0
        assert state.status == HEALTH_HEALTHY

    def test_start_period_failures_not_counted(self):
        """Test failures inside the start period are ignored."""
        check = Healthcheck(test=["CMD", "false"], retries=1, start_period=60)
        state = HealthState(status=HEALTH_STARTING)
        record_probe(state, result(1, start=110.0), check, started_at=100.0)
        assert state.status == HEALTH_STARTING
        assert state.failing_streak == 0

    def test_log_is_bounded(self):
        """Test only the most recent probe results are kept."""
        check = Healthcheck(test=["CMD", "true"])
        state = HealthState()
        for i in range(10):
            record_probe(state, result(0, start=float(i)), check)
        assert len(state.log) == 5
        assert state.log[-1]["start"] == 9.0


class TestProbeDue:
    """Test probe scheduling."""

    def test_first_probe_immediate(self):
        """Test the first probe is always due."""
        assert probe_due(HealthState(), Healthcheck(test=["CMD", "true"]))

    def test_interval(self):
        """Test probes wait for the interval."""
        check = Healthcheck(test=["CMD", "true"], interval=5)
        state = HealthState(last_probe=100.0)
        assert not probe_due(state, check, now=104.0)
        assert probe_due(state, check, now=105.0)


@requires_posix
class TestProbe:
    """Test running probes."""

    def test_passing_probe(self):
        """Test a zero exit status."""
        outcome = probe(Healthcheck(test=["CMD-SHELL", "echo ok"]))
        assert outcome.ok
        assert "ok" in outcome.output

    def test_failing_probe(self):
        """Test a non-zero exit status."""
        outcome = probe(Healthcheck(test=["CMD-SHELL", "exit 3"]))
        assert outcome.exit_code == 3
        assert not outcome.ok

    def test_timeout(self):
        """Test a probe exceeding its timeout fails."""
        outcome = probe(Healthcheck(test=["CMD-SHELL", "sleep 5"], timeout=0.2))
        assert not outcome.ok
        assert "timeout" in outcome.output

    def test_missing_executable(self):
        """Test a missing command fails the probe."""
        outcome = probe(Healthcheck(test=["CMD", "/nonexistent/tinydock-probe"]))
        assert outcome.exit_code == 127
