"""Tests for CollaboratorGateway timeouts and retry policy."""

import threading
import time

import pytest

from market_kernel.exceptions import CollaboratorTimeoutError
from market_kernel.services.collaborator_gateway import CollaboratorGateway


class _Flaky:
    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("boom")
        return value * 2


@pytest.fixture
def fast_gateway():
    gw = CollaboratorGateway(timeout_seconds=0.05, read_retries=1, max_workers=2)
    yield gw
    gw.shutdown(wait=False)


class TestCollaboratorGateway:

    def test_returns_result(self, gateway):
        assert gateway.call_read("double", lambda x: x * 2, 21) == 42
        assert gateway.call_write("double", lambda x: x * 2, 4) == 8

    def test_read_retried_once(self, gateway):
        flaky = _Flaky(failures=1)
        assert gateway.call_read("flaky", flaky, 5) == 10
        assert flaky.calls == 2

    def test_read_gives_up_after_retries(self, gateway):
        flaky = _Flaky(failures=2)
        with pytest.raises(ConnectionError):
            gateway.call_read("flaky", flaky, 5)
        assert flaky.calls == 2

    def test_write_never_retried(self, gateway):
        flaky = _Flaky(failures=1)
        with pytest.raises(ConnectionError):
            gateway.call_write("flaky", flaky, 5)
        assert flaky.calls == 1

    def test_slow_call_times_out(self, fast_gateway):
        release = threading.Event()

        with pytest.raises(CollaboratorTimeoutError) as exc_info:
            fast_gateway.call_write("stall", release.wait, 1.0)

        release.set()
        assert exc_info.value.operation == "stall"
        assert exc_info.value.timeout_seconds == 0.05

    def test_timeout_logged(self, fast_gateway, captured_logs):
        with pytest.raises(CollaboratorTimeoutError):
            fast_gateway.call_write("sleepy", time.sleep, 0.3)

        timeouts = [r for r in captured_logs() if r["message"] == "collaborator_timeout"]
        assert timeouts[0]["operation"] == "sleepy"

    @pytest.mark.parametrize(
        "kwargs",
        [{"timeout_seconds": 0}, {"timeout_seconds": -1.0}, {"read_retries": -1}],
    )
    def test_rejects_bad_settings(self, kwargs):
        with pytest.raises(ValueError):
            CollaboratorGateway(**kwargs)
