"""Tests for rollgate.deploy.health using httpx.MockTransport and a fake clock."""

from __future__ import annotations

import httpx
import pytest

from rollgate.deploy.health import HealthGate


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def gate_for(handler, clock: FakeClock) -> HealthGate:
    client = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=False)
    return HealthGate(client=client, sleep=clock.sleep, clock=clock)


class TestHealthGate:
    def test_first_path_healthy(self):
        clock = FakeClock()
        gate = gate_for(lambda request: httpx.Response(200), clock)
        result = gate.await_healthy("localhost:13020", ["/up", "/"], timeout=60, interval=2)
        assert result.healthy
        assert result.path == "/up"
        assert result.status_code == 200
        assert result.attempts == 1
        assert clock.sleeps == []

    def test_falls_back_to_second_path(self):
        clock = FakeClock()
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(404 if request.url.path == "/up" else 200)

        result = gate_for(handler, clock).await_healthy("localhost:3020", ["/up", "/"])
        assert result.healthy
        assert result.path == "/"
        assert seen == ["/up", "/"]

    def test_redirect_counts_as_healthy(self):
        clock = FakeClock()
        gate = gate_for(lambda request: httpx.Response(302, headers={"Location": "/login"}), clock)
        assert gate.await_healthy("localhost:3020", ["/"]).healthy

    def test_becomes_healthy_after_retries(self):
        clock = FakeClock()
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        result = gate_for(handler, clock).await_healthy("localhost:3020", ["/"], timeout=60, interval=2)
        assert result.healthy
        assert result.attempts == 3
        assert clock.sleeps == [2, 2]

    def test_times_out(self):
        clock = FakeClock()
        gate = gate_for(lambda request: httpx.Response(503), clock)
        result = gate.await_healthy("localhost:13022", ["/up", "/"], timeout=10, interval=2)

        assert result.healthy is False
        assert result.timed_out
        assert result.attempts == 6  # t = 0, 2, 4, 6, 8, 10
        assert result.elapsed_seconds == 10
        assert result.last_error == "/ returned 503"

    def test_connection_error_is_reported(self):
        clock = FakeClock()

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = gate_for(handler, clock).await_healthy("localhost:3020", ["/"], timeout=4, interval=2)
        assert not result.healthy
        assert result.last_error.startswith("ConnectError")

    def test_never_sleeps_past_deadline(self):
        clock = FakeClock()
        gate = gate_for(lambda request: httpx.Response(500), clock)
        gate.await_healthy("localhost:3020", ["/"], timeout=5, interval=2)
        assert clock.now <= 5

    def test_hanging_requests_do_not_overrun_timeout(self):
        clock = FakeClock()
        request_timeouts: list[float] = []

        def handler(request: httpx.Request) -> httpx.Response:
            timeout = request.extensions["timeout"]["read"]
            request_timeouts.append(timeout)
            clock.now += timeout
            raise httpx.ReadTimeout("timed out", request=request)

        result = gate_for(handler, clock).await_healthy("localhost:3020", ["/up", "/"], timeout=8, interval=2)

        assert not result.healthy
        assert request_timeouts == [5.0, 3.0]
        assert clock.now == 8

    def test_full_url_address(self):
        clock = FakeClock()
        urls = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(200)

        gate_for(handler, clock).await_healthy("http://127.0.0.1:3020", ["/up"])
        assert urls == ["http://127.0.0.1:3020/up"]

    @pytest.mark.parametrize(
        "kwargs,message",
        [
            ({"timeout": 0}, "timeout"),
            ({"interval": 0}, "interval"),
            ({"paths": []}, "health path"),
        ],
    )
    def test_invalid_arguments(self, kwargs, message):
        gate = gate_for(lambda request: httpx.Response(200), FakeClock())
        args = {"address": "localhost:3020", "paths": ["/"], **kwargs}
        with pytest.raises(ValueError, match=message):
            gate.await_healthy(**args)
