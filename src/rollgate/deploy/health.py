"""Health check gate.

Polls an instance over HTTP until one of its health paths answers or the
timeout elapses. Candidate paths are tried in order on every attempt
(``/up`` then ``/`` for Rails), any 2xx or 3xx response counts as healthy,
and connection errors or 4xx/5xx mean "not yet".

The gate never raises on an unhealthy instance: it returns a
:class:`~rollgate.deploy.results.HealthResult` the caller inspects. Only a
non-positive timeout or interval is rejected, with ``ValueError``.

Example::

    gate = HealthGate()
    result = gate.await_healthy("localhost:13020", ["/up", "/"], timeout=60, interval=2)
    if not result.healthy:
        ...

Tags:
    health, httpx, probe, polling, gate
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence

import httpx

from rollgate.core.logging import get_logger
from rollgate.deploy.results import HealthResult

logger = get_logger(__name__)


class HealthGate:
    """HTTP health gate over a reusable ``httpx.Client``.

    Parameters
    ----------
    client
        Optional client; tests pass one built on ``httpx.MockTransport``.
    request_timeout
        Per-request timeout in seconds.
    sleep, clock
        Injectable for deterministic tests.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        request_timeout: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client or httpx.Client(follow_redirects=False)
        self._request_timeout = request_timeout
        self._sleep = sleep
        self._clock = clock

    def await_healthy(
        self,
        address: str,
        paths: Sequence[str],
        timeout: float = 60.0,
        interval: float = 2.0,
    ) -> HealthResult:
        """Probe ``address`` until healthy or ``timeout`` seconds have elapsed."""
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        if not paths:
            raise ValueError("at least one health path is required")

        base = address if address.startswith(("http://", "https://")) else f"http://{address}"
        started = self._clock()
        deadline = started + timeout
        attempts = 0
        last_error: str | None = None

        while True:
            attempts += 1
            for path in paths:
                remaining = max(deadline - self._clock(), 0.1)
                status, error = self._probe(f"{base}{path}", min(self._request_timeout, remaining))
                if status is not None and 200 <= status < 400:
                    elapsed = self._clock() - started
                    logger.debug(
                        "health.passed", address=address, path=path, status=status, attempts=attempts
                    )
                    return HealthResult(
                        healthy=True,
                        address=address,
                        path=path,
                        status_code=status,
                        attempts=attempts,
                        elapsed_seconds=elapsed,
                    )
                last_error = error or f"{path} returned {status}"

            if self._clock() + interval > deadline:
                break
            self._sleep(interval)

        elapsed = self._clock() - started
        logger.warning(
            "health.timed_out", address=address, attempts=attempts, last_error=last_error
        )
        return HealthResult(
            healthy=False,
            address=address,
            attempts=attempts,
            elapsed_seconds=elapsed,
            last_error=last_error,
        )

    def _probe(self, url: str, timeout: float) -> tuple[int | None, str | None]:
        try:
            response = self._client.get(url, timeout=timeout)
        except httpx.HTTPError as exc:
            return None, f"{type(exc).__name__}: {exc}"
        return response.status_code, None

    def close(self) -> None:
        self._client.close()


__all__ = ["HealthGate"]
