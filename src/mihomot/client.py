"""HTTP client for the daemon's control API.

Stateless apart from the pooled httpx client, which is safe to share between
concurrent tasks: every call takes its parameters explicitly and keeps no
per-request state on the instance. Network failures never escape as httpx
exceptions; they are converted into the classified errors in mihomot.errors.
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from mihomot.errors import (
    ControlConnectionError,
    ControlError,
    ControlTimeoutError,
    DeserializationError,
    HttpStatusError,
    ProbeError,
)
from mihomot.models import (
    ConfigSnapshot,
    FailureReason,
    ProxyGroup,
    TrafficSample,
    parse_proxies,
)

log = structlog.get_logger()

# Status codes the delay endpoint uses to report a failed measurement
_DELAY_TIMEOUT_STATUSES = {408, 504}
_DELAY_CONNECT_STATUSES = {503}


class ControlClient:
    """Async client for one daemon endpoint.

    Args:
        base_url: Control API root, e.g. "http://127.0.0.1:9090"
        secret: Bearer secret; an empty string sends no Authorization header
        timeout: Seconds allowed for each control call
        http: Shared httpx client (connection pool). Created if omitted.
    """

    def __init__(
        self,
        base_url: str,
        secret: str = "",
        *,
        timeout: float = 5.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.timeout = timeout
        self._http = http or httpx.AsyncClient(timeout=timeout)

    @property
    def http(self) -> httpx.AsyncClient:
        """The underlying pooled httpx client."""
        return self._http

    def with_endpoint(self, base_url: str, secret: str) -> ControlClient:
        """Return a client for another endpoint sharing this connection pool."""
        return ControlClient(base_url, secret, timeout=self.timeout, http=self._http)

    async def aclose(self) -> None:
        """Close the connection pool."""
        await self._http.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _headers(self) -> dict[str, str]:
        if self.secret:
            return {"Authorization": f"Bearer {self.secret}"}
        return {}

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a control request and fail on anything but a 2xx answer.

        Raises:
            ControlConnectionError: Daemon refused or unreachable
            ControlTimeoutError: No answer within the timeout
            HttpStatusError: Non-2xx status
            ControlError: Any other transport failure
        """
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = await self._http.request(
                method, self._url(path), headers=self._headers(), **kwargs
            )
        except httpx.TimeoutException as e:
            raise ControlTimeoutError(f"{method} {path}: {str(e) or 'timed out'}") from e
        except httpx.ConnectError as e:
            raise ControlConnectionError(f"{self.base_url}: {e}") from e
        except httpx.HTTPError as e:
            raise ControlError(f"{method} {path}: {type(e).__name__}: {e}") from e

        if not response.is_success:
            log.debug("control_http_error", method=method, path=path, status=response.status_code)
            raise HttpStatusError(response.status_code, response.reason_phrase)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except (ValueError, UnicodeDecodeError) as e:
            raise DeserializationError(str(e)) from e

    # ─────────────────────────────────────────────────────────────────────────
    # Control API
    # ─────────────────────────────────────────────────────────────────────────

    async def fetch_proxies(self) -> dict[str, ProxyGroup]:
        """GET /proxies as a complete name -> group mapping."""
        response = await self._request("GET", "/proxies")
        return parse_proxies(self._json(response))

    async def fetch_config(self) -> ConfigSnapshot:
        """GET /configs as an immutable snapshot."""
        response = await self._request("GET", "/configs")
        return ConfigSnapshot.from_api(self._json(response))

    async def patch_config(self, partial: dict[str, Any]) -> None:
        """PATCH /configs with daemon field names.

        Success only means the daemon accepted the request. Callers must
        follow up with fetch_config() to learn the value it actually applied.
        """
        await self._request("PATCH", "/configs", json=partial)

    async def select_proxy(self, group: str, member: str) -> None:
        """PUT /proxies/{group} to make `member` the active proxy.

        Callers refetch proxies afterwards to observe the daemon's selection.
        """
        await self._request("PUT", f"/proxies/{quote(group, safe='')}", json={"name": member})

    async def stream_traffic(self) -> AsyncIterator[TrafficSample]:
        """Yield samples from the long-lived GET /traffic stream until it ends.

        Raises:
            ControlError: Same classification as the other control calls
        """
        timeout = httpx.Timeout(self.timeout, read=None)
        try:
            async with self._http.stream(
                "GET", self._url("/traffic"), headers=self._headers(), timeout=timeout
            ) as response:
                if not response.is_success:
                    raise HttpStatusError(response.status_code, response.reason_phrase)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        payload = json.loads(line)
                    except ValueError as e:
                        raise DeserializationError(f"traffic line: {e}") from e
                    yield TrafficSample.from_api(payload)
        except httpx.TimeoutException as e:
            raise ControlTimeoutError(f"GET /traffic: {str(e) or 'timed out'}") from e
        except httpx.ConnectError as e:
            raise ControlConnectionError(f"{self.base_url}: {e}") from e
        except httpx.HTTPError as e:
            raise ControlError(f"GET /traffic: {type(e).__name__}: {e}") from e

    # ─────────────────────────────────────────────────────────────────────────
    # Latency measurements
    # ─────────────────────────────────────────────────────────────────────────

    async def probe(self, url: str, timeout_ms: int) -> int:
        """HEAD `url` and return the elapsed wall time in milliseconds.

        Any 2xx or 3xx answer counts as reachable; redirects are not followed.
        The daemon secret is not sent, since the target is a third party.

        Raises:
            ProbeError: With TIMEOUT, CONNECT_ERROR or OTHER as the reason
        """
        start = time.monotonic()
        try:
            response = await self._http.head(
                url, timeout=timeout_ms / 1000, follow_redirects=False
            )
        except httpx.TimeoutException as e:
            raise ProbeError(FailureReason.TIMEOUT, str(e) or "timed out") from e
        except httpx.ConnectError as e:
            raise ProbeError(FailureReason.CONNECT_ERROR, str(e)) from e
        except httpx.HTTPError as e:
            raise ProbeError(FailureReason.OTHER, f"{type(e).__name__}: {e}") from e
        elapsed_ms = int((time.monotonic() - start) * 1000)

        if not 200 <= response.status_code < 400:
            raise ProbeError(FailureReason.OTHER, f"HTTP {response.status_code}")
        return elapsed_ms

    async def proxy_delay(self, name: str, url: str, timeout_ms: int) -> int:
        """Ask the daemon to measure one proxy against `url`.

        GET /proxies/{name}/delay?url=...&timeout=... answers {"delay": ms}.
        The request itself is allowed a little longer than the measurement.

        Raises:
            ProbeError: With TIMEOUT, CONNECT_ERROR or OTHER as the reason
        """
        try:
            response = await self._http.get(
                self._url(f"/proxies/{quote(name, safe='')}/delay"),
                params={"url": url, "timeout": timeout_ms},
                headers=self._headers(),
                timeout=timeout_ms / 1000 + self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProbeError(FailureReason.TIMEOUT, str(e) or "timed out") from e
        except httpx.ConnectError as e:
            raise ProbeError(FailureReason.CONNECT_ERROR, str(e)) from e
        except httpx.HTTPError as e:
            raise ProbeError(FailureReason.OTHER, f"{type(e).__name__}: {e}") from e

        status = response.status_code
        if status in _DELAY_TIMEOUT_STATUSES:
            raise ProbeError(FailureReason.TIMEOUT, f"HTTP {status}")
        if status in _DELAY_CONNECT_STATUSES:
            raise ProbeError(FailureReason.CONNECT_ERROR, f"HTTP {status}")
        if not response.is_success:
            raise ProbeError(FailureReason.OTHER, f"HTTP {status}")

        try:
            delay = response.json()["delay"]
        except (ValueError, KeyError, TypeError) as e:
            raise ProbeError(FailureReason.OTHER, f"bad delay response: {e}") from e
        if isinstance(delay, bool) or not isinstance(delay, int) or delay < 0:
            raise ProbeError(FailureReason.OTHER, f"bad delay value: {delay!r}")
        return delay
