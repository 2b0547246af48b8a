"""Tests for the control API client."""

import json

import httpx
import pytest

from conftest import BASE_URL, PROBE_URL
from mihomot.client import ControlClient
from mihomot.errors import (
    ControlConnectionError,
    ControlError,
    ControlTimeoutError,
    DeserializationError,
    HttpStatusError,
    ProbeError,
)
from mihomot.models import FailureReason, Mode, TrafficSample


def make_client(handler, secret: str = "s3cret") -> ControlClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ControlClient(BASE_URL, secret, timeout=1.0, http=http)


class TestControlCalls:
    """Tests for fetch/patch/select against the fake daemon."""

    @pytest.mark.asyncio
    async def test_fetch_proxies(self, daemon):
        client = make_client(daemon.handler)
        try:
            groups = await client.fetch_proxies()
        finally:
            await client.aclose()

        assert groups["Proxy"].selected == "HK"
        request = daemon.requests[0]
        assert request.headers["Authorization"] == "Bearer s3cret"
        assert str(request.url) == f"{BASE_URL}/proxies"

    @pytest.mark.asyncio
    async def test_no_auth_header_without_secret(self, daemon):
        client = make_client(daemon.handler, secret="")
        try:
            await client.fetch_config()
        finally:
            await client.aclose()

        assert "Authorization" not in daemon.requests[0].headers

    @pytest.mark.asyncio
    async def test_fetch_config(self, daemon):
        client = make_client(daemon.handler)
        try:
            snapshot = await client.fetch_config()
        finally:
            await client.aclose()

        assert snapshot.mode is Mode.RULE
        assert snapshot.mixed_port == 7890

    @pytest.mark.asyncio
    async def test_patch_sends_daemon_field_names(self, daemon):
        client = make_client(daemon.handler)
        try:
            await client.patch_config({"tun": {"enable": True}})
        finally:
            await client.aclose()

        (request,) = daemon.requests_to("PATCH", "/configs")
        assert json.loads(request.content) == {"tun": {"enable": True}}

    @pytest.mark.asyncio
    async def test_select_proxy(self, daemon):
        client = make_client(daemon.handler)
        try:
            await client.select_proxy("Proxy", "JP")
        finally:
            await client.aclose()

        (request,) = daemon.requests_to("PUT", "/proxies/Proxy")
        assert json.loads(request.content) == {"name": "JP"}
        assert daemon.proxies["proxies"]["Proxy"]["now"] == "JP"

    @pytest.mark.asyncio
    async def test_group_name_is_path_quoted(self):
        seen = []

        async def handler(request):
            seen.append(request.url.raw_path)
            return httpx.Response(204)

        client = make_client(handler)
        try:
            await client.select_proxy("My Group/1", "a")
        finally:
            await client.aclose()

        assert seen == [b"/proxies/My%20Group%2F1"]


class TestErrorClassification:
    """Every failure surfaces as a ControlError subclass."""

    @pytest.mark.asyncio
    async def test_connection_refused(self, daemon):
        daemon.down = True
        client = make_client(daemon.handler)
        try:
            with pytest.raises(ControlConnectionError) as exc_info:
                await client.fetch_proxies()
        finally:
            await client.aclose()

        assert exc_info.value.user_message.startswith("Failed to connect:")

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)
        try:
            with pytest.raises(ControlTimeoutError):
                await client.fetch_config()
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_unauthorized(self, daemon):
        daemon.status_overrides[("GET", "/proxies")] = 401
        client = make_client(daemon.handler)
        try:
            with pytest.raises(HttpStatusError) as exc_info:
                await client.fetch_proxies()
        finally:
            await client.aclose()

        assert exc_info.value.status_code == 401
        assert exc_info.value.user_message.startswith("Server returned error: 401")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        async def handler(request):
            return httpx.Response(200, content=b"<html>")

        client = make_client(handler)
        try:
            with pytest.raises(DeserializationError) as exc_info:
                await client.fetch_config()
        finally:
            await client.aclose()

        assert exc_info.value.user_message.startswith("Failed to parse response:")

    @pytest.mark.asyncio
    async def test_other_transport_error(self):
        async def handler(request):
            raise httpx.RemoteProtocolError("peer closed", request=request)

        client = make_client(handler)
        try:
            with pytest.raises(ControlError):
                await client.fetch_proxies()
        finally:
            await client.aclose()


class TestMeasurements:
    """Tests for probe() and proxy_delay()."""

    @pytest.mark.asyncio
    async def test_probe_success(self, daemon):
        client = make_client(daemon.handler)
        try:
            ms = await client.probe(PROBE_URL, 1000)
        finally:
            await client.aclose()

        assert ms >= 0
        (request,) = daemon.requests
        assert request.method == "HEAD"
        assert "Authorization" not in request.headers

    @pytest.mark.asyncio
    async def test_probe_redirect_counts_as_reachable(self, daemon):
        daemon.probe_status = 301
        client = make_client(daemon.handler)
        try:
            assert await client.probe(PROBE_URL, 1000) >= 0
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_probe_server_error(self, daemon):
        daemon.probe_status = 500
        client = make_client(daemon.handler)
        try:
            with pytest.raises(ProbeError) as exc_info:
                await client.probe(PROBE_URL, 1000)
        finally:
            await client.aclose()

        assert exc_info.value.reason is FailureReason.OTHER

    @pytest.mark.asyncio
    async def test_probe_timeout(self):
        async def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        client = make_client(handler)
        try:
            with pytest.raises(ProbeError) as exc_info:
                await client.probe(PROBE_URL, 10)
        finally:
            await client.aclose()

        assert exc_info.value.reason is FailureReason.TIMEOUT

    @pytest.mark.asyncio
    async def test_probe_connect_error(self, daemon):
        daemon.down = True
        client = make_client(daemon.handler)
        try:
            with pytest.raises(ProbeError) as exc_info:
                await client.probe(PROBE_URL, 1000)
        finally:
            await client.aclose()

        assert exc_info.value.reason is FailureReason.CONNECT_ERROR

    @pytest.mark.asyncio
    async def test_proxy_delay(self, daemon):
        client = make_client(daemon.handler)
        try:
            delay = await client.proxy_delay("JP", PROBE_URL, 1500)
        finally:
            await client.aclose()

        assert delay == 250
        (request,) = daemon.requests_to("GET", "/proxies/JP/delay")
        assert request.url.params["url"] == PROBE_URL
        assert request.url.params["timeout"] == "1500"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "reason"),
        [
            (408, FailureReason.TIMEOUT),
            (504, FailureReason.TIMEOUT),
            (503, FailureReason.CONNECT_ERROR),
            (404, FailureReason.OTHER),
            (500, FailureReason.OTHER),
        ],
    )
    async def test_proxy_delay_status_classification(self, daemon, status, reason):
        daemon.delay_status["US"] = status
        client = make_client(daemon.handler)
        try:
            with pytest.raises(ProbeError) as exc_info:
                await client.proxy_delay("US", PROBE_URL, 1000)
        finally:
            await client.aclose()

        assert exc_info.value.reason is reason


class TestTrafficStream:
    """Tests for the streaming GET /traffic."""

    @pytest.mark.asyncio
    async def test_yields_one_sample_per_line(self, daemon):
        daemon.traffic_lines = ['{"up": 1, "down": 2}', "", '{"up": 3, "down": 4}']
        client = make_client(daemon.handler)
        try:
            samples = [s async for s in client.stream_traffic()]
        finally:
            await client.aclose()

        assert samples == [TrafficSample(down=2, up=1), TrafficSample(down=4, up=3)]

    @pytest.mark.asyncio
    async def test_bad_line_raises(self, daemon):
        daemon.traffic_lines = ["not json"]
        client = make_client(daemon.handler)
        try:
            with pytest.raises(DeserializationError):
                _ = [s async for s in client.stream_traffic()]
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_stream_connect_error(self, daemon):
        daemon.down = True
        client = make_client(daemon.handler)
        try:
            with pytest.raises(ControlConnectionError):
                _ = [s async for s in client.stream_traffic()]
        finally:
            await client.aclose()


class TestWithEndpoint:
    """Tests for endpoint switching."""

    @pytest.mark.asyncio
    async def test_shares_connection_pool(self, daemon):
        client = make_client(daemon.handler)
        other = client.with_endpoint("http://other.test:9090/", "new")
        try:
            assert other.http is client.http
            assert other.base_url == "http://other.test:9090"
            assert other.secret == "new"
            assert other.timeout == client.timeout
        finally:
            await client.aclose()
