"""
Tests for response classification and the vendor HTTP client.
"""

import json

import httpx
import pytest

from conftest import VendorStub
from tether.integrations import Fatal, IntegrationClient, NeedsRefresh, Ok, RateLimited
from tether.integrations.errors import AuthenticationError, RequestError, UpstreamError, trips_breaker
from tether.integrations.outcome import classify_exception, classify_response


def _response(status, **kwargs):
    return httpx.Response(status, request=httpx.Request("GET", "https://api.test/x"), **kwargs)


class TestClassifyResponse:
    """Tests for mapping HTTP responses to outcomes."""

    def test_success_json(self):
        assert classify_response("p", _response(200, json={"a": 1})) == Ok({"a": 1})

    def test_success_text_and_empty(self):
        assert classify_response("p", _response(200, text="plain")) == Ok("plain")
        assert classify_response("p", _response(204)) == Ok(None)

    def test_unauthorized(self):
        assert isinstance(classify_response("p", _response(401)), NeedsRefresh)

    def test_rate_limited(self):
        outcome = classify_response("p", _response(429, headers={"Retry-After": "30"}))
        assert outcome == RateLimited("30")
        assert classify_response("p", _response(429)) == RateLimited(None)

    def test_forbidden(self):
        outcome = classify_response("p", _response(403, text="scope missing"))
        assert isinstance(outcome, Fatal)
        assert isinstance(outcome.error, AuthenticationError)
        assert outcome.error.response_body == "scope missing"

    @pytest.mark.parametrize("status", [500, 502, 503, 504])
    def test_server_errors_trip(self, status):
        outcome = classify_response("p", _response(status))
        assert isinstance(outcome.error, UpstreamError)
        assert outcome.error.kind == UpstreamError.SERVER
        assert outcome.error.status_code == status
        assert trips_breaker(outcome.error)

    @pytest.mark.parametrize("status", [400, 404, 409, 422])
    def test_client_errors_neutral(self, status):
        outcome = classify_response("p", _response(status))
        assert isinstance(outcome.error, RequestError)
        assert not trips_breaker(outcome.error)

    def test_exceptions(self):
        request = httpx.Request("GET", "https://api.test/x")

        timeout = classify_exception("p", httpx.ReadTimeout("slow", request=request))
        network = classify_exception("p", httpx.ConnectError("refused", request=request))

        assert timeout.error.kind == UpstreamError.TIMEOUT
        assert network.error.kind == UpstreamError.NETWORK

    def test_error_str(self):
        error = RequestError("Request failed", "github", status_code=404)
        assert str(error) == "[github] Request failed (status=404)"
        assert error.message == "Request failed"


class TestIntegrationClient:
    """Tests for IntegrationClient."""

    @pytest.mark.asyncio
    async def test_request_headers_and_body(self):
        stub = VendorStub(httpx.Response(201, json={"id": 9}))

        async with IntegrationClient("acme", "https://api.acme.test", transport=stub.transport()) as client:
            outcome = await client.request(
                "POST", "/items", token="tok", params={"q": "x"}, json={"name": "n"}
            )

        assert outcome == Ok({"id": 9})
        request = stub.requests[0]
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.headers["Accept"] == "application/json"
        assert request.url.params["q"] == "x"
        assert json.loads(request.content) == {"name": "n"}

    @pytest.mark.asyncio
    async def test_without_token(self):
        stub = VendorStub()
        client = IntegrationClient("acme", "https://api.acme.test", transport=stub.transport())

        await client.request("GET", "/public")
        await client.close()

        assert "Authorization" not in stub.requests[0].headers

    @pytest.mark.asyncio
    async def test_transport_error_not_raised(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        client = IntegrationClient("acme", "https://api.acme.test", transport=httpx.MockTransport(handler))

        outcome = await client.request("GET", "/x")
        await client.close()

        assert isinstance(outcome, Fatal)
        assert outcome.error.kind == UpstreamError.TIMEOUT
