import base64
import logging

import httpx
import pytest
import respx
from httpx import Response
from targetprocess_mcp.core.errors import (
    ClientError,
    TargetProcessParseError,
    TransientAPIError,
)
from targetprocess_mcp.core.transport import Transport

BASE = "https://acme.tpondemand.com/api/v1"


def _transport(**kwargs):
    kwargs.setdefault("username", "alice")
    kwargs.setdefault("password", "s3cret")
    return Transport(base_url=BASE, **kwargs)


@pytest.mark.asyncio
@respx.mock
async def test_basic_auth_header():
    route = respx.get(f"{BASE}/Bugs").mock(return_value=Response(200, json={"Items": []}))

    transport = _transport()
    await transport.send("GET", "/Bugs")
    await transport.aclose()

    expected = "Basic " + base64.b64encode(b"alice:s3cret").decode()
    assert route.calls[0].request.headers["Authorization"] == expected


@pytest.mark.asyncio
@respx.mock
async def test_access_token_sent_as_query_param():
    route = respx.get(f"{BASE}/Bugs").mock(return_value=Response(200, json={"Items": []}))

    transport = Transport(base_url=BASE, access_token="tok-123")
    await transport.send("GET", "/Bugs", params={"take": 5})
    await transport.aclose()

    sent = route.calls[0].request
    assert sent.url.params["access_token"] == "tok-123"
    assert sent.url.params["take"] == "5"
    assert "Authorization" not in sent.headers


def test_missing_credentials_rejected():
    with pytest.raises(ValueError):
        Transport(base_url=BASE)
    with pytest.raises(ValueError):
        Transport(base_url="", access_token="tok")


@pytest.mark.asyncio
@respx.mock
async def test_5xx_is_transient_and_keeps_message():
    respx.get(f"{BASE}/Bugs").mock(
        return_value=Response(503, json={"Message": "Service unavailable"})
    )

    transport = _transport()
    with pytest.raises(TransientAPIError) as exc:
        await transport.send("GET", "/Bugs")
    await transport.aclose()

    assert exc.value.status_code == 503
    assert exc.value.message == "Service unavailable"
    assert exc.value.response_json == {"Message": "Service unavailable"}


@pytest.mark.asyncio
@respx.mock
async def test_4xx_is_client_error_with_fallback_message_keys():
    respx.get(f"{BASE}/Bugs/9").mock(
        return_value=Response(404, json={"ErrorMessage": "Bug 9 not found"})
    )

    transport = _transport()
    with pytest.raises(ClientError) as exc:
        await transport.send("GET", "/Bugs/9")
    await transport.aclose()

    assert exc.value.status_code == 404
    assert "Bug 9 not found" in str(exc.value)


@pytest.mark.asyncio
@respx.mock
async def test_non_json_error_body_is_kept_as_text():
    respx.get(f"{BASE}/Bugs").mock(return_value=Response(502, text="<html>bad gateway</html>"))

    transport = _transport()
    with pytest.raises(TransientAPIError) as exc:
        await transport.send("GET", "/Bugs")
    await transport.aclose()

    assert exc.value.response_text == "<html>bad gateway</html>"
    assert exc.value.response_json is None


@pytest.mark.asyncio
@respx.mock
async def test_timeout_is_transient_without_status():
    respx.get(f"{BASE}/Bugs").mock(side_effect=httpx.ReadTimeout("slow"))

    transport = _transport()
    with pytest.raises(TransientAPIError) as exc:
        await transport.send("GET", "/Bugs")
    await transport.aclose()

    assert exc.value.status_code is None
    assert str(exc.value).startswith("network GET /Bugs")


@pytest.mark.asyncio
@respx.mock
async def test_non_json_success_raises_parse_error_with_full_body():
    body = '{"Items": [{"Name": "Bug"}' + " " * 600
    respx.get(f"{BASE}/Index/meta").mock(return_value=Response(200, text=body))

    transport = _transport()
    with pytest.raises(TargetProcessParseError) as exc:
        await transport.send("GET", "/Index/meta")
    await transport.aclose()

    assert exc.value.body == body


@pytest.mark.asyncio
@respx.mock
async def test_top_level_array_is_a_parse_error():
    respx.get(f"{BASE}/Bugs").mock(return_value=Response(200, json=[1, 2]))

    transport = _transport()
    with pytest.raises(TargetProcessParseError):
        await transport.send("GET", "/Bugs")
    await transport.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_empty_body_returns_empty_dict():
    respx.post(f"{BASE}/Bugs/5").mock(return_value=Response(204))

    transport = _transport()
    assert await transport.send("POST", "/Bugs/5", json={"Name": "x"}) == {}
    await transport.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_tp_call_event_logged(caplog):
    respx.get(f"{BASE}/Bugs").mock(return_value=Response(200, json={"Items": []}))

    transport = _transport()
    with caplog.at_level(logging.INFO, logger="targetprocess_mcp.events"):
        await transport.send("GET", "/Bugs", tool="search")
    await transport.aclose()

    record = next(r for r in caplog.records if r.getMessage() == "tp_call")
    assert record.tool == "search"
    assert record.status == 200
    assert record.endpoint == "/Bugs"
    assert record.duration_ms >= 0
    assert "s3cret" not in caplog.text


@pytest.mark.asyncio
async def test_injected_http_client_is_not_closed():
    http = httpx.AsyncClient(base_url=BASE)
    transport = Transport(base_url=BASE, access_token="tok", http=http)
    await transport.aclose()
    assert not http.is_closed
    await http.aclose()
