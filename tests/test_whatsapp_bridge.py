from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from whatsroute.adapters.whatsapp_bridge import WhatsAppBridge, classify_response
from whatsroute.core.models import SendStatus

OPS = "120363000000000001@g.us"


def _bridge(handler) -> WhatsAppBridge:
    client = httpx.AsyncClient(base_url="http://bridge.test", transport=httpx.MockTransport(handler))
    return WhatsAppBridge(client)


@pytest.mark.parametrize(
    ("status", "body", "expected"),
    [
        (200, {"ok": True}, SendStatus.OK),
        (404, {"error": "group_not_found"}, SendStatus.PERMANENT_ERROR),
        (409, {"error": "not_in_group"}, SendStatus.PERMANENT_ERROR),
        (403, {}, SendStatus.PERMANENT_ERROR),
        (429, {"error": "rate_limited"}, SendStatus.TRANSIENT_ERROR),
        (503, {}, SendStatus.TRANSIENT_ERROR),
    ],
)
def test_classify_response(status: int, body: dict, expected: SendStatus) -> None:
    assert classify_response(httpx.Response(status, json=body)).status is expected


def test_classify_response_tolerates_non_json_body() -> None:
    result = classify_response(httpx.Response(502, text="<html>bad gateway</html>"))
    assert result.status is SendStatus.TRANSIENT_ERROR
    assert result.detail == "bridge returned 502"


def test_send_posts_text_to_group() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True})

    result = asyncio.run(_bridge(handler).send(OPS, "alert"))

    assert result.status is SendStatus.OK
    assert seen == {"path": f"/groups/{OPS}/messages", "body": {"text": "alert"}}


def test_send_connection_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = asyncio.run(_bridge(handler).send(OPS, "alert"))

    assert result.status is SendStatus.TRANSIENT_ERROR
    assert "unreachable" in result.detail


def test_fetch_messages_advances_cursor() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["after"] == "5"
        return httpx.Response(200, json={"messages": [{"seq": 6}, {"seq": 8}, {"seq": 7}]})

    items, next_after = asyncio.run(_bridge(handler).fetch_messages(after=5, limit=10))

    assert len(items) == 3
    assert next_after == 8


def test_list_groups_skips_entries_without_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"groups": [{"id": OPS, "name": "Ops"}, {"name": "ghost"}]})

    assert asyncio.run(_bridge(handler).list_groups()) == [{"id": OPS, "name": "Ops"}]
