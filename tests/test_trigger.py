import asyncio
import json
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from rebill.main import _handle
from rebill.services.expense_service import add_template, get_expenses

OWNER = "owner-1"


async def _call(request: bytes, *later: bytes):
    reader = asyncio.StreamReader()
    reader.feed_data(request)
    loop = asyncio.get_running_loop()
    for i, chunk in enumerate(later, start=1):
        loop.call_later(0.05 * i, reader.feed_data, chunk)
    loop.call_later(0.05 * (len(later) + 1), reader.feed_eof)
    writer = AsyncMock()
    written = bytearray()
    writer.write = lambda data: written.extend(data)
    writer.drain = AsyncMock()
    writer.close = lambda: None
    writer.wait_closed = AsyncMock()

    await _handle(reader, writer)

    raw = written.decode()
    body_start = raw.index("\r\n\r\n") + 4
    body = raw[body_start:]
    return raw[:body_start], json.loads(body) if body else None


def _post(body: str = "") -> bytes:
    return (
        "POST /generate-recurring-expenses HTTP/1.1\r\n"
        f"Content-Type: application/json\r\nContent-Length: {len(body)}\r\n\r\n{body}"
    ).encode()


async def test_trigger_runs_projection():
    await add_template(OWNER, "Rent", Decimal("150.00"), recurring_day=5)
    headers, body = await _call(_post('{"now": "2024-03-10"}'))
    assert "200 OK" in headers
    assert "Access-Control-Allow-Origin: *" in headers
    assert body["success"] is True
    assert body["stats"]["created"] == 1
    [instance] = await get_expenses(OWNER)
    assert instance.due_date == date(2024, 3, 5)


async def test_trigger_rerun_skips():
    await add_template(OWNER, "Rent", Decimal("150.00"), recurring_day=5)
    await _call(_post('{"now": "2024-03-10"}'))
    _, body = await _call(_post('{"now": "2024-03-20"}'))
    assert body["stats"]["created"] == 0
    assert body["stats"]["skipped"] == 1


async def test_trigger_rejects_bad_date():
    headers, body = await _call(_post('{"now": "yesterday"}'))
    assert "400" in headers
    assert body["success"] is False


async def test_trigger_store_failure_is_500():
    with patch("rebill.main.get_db", AsyncMock(side_effect=ConnectionError("db gone"))):
        headers, body = await _call(_post())
    assert "500" in headers
    assert body == {"success": False, "error": "db gone"}


async def test_preflight():
    headers, body = await _call(b"OPTIONS /generate-recurring-expenses HTTP/1.1\r\n\r\n")
    assert "204 No Content" in headers
    assert "Access-Control-Allow-Methods" in headers
    assert body is None


async def test_health_check_healthy():
    headers, body = await _call(b"GET /health HTTP/1.1\r\n\r\n")
    assert "200 OK" in headers
    assert body["status"] == "healthy"
    assert body["checks"]["db"] == "ok"


async def test_health_check_db_error():
    with patch("rebill.main.get_db", AsyncMock(side_effect=ConnectionError("db gone"))):
        headers, body = await _call(b"GET /health HTTP/1.1\r\n\r\n")
    assert "503" in headers
    assert body["status"] == "unhealthy"
    assert "error" in body["checks"]["db"]


async def test_unknown_route():
    headers, _ = await _call(b"GET /nope HTTP/1.1\r\n\r\n")
    assert "404" in headers


async def test_malformed_request():
    headers, body = await _call(b"")
    assert "400" in headers
    assert body["success"] is False


async def test_trigger_waits_for_body_sent_separately():
    await add_template(OWNER, "Rent", Decimal("150.00"), recurring_day=5)
    body = '{"now": "2024-03-10"}'
    request = _post(body)
    head, payload = request[: -len(body)], request[-len(body) :]
    headers, result = await _call(head, payload)
    assert "200 OK" in headers
    assert result["stats"]["created"] == 1
    [instance] = await get_expenses(OWNER)
    assert instance.due_date == date(2024, 3, 5)


async def test_truncated_body_is_rejected():
    headers, body = await _call(_post('{"now": "2024-03-10"}')[:-5])
    assert "400" in headers
    assert body["success"] is False
    assert await get_expenses(OWNER) == []
