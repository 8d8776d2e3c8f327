import asyncio
import json
import logging
import sys
from datetime import date

from rebill.config import settings
from rebill.db.database import close_db, get_db, init_db
from rebill.db.store import SQLiteExpenseStore
from rebill.logging import setup_logging
from rebill.services.projector import failure_envelope, run_projection

setup_logging(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)

TRIGGER_PATH = "/generate-recurring-expenses"
MAX_BODY = 65536
REASONS = {
    200: "OK",
    204: "No Content",
    400: "Bad Request",
    404: "Not Found",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


async def generate(now: date | None = None) -> dict:
    try:
        db = await get_db()
    except Exception as e:
        logger.error("Could not open the expense store", exc_info=True)
        return failure_envelope(e)
    return await run_projection(SQLiteExpenseStore(db), now or settings.now_override)


async def _health() -> tuple[int, dict]:
    checks: dict[str, str] = {}
    try:
        db = await get_db()
        await db.execute("SELECT 1")
        checks["db"] = "ok"
    except Exception as e:
        checks["db"] = f"error: {e}"
    healthy = checks["db"] == "ok"
    return (200 if healthy else 503), {"status": "healthy" if healthy else "unhealthy", "checks": checks}


def _cors_origin(headers: dict[str, str]) -> str:
    origin = headers.get("origin", "")
    if origin and origin in settings.allowed_origins:
        return origin
    return "*" if "*" in settings.allowed_origins else ""


def _parse_head(head: bytes) -> tuple[str, str, dict[str, str]]:
    lines = head.decode("latin-1").split("\r\n")
    method, path, *_ = lines[0].split(" ")
    headers = {}
    for line in lines[1:]:
        key, sep, value = line.partition(":")
        if sep:
            headers[key.strip().lower()] = value.strip()
    return method.upper(), path.split("?", 1)[0], headers


async def _read_request(reader: asyncio.StreamReader) -> tuple[str, str, dict[str, str], bytes]:
    method, path, headers = _parse_head(await reader.readuntil(b"\r\n\r\n"))
    length = int(headers.get("content-length") or 0)
    if not 0 <= length <= MAX_BODY:
        raise ValueError(f"bad content-length: {length}")
    body = await reader.readexactly(length) if length else b""
    return method, path, headers, body


async def _route(method: str, path: str, body: bytes) -> tuple[int, dict | None]:
    if method == "OPTIONS":
        return 204, None
    if method == "GET" and path == "/health":
        return await _health()
    if method == "POST" and path == TRIGGER_PATH:
        now = None
        if body.strip():
            try:
                payload = json.loads(body)
                if payload.get("now"):
                    now = date.fromisoformat(payload["now"])
            except (ValueError, TypeError, AttributeError) as e:
                return 400, {"success": False, "error": f"invalid request body: {e}"}
        envelope = await generate(now)
        return (200 if envelope["success"] else 500), envelope
    return 404, {"success": False, "error": "not found"}


async def _handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    try:
        method, path, headers, body = await _read_request(reader)
    except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError):
        status, payload, headers = 400, {"success": False, "error": "malformed request"}, {}
    else:
        status, payload = await _route(method, path, body)

    text = json.dumps(payload) if payload is not None else ""
    lines = [f"HTTP/1.1 {status} {REASONS[status]}"]
    origin = _cors_origin(headers)
    if origin:
        lines.append(f"Access-Control-Allow-Origin: {origin}")
        lines.append("Access-Control-Allow-Headers: authorization, content-type")
        lines.append("Access-Control-Allow-Methods: POST, GET, OPTIONS")
    if payload is not None:
        lines.append("Content-Type: application/json")
    lines.append(f"Content-Length: {len(text.encode())}")
    response = "\r\n".join(lines) + "\r\n\r\n" + text
    writer.write(response.encode())
    await writer.drain()
    writer.close()
    await writer.wait_closed()


async def _schedule_loop():
    interval = settings.schedule_interval_hours * 3600
    while True:
        envelope = await generate()
        if not envelope["success"]:
            logger.error("Scheduled run failed: %s", envelope["error"])
        await asyncio.sleep(interval)


async def main() -> int:
    await init_db()

    if settings.run_once:
        try:
            envelope = await generate()
        finally:
            await close_db()
        print(json.dumps(envelope))
        return 0 if envelope["success"] else 1

    server = await asyncio.start_server(_handle, "0.0.0.0", settings.trigger_port)
    logger.info("Trigger endpoint listening on :%d%s", settings.trigger_port, TRIGGER_PATH)
    scheduler = asyncio.create_task(_schedule_loop()) if settings.schedule_enabled else None

    try:
        async with server:
            await server.serve_forever()
    finally:
        logger.info("Shutting down gracefully...")
        if scheduler is not None:
            scheduler.cancel()
        await close_db()
        logger.info("Shutdown complete")
    return 0


def cli():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
