import asyncio
import json
import logging
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import httpx
import websockets
from websockets.exceptions import WebSocketException

from .exceptions import FeedShapeError, TransportError
from .models import FeedStatus

logger = logging.getLogger(__name__)

RawBatch = List[Dict[str, Any]]


def incident_array(payload: Any) -> Optional[list]:
    """Accept a bare array or {"data": [...]}; anything else is not a batch."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return payload["data"]
    return None


# ---- REST polling ----

async def fetch_batch(client: httpx.AsyncClient, url: str, timeout_s: float = 10.0) -> list:
    """
    One poll cycle. Raises TransportError (or FeedShapeError) on timeout,
    network error, non-2xx status, non-JSON content type or wrong body shape.
    """
    try:
        r = await asyncio.wait_for(
            client.get(url, headers={"Cache-Control": "no-cache"}),
            timeout=timeout_s,
        )
    except asyncio.TimeoutError:
        raise TransportError(f"poll timed out after {timeout_s:g}s", source="poll")
    except httpx.HTTPError as e:
        raise TransportError(f"poll request failed: {e!r}", source="poll") from e

    if not r.is_success:
        raise TransportError(f"HTTP {r.status_code}: {r.reason_phrase}", source="poll")

    content_type = r.headers.get("content-type", "")
    if "json" not in content_type.lower():
        raise FeedShapeError(f"unexpected content type {content_type!r}", source="poll")

    try:
        payload = r.json()
    except ValueError as e:
        raise FeedShapeError(f"undecodable JSON body: {e}", source="poll") from e

    batch = incident_array(payload)
    if batch is None:
        raise FeedShapeError(f"expected an array or {{data: [...]}}, got {type(payload).__name__}",
                             source="poll")
    return batch


async def poll_stream(url: str,
                      interval_s: float = 15.0,
                      timeout_s: float = 10.0,
                      status: Optional[FeedStatus] = None,
                      client: Optional[httpx.AsyncClient] = None) -> AsyncGenerator[RawBatch, None]:
    """
    Poll `url` every `interval_s` and yield each successful batch.

    A failed cycle yields nothing: it is logged, recorded on `status`, and
    the next cycle is tried after the usual interval. An injected client is
    left open for its owner to close.
    """
    status = status or FeedStatus(name="poll", kind="poll")
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=timeout_s)
    try:
        while True:
            try:
                batch = await fetch_batch(client, url, timeout_s)
            except TransportError as e:
                status.connected = False
                status.record_failure(e)
                logger.warning("[Poll] %s failed (%d in a row): %s",
                               url, status.consecutive_failures, e)
            else:
                status.connected = True
                status.record_success(len(batch))
                logger.debug("[Poll] %s -> %d records", url, len(batch))
                yield batch
            await asyncio.sleep(interval_s)
    finally:
        if owns_client:
            await client.aclose()


# ---- Push channel (WebSocket) ----

def parse_push_message(message: Any) -> Optional[RawBatch]:
    """A push message carries one incident object or an array of them."""
    if isinstance(message, (bytes, bytearray)):
        try:
            message = message.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        data = json.loads(message)
    except (TypeError, ValueError):
        return None
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return data
    return None


async def push_stream(url: str,
                      status: Optional[FeedStatus] = None,
                      connect: Optional[Callable[[str], Any]] = None,
                      initial_backoff_s: float = 2.0,
                      factor: float = 1.5,
                      max_backoff_s: float = 10.0) -> AsyncGenerator[RawBatch, None]:
    """
    Yield one batch per well-formed push message, reconnecting forever.

    Malformed messages are skipped. When the connection cannot be opened or
    drops, the stream waits (backoff grows by `factor` up to `max_backoff_s`,
    and resets once a connection succeeds) and dials again.
    """
    status = status or FeedStatus(name="push", kind="push")
    connect = connect or websockets.connect
    backoff = initial_backoff_s

    while True:
        try:
            async with connect(url) as ws:
                status.connected = True
                backoff = initial_backoff_s
                logger.info("[Push] connected to %s", url)
                async for message in ws:
                    batch = parse_push_message(message)
                    if batch is None:
                        logger.warning("[Push] dropping malformed message: %.80r", message)
                        continue
                    status.record_success(len(batch))
                    yield batch
            logger.info("[Push] %s closed the connection", url)
            status.record_failure("connection closed")
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            status.record_failure(e)
            logger.warning("[Push] %s unavailable: %r", url, e)
        status.connected = False

        logger.info("[Push] reconnecting in %.1fs", backoff)
        await asyncio.sleep(backoff)
        backoff = min(backoff * factor, max_backoff_s)
