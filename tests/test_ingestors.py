"""
Tests for the poll and push feeds.

HTTP is faked with httpx.MockTransport and the push channel with an
injected connect factory; nothing here touches the network.
"""

import asyncio

import httpx
import pytest

from hazard_realtime.exceptions import FeedShapeError, TransportError
from hazard_realtime.ingestors import fetch_batch, parse_push_message, poll_stream, push_stream
from hazard_realtime.models import FeedStatus

FEED_URL = "http://feed.test/api/incidents"
RECORD = {"id": "a", "lat": 19.0, "lon": 72.8, "severity": "high"}


def fetch_with(handler, timeout_s=1.0):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await fetch_batch(client, FEED_URL, timeout_s)
    return asyncio.run(run())


class TestFetchBatch:
    """Single poll cycle."""

    def test_bare_array(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[RECORD])

        assert fetch_with(handler) == [RECORD]
        assert seen[0].headers["cache-control"] == "no-cache"

    def test_data_envelope(self):
        assert fetch_with(lambda r: httpx.Response(200, json={"data": [RECORD]})) == [RECORD]

    def test_http_error_status(self):
        with pytest.raises(TransportError) as exc:
            fetch_with(lambda r: httpx.Response(503))
        assert "503" in str(exc.value)
        assert exc.value.source == "poll"

    def test_wrong_content_type(self):
        with pytest.raises(FeedShapeError):
            fetch_with(lambda r: httpx.Response(200, text="<html>down</html>"))

    def test_wrong_shape(self):
        with pytest.raises(FeedShapeError):
            fetch_with(lambda r: httpx.Response(200, json={"items": [RECORD]}))

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransportError):
            fetch_with(handler)

    def test_timeout(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json=[])

        with pytest.raises(TransportError) as exc:
            fetch_with(handler, timeout_s=0.01)
        assert "timed out" in str(exc.value)


class TestPollStream:
    """Poll loop."""

    def test_failure_then_recovery(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(500)
            return httpx.Response(200, json=[RECORD])

        status = FeedStatus(name="poll", kind="poll")

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                gen = poll_stream(FEED_URL, interval_s=0, status=status, client=client)
                batch = await gen.__anext__()
                await gen.aclose()
                assert not client.is_closed
                return batch

        assert asyncio.run(run()) == [RECORD]
        assert len(calls) == 2
        assert status.connected
        assert status.consecutive_failures == 0
        assert status.last_error.startswith("HTTP 500")
        assert (status.batches, status.records) == (1, 1)


class FakeSocket:

    def __init__(self, messages):
        self.messages = messages

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for message in self.messages:
            yield message


def fake_connect(plan):
    """Each call pops the next step: an exception to raise or a list of messages."""
    attempts = []

    def connect(url):
        attempts.append(url)
        step = plan.pop(0)
        if isinstance(step, Exception):
            raise step
        return FakeSocket(step)

    return connect, attempts


class TestPushStream:
    """Push channel with reconnects."""

    def test_parse_push_message(self):
        assert parse_push_message('{"id": "a"}') == [{"id": "a"}]
        assert parse_push_message(b'[{"id": "a"}, {"id": "b"}]') == [{"id": "a"}, {"id": "b"}]
        assert parse_push_message("not json") is None
        assert parse_push_message("5") is None

    def test_skips_malformed_and_yields_batches(self):
        connect, _ = fake_connect([["garbage", '{"id": "a", "lat": 1, "lon": 2}',
                                    '[{"id": "b", "lat": 1, "lon": 2}]']])
        status = FeedStatus(name="push", kind="push")

        async def run():
            gen = push_stream("ws://feed.test", status=status, connect=connect)
            batches = [await gen.__anext__(), await gen.__anext__()]
            await gen.aclose()
            return batches

        batches = asyncio.run(run())
        assert [b[0]["id"] for b in batches] == ["a", "b"]
        assert status.connected
        assert status.records == 2

    def test_backoff_grows_and_caps(self, monkeypatch):
        delays = []
        real_sleep = asyncio.sleep

        async def fake_sleep(delay, *args, **kwargs):
            delays.append(delay)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        plan = [OSError("refused")] * 6 + [['{"id": "a", "lat": 1, "lon": 2}']]
        connect, attempts = fake_connect(plan)
        status = FeedStatus(name="push", kind="push")

        async def run():
            gen = push_stream("ws://feed.test", status=status, connect=connect)
            batch = await gen.__anext__()
            await gen.aclose()
            return batch

        assert asyncio.run(run())[0]["id"] == "a"
        assert delays == pytest.approx([2.0, 3.0, 4.5, 6.75, 10.0, 10.0])
        assert len(attempts) == 7
        assert status.consecutive_failures == 0
        assert "refused" in status.last_error
