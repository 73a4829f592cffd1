import asyncio

import pytest
import requests

from bot.errors import EmptyResponse, UpstreamMalformed, UpstreamRejected, UpstreamTransient
from bot.upstream import FifoLimiter, UpstreamClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        pass


def completion(content):
    return FakeResponse(200, {"choices": [{"message": {"role": "assistant", "content": content}}]})


def make_client(session, attempts=3):
    return UpstreamClient("test-key", attempts=attempts, timeout=5, backoff_base=0, session=session)


MESSAGES = [{"role": "system", "content": "Be brief."}, {"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_complete_returns_text_and_sends_payload():
    session = FakeSession(completion("  hello  "))
    client = make_client(session)

    assert await client.complete(MESSAGES, "some/model") == "hello"

    sent = session.calls[0]
    assert sent["json"]["model"] == "some/model"
    assert sent["json"]["messages"] == MESSAGES
    assert sent["headers"]["Authorization"] == "Bearer test-key"
    assert sent["timeout"] == 5


@pytest.mark.asyncio
async def test_content_blocks_are_joined():
    blocks = [
        {"type": "text", "text": "first"},
        {"type": "image_url"},
        {"type": "text", "text": "second"},
    ]
    client = make_client(FakeSession(completion(blocks)))

    assert await client.complete(MESSAGES, "m") == "first\nsecond"


@pytest.mark.asyncio
async def test_server_error_is_retried():
    session = FakeSession(FakeResponse(500), FakeResponse(429), completion("ok"))
    client = make_client(session)

    assert await client.complete(MESSAGES, "m") == "ok"
    assert len(session.calls) == 3
    assert client.stats()["total_errors"] == 2


@pytest.mark.asyncio
async def test_client_error_fails_without_retry():
    session = FakeSession(FakeResponse(401, text="bad key"), completion("unused"))
    client = make_client(session)

    with pytest.raises(UpstreamRejected) as exc_info:
        await client.complete(MESSAGES, "m")

    assert exc_info.value.status == 401
    assert exc_info.value.body == "bad key"
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_network_errors_exhaust_into_transient():
    session = FakeSession(*[requests.ConnectionError("refused")] * 3)
    client = make_client(session)

    with pytest.raises(UpstreamTransient, match="refused"):
        await client.complete(MESSAGES, "m")
    assert len(session.calls) == 3


@pytest.mark.asyncio
async def test_malformed_response_keeps_its_type():
    session = FakeSession(FakeResponse(200, {"choices": []}), FakeResponse(200, text="<html>"))
    client = make_client(session, attempts=2)

    with pytest.raises(UpstreamMalformed):
        await client.complete(MESSAGES, "m")
    assert len(session.calls) == 2


@pytest.mark.asyncio
async def test_empty_content_raises_empty_response():
    session = FakeSession(completion("   "), completion([{"type": "image_url"}]))
    client = make_client(session, attempts=2)

    with pytest.raises(EmptyResponse):
        await client.complete(MESSAGES, "m")


@pytest.mark.asyncio
async def test_invalid_role_is_rejected_before_sending():
    session = FakeSession()
    client = make_client(session)

    with pytest.raises(ValueError):
        await client.complete([{"role": "tool", "content": "x"}], "m")
    assert session.calls == []


@pytest.mark.asyncio
async def test_fifo_limiter_caps_concurrency_in_order():
    limiter = FifoLimiter(2)
    running = 0
    peak = 0
    started = []

    def operation(n):
        async def run():
            nonlocal running, peak
            started.append(n)
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01 * (5 - n))
            running -= 1
            return n
        return run

    results = await asyncio.gather(*(limiter.run(operation(n)) for n in range(5)))

    assert results == [0, 1, 2, 3, 4]
    assert peak == 2
    assert started == [0, 1, 2, 3, 4]
    assert limiter.running == 0
    assert limiter.queue_length == 0


@pytest.mark.asyncio
async def test_fifo_limiter_skips_cancelled_waiter():
    limiter = FifoLimiter(1)
    gate = asyncio.Event()
    started = []

    async def blocker():
        started.append("blocker")
        await gate.wait()

    async def quick(name):
        started.append(name)

    first = asyncio.create_task(limiter.run(blocker))
    await asyncio.sleep(0)
    cancelled = asyncio.create_task(limiter.run(lambda: quick("cancelled")))
    last = asyncio.create_task(limiter.run(lambda: quick("last")))
    await asyncio.sleep(0)
    assert limiter.queue_length == 2

    cancelled.cancel()
    await asyncio.sleep(0)
    gate.set()
    await asyncio.gather(first, last)

    assert started == ["blocker", "last"]
    assert limiter.running == 0
