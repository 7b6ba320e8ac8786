import httpx
import pytest

from app.features.contact_sync.domain import RateLimitExhausted
from app.features.contact_sync.platforms.rate_limited_client import RateLimitedClient


class _FakeTime:
    """Clock and sleep that only move when the client sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _responses(*responses):
    queue = list(responses)

    async def factory():
        return queue.pop(0)

    return factory


def _limited(retry_after="2"):
    headers = {"Retry-After": retry_after} if retry_after is not None else {}
    return httpx.Response(429, headers=headers)


@pytest.mark.asyncio
async def test_backoff_doubles_then_state_is_cleared():
    fake = _FakeTime()
    client = RateLimitedClient(max_retries=3, sleep=fake.sleep, clock=fake.clock)

    response = await client.call(
        "user-123", "slack:users.list", _responses(_limited(), _limited(), httpx.Response(200))
    )

    assert response.status_code == 200
    assert fake.sleeps == [2.0, 4.0]
    assert client.retry_count("user-123", "slack:users.list") == 0


@pytest.mark.asyncio
async def test_retries_exhausted():
    fake = _FakeTime()
    client = RateLimitedClient(max_retries=2, sleep=fake.sleep, clock=fake.clock, platform="slack")

    with pytest.raises(RateLimitExhausted) as exc_info:
        await client.call("user-123", "slack:users.list", _responses(_limited(), _limited(), _limited()))

    assert exc_info.value.retries == 2
    assert exc_info.value.endpoint == "slack:users.list"
    assert exc_info.value.platform == "slack"
    assert fake.sleeps == [2.0, 4.0]
    assert client.retry_count("user-123", "slack:users.list") == 0


@pytest.mark.asyncio
async def test_missing_retry_after_uses_default():
    fake = _FakeTime()
    client = RateLimitedClient(default_retry_after=5, sleep=fake.sleep, clock=fake.clock)

    await client.call("user-123", "gmail:messages.list", _responses(_limited(None), httpx.Response(200)))

    assert fake.sleeps == [5.0]


@pytest.mark.asyncio
async def test_other_errors_pass_through_without_retry():
    fake = _FakeTime()
    client = RateLimitedClient(sleep=fake.sleep, clock=fake.clock)

    response = await client.call("user-123", "gmail:profile", _responses(httpx.Response(500)))

    assert response.status_code == 500
    assert fake.sleeps == []


@pytest.mark.asyncio
async def test_backoff_is_scoped_to_user_and_endpoint():
    fake = _FakeTime()
    client = RateLimitedClient(sleep=fake.sleep, clock=fake.clock)
    seen = []

    responses = [_limited(), httpx.Response(200)]

    async def factory():
        seen.append(
            (client.retry_count("user-123", "slack:users.list"), client.retry_count("user-456", "slack:users.list"))
        )
        return responses.pop(0)

    await client.call("user-123", "slack:users.list", factory)

    assert seen == [(0, 0), (1, 0)]
