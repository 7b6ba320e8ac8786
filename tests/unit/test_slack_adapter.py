import json
from datetime import UTC, datetime

import httpx
import pytest

from app.features.contact_sync.domain import AuthError, FetchOptions, OutgoingMessage, PlatformAPIError
from app.features.contact_sync.platforms.rate_limited_client import RateLimitedClient
from app.features.contact_sync.platforms.slack import SLACK_API_BASE_URL, SlackAdapter
from app.features.contact_sync.services.user_cache import UserCache

USER_ID = "user-123"

MEMBERS_PAGE_1 = [
    {"id": "USELF", "name": "me", "profile": {"display_name": "Me"}},
    {
        "id": "U1",
        "name": "alice",
        "team_id": "T1",
        "profile": {"display_name": "Alice", "email": "Alice@Acme.com", "image_192": "http://img/alice"},
    },
    {"id": "B1", "name": "deploybot", "is_bot": True, "profile": {"real_name": "Deploy Bot"}},
]
MEMBERS_PAGE_2 = [{"id": "U2", "name": "bob", "real_name": "Bob Jones", "profile": {}}]

HISTORY = [
    {"type": "message", "user": "USELF", "text": "hey back", "ts": "1714550460.000200"},
    {"type": "message", "user": "U1", "text": "hi there", "ts": "1714550400.000100"},
    {"type": "message", "subtype": "channel_join", "user": "U1", "text": "joined", "ts": "1714550300.000000"},
]


async def _no_sleep(seconds):
    return None


class _SlackApi:
    """Minimal Slack Web API double; records every request."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.overrides: dict[str, list[httpx.Response]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method = request.url.path.rsplit("/", 1)[-1]
        if self.overrides.get(method):
            return self.overrides[method].pop(0)

        params = request.url.params
        if method == "auth.test":
            return httpx.Response(200, json={"ok": True, "user_id": "USELF"})
        if method == "users.list":
            if params.get("cursor") == "page-2":
                return httpx.Response(200, json={"ok": True, "members": MEMBERS_PAGE_2})
            return httpx.Response(
                200,
                json={"ok": True, "members": MEMBERS_PAGE_1, "response_metadata": {"next_cursor": "page-2"}},
            )
        if method == "users.conversations":
            return httpx.Response(200, json={"ok": True, "channels": [{"id": "D1", "user": "U1"}]})
        if method == "conversations.history":
            return httpx.Response(200, json={"ok": True, "messages": HISTORY})
        if method == "conversations.open":
            return httpx.Response(200, json={"ok": True, "channel": {"id": "D1"}})
        if method == "chat.postMessage":
            return httpx.Response(200, json={"ok": True, "ts": "1714550999.000300"})
        return httpx.Response(404)

    def calls(self, method):
        return [r for r in self.requests if r.url.path.endswith(f"/{method}")]


@pytest.fixture
def slack_api():
    return _SlackApi()


@pytest.fixture
def slack(store, slack_api):
    store.tokens[(USER_ID, "slack")] = "xoxp-token"
    client = httpx.AsyncClient(base_url=SLACK_API_BASE_URL, transport=httpx.MockTransport(slack_api))
    return SlackAdapter(
        store,
        RateLimitedClient(max_retries=2, sleep=_no_sleep, platform="slack"),
        directory_cache=UserCache(),
        self_id_cache=UserCache(),
        client=client,
    )


@pytest.mark.asyncio
async def test_fetch_contacts_pages_and_skips_self(slack, slack_api):
    contacts = await slack.fetch_contacts(USER_ID)

    by_id = {c.platform_id: c for c in contacts}
    assert set(by_id) == {"U1", "B1", "U2"}
    assert by_id["U1"].email == "alice@acme.com"
    assert by_id["U1"].display_name == "Alice"
    assert by_id["U1"].handle == "alice"
    assert by_id["U1"].avatar_url == "http://img/alice"
    assert by_id["U1"].metadata.team_id == "T1"
    assert by_id["B1"].metadata.is_bot is True
    assert by_id["U2"].display_name == "Bob Jones"
    assert len(slack_api.calls("users.list")) == 2
    assert slack_api.requests[0].headers["Authorization"] == "Bearer xoxp-token"


@pytest.mark.asyncio
async def test_fetch_messages_from_direct_messages(slack, slack_api):
    since = datetime(2024, 5, 1, tzinfo=UTC)

    messages = await slack.fetch_messages(USER_ID, FetchOptions(limit=50, since=since))

    assert [m.platform_message_id for m in messages] == ["D1:1714550400.000100", "D1:1714550460.000200"]
    inbound, outbound = messages
    assert inbound.is_outbound is False
    assert inbound.sender.platform_id == "U1"
    assert inbound.sender.email == "alice@acme.com"
    assert inbound.counterpart.platform_id == "U1"
    assert inbound.thread_id == "D1:1714550400.000100"
    assert inbound.metadata.channel_id == "D1"
    assert outbound.is_outbound is True
    assert outbound.counterpart.platform_id == "U1"

    [history] = slack_api.calls("conversations.history")
    assert history.url.params["oldest"] == f"{since.timestamp():.6f}"
    assert history.url.params["channel"] == "D1"


@pytest.mark.asyncio
async def test_directory_and_self_id_are_cached(slack, slack_api):
    await slack.fetch_messages(USER_ID, FetchOptions())
    await slack.fetch_messages(USER_ID, FetchOptions())

    assert len(slack_api.calls("auth.test")) == 1
    assert len(slack_api.calls("users.list")) == 2


@pytest.mark.asyncio
async def test_auth_error_codes_raise_auth_error(slack, slack_api):
    slack_api.overrides["auth.test"] = [httpx.Response(200, json={"ok": False, "error": "token_revoked"})]

    with pytest.raises(AuthError):
        await slack.fetch_contacts(USER_ID)


@pytest.mark.asyncio
async def test_other_api_errors_raise_platform_error(slack, slack_api):
    slack_api.overrides["users.list"] = [httpx.Response(200, json={"ok": False, "error": "fatal_error"})]

    with pytest.raises(PlatformAPIError) as exc_info:
        await slack.fetch_contacts(USER_ID)

    assert exc_info.value.error_code == "fatal_error"


@pytest.mark.asyncio
async def test_rate_limited_call_is_retried(slack, slack_api):
    slack_api.overrides["users.list"] = [httpx.Response(429, headers={"Retry-After": "1"})]

    contacts = await slack.fetch_contacts(USER_ID)

    assert len(contacts) == 3


@pytest.mark.asyncio
async def test_missing_token_is_an_auth_error(store, slack):
    store.tokens.clear()

    assert await slack.is_authenticated(USER_ID) is False
    with pytest.raises(AuthError):
        await slack.fetch_contacts(USER_ID)


@pytest.mark.asyncio
async def test_send_message_opens_dm_and_posts(slack, slack_api):
    result = await slack.send_message(
        USER_ID, OutgoingMessage(recipient="U1", content="On my way", thread_id="D1:1714550400.000100")
    )

    assert result.success is True
    assert result.platform_message_id == "D1:1714550999.000300"
    [post] = slack_api.calls("chat.postMessage")
    assert json.loads(post.content) == {"channel": "D1", "text": "On my way", "thread_ts": "1714550400.000100"}


@pytest.mark.asyncio
async def test_send_failure_is_returned_not_raised(slack, slack_api):
    slack_api.overrides["chat.postMessage"] = [httpx.Response(200, json={"ok": False, "error": "channel_not_found"})]

    result = await slack.send_message(USER_ID, OutgoingMessage(recipient="U1", content="hello"))

    assert result.success is False
    assert "channel_not_found" in result.error


@pytest.mark.asyncio
async def test_sync_messages_hands_messages_to_handler(slack):
    seen = []

    async def handler(user_id, message):
        seen.append(message.platform_message_id)
        return message.is_outbound is False

    slack.bind_message_handler(handler)
    result = await slack.sync_messages(USER_ID)

    assert result.success is True
    assert result.messages_processed == 2
    assert result.new_messages == 1
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_history_pages_are_followed_and_oldest_kept(slack, slack_api):
    newest = [
        {"type": "message", "user": "U1", "text": "third", "ts": "1714550700.000000"},
        {"type": "message", "user": "U1", "text": "second", "ts": "1714550600.000000"},
    ]
    older = [{"type": "message", "user": "U1", "text": "first", "ts": "1714550500.000000"}]
    slack_api.overrides["conversations.history"] = [
        httpx.Response(
            200,
            json={"ok": True, "messages": newest, "has_more": True, "response_metadata": {"next_cursor": "older"}},
        ),
        httpx.Response(200, json={"ok": True, "messages": older, "has_more": False}),
    ]

    messages = await slack.fetch_messages(USER_ID, FetchOptions(limit=2))

    assert [m.content for m in messages] == ["first", "second"]
    first_page, second_page = slack_api.calls("conversations.history")
    assert "cursor" not in first_page.url.params
    assert second_page.url.params["cursor"] == "older"
