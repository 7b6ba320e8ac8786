"""
Slack Web API adapter.

Contacts come from users.list; messages from direct-message conversations
(users.conversations types=im + conversations.history). Every call goes
through the shared RateLimitedClient.
"""

from datetime import UTC, datetime
from typing import Any

import httpx

from app.features.contact_sync.domain import (
    AuthError,
    FetchOptions,
    OutgoingMessage,
    PlatformAPIError,
    PlatformIdentity,
    PlatformMessage,
    SenderIdentity,
    SendResult,
)
from app.features.contact_sync.domain.metadata import SlackIdentityMetadata, SlackMessageMetadata
from app.features.contact_sync.platforms.base import PlatformAdapter
from app.features.contact_sync.platforms.rate_limited_client import RateLimitedClient
from app.features.contact_sync.repository.base import AccessTokenProvider
from app.features.contact_sync.services.user_cache import UserCache
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SLACK_API_BASE_URL = "https://slack.com/api"
PAGE_SIZE = 200

AUTH_ERROR_CODES = {
    "invalid_auth",
    "not_authed",
    "token_revoked",
    "token_expired",
    "account_inactive",
    "missing_scope",
}

# message subtypes that are not person-to-person content
IGNORED_SUBTYPES = {
    "bot_message",
    "channel_join",
    "channel_leave",
    "message_deleted",
    "message_changed",
}


def _ts_to_datetime(ts: str) -> datetime:
    return datetime.fromtimestamp(float(ts), UTC)


def _member_display_name(member: dict[str, Any]) -> str:
    profile = member.get("profile") or {}
    return (
        profile.get("display_name")
        or profile.get("real_name")
        or member.get("real_name")
        or member.get("name")
        or ""
    ).strip()


def member_to_identity(member: dict[str, Any]) -> PlatformIdentity:
    profile = member.get("profile") or {}
    return PlatformIdentity(
        platform="slack",
        platform_id=member["id"],
        display_name=_member_display_name(member),
        handle=member.get("name"),
        email=(profile.get("email") or "").lower() or None,
        avatar_url=profile.get("image_192") or profile.get("image_72"),
        metadata=SlackIdentityMetadata(
            team_id=member.get("team_id"),
            is_bot=bool(member.get("is_bot")),
            is_app_user=bool(member.get("is_app_user")),
            is_admin=bool(member.get("is_admin")),
            deleted=bool(member.get("deleted")),
            timezone=member.get("tz"),
            title=profile.get("title") or None,
        ),
    )


class SlackAdapter(PlatformAdapter):
    platform = "slack"

    def __init__(
        self,
        tokens: AccessTokenProvider,
        rate_limiter: RateLimitedClient,
        directory_cache: UserCache[dict[str, PlatformIdentity]],
        self_id_cache: UserCache[str],
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        default_fetch_limit: int = 200,
    ):
        super().__init__(default_fetch_limit)
        self.tokens = tokens
        self.rate_limiter = rate_limiter
        self.directory_cache = directory_cache
        self.self_id_cache = self_id_cache
        self._client = client or httpx.AsyncClient(
            base_url=SLACK_API_BASE_URL,
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def is_authenticated(self, user_id: str) -> bool:
        return bool(await self.tokens.get_access_token(user_id, self.platform))

    async def _call(
        self,
        user_id: str,
        method: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        token = await self.tokens.get_access_token(user_id, self.platform)
        if not token:
            raise AuthError("Slack is not connected", platform=self.platform)

        headers = {"Authorization": f"Bearer {token}"}

        async def send() -> httpx.Response:
            if json is not None:
                return await self._client.post(f"/{method}", headers=headers, json=json)
            return await self._client.get(f"/{method}", headers=headers, params=params)

        try:
            response = await self.rate_limiter.call(user_id, f"slack:{method}", send)
        except httpx.RequestError as e:
            logger.warning("Slack request error", method=method, error=str(e))
            raise PlatformAPIError(f"Slack {method} request failed: {e}", platform=self.platform) from e

        return self._handle_api_response(response, method)

    def _handle_api_response(self, response: httpx.Response, method: str) -> dict[str, Any]:
        if response.status_code == 401:
            raise AuthError("Slack authorization expired. Please reconnect.", platform=self.platform)
        if not response.is_success:
            raise PlatformAPIError(
                f"Slack API error (HTTP {response.status_code})",
                platform=self.platform,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise PlatformAPIError(f"Invalid Slack {method} response: {e}", platform=self.platform) from e

        if data.get("ok"):
            return data

        error_code = data.get("error", "unknown_error")
        logger.error("Slack API call failed", method=method, error_code=error_code)
        if error_code in AUTH_ERROR_CODES:
            raise AuthError(f"Slack authorization failed: {error_code}", platform=self.platform)
        raise PlatformAPIError(
            f"Slack {method} failed: {error_code}",
            platform=self.platform,
            status_code=response.status_code,
            error_code=error_code,
            response_data=data,
        )

    async def _self_id(self, user_id: str) -> str:
        cached = self.self_id_cache.get(user_id)
        if cached:
            return cached
        data = await self._call(user_id, "auth.test")
        self_id = data["user_id"]
        self.self_id_cache.set(user_id, self_id)
        return self_id

    async def _paginate(self, user_id: str, method: str, key: str, params: dict[str, Any]) -> list[dict]:
        items: list[dict] = []
        cursor = None
        while True:
            page_params = dict(params, limit=PAGE_SIZE)
            if cursor:
                page_params["cursor"] = cursor
            data = await self._call(user_id, method, params=page_params)
            items.extend(data.get(key, []))
            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return items

    async def _directory(self, user_id: str) -> dict[str, PlatformIdentity]:
        directory = self.directory_cache.get(user_id)
        if directory is None:
            members = await self._paginate(user_id, "users.list", "members", {})
            directory = {m["id"]: member_to_identity(m) for m in members if m.get("id")}
            self.directory_cache.set(user_id, directory)
        return directory

    async def fetch_contacts(self, user_id: str) -> list[PlatformIdentity]:
        self_id = await self._self_id(user_id)
        # a contact fetch always reloads the workspace directory
        self.directory_cache.evict(user_id)
        directory = await self._directory(user_id)
        contacts = [identity for member_id, identity in directory.items() if member_id != self_id]
        logger.info("Slack contacts fetched", user_id=user_id, count=len(contacts))
        return contacts

    def _sender(self, directory: dict[str, PlatformIdentity], member_id: str) -> SenderIdentity:
        identity = directory.get(member_id)
        if identity is None:
            return SenderIdentity(platform_id=member_id)
        return SenderIdentity(
            platform_id=member_id,
            name=identity.display_name or None,
            email=identity.email,
            handle=identity.handle,
        )

    async def fetch_messages(self, user_id: str, options: FetchOptions) -> list[PlatformMessage]:
        self_id = await self._self_id(user_id)
        directory = await self._directory(user_id)
        channels = await self._paginate(
            user_id, "users.conversations", "channels", {"types": "im", "exclude_archived": "true"}
        )
        if options.contact_id:
            channels = [c for c in channels if c.get("user") == options.contact_id]

        messages: list[PlatformMessage] = []
        for channel in channels:
            partner_id = channel.get("user")
            if not partner_id or partner_id == self_id:
                continue

            for raw in await self._history(user_id, channel["id"], options.since):
                message = self._to_platform_message(raw, channel["id"], partner_id, self_id, directory)
                if message is not None:
                    messages.append(message)

        # oldest first; a truncated batch must not skip past unreturned messages
        messages.sort(key=lambda m: m.timestamp)
        if len(messages) > options.limit:
            logger.info(
                "Slack backlog exceeds fetch limit", user_id=user_id, fetched=len(messages), limit=options.limit
            )
        return messages[: options.limit]

    async def _history(self, user_id: str, channel_id: str, since: datetime | None) -> list[dict]:
        """Every message in a DM since the watermark, following has_more pages."""
        params: dict[str, Any] = {"channel": channel_id}
        if since is not None:
            params["oldest"] = f"{since.timestamp():.6f}"

        raw_messages: list[dict] = []
        cursor = None
        while True:
            page_params = dict(params, limit=PAGE_SIZE)
            if cursor:
                page_params["cursor"] = cursor
            data = await self._call(user_id, "conversations.history", params=page_params)
            raw_messages.extend(data.get("messages", []))
            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not data.get("has_more") or not cursor:
                return raw_messages

    def _to_platform_message(
        self,
        raw: dict[str, Any],
        channel_id: str,
        partner_id: str,
        self_id: str,
        directory: dict[str, PlatformIdentity],
    ) -> PlatformMessage | None:
        if raw.get("type") != "message" or raw.get("subtype") in IGNORED_SUBTYPES:
            return None
        author_id = raw.get("user")
        ts = raw.get("ts")
        if not author_id or not ts:
            return None

        outbound = author_id == self_id
        thread_ts = raw.get("thread_ts")
        return PlatformMessage(
            platform=self.platform,
            platform_message_id=f"{channel_id}:{ts}",
            content=raw.get("text") or "",
            timestamp=_ts_to_datetime(ts),
            sender=self._sender(directory, author_id),
            recipients=[self._sender(directory, self_id if not outbound else partner_id)],
            thread_id=f"{channel_id}:{thread_ts or ts}",
            is_outbound=outbound,
            metadata=SlackMessageMetadata(channel_id=channel_id, ts=ts, thread_ts=thread_ts, channel_type="im"),
        )

    async def send_message(self, user_id: str, outgoing: OutgoingMessage) -> SendResult:
        try:
            opened = await self._call(user_id, "conversations.open", json={"users": outgoing.recipient})
            channel_id = opened["channel"]["id"]
            body: dict[str, Any] = {"channel": channel_id, "text": outgoing.content}
            if outgoing.thread_id:
                # thread ids are "<channel>:<ts>"
                body["thread_ts"] = outgoing.thread_id.rpartition(":")[2]
            data = await self._call(user_id, "chat.postMessage", json=body)
        except PlatformAPIError as e:
            logger.warning("Slack send failed", user_id=user_id, error=str(e))
            return SendResult(success=False, error=str(e))

        return SendResult(success=True, platform_message_id=f"{channel_id}:{data.get('ts')}")
