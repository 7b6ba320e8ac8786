"""
Gmail / Google People API adapter.

A Gmail identity is keyed by the lower-cased email address, so contacts
from the People API and senders seen only in mail land on the same id.
"""

import base64
from datetime import UTC, datetime
from email.message import EmailMessage
from email.utils import getaddresses, parseaddr
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
from app.features.contact_sync.domain.metadata import GmailIdentityMetadata, GmailMessageMetadata
from app.features.contact_sync.platforms.base import PlatformAdapter
from app.features.contact_sync.platforms.rate_limited_client import RateLimitedClient
from app.features.contact_sync.repository.base import AccessTokenProvider
from app.features.contact_sync.services.user_cache import UserCache
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
PEOPLE_API_BASE_URL = "https://people.googleapis.com/v1"
PERSON_FIELDS = "names,emailAddresses,photos,organizations,phoneNumbers"
METADATA_HEADERS = ["From", "To", "Subject", "Message-ID"]
MAX_PAGE_SIZE = 500


def _header(headers: list[dict[str, str]], name: str) -> str | None:
    lowered = name.lower()
    return next((h.get("value") for h in headers if h.get("name", "").lower() == lowered), None)


def _address(name: str, email: str) -> SenderIdentity:
    email = email.strip().lower()
    return SenderIdentity(platform_id=email or None, name=name.strip() or None, email=email or None)


def _decode_body(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def extract_plain_text(payload: dict[str, Any]) -> str | None:
    """First text/plain body in a (possibly nested) Gmail payload."""
    if payload.get("mimeType") == "text/plain" and (payload.get("body") or {}).get("data"):
        return _decode_body(payload["body"]["data"])
    for part in payload.get("parts") or []:
        text = extract_plain_text(part)
        if text:
            return text
    return None


def person_to_identity(person: dict[str, Any]) -> PlatformIdentity | None:
    emails = person.get("emailAddresses") or []
    email = next((e.get("value") for e in emails if e.get("value")), None)
    if not email:
        return None
    email = email.strip().lower()

    names = person.get("names") or []
    photos = person.get("photos") or []
    organizations = person.get("organizations") or []
    return PlatformIdentity(
        platform="gmail",
        platform_id=email,
        display_name=(names[0].get("displayName") if names else None) or email,
        email=email,
        avatar_url=next((p.get("url") for p in photos if not p.get("default")), None),
        metadata=GmailIdentityMetadata(
            resource_name=person.get("resourceName"),
            organization=organizations[0].get("name") if organizations else None,
            phone_numbers=[p["value"] for p in person.get("phoneNumbers") or [] if p.get("value")],
            source="contacts",
        ),
    )


class GmailAdapter(PlatformAdapter):
    platform = "gmail"

    def __init__(
        self,
        tokens: AccessTokenProvider,
        rate_limiter: RateLimitedClient,
        self_address_cache: UserCache[str],
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        default_fetch_limit: int = 200,
    ):
        super().__init__(default_fetch_limit)
        self.tokens = tokens
        self.rate_limiter = rate_limiter
        self.self_address_cache = self_address_cache
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def is_authenticated(self, user_id: str) -> bool:
        return bool(await self.tokens.get_access_token(user_id, self.platform))

    async def _request(
        self,
        user_id: str,
        endpoint: str,
        method: str,
        url: str,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        token = await self.tokens.get_access_token(user_id, self.platform)
        if not token:
            raise AuthError("Gmail is not connected", platform=self.platform)

        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}

        async def send() -> httpx.Response:
            return await self._client.request(method, url, headers=headers, params=params, json=json)

        try:
            response = await self.rate_limiter.call(user_id, f"gmail:{endpoint}", send)
        except httpx.RequestError as e:
            logger.warning("Gmail request error", endpoint=endpoint, error=str(e))
            raise PlatformAPIError(f"Gmail {endpoint} request failed: {e}", platform=self.platform) from e

        return self._handle_api_response(response, endpoint)

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                raise PlatformAPIError(f"Invalid Gmail {operation} response: {e}", platform=self.platform) from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            error_data = {}
        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        error_message = error_info.get("message", "Unknown Gmail API error")

        logger.error(
            f"Gmail {operation} failed",
            status_code=response.status_code,
            error_message=error_message,
        )
        if response.status_code == 401:
            raise AuthError("Gmail authorization expired. Please reconnect.", platform=self.platform)
        raise PlatformAPIError(
            f"Gmail error: {error_message}",
            platform=self.platform,
            status_code=response.status_code,
            error_code=str(error_info.get("code", response.status_code)),
            response_data=error_data,
        )

    async def _self_address(self, user_id: str) -> str:
        cached = self.self_address_cache.get(user_id)
        if cached:
            return cached
        data = await self._request(user_id, "profile", "GET", f"{GMAIL_API_BASE_URL}/profile")
        address = data["emailAddress"].lower()
        self.self_address_cache.set(user_id, address)
        return address

    async def fetch_contacts(self, user_id: str) -> list[PlatformIdentity]:
        contacts: list[PlatformIdentity] = []
        page_token = None
        while True:
            params: dict[str, Any] = {"personFields": PERSON_FIELDS, "pageSize": 1000}
            if page_token:
                params["pageToken"] = page_token
            data = await self._request(
                user_id, "people.connections", "GET", f"{PEOPLE_API_BASE_URL}/people/me/connections", params=params
            )
            for person in data.get("connections", []):
                identity = person_to_identity(person)
                if identity is not None:
                    contacts.append(identity)
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.info("Gmail contacts fetched", user_id=user_id, count=len(contacts))
        return contacts

    async def fetch_messages(self, user_id: str, options: FetchOptions) -> list[PlatformMessage]:
        self_address = await self._self_address(user_id)

        query_parts = []
        if options.since is not None:
            query_parts.append(f"after:{int(options.since.timestamp())}")
        if options.contact_id:
            query_parts.append(f"{{from:{options.contact_id} to:{options.contact_id}}}")

        # messages.list is newest first, so the whole range is listed and the oldest ids kept
        ids: list[str] = []
        page_token = None
        while True:
            params: dict[str, Any] = {"maxResults": MAX_PAGE_SIZE}
            if query_parts:
                params["q"] = " ".join(query_parts)
            if page_token:
                params["pageToken"] = page_token
            data = await self._request(user_id, "messages.list", "GET", f"{GMAIL_API_BASE_URL}/messages", params=params)
            ids.extend(m["id"] for m in data.get("messages", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        if len(ids) > options.limit:
            logger.info("Gmail backlog exceeds fetch limit", user_id=user_id, listed=len(ids), limit=options.limit)
            ids = ids[-options.limit :]

        messages = []
        for message_id in ids:
            raw = await self._request(
                user_id,
                "messages.get",
                "GET",
                f"{GMAIL_API_BASE_URL}/messages/{message_id}",
                params={"format": "full"},
            )
            message = self._to_platform_message(raw, self_address)
            if message is not None:
                messages.append(message)

        messages.sort(key=lambda m: m.timestamp)
        return messages

    def _to_platform_message(self, raw: dict[str, Any], self_address: str) -> PlatformMessage | None:
        payload = raw.get("payload") or {}
        headers = payload.get("headers") or []

        sender_name, sender_email = parseaddr(_header(headers, "From") or "")
        if not sender_email:
            return None
        sender = _address(sender_name, sender_email)
        recipients = [_address(name, email) for name, email in getaddresses([_header(headers, "To") or ""]) if email]

        internal_date = raw.get("internalDate")
        timestamp = (
            datetime.fromtimestamp(int(internal_date) / 1000, UTC) if internal_date else datetime.now(UTC)
        )
        snippet = raw.get("snippet")
        return PlatformMessage(
            platform=self.platform,
            platform_message_id=raw["id"],
            content=(extract_plain_text(payload) or snippet or "").strip(),
            timestamp=timestamp,
            sender=sender,
            recipients=recipients,
            thread_id=raw.get("threadId"),
            subject=_header(headers, "Subject"),
            is_outbound=sender.email == self_address,
            metadata=GmailMessageMetadata(
                label_ids=raw.get("labelIds") or [],
                snippet=snippet,
                history_id=raw.get("historyId"),
                message_id_header=_header(headers, "Message-ID"),
            ),
        )

    async def send_message(self, user_id: str, outgoing: OutgoingMessage) -> SendResult:
        mime = EmailMessage()
        mime["To"] = outgoing.recipient
        mime["Subject"] = outgoing.subject or ""
        mime.set_content(outgoing.content)

        body: dict[str, Any] = {"raw": base64.urlsafe_b64encode(mime.as_bytes()).decode("utf-8")}
        if outgoing.thread_id:
            body["threadId"] = outgoing.thread_id

        try:
            data = await self._request(
                user_id, "messages.send", "POST", f"{GMAIL_API_BASE_URL}/messages/send", json=body
            )
        except PlatformAPIError as e:
            logger.warning("Gmail send failed", user_id=user_id, error=str(e))
            return SendResult(success=False, error=str(e))

        logger.info("Gmail message sent", user_id=user_id, platform_message_id=data.get("id"))
        return SendResult(success=True, platform_message_id=data.get("id"))
