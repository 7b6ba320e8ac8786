"""
Common contract for messaging platform adapters.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime

from app.features.contact_sync.domain import (
    AdapterSyncResult,
    ContactSyncError,
    FetchOptions,
    OutgoingMessage,
    PlatformIdentity,
    PlatformMessage,
    SendResult,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# (user_id, message) -> True when the message was newly persisted
MessageHandler = Callable[[str, PlatformMessage], Awaitable[bool]]


class PlatformAdapter(ABC):
    """
    One adapter per platform.

    ``FetchOptions.contact_id`` is the platform-native id of the other party
    (a Slack user id, an email address for Gmail).
    """

    platform: str

    def __init__(self, default_fetch_limit: int = 200):
        self.default_fetch_limit = default_fetch_limit
        self._message_handler: MessageHandler | None = None

    def bind_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    @abstractmethod
    async def is_authenticated(self, user_id: str) -> bool: ...

    @abstractmethod
    async def fetch_contacts(self, user_id: str) -> list[PlatformIdentity]: ...

    @abstractmethod
    async def fetch_messages(self, user_id: str, options: FetchOptions) -> list[PlatformMessage]: ...

    @abstractmethod
    async def send_message(self, user_id: str, outgoing: OutgoingMessage) -> SendResult: ...

    async def close(self) -> None:
        """Release network resources; adapters holding clients override this."""

    async def sync_messages(
        self,
        user_id: str,
        contact_id: str | None = None,
        since: datetime | None = None,
    ) -> AdapterSyncResult:
        """Fetch and hand every message to the bound handler; per-message errors are collected."""
        if self._message_handler is None:
            return AdapterSyncResult(success=False, errors=["No message handler bound"])

        try:
            messages = await self.fetch_messages(
                user_id,
                FetchOptions(limit=self.default_fetch_limit, since=since, contact_id=contact_id),
            )
        except ContactSyncError as e:
            logger.warning("Message fetch failed", platform=self.platform, user_id=user_id, error=str(e))
            return AdapterSyncResult(success=False, errors=[str(e)])

        result = AdapterSyncResult(success=True)
        for message in messages:
            result.messages_processed += 1
            try:
                if await self._message_handler(user_id, message):
                    result.new_messages += 1
            except ContactSyncError as e:
                result.errors.append(f"{message.platform_message_id}: {e}")

        return result
