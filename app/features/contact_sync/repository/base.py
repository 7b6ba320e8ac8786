"""
Storage contracts for contact sync.

Services depend on these protocols only; the Postgres implementations live
next to this module and tests provide an in-memory one. Every multi-row
write listed here is atomic in a conforming store.
"""

from datetime import datetime
from typing import Protocol

from app.features.contact_sync.domain import (
    BlacklistEntry,
    ContactStatus,
    MergePlan,
    MergeReview,
    Message,
    PendingApproval,
    PendingMessageStub,
    PlatformIdentity,
    ScoredMatch,
    SenderIdentity,
    SyncState,
    UnifiedContact,
)


class ContactStore(Protocol):
    async def list_contacts(self, user_id: str, include_archived: bool = False) -> list[UnifiedContact]: ...

    async def get_contact(self, user_id: str, contact_id: str) -> UnifiedContact | None: ...

    async def find_contact_by_identity(
        self, user_id: str, platform: str, platform_id: str
    ) -> UnifiedContact | None: ...

    async def list_identity_links(self, user_id: str, platform: str) -> dict[str, str]:
        """Return platform_id -> contact_id for every linked identity on a platform."""
        ...

    async def create_contact(self, contact: UnifiedContact) -> UnifiedContact:
        """Insert the contact and its identities; raises IdentityConflictError."""
        ...

    async def create_contact_with_review(
        self, contact: UnifiedContact, review: MergeReview
    ) -> UnifiedContact: ...

    async def link_identity(self, contact: UnifiedContact, identity: PlatformIdentity) -> UnifiedContact:
        """Attach identity and persist contact email/photo in one write."""
        ...

    async def update_contact_status(self, user_id: str, contact_id: str, status: ContactStatus) -> None: ...

    async def merge_contacts(self, user_id: str, plan: MergePlan) -> int:
        """Apply a merge plan; returns the number of messages reassigned."""
        ...

    async def count_contacts(self, user_id: str) -> int: ...

    async def list_merge_reviews(self, user_id: str) -> list[MergeReview]: ...

    async def get_merge_review(self, user_id: str, review_id: str) -> MergeReview | None: ...

    async def delete_merge_review(self, user_id: str, review_id: str) -> bool: ...


class MessageStore(Protocol):
    async def message_exists(self, user_id: str, platform: str, platform_message_id: str) -> bool: ...

    async def save_message(self, message: Message) -> bool:
        """Insert; False when the natural key already exists."""
        ...

    async def list_messages(self, user_id: str, contact_id: str | None = None) -> list[Message]: ...

    async def count_messages(self, user_id: str, contact_id: str | None = None) -> int: ...


class ApprovalStore(Protocol):
    async def find_pending(self, user_id: str, platform: str, sender_key: str) -> PendingApproval | None: ...

    async def get_pending(self, user_id: str, pending_id: str) -> PendingApproval | None: ...

    async def list_pending(self, user_id: str) -> list[PendingApproval]: ...

    async def add_pending_message(
        self,
        user_id: str,
        platform: str,
        sender: SenderIdentity,
        stub: PendingMessageStub,
        preview: str,
        potential_match: ScoredMatch | None = None,
    ) -> PendingApproval:
        """Find-or-create the sender's approval and append the stub idempotently."""
        ...

    async def approve_pending(
        self, user_id: str, pending_id: str, contact: UnifiedContact, create_contact: bool = True
    ) -> int | None:
        """Create contact (unless it exists), import stubs as messages, delete approval.

        Returns the number of imported messages, or None if the approval is gone.
        """
        ...

    async def reject_pending(self, user_id: str, pending_id: str, entry: BlacklistEntry) -> bool: ...

    async def list_blacklist(self, user_id: str, platform: str | None = None) -> list[BlacklistEntry]: ...

    async def add_blacklist_entry(self, entry: BlacklistEntry) -> BlacklistEntry: ...

    async def remove_blacklist_entry(self, user_id: str, entry_id: str) -> bool: ...


class SyncStateRepository(Protocol):
    async def get_state(self, user_id: str, platform: str) -> SyncState | None: ...

    async def list_states(self, user_id: str) -> list[SyncState]: ...

    async def save_state(self, state: SyncState) -> None: ...

    async def try_claim(self, user_id: str, platform: str, now: datetime) -> bool:
        """Set is_syncing if it is not already set; True when this caller won."""
        ...

    async def set_syncing(self, user_id: str, platform: str, value: bool) -> None: ...

    async def delete_states(self, user_id: str, platform: str | None = None) -> int: ...


class AccessTokenProvider(Protocol):
    async def get_access_token(self, user_id: str, platform: str) -> str | None: ...

    async def list_users_with_tokens(self, platforms: list[str]) -> list[str]: ...
