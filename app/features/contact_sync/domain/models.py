"""
Domain records for contact sync.

Plain dataclasses shared by adapters, services, repositories and the API
layer. Platform-specific metadata lives in ``metadata.py``.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from app.features.contact_sync.domain.metadata import (
    IdentityMetadata,
    MessageMetadata,
    dump_metadata,
)

UNKNOWN_SENDER = "Unknown Sender"


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


class ContactStatus(StrEnum):
    ACTIVE = "ACTIVE"
    PENDING_MERGE_REVIEW = "PENDING_MERGE_REVIEW"
    ARCHIVED_AS_DUPLICATE = "ARCHIVED_AS_DUPLICATE"


class MatchDecision(StrEnum):
    MERGE = "merge"
    CREATE = "create"
    REVIEW = "review"


class ApprovalOutcome(StrEnum):
    SAVED = "saved"
    BLOCKED = "blocked"
    PENDING = "pending"


@dataclass(slots=True)
class PlatformIdentity:
    """A source-specific reference linking a unified contact to one platform."""

    platform: str
    platform_id: str
    display_name: str = ""
    handle: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    metadata: IdentityMetadata | None = None
    added_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class UnifiedContact:
    """One record per real-world person."""

    id: str
    user_id: str
    display_name: str
    email: str | None = None
    photo_url: str | None = None
    status: ContactStatus = ContactStatus.ACTIVE
    identities: dict[str, PlatformIdentity] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def identity_for(self, platform: str) -> PlatformIdentity | None:
        return self.identities.get(platform)

    def has_identity(self, platform: str, platform_id: str) -> bool:
        identity = self.identities.get(platform)
        return identity is not None and identity.platform_id == platform_id

    @classmethod
    def from_identity(
        cls,
        user_id: str,
        identity: PlatformIdentity,
        status: ContactStatus = ContactStatus.ACTIVE,
    ) -> "UnifiedContact":
        return cls(
            id=new_id(),
            user_id=user_id,
            display_name=(identity.display_name or "").strip() or identity.email or identity.platform_id,
            email=identity.email,
            photo_url=identity.avatar_url,
            status=status,
            identities={identity.platform: identity},
        )


@dataclass(slots=True)
class ScoredMatch:
    """Transient resolution result, never persisted."""

    contact_id: str
    score: float
    reasons: list[str]
    definitive: bool = False


@dataclass(slots=True, frozen=True)
class SenderIdentity:
    """Who sent (or received) a message, as far as the platform tells us."""

    platform_id: str | None = None
    name: str | None = None
    email: str | None = None
    handle: str | None = None

    @property
    def key(self) -> str:
        """Stable key used to group pending messages and match blacklist entries."""
        if self.platform_id:
            return f"id:{self.platform_id}"
        if self.email:
            return f"email:{self.email.strip().lower()}"
        if self.handle:
            return f"handle:{self.handle.strip().lower()}"
        return f"name:{(self.name or '').strip().lower()}"

    @property
    def display_name(self) -> str:
        return (self.name or "").strip() or self.email or self.handle or UNKNOWN_SENDER

    def to_identity(self, platform: str, metadata: IdentityMetadata | None = None) -> PlatformIdentity:
        return PlatformIdentity(
            platform=platform,
            platform_id=self.platform_id or (self.email or "").lower() or self.key,
            display_name=self.display_name,
            handle=self.handle,
            email=self.email.lower() if self.email else None,
            metadata=metadata,
        )


@dataclass(slots=True)
class PlatformMessage:
    """A message as fetched from a platform, before resolution."""

    platform: str
    platform_message_id: str
    content: str
    timestamp: datetime
    sender: SenderIdentity
    recipients: list[SenderIdentity] = field(default_factory=list)
    thread_id: str | None = None
    subject: str | None = None
    is_outbound: bool = False
    metadata: MessageMetadata | None = None

    @property
    def counterpart(self) -> SenderIdentity:
        """The other party of the conversation: sender if inbound, first recipient if outbound."""
        if self.is_outbound and self.recipients:
            return self.recipients[0]
        return self.sender


@dataclass(slots=True)
class Message:
    """A persisted message; (user_id, platform, platform_message_id) is the natural key."""

    user_id: str
    contact_id: str
    platform: str
    platform_message_id: str
    content: str
    timestamp: datetime
    thread_id: str | None = None
    subject: str | None = None
    direction: str = "inbound"
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)

    @classmethod
    def from_platform(cls, user_id: str, contact_id: str, message: PlatformMessage) -> "Message":
        return cls(
            user_id=user_id,
            contact_id=contact_id,
            platform=message.platform,
            platform_message_id=message.platform_message_id,
            content=message.content,
            timestamp=message.timestamp,
            thread_id=message.thread_id,
            subject=message.subject,
            direction="outbound" if message.is_outbound else "inbound",
            metadata=dump_metadata(message.metadata),
        )


@dataclass(slots=True)
class FetchOptions:
    limit: int = 100
    since: datetime | None = None
    contact_id: str | None = None


@dataclass(slots=True)
class OutgoingMessage:
    recipient: str
    content: str
    subject: str | None = None
    thread_id: str | None = None


@dataclass(slots=True)
class SendResult:
    success: bool
    platform_message_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class AdapterSyncResult:
    success: bool
    messages_processed: int = 0
    new_messages: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SyncState:
    user_id: str
    platform: str
    initial_sync_complete: bool = False
    last_sync_at: datetime | None = None
    last_message_at: datetime | None = None
    total_messages_processed: int = 0
    is_syncing: bool = False
    last_error: str | None = None
    failure_count: int = 0


@dataclass(slots=True)
class SyncDecision:
    should_sync: bool
    reason: str
    last_message_at: datetime | None = None
    is_initial: bool = False


@dataclass(slots=True)
class PendingMessageStub:
    platform_message_id: str
    content: str
    timestamp: datetime
    thread_id: str | None = None
    subject: str | None = None
    direction: str = "inbound"
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_platform(cls, message: PlatformMessage) -> "PendingMessageStub":
        return cls(
            platform_message_id=message.platform_message_id,
            content=message.content,
            timestamp=message.timestamp,
            thread_id=message.thread_id,
            subject=message.subject,
            direction="outbound" if message.is_outbound else "inbound",
            metadata=dump_metadata(message.metadata),
        )

    def to_message(self, user_id: str, contact_id: str, platform: str) -> Message:
        return Message(
            user_id=user_id,
            contact_id=contact_id,
            platform=platform,
            platform_message_id=self.platform_message_id,
            content=self.content,
            timestamp=self.timestamp,
            thread_id=self.thread_id,
            subject=self.subject,
            direction=self.direction,
            metadata=dict(self.metadata),
        )


@dataclass(slots=True)
class PendingApproval:
    """An unresolved sender awaiting a user decision."""

    id: str
    user_id: str
    platform: str
    sender: SenderIdentity
    message_count: int
    first_message_at: datetime
    last_message_at: datetime
    preview: str
    potential_match_id: str | None = None
    potential_match_score: float | None = None
    potential_match_reasons: list[str] = field(default_factory=list)
    messages: list[PendingMessageStub] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class BlacklistEntry:
    id: str
    user_id: str
    platform: str
    sender: SenderIdentity
    reason: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class MergeReview:
    """Open review for an ambiguous match between a new contact and an existing one."""

    id: str
    user_id: str
    contact_id: str
    candidate_contact_id: str
    score: float
    reasons: list[str]
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class MergePlan:
    """Survivor state plus the contacts folded into it."""

    primary: UnifiedContact
    merged_ids: list[str]


@dataclass(slots=True)
class ContactResolution:
    """What unification did with one incoming platform identity."""

    outcome: str  # "linked", "merged", "created", "review", "blocked"
    contact: UnifiedContact | None = None
    match: ScoredMatch | None = None


@dataclass(slots=True)
class PlatformSyncResult:
    platform: str
    success: bool = True
    skipped: bool = False
    reason: str | None = None
    contacts_processed: int = 0
    contacts_created: int = 0
    contacts_matched: int = 0
    contacts_pending_review: int = 0
    contacts_rejected: int = 0
    contacts_cached: int = 0
    messages_processed: int = 0
    new_messages: int = 0
    duplicates_skipped: int = 0
    pending_messages: int = 0
    blocked_messages: int = 0
    latest_message_at: datetime | None = None
    first_failed_at: datetime | None = None
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ConsolidationResult:
    merged_groups: int = 0
    merged_contacts: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class UnifiedSyncResult:
    user_id: str
    platforms: list[PlatformSyncResult] = field(default_factory=list)
    total_contacts: int = 0
    total_messages: int = 0
    cross_platform_merges: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SyncStatus:
    user_id: str
    platforms: list[str]
    states: list[SyncState]
    initial_sync_complete: bool
    contact_count: int
    message_count: int
    pending_count: int
    open_reviews: int


@dataclass(slots=True)
class ApprovalDecisionResult:
    success: bool
    decision: str
    contact_id: str | None = None
    messages_imported: int = 0
    blacklist_entry_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class ReviewDecisionResult:
    success: bool
    decision: str
    contact_id: str | None = None
    error: str | None = None
