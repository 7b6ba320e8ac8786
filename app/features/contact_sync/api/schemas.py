"""
Request and response models for the contact sync endpoints.

Services return domain dataclasses; the router converts them here.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.features.contact_sync.domain import (
    ApprovalDecisionResult,
    BlacklistEntry,
    MergeReview,
    PendingApproval,
    PlatformSyncResult,
    ReviewDecisionResult,
    SenderIdentity,
    SyncState,
    SyncStatus,
    UnifiedSyncResult,
)


class SyncRequest(BaseModel):
    """Request body for POST /contact-sync/sync"""

    force_contact_refresh: bool = False
    platforms: list[str] | None = Field(None, description="Defaults to every configured platform")


class ApprovalDecisionRequest(BaseModel):
    decision: Literal["approve", "reject"]


class ReviewDecisionRequest(BaseModel):
    decision: Literal["merge", "keep_separate"]


class SenderResponse(BaseModel):
    platform_id: str | None = None
    name: str | None = None
    email: str | None = None
    handle: str | None = None
    display_name: str

    @classmethod
    def from_domain(cls, sender: SenderIdentity) -> "SenderResponse":
        return cls(
            platform_id=sender.platform_id,
            name=sender.name,
            email=sender.email,
            handle=sender.handle,
            display_name=sender.display_name,
        )


class PlatformSyncResponse(BaseModel):
    platform: str
    success: bool
    skipped: bool
    reason: str | None = None
    contacts_processed: int
    contacts_created: int
    contacts_matched: int
    contacts_pending_review: int
    contacts_rejected: int
    messages_processed: int
    new_messages: int
    duplicates_skipped: int
    pending_messages: int
    blocked_messages: int
    errors: list[str]

    @classmethod
    def from_domain(cls, result: PlatformSyncResult) -> "PlatformSyncResponse":
        return cls(
            platform=result.platform,
            success=result.success,
            skipped=result.skipped,
            reason=result.reason,
            contacts_processed=result.contacts_processed,
            contacts_created=result.contacts_created,
            contacts_matched=result.contacts_matched,
            contacts_pending_review=result.contacts_pending_review,
            contacts_rejected=result.contacts_rejected,
            messages_processed=result.messages_processed,
            new_messages=result.new_messages,
            duplicates_skipped=result.duplicates_skipped,
            pending_messages=result.pending_messages,
            blocked_messages=result.blocked_messages,
            errors=list(result.errors),
        )


class UnifiedSyncResponse(BaseModel):
    """Response for POST /contact-sync/sync"""

    user_id: str
    platforms: list[PlatformSyncResponse]
    total_contacts: int
    total_messages: int
    cross_platform_merges: int
    errors: list[str]

    @classmethod
    def from_domain(cls, result: UnifiedSyncResult) -> "UnifiedSyncResponse":
        return cls(
            user_id=result.user_id,
            platforms=[PlatformSyncResponse.from_domain(p) for p in result.platforms],
            total_contacts=result.total_contacts,
            total_messages=result.total_messages,
            cross_platform_merges=result.cross_platform_merges,
            errors=list(result.errors),
        )


class PlatformStateResponse(BaseModel):
    platform: str
    initial_sync_complete: bool
    last_sync_at: datetime | None = None
    last_message_at: datetime | None = None
    total_messages_processed: int
    is_syncing: bool
    last_error: str | None = None
    failure_count: int

    @classmethod
    def from_domain(cls, state: SyncState) -> "PlatformStateResponse":
        return cls(
            platform=state.platform,
            initial_sync_complete=state.initial_sync_complete,
            last_sync_at=state.last_sync_at,
            last_message_at=state.last_message_at,
            total_messages_processed=state.total_messages_processed,
            is_syncing=state.is_syncing,
            last_error=state.last_error,
            failure_count=state.failure_count,
        )


class SyncStatusResponse(BaseModel):
    """Response for GET /contact-sync/status"""

    platforms: list[str]
    states: list[PlatformStateResponse]
    initial_sync_complete: bool
    contact_count: int
    message_count: int
    pending_count: int
    open_reviews: int

    @classmethod
    def from_domain(cls, status: SyncStatus) -> "SyncStatusResponse":
        return cls(
            platforms=list(status.platforms),
            states=[PlatformStateResponse.from_domain(s) for s in status.states],
            initial_sync_complete=status.initial_sync_complete,
            contact_count=status.contact_count,
            message_count=status.message_count,
            pending_count=status.pending_count,
            open_reviews=status.open_reviews,
        )


class PendingMessageResponse(BaseModel):
    platform_message_id: str
    content: str
    timestamp: datetime
    subject: str | None = None
    direction: str


class PendingApprovalResponse(BaseModel):
    id: str
    platform: str
    sender: SenderResponse
    message_count: int
    first_message_at: datetime
    last_message_at: datetime
    preview: str
    potential_match_id: str | None = None
    potential_match_score: float | None = None
    potential_match_reasons: list[str] = []
    messages: list[PendingMessageResponse] = []

    @classmethod
    def from_domain(cls, pending: PendingApproval) -> "PendingApprovalResponse":
        return cls(
            id=pending.id,
            platform=pending.platform,
            sender=SenderResponse.from_domain(pending.sender),
            message_count=pending.message_count,
            first_message_at=pending.first_message_at,
            last_message_at=pending.last_message_at,
            preview=pending.preview,
            potential_match_id=pending.potential_match_id,
            potential_match_score=pending.potential_match_score,
            potential_match_reasons=list(pending.potential_match_reasons),
            messages=[
                PendingMessageResponse(
                    platform_message_id=stub.platform_message_id,
                    content=stub.content,
                    timestamp=stub.timestamp,
                    subject=stub.subject,
                    direction=stub.direction,
                )
                for stub in pending.messages
            ],
        )


class ApprovalDecisionResponse(BaseModel):
    success: bool
    decision: str
    contact_id: str | None = None
    messages_imported: int = 0
    blacklist_entry_id: str | None = None

    @classmethod
    def from_domain(cls, result: ApprovalDecisionResult) -> "ApprovalDecisionResponse":
        return cls(
            success=result.success,
            decision=result.decision,
            contact_id=result.contact_id,
            messages_imported=result.messages_imported,
            blacklist_entry_id=result.blacklist_entry_id,
        )


class MergeReviewResponse(BaseModel):
    id: str
    contact_id: str
    candidate_contact_id: str
    score: float
    reasons: list[str]
    created_at: datetime

    @classmethod
    def from_domain(cls, review: MergeReview) -> "MergeReviewResponse":
        return cls(
            id=review.id,
            contact_id=review.contact_id,
            candidate_contact_id=review.candidate_contact_id,
            score=review.score,
            reasons=list(review.reasons),
            created_at=review.created_at,
        )


class ReviewDecisionResponse(BaseModel):
    success: bool
    decision: str
    contact_id: str | None = None

    @classmethod
    def from_domain(cls, result: ReviewDecisionResult) -> "ReviewDecisionResponse":
        return cls(success=result.success, decision=result.decision, contact_id=result.contact_id)


class BlacklistEntryResponse(BaseModel):
    id: str
    platform: str
    sender: SenderResponse
    reason: str | None = None
    created_at: datetime

    @classmethod
    def from_domain(cls, entry: BlacklistEntry) -> "BlacklistEntryResponse":
        return cls(
            id=entry.id,
            platform=entry.platform,
            sender=SenderResponse.from_domain(entry.sender),
            reason=entry.reason,
            created_at=entry.created_at,
        )
