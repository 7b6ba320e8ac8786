"""
Domain subpackage for contact sync.
"""

from .errors import (
    AuthError,
    ConsolidationError,
    ContactSyncError,
    IdentityConflictError,
    PersistenceError,
    PlatformAPIError,
    RateLimitExhausted,
    SyncInProgressError,
    ValidationRejection,
)
from .models import (
    AdapterSyncResult,
    ApprovalDecisionResult,
    ApprovalOutcome,
    BlacklistEntry,
    ConsolidationResult,
    ContactResolution,
    ContactStatus,
    FetchOptions,
    MatchDecision,
    MergePlan,
    MergeReview,
    Message,
    OutgoingMessage,
    PendingApproval,
    PendingMessageStub,
    PlatformIdentity,
    PlatformMessage,
    PlatformSyncResult,
    ReviewDecisionResult,
    ScoredMatch,
    SenderIdentity,
    SendResult,
    SyncDecision,
    SyncState,
    SyncStatus,
    UnifiedContact,
    UnifiedSyncResult,
    new_id,
    utcnow,
)

__all__ = [
    "AdapterSyncResult",
    "ApprovalDecisionResult",
    "ApprovalOutcome",
    "AuthError",
    "BlacklistEntry",
    "ConsolidationError",
    "ConsolidationResult",
    "ContactResolution",
    "ContactStatus",
    "ContactSyncError",
    "FetchOptions",
    "IdentityConflictError",
    "MatchDecision",
    "MergePlan",
    "MergeReview",
    "Message",
    "OutgoingMessage",
    "PendingApproval",
    "PendingMessageStub",
    "PersistenceError",
    "PlatformAPIError",
    "PlatformIdentity",
    "PlatformMessage",
    "PlatformSyncResult",
    "RateLimitExhausted",
    "ReviewDecisionResult",
    "ScoredMatch",
    "SenderIdentity",
    "SendResult",
    "SyncDecision",
    "SyncInProgressError",
    "SyncState",
    "SyncStatus",
    "UnifiedContact",
    "UnifiedSyncResult",
    "ValidationRejection",
    "new_id",
    "utcnow",
]
