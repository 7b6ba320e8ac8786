"""
Approval gate for messages from senders that are not yet contacts.

Per message: known contact -> saved, blacklisted -> blocked, anything else
is held on the sender's PendingApproval until the user approves or rejects.
"""

from dataclasses import dataclass

from app.features.contact_sync.domain import (
    ApprovalDecisionResult,
    ApprovalOutcome,
    BlacklistEntry,
    ContactStatus,
    Message,
    PendingApproval,
    PendingMessageStub,
    PlatformMessage,
    ScoredMatch,
    SenderIdentity,
    UnifiedContact,
    new_id,
)
from app.features.contact_sync.repository.base import ApprovalStore, ContactStore, MessageStore
from app.features.contact_sync.services.identity_resolver import IdentityResolver
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DECISION_APPROVE = "approve"
DECISION_REJECT = "reject"
PENDING_NOT_FOUND = "Pending approval not found"

# contacts in these states receive messages directly
KNOWN_CONTACT_STATUSES = frozenset({ContactStatus.ACTIVE, ContactStatus.PENDING_MERGE_REVIEW})


def _strong_keys(sender: SenderIdentity) -> set[str]:
    keys = set()
    if sender.platform_id:
        keys.add(f"id:{sender.platform_id}")
    if sender.email:
        keys.add(f"email:{sender.email.strip().lower()}")
    if sender.handle:
        keys.add(f"handle:{sender.handle.strip().lower()}")
    return keys


def sender_matches(blocked: SenderIdentity, sender: SenderIdentity) -> bool:
    """Match on id/email/handle; names are compared only when neither side has those."""
    blocked_keys = _strong_keys(blocked)
    sender_keys = _strong_keys(sender)
    if blocked_keys or sender_keys:
        return bool(blocked_keys & sender_keys)
    blocked_name = (blocked.name or "").strip().lower()
    return bool(blocked_name) and blocked_name == (sender.name or "").strip().lower()


@dataclass(slots=True)
class RouteResult:
    outcome: ApprovalOutcome
    contact: UnifiedContact | None = None
    pending: PendingApproval | None = None
    blacklist_entry: BlacklistEntry | None = None


class ApprovalGate:
    def __init__(
        self,
        contact_store: ContactStore,
        message_store: MessageStore,
        approval_store: ApprovalStore,
        resolver: IdentityResolver | None = None,
        preview_length: int = 200,
        potential_match_threshold: float = 40.0,
    ):
        self.contact_store = contact_store
        self.message_store = message_store
        self.approval_store = approval_store
        self.resolver = resolver
        self.preview_length = preview_length
        self.potential_match_threshold = potential_match_threshold

    async def find_blacklist_entry(
        self, user_id: str, platform: str, sender: SenderIdentity
    ) -> BlacklistEntry | None:
        entries = await self.approval_store.list_blacklist(user_id, platform)
        return next((entry for entry in entries if sender_matches(entry.sender, sender)), None)

    async def find_known_contact(
        self, user_id: str, platform: str, sender: SenderIdentity
    ) -> UnifiedContact | None:
        """
        Linked identity first, then an exact email match.

        Only ACTIVE and PENDING_MERGE_REVIEW contacts count as known; a contact
        archived by a merge never receives messages.
        """
        if sender.platform_id:
            contact = await self.contact_store.find_contact_by_identity(user_id, platform, sender.platform_id)
            if contact is not None and contact.status in KNOWN_CONTACT_STATUSES:
                return contact

        if sender.email:
            email = sender.email.strip().lower()
            for contact in await self.contact_store.list_contacts(user_id):
                if contact.status not in KNOWN_CONTACT_STATUSES:
                    continue
                if (contact.email or "").strip().lower() == email:
                    return contact
        return None

    async def route(self, user_id: str, platform: str, message: PlatformMessage) -> RouteResult:
        """Classify a message; unknown senders get a pending stub appended."""
        sender = message.counterpart

        contact = await self.find_known_contact(user_id, platform, sender)
        if contact is not None:
            return RouteResult(ApprovalOutcome.SAVED, contact=contact)

        entry = await self.find_blacklist_entry(user_id, platform, sender)
        if entry is not None:
            logger.info(
                "Dropped message from blacklisted sender",
                user_id=user_id,
                platform=platform,
                blacklist_entry_id=entry.id,
            )
            return RouteResult(ApprovalOutcome.BLOCKED, blacklist_entry=entry)

        potential_match = None
        existing = await self.approval_store.find_pending(user_id, platform, sender.key)
        if existing is None:
            potential_match = await self._potential_match(user_id, platform, sender)

        pending = await self.approval_store.add_pending_message(
            user_id,
            platform,
            sender,
            PendingMessageStub.from_platform(message),
            preview=(message.content or "")[: self.preview_length],
            potential_match=potential_match,
        )
        return RouteResult(ApprovalOutcome.PENDING, pending=pending)

    async def process_message(self, user_id: str, platform: str, message: PlatformMessage) -> RouteResult:
        """Route and, for known contacts, persist the message."""
        result = await self.route(user_id, platform, message)
        if result.outcome == ApprovalOutcome.SAVED:
            await self.message_store.save_message(Message.from_platform(user_id, result.contact.id, message))
        return result

    async def handle_incoming(self, user_id: str, message: PlatformMessage) -> bool:
        """Adapter message handler: True when a new message was persisted."""
        if await self.message_store.message_exists(user_id, message.platform, message.platform_message_id):
            return False
        result = await self.process_message(user_id, message.platform, message)
        return result.outcome == ApprovalOutcome.SAVED

    async def _potential_match(
        self, user_id: str, platform: str, sender: SenderIdentity
    ) -> ScoredMatch | None:
        if self.resolver is None:
            return None
        contacts = await self.contact_store.list_contacts(user_id)
        matches = self.resolver.resolve(sender.to_identity(platform), contacts)
        if matches and matches[0].score >= self.potential_match_threshold:
            return matches[0]
        return None

    async def approval_decision(self, user_id: str, pending_id: str, decision: str) -> ApprovalDecisionResult:
        if decision not in (DECISION_APPROVE, DECISION_REJECT):
            raise ValueError(f"Unknown approval decision: {decision}")

        pending = await self.approval_store.get_pending(user_id, pending_id)
        if pending is None:
            return ApprovalDecisionResult(False, decision, error=PENDING_NOT_FOUND)

        if decision == DECISION_APPROVE:
            return await self._approve(user_id, pending)
        return await self._reject(user_id, pending)

    async def _approve(self, user_id: str, pending: PendingApproval) -> ApprovalDecisionResult:
        identity = pending.sender.to_identity(pending.platform)
        existing = await self.contact_store.find_contact_by_identity(
            user_id, pending.platform, identity.platform_id
        )
        contact = existing or UnifiedContact.from_identity(user_id, identity)

        imported = await self.approval_store.approve_pending(
            user_id, pending.id, contact, create_contact=existing is None
        )
        if imported is None:
            return ApprovalDecisionResult(False, DECISION_APPROVE, error="Pending approval already decided")

        logger.info(
            "Pending sender approved",
            user_id=user_id,
            platform=pending.platform,
            contact_id=contact.id,
            messages_imported=imported,
        )
        return ApprovalDecisionResult(True, DECISION_APPROVE, contact_id=contact.id, messages_imported=imported)

    async def _reject(self, user_id: str, pending: PendingApproval) -> ApprovalDecisionResult:
        entry = BlacklistEntry(
            id=new_id(),
            user_id=user_id,
            platform=pending.platform,
            sender=pending.sender,
            reason="Rejected from pending approvals",
        )
        if not await self.approval_store.reject_pending(user_id, pending.id, entry):
            return ApprovalDecisionResult(False, DECISION_REJECT, error="Pending approval already decided")

        logger.info("Pending sender rejected", user_id=user_id, platform=pending.platform, entry_id=entry.id)
        return ApprovalDecisionResult(True, DECISION_REJECT, blacklist_entry_id=entry.id)

    async def list_pending(self, user_id: str) -> list[PendingApproval]:
        return await self.approval_store.list_pending(user_id)

    async def list_blacklist(self, user_id: str, platform: str | None = None) -> list[BlacklistEntry]:
        return await self.approval_store.list_blacklist(user_id, platform)

    async def remove_blacklist_entry(self, user_id: str, entry_id: str) -> bool:
        removed = await self.approval_store.remove_blacklist_entry(user_id, entry_id)
        if removed:
            logger.info("Blacklist entry removed", user_id=user_id, entry_id=entry_id)
        return removed
