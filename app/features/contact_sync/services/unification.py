"""
Unify fetched platform identities into unified contacts.

Flow per identity: bot check, blacklist check, indexed "already linked"
lookup, then scoring and the merge / create / review decision.
"""

from app.features.contact_sync.domain import (
    ContactResolution,
    ContactStatus,
    MatchDecision,
    MergeReview,
    PlatformIdentity,
    SenderIdentity,
    UnifiedContact,
    new_id,
)
from app.features.contact_sync.repository.base import ContactStore
from app.features.contact_sync.services.approval_gate import ApprovalGate
from app.features.contact_sync.services.bot_detection import BotDetector
from app.features.contact_sync.services.identity_resolver import IdentityResolver, decide
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def _remember(contacts: list[UnifiedContact] | None, contact: UnifiedContact) -> None:
    if contacts is None:
        return
    for index, existing in enumerate(contacts):
        if existing.id == contact.id:
            contacts[index] = contact
            return
    contacts.append(contact)


class ContactUnificationService:
    def __init__(
        self,
        contact_store: ContactStore,
        approval_gate: ApprovalGate,
        resolver: IdentityResolver,
        bot_detector: BotDetector,
        auto_merge_threshold: float = 90.0,
        auto_create_threshold: float = 40.0,
    ):
        self.contact_store = contact_store
        self.approval_gate = approval_gate
        self.resolver = resolver
        self.bot_detector = bot_detector
        self.auto_merge_threshold = auto_merge_threshold
        self.auto_create_threshold = auto_create_threshold

    async def unify(
        self,
        user_id: str,
        identity: PlatformIdentity,
        contacts: list[UnifiedContact] | None = None,
    ) -> ContactResolution:
        """
        Resolve one identity to a contact.

        ``contacts`` is the caller's working copy of the user's contacts; it is
        updated in place so a batch sees the contacts it created itself.

        Raises:
            ValidationRejection: identity looks automated
            PersistenceError: the store write failed
        """
        self.bot_detector.ensure_not_bot(identity)

        sender = SenderIdentity(
            platform_id=identity.platform_id,
            name=identity.display_name,
            email=identity.email,
            handle=identity.handle,
        )
        if await self.approval_gate.find_blacklist_entry(user_id, identity.platform, sender):
            return ContactResolution("blocked")

        linked = await self.contact_store.find_contact_by_identity(user_id, identity.platform, identity.platform_id)
        if linked is not None:
            return ContactResolution("linked", contact=linked)

        if contacts is None:
            contacts = await self.contact_store.list_contacts(user_id)

        matches = self.resolver.resolve(identity, contacts)
        decision, best = decide(matches, self.auto_merge_threshold, self.auto_create_threshold)

        if decision == MatchDecision.MERGE:
            target = next(c for c in contacts if c.id == best.contact_id)
            current = target.identity_for(identity.platform)
            if current is None or current.platform_id == identity.platform_id:
                merged = await self._merge_into(target, identity)
                _remember(contacts, merged)
                logger.debug(
                    "Identity merged into contact",
                    user_id=user_id,
                    platform=identity.platform,
                    contact_id=merged.id,
                    score=best.score,
                )
                return ContactResolution("merged", contact=merged, match=best)
            # one identity per platform per contact; let the user decide
            decision = MatchDecision.REVIEW

        if decision == MatchDecision.REVIEW:
            contact = UnifiedContact.from_identity(user_id, identity, ContactStatus.PENDING_MERGE_REVIEW)
            review = MergeReview(
                id=new_id(),
                user_id=user_id,
                contact_id=contact.id,
                candidate_contact_id=best.contact_id,
                score=best.score,
                reasons=list(best.reasons),
            )
            created = await self.contact_store.create_contact_with_review(contact, review)
            _remember(contacts, created)
            logger.info(
                "Ambiguous match held for review",
                user_id=user_id,
                platform=identity.platform,
                contact_id=created.id,
                candidate_contact_id=best.contact_id,
                score=best.score,
            )
            return ContactResolution("review", contact=created, match=best)

        created = await self.contact_store.create_contact(UnifiedContact.from_identity(user_id, identity))
        _remember(contacts, created)
        return ContactResolution("created", contact=created)

    async def _merge_into(self, target: UnifiedContact, identity: PlatformIdentity) -> UnifiedContact:
        target.identities[identity.platform] = identity
        if not target.email and identity.email:
            target.email = identity.email
        if not target.photo_url and identity.avatar_url:
            target.photo_url = identity.avatar_url
        return await self.contact_store.link_identity(target, identity)
