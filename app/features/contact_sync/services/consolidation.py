"""
Cross-platform consolidation pass.

Runs after every platform in a sync has finished. Contacts sharing an
email (or, without email, an exact display name) are folded into the
earliest-created one.
"""

import dataclasses
from collections import defaultdict

from app.features.contact_sync.domain import (
    ConsolidationError,
    ConsolidationResult,
    ContactStatus,
    MergePlan,
    UnifiedContact,
)
from app.features.contact_sync.domain.models import UNKNOWN_SENDER
from app.features.contact_sync.repository.base import ContactStore
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def grouping_key(contact: UnifiedContact) -> str | None:
    email = (contact.email or "").strip().lower()
    if email:
        return f"email:{email}"
    name = (contact.display_name or "").strip()
    if not name or name == UNKNOWN_SENDER:
        return None
    return f"name:{name}"


def _creation_order(contact: UnifiedContact):
    return (contact.created_at, contact.id)


def _best_display_name(contacts: list[UnifiedContact]) -> str:
    names = [c.display_name.strip() for c in contacts if c.display_name and "@" not in c.display_name]
    if not names:
        return contacts[0].display_name
    # max() keeps the first of equally long names, so creation order decides ties
    return max(names, key=len)


def plan_merge(contacts: list[UnifiedContact], primary_id: str | None = None) -> MergePlan:
    """
    Build the survivor for a group without touching storage.

    Members holding a different identity on a platform the survivor already
    covers are left out; one contact keeps at most one identity per platform.
    """
    ordered = sorted(contacts, key=_creation_order)
    if primary_id is not None:
        ordered.sort(key=lambda c: c.id != primary_id)

    head = ordered[0]
    survivor = dataclasses.replace(
        head,
        identities=dict(head.identities),
        metadata=dict(head.metadata),
        status=ContactStatus.ACTIVE,
    )
    absorbed: list[UnifiedContact] = []

    for other in ordered[1:]:
        conflict = any(
            platform in survivor.identities and survivor.identities[platform].platform_id != identity.platform_id
            for platform, identity in other.identities.items()
        )
        if conflict:
            logger.debug("Contact left out of merge: conflicting identity", contact_id=other.id, primary_id=head.id)
            continue
        for platform, identity in other.identities.items():
            survivor.identities.setdefault(platform, identity)
        for key, value in other.metadata.items():
            survivor.metadata.setdefault(key, value)
        absorbed.append(other)

    members = [head, *absorbed]
    survivor.display_name = _best_display_name(members)
    survivor.email = next((c.email for c in members if c.email), None)
    survivor.photo_url = next((c.photo_url for c in members if c.photo_url), None)
    return MergePlan(primary=survivor, merged_ids=[c.id for c in absorbed])


class ContactConsolidator:
    def __init__(self, contact_store: ContactStore):
        self.contact_store = contact_store

    @staticmethod
    def group(contacts: list[UnifiedContact]) -> list[list[UnifiedContact]]:
        groups: dict[str, list[UnifiedContact]] = defaultdict(list)
        for contact in contacts:
            if contact.status != ContactStatus.ACTIVE:
                continue
            key = grouping_key(contact)
            if key is not None:
                groups[key].append(contact)
        return [sorted(members, key=_creation_order) for _, members in sorted(groups.items()) if len(members) > 1]

    async def consolidate(self, user_id: str) -> ConsolidationResult:
        result = ConsolidationResult()
        try:
            contacts = await self.contact_store.list_contacts(user_id)
        except Exception as e:
            logger.error("Consolidation could not load contacts", user_id=user_id, error=str(e))
            result.errors.append(f"consolidation: {e}")
            return result

        for members in self.group(contacts):
            try:
                plan = await self.apply(user_id, members)
            except ConsolidationError as e:
                result.errors.append(str(e))
                continue
            if plan.merged_ids:
                result.merged_groups += 1
                result.merged_contacts += len(plan.merged_ids)

        if result.merged_groups:
            logger.info(
                "Consolidation merged contacts",
                user_id=user_id,
                groups=result.merged_groups,
                contacts=result.merged_contacts,
            )
        return result

    async def apply(self, user_id: str, members: list[UnifiedContact], primary_id: str | None = None) -> MergePlan:
        """Plan and persist one merge; storage failures become ConsolidationError."""
        plan = plan_merge(members, primary_id=primary_id)
        if not plan.merged_ids:
            return plan
        try:
            moved = await self.contact_store.merge_contacts(user_id, plan)
        except Exception as e:
            ids = [plan.primary.id, *plan.merged_ids]
            logger.warning("Contact merge failed", user_id=user_id, contact_ids=ids, error=str(e))
            raise ConsolidationError(f"merge of {', '.join(ids)} failed: {e}", contact_ids=ids) from e

        logger.debug(
            "Contacts merged",
            user_id=user_id,
            primary_id=plan.primary.id,
            merged_ids=plan.merged_ids,
            messages_reassigned=moved,
        )
        return plan
