"""
Sync orchestrator: the single entry point for a user's sync run.

Each platform runs independently (concurrently by default) under its
in-progress flag; a consolidation pass runs once all of them have
returned.
"""

import asyncio
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

from app.features.contact_sync.domain import (
    ApprovalDecisionResult,
    ApprovalOutcome,
    AuthError,
    ContactStatus,
    ContactSyncError,
    FetchOptions,
    Message,
    PersistenceError,
    PlatformMessage,
    PlatformSyncResult,
    ReviewDecisionResult,
    SyncDecision,
    SyncInProgressError,
    SyncStatus,
    UnifiedContact,
    UnifiedSyncResult,
    ValidationRejection,
    utcnow,
)
from app.features.contact_sync.platforms.base import PlatformAdapter
from app.features.contact_sync.repository.base import ContactStore, MessageStore
from app.features.contact_sync.services.approval_gate import ApprovalGate
from app.features.contact_sync.services.consolidation import ContactConsolidator
from app.features.contact_sync.services.deduplication import DeduplicationFilter
from app.features.contact_sync.services.sync_state import SyncStateStore
from app.features.contact_sync.services.text_insight import TextInsightProvider, enrich_content
from app.features.contact_sync.services.unification import ContactUnificationService
from app.features.contact_sync.services.user_cache import UserCache
from app.infrastructure.observability.logging import get_logger, log_sync_result

logger = get_logger(__name__)

REVIEW_MERGE = "merge"
REVIEW_KEEP_SEPARATE = "keep_separate"
REVIEW_NOT_FOUND = "Merge review not found"

# platform -> platform_id -> contact_id
IdentityMap = dict[str, dict[str, str]]


class SyncOrchestrator:
    def __init__(
        self,
        *,
        adapters: Mapping[str, PlatformAdapter],
        contact_store: ContactStore,
        message_store: MessageStore,
        sync_state: SyncStateStore,
        unification: ContactUnificationService,
        approval_gate: ApprovalGate,
        consolidator: ContactConsolidator,
        identity_cache: UserCache[IdentityMap],
        dedup_factory: Callable[[], DeduplicationFilter] = DeduplicationFilter,
        insight_provider: TextInsightProvider | None = None,
        initial_lookback_days: int = 30,
        message_fetch_limit: int = 200,
        concurrent_platforms: bool = True,
        message_save_attempts: int = 2,
        now: Callable[[], datetime] = utcnow,
    ):
        self.adapters = dict(adapters)
        self.contact_store = contact_store
        self.message_store = message_store
        self.sync_state = sync_state
        self.unification = unification
        self.approval_gate = approval_gate
        self.consolidator = consolidator
        self.identity_cache = identity_cache
        self.dedup_factory = dedup_factory
        self.insight_provider = insight_provider
        self.initial_lookback = timedelta(days=initial_lookback_days)
        self.message_fetch_limit = message_fetch_limit
        self.concurrent_platforms = concurrent_platforms
        self.message_save_attempts = max(1, message_save_attempts)
        self._now = now

    @property
    def platforms(self) -> list[str]:
        return list(self.adapters)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def sync_all_platforms(
        self,
        user_id: str,
        force_contact_refresh: bool = False,
        platforms: list[str] | None = None,
    ) -> UnifiedSyncResult:
        """
        Sync every configured platform for one user, then consolidate.

        Never raises for platform or item failures; they come back in the
        per-platform results and the aggregate error list.
        """
        names = platforms or self.platforms
        logger.info("Unified sync started", user_id=user_id, platforms=names, force_refresh=force_contact_refresh)

        try:
            if self.concurrent_platforms:
                results = list(
                    await asyncio.gather(
                        *(self._sync_platform_safely(user_id, name, force_contact_refresh) for name in names)
                    )
                )
            else:
                results = [await self._sync_platform_safely(user_id, name, force_contact_refresh) for name in names]

            # barrier: runs only after every platform has returned
            consolidation = await self.consolidator.consolidate(user_id)
        finally:
            self.identity_cache.evict(user_id)

        result = UnifiedSyncResult(
            user_id=user_id,
            platforms=results,
            total_contacts=sum(r.contacts_processed for r in results),
            total_messages=sum(r.new_messages for r in results),
            cross_platform_merges=consolidation.merged_contacts,
        )
        for platform_result in results:
            result.errors.extend(f"{platform_result.platform}: {e}" for e in platform_result.errors)
        result.errors.extend(consolidation.errors)

        log_sync_result(
            user_id=user_id,
            platforms=[
                {
                    "platform": r.platform,
                    "success": r.success,
                    "skipped": r.skipped,
                    "reason": r.reason,
                    "new_messages": r.new_messages,
                    "contacts_processed": r.contacts_processed,
                }
                for r in results
            ],
            total_contacts=result.total_contacts,
            total_messages=result.total_messages,
            cross_platform_merges=result.cross_platform_merges,
            errors=result.errors,
        )
        return result

    async def refresh_contacts(self, user_id: str, platform: str) -> PlatformSyncResult:
        """Re-fetch a platform's contacts through unification, without touching messages."""
        result = PlatformSyncResult(platform=platform, reason="contact_refresh")
        adapter = self.adapters.get(platform)
        if adapter is None:
            result.success = False
            result.errors.append(f"Platform {platform} is not configured")
            return result

        try:
            if not await adapter.is_authenticated(user_id):
                raise AuthError(f"{platform} is not connected", platform=platform)
            await self._load_identity_map(user_id, adapter, True, result)
        except ContactSyncError as e:
            result.success = False
            result.errors.append(str(e))
            logger.warning("Contact refresh failed", user_id=user_id, platform=platform, error=str(e))
        finally:
            self.identity_cache.evict(user_id)
        return result

    async def approval_decision(self, user_id: str, pending_id: str, decision: str) -> ApprovalDecisionResult:
        result = await self.approval_gate.approval_decision(user_id, pending_id, decision)
        self.identity_cache.evict(user_id)
        return result

    async def review_decision(self, user_id: str, review_id: str, decision: str) -> ReviewDecisionResult:
        if decision not in (REVIEW_MERGE, REVIEW_KEEP_SEPARATE):
            raise ValueError(f"Unknown review decision: {decision}")

        review = await self.contact_store.get_merge_review(user_id, review_id)
        if review is None:
            return ReviewDecisionResult(False, decision, error=REVIEW_NOT_FOUND)

        if decision == REVIEW_KEEP_SEPARATE:
            await self.contact_store.update_contact_status(user_id, review.contact_id, ContactStatus.ACTIVE)
            await self.contact_store.delete_merge_review(user_id, review_id)
            return ReviewDecisionResult(True, decision, contact_id=review.contact_id)

        contact = await self.contact_store.get_contact(user_id, review.contact_id)
        candidate = await self.contact_store.get_contact(user_id, review.candidate_contact_id)
        if contact is None or candidate is None:
            await self.contact_store.delete_merge_review(user_id, review_id)
            return ReviewDecisionResult(False, decision, error="Reviewed contact no longer exists")

        try:
            plan = await self.consolidator.apply(user_id, [candidate, contact], primary_id=candidate.id)
        except ContactSyncError as e:
            return ReviewDecisionResult(False, decision, error=str(e))
        finally:
            self.identity_cache.evict(user_id)

        if not plan.merged_ids:
            return ReviewDecisionResult(
                False, decision, error="Contacts hold different identities on the same platform"
            )
        return ReviewDecisionResult(True, decision, contact_id=candidate.id)

    async def get_sync_status(self, user_id: str) -> SyncStatus:
        states = await self.sync_state.get_sync_states(user_id)
        by_platform = {state.platform: state for state in states}
        return SyncStatus(
            user_id=user_id,
            platforms=self.platforms,
            states=states,
            initial_sync_complete=all(
                p in by_platform and by_platform[p].initial_sync_complete for p in self.platforms
            ),
            contact_count=await self.contact_store.count_contacts(user_id),
            message_count=await self.message_store.count_messages(user_id),
            pending_count=len(await self.approval_gate.list_pending(user_id)),
            open_reviews=len(await self.contact_store.list_merge_reviews(user_id)),
        )

    async def reset_sync_state(self, user_id: str, platform: str | None = None) -> int:
        self.identity_cache.evict(user_id)
        return await self.sync_state.reset_sync_state(user_id, platform)

    # ------------------------------------------------------------------
    # Per-platform run
    # ------------------------------------------------------------------

    async def _sync_platform_safely(self, user_id: str, platform: str, force_refresh: bool) -> PlatformSyncResult:
        """Platform-level failures end here so other platforms keep going."""
        result = PlatformSyncResult(platform=platform)
        try:
            await self._sync_platform(user_id, platform, force_refresh, result)
        except SyncInProgressError:
            result.skipped = True
            result.reason = "sync_in_progress"
        except ContactSyncError as e:
            result.success = False
            result.errors.append(str(e))
            logger.error("Platform sync failed", user_id=user_id, platform=platform, error=str(e))
        except Exception as e:
            result.success = False
            result.errors.append(f"Unexpected error: {e}")
            logger.exception("Platform sync crashed", user_id=user_id, platform=platform)
        return result

    async def _sync_platform(
        self, user_id: str, platform: str, force_refresh: bool, result: PlatformSyncResult
    ) -> None:
        adapter = self.adapters.get(platform)
        if adapter is None:
            raise ContactSyncError(f"Platform {platform} is not configured", platform=platform)

        if not await adapter.is_authenticated(user_id):
            result.skipped = True
            result.reason = "not_authenticated"
            return

        decision = await self.sync_state.should_sync(user_id, platform)
        result.reason = decision.reason
        if not decision.should_sync:
            result.skipped = True
            return

        try:
            async with self.sync_state.in_progress(user_id, platform):
                await self._run_platform(user_id, adapter, decision, force_refresh, result)
        except SyncInProgressError:
            raise
        except Exception as e:
            await self._record_failure(user_id, platform, e)
            raise

    async def _run_platform(
        self,
        user_id: str,
        adapter: PlatformAdapter,
        decision: SyncDecision,
        force_refresh: bool,
        result: PlatformSyncResult,
    ) -> None:
        platform = adapter.platform
        identity_map = await self._load_identity_map(user_id, adapter, force_refresh, result)

        since = decision.last_message_at or (self._now() - self.initial_lookback)
        messages = await adapter.fetch_messages(
            user_id, FetchOptions(limit=self.message_fetch_limit, since=since)
        )

        # a capped batch keeps its oldest messages; the watermark never passes an unprocessed one
        batch = sorted(messages, key=lambda m: m.timestamp)[: self.message_fetch_limit]

        dedup = self.dedup_factory()
        for message in batch:
            await self._process_message(user_id, platform, message, identity_map, dedup, result)

        if decision.is_initial:
            await self.sync_state.mark_initial_sync_complete(
                user_id, platform, result.new_messages, result.latest_message_at
            )
        else:
            await self.sync_state.update_last_sync(user_id, platform, result.new_messages, result.latest_message_at)

        logger.info(
            "Platform sync finished",
            user_id=user_id,
            platform=platform,
            messages_processed=result.messages_processed,
            new_messages=result.new_messages,
            duplicates=result.duplicates_skipped,
            pending=result.pending_messages,
            blocked=result.blocked_messages,
            item_errors=len(result.errors),
        )

    async def _load_identity_map(
        self,
        user_id: str,
        adapter: PlatformAdapter,
        force_refresh: bool,
        result: PlatformSyncResult,
    ) -> dict[str, str]:
        """
        Known platform_id -> contact_id links for this platform.

        Contacts are fetched from the platform only when nothing is linked yet
        or a refresh is forced.
        """
        platform = adapter.platform
        cached = self.identity_cache.get_or_create(user_id, dict)

        links = cached.get(platform)
        if links is None:
            links = await self.contact_store.list_identity_links(user_id, platform)
        cached[platform] = links

        if links and not force_refresh:
            result.contacts_cached = len(links)
            return links

        identities = await adapter.fetch_contacts(user_id)
        contacts: list[UnifiedContact] = await self.contact_store.list_contacts(user_id)

        for identity in identities:
            result.contacts_processed += 1
            try:
                resolution = await self.unification.unify(user_id, identity, contacts)
            except ValidationRejection:
                result.contacts_rejected += 1
                continue
            except PersistenceError as e:
                result.errors.append(f"contact {identity.platform_id}: {e}")
                logger.warning(
                    "Contact unification failed",
                    user_id=user_id,
                    platform=platform,
                    platform_id=identity.platform_id,
                    error=str(e),
                )
                continue

            if resolution.outcome == "created":
                result.contacts_created += 1
            elif resolution.outcome in ("merged", "linked"):
                result.contacts_matched += 1
            elif resolution.outcome == "review":
                result.contacts_pending_review += 1
            elif resolution.outcome == "blocked":
                result.contacts_rejected += 1

            if resolution.contact is not None:
                links[identity.platform_id] = resolution.contact.id

        return links

    async def _process_message(
        self,
        user_id: str,
        platform: str,
        message: PlatformMessage,
        identity_map: dict[str, str],
        dedup: DeduplicationFilter,
        result: PlatformSyncResult,
    ) -> None:
        result.messages_processed += 1
        try:
            if await self.message_store.message_exists(user_id, platform, message.platform_message_id):
                result.duplicates_skipped += 1
                self._advance(result, message)
                return

            counterpart = message.counterpart
            contact_id = identity_map.get(counterpart.platform_id) if counterpart.platform_id else None

            if contact_id is None:
                routed = await self.approval_gate.route(user_id, platform, message)
                if routed.outcome == ApprovalOutcome.BLOCKED:
                    result.blocked_messages += 1
                    self._advance(result, message)
                    return
                if routed.outcome == ApprovalOutcome.PENDING:
                    result.pending_messages += 1
                    self._advance(result, message)
                    return
                contact_id = routed.contact.id
                if counterpart.platform_id and routed.contact.has_identity(platform, counterpart.platform_id):
                    identity_map[counterpart.platform_id] = contact_id

            stored = Message.from_platform(user_id, contact_id, message)
            if not dedup.admit(stored):
                result.duplicates_skipped += 1
                self._advance(result, message)
                return

            insight = await enrich_content(self.insight_provider, stored.content)
            stored.content = insight.content
            stored.metadata.update(insight.as_metadata())

            if await self._save_with_retry(stored):
                result.new_messages += 1
            else:
                result.duplicates_skipped += 1
            self._advance(result, message)

        except PersistenceError as e:
            result.errors.append(f"message {message.platform_message_id}: {e}")
            if result.first_failed_at is None or message.timestamp < result.first_failed_at:
                result.first_failed_at = message.timestamp
            logger.warning(
                "Message skipped after persistence failure",
                user_id=user_id,
                platform=platform,
                platform_message_id=message.platform_message_id,
                error=str(e),
            )

    async def _save_with_retry(self, message: Message) -> bool:
        for attempt in range(1, self.message_save_attempts + 1):
            try:
                return await self.message_store.save_message(message)
            except PersistenceError as e:
                if not e.recoverable or attempt >= self.message_save_attempts:
                    raise
                logger.warning(
                    "Message save failed, retrying",
                    platform_message_id=message.platform_message_id,
                    attempt=attempt,
                    error=str(e),
                )
        return False

    @staticmethod
    def _advance(result: PlatformSyncResult, message: PlatformMessage) -> None:
        # held below a failed save so the next run fetches that message again
        if result.first_failed_at is not None and message.timestamp >= result.first_failed_at:
            return
        if result.latest_message_at is None or message.timestamp > result.latest_message_at:
            result.latest_message_at = message.timestamp

    async def _record_failure(self, user_id: str, platform: str, error: Exception) -> None:
        try:
            await self.sync_state.mark_failed(user_id, platform, str(error))
        except Exception as e:
            logger.error("Could not record sync failure", user_id=user_id, platform=platform, error=str(e))
