"""
Per (user, platform) incremental sync bookkeeping.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from app.features.contact_sync.domain import SyncDecision, SyncInProgressError, SyncState, utcnow
from app.features.contact_sync.repository.base import SyncStateRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REASON_NO_STATE = "no_previous_sync"
REASON_INITIAL_INCOMPLETE = "initial_sync_incomplete"
REASON_IN_PROGRESS = "sync_in_progress"
REASON_COOLDOWN = "recently_synced"
REASON_INCREMENTAL = "incremental"


def _later(current: datetime | None, candidate: datetime | None) -> datetime | None:
    if current is None:
        return candidate
    if candidate is None:
        return current
    return max(current, candidate)


class SyncStateStore:
    """
    Decides whether a platform should sync and records what a sync did.

    ``total_messages_processed`` and ``last_message_at`` never move backwards.
    The in-progress flag is only written through ``in_progress`` and
    ``set_sync_in_progress``; ``save_state`` leaves it untouched.
    """

    def __init__(
        self,
        repository: SyncStateRepository,
        cooldown_seconds: int = 3600,
        now: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self._now = now

    async def get_state(self, user_id: str, platform: str) -> SyncState | None:
        return await self.repository.get_state(user_id, platform)

    async def get_sync_states(self, user_id: str) -> list[SyncState]:
        return await self.repository.list_states(user_id)

    async def should_sync(self, user_id: str, platform: str) -> SyncDecision:
        state = await self.repository.get_state(user_id, platform)
        if state is None:
            return SyncDecision(True, REASON_NO_STATE, None, is_initial=True)

        # checked ahead of the initial-sync case so an unfinished first sync
        # can never be started twice
        if state.is_syncing:
            return SyncDecision(False, REASON_IN_PROGRESS, state.last_message_at)

        if not state.initial_sync_complete:
            return SyncDecision(True, REASON_INITIAL_INCOMPLETE, state.last_message_at, is_initial=True)

        if state.last_sync_at and self._now() - state.last_sync_at < self.cooldown:
            return SyncDecision(False, REASON_COOLDOWN, state.last_message_at)

        return SyncDecision(True, REASON_INCREMENTAL, state.last_message_at)

    async def is_initial_sync_complete(self, user_id: str, platforms: list[str]) -> bool:
        states = {state.platform: state for state in await self.repository.list_states(user_id)}
        return all(states.get(p) is not None and states[p].initial_sync_complete for p in platforms)

    async def update_last_sync(
        self,
        user_id: str,
        platform: str,
        new_message_count: int,
        latest_message_at: datetime | None,
    ) -> SyncState:
        state = await self.repository.get_state(user_id, platform) or SyncState(user_id, platform)
        state.total_messages_processed += max(0, new_message_count)
        state.last_message_at = _later(state.last_message_at, latest_message_at)
        state.last_sync_at = self._now()
        state.last_error = None
        await self.repository.save_state(state)
        return state

    async def mark_initial_sync_complete(
        self,
        user_id: str,
        platform: str,
        new_message_count: int = 0,
        latest_message_at: datetime | None = None,
    ) -> SyncState:
        state = await self.repository.get_state(user_id, platform) or SyncState(user_id, platform)
        state.initial_sync_complete = True
        state.total_messages_processed += max(0, new_message_count)
        state.last_message_at = _later(state.last_message_at, latest_message_at)
        state.last_sync_at = self._now()
        state.last_error = None
        await self.repository.save_state(state)
        logger.info(
            "Initial sync complete",
            user_id=user_id,
            platform=platform,
            total_messages=state.total_messages_processed,
        )
        return state

    async def set_sync_in_progress(self, user_id: str, platform: str, in_progress: bool) -> None:
        await self.repository.set_syncing(user_id, platform, in_progress)

    async def mark_failed(self, user_id: str, platform: str, error: str) -> SyncState:
        """Record a failed attempt; last_sync_at is left alone so the platform is retried."""
        state = await self.repository.get_state(user_id, platform) or SyncState(user_id, platform)
        state.last_error = (error or "")[:500]
        state.failure_count += 1
        await self.repository.save_state(state)
        logger.warning(
            "Platform sync marked failed",
            user_id=user_id,
            platform=platform,
            failure_count=state.failure_count,
            error=state.last_error,
        )
        return state

    async def reset_sync_state(self, user_id: str, platform: str | None = None) -> int:
        deleted = await self.repository.delete_states(user_id, platform)
        logger.info("Sync state reset", user_id=user_id, platform=platform or "all", deleted=deleted)
        return deleted

    @asynccontextmanager
    async def in_progress(self, user_id: str, platform: str) -> AsyncIterator[None]:
        """
        Hold the in-progress flag for the duration of the block.

        Raises SyncInProgressError if another run holds it. The flag is
        cleared on every exit path.
        """
        claimed = await self.repository.try_claim(user_id, platform, self._now())
        if not claimed:
            raise SyncInProgressError(
                f"{platform} sync already running for user", platform=platform
            )
        try:
            yield
        finally:
            try:
                await self.repository.set_syncing(user_id, platform, False)
            except Exception:
                logger.exception("Failed to clear in-progress flag", user_id=user_id, platform=platform)
                raise
