"""
Contact sync routes.

All endpoints act on the authenticated user (JWT ``sub``). The container
holding the orchestrator lives on ``app.state.contact_sync`` and is built in
the application lifespan.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.auth.verify import auth_dependency
from app.features.contact_sync.api.schemas import (
    ApprovalDecisionRequest,
    ApprovalDecisionResponse,
    BlacklistEntryResponse,
    MergeReviewResponse,
    PendingApprovalResponse,
    PlatformSyncResponse,
    ReviewDecisionRequest,
    ReviewDecisionResponse,
    SyncRequest,
    SyncStatusResponse,
    UnifiedSyncResponse,
)
from app.features.contact_sync.container import ContactSyncContainer
from app.features.contact_sync.domain import ContactSyncError, PersistenceError
from app.features.contact_sync.services.approval_gate import PENDING_NOT_FOUND
from app.features.contact_sync.services.orchestrator import REVIEW_NOT_FOUND
from app.infrastructure.observability.logging import get_logger

router = APIRouter(prefix="/contact-sync", tags=["contact-sync"])
logger = get_logger(__name__)


def get_container(request: Request) -> ContactSyncContainer:
    container = getattr(request.app.state, "contact_sync", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Contact sync is not initialized"
        )
    return container


def current_user_id(claims: dict = Depends(auth_dependency)) -> str:
    user_id = claims.get("sub")
    if not user_id:
        logger.error("No user ID in JWT claims", claims=claims)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token: missing user ID"
        )
    return user_id


def _service_error(e: ContactSyncError) -> HTTPException:
    if isinstance(e, PersistenceError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.post("/sync", response_model=UnifiedSyncResponse)
async def sync_all(
    request: SyncRequest | None = None,
    user_id: str = Depends(current_user_id),
    container: ContactSyncContainer = Depends(get_container),
):
    """
    Run a unified sync across platforms for the authenticated user.

    Platform failures come back inside the response rather than as an error
    status.
    """
    request = request or SyncRequest()
    orchestrator = container.orchestrator

    unknown = [p for p in request.platforms or [] if p not in orchestrator.platforms]
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown platforms: {', '.join(unknown)}"
        )

    result = await orchestrator.sync_all_platforms(
        user_id,
        force_contact_refresh=request.force_contact_refresh,
        platforms=request.platforms,
    )
    return UnifiedSyncResponse.from_domain(result)


@router.get("/status", response_model=SyncStatusResponse)
async def get_status(
    user_id: str = Depends(current_user_id),
    container: ContactSyncContainer = Depends(get_container),
):
    try:
        sync_status = await container.orchestrator.get_sync_status(user_id)
    except ContactSyncError as e:
        raise _service_error(e) from e
    return SyncStatusResponse.from_domain(sync_status)


@router.post("/contacts/refresh/{platform}", response_model=PlatformSyncResponse)
async def refresh_contacts(
    platform: str,
    user_id: str = Depends(current_user_id),
    container: ContactSyncContainer = Depends(get_container),
):
    if platform not in container.orchestrator.platforms:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown platform: {platform}")

    result = await container.orchestrator.refresh_contacts(user_id, platform)
    return PlatformSyncResponse.from_domain(result)


@router.post("/reset", status_code=status.HTTP_200_OK)
async def reset_sync_state(
    platform: str | None = None,
    user_id: str = Depends(current_user_id),
    container: ContactSyncContainer = Depends(get_container),
) -> dict:
    """Forget sync watermarks so the next run starts from the initial lookback."""
    try:
        deleted = await container.orchestrator.reset_sync_state(user_id, platform)
    except ContactSyncError as e:
        raise _service_error(e) from e
    return {"success": True, "platform": platform, "states_deleted": deleted}


@router.get("/pending", response_model=list[PendingApprovalResponse])
async def list_pending(
    user_id: str = Depends(current_user_id),
    container: ContactSyncContainer = Depends(get_container),
):
    try:
        pending = await container.approval_gate.list_pending(user_id)
    except ContactSyncError as e:
        raise _service_error(e) from e
    return [PendingApprovalResponse.from_domain(p) for p in pending]


@router.post("/pending/{pending_id}/decision", response_model=ApprovalDecisionResponse)
async def decide_pending(
    pending_id: str,
    request: ApprovalDecisionRequest,
    user_id: str = Depends(current_user_id),
    container: ContactSyncContainer = Depends(get_container),
):
    try:
        result = await container.orchestrator.approval_decision(user_id, pending_id, request.decision)
    except ContactSyncError as e:
        raise _service_error(e) from e

    if not result.success:
        code = status.HTTP_404_NOT_FOUND if result.error == PENDING_NOT_FOUND else status.HTTP_409_CONFLICT
        raise HTTPException(status_code=code, detail=result.error)

    logger.info("Pending approval decided", user_id=user_id, pending_id=pending_id, decision=request.decision)
    return ApprovalDecisionResponse.from_domain(result)


@router.get("/reviews", response_model=list[MergeReviewResponse])
async def list_reviews(
    user_id: str = Depends(current_user_id),
    container: ContactSyncContainer = Depends(get_container),
):
    try:
        reviews = await container.stores.contacts.list_merge_reviews(user_id)
    except ContactSyncError as e:
        raise _service_error(e) from e
    return [MergeReviewResponse.from_domain(r) for r in reviews]


@router.post("/reviews/{review_id}/decision", response_model=ReviewDecisionResponse)
async def decide_review(
    review_id: str,
    request: ReviewDecisionRequest,
    user_id: str = Depends(current_user_id),
    container: ContactSyncContainer = Depends(get_container),
):
    try:
        result = await container.orchestrator.review_decision(user_id, review_id, request.decision)
    except ContactSyncError as e:
        raise _service_error(e) from e

    if not result.success:
        code = status.HTTP_404_NOT_FOUND if result.error == REVIEW_NOT_FOUND else status.HTTP_409_CONFLICT
        raise HTTPException(status_code=code, detail=result.error)
    return ReviewDecisionResponse.from_domain(result)


@router.get("/blacklist", response_model=list[BlacklistEntryResponse])
async def list_blacklist(
    platform: str | None = None,
    user_id: str = Depends(current_user_id),
    container: ContactSyncContainer = Depends(get_container),
):
    try:
        entries = await container.approval_gate.list_blacklist(user_id, platform)
    except ContactSyncError as e:
        raise _service_error(e) from e
    return [BlacklistEntryResponse.from_domain(entry) for entry in entries]


@router.delete("/blacklist/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_blacklist_entry(
    entry_id: str,
    user_id: str = Depends(current_user_id),
    container: ContactSyncContainer = Depends(get_container),
) -> None:
    try:
        removed = await container.approval_gate.remove_blacklist_entry(user_id, entry_id)
    except ContactSyncError as e:
        raise _service_error(e) from e
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Blacklist entry not found")
