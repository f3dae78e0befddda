"""History API endpoints.

- POST /api/history/sync - merge a bulk listing into the history store
- GET /api/history?account_id= - paginated entries of an account (newest first)
- GET /api/history/stats?account_id= - stored entry count of an account
- GET /api/history/{image_id} - one entry with all attempts
- DELETE /api/history/{image_id}/attempts/{attempt_id} - delete one attempt
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from genledger.api.dependencies import get_tracker
from genledger.core.dependencies import get_uow
from genledger.models.history import ImageEntry
from genledger.services.tracker import GenerationTracker
from genledger.uow import UnitOfWork

logger = structlog.get_logger()
router = APIRouter(prefix="/api/history", tags=["history"])


# Request/Response Models


class SyncRequest(BaseModel):
    """Bulk listing records as returned by the remote listing API."""

    posts: list[dict[str, Any]] = Field(default_factory=list)
    account_id: Optional[str] = Field(
        default=None, description="Owner account (defaults to the active account)"
    )


class SyncResponse(BaseModel):
    skipped: bool
    skip_reason: Optional[str] = None
    account_id: Optional[str] = None
    processed: int = 0
    created_entries: int = 0
    created_attempts: int = 0
    written: int = 0


class HistoryStatsResponse(BaseModel):
    account_id: str
    entries: int = Field(..., ge=0)


# API Endpoints


@router.post("/sync", response_model=SyncResponse)
async def sync_history(
    sync: SyncRequest,
    tracker: GenerationTracker = Depends(get_tracker),
) -> SyncResponse:
    """Merge a listing; an overlapping call is dropped (``skip_reason="in_flight"``)."""
    result = await tracker.sync_listing(sync.posts, sync.account_id)
    return SyncResponse(
        skipped=result.skipped,
        skip_reason=result.skip_reason,
        account_id=result.account_id,
        processed=result.processed,
        created_entries=result.created_entries,
        created_attempts=result.created_attempts,
        written=result.written,
    )


@router.get("", response_model=list[ImageEntry])
async def list_history(
    account_id: str = Query(..., description="Owner account id"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    tracker: GenerationTracker = Depends(get_tracker),
) -> list[ImageEntry]:
    return await tracker.history.list_entries(account_id, limit, offset)


@router.get("/stats", response_model=HistoryStatsResponse)
async def history_stats(
    account_id: str = Query(..., description="Owner account id"),
    uow: UnitOfWork = Depends(get_uow),
) -> HistoryStatsResponse:
    count = await uow.image_entries.count_for_account(account_id)
    return HistoryStatsResponse(account_id=account_id, entries=count)


@router.get("/{image_id}", response_model=ImageEntry)
async def get_history_entry(
    image_id: str,
    tracker: GenerationTracker = Depends(get_tracker),
) -> ImageEntry:
    """Get one entry.

    Raises:
        HTTPException 404: Unknown image id
    """
    entry = await tracker.history.get_entry(image_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Image {image_id} not found"
        )
    return entry


@router.delete("/{image_id}/attempts/{attempt_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_attempt(
    image_id: str,
    attempt_id: str,
    tracker: GenerationTracker = Depends(get_tracker),
) -> None:
    """Delete one attempt; the entry goes with its last attempt.

    Raises:
        HTTPException 404: Unknown image or attempt
    """
    deleted = await tracker.delete_attempt(image_id, attempt_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Attempt {attempt_id} not found in image {image_id}",
        )
    logger.info("api.attempt_deleted", image_id=image_id, attempt_id=attempt_id)
