"""Generation bridge API endpoints.

The browser-side interceptor forwards what it observes on the generator page:
- POST /api/generations/requests - an outbound job request (correlated and armed)
- POST /api/generations/{request_id}/stream - the response body of an armed request
- POST /api/generations/content - an image content fetch
- POST /api/generations/uploads - an upload-file response
- POST /api/generations/jobs - start a job driven by the moderation retry policy
- GET /api/generations/jobs/{job_id} - job state and retry history

Correlation misses are not errors: they answer ``tracked: false``.
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from genledger.api.dependencies import get_tracker
from genledger.models.history import Attempt
from genledger.models.job import GenerationJob
from genledger.services.correlation.context import OutboundRequest
from genledger.services.tracker import GenerationTracker

logger = structlog.get_logger()
router = APIRouter(prefix="/api/generations", tags=["generations"])


# Request/Response Models


class ObservedRequest(BaseModel):
    """Outbound request as seen by the page interceptor."""

    url: str = Field(..., description="Request URL")
    method: str = Field(default="POST", description="HTTP method")
    body: Optional[str] = Field(default=None, description="Serialized request body")
    headers: dict[str, str] = Field(default_factory=dict)
    request_id: Optional[str] = Field(
        default=None, description="Interceptor-assigned id (generated when omitted)"
    )
    page_url: Optional[str] = Field(default=None, description="Location of the issuing page")


class CorrelationResponse(BaseModel):
    """Result of observing an outbound request."""

    tracked: bool
    request_id: Optional[str] = None
    account_id: Optional[str] = None
    image_id: Optional[str] = None
    attempt_id: Optional[str] = None


class ContentRequest(BaseModel):
    url: str = Field(..., description="Image content URL (/users/<account>/<image>/content)")


class ContentResponse(BaseModel):
    tracked: bool
    image_id: Optional[str] = None
    account_id: Optional[str] = None


class UploadResponse(BaseModel):
    registered: bool
    account_id: Optional[str] = None
    image_id: Optional[str] = None


class SubmitJobRequest(BaseModel):
    prompt: str = Field(..., min_length=1, description="Prompt text (plain or JSON)")
    use_spicy: bool = Field(default=False, description="Elevated generation mode")


# API Endpoints


@router.post("/requests", response_model=CorrelationResponse)
async def observe_request(
    observed: ObservedRequest,
    tracker: GenerationTracker = Depends(get_tracker),
) -> CorrelationResponse:
    """Correlate an outbound job request with its ImageEntry and arm it.

    Returns:
        CorrelationResponse with ``tracked=False`` when the request is not a
        generation request or its image cannot be resolved
    """
    context = await tracker.observe_request(
        OutboundRequest(
            url=observed.url,
            method=observed.method,
            body=observed.body,
            headers=observed.headers,
            request_id=observed.request_id,
        ),
        page_url=observed.page_url,
    )
    if context is None:
        return CorrelationResponse(tracked=False, request_id=observed.request_id)

    return CorrelationResponse(
        tracked=True,
        request_id=context.request_id,
        account_id=context.account_id,
        image_id=context.image_id,
        attempt_id=context.attempt_id,
    )


@router.post("/{request_id}/stream", response_model=Attempt)
async def stream_response(
    request_id: str,
    request: Request,
    tracker: GenerationTracker = Depends(get_tracker),
) -> Attempt:
    """Consume the response body of an armed request, chunk by chunk.

    Raises:
        HTTPException 404: Request id is not armed
    """
    attempt = await tracker.process_stream(request_id, request.stream())
    if attempt is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No armed request {request_id}",
        )
    return attempt


@router.post("/content", response_model=ContentResponse)
async def observe_content(
    content: ContentRequest,
    tracker: GenerationTracker = Depends(get_tracker),
) -> ContentResponse:
    image_id = await tracker.observe_content_request(content.url)
    if image_id is None:
        return ContentResponse(tracked=False)
    return ContentResponse(
        tracked=True, image_id=image_id, account_id=tracker.accounts.active_account_id
    )


@router.post("/uploads", response_model=UploadResponse)
async def register_upload(
    payload: dict[str, Any] = Body(...),
    tracker: GenerationTracker = Depends(get_tracker),
) -> UploadResponse:
    """Register an upload-file response (needs ``fileUri``)."""
    pending = tracker.register_upload(payload)
    if pending is None:
        return UploadResponse(registered=False)
    return UploadResponse(
        registered=True, account_id=pending.account_id, image_id=pending.image_id
    )


@router.post("/jobs", response_model=GenerationJob, status_code=status.HTTP_201_CREATED)
async def submit_job(
    job_request: SubmitJobRequest,
    tracker: GenerationTracker = Depends(get_tracker),
) -> GenerationJob:
    """Start a job; it becomes the active job that moderation retries act on."""
    job = await tracker.submit_job(job_request.prompt, job_request.use_spicy)
    logger.info("api.job_submitted", job_id=job.id, status=job.status.value)
    return job


@router.get("/jobs/{job_id}", response_model=GenerationJob)
async def get_job(
    job_id: str,
    tracker: GenerationTracker = Depends(get_tracker),
) -> GenerationJob:
    """Get job state and retry history.

    Raises:
        HTTPException 404: Unknown job id
    """
    job = tracker.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return job
