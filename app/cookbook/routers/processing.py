"""
Router for cookbook processing endpoints.

Handles:
- Starting, pausing, resuming and cancelling extraction jobs
- Re-extracting a whole cookbook or a page range
- Live progress over Server-Sent Events
- Queue position, image recovery and failed job cleanup
"""

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from ..database import get_db
from ..models import (
    TERMINAL_EVENT_TYPES,
    CleanupResponse,
    JobListResponse,
    MessageResponse,
    ProcessingJobResponse,
    ProgressEvent,
    QueuePositionResponse,
    RecoverImagesResponse,
    ReExtractPagesRequest,
    StartProcessingRequest,
)
from ..models_db import TERMINAL_JOB_STATUSES
from ..services.extraction import ExtractionEngine, get_extraction_engine
from ..services.jobs import JobService
from ..services.progress_emitter import ProgressEmitter, get_progress_emitter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/processing", tags=["processing"])

HEARTBEAT_INTERVAL_SECONDS = 15.0


def get_job_service(
    db: Session = Depends(get_db),
    engine: ExtractionEngine = Depends(get_extraction_engine),
) -> JobService:
    return JobService(db, engine)


# =============================================================================
# Server-Sent Events
# =============================================================================


def _sse_event(event: str, data: Any) -> str:
    payload = json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"


def _sse_comment(text: str) -> str:
    # Comment lines keep the connection alive through proxies
    return f": {text}\n\n"


@router.get("/stream/{job_id}")
async def stream_job_progress(
    job_id: str,
    request: Request,
    jobs: JobService = Depends(get_job_service),
    emitter: ProgressEmitter = Depends(get_progress_emitter),
) -> StreamingResponse:
    """
    Stream live progress events for a job.

    The first event is `connected` and carries the persisted job state, so a
    client that subscribes late (or reconnects) starts from the truth. Events
    emitted before the subscription are not replayed. The stream closes after
    a `completed` event, or immediately when the job had already finished.
    """
    job = jobs.get_job(job_id)
    snapshot = ProcessingJobResponse.from_job(job).model_dump(mode="json")
    finished = job.status in TERMINAL_JOB_STATUSES

    queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
    unsubscribe = emitter.subscribe(snapshot["id"], queue.put_nowait)

    async def event_stream():
        try:
            yield _sse_event("connected", {"jobId": snapshot["id"], "job": snapshot})
            if finished:
                return

            while True:
                if await request.is_disconnected():
                    logger.info("Progress stream for job %s disconnected", snapshot["id"])
                    return
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_INTERVAL_SECONDS)
                except asyncio.TimeoutError:
                    yield _sse_comment("heartbeat")
                    continue

                yield _sse_event(event.type.value, event.to_payload())
                if event.type in TERMINAL_EVENT_TYPES:
                    return
        finally:
            unsubscribe()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# =============================================================================
# Jobs
# =============================================================================


@router.get("", response_model=JobListResponse)
async def list_jobs(
    user_id: str | None = None,
    cookbook_id: str | None = None,
    jobs: JobService = Depends(get_job_service),
) -> JobListResponse:
    """List processing jobs, newest first."""
    rows = jobs.list_jobs(user_id=user_id, cookbook_id=cookbook_id)
    return JobListResponse(
        jobs=[ProcessingJobResponse.from_job(job) for job in rows],
        total=len(rows),
    )


@router.post("/start", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def start_processing(
    request: StartProcessingRequest,
    jobs: JobService = Depends(get_job_service),
) -> MessageResponse:
    """Create a job for a cookbook and start extracting in the background."""
    job = jobs.start(request.cookbook_id)
    return MessageResponse(message="Processing started", job=ProcessingJobResponse.from_job(job))


@router.post("/re-extract", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def re_extract(
    request: StartProcessingRequest,
    jobs: JobService = Depends(get_job_service),
) -> MessageResponse:
    """Delete every recipe of a cookbook and extract it again."""
    job = jobs.re_extract(request.cookbook_id)
    return MessageResponse(
        message="Re-extraction started", job=ProcessingJobResponse.from_job(job)
    )


@router.post(
    "/re-extract-pages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED
)
async def re_extract_pages(
    request: ReExtractPagesRequest,
    jobs: JobService = Depends(get_job_service),
) -> MessageResponse:
    """Re-extract an inclusive page range of an already processed cookbook."""
    job = jobs.re_extract_pages(request.cookbook_id, request.start_page, request.end_page)
    return MessageResponse(
        message=f"Re-extraction of pages {request.start_page}-{request.end_page} started",
        job=ProcessingJobResponse.from_job(job),
    )


@router.post("/recover-images", response_model=RecoverImagesResponse)
async def recover_images(
    engine: ExtractionEngine = Depends(get_extraction_engine),
) -> RecoverImagesResponse:
    """Queue image generation for recipes that have none."""
    queued = await engine.recover_missing_images()
    return RecoverImagesResponse(
        queued=queued, message=f"Queued image generation for {queued} recipe(s)"
    )


@router.delete("/failed", response_model=CleanupResponse)
async def delete_failed_jobs(jobs: JobService = Depends(get_job_service)) -> CleanupResponse:
    """Delete every failed job."""
    return CleanupResponse(deleted=jobs.cleanup_failed_jobs())


@router.get("/{job_id}", response_model=ProcessingJobResponse)
async def get_job(job_id: str, jobs: JobService = Depends(get_job_service)) -> ProcessingJobResponse:
    """Get the persisted state of a job."""
    return ProcessingJobResponse.from_job(jobs.get_job(job_id))


@router.get("/{job_id}/queue-position", response_model=QueuePositionResponse)
async def get_queue_position(
    job_id: str, jobs: JobService = Depends(get_job_service)
) -> QueuePositionResponse:
    """Number of active jobs created before this one (0 once it runs)."""
    position = jobs.queue_position(job_id)
    job = jobs.get_job(job_id)
    return QueuePositionResponse(job_id=str(job.id), status=job.status.value, position=position)


@router.post("/{job_id}/cancel", response_model=MessageResponse)
async def cancel_job(job_id: str, jobs: JobService = Depends(get_job_service)) -> MessageResponse:
    """Cancel a job. Recipes already extracted are kept."""
    job = jobs.cancel(job_id)
    return MessageResponse(message="Job cancelled", job=ProcessingJobResponse.from_job(job))


@router.post("/{job_id}/pause", response_model=MessageResponse)
async def pause_job(job_id: str, jobs: JobService = Depends(get_job_service)) -> MessageResponse:
    """Pause a processing job after the page in progress."""
    job = jobs.pause(job_id)
    return MessageResponse(message="Pause requested", job=ProcessingJobResponse.from_job(job))


@router.post("/{job_id}/resume", response_model=MessageResponse)
async def resume_job(job_id: str, jobs: JobService = Depends(get_job_service)) -> MessageResponse:
    """Resume a job from the page after its last completed page."""
    job = jobs.resume(job_id)
    return MessageResponse(message="Job resumed", job=ProcessingJobResponse.from_job(job))
