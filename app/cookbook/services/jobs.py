"""
Processing job service.

Validates preconditions and performs the persisted state transitions for
starting, pausing, resuming, cancelling and re-extracting cookbook jobs,
then hands running work to the extraction engine. Every rejection happens
here, before the engine is involved.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models_db import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    Cookbook,
    CookbookStatus,
    JobStatus,
    NonRecipeContent,
    ProcessingJob,
    Recipe,
)
from .extraction import CANCELLED_MESSAGE, ExtractionEngine

logger = logging.getLogger(__name__)


class PreconditionError(Exception):
    """Raised when an operation is not allowed in the current state."""

    pass


class CookbookNotFoundError(PreconditionError):
    """Raised when the referenced cookbook does not exist."""

    pass


class JobNotFoundError(Exception):
    """Raised when the referenced processing job does not exist."""

    pass


def _parse_id(value: str | uuid.UUID, error: type[Exception], label: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise error(f"{label} {value} not found") from None


def _log(job: ProcessingJob, line: str) -> None:
    job.processing_log = [*(job.processing_log or []), line]


class JobService:
    """Job lifecycle operations on one database session."""

    def __init__(self, db: Session, engine: ExtractionEngine):
        self.db = db
        self.engine = engine

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_job(self, job_id: str | uuid.UUID) -> ProcessingJob:
        job = self.db.get(ProcessingJob, _parse_id(job_id, JobNotFoundError, "Processing job"))
        if job is None:
            raise JobNotFoundError(f"Processing job {job_id} not found")
        return job

    def get_cookbook(self, cookbook_id: str | uuid.UUID) -> Cookbook:
        cookbook = self.db.get(Cookbook, _parse_id(cookbook_id, CookbookNotFoundError, "Cookbook"))
        if cookbook is None:
            raise CookbookNotFoundError(f"Cookbook {cookbook_id} not found")
        return cookbook

    def list_jobs(
        self,
        user_id: str | None = None,
        cookbook_id: str | None = None,
    ) -> list[ProcessingJob]:
        """Jobs, newest first, optionally filtered by owner or cookbook."""
        query = self.db.query(ProcessingJob)
        if user_id:
            query = query.filter(ProcessingJob.user_id == _parse_id(user_id, JobNotFoundError, "User"))
        if cookbook_id:
            query = query.filter(
                ProcessingJob.cookbook_id == _parse_id(cookbook_id, CookbookNotFoundError, "Cookbook")
            )
        return query.order_by(ProcessingJob.created_at.desc()).all()

    def active_job(
        self, cookbook_id: uuid.UUID, exclude: uuid.UUID | None = None
    ) -> ProcessingJob | None:
        """The pending/processing job of a cookbook, if any."""
        query = self.db.query(ProcessingJob).filter(
            ProcessingJob.cookbook_id == cookbook_id,
            ProcessingJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        if exclude is not None:
            query = query.filter(ProcessingJob.id != exclude)
        return query.first()

    def queue_position(self, job_id: str) -> int:
        """
        Number of active jobs created before this one.

        Processing jobs, and jobs no longer active, report 0.
        """
        job = self.get_job(job_id)
        if job.status != JobStatus.PENDING:
            return 0
        return (
            self.db.query(func.count(ProcessingJob.id))
            .filter(
                ProcessingJob.status.in_(ACTIVE_JOB_STATUSES),
                ProcessingJob.created_at < job.created_at,
                ProcessingJob.id != job.id,
            )
            .scalar()
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    def _ensure_idle(self, cookbook: Cookbook) -> None:
        if self.active_job(cookbook.id) is not None:
            raise PreconditionError("Cookbook is already being processed")

    def _create_job(
        self,
        cookbook: Cookbook,
        page_start: int | None = None,
        page_end: int | None = None,
    ) -> ProcessingJob:
        job = ProcessingJob(
            id=uuid.uuid4(),
            cookbook_id=cookbook.id,
            user_id=cookbook.user_id,
            status=JobStatus.PENDING,
            total_pages=cookbook.total_pages,
            current_page=(page_start - 1) if page_start else 0,
            page_start=page_start,
            page_end=page_end,
            processing_log=[
                f"Job created for pages {page_start}-{page_end}" if page_start else "Job created"
            ],
            error_log=[],
        )
        self.db.add(job)
        cookbook.status = CookbookStatus.PROCESSING
        cookbook.error_message = None
        return job

    def start(self, cookbook_id: str) -> ProcessingJob:
        """
        Create a job for a cookbook and start extracting.

        Raises:
            CookbookNotFoundError: Unknown cookbook.
            PreconditionError: The cookbook already has an active job.
        """
        cookbook = self.get_cookbook(cookbook_id)
        self._ensure_idle(cookbook)

        job = self._create_job(cookbook)
        self.db.commit()
        logger.info("Created job %s for cookbook %s", job.id, cookbook.id)

        self.engine.start_extraction(str(job.id))
        return job

    def cancel(self, job_id: str) -> ProcessingJob:
        """
        Cancel a job. Recipes already committed are kept.

        Raises:
            PreconditionError: The job already finished.
        """
        job = self.get_job(job_id)
        if job.status in TERMINAL_JOB_STATUSES:
            raise PreconditionError(f"Cannot cancel a {job.status.value} job")

        job.status = JobStatus.CANCELLED
        job.completed_at = datetime.utcnow()
        _log(job, f"Page {job.current_page + 1}: {CANCELLED_MESSAGE}")
        job.cookbook.status = CookbookStatus.FAILED
        job.cookbook.error_message = CANCELLED_MESSAGE
        self.db.commit()

        self.engine.cancel_job(str(job.id))
        logger.info("Cancelled job %s at page %d", job.id, job.current_page)
        return job

    def pause(self, job_id: str) -> ProcessingJob:
        """
        Pause a processing job at the next page boundary.

        Raises:
            PreconditionError: The job is not processing.
        """
        job = self.get_job(job_id)
        if job.status != JobStatus.PROCESSING:
            raise PreconditionError(f"Cannot pause a {job.status.value} job")

        if not self.engine.pause_job(str(job.id)):
            # No loop runs here for this job; record the pause directly
            job.status = JobStatus.PAUSED
            _log(job, f"Paused after page {job.current_page}")
            self.db.commit()

        logger.info("Pause requested for job %s", job.id)
        return job

    def resume(self, job_id: str) -> ProcessingJob:
        """
        Resume a paused job, or a failed/cancelled job that made progress,
        from its persisted page.

        Raises:
            PreconditionError: Nothing to resume, or the cookbook is busy.
        """
        job = self.get_job(job_id)
        origin = (job.page_start or 1) - 1

        if job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
            if job.current_page <= origin:
                raise PreconditionError(
                    "Job has no progress to resume. Use re-extract instead"
                )
        elif job.status != JobStatus.PAUSED:
            raise PreconditionError(f"Cannot resume a {job.status.value} job")

        if self.active_job(job.cookbook_id, exclude=job.id) is not None:
            raise PreconditionError("Cookbook is already being processed")

        job.status = JobStatus.PROCESSING
        job.completed_at = None
        _log(job, f"Resume requested at page {job.current_page + 1}")
        job.cookbook.status = CookbookStatus.PROCESSING
        job.cookbook.error_message = None
        self.db.commit()

        self.engine.resume_job(str(job.id))
        logger.info("Resumed job %s from page %d", job.id, job.current_page + 1)
        return job

    def re_extract(self, cookbook_id: str) -> ProcessingJob:
        """
        Delete everything extracted from a cookbook and start over.

        Old jobs are marked cancelled. Deletion commits before the new job
        starts, so no new recipe can be removed by it.

        Raises:
            PreconditionError: The cookbook has an active job.
        """
        cookbook = self.get_cookbook(cookbook_id)
        self._ensure_idle(cookbook)

        deleted_recipes = (
            self.db.query(Recipe)
            .filter(Recipe.cookbook_id == cookbook.id)
            .delete(synchronize_session=False)
        )
        deleted_content = (
            self.db.query(NonRecipeContent)
            .filter(NonRecipeContent.cookbook_id == cookbook.id)
            .delete(synchronize_session=False)
        )
        self.db.query(ProcessingJob).filter(
            ProcessingJob.cookbook_id == cookbook.id,
            ProcessingJob.status.in_(
                (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PAUSED, JobStatus.CANCELLED)
            ),
        ).update({ProcessingJob.status: JobStatus.CANCELLED}, synchronize_session=False)

        cookbook.processed_pages = 0
        cookbook.total_recipes_found = 0
        job = self._create_job(cookbook)
        self.db.commit()

        logger.info(
            "Re-extracting cookbook %s: deleted %d recipes, %d non-recipe pages; job %s",
            cookbook.id,
            deleted_recipes,
            deleted_content,
            job.id,
        )
        self.engine.start_extraction(str(job.id))
        return job

    def re_extract_pages(self, cookbook_id: str, start_page: int, end_page: int) -> ProcessingJob:
        """
        Re-run extraction for a page range of an already processed cookbook.

        Raises:
            PreconditionError: Bad range, busy cookbook, or never processed.
        """
        if end_page < start_page:
            raise PreconditionError("endPage must be greater than or equal to startPage")

        cookbook = self.get_cookbook(cookbook_id)
        self._ensure_idle(cookbook)

        has_job = (
            self.db.query(ProcessingJob.id)
            .filter(ProcessingJob.cookbook_id == cookbook.id)
            .first()
        )
        if has_job is None:
            raise PreconditionError("Cookbook has never been processed. Start processing first")
        if cookbook.total_pages and end_page > cookbook.total_pages:
            raise PreconditionError(
                f"endPage {end_page} is beyond the last page ({cookbook.total_pages})"
            )

        deleted_recipes = (
            self.db.query(Recipe)
            .filter(
                Recipe.cookbook_id == cookbook.id,
                Recipe.source_page >= start_page,
                Recipe.source_page <= end_page,
            )
            .delete(synchronize_session=False)
        )
        self.db.query(NonRecipeContent).filter(
            NonRecipeContent.cookbook_id == cookbook.id,
            NonRecipeContent.page_number >= start_page,
            NonRecipeContent.page_number <= end_page,
        ).delete(synchronize_session=False)

        cookbook.total_recipes_found = (
            self.db.query(func.count(Recipe.id))
            .filter(Recipe.cookbook_id == cookbook.id)
            .scalar()
        )
        job = self._create_job(cookbook, page_start=start_page, page_end=end_page)
        self.db.commit()

        logger.info(
            "Re-extracting pages %d-%d of cookbook %s: deleted %d recipes; job %s",
            start_page,
            end_page,
            cookbook.id,
            deleted_recipes,
            job.id,
        )
        self.engine.start_extraction(str(job.id))
        return job

    def cleanup_failed_jobs(self) -> int:
        """Delete failed jobs. Returns how many were removed."""
        deleted = (
            self.db.query(ProcessingJob)
            .filter(ProcessingJob.status == JobStatus.FAILED)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Deleted %d failed job(s)", deleted)
        return deleted
