"""
Extraction job engine.

Drives one processing job through a cookbook PDF page by page:

    render page -> classify -> stitch / dedup -> persist -> update progress -> emit

Each page is committed in a single transaction (recipes, non-recipe record,
job counters and cookbook counters together) before any event for that page
is emitted, so a client reacting to an event always sees consistent rows.
Pause and cancel are cooperative: they are checked between pages only.
"""

import asyncio
import contextlib
import logging
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..models import PageClassification, ProgressEvent, ProgressEventType, RecipeCandidate
from ..models_db import (
    ACTIVE_JOB_STATUSES,
    Cookbook,
    CookbookStatus,
    JobStatus,
    NonRecipeContent,
    ProcessingJob,
    Recipe,
    RecipeStatus,
    User,
)
from .ai import AIService, AIUnavailableError, ClassificationError, ClassificationOptions
from .ai.validation import derive_diet_flags
from .continuation import WrittenRecipe, mark_orphan, merge_continuation, should_stitch
from .dedup import find_duplicate
from .email_service import EmailService
from .images import ImageGenerationQueue
from .job_registry import JobControl, JobRegistry
from .pdf_service import PDFDocument, PDFService, RenderError
from .progress_emitter import ProgressEmitter
from .stats import ExtractionStats
from .storage import StorageService

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Processing cancelled by user"


class PersistenceError(Exception):
    """Raised when page progress could not be committed; the job cannot continue."""

    pass


def _now() -> datetime:
    return datetime.utcnow()


def _append(rows: list | None, *items: Any) -> list:
    # JSON columns are only persisted on reassignment
    return [*(rows or []), *items]


@dataclass
class _PageResult:
    """What one committed page produced, for events and image queueing."""

    log_lines: list[str] = field(default_factory=list)
    new_recipes: list[Recipe] = field(default_factory=list)
    stitched: list[Recipe] = field(default_factory=list)
    skipped_type: str | None = None
    duplicates: int = 0
    # Rows cut off at the page bottom; their image waits for the next page
    awaiting_continuation: set[uuid.UUID] = field(default_factory=set)
    # Partial rows deleted because this page completed them
    replaced: set[uuid.UUID] = field(default_factory=set)


# =============================================================================
# Engine
# =============================================================================


class ExtractionEngine:
    """
    Runs extraction jobs as supervised asyncio tasks.

    The database row of a job is the source of truth. The registry's control
    handle and the progress emitter are in-process hints that may be lost on
    restart without affecting correctness.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        storage: StorageService,
        renderer: PDFService,
        ai_service: AIService,
        emitter: ProgressEmitter,
        registry: JobRegistry,
        image_queue: ImageGenerationQueue | None = None,
        email_service: EmailService | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.renderer = renderer
        self.ai_service = ai_service
        self.emitter = emitter
        self.registry = registry
        self.image_queue = image_queue
        self.email_service = email_service
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Control surface
    # -------------------------------------------------------------------------

    def start_extraction(self, job_id: str) -> asyncio.Task[None]:
        """Spawn the page loop for a job (fire-and-forget for the caller)."""
        logger.info("Starting extraction for job %s", job_id)
        return self.registry.spawn(job_id, lambda: self.run(job_id))

    def pause_job(self, job_id: str) -> bool:
        """
        Ask a running job to pause at the next page boundary.

        Returns:
            False if no loop for this job runs in this process.
        """
        return self.registry.request_pause(job_id)

    def resume_job(self, job_id: str) -> asyncio.Task[None]:
        """Clear any pending pause and restart the loop from the persisted page."""
        self.registry.clear_pause(job_id)
        return self.start_extraction(job_id)

    def cancel_job(self, job_id: str) -> bool:
        """
        Ask a running job to stop at the next page boundary.

        Returns:
            False if no loop for this job runs in this process.
        """
        return self.registry.request_cancel(job_id)

    def is_running(self, job_id: str) -> bool:
        return self.registry.is_running(job_id)

    async def wait(self, job_id: str) -> None:
        """Wait for the job's current task to finish."""
        await self.registry.wait(job_id)

    async def recover_missing_images(self) -> int:
        """Queue image generation for recipes without an image."""
        if self.image_queue is None:
            return 0
        return await self.image_queue.recover_missing_images()

    async def resume_interrupted_jobs(self) -> list[str]:
        """
        Restart jobs a previous process left pending or processing.

        Returns:
            Ids of the restarted jobs.
        """
        with self.session_factory() as db:
            job_ids = [
                str(job_id)
                for (job_id,) in db.query(ProcessingJob.id)
                .filter(ProcessingJob.status.in_(ACTIVE_JOB_STATUSES))
                .order_by(ProcessingJob.created_at)
                .all()
            ]

        for job_id in job_ids:
            if not self.is_running(job_id):
                logger.info("Resuming interrupted job %s", job_id)
                self.start_extraction(job_id)
        return job_ids

    async def shutdown(self) -> None:
        await self.registry.shutdown()
        if self.image_queue is not None:
            await self.image_queue.shutdown()

    # -------------------------------------------------------------------------
    # Task boundary
    # -------------------------------------------------------------------------

    async def run(self, job_id: str) -> None:
        """
        Process a job to completion, pause or cancellation.

        Never raises (except task cancellation): any error is converted into a
        persisted `failed` status so the job cannot stay `processing` after
        this coroutine returns.
        """
        control = self.registry.acquire(job_id)
        db = self.session_factory()
        try:
            await self._run(db, job_id, control)
        except asyncio.CancelledError:
            db.rollback()
            self._persist_interrupted(job_id)
            raise
        except Exception as e:
            logger.exception("Extraction job %s failed", job_id)
            db.rollback()
            self._persist_failure(job_id, e)
        finally:
            db.close()
            self.registry.release(control)

    def _persist_failure(self, job_id: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        try:
            with self.session_factory() as db:
                job = db.get(ProcessingJob, uuid.UUID(job_id))
                if job is None:
                    return
                if job.status in (JobStatus.CANCELLED, JobStatus.COMPLETED):
                    logger.info("Job %s already %s; not marking failed", job_id, job.status.value)
                    return

                job.status = JobStatus.FAILED
                job.completed_at = _now()
                job.error_log = _append(
                    job.error_log,
                    {
                        "page": job.current_page + 1,
                        "type": type(error).__name__,
                        "message": message,
                        "fatal": True,
                        "timestamp": _now().isoformat(),
                    },
                )
                job.processing_log = _append(job.processing_log, f"Job failed: {message}")
                job.cookbook.status = CookbookStatus.FAILED
                job.cookbook.error_message = message
                db.commit()

                self._emit(
                    job,
                    ProgressEventType.COMPLETED,
                    {
                        "status": JobStatus.FAILED.value,
                        "error": message,
                        "currentPage": job.current_page,
                        "recipesExtracted": job.recipes_extracted,
                    },
                )
        except SQLAlchemyError:
            logger.exception("Could not persist failure of job %s", job_id)

    def _persist_interrupted(self, job_id: str) -> None:
        """Shutdown interrupted the loop: keep the job resumable."""
        try:
            with self.session_factory() as db:
                job = db.get(ProcessingJob, uuid.UUID(job_id))
                if job is None or job.status != JobStatus.PROCESSING:
                    return
                job.status = JobStatus.PAUSED
                job.processing_log = _append(
                    job.processing_log,
                    f"Interrupted by shutdown after page {job.current_page}",
                )
                db.commit()
                logger.info("Job %s paused by shutdown at page %d", job_id, job.current_page)
        except SQLAlchemyError:
            logger.exception("Could not persist interruption of job %s", job_id)

    # -------------------------------------------------------------------------
    # Page loop
    # -------------------------------------------------------------------------

    async def _run(self, db: Session, job_id: str, control: JobControl) -> None:
        job = db.get(ProcessingJob, uuid.UUID(job_id))
        if job is None:
            logger.warning("Job %s not found", job_id)
            return
        if job.status not in ACTIVE_JOB_STATUSES:
            logger.info("Job %s is %s; nothing to run", job_id, job.status.value)
            return

        cookbook = job.cookbook
        stats = ExtractionStats.from_snapshot(
            job.stats,
            cost_per_page=self.settings.cost_per_page_usd,
            emit_interval=self.settings.cost_update_interval_pages,
        )

        resumed = job.current_page > (job.page_start or 1) - 1
        job.status = JobStatus.PROCESSING
        job.started_at = job.started_at or _now()
        cookbook.status = CookbookStatus.PROCESSING
        job.processing_log = _append(
            job.processing_log,
            f"Resuming from page {job.current_page + 1}" if resumed else "Processing started",
        )
        self._commit(db)

        pdf_bytes = await self.storage.get_buffer(cookbook.file_url or cookbook.file_path)

        with contextlib.ExitStack() as stack:
            document: PDFDocument = await asyncio.to_thread(
                stack.enter_context, self.renderer.open_document(pdf_bytes)
            )
            del pdf_bytes

            job.total_pages = document.page_count
            if not job.is_page_range:
                cookbook.total_pages = document.page_count
            first_page = job.current_page + 1
            last_page = min(job.page_end or document.page_count, document.page_count)
            self._commit(db)

            logger.info(
                "Job %s: pages %d-%d of %d", job_id, first_page, last_page, document.page_count
            )
            finished = await self._process_pages(
                db, job, cookbook, document, control, stats, first_page, last_page
            )

        if finished:
            await self._complete(db, job, cookbook, control, stats)

    async def _process_pages(
        self,
        db: Session,
        job: ProcessingJob,
        cookbook: Cookbook,
        document: PDFDocument,
        control: JobControl,
        stats: ExtractionStats,
        first_page: int,
        last_page: int,
    ) -> bool:
        """
        Run the page loop.

        Returns:
            True when every page was handled, False when the loop stopped at a
            pause or cancel checkpoint.
        """
        options = ClassificationOptions(
            generate_descriptions=cookbook.generate_descriptions,
            reformulate_for_copyright=cookbook.reformulate_for_copyright,
            convert_to_grams=cookbook.convert_to_grams,
        )
        context: deque[str] = deque(maxlen=max(0, self.settings.context_window_pages))
        previous: WrittenRecipe | None = None
        held_images: dict[uuid.UUID, tuple[str, str | None]] = {}
        consecutive_unreachable = 0

        for page in range(first_page, last_page + 1):
            if self._checkpoint(db, job, control):
                self._release_held_images(held_images)
                return False

            try:
                image = await asyncio.to_thread(self.renderer.render, document, page - 1)
                classification = await self.ai_service.classify_page(image, options, list(context))
            except RenderError as e:
                self._record_page_failure(db, job, cookbook, page, e, stats)
                context.append(f"Page {page}: unreadable")
                previous = None
                self._release_held_images(held_images)
                continue
            except ClassificationError as e:
                if not e.unreachable:
                    consecutive_unreachable = 0
                else:
                    consecutive_unreachable += 1
                    if page == first_page:
                        raise AIUnavailableError(
                            f"AI service unavailable on first page {page}: {e}"
                        ) from e
                    if consecutive_unreachable >= self.settings.max_consecutive_ai_failures:
                        raise AIUnavailableError(
                            f"AI service unavailable for {consecutive_unreachable} consecutive pages: {e}"
                        ) from e
                self._record_page_failure(db, job, cookbook, page, e, stats)
                context.append(f"Page {page}: could not be classified")
                previous = None
                self._release_held_images(held_images)
                continue

            consecutive_unreachable = 0
            result, previous = self._persist_page(
                db, job, cookbook, page, classification, stats, previous
            )
            context.append(self._describe_page(page, classification))
            self._after_page_commit(job, page, result, stats, held_images)

        self._release_held_images(held_images)
        return True

    def _checkpoint(self, db: Session, job: ProcessingJob, control: JobControl) -> bool:
        """
        Observe pause/cancel requests between pages.

        Both the in-process control and the persisted status are consulted.

        Returns:
            True if the loop must stop.
        """
        db.refresh(job)
        if control.cancel_requested or job.status == JobStatus.CANCELLED:
            self._finish_cancelled(db, job)
            return True
        if control.pause_requested or job.status == JobStatus.PAUSED:
            self._finish_paused(db, job)
            return True
        return False

    def _finish_cancelled(self, db: Session, job: ProcessingJob) -> None:
        if job.status != JobStatus.CANCELLED:
            job.status = JobStatus.CANCELLED
            job.completed_at = _now()
            job.processing_log = _append(
                job.processing_log, f"Page {job.current_page + 1}: {CANCELLED_MESSAGE}"
            )
            job.cookbook.status = CookbookStatus.FAILED
            job.cookbook.error_message = CANCELLED_MESSAGE
            self._commit(db)

        logger.info("Job %s cancelled after page %d", job.id, job.current_page)
        self._emit(
            job,
            ProgressEventType.COMPLETED,
            {
                "status": JobStatus.CANCELLED.value,
                "currentPage": job.current_page,
                "recipesExtracted": job.recipes_extracted,
            },
        )

    def _finish_paused(self, db: Session, job: ProcessingJob) -> None:
        if job.status != JobStatus.PAUSED:
            job.status = JobStatus.PAUSED
            job.processing_log = _append(
                job.processing_log, f"Paused after page {job.current_page}"
            )
            self._commit(db)

        logger.info("Job %s paused after page %d", job.id, job.current_page)
        self._emit(
            job,
            ProgressEventType.PAUSED,
            {"currentPage": job.current_page, "totalPages": job.total_pages},
        )

    # -------------------------------------------------------------------------
    # Per-page persistence
    # -------------------------------------------------------------------------

    def _persist_page(
        self,
        db: Session,
        job: ProcessingJob,
        cookbook: Cookbook,
        page: int,
        classification: PageClassification,
        stats: ExtractionStats,
        previous: WrittenRecipe | None,
    ) -> tuple[_PageResult, WrittenRecipe | None]:
        """Write one classified page and its progress in a single commit."""
        result = _PageResult()
        stats.record_page()
        last_written: WrittenRecipe | None = None

        if classification.kind == "non_recipe":
            db.add(
                NonRecipeContent(
                    cookbook_id=cookbook.id,
                    user_id=job.user_id,
                    processing_job_id=job.id,
                    page_number=page,
                    type=classification.page_type,
                    notes=classification.notes,
                )
            )
            stats.record_skipped()
            result.skipped_type = classification.page_type
            result.log_lines.append(f"Page {page}: no recipe detected ({classification.page_type})")
        else:
            existing = db.query(Recipe).filter(Recipe.cookbook_id == cookbook.id).all()
            for candidate in classification.recipes:
                if should_stitch(previous, candidate, page):
                    merged = merge_continuation(previous.candidate, candidate)
                    row = self._stitch(db, job, cookbook, previous, merged, stats)
                    result.replaced.add(previous.recipe_id)
                    if merged.continues_on_next_page:
                        result.awaiting_continuation.add(row.id)
                    existing = [r for r in existing if r.id != previous.recipe_id] + [row]
                    result.stitched.append(row)
                    result.log_lines.append(
                        f"Page {page}: continuation of '{merged.title}' merged"
                    )
                    previous = last_written = WrittenRecipe(
                        recipe_id=row.id, page=page, source_page=previous.source_page, candidate=merged
                    )
                    continue

                # Only the first candidates of a page can continue the previous page
                previous = None
                candidate = mark_orphan(candidate)
                duplicate = find_duplicate(
                    candidate.title,
                    candidate.ingredients,
                    existing,
                    self.settings.dedup_ingredient_threshold,
                )
                if duplicate is not None:
                    stats.record_duplicate()
                    result.duplicates += 1
                    result.log_lines.append(
                        f"Page {page}: duplicate of '{duplicate.title}' (page {duplicate.source_page}) skipped"
                    )
                    continue

                row = self._recipe_row(job, cookbook, candidate, page)
                db.add(row)
                existing.append(row)
                stats.record_recipe(row.status == RecipeStatus.NEEDS_REVIEW)
                result.new_recipes.append(row)
                result.log_lines.append(
                    f"Page {page}: recipe found - {row.title}"
                    + (" (needs review)" if row.status == RecipeStatus.NEEDS_REVIEW else "")
                )
                last_written = WrittenRecipe(
                    recipe_id=row.id, page=page, source_page=page, candidate=candidate
                )
                if candidate.continues_on_next_page:
                    result.awaiting_continuation.add(row.id)

            if not result.new_recipes and not result.stitched and not result.duplicates:
                result.log_lines.append(f"Page {page}: no usable recipe")

        self._update_progress(db, job, cookbook, page, stats, result.log_lines)
        self._commit(db)
        return result, last_written

    def _stitch(
        self,
        db: Session,
        job: ProcessingJob,
        cookbook: Cookbook,
        previous: WrittenRecipe,
        merged: RecipeCandidate,
        stats: ExtractionStats,
    ) -> Recipe:
        """Replace the partial recipe from the previous page with the merged one."""
        partial = db.get(Recipe, previous.recipe_id)
        if partial is not None:
            stats.remove_recipe(partial.status == RecipeStatus.NEEDS_REVIEW)
            db.delete(partial)

        row = self._recipe_row(job, cookbook, merged, previous.source_page)
        db.add(row)
        stats.record_recipe(row.status == RecipeStatus.NEEDS_REVIEW)
        return row

    def _recipe_row(
        self,
        job: ProcessingJob,
        cookbook: Cookbook,
        candidate: RecipeCandidate,
        source_page: int,
    ) -> Recipe:
        needs_review = (
            candidate.confidence < self.settings.review_confidence_threshold
            or bool(candidate.warnings)
        )
        return Recipe(
            id=uuid.uuid4(),
            cookbook_id=cookbook.id,
            user_id=job.user_id,
            processing_job_id=job.id,
            title=candidate.title,
            original_title=candidate.original_title,
            description=candidate.description,
            source_page=source_page,
            category=candidate.category,
            sub_category=candidate.sub_category,
            ingredients=[i.model_dump() for i in candidate.ingredients],
            instructions=[s.model_dump() for s in candidate.instructions],
            prep_time_minutes=candidate.prep_time_minutes,
            cook_time_minutes=candidate.cook_time_minutes,
            servings=candidate.servings,
            region=candidate.region,
            country=candidate.country,
            season=candidate.season,
            diet_tags=list(candidate.diet_tags),
            meal_type=candidate.meal_type,
            tips=candidate.tips,
            calories=candidate.nutrition.calories,
            proteins=candidate.nutrition.proteins,
            carbs=candidate.nutrition.carbs,
            fats=candidate.nutrition.fats,
            confidence=candidate.confidence,
            warnings=list(candidate.warnings),
            status=RecipeStatus.NEEDS_REVIEW if needs_review else RecipeStatus.PENDING,
            **derive_diet_flags(candidate.diet_tags),
        )

    def _record_page_failure(
        self,
        db: Session,
        job: ProcessingJob,
        cookbook: Cookbook,
        page: int,
        error: Exception,
        stats: ExtractionStats,
    ) -> None:
        """A page that could not be rendered or classified: count it and move on."""
        logger.warning("Job %s page %d failed: %s", job.id, page, error)
        # Reload so entries committed by other sessions are kept
        db.refresh(job, ["error_log"])
        stats.record_page()
        stats.record_failed()
        job.failed_pages += 1
        job.error_log = _append(
            job.error_log,
            {
                "page": page,
                "type": type(error).__name__,
                "message": str(error),
                "timestamp": _now().isoformat(),
            },
        )
        self._update_progress(db, job, cookbook, page, stats, [f"Page {page}: error - {error}"])
        self._commit(db)

        self._emit(job, ProgressEventType.ERROR, {"page": page, "message": str(error)})
        self._emit_progress(job, stats)

    def _update_progress(
        self,
        db: Session,
        job: ProcessingJob,
        cookbook: Cookbook,
        page: int,
        stats: ExtractionStats,
        log_lines: list[str],
    ) -> None:
        """Job and cookbook counters for a page, staged in the page's transaction."""
        db.flush()
        job.current_page = page
        job.recipes_extracted = (
            db.query(func.count(Recipe.id)).filter(Recipe.processing_job_id == job.id).scalar()
        )
        cookbook.total_recipes_found = (
            db.query(func.count(Recipe.id)).filter(Recipe.cookbook_id == cookbook.id).scalar()
        )
        if not job.is_page_range:
            cookbook.processed_pages = page
        job.stats = stats.snapshot().model_dump()
        # The cancel endpoint may have appended a line while this page ran
        db.refresh(job, ["processing_log"])
        job.processing_log = _append(job.processing_log, *log_lines)

    def _commit(self, db: Session) -> None:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Could not commit job progress: %s", e)
            raise PersistenceError(f"Could not save progress: {e}") from e

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    async def _complete(
        self,
        db: Session,
        job: ProcessingJob,
        cookbook: Cookbook,
        control: JobControl,
        stats: ExtractionStats,
    ) -> None:
        # A cancel that arrived during the last page still wins
        db.refresh(job)
        if control.cancel_requested or job.status == JobStatus.CANCELLED:
            self._finish_cancelled(db, job)
            return

        summary = stats.summary_line()
        job.status = JobStatus.COMPLETED
        job.completed_at = _now()
        job.stats = stats.snapshot().model_dump()
        job.processing_log = _append(
            job.processing_log,
            f"Processing completed: {job.recipes_extracted} recipes extracted",
            summary,
        )
        cookbook.status = CookbookStatus.COMPLETED
        cookbook.error_message = None
        self._commit(db)
        logger.info("Job %s completed. %s", job.id, summary)

        self._emit(job, ProgressEventType.COST_UPDATE, stats.snapshot().model_dump())
        self._emit(
            job,
            ProgressEventType.COMPLETED,
            {
                "status": JobStatus.COMPLETED.value,
                "recipesExtracted": job.recipes_extracted,
                "failedPages": job.failed_pages,
                "totalPages": job.total_pages,
                "summary": summary,
            },
        )

        await self._notify_owner(db, job, cookbook)

    async def _notify_owner(self, db: Session, job: ProcessingJob, cookbook: Cookbook) -> None:
        if self.email_service is None:
            return
        user = db.get(User, job.user_id)
        if user is None or not user.email:
            return
        try:
            await self.email_service.send_extraction_complete_email(
                user.email,
                cookbook.name,
                job.recipes_extracted,
                cookbook.total_pages or job.total_pages or 0,
                self.settings.app_url,
            )
        except Exception:
            logger.exception("Completion email for job %s failed", job.id)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def _after_page_commit(
        self,
        job: ProcessingJob,
        page: int,
        result: _PageResult,
        stats: ExtractionStats,
        held_images: dict[uuid.UUID, tuple[str, str | None]],
    ) -> None:
        self._release_held_images(held_images, skip=result.replaced)

        for row in result.new_recipes + result.stitched:
            self._emit(
                job,
                ProgressEventType.RECIPE_FOUND,
                {
                    "recipeId": str(row.id),
                    "title": row.title,
                    "page": page,
                    "sourcePage": row.source_page,
                    "status": row.status.value,
                    "merged": row in result.stitched,
                },
            )
            if row.id in result.awaiting_continuation:
                held_images[row.id] = (row.title, row.description)
            else:
                self._queue_image(row.id, row.title, row.description)

        if result.skipped_type is not None:
            self._emit(
                job,
                ProgressEventType.PAGE_SKIPPED,
                {"page": page, "pageType": result.skipped_type},
            )
        self._emit_progress(job, stats)

    def _queue_image(self, recipe_id: uuid.UUID, title: str, description: str | None) -> None:
        if self.image_queue is not None and self.settings.generate_images:
            self.image_queue.enqueue(recipe_id, title, description)

    def _release_held_images(
        self,
        held_images: dict[uuid.UUID, tuple[str, str | None]],
        skip: set[uuid.UUID] | None = None,
    ) -> None:
        """
        Queue images held back for recipes cut off at the bottom of a page.

        Recipes in `skip` were merged into a new row and deleted.
        """
        for recipe_id, (title, description) in list(held_images.items()):
            del held_images[recipe_id]
            if not skip or recipe_id not in skip:
                self._queue_image(recipe_id, title, description)

    def _emit_progress(self, job: ProcessingJob, stats: ExtractionStats) -> None:
        if not self.emitter.has_listeners(str(job.id)):
            return
        self._emit(
            job,
            ProgressEventType.PROGRESS,
            {
                "currentPage": job.current_page,
                "totalPages": job.total_pages,
                "recipesExtracted": job.recipes_extracted,
                "failedPages": job.failed_pages,
            },
        )
        if stats.should_emit():
            self._emit(job, ProgressEventType.COST_UPDATE, stats.snapshot().model_dump())

    def _emit(self, job: ProcessingJob, event_type: ProgressEventType, data: dict[str, Any]) -> None:
        job_id = str(job.id)
        if not self.emitter.has_listeners(job_id):
            return
        self.emitter.emit(
            ProgressEvent(
                type=event_type,
                job_id=job_id,
                cookbook_id=str(job.cookbook_id),
                data=data,
            )
        )

    @staticmethod
    def _describe_page(page: int, classification: PageClassification) -> str:
        """One line of context for the next pages' prompts."""
        if classification.kind == "non_recipe":
            return f"Page {page}: no recipe ({classification.page_type})"
        parts = []
        for recipe in classification.recipes:
            text = f"'{recipe.title}'"
            if recipe.continues_on_next_page:
                text += " (continues on next page)"
            parts.append(text)
        return f"Page {page}: recipe " + ", ".join(parts)


# =============================================================================
# Singleton Factory
# =============================================================================

_engine: ExtractionEngine | None = None


def get_extraction_engine() -> ExtractionEngine:
    """Get or create the extraction engine singleton."""
    global _engine
    if _engine is None:
        from ..database import SessionLocal
        from .ai import get_ai_service
        from .email_service import get_email_service
        from .job_registry import get_job_registry
        from .pdf_service import get_pdf_service
        from .progress_emitter import get_progress_emitter
        from .storage import get_storage_service

        settings = get_settings()
        ai_service = get_ai_service()
        _engine = ExtractionEngine(
            session_factory=SessionLocal,
            storage=get_storage_service(),
            renderer=get_pdf_service(),
            ai_service=ai_service,
            emitter=get_progress_emitter(),
            registry=get_job_registry(),
            image_queue=ImageGenerationQueue(
                SessionLocal, ai_service, concurrency=settings.image_concurrency
            ),
            email_service=get_email_service(),
            settings=settings,
        )
    return _engine
