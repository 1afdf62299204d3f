"""
Pydantic models for the cookbook extraction pipeline.

Defines typed payloads for page classification results, recipe candidates,
live progress events and the processing API.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Recipe Candidates
# =============================================================================


class Ingredient(BaseModel):
    """A single ingredient line, in recipe order."""

    name: str = Field(..., min_length=1, description="Ingredient name")
    quantity: float | None = Field(
        default=None,
        ge=0,
        description="Parsed quantity (None for 'to taste' style lines)",
    )
    unit: str | None = Field(
        default=None,
        description="Unit of measure (g, ml, piece, tbsp, ...)",
    )
    original_text: str | None = Field(
        default=None,
        description="The ingredient line as printed, before conversion",
    )


class Instruction(BaseModel):
    """A single numbered preparation step."""

    step: int = Field(..., ge=1, description="Step number, 1-indexed")
    text: str = Field(..., min_length=1, description="Step text")
    time_minutes: int | None = Field(default=None, ge=0)
    temperature_celsius: int | None = Field(default=None)


class Nutrition(BaseModel):
    """Per-serving nutrition estimates."""

    calories: float | None = Field(default=None, ge=0)
    proteins: float | None = Field(default=None, ge=0)
    carbs: float | None = Field(default=None, ge=0)
    fats: float | None = Field(default=None, ge=0)

    def as_values(self) -> dict[str, float]:
        """Return only the fields that were estimated."""
        return {k: v for k, v in self.model_dump().items() if v is not None}


class RecipeCandidate(BaseModel):
    """
    A recipe as returned by the page classifier, after normalisation.

    Attributes:
        continues_previous: The page starts mid-recipe (no title, or a
            "continued" marker) and this candidate completes the recipe
            from the preceding page.
        continues_on_next_page: The recipe is visibly cut off at the bottom
            of the page.
        confidence: Model confidence for this candidate (0.0 - 1.0).
        warnings: Normalisation and sanity-check warnings; any warning sends
            the recipe to review.
    """

    title: str = Field(..., min_length=1)
    original_title: str | None = None
    description: str | None = None
    category: str | None = None
    sub_category: str | None = None
    ingredients: list[Ingredient] = Field(default_factory=list)
    instructions: list[Instruction] = Field(default_factory=list)
    servings: int = Field(default=4, ge=1)
    prep_time_minutes: int | None = Field(default=None, ge=0)
    cook_time_minutes: int | None = Field(default=None, ge=0)
    region: str | None = None
    country: str | None = None
    season: str | None = None
    diet_tags: list[str] = Field(default_factory=list)
    meal_type: str | None = None
    tips: str | None = None
    nutrition: Nutrition = Field(default_factory=Nutrition)
    continues_previous: bool = False
    continues_on_next_page: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    warnings: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        """Titles come back with stray whitespace and newlines."""
        return " ".join(v.split())

    @property
    def ingredient_names(self) -> list[str]:
        return [i.name for i in self.ingredients]


class PageClassification(BaseModel):
    """
    Result of classifying one rendered page.

    `kind == "non_recipe"` always carries an empty `recipes` list.
    """

    kind: Literal["recipe", "non_recipe"]
    recipes: list[RecipeCandidate] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    page_type: str = Field(
        default="other",
        description="recipe, table_of_contents, introduction, photo, advertisement, other",
    )
    notes: str | None = None


# =============================================================================
# Progress Events
# =============================================================================


class ProgressEventType(str, Enum):
    """Event types fanned out to live subscribers."""

    PROGRESS = "progress"
    RECIPE_FOUND = "recipe_found"
    PAGE_SKIPPED = "page_skipped"
    ERROR = "error"
    COMPLETED = "completed"
    PAUSED = "paused"
    COST_UPDATE = "cost_update"


# A stream closes after one of these; paused jobs keep their stream open
TERMINAL_EVENT_TYPES = {ProgressEventType.COMPLETED}


class ProgressEvent(BaseModel):
    """
    Best-effort notification about a running job.

    Serialised with camelCase keys: `{type, jobId, cookbookId, data, timestamp}`.
    The persisted job row stays the source of truth.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: ProgressEventType
    job_id: str = Field(..., alias="jobId")
    cookbook_id: str = Field(..., alias="cookbookId")
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict with aliased keys."""
        return self.model_dump(mode="json", by_alias=True)


class ExtractionStatsSnapshot(BaseModel):
    """Running totals for one job, persisted so a resumed run keeps counting."""

    pages_processed: int = 0
    pages_skipped: int = 0
    recipes_extracted: int = 0
    needs_review: int = 0
    duplicates_removed: int = 0
    failed_pages: int = 0
    estimated_cost_usd: float = 0.0


# =============================================================================
# API Request/Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(default="healthy")
    version: str = Field(default="1.0.0")
    message: str | None = None


class StartProcessingRequest(BaseModel):
    """Request body for starting or re-extracting a cookbook."""

    cookbook_id: str = Field(..., alias="cookbookId")

    model_config = ConfigDict(populate_by_name=True)


class ReExtractPagesRequest(BaseModel):
    """Request body for re-extracting a page range."""

    cookbook_id: str = Field(..., alias="cookbookId")
    start_page: int = Field(..., ge=1, alias="startPage")
    end_page: int = Field(..., ge=1, alias="endPage")

    model_config = ConfigDict(populate_by_name=True)


class ProcessingJobResponse(BaseModel):
    """Persisted state of a processing job."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    cookbook_id: str
    user_id: str
    status: str
    total_pages: int | None = None
    current_page: int = 0
    page_start: int | None = None
    page_end: int | None = None
    recipes_extracted: int = 0
    failed_pages: int = 0
    processing_log: list[str] = Field(default_factory=list)
    error_log: list[dict[str, Any]] = Field(default_factory=list)
    stats: ExtractionStatsSnapshot | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Any) -> "ProcessingJobResponse":
        """Build a response from a ProcessingJob row."""
        return cls(
            id=str(job.id),
            cookbook_id=str(job.cookbook_id),
            user_id=str(job.user_id),
            status=job.status.value,
            total_pages=job.total_pages,
            current_page=job.current_page,
            page_start=job.page_start,
            page_end=job.page_end,
            recipes_extracted=job.recipes_extracted,
            failed_pages=job.failed_pages,
            processing_log=list(job.processing_log or []),
            error_log=list(job.error_log or []),
            stats=job.stats,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class JobListResponse(BaseModel):
    """List of processing jobs, newest first."""

    jobs: list[ProcessingJobResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class QueuePositionResponse(BaseModel):
    """Computed position of a job among active jobs."""

    job_id: str
    status: str
    position: int = Field(..., ge=0)


class MessageResponse(BaseModel):
    """Generic acknowledgement."""

    message: str
    job: ProcessingJobResponse | None = None


class RecoverImagesResponse(BaseModel):
    """Result of an image recovery sweep."""

    queued: int = Field(..., ge=0)
    message: str


class CleanupResponse(BaseModel):
    """Result of deleting failed jobs."""

    deleted: int = Field(..., ge=0)
