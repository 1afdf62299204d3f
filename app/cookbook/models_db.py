"""
SQLAlchemy database models for the cookbook extraction application.

This module defines the ORM models for persisting cookbooks, processing
jobs, extracted recipes and non-recipe pages.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class CookbookStatus(enum.Enum):
    """Coarse status of a cookbook, mirrored from its active job."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(enum.Enum):
    """Lifecycle of a processing job."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# At most one job per cookbook may be in one of these states
ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class RecipeStatus(enum.Enum):
    """Review status of an extracted recipe."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_REVIEW = "needs_review"


class User(Base):
    """
    Owner of cookbooks and recipient of extraction notifications.

    Authentication lives outside this service; only the fields the
    extraction pipeline needs are stored here.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    email: Mapped[str] = mapped_column(
        String(320),
        nullable=False,
        unique=True,
    )
    name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
    )

    cookbooks: Mapped[list["Cookbook"]] = relationship(
        "Cookbook",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}')>"


class Cookbook(Base):
    """
    An uploaded cookbook PDF.

    `processed_pages` and `total_recipes_found` are denormalized counters kept
    in sync with the active job so list views don't need a join.
    """

    __tablename__ = "cookbooks"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    file_path: Mapped[str] = mapped_column(
        String(1024),
        nullable=False,
        comment="Storage key or URL of the source PDF",
    )
    file_url: Mapped[str | None] = mapped_column(
        String(1024),
        nullable=True,
    )
    file_size: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    total_pages: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    status: Mapped[CookbookStatus] = mapped_column(
        Enum(CookbookStatus),
        default=CookbookStatus.UPLOADED,
        nullable=False,
        index=True,
    )
    processed_pages: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    total_recipes_found: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    generate_descriptions: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    reformulate_for_copyright: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    convert_to_grams: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    user: Mapped[User] = relationship(
        "User",
        back_populates="cookbooks",
    )
    jobs: Mapped[list["ProcessingJob"]] = relationship(
        "ProcessingJob",
        back_populates="cookbook",
        cascade="all, delete-orphan",
    )
    recipes: Mapped[list["Recipe"]] = relationship(
        "Recipe",
        back_populates="cookbook",
        cascade="all, delete-orphan",
    )
    non_recipe_contents: Mapped[list["NonRecipeContent"]] = relationship(
        "NonRecipeContent",
        back_populates="cookbook",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Cookbook(id={self.id}, name='{self.name}', status={self.status.value})>"


class ProcessingJob(Base):
    """
    One extraction attempt over a cookbook.

    Mutated exclusively by the extraction engine while running. Terminal
    rows are only touched again by administrative cleanup.
    """

    __tablename__ = "processing_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    cookbook_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("cookbooks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    total_pages: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    current_page: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Number of pages committed; the next page is current_page + 1",
    )
    page_start: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="First page (1-indexed) of a page-range run",
    )
    page_end: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Last page (1-indexed, inclusive) of a page-range run",
    )
    recipes_extracted: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    failed_pages: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus),
        default=JobStatus.PENDING,
        nullable=False,
        index=True,
    )
    processing_log: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    error_log: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    stats: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
        comment="Running stats snapshot, restored on resume",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
        index=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    # Relationships
    cookbook: Mapped[Cookbook] = relationship(
        "Cookbook",
        back_populates="jobs",
    )

    @property
    def is_page_range(self) -> bool:
        return self.page_start is not None

    def __repr__(self) -> str:
        return (
            f"<ProcessingJob(id={self.id}, status={self.status.value}, "
            f"page={self.current_page}/{self.total_pages})>"
        )


class Recipe(Base):
    """
    A recipe accepted from a page classification.

    Written once by the engine; afterwards only reviewers change its status.
    """

    __tablename__ = "recipes"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    cookbook_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("cookbooks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    processing_job_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("processing_jobs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    title: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
    )
    original_title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_page: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source_type: Mapped[str] = mapped_column(String(32), default="pdf", nullable=False)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sub_category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ingredients: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
        comment="Ordered list of {name, quantity, unit, original_text}",
    )
    instructions: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
        comment="Ordered list of {step, text, time_minutes, temperature_celsius}",
    )
    prep_time_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cook_time_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    servings: Mapped[int] = mapped_column(Integer, default=4, nullable=False)
    region: Mapped[str | None] = mapped_column(String(128), nullable=True)
    country: Mapped[str | None] = mapped_column(String(128), nullable=True)
    season: Mapped[str | None] = mapped_column(String(32), nullable=True)
    diet_tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    meal_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tips: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_vegetarian: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_vegan: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_gluten_free: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_lactose_free: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_halal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    calories: Mapped[float | None] = mapped_column(Float, nullable=True)
    proteins: Mapped[float | None] = mapped_column(Float, nullable=True)
    carbs: Mapped[float | None] = mapped_column(Float, nullable=True)
    fats: Mapped[float | None] = mapped_column(Float, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    warnings: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    status: Mapped[RecipeStatus] = mapped_column(
        Enum(RecipeStatus),
        default=RecipeStatus.PENDING,
        nullable=False,
        index=True,
    )
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    cookbook: Mapped[Cookbook] = relationship(
        "Cookbook",
        back_populates="recipes",
    )

    def __repr__(self) -> str:
        return f"<Recipe(id={self.id}, title='{self.title}', page={self.source_page})>"


class NonRecipeContent(Base):
    """
    A page classified as not containing a recipe.

    Kept for auditability (table of contents, photos, ads); never reviewed.
    """

    __tablename__ = "non_recipe_contents"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    cookbook_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("cookbooks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    processing_job_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("processing_jobs.id", ondelete="SET NULL"),
        nullable=True,
    )
    page_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    type: Mapped[str] = mapped_column(
        String(64),
        default="other",
        nullable=False,
        comment="table_of_contents, introduction, photo, advertisement, other",
    )
    notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    cookbook: Mapped[Cookbook] = relationship(
        "Cookbook",
        back_populates="non_recipe_contents",
    )

    def __repr__(self) -> str:
        return f"<NonRecipeContent(page={self.page_number}, type='{self.type}')>"
