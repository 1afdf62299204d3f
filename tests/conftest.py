"""Pytest configuration and fixtures."""

import os
import uuid
from datetime import datetime
from typing import Generator

# Settings are cached on first import; configure before importing the app
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["INIT_DB_ON_STARTUP"] = "false"
os.environ["RESUME_INTERRUPTED_JOBS"] = "false"
os.environ["OPENAI_API_KEY"] = ""
os.environ["RESEND_API_KEY"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.cookbook import database
from app.cookbook.config import Settings
from app.cookbook.main import app
from app.cookbook.models_db import (
    Cookbook,
    JobStatus,
    ProcessingJob,
    Recipe,
    RecipeStatus,
    User,
)
from app.cookbook.services.extraction import ExtractionEngine, get_extraction_engine
from app.cookbook.services.job_registry import JobRegistry
from app.cookbook.services.progress_emitter import ProgressEmitter

from fakes import FakeAI, FakeEmailService, FakeEngine, FakeRenderer, FakeStorage


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(autouse=True)
def setup_database() -> Generator[None, None, None]:
    """Fresh in-memory schema for every test."""
    database.Base.metadata.create_all(bind=database.engine)
    yield
    database.Base.metadata.drop_all(bind=database.engine)


@pytest.fixture
def db_session(setup_database) -> Generator[Session, None, None]:
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db_session: Session) -> User:
    user = User(id=uuid.uuid4(), email="cook@example.com", name="Test Cook")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def make_cookbook(db_session: Session, user: User):
    """Factory for cookbooks owned by the test user."""

    def _make(name: str = "Grandma's Kitchen", total_pages: int | None = None, **kwargs) -> Cookbook:
        cookbook = Cookbook(
            id=uuid.uuid4(),
            user_id=user.id,
            name=name,
            file_path=f"{name.lower().replace(' ', '-')}.pdf",
            total_pages=total_pages,
            **kwargs,
        )
        db_session.add(cookbook)
        db_session.commit()
        return cookbook

    return _make


@pytest.fixture
def cookbook(make_cookbook) -> Cookbook:
    return make_cookbook()


@pytest.fixture
def add_job(db_session: Session):
    """Factory for jobs in an arbitrary state."""

    def _add(
        cookbook: Cookbook,
        status: JobStatus = JobStatus.PENDING,
        current_page: int = 0,
        created_at: datetime | None = None,
        **kwargs,
    ) -> ProcessingJob:
        job = ProcessingJob(
            id=uuid.uuid4(),
            cookbook_id=cookbook.id,
            user_id=cookbook.user_id,
            status=status,
            current_page=current_page,
            processing_log=[],
            error_log=[],
            created_at=created_at or datetime.utcnow(),
            **kwargs,
        )
        db_session.add(job)
        db_session.commit()
        return job

    return _add


@pytest.fixture
def add_recipe(db_session: Session):
    """Factory for persisted recipes."""

    def _add(
        cookbook: Cookbook,
        title: str,
        source_page: int,
        job: ProcessingJob | None = None,
        ingredients: tuple[str, ...] = ("flour", "eggs", "milk"),
        status: RecipeStatus = RecipeStatus.PENDING,
        **kwargs,
    ) -> Recipe:
        recipe = Recipe(
            id=uuid.uuid4(),
            cookbook_id=cookbook.id,
            user_id=cookbook.user_id,
            processing_job_id=job.id if job else None,
            title=title,
            source_page=source_page,
            ingredients=[{"name": name, "quantity": 100, "unit": "g"} for name in ingredients],
            instructions=[{"step": 1, "text": "Cook."}],
            status=status,
            **kwargs,
        )
        db_session.add(recipe)
        db_session.commit()
        return recipe

    return _add


# =============================================================================
# Extraction engine
# =============================================================================


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer(page_count=10)


@pytest.fixture
def fake_ai() -> FakeAI:
    return FakeAI()


@pytest.fixture
def emitter() -> ProgressEmitter:
    return ProgressEmitter()


@pytest.fixture
def email_service() -> FakeEmailService:
    return FakeEmailService()


@pytest.fixture
def engine_settings() -> Settings:
    return Settings(
        context_window_pages=2,
        max_consecutive_ai_failures=3,
        review_confidence_threshold=0.7,
        dedup_ingredient_threshold=0.6,
        cost_per_page_usd=0.01,
        cost_update_interval_pages=5,
        generate_images=False,
    )


@pytest.fixture
def engine(
    renderer: FakeRenderer,
    fake_ai: FakeAI,
    emitter: ProgressEmitter,
    email_service: FakeEmailService,
    engine_settings: Settings,
) -> ExtractionEngine:
    """An engine wired to fakes, sharing the test database."""
    return ExtractionEngine(
        session_factory=database.SessionLocal,
        storage=FakeStorage(),
        renderer=renderer,
        ai_service=fake_ai,
        emitter=emitter,
        registry=JobRegistry(),
        email_service=email_service,
        settings=engine_settings,
    )


# =============================================================================
# API
# =============================================================================


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def client(fake_engine: FakeEngine, setup_database) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI application."""
    app.dependency_overrides[get_extraction_engine] = lambda: fake_engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def invalid_file_bytes() -> bytes:
    """Create invalid (non-PDF) file bytes for testing."""
    return b"This is not a PDF file"
