"""Tests for Pydantic models."""

import uuid
from datetime import datetime
from types import SimpleNamespace

import pytest
from pydantic import ValidationError

from app.cookbook.models import (
    Ingredient,
    PageClassification,
    ProcessingJobResponse,
    ReExtractPagesRequest,
    RecipeCandidate,
    StartProcessingRequest,
)
from app.cookbook.models_db import JobStatus


class TestRecipeCandidate:
    """Tests for RecipeCandidate model."""

    def test_title_whitespace_collapsed(self):
        candidate = RecipeCandidate(title="  Beef\n  Bourguignon ")
        assert candidate.title == "Beef Bourguignon"

    def test_defaults(self):
        candidate = RecipeCandidate(title="Toast")
        assert candidate.servings == 4
        assert candidate.ingredients == []
        assert not candidate.continues_previous
        assert candidate.warnings == []

    def test_ingredient_names(self):
        candidate = RecipeCandidate(
            title="Toast", ingredients=[Ingredient(name="bread"), Ingredient(name="butter")]
        )
        assert candidate.ingredient_names == ["bread", "butter"]

    def test_confidence_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            RecipeCandidate(title="Toast", confidence=1.5)

    def test_empty_title_rejected(self):
        with pytest.raises(ValidationError):
            RecipeCandidate(title="")

    def test_negative_quantity_rejected(self):
        with pytest.raises(ValidationError):
            Ingredient(name="flour", quantity=-1)


class TestPageClassification:
    def test_kind_is_restricted(self):
        with pytest.raises(ValidationError):
            PageClassification(kind="maybe")

    def test_non_recipe_defaults(self):
        page = PageClassification(kind="non_recipe")
        assert page.recipes == []
        assert page.page_type == "other"


class TestRequests:
    """Tests for camelCase request bodies."""

    def test_start_request_accepts_alias_and_field_name(self):
        assert StartProcessingRequest.model_validate({"cookbookId": "abc"}).cookbook_id == "abc"
        assert StartProcessingRequest(cookbook_id="abc").cookbook_id == "abc"

    def test_page_range_must_be_positive(self):
        with pytest.raises(ValidationError):
            ReExtractPagesRequest.model_validate({"cookbookId": "abc", "startPage": 0, "endPage": 3})


class TestProcessingJobResponse:
    def test_from_job(self):
        job = SimpleNamespace(
            id=uuid.uuid4(),
            cookbook_id=uuid.uuid4(),
            user_id=uuid.uuid4(),
            status=JobStatus.PAUSED,
            total_pages=120,
            current_page=40,
            page_start=None,
            page_end=None,
            recipes_extracted=12,
            failed_pages=1,
            processing_log=None,
            error_log=[{"page": 7, "message": "blurry"}],
            stats={"pages_processed": 40, "estimated_cost_usd": 0.4},
            created_at=datetime(2024, 5, 1, 12, 0),
            started_at=datetime(2024, 5, 1, 12, 1),
            completed_at=None,
        )

        response = ProcessingJobResponse.from_job(job)

        assert response.id == str(job.id)
        assert response.status == "paused"
        assert response.processing_log == []
        assert response.stats.pages_processed == 40
        assert response.model_dump(mode="json")["created_at"] == "2024-05-01T12:00:00"
