"""Tests for the extraction job engine, driven through the job service."""

import asyncio

import pytest

from app.cookbook import database
from app.cookbook.models import ProgressEventType
from app.cookbook.models_db import (
    CookbookStatus,
    JobStatus,
    NonRecipeContent,
    ProcessingJob,
    Recipe,
    RecipeStatus,
)
from app.cookbook.services.ai import ClassificationError
from app.cookbook.services.ai.validation import CONTINUATION_PLACEHOLDER_TITLE
from app.cookbook.services.images import ImageGenerationQueue
from app.cookbook.services.jobs import JobService

from fakes import make_candidate, recipe_page


async def _run_to_end(engine, job_id: str) -> None:
    await asyncio.wait_for(engine.wait(job_id), timeout=10)


def _recipes(db_session, cookbook) -> list[Recipe]:
    db_session.expire_all()
    return (
        db_session.query(Recipe)
        .filter(Recipe.cookbook_id == cookbook.id)
        .order_by(Recipe.source_page, Recipe.title)
        .all()
    )


class TestFullRun:
    """A cookbook processed from first to last page."""

    @pytest.mark.asyncio
    async def test_failed_pages_are_recorded_and_skipped(
        self, engine, renderer, fake_ai, db_session, cookbook, email_service
    ):
        """Pages 3 and 7 cannot be rendered; every other page is handled once."""
        renderer.failing_pages = {3, 7}
        fake_ai.pages = {
            2: recipe_page(make_candidate("Onion Soup", ("onions", "butter", "stock"))),
            5: recipe_page(
                make_candidate("Crepes", ("flour", "eggs", "milk")),
                make_candidate("Lemon Curd", ("lemons", "sugar", "butter")),
            ),
            9: recipe_page(make_candidate("Beef Stew", ("beef", "carrots", "wine"))),
        }

        job = JobService(db_session, engine).start(str(cookbook.id))
        await _run_to_end(engine, str(job.id))

        db_session.expire_all()
        assert job.status == JobStatus.COMPLETED
        assert job.current_page == 10
        assert job.total_pages == 10
        assert job.failed_pages == 2
        assert job.recipes_extracted == 4
        assert [entry["page"] for entry in job.error_log] == [3, 7]
        assert fake_ai.calls == [1, 2, 4, 5, 6, 8, 9, 10]

        assert cookbook.status == CookbookStatus.COMPLETED
        assert cookbook.total_pages == 10
        assert cookbook.processed_pages == 10
        assert cookbook.total_recipes_found == 4

        recipes = _recipes(db_session, cookbook)
        assert [(r.title, r.source_page) for r in recipes] == [
            ("Onion Soup", 2),
            ("Crepes", 5),
            ("Lemon Curd", 5),
            ("Beef Stew", 9),
        ]
        assert all(r.processing_job_id == job.id for r in recipes)
        assert all(r.status == RecipeStatus.PENDING for r in recipes)

        skipped = db_session.query(NonRecipeContent).filter_by(cookbook_id=cookbook.id).count()
        assert skipped == 5

        assert job.stats["pages_processed"] == 10
        assert job.stats["failed_pages"] == 2
        assert job.stats["estimated_cost_usd"] == pytest.approx(0.1)
        assert job.processing_log[-1].startswith("=== SUMMARY: 10 pages")

        assert email_service.sent == [
            {
                "to": "cook@example.com",
                "cookbook_name": cookbook.name,
                "recipes_extracted": 4,
                "total_pages": 10,
            }
        ]

    @pytest.mark.asyncio
    async def test_low_confidence_and_warnings_need_review(self, engine, fake_ai, db_session, cookbook):
        fake_ai.pages = {
            1: recipe_page(make_candidate("Blurry Bread", confidence=0.4)),
            2: recipe_page(make_candidate("Half Pie", warnings=["No instructions extracted"])),
            3: recipe_page(make_candidate("Clear Cake", confidence=0.95)),
        }

        job = JobService(db_session, engine).start(str(cookbook.id))
        await _run_to_end(engine, str(job.id))

        statuses = {r.title: r.status for r in _recipes(db_session, cookbook)}
        assert statuses == {
            "Blurry Bread": RecipeStatus.NEEDS_REVIEW,
            "Half Pie": RecipeStatus.NEEDS_REVIEW,
            "Clear Cake": RecipeStatus.PENDING,
        }
        assert job.stats["needs_review"] == 2

    @pytest.mark.asyncio
    async def test_diet_tags_set_dietary_flags(self, engine, fake_ai, db_session, cookbook):
        fake_ai.pages = {1: recipe_page(make_candidate("Lentil Dal", diet_tags=["Vegan", "gluten free"]))}

        job = JobService(db_session, engine).start(str(cookbook.id))
        await _run_to_end(engine, str(job.id))

        (recipe,) = _recipes(db_session, cookbook)
        assert recipe.is_vegan and recipe.is_vegetarian and recipe.is_gluten_free
        assert not recipe.is_halal

    @pytest.mark.asyncio
    async def test_duplicates_are_skipped(self, engine, fake_ai, db_session, cookbook):
        fake_ai.pages = {
            1: recipe_page(make_candidate("Pancakes", ("flour", "eggs", "milk"))),
            4: recipe_page(make_candidate("PANCAKES!", ("flour", "eggs", "milk", "salt"))),
            6: recipe_page(make_candidate("Pancakes", ("buckwheat", "water", "cider"))),
        }

        job = JobService(db_session, engine).start(str(cookbook.id))
        await _run_to_end(engine, str(job.id))

        recipes = _recipes(db_session, cookbook)
        assert [(r.title, r.source_page) for r in recipes] == [("Pancakes", 1), ("Pancakes", 6)]
        assert job.stats["duplicates_removed"] == 1
        assert any("duplicate of 'Pancakes'" in line for line in job.processing_log)

    @pytest.mark.asyncio
    async def test_recent_pages_are_sent_as_context(self, engine, fake_ai, db_session, cookbook):
        fake_ai.pages = {2: recipe_page(make_candidate("Gratin", continues_on_next_page=True))}

        job = JobService(db_session, engine).start(str(cookbook.id))
        await _run_to_end(engine, str(job.id))

        assert fake_ai.contexts[1] == []
        assert fake_ai.contexts[3] == [
            "Page 1: no recipe (other)",
            "Page 2: recipe 'Gratin' (continues on next page)",
        ]
        assert len(fake_ai.contexts[6]) == 2


class TestEvents:
    """Progress events fan out only after the page is committed."""

    @pytest.mark.asyncio
    async def test_event_sequence(self, engine, emitter, fake_ai, db_session, cookbook):
        fake_ai.pages = {3: recipe_page(make_candidate("Flan"))}
        job = JobService(db_session, engine).start(str(cookbook.id))
        job_id, job_uuid = str(job.id), job.id

        events = []
        committed_pages = []

        def listener(event):
            events.append(event)
            if event.type == ProgressEventType.PROGRESS:
                with database.SessionLocal() as check:
                    committed_pages.append(check.get(ProcessingJob, job_uuid).current_page)

        emitter.subscribe(job_id, listener)
        await _run_to_end(engine, job_id)

        types = [e.type for e in events]
        assert types[-1] == ProgressEventType.COMPLETED
        assert events[-1].data["status"] == "completed"
        assert types.count(ProgressEventType.PROGRESS) == 10
        assert types.count(ProgressEventType.PAGE_SKIPPED) == 9
        assert types.count(ProgressEventType.RECIPE_FOUND) == 1
        # Every 5 pages, plus the final summary
        assert types.count(ProgressEventType.COST_UPDATE) == 3

        progress_pages = [e.data["currentPage"] for e in events if e.type == ProgressEventType.PROGRESS]
        assert progress_pages == list(range(1, 11))
        assert committed_pages == progress_pages

        found = next(e for e in events if e.type == ProgressEventType.RECIPE_FOUND)
        assert found.data["title"] == "Flan"
        assert found.to_payload()["jobId"] == job_id


class TestPauseResume:
    """Pause stops at a page boundary; resume continues without repeating pages."""

    @pytest.mark.asyncio
    async def test_pause_then_resume(self, engine, emitter, fake_ai, db_session, cookbook):
        fake_ai.pages = {
            2: recipe_page(make_candidate("Aioli", ("garlic", "oil", "egg yolk"))),
            8: recipe_page(make_candidate("Bouillabaisse", ("fish", "saffron", "fennel"))),
        }
        service = JobService(db_session, engine)
        job = service.start(str(cookbook.id))
        job_id = str(job.id)
        fake_ai.hooks[5] = lambda: engine.pause_job(job_id)

        paused_events = []
        emitter.subscribe(job_id, lambda e: e.type == ProgressEventType.PAUSED and paused_events.append(e))

        await _run_to_end(engine, job_id)

        db_session.expire_all()
        assert job.status == JobStatus.PAUSED
        assert job.current_page == 5
        assert fake_ai.calls == [1, 2, 3, 4, 5]
        assert paused_events[0].data["currentPage"] == 5
        assert not engine.is_running(job_id)

        service.resume(job_id)
        await _run_to_end(engine, job_id)

        db_session.expire_all()
        assert job.status == JobStatus.COMPLETED
        assert job.current_page == 10
        assert fake_ai.calls == list(range(1, 11))
        assert job.recipes_extracted == 2
        assert job.stats["pages_processed"] == 10
        assert "Resuming from page 6" in job.processing_log
        assert cookbook.status == CookbookStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_failed_job_continues_from_persisted_page(
        self, engine, fake_ai, db_session, cookbook
    ):
        fake_ai.pages = {
            1: recipe_page(make_candidate("Scones")),
            4: ClassificationError("Classification timed out", unreachable=True),
            5: ClassificationError("Classification timed out", unreachable=True),
            6: ClassificationError("Classification timed out", unreachable=True),
        }
        service = JobService(db_session, engine)
        job = service.start(str(cookbook.id))
        job_id = str(job.id)
        await _run_to_end(engine, job_id)

        db_session.expire_all()
        assert job.status == JobStatus.FAILED
        assert job.current_page == 5
        assert cookbook.status == CookbookStatus.FAILED
        assert job.error_log[-1]["fatal"] is True

        # The outage is over
        fake_ai.pages = {1: fake_ai.pages[1]}
        service.resume(job_id)
        await _run_to_end(engine, job_id)

        db_session.expire_all()
        assert job.status == JobStatus.COMPLETED
        assert fake_ai.calls[-5:] == [6, 7, 8, 9, 10]
        assert fake_ai.calls.count(1) == 1
        assert len(_recipes(db_session, cookbook)) == 1


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_keeps_extracted_recipes(self, engine, emitter, fake_ai, db_session, cookbook):
        fake_ai.pages = {
            2: recipe_page(make_candidate("Ratatouille", ("aubergine", "courgette", "tomato"))),
            6: recipe_page(make_candidate("Never Reached")),
        }
        service = JobService(db_session, engine)
        job = service.start(str(cookbook.id))
        job_id = str(job.id)

        def cancel_from_api():
            db_session.expire_all()
            service.cancel(job_id)

        fake_ai.hooks[4] = cancel_from_api

        completed = []
        emitter.subscribe(job_id, lambda e: e.type == ProgressEventType.COMPLETED and completed.append(e))

        await _run_to_end(engine, job_id)

        db_session.expire_all()
        assert job.status == JobStatus.CANCELLED
        assert job.current_page == 4
        assert fake_ai.calls == [1, 2, 3, 4]
        assert [r.title for r in _recipes(db_session, cookbook)] == ["Ratatouille"]
        assert cookbook.status == CookbookStatus.FAILED
        assert cookbook.error_message == "Processing cancelled by user"
        assert [e.data["status"] for e in completed] == ["cancelled"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "outcome,page_line",
        [
            (None, "Page 3: no recipe detected (other)"),
            (
                ClassificationError("Invalid JSON in classification response"),
                "Page 3: error - Invalid JSON in classification response",
            ),
        ],
    )
    async def test_cancel_during_a_page_keeps_both_log_lines(
        self, engine, fake_ai, db_session, cookbook, outcome, page_line
    ):
        if outcome is not None:
            fake_ai.pages = {3: outcome}
        service = JobService(db_session, engine)
        job = service.start(str(cookbook.id))
        job_id = str(job.id)

        def cancel_from_api():
            db_session.expire_all()
            service.cancel(job_id)

        fake_ai.hooks[3] = cancel_from_api

        await _run_to_end(engine, job_id)

        db_session.expire_all()
        assert job.status == JobStatus.CANCELLED
        assert fake_ai.calls == [1, 2, 3]
        assert job.processing_log[-2:] == [
            "Page 3: Processing cancelled by user",
            page_line,
        ]


class TestFailures:
    @pytest.mark.asyncio
    async def test_ai_outage_on_first_page_fails_job(self, engine, fake_ai, db_session, cookbook):
        fake_ai.pages = {1: ClassificationError("Connection refused", unreachable=True)}

        job = JobService(db_session, engine).start(str(cookbook.id))
        await _run_to_end(engine, str(job.id))

        db_session.expire_all()
        assert job.status == JobStatus.FAILED
        assert job.current_page == 0
        assert fake_ai.calls == [1]
        assert job.completed_at is not None
        assert "unavailable" in cookbook.error_message

    @pytest.mark.asyncio
    async def test_unparseable_page_is_skipped(self, engine, fake_ai, db_session, cookbook):
        fake_ai.pages = {
            2: ClassificationError("Invalid JSON in classification response"),
            3: recipe_page(make_candidate("Madeleines")),
        }

        job = JobService(db_session, engine).start(str(cookbook.id))
        await _run_to_end(engine, str(job.id))

        db_session.expire_all()
        assert job.status == JobStatus.COMPLETED
        assert job.failed_pages == 1
        assert job.error_log[0]["page"] == 2
        assert job.error_log[0]["type"] == "ClassificationError"

    @pytest.mark.asyncio
    async def test_storage_failure_fails_job(self, engine, db_session, cookbook):
        async def broken(_key):
            raise OSError("bucket unavailable")

        engine.storage.get_buffer = broken

        job = JobService(db_session, engine).start(str(cookbook.id))
        await _run_to_end(engine, str(job.id))

        db_session.expire_all()
        assert job.status == JobStatus.FAILED
        assert cookbook.error_message == "bucket unavailable"


class TestContinuations:
    """Recipes spanning a page break are stored once."""

    @pytest.mark.asyncio
    async def test_continuation_is_merged_into_previous_page_recipe(
        self, engine, emitter, fake_ai, db_session, cookbook
    ):
        fake_ai.pages = {
            2: recipe_page(
                make_candidate(
                    "Cassoulet",
                    ("white beans", "duck confit", "sausage"),
                    ("Soak the beans overnight.",),
                    continues_on_next_page=True,
                )
            ),
            3: recipe_page(
                make_candidate(
                    CONTINUATION_PLACEHOLDER_TITLE,
                    ("sausage", "breadcrumbs"),
                    ("Layer in a pot.", "Bake for three hours."),
                    continues_previous=True,
                    confidence=0.8,
                )
            ),
        }
        job = JobService(db_session, engine).start(str(cookbook.id))
        found = []
        emitter.subscribe(
            str(job.id), lambda e: e.type == ProgressEventType.RECIPE_FOUND and found.append(e)
        )
        await _run_to_end(engine, str(job.id))

        (recipe,) = _recipes(db_session, cookbook)
        assert recipe.title == "Cassoulet"
        assert recipe.source_page == 2
        assert [i["name"] for i in recipe.ingredients] == [
            "white beans",
            "duck confit",
            "sausage",
            "breadcrumbs",
        ]
        assert [s["step"] for s in recipe.instructions] == [1, 2, 3]
        assert recipe.confidence == pytest.approx(0.8)
        assert job.recipes_extracted == 1
        assert job.stats["recipes_extracted"] == 1
        assert [e.data["merged"] for e in found] == [False, True]

    @pytest.mark.asyncio
    async def test_orphan_continuation_is_kept_for_review(self, engine, fake_ai, db_session, cookbook):
        fake_ai.pages = {
            4: recipe_page(
                make_candidate(CONTINUATION_PLACEHOLDER_TITLE, ("salt",), ("Serve.",), continues_previous=True)
            )
        }

        job = JobService(db_session, engine).start(str(cookbook.id))
        await _run_to_end(engine, str(job.id))

        (recipe,) = _recipes(db_session, cookbook)
        assert recipe.title == "Untitled recipe (continued)"
        assert recipe.status == RecipeStatus.NEEDS_REVIEW
        assert recipe.source_page == 4

    @pytest.mark.asyncio
    async def test_continuation_after_a_new_recipe_is_not_merged(self, engine, fake_ai, db_session, cookbook):
        fake_ai.pages = {
            2: recipe_page(
                make_candidate(
                    "Cassoulet",
                    ("white beans", "duck confit", "sausage"),
                    ("Soak the beans overnight.",),
                    continues_on_next_page=True,
                )
            ),
            3: recipe_page(
                make_candidate("Tarte Tatin", ("apples", "butter", "sugar")),
                make_candidate(
                    CONTINUATION_PLACEHOLDER_TITLE,
                    ("breadcrumbs",),
                    ("Bake for three hours.",),
                    continues_previous=True,
                ),
            ),
        }

        job = JobService(db_session, engine).start(str(cookbook.id))
        await _run_to_end(engine, str(job.id))

        recipes = _recipes(db_session, cookbook)
        assert [(r.source_page, r.title) for r in recipes] == [
            (2, "Cassoulet"),
            (3, "Tarte Tatin"),
            (3, "Untitled recipe (continued)"),
        ]
        assert [i["name"] for i in recipes[0].ingredients] == ["white beans", "duck confit", "sausage"]
        assert recipes[2].status == RecipeStatus.NEEDS_REVIEW

    @pytest.mark.asyncio
    async def test_cut_off_recipe_gets_one_image_after_its_next_page(
        self, engine, engine_settings, fake_ai, db_session, cookbook
    ):
        engine_settings.generate_images = True
        engine.image_queue = ImageGenerationQueue(database.SessionLocal, fake_ai, concurrency=2)
        fake_ai.pages = {
            2: recipe_page(
                make_candidate("Cassoulet", ("white beans", "duck confit"), continues_on_next_page=True)
            ),
            3: recipe_page(
                make_candidate(
                    CONTINUATION_PLACEHOLDER_TITLE, ("breadcrumbs",), ("Bake.",), continues_previous=True
                )
            ),
            6: recipe_page(make_candidate("Gratin", ("potatoes", "cream"), continues_on_next_page=True)),
        }

        job = JobService(db_session, engine).start(str(cookbook.id))
        await _run_to_end(engine, str(job.id))
        await asyncio.wait_for(engine.image_queue.drain(), timeout=10)

        # The partial Cassoulet row from page 2 never gets its own image
        assert sorted(fake_ai.images) == ["Cassoulet", "Gratin"]
        images = {r.title: r.image_url for r in _recipes(db_session, cookbook)}
        assert images == {
            "Cassoulet": "https://images.example.com/cassoulet.png",
            "Gratin": "https://images.example.com/gratin.png",
        }


class TestReExtraction:
    @pytest.mark.asyncio
    async def test_re_extract_replaces_all_recipes(
        self, engine, fake_ai, db_session, cookbook, add_job, add_recipe
    ):
        old = add_job(cookbook, JobStatus.COMPLETED, current_page=10)
        for page in range(1, 9):
            add_recipe(cookbook, f"Old Recipe {page}", page, job=old)
        # Same title and ingredients as an old row: must not be taken for a duplicate
        fake_ai.pages = {
            1: recipe_page(make_candidate("Old Recipe 1")),
            2: recipe_page(make_candidate("Tarte Tatin", ("apples", "butter", "sugar"))),
        }

        job = JobService(db_session, engine).re_extract(str(cookbook.id))
        await _run_to_end(engine, str(job.id))

        recipes = _recipes(db_session, cookbook)
        assert [r.title for r in recipes] == ["Old Recipe 1", "Tarte Tatin"]
        assert all(r.processing_job_id == job.id for r in recipes)
        assert old.status == JobStatus.CANCELLED
        assert job.status == JobStatus.COMPLETED
        assert cookbook.total_recipes_found == 2

    @pytest.mark.asyncio
    async def test_re_extract_page_range(
        self, engine, fake_ai, db_session, make_cookbook, add_job, add_recipe
    ):
        cookbook = make_cookbook(total_pages=10, processed_pages=10)
        old = add_job(cookbook, JobStatus.COMPLETED, current_page=10)
        add_recipe(cookbook, "Soup", 2, job=old)
        add_recipe(cookbook, "Stew", 5, job=old)
        add_recipe(cookbook, "Tart", 8, job=old)
        fake_ai.pages = {5: recipe_page(make_candidate("Stew", ("beef", "carrots")))}

        job = JobService(db_session, engine).re_extract_pages(str(cookbook.id), 4, 6)
        await _run_to_end(engine, str(job.id))

        db_session.expire_all()
        assert fake_ai.calls == [4, 5, 6]
        assert job.status == JobStatus.COMPLETED
        assert job.current_page == 6
        assert job.recipes_extracted == 1
        assert cookbook.processed_pages == 10
        assert cookbook.total_recipes_found == 3
        assert [(r.title, r.source_page) for r in _recipes(db_session, cookbook)] == [
            ("Soup", 2),
            ("Stew", 5),
            ("Tart", 8),
        ]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_shutdown_leaves_running_job_resumable(self, engine, fake_ai, db_session, cookbook):
        gate = asyncio.Event()
        fake_ai.gates[3] = gate

        job = JobService(db_session, engine).start(str(cookbook.id))

        async def reached_page_three():
            while 3 not in fake_ai.calls:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(reached_page_three(), timeout=10)
        await engine.shutdown()

        db_session.expire_all()
        assert job.status == JobStatus.PAUSED
        assert job.current_page == 2

    @pytest.mark.asyncio
    async def test_resume_interrupted_jobs(self, engine, fake_ai, db_session, cookbook, add_job):
        job = add_job(cookbook, JobStatus.PROCESSING, current_page=7)

        resumed = await engine.resume_interrupted_jobs()
        assert resumed == [str(job.id)]
        await _run_to_end(engine, str(job.id))

        db_session.expire_all()
        assert job.status == JobStatus.COMPLETED
        assert fake_ai.calls == [8, 9, 10]

    @pytest.mark.asyncio
    async def test_images_are_generated_for_new_recipes(
        self, engine, engine_settings, fake_ai, db_session, cookbook
    ):
        engine_settings.generate_images = True
        engine.image_queue = ImageGenerationQueue(database.SessionLocal, fake_ai, concurrency=2)
        fake_ai.pages = {
            1: recipe_page(make_candidate("Pesto", ("basil", "pine nuts", "parmesan"))),
            2: recipe_page(make_candidate("Focaccia", ("flour", "olive oil", "salt"))),
        }

        job = JobService(db_session, engine).start(str(cookbook.id))
        await _run_to_end(engine, str(job.id))
        await engine.image_queue.drain()

        images = {r.title: r.image_url for r in _recipes(db_session, cookbook)}
        assert images == {
            "Pesto": "https://images.example.com/pesto.png",
            "Focaccia": "https://images.example.com/focaccia.png",
        }
