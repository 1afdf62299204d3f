"""Tests for stitching recipes across page breaks."""

import uuid

from app.cookbook.services.ai.validation import CONTINUATION_PLACEHOLDER_TITLE
from app.cookbook.services.continuation import (
    ORPHAN_CONTINUATION_WARNING,
    WrittenRecipe,
    mark_orphan,
    merge_continuation,
    should_stitch,
)

from fakes import make_candidate


def _written(candidate, page: int = 4) -> WrittenRecipe:
    return WrittenRecipe(recipe_id=uuid.uuid4(), page=page, source_page=page, candidate=candidate)


class TestShouldStitch:
    def test_explicit_continuation_of_previous_page(self):
        previous = _written(make_candidate("Lasagne"), page=4)
        tail = make_candidate(CONTINUATION_PLACEHOLDER_TITLE, continues_previous=True)
        assert should_stitch(previous, tail, page=5)

    def test_same_title_after_cut_off_recipe(self):
        previous = _written(make_candidate("Lasagne", continues_on_next_page=True), page=4)
        assert should_stitch(previous, make_candidate("LASAGNE"), page=5)

    def test_same_title_without_cut_off_is_a_new_recipe(self):
        previous = _written(make_candidate("Lasagne"), page=4)
        assert not should_stitch(previous, make_candidate("Lasagne"), page=5)

    def test_only_the_immediately_preceding_page(self):
        previous = _written(make_candidate("Lasagne", continues_on_next_page=True), page=3)
        tail = make_candidate(CONTINUATION_PLACEHOLDER_TITLE, continues_previous=True)
        assert not should_stitch(previous, tail, page=5)

    def test_nothing_written_before(self):
        assert not should_stitch(None, make_candidate("Lasagne", continues_previous=True), page=1)


class TestMergeContinuation:
    def test_ingredients_and_steps_are_appended(self):
        head = make_candidate(
            "Lasagne",
            ("pasta sheets", "beef", "tomato"),
            ("Brown the beef.", "Make the sauce."),
            continues_on_next_page=True,
            confidence=0.9,
        )
        tail = make_candidate(
            CONTINUATION_PLACEHOLDER_TITLE,
            ("Tomato", "bechamel", "parmesan"),
            ("Layer.", "Bake."),
            continues_previous=True,
            confidence=0.7,
        )

        merged = merge_continuation(head, tail)

        assert merged.title == "Lasagne"
        assert [i.name for i in merged.ingredients] == [
            "pasta sheets",
            "beef",
            "tomato",
            "bechamel",
            "parmesan",
        ]
        assert [(s.step, s.text) for s in merged.instructions] == [
            (1, "Brown the beef."),
            (2, "Make the sauce."),
            (3, "Layer."),
            (4, "Bake."),
        ]
        assert merged.confidence == 0.7
        assert not merged.continues_on_next_page

    def test_resolved_structural_warnings_are_dropped(self):
        head = make_candidate("Bread", steps=(), warnings=["No instructions extracted", "Blurry scan"])
        tail = make_candidate(CONTINUATION_PLACEHOLDER_TITLE, ingredients=(), continues_previous=True)

        merged = merge_continuation(head, tail)

        assert merged.warnings == ["Blurry scan"]


class TestMarkOrphan:
    def test_orphan_continuation_is_flagged(self):
        orphan = mark_orphan(make_candidate(CONTINUATION_PLACEHOLDER_TITLE, continues_previous=True))
        assert orphan.title == "Untitled recipe (continued)"
        assert ORPHAN_CONTINUATION_WARNING in orphan.warnings

    def test_regular_recipe_untouched(self):
        candidate = make_candidate("Bread")
        assert mark_orphan(candidate) is candidate
