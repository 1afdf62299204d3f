"""
Stitching of recipes that run across a page break.

A candidate continues the recipe written for the immediately preceding page
when the model flagged it `continues_previous`, or when that previous recipe
was flagged `continues_on_next_page` and both titles normalize to the same
string. Anything else is a new recipe.
"""

import uuid
from dataclasses import dataclass

from ..models import RecipeCandidate
from .ai.validation import CONTINUATION_PLACEHOLDER_TITLE
from .dedup import normalize_title

# Completeness warnings that a merge can resolve
STRUCTURAL_WARNINGS = ("No ingredients extracted", "No instructions extracted")

ORPHAN_CONTINUATION_WARNING = "Continues a recipe from a previous page that was not found"


@dataclass
class WrittenRecipe:
    """The last recipe a run wrote, kept so the next page can extend it."""

    recipe_id: uuid.UUID
    page: int
    source_page: int
    candidate: RecipeCandidate


def should_stitch(previous: WrittenRecipe | None, candidate: RecipeCandidate, page: int) -> bool:
    if previous is None or previous.page != page - 1:
        return False
    if candidate.continues_previous:
        return True
    return previous.candidate.continues_on_next_page and (
        normalize_title(previous.candidate.title) == normalize_title(candidate.title)
    )


def merge_continuation(head: RecipeCandidate, tail: RecipeCandidate) -> RecipeCandidate:
    """
    Append the part of a recipe found on the next page to its beginning.

    Ingredients already listed on the first page are not repeated; steps are
    renumbered to follow on from the first page.
    """
    known = {normalize_title(i.name) for i in head.ingredients}
    ingredients = list(head.ingredients) + [
        i for i in tail.ingredients if normalize_title(i.name) not in known
    ]

    instructions = list(head.instructions)
    offset = len(instructions)
    for number, step in enumerate(tail.instructions, start=1):
        instructions.append(step.model_copy(update={"step": offset + number}))

    warnings = [
        w for w in dict.fromkeys(head.warnings + tail.warnings) if w not in STRUCTURAL_WARNINGS
    ]
    if not ingredients:
        warnings.append(STRUCTURAL_WARNINGS[0])
    if not instructions:
        warnings.append(STRUCTURAL_WARNINGS[1])

    nutrition = head.nutrition if head.nutrition.as_values() else tail.nutrition

    return head.model_copy(
        update={
            "ingredients": ingredients,
            "instructions": instructions,
            "description": head.description or tail.description,
            "tips": "\n".join(t for t in (head.tips, tail.tips) if t) or None,
            "diet_tags": list(dict.fromkeys(head.diet_tags + tail.diet_tags)),
            "nutrition": nutrition,
            "prep_time_minutes": head.prep_time_minutes or tail.prep_time_minutes,
            "cook_time_minutes": head.cook_time_minutes or tail.cook_time_minutes,
            "continues_on_next_page": tail.continues_on_next_page,
            "confidence": min(head.confidence, tail.confidence),
            "warnings": warnings,
        }
    )


def mark_orphan(candidate: RecipeCandidate) -> RecipeCandidate:
    """A continuation with nothing to attach to is kept, flagged for review."""
    if not candidate.continues_previous:
        return candidate
    title = candidate.title
    if title == CONTINUATION_PLACEHOLDER_TITLE:
        title = "Untitled recipe (continued)"
    return candidate.model_copy(
        update={
            "title": title,
            "warnings": candidate.warnings + [ORPHAN_CONTINUATION_WARNING],
        }
    )
