"""
Duplicate detection for extracted recipes.

A candidate is a duplicate of a persisted recipe from the same cookbook when
their normalized titles are equal and their ingredient name sets overlap at
or above a threshold (Jaccard similarity).
"""

import re
import unicodedata
from collections.abc import Iterable
from typing import Any


def normalize_title(title: str) -> str:
    """
    Case- and diacritics-insensitive form of a title.

    "Crème Brûlée " and "creme  brulee" normalize to the same string.
    """
    decomposed = unicodedata.normalize("NFKD", title)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    cleaned = re.sub(r"[^\w\s]", " ", stripped.casefold())
    return " ".join(cleaned.split())


def ingredient_names(ingredients: Iterable[Any]) -> set[str]:
    """
    Normalized ingredient names from Ingredient models or JSON dicts.
    """
    names = set()
    for item in ingredients:
        name = item.get("name") if isinstance(item, dict) else getattr(item, "name", None)
        if name:
            names.add(normalize_title(str(name)))
    return names


def ingredient_similarity(a: set[str], b: set[str]) -> float:
    """Jaccard similarity of two ingredient name sets; two empty sets match."""
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def find_duplicate(
    title: str,
    ingredients: Iterable[Any],
    existing: Iterable[Any],
    threshold: float = 0.6,
) -> Any | None:
    """
    Find a persisted recipe the candidate duplicates.

    Args:
        title: Candidate title.
        ingredients: Candidate ingredients (models or dicts).
        existing: Persisted recipes of the same cookbook (objects with
            `title` and `ingredients`).
        threshold: Minimum ingredient similarity to call it a duplicate.

    Returns:
        The matching recipe, or None when the candidate is new.
    """
    key = normalize_title(title)
    names = ingredient_names(ingredients)
    for recipe in existing:
        if normalize_title(recipe.title) != key:
            continue
        if ingredient_similarity(names, ingredient_names(recipe.ingredients)) >= threshold:
            return recipe
    return None


def is_duplicate(
    title: str,
    ingredients: Iterable[Any],
    existing: Iterable[Any],
    threshold: float = 0.6,
) -> bool:
    """True when `find_duplicate` finds a match."""
    return find_duplicate(title, ingredients, existing, threshold) is not None
