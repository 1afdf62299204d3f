"""
Validation and normalization of recipe data returned by the classifier.

Handles:
- Data cleaning (null removal from arrays)
- Quantity parsing (fractions, decimal commas, free text) and metric rounding
- Dietary flags derived from diet tags
- Nutrition sanity rules evaluated with simpleeval
"""

import logging
import math
import re
import unicodedata
from typing import Any

from price_parser import Price
from pydantic import ValidationError
from simpleeval import NameNotDefined, SimpleEval

from ...models import Ingredient, Instruction, Nutrition, RecipeCandidate

logger = logging.getLogger(__name__)


CONTINUATION_PLACEHOLDER_TITLE = "(continued)"

UNICODE_FRACTIONS = {
    "½": 0.5,
    "⅓": 1 / 3,
    "⅔": 2 / 3,
    "¼": 0.25,
    "¾": 0.75,
    "⅛": 0.125,
}

# unit alias -> (canonical unit, factor to canonical)
METRIC_UNITS: dict[str, tuple[str, float]] = {
    "g": ("g", 1.0),
    "gr": ("g", 1.0),
    "gram": ("g", 1.0),
    "grams": ("g", 1.0),
    "gramme": ("g", 1.0),
    "grammes": ("g", 1.0),
    "kg": ("g", 1000.0),
    "ml": ("ml", 1.0),
    "millilitre": ("ml", 1.0),
    "milliliter": ("ml", 1.0),
    "cl": ("ml", 10.0),
    "dl": ("ml", 100.0),
    "l": ("ml", 1000.0),
    "litre": ("ml", 1000.0),
    "liter": ("ml", 1000.0),
}

# diet tag -> dietary flags it implies
DIET_TAG_FLAGS: dict[str, tuple[str, ...]] = {
    "vegetarian": ("is_vegetarian",),
    "vegan": ("is_vegan", "is_vegetarian", "is_lactose_free"),
    "gluten-free": ("is_gluten_free",),
    "lactose-free": ("is_lactose_free",),
    "dairy-free": ("is_lactose_free",),
    "halal": ("is_halal",),
}

DIETARY_FLAGS = (
    "is_vegetarian",
    "is_vegan",
    "is_gluten_free",
    "is_lactose_free",
    "is_halal",
)


def _clean_null_from_arrays(
    data: dict[str, Any] | list[Any] | Any,
) -> dict[str, Any] | list[Any] | Any:
    """
    Recursively remove None/null values from arrays in the data structure.

    Vision models pad ingredient and step lists with nulls on dense pages.
    """
    if isinstance(data, dict):
        return {k: _clean_null_from_arrays(v) for k, v in data.items()}
    elif isinstance(data, list):
        filtered = [x for x in data if x is not None]
        return [_clean_null_from_arrays(item) for item in filtered]
    else:
        return data


# =============================================================================
# Quantities
# =============================================================================


def parse_quantity(value: Any) -> float | None:
    """
    Parse an ingredient quantity to float.

    Handles:
    - numbers: 200, 1.5
    - fractions: "1/2", "1 1/2", "½", "1½"
    - decimal commas: "0,5"
    - free text around a number: "about 200", "200 g"

    Returns None for anything without a finite number ("to taste", "a pinch",
    Infinity).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # json.loads accepts Infinity and NaN
        return float(value) if math.isfinite(value) and value >= 0 else None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    # Mixed unicode fraction: "1½"
    for char, fraction in UNICODE_FRACTIONS.items():
        if char in text:
            whole = re.search(r"(\d+)\s*" + char, text)
            return (int(whole.group(1)) if whole else 0) + fraction

    # "1 1/2" or "1/2"
    match = re.search(r"(?:(\d+)\s+)?(\d+)\s*/\s*(\d+)", text)
    if match:
        whole, numerator, denominator = match.groups()
        if int(denominator) == 0:
            return None
        return (int(whole) if whole else 0) + int(numerator) / int(denominator)

    # "0,5" -> decimal comma
    if re.fullmatch(r"\d+,\d{1,2}", text):
        return float(text.replace(",", "."))

    amount = Price.fromstring(text).amount_float
    if amount is not None and math.isfinite(amount) and amount >= 0:
        return amount
    return None


def round_metric(quantity: float) -> float:
    """Round a gram/millilitre quantity to the nearest 5, minimum 5."""
    return float(max(5, math.floor(quantity / 5 + 0.5) * 5))


def normalize_ingredient(
    raw: dict[str, Any], convert_to_grams: bool
) -> tuple[Ingredient | None, list[str]]:
    """
    Build an Ingredient from a raw classifier item.

    Returns:
        (ingredient or None if unusable, warnings)
    """
    warnings: list[str] = []
    name = str(raw.get("name") or "").strip()
    if not name:
        return None, ["Ingredient without a name was dropped"]

    raw_quantity = raw.get("quantity")
    quantity = parse_quantity(raw_quantity)
    if quantity is None and raw_quantity not in (None, ""):
        warnings.append(f"Could not parse quantity '{raw_quantity}' for '{name}'")

    unit = raw.get("unit")
    unit = str(unit).strip() if unit else None

    if unit and convert_to_grams:
        canonical = METRIC_UNITS.get(unit.lower().rstrip("."))
        if canonical:
            unit, factor = canonical
            if quantity is not None and quantity > 0:
                quantity = round_metric(quantity * factor)

    ingredient = Ingredient(
        name=name,
        quantity=quantity,
        unit=unit,
        original_text=raw.get("original_text"),
    )
    return ingredient, warnings


# =============================================================================
# Dietary flags
# =============================================================================


def _normalize_tag(tag: str) -> str:
    text = unicodedata.normalize("NFKD", tag).encode("ascii", "ignore").decode()
    return re.sub(r"[\s_]+", "-", text.strip().lower())


def derive_diet_flags(diet_tags: list[str]) -> dict[str, bool]:
    """
    Map free-form diet tags to dietary booleans.

    Example: ["Vegan", "gluten free"] -> vegan, vegetarian, lactose-free and
    gluten-free flags set.
    """
    flags = dict.fromkeys(DIETARY_FLAGS, False)
    for tag in diet_tags:
        for flag in DIET_TAG_FLAGS.get(_normalize_tag(tag), ()):
            flags[flag] = True
    return flags


# =============================================================================
# Nutrition rules
# =============================================================================


def _evaluate_nutrition_rule(
    rule: str,
    values: dict[str, float],
    tolerance: float,
) -> tuple[bool, str]:
    """
    Evaluate a rule like "calories == 4 * proteins + 4 * carbs + 9 * fats".

    Rules referencing a value that was not estimated are skipped (pass).

    Returns:
        (success, message)
    """
    rule = rule.strip()
    if "==" not in rule:
        return (True, f"Invalid rule format (no ==): {rule}")

    left_side, right_side = (part.strip() for part in rule.split("==", 1))

    evaluator = SimpleEval()
    evaluator.names = values
    evaluator.functions = {"abs": abs, "min": min, "max": max, "round": round}

    try:
        left_value = evaluator.eval(left_side)
        right_value = evaluator.eval(right_side)
    except NameNotDefined as e:
        return (True, f"Value not estimated for rule '{rule}': {e}")
    except Exception as e:
        return (True, f"Could not evaluate '{rule}': {e}")

    if left_value == 0 and right_value == 0:
        return (True, f"Rule passed: {rule}")

    allowed = max(abs(left_value), abs(right_value)) * tolerance
    if abs(left_value - right_value) <= allowed:
        return (True, f"Rule passed: {rule}")
    return (
        False,
        f"Nutrition check failed: {rule} "
        f"(left={left_value:.1f}, right={right_value:.1f})",
    )


def check_nutrition(
    nutrition: Nutrition, rules: list[str], tolerance: float
) -> list[str]:
    """Return a warning for every nutrition rule that fails."""
    values = nutrition.as_values()
    if not values:
        return []

    warnings = []
    for rule in rules:
        success, message = _evaluate_nutrition_rule(rule, values, tolerance)
        if not success:
            logger.warning("Nutrition rule failed: %s", message)
            warnings.append(message)
    return warnings


# =============================================================================
# Recipe normalization
# =============================================================================


def _as_int(value: Any) -> int | None:
    quantity = parse_quantity(value)
    return int(round(quantity)) if quantity is not None else None


def normalize_recipe(
    raw: dict[str, Any],
    *,
    page_confidence: float,
    convert_to_grams: bool = True,
    nutrition_rules: list[str] | None = None,
    nutrition_tolerance: float = 0.15,
) -> RecipeCandidate:
    """
    Turn one raw recipe object from the classifier into a RecipeCandidate.

    Args:
        raw: Recipe object from the model's JSON.
        page_confidence: Fallback when the recipe has no own confidence.
        convert_to_grams: Convert and round metric units.
        nutrition_rules: simpleeval rules checked against the estimates.
        nutrition_tolerance: Relative tolerance for nutrition rules.

    Returns:
        Normalized candidate; problems are recorded in `warnings`.

    Raises:
        ValueError: The object has no title and is not a continuation.
    """
    raw = _clean_null_from_arrays(raw)
    warnings: list[str] = []

    continues_previous = bool(raw.get("continues_previous"))
    title = str(raw.get("title") or "").strip()
    if not title:
        if not continues_previous:
            raise ValueError("Recipe without a title")
        title = CONTINUATION_PLACEHOLDER_TITLE

    ingredients: list[Ingredient] = []
    for item in raw.get("ingredients") or []:
        if isinstance(item, str):
            item = {"name": item, "original_text": item}
        if not isinstance(item, dict):
            continue
        ingredient, item_warnings = normalize_ingredient(item, convert_to_grams)
        warnings.extend(item_warnings)
        if ingredient is not None:
            ingredients.append(ingredient)

    instructions: list[Instruction] = []
    for index, item in enumerate(raw.get("instructions") or [], start=1):
        if isinstance(item, str):
            item = {"text": item}
        if not isinstance(item, dict) or not str(item.get("text") or "").strip():
            continue
        try:
            instructions.append(
                Instruction(
                    step=_as_int(item.get("step")) or index,
                    text=str(item["text"]).strip(),
                    time_minutes=_as_int(item.get("time_minutes")),
                    temperature_celsius=_as_int(item.get("temperature_celsius")),
                )
            )
        except ValidationError as e:
            warnings.append(f"Instruction {index} dropped: {e.errors()[0]['msg']}")

    if not continues_previous:
        if not ingredients:
            warnings.append("No ingredients extracted")
        if not instructions:
            warnings.append("No instructions extracted")

    raw_nutrition = raw.get("nutrition") if isinstance(raw.get("nutrition"), dict) else {}
    nutrition = Nutrition(
        **{k: parse_quantity(raw_nutrition.get(k)) for k in Nutrition.model_fields}
    )
    warnings.extend(
        check_nutrition(nutrition, nutrition_rules or [], nutrition_tolerance)
    )

    confidence = raw.get("confidence")
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
        confidence = page_confidence
    confidence = max(0.0, min(1.0, float(confidence)))

    diet_tags = [str(t) for t in raw.get("diet_tags") or [] if str(t).strip()]

    return RecipeCandidate(
        title=title,
        original_title=raw.get("original_title"),
        description=raw.get("description"),
        category=raw.get("category"),
        sub_category=raw.get("sub_category"),
        ingredients=ingredients,
        instructions=instructions,
        servings=max(1, _as_int(raw.get("servings")) or 4),
        prep_time_minutes=_as_int(raw.get("prep_time_minutes")),
        cook_time_minutes=_as_int(raw.get("cook_time_minutes")),
        region=raw.get("region"),
        country=raw.get("country"),
        season=raw.get("season"),
        diet_tags=diet_tags,
        meal_type=raw.get("meal_type"),
        tips=raw.get("tips"),
        nutrition=nutrition,
        continues_previous=continues_previous,
        continues_on_next_page=bool(raw.get("continues_on_next_page")),
        confidence=confidence,
        warnings=warnings,
    )
