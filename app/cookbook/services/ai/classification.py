"""
Page classification: decide whether a rendered cookbook page holds recipes
and extract them as structured data.

Uses an OpenAI vision model in JSON mode. A short description of the
preceding pages is sent along so the model can flag recipes that continue
across a page break.
"""

import base64
import io
import json
import logging
from dataclasses import dataclass
from typing import Any

from PIL import Image

from ...models import PageClassification, RecipeCandidate
from .exceptions import AIServiceError, AIUnavailableError, ClassificationError
from .retry import call_with_retries
from .validation import _clean_null_from_arrays, normalize_recipe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationOptions:
    """Per-cookbook switches that shape the prompt and normalization."""

    generate_descriptions: bool = True
    reformulate_for_copyright: bool = True
    convert_to_grams: bool = True


# =============================================================================
# Classification System Prompt
# =============================================================================

CLASSIFICATION_SYSTEM_PROMPT = """You are an expert culinary archivist digitizing printed cookbooks.
You receive ONE scanned cookbook page at a time. Decide whether it contains recipes and,
if it does, transcribe every recipe on the page into structured data.

## Page Types
- recipe: the page contains at least one recipe (title, ingredients and/or steps)
- table_of_contents, introduction, photo, advertisement, other: no recipe on the page

## Extraction Rules
1. **One entry per recipe**: a page may hold zero, one or several recipes.
2. **No hallucination**: only transcribe what is printed. Unknown values are null.
3. **Ingredients**: keep the printed order. Put the printed line in `original_text`,
   the numeric amount in `quantity` (number, not text) and the unit in `unit`.
4. **Instructions**: one object per step, numbered from 1. Add `time_minutes` and
   `temperature_celsius` when the step states them.
5. **Nutrition**: estimate per-serving calories, proteins, carbs and fats (grams).

## Multi-page Recipes
- If the page starts in the middle of a recipe (no title, or a "continued" marker),
  set `continues_previous` to true for that recipe and repeat the recipe title
  from the context when you can.
- If a recipe is cut off at the bottom of the page, set `continues_on_next_page` to true.

## Confidence
Give each recipe a `confidence` between 0.0 and 1.0:
- 0.9-1.0: clearly printed, complete recipe
- 0.7-0.89: readable, minor uncertainty
- below 0.7: partially legible, incomplete or guessed values

Return data in the EXACT JSON format specified in the user prompt."""


RESPONSE_FORMAT = """{
  "found_recipe": true,
  "page_type": "recipe",
  "confidence": 0.92,
  "notes": null,
  "recipes": [
    {
      "title": "Recipe title",
      "original_title": "Title exactly as printed",
      "description": "Short description",
      "category": "starter | main | dessert | side | sauce | drink | bread | basic",
      "sub_category": null,
      "ingredients": [
        {"name": "flour", "quantity": 250, "unit": "g", "original_text": "250 g flour"}
      ],
      "instructions": [
        {"step": 1, "text": "Preheat the oven.", "time_minutes": null, "temperature_celsius": 180}
      ],
      "servings": 4,
      "prep_time_minutes": 15,
      "cook_time_minutes": 30,
      "region": null,
      "country": null,
      "season": null,
      "diet_tags": ["vegetarian"],
      "meal_type": "dinner",
      "tips": null,
      "nutrition": {"calories": 420, "proteins": 12, "carbs": 55, "fats": 16},
      "continues_previous": false,
      "continues_on_next_page": false,
      "confidence": 0.92
    }
  ]
}"""


# =============================================================================
# Helper Functions
# =============================================================================


def _image_to_base64(image: Image.Image, max_size: int = 2048) -> str:
    """Convert PIL Image to base64 PNG for the API."""
    buffer = io.BytesIO()
    if max(image.size) > max_size:
        ratio = max_size / max(image.size)
        new_size = (int(image.size[0] * ratio), int(image.size[1] * ratio))
        image = image.resize(new_size, Image.Resampling.LANCZOS)

    image.save(buffer, format="PNG", optimize=True)
    buffer.seek(0)
    return base64.b64encode(buffer.getvalue()).decode("utf-8")


def build_classification_prompt(
    options: ClassificationOptions,
    context: list[str] | None = None,
) -> str:
    """
    Build the user prompt for one page.

    Args:
        options: Cookbook switches (descriptions, rewording, metric conversion).
        context: One line per recent page, oldest first.

    Returns:
        The prompt text.
    """
    rules = []
    if options.convert_to_grams:
        rules.append(
            "- Convert every solid quantity to grams (g) and every liquid to millilitres (ml). "
            "Keep 'piece', 'pinch' and spoon units for small amounts."
        )
    else:
        rules.append("- Keep quantities and units exactly as printed.")
    if options.reformulate_for_copyright:
        rules.append(
            "- Reword the description and every instruction in your own words while keeping "
            "the technique, quantities, times and temperatures identical. Keep `original_title` verbatim."
        )
    else:
        rules.append("- Transcribe instructions verbatim.")
    if options.generate_descriptions:
        rules.append(
            "- If no description is printed, write a one-sentence appetizing description."
        )
    else:
        rules.append("- Leave `description` null unless one is printed.")

    context_text = "\n".join(f"- {line}" for line in context) if context else "- (first page of this run)"

    return f"""Analyze this cookbook page.

## Previous Pages (context):
{context_text}

## Transcription Rules:
{chr(10).join(rules)}

## Response Format (MUST follow this exact structure):
{RESPONSE_FORMAT}

If the page holds no recipe, return "found_recipe": false, "recipes": [] and set
`page_type` to what the page is."""


def parse_classification_response(
    content: str,
    options: ClassificationOptions,
    nutrition_rules: list[str] | None = None,
    nutrition_tolerance: float = 0.15,
) -> PageClassification:
    """
    Parse the model's JSON into a PageClassification.

    Recipe objects that cannot be used (no title, not a continuation) are
    dropped with a log line; the rest of the page survives.

    Raises:
        ClassificationError: Content is not a JSON object.
    """
    if not content:
        raise ClassificationError("Empty response from OpenAI")

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.error("Failed to parse classification response: %s", content[:500])
        raise ClassificationError(f"Invalid JSON in classification response: {e}") from e

    if not isinstance(data, dict):
        raise ClassificationError("Classification response is not a JSON object")

    data = _clean_null_from_arrays(data)
    page_confidence = data.get("confidence")
    if not isinstance(page_confidence, (int, float)) or isinstance(page_confidence, bool):
        page_confidence = 0.75
    page_confidence = max(0.0, min(1.0, float(page_confidence)))

    recipes: list[RecipeCandidate] = []
    raw_recipes = data.get("recipes") or []
    if data.get("found_recipe", bool(raw_recipes)) and isinstance(raw_recipes, list):
        for raw in raw_recipes:
            if not isinstance(raw, dict):
                continue
            try:
                recipes.append(
                    normalize_recipe(
                        raw,
                        page_confidence=page_confidence,
                        convert_to_grams=options.convert_to_grams,
                        nutrition_rules=nutrition_rules,
                        nutrition_tolerance=nutrition_tolerance,
                    )
                )
            except ValueError as e:
                logger.warning("Dropping recipe from classification: %s", e)

    notes = data.get("notes")
    page_type = str(data.get("page_type") or ("recipe" if recipes else "other"))
    if not recipes and page_type == "recipe":
        page_type = "other"

    return PageClassification(
        kind="recipe" if recipes else "non_recipe",
        recipes=recipes,
        confidence=page_confidence,
        page_type=page_type,
        notes=str(notes) if notes is not None else None,
    )


# =============================================================================
# Main Classification Function
# =============================================================================


async def classify_page(
    image: Image.Image,
    *,
    client: Any,  # AsyncOpenAI client
    model: str,
    options: ClassificationOptions,
    context: list[str] | None = None,
    timeout: float = 90.0,
    attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 30.0,
    max_image_side: int = 2048,
    nutrition_rules: list[str] | None = None,
    nutrition_tolerance: float = 0.15,
) -> PageClassification:
    """
    Classify one page image and extract its recipes.

    Transient failures are retried with backoff; once the budget is spent the
    error is reported as an unreachable ClassificationError.

    Raises:
        ClassificationError: The page could not be classified.
    """
    prompt = build_classification_prompt(options, context)
    base64_image = _image_to_base64(image, max_image_side)

    async def _request():
        return await client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": CLASSIFICATION_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:image/png;base64,{base64_image}",
                                "detail": "high",
                            },
                        },
                    ],
                },
            ],
            response_format={"type": "json_object"},
            temperature=0.1,
        )

    try:
        response = await call_with_retries(
            _request,
            attempts=attempts,
            timeout=timeout,
            base_delay=base_delay,
            max_delay=max_delay,
            label="Page classification",
        )
    except AIUnavailableError as e:
        raise ClassificationError(str(e), unreachable=True) from e
    except AIServiceError:
        raise
    except Exception as e:
        logger.exception("Page classification failed")
        raise ClassificationError(f"Page classification failed: {e}") from e

    content = response.choices[0].message.content
    try:
        result = parse_classification_response(
            content or "",
            options,
            nutrition_rules=nutrition_rules,
            nutrition_tolerance=nutrition_tolerance,
        )
    except ClassificationError:
        raise
    except (ValueError, TypeError, ArithmeticError) as e:
        # Malformed but parseable payloads fail this page only
        logger.error("Unusable classification response: %s", (content or "")[:500])
        raise ClassificationError(f"Unusable classification response: {e}") from e

    logger.info(
        "Classified page: kind=%s, recipes=%d, confidence=%.2f",
        result.kind,
        len(result.recipes),
        result.confidence,
    )
    return result
