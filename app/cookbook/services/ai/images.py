"""
Recipe image generation with the OpenAI images API.
"""

import logging
from typing import Any

from .exceptions import AIServiceError, AIUnavailableError, ImageGenerationError
from .retry import call_with_retries

logger = logging.getLogger(__name__)


def build_image_prompt(title: str, description: str | None = None) -> str:
    """Food photography prompt for a recipe."""
    parts = [f"Professional food photography of {title}."]
    if description:
        parts.append(f"{description.rstrip('.')}.")
    parts.append(
        "Appetizing, high-quality, restaurant-style presentation on a clean plate, "
        "soft natural lighting, shallow depth of field."
    )
    return " ".join(parts)


async def generate_recipe_image(
    title: str,
    description: str | None,
    *,
    client: Any,  # AsyncOpenAI client
    model: str = "dall-e-3",
    timeout: float = 120.0,
    attempts: int = 2,
) -> str:
    """
    Generate an image for a recipe and return its hosted URL.

    Raises:
        ImageGenerationError: Generation failed or returned no URL.
    """
    prompt = build_image_prompt(title, description)

    async def _request():
        return await client.images.generate(
            model=model,
            prompt=prompt,
            size="1024x1024",
            n=1,
        )

    try:
        response = await call_with_retries(
            _request,
            attempts=attempts,
            timeout=timeout,
            label="Image generation",
        )
    except AIUnavailableError as e:
        raise ImageGenerationError(str(e)) from e
    except AIServiceError:
        raise
    except Exception as e:
        logger.warning("Image generation failed for '%s': %s", title, e)
        raise ImageGenerationError(f"Image generation failed: {e}") from e

    if not response.data or not response.data[0].url:
        raise ImageGenerationError("Image generation returned no URL")

    logger.info("Generated image for '%s'", title)
    return response.data[0].url
