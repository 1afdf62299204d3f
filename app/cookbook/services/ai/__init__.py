"""
AI service package for cookbook page classification and recipe imagery.

This package provides modular AI functionality split into:
- classification: Page classification and recipe extraction
- validation: Recipe normalization and nutrition sanity checks
- images: Recipe image generation
- retry: Bounded retries with backoff for transient API failures

The AIService class wires these modules to a shared OpenAI client.
"""

import logging

from PIL import Image

from ...models import PageClassification
from .classification import ClassificationOptions, classify_page
from .exceptions import (
    AIServiceError,
    AIUnavailableError,
    ClassificationError,
    ImageGenerationError,
)
from .images import generate_recipe_image

logger = logging.getLogger(__name__)

__all__ = [
    "AIService",
    "AIServiceError",
    "AIUnavailableError",
    "ClassificationError",
    "ClassificationOptions",
    "ImageGenerationError",
    "get_ai_service",
]

MOCK_IMAGE_URL = "https://placehold.co/1024x1024?text=Recipe"


# =============================================================================
# AIService Class
# =============================================================================


class AIService:
    """
    Service for AI-powered page classification and image generation.

    Runs in mock mode when no API key is configured: every page is reported
    as a non-recipe page and images resolve to a placeholder URL, so the job
    pipeline can be exercised end to end without network access.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        image_model: str | None = None,
        use_mock: bool = False,
    ):
        """
        Initialize the AI service.

        Args:
            api_key: OpenAI API key. If None, reads from config/environment.
            model: Vision model used for classification.
            image_model: Model used for recipe images.
            use_mock: If True, return mock data instead of calling OpenAI.
        """
        from ...config import get_settings

        self.settings = get_settings()
        if api_key is None:
            api_key = self.settings.openai_api_key

        self.api_key = api_key
        self.model = model or self.settings.classification_model
        self.image_model = image_model or self.settings.image_model
        self.use_mock = use_mock or not self.api_key
        self._client = None

        if self.use_mock:
            logger.warning(
                "AI Service running in MOCK MODE. Set OPENAI_API_KEY in .env for real extraction."
            )

    @property
    def client(self):
        """Lazy-load the async OpenAI client."""
        if self._client is None:
            if not self.api_key:
                raise AIServiceError(
                    "OpenAI API key not provided. Set OPENAI_API_KEY environment variable."
                )
            from openai import AsyncOpenAI

            # Retries are handled by call_with_retries so they stay bounded per page
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                timeout=self.settings.ai_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def classify_page(
        self,
        image: Image.Image,
        options: ClassificationOptions,
        context: list[str] | None = None,
    ) -> PageClassification:
        """
        Classify a rendered page and extract its recipes.

        Delegates to the classification module.

        Args:
            image: Rendered page.
            options: Cookbook switches for the prompt.
            context: Short descriptions of the preceding pages.

        Returns:
            PageClassification with normalized recipe candidates.

        Raises:
            ClassificationError: The page could not be classified.
        """
        if self.use_mock:
            return self._get_mock_classification()

        return await classify_page(
            image,
            client=self.client,
            model=self.model,
            options=options,
            context=context,
            timeout=self.settings.ai_timeout_seconds,
            attempts=self.settings.ai_max_attempts,
            base_delay=self.settings.ai_backoff_base_seconds,
            max_delay=self.settings.ai_backoff_max_seconds,
            max_image_side=self.settings.max_image_side,
            nutrition_rules=self.settings.nutrition_rules,
            nutrition_tolerance=self.settings.nutrition_tolerance,
        )

    async def generate_recipe_image(self, title: str, description: str | None = None) -> str:
        """
        Generate a recipe image and return its URL.

        Raises:
            ImageGenerationError: Generation failed.
        """
        if self.use_mock:
            return MOCK_IMAGE_URL

        return await generate_recipe_image(
            title,
            description,
            client=self.client,
            model=self.image_model,
            timeout=self.settings.image_timeout_seconds,
        )

    def _get_mock_classification(self) -> PageClassification:
        """Return a mock non-recipe page for development."""
        return PageClassification(
            kind="non_recipe",
            confidence=1.0,
            page_type="other",
            notes="DEVELOPMENT MODE: Using mock classification. Set OPENAI_API_KEY for real extraction.",
        )


# =============================================================================
# Singleton Factory
# =============================================================================

_ai_service: AIService | None = None


def get_ai_service() -> AIService:
    """Get or create the AI service singleton."""
    global _ai_service
    if _ai_service is None:
        _ai_service = AIService()
    return _ai_service
