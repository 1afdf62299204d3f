"""
Background image generation for recipes, and the sweeper that re-queues
recipes still missing an image.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models_db import Recipe, RecipeStatus
from .ai import AIService, ImageGenerationError

logger = logging.getLogger(__name__)


class ImageGenerationQueue:
    """
    Bounded, de-duplicated queue of image generation work.

    A recipe id is queued at most once while its generation is in flight.
    At most `concurrency` generations call the image API at the same time.
    Failures leave `image_url` empty so a later sweep picks the recipe up.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        ai_service: AIService,
        concurrency: int = 3,
    ):
        self.session_factory = session_factory
        self.ai_service = ai_service
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._in_flight: set[uuid.UUID] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def enqueue(self, recipe_id: uuid.UUID, title: str, description: str | None) -> bool:
        """
        Queue image generation for one recipe.

        Returns:
            False if that recipe is already queued.
        """
        if recipe_id in self._in_flight:
            return False

        self._in_flight.add(recipe_id)
        task = asyncio.get_running_loop().create_task(
            self._generate(recipe_id, title, description)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _generate(
        self, recipe_id: uuid.UUID, title: str, description: str | None
    ) -> None:
        try:
            async with self._semaphore:
                url = await self.ai_service.generate_recipe_image(title, description)

            with self.session_factory() as db:
                recipe = db.get(Recipe, recipe_id)
                if recipe is None:
                    logger.info("Recipe %s deleted before its image was ready", recipe_id)
                    return
                if recipe.image_url is None:
                    recipe.image_url = url
                    db.commit()
                    logger.info("Stored image for recipe %s", recipe_id)
        except ImageGenerationError as e:
            logger.warning("Image generation failed for recipe %s: %s", recipe_id, e)
        except SQLAlchemyError:
            logger.exception("Could not store image for recipe %s", recipe_id)
        finally:
            self._in_flight.discard(recipe_id)

    async def recover_missing_images(self) -> int:
        """
        Queue image generation for approved/pending recipes without an image.

        Idempotent: recipes already in flight are not queued again, and
        recipes whose image was stored are no longer selected.

        Returns:
            Number of recipes newly queued.
        """
        with self.session_factory() as db:
            rows = (
                db.query(Recipe.id, Recipe.title, Recipe.description)
                .filter(
                    Recipe.image_url.is_(None),
                    Recipe.status.in_([RecipeStatus.APPROVED, RecipeStatus.PENDING]),
                )
                .order_by(Recipe.created_at)
                .all()
            )

        queued = 0
        for recipe_id, title, description in rows:
            if self.enqueue(recipe_id, title, description):
                queued += 1

        logger.info(
            "Image recovery: %d recipe(s) missing an image, %d queued", len(rows), queued
        )
        return queued

    async def drain(self) -> None:
        """Wait until every queued generation has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding generations."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
