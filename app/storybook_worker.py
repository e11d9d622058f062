"""
Storybook generation.

Creating a storybook writes the story synchronously (the caller waits for the
LLM), stores the book with one pending page per scene, and then illustrates
the pages in a background task. Pages are illustrated one at a time in page
order; a failing page is marked failed and the loop moves on to the next one.
"""

import asyncio
import logging
import time
from typing import List, Optional, Set

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.crud import (
    create_storybook,
    fetch_llm_config,
    fetch_pages_by_storybook_id,
    fetch_provider_config,
    update_page_result,
    update_storybook_status,
)
from app.errors import ConfigurationMissingError, ValidationError
from app.image_dispatcher import DEFAULT_STYLE, GenerationDispatcher
from app.models import PageStatus, Storybook, StorybookStatus
from app.progress import aggregate_status
from app.story_generator import LLMSettings, Scene, StoryGenerator
from app.utils import log_memory_usage

logger = logging.getLogger("storybook-app")

MIN_SCENES = 2
MAX_SCENES = 8


class ProviderSettings(BaseModel):
    """Snapshot of an image provider's stored configuration"""

    provider: str
    api_key: str
    base_url: Optional[str] = None
    model_name: Optional[str] = None


class StorybookOrchestrator:
    def __init__(
        self,
        session_factory,
        story_generator: StoryGenerator,
        dispatcher: GenerationDispatcher,
    ):
        self.session_factory = session_factory
        self.story_generator = story_generator
        self.dispatcher = dispatcher
        self._tasks: Set[asyncio.Task] = set()

    @staticmethod
    def validate(theme: str, scene_count: int) -> str:
        theme = (theme or "").strip()
        if not theme:
            raise ValidationError("Please enter a storybook theme")
        if isinstance(scene_count, bool) or not isinstance(scene_count, int):
            raise ValidationError("sceneCount must be an integer")
        if scene_count < MIN_SCENES or scene_count > MAX_SCENES:
            raise ValidationError(f"sceneCount must be between {MIN_SCENES} and {MAX_SCENES}")
        return theme

    async def create_storybook(
        self,
        session: AsyncSession,
        theme: str,
        scene_count: int,
        style: str = DEFAULT_STYLE,
        provider: str = "openai",
    ) -> Storybook:
        """Write the story, store it with pending pages and start illustrating.

        Returns as soon as the rows exist; nothing is stored if any step up to
        and including story generation fails.
        """
        theme = self.validate(theme, scene_count)
        style = style or DEFAULT_STYLE
        # Unknown providers are rejected before paying for the story
        self.dispatcher.registry.get_provider(provider)

        llm_row = await fetch_llm_config(session)
        if not llm_row or not llm_row.api_key:
            raise ConfigurationMissingError(
                "LLM", "Please configure the story generation LLM API key in settings first"
            )
        provider_row = await fetch_provider_config(session, provider)
        if not provider_row:
            raise ConfigurationMissingError(provider)
        provider_settings = ProviderSettings(
            provider=provider,
            api_key=provider_row.api_key,
            base_url=provider_row.base_url,
            model_name=provider_row.model_name,
        )

        logger.info(f"Creating storybook: theme={theme!r}, scene_count={scene_count}, style={style}, provider={provider}")
        story = await self.story_generator.generate_story(
            theme,
            scene_count,
            LLMSettings(
                api_key=llm_row.api_key,
                base_url=llm_row.base_url,
                model_name=llm_row.model_name,
            ),
        )

        storybook = await create_storybook(
            session,
            title=story.title,
            theme=theme,
            style=style,
            provider=provider,
            scenes=[scene.model_dump() for scene in story.scenes],
        )
        logger.info(f"Storybook {storybook.id}: stored '{story.title}' with {len(story.scenes)} pending pages")

        self.start_image_generation(storybook.id, story.scenes, style, provider_settings)
        return storybook

    def start_image_generation(
        self,
        storybook_id: int,
        scenes: List[Scene],
        style: str,
        provider: ProviderSettings,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self.generate_storybook_images(storybook_id, scenes, style, provider),
            name=f"storybook-{storybook_id}-images",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def generate_storybook_images(
        self,
        storybook_id: int,
        scenes: List[Scene],
        style: str,
        provider: ProviderSettings,
    ) -> Optional[StorybookStatus]:
        """Illustrate every page in order and return the final storybook status.

        Returns None when the storybook was deleted while its pages were being
        illustrated. Never raises on generation errors. A cancelled run marks the
        storybook failed before the cancellation propagates.
        """
        log_memory_usage(f"storybook_worker.generate_storybook_images[{storybook_id}]: start")
        start_time = time.monotonic()
        try:
            for scene in sorted(scenes, key=lambda s: s.index):
                still_exists = await self._generate_page(storybook_id, scene, style, provider)
                if not still_exists:
                    logger.warning(f"Storybook {storybook_id}: deleted during generation, stopping")
                    return None
            status = await self._finalize(storybook_id)
        except asyncio.CancelledError:
            logger.warning(f"Storybook {storybook_id}: image generation cancelled, marking failed")
            await self._mark_failed(storybook_id)
            raise
        except Exception:
            logger.exception(f"Storybook {storybook_id}: image generation crashed")
            await self._mark_failed(storybook_id)
            return StorybookStatus.FAILED

        elapsed = time.monotonic() - start_time
        logger.info(f"Storybook {storybook_id}: image generation finished as {status} in {elapsed:.1f}s")
        log_memory_usage(f"storybook_worker.generate_storybook_images[{storybook_id}]: done")
        return status

    async def _generate_page(
        self, storybook_id: int, scene: Scene, style: str, provider: ProviderSettings
    ) -> bool:
        """Illustrate one page and record the outcome; False if the page is gone."""
        logger.info(f"Storybook {storybook_id}: generating page {scene.index}")
        prompt = self.dispatcher.scene_prompt(scene.image_prompt or scene.text, style)
        try:
            request = self.dispatcher.build_request(
                provider.provider,
                prompt,
                api_key=provider.api_key,
                base_url=provider.base_url,
                model=provider.model_name,
            )
            result = await self.dispatcher.dispatch(provider.provider, request)
        except Exception as e:
            logger.error(f"Storybook {storybook_id}: page {scene.index} failed: {e}")
            return await self._record_page(storybook_id, scene.index, PageStatus.FAILED)

        logger.info(f"Storybook {storybook_id}: page {scene.index} completed")
        return await self._record_page(storybook_id, scene.index, PageStatus.COMPLETED, result.url)

    async def _record_page(
        self,
        storybook_id: int,
        page_index: int,
        status: PageStatus,
        image_url: Optional[str] = None,
    ) -> bool:
        async with self.session_factory() as session:
            page = await update_page_result(session, storybook_id, page_index, status, image_url)
        if page is None:
            logger.warning(f"Storybook {storybook_id}: page {page_index} no longer exists, dropping {status.value} result")
            return False
        return True

    async def _finalize(self, storybook_id: int) -> Optional[StorybookStatus]:
        async with self.session_factory() as session:
            pages = await fetch_pages_by_storybook_id(session, storybook_id)
            status = aggregate_status(page.status for page in pages)
            if status is StorybookStatus.GENERATING:
                logger.warning(f"Storybook {storybook_id}: pages still pending after generation, marking partial")
                status = StorybookStatus.PARTIAL
            storybook = await update_storybook_status(session, storybook_id, status)
        if storybook is None:
            logger.warning(f"Storybook {storybook_id}: deleted before it could be finalized")
            return None
        return status

    async def _mark_failed(self, storybook_id: int) -> None:
        try:
            async with self.session_factory() as session:
                await update_storybook_status(session, storybook_id, StorybookStatus.FAILED)
        except Exception:
            logger.exception(f"Storybook {storybook_id}: could not mark storybook as failed")

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def wait_for_pending(self) -> None:
        """Wait until every background generation task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_for_pending()
