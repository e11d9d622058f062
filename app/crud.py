import logging
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    DEFAULT_LLM_BASE_URL,
    DEFAULT_LLM_MODEL,
    GeneratedImage,
    LLMConfig,
    PageStatus,
    ProviderConfig,
    Storybook,
    StorybookPage,
    StorybookStatus,
)

logger = logging.getLogger("storybook-app")

LLM_CONFIG_ID = 1


# ---- Storybooks ----
async def create_storybook(
    session: AsyncSession,
    title: str,
    theme: str,
    style: str,
    provider: str,
    scenes: list[dict],
) -> Storybook:
    """Insert a generating storybook plus one pending page per scene, atomically.

    Each scene dict carries keys: index, text, image_prompt.
    """
    storybook = Storybook(
        title=title,
        theme=theme,
        style=style,
        provider=provider,
        scene_count=len(scenes),
        status=StorybookStatus.GENERATING.value,
        is_favorite=False,
    )
    session.add(storybook)
    await session.flush()
    session.add_all(
        [
            StorybookPage(
                storybook_id=storybook.id,
                page_index=scene["index"],
                text=scene["text"],
                image_prompt=scene.get("image_prompt"),
                status=PageStatus.PENDING.value,
            )
            for scene in scenes
        ]
    )
    await session.commit()
    return storybook


async def fetch_storybook_by_id(session: AsyncSession, storybook_id: int) -> Optional[Storybook]:
    q = await session.execute(select(Storybook).where(Storybook.id == storybook_id))
    return q.scalar_one_or_none()


async def list_storybooks(session: AsyncSession, favorites_only: bool = False) -> List[Storybook]:
    query = select(Storybook)
    if favorites_only:
        query = query.where(Storybook.is_favorite.is_(True))
    q = await session.execute(query.order_by(Storybook.created_at.desc(), Storybook.id.desc()))
    return q.scalars().all()


async def fetch_pages_by_storybook_id(
    session: AsyncSession, storybook_id: int
) -> List[StorybookPage]:
    """Fetch all pages of a storybook ordered by page index."""
    q = await session.execute(
        select(StorybookPage)
        .where(StorybookPage.storybook_id == storybook_id)
        .order_by(StorybookPage.page_index)
    )
    return q.scalars().all()


async def update_page_result(
    session: AsyncSession,
    storybook_id: int,
    page_index: int,
    status: PageStatus,
    image_url: Optional[str] = None,
) -> Optional[StorybookPage]:
    """Move a pending page to a terminal state.

    Returns None when the page no longer exists (its storybook was deleted).
    A page that already left `pending` is returned unchanged.
    """
    q = await session.execute(
        select(StorybookPage).where(
            StorybookPage.storybook_id == storybook_id,
            StorybookPage.page_index == page_index,
        )
    )
    page = q.scalar_one_or_none()
    if not page:
        return None
    if page.status != PageStatus.PENDING.value:
        logger.warning(
            f"Page {page_index} of storybook {storybook_id} is already {page.status}; ignoring {status.value}"
        )
        return page
    page.status = status.value
    if image_url is not None:
        page.image_url = image_url
    await session.commit()
    return page


async def update_storybook_status(
    session: AsyncSession, storybook_id: int, status: StorybookStatus
) -> Optional[Storybook]:
    storybook = await fetch_storybook_by_id(session, storybook_id)
    if not storybook:
        return None
    storybook.status = status.value
    await session.commit()
    return storybook


async def toggle_storybook_favorite(session: AsyncSession, storybook_id: int) -> Optional[bool]:
    storybook = await fetch_storybook_by_id(session, storybook_id)
    if not storybook:
        return None
    storybook.is_favorite = not storybook.is_favorite
    await session.commit()
    return storybook.is_favorite


async def delete_storybook(session: AsyncSession, storybook_id: int) -> bool:
    storybook = await fetch_storybook_by_id(session, storybook_id)
    if not storybook:
        return False
    await session.execute(delete(StorybookPage).where(StorybookPage.storybook_id == storybook_id))
    await session.execute(delete(Storybook).where(Storybook.id == storybook_id))
    await session.commit()
    return True


# ---- Provider / LLM configuration ----
async def fetch_provider_config(session: AsyncSession, provider: str) -> Optional[ProviderConfig]:
    q = await session.execute(select(ProviderConfig).where(ProviderConfig.provider == provider))
    return q.scalar_one_or_none()


async def list_configured_providers(session: AsyncSession) -> List[str]:
    q = await session.execute(select(ProviderConfig.provider).order_by(ProviderConfig.provider))
    return list(q.scalars().all())


async def upsert_provider_config(
    session: AsyncSession,
    provider: str,
    api_key: str,
    base_url: Optional[str] = None,
    model_name: Optional[str] = None,
) -> ProviderConfig:
    config = await fetch_provider_config(session, provider)
    if not config:
        config = ProviderConfig(provider=provider)
        session.add(config)
    config.api_key = api_key
    config.base_url = base_url or None
    config.model_name = model_name or None
    await session.commit()
    return config


async def delete_provider_config(session: AsyncSession, provider: str) -> bool:
    result = await session.execute(delete(ProviderConfig).where(ProviderConfig.provider == provider))
    await session.commit()
    return result.rowcount > 0


async def fetch_llm_config(session: AsyncSession) -> Optional[LLMConfig]:
    q = await session.execute(select(LLMConfig).where(LLMConfig.id == LLM_CONFIG_ID))
    return q.scalar_one_or_none()


async def upsert_llm_config(
    session: AsyncSession,
    api_key: str,
    base_url: Optional[str] = None,
    model_name: Optional[str] = None,
) -> LLMConfig:
    config = await fetch_llm_config(session)
    if not config:
        config = LLMConfig(id=LLM_CONFIG_ID)
        session.add(config)
    config.api_key = api_key
    config.base_url = base_url or DEFAULT_LLM_BASE_URL
    config.model_name = model_name or DEFAULT_LLM_MODEL
    await session.commit()
    return config


# ---- Single generated images ----
async def create_image(
    session: AsyncSession,
    story: str,
    style: str,
    provider: str,
    image_url: str,
    enhanced_prompt: Optional[str] = None,
    revised_prompt: Optional[str] = None,
) -> GeneratedImage:
    image = GeneratedImage(
        story=story,
        style=style,
        provider=provider,
        image_url=image_url,
        enhanced_prompt=enhanced_prompt,
        revised_prompt=revised_prompt,
        is_favorite=False,
    )
    session.add(image)
    await session.commit()
    return image


async def fetch_image_by_id(session: AsyncSession, image_id: int) -> Optional[GeneratedImage]:
    q = await session.execute(select(GeneratedImage).where(GeneratedImage.id == image_id))
    return q.scalar_one_or_none()


async def list_images(session: AsyncSession, favorites_only: bool = False) -> List[GeneratedImage]:
    query = select(GeneratedImage)
    if favorites_only:
        query = query.where(GeneratedImage.is_favorite.is_(True))
    q = await session.execute(
        query.order_by(GeneratedImage.created_at.desc(), GeneratedImage.id.desc())
    )
    return q.scalars().all()


async def toggle_image_favorite(session: AsyncSession, image_id: int) -> Optional[bool]:
    image = await fetch_image_by_id(session, image_id)
    if not image:
        return None
    image.is_favorite = not image.is_favorite
    await session.commit()
    return image.is_favorite


async def delete_image(session: AsyncSession, image_id: int) -> bool:
    result = await session.execute(delete(GeneratedImage).where(GeneratedImage.id == image_id))
    await session.commit()
    return result.rowcount > 0
