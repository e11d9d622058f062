"""Read-only progress snapshots and the storybook status rollup."""

import math
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from app.crud import fetch_pages_by_storybook_id, fetch_storybook_by_id
from app.errors import NotFoundError
from app.models import PageStatus, StorybookStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Progress(CamelModel):
    total: int
    completed: int
    percent: int


class PageProgress(CamelModel):
    index: int
    status: str
    image_url: Optional[str] = None


class StatusSnapshot(CamelModel):
    id: int
    status: str
    progress: Progress
    pages: List[PageProgress]


def aggregate_status(page_statuses: Iterable[str]) -> StorybookStatus:
    """Roll page states up into the storybook status.

    Any page still pending means generation is running; otherwise a single
    failed page makes the book partial.
    """
    statuses = list(page_statuses)
    if any(status == PageStatus.PENDING.value for status in statuses):
        return StorybookStatus.GENERATING
    if any(status == PageStatus.FAILED.value for status in statuses):
        return StorybookStatus.PARTIAL
    return StorybookStatus.COMPLETED


def completion_percent(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    # Half-up rounding, so 1 of 8 reads as 13%
    return int(math.floor(100 * completed / total + 0.5))


async def get_status(session: AsyncSession, storybook_id: int) -> StatusSnapshot:
    storybook = await fetch_storybook_by_id(session, storybook_id)
    if not storybook:
        raise NotFoundError("Storybook", storybook_id)

    pages = await fetch_pages_by_storybook_id(session, storybook_id)
    completed = sum(1 for page in pages if page.status == PageStatus.COMPLETED.value)
    return StatusSnapshot(
        id=storybook.id,
        status=storybook.status,
        progress=Progress(
            total=len(pages),
            completed=completed,
            percent=completion_percent(completed, len(pages)),
        ),
        pages=[
            PageProgress(index=page.page_index, status=page.status, image_url=page.image_url)
            for page in pages
        ],
    )
