import enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.db import Base

DEFAULT_LLM_BASE_URL = "https://api.openai.com/v1"
DEFAULT_LLM_MODEL = "gpt-4o-mini"


class StorybookStatus(str, enum.Enum):
    GENERATING = "generating"
    COMPLETED = "completed"
    PARTIAL = "partial"  # finished with at least one failed page
    FAILED = "failed"  # the background run itself crashed


class PageStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Storybook(Base):
    __tablename__ = "storybooks"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(sa.String, nullable=False)
    theme: Mapped[str] = mapped_column(sa.Text, nullable=False)
    style: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    provider: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    scene_count: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, default=StorybookStatus.GENERATING.value
    )
    is_favorite: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    created_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now()
    )

    pages = relationship(
        "StorybookPage",
        back_populates="storybook",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="StorybookPage.page_index",
    )


class StorybookPage(Base):
    __tablename__ = "storybook_pages"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    storybook_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("storybooks.id", ondelete="CASCADE"), nullable=False
    )
    page_index: Mapped[int] = mapped_column(sa.Integer, nullable=False)  # 1-based
    text: Mapped[str] = mapped_column(sa.Text, nullable=False)
    image_prompt: Mapped[str] = mapped_column(sa.Text, nullable=True)
    image_url: Mapped[str] = mapped_column(
        sa.Text, nullable=True
    )  # http(s) URL or data: URI
    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, default=PageStatus.PENDING.value
    )

    storybook = relationship("Storybook", back_populates="pages")

    __table_args__ = (
        sa.UniqueConstraint("storybook_id", "page_index", name="unique_page_per_storybook"),
    )


class ProviderConfig(Base):
    """API key and endpoint overrides for one image provider."""

    __tablename__ = "api_keys"
    __mapper_args__ = {"eager_defaults": True}

    provider: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    api_key: Mapped[str] = mapped_column(sa.Text, nullable=False)
    base_url: Mapped[str] = mapped_column(sa.Text, nullable=True)
    model_name: Mapped[str] = mapped_column(sa.String, nullable=True)
    updated_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class LLMConfig(Base):
    """Singleton row (id=1) holding the story-generation LLM settings."""

    __tablename__ = "llm_config"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, default=1)
    api_key: Mapped[str] = mapped_column(sa.Text, nullable=True)
    base_url: Mapped[str] = mapped_column(
        sa.Text, nullable=False, default=DEFAULT_LLM_BASE_URL
    )
    model_name: Mapped[str] = mapped_column(
        sa.String, nullable=False, default=DEFAULT_LLM_MODEL
    )
    updated_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class GeneratedImage(Base):
    """A single illustration produced by the one-shot generate endpoint."""

    __tablename__ = "images"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    story: Mapped[str] = mapped_column(sa.Text, nullable=False)
    style: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    provider: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    image_url: Mapped[str] = mapped_column(sa.Text, nullable=False)
    enhanced_prompt: Mapped[str] = mapped_column(sa.Text, nullable=True)
    revised_prompt: Mapped[str] = mapped_column(sa.Text, nullable=True)
    is_favorite: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    created_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now()
    )
