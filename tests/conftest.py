"""Pytest configuration for storybook tests."""

import json

import httpx
import pytest

from app.db import build_engine, build_session_factory, init_models
from app.story_generator import GeneratedStory, Scene


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio to use asyncio only."""
    return "asyncio"


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'storybook.sqlite'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def make_http_client():
    """Build an httpx.AsyncClient whose traffic is answered by `handler`."""

    def _make(handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _make


def request_json(request: httpx.Request):
    return json.loads(request.content) if request.content else None


def make_story(scene_count: int, title: str = "小猫学游泳") -> GeneratedStory:
    return GeneratedStory(
        title=title,
        scenes=[
            Scene(index=i, text=f"第{i}页：小猫在河边。", image_prompt=f"kitten by the river, page {i}")
            for i in range(1, scene_count + 1)
        ],
    )


def openai_image_handler(requests, fail_pages=()):
    """OpenAI-shaped vendor that fails with HTTP 500 for the given page numbers."""

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        prompt = request_json(request)["prompt"]
        for page in fail_pages:
            if f"page {page}," in prompt:
                return httpx.Response(500, json={"error": {"message": "Internal server error"}})
        page_marker = prompt.split(",")[1].strip()
        return httpx.Response(
            200,
            json={"data": [{"url": f"https://images.example.com/{page_marker.replace(' ', '-')}.png"}]},
        )

    return handler
