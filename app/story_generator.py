"""
Story text generation through an OpenAI-compatible chat completion endpoint.

The model is asked for strict JSON but does not always deliver it, so the reply
is cut down to its outermost object, parsed, repaired if needed, and validated
into a GeneratedStory.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

import openai
import pydantic
from pydantic import BaseModel, ConfigDict, Field

from app.errors import StoryFormatError, StoryGenerationError, StoryParseError
from app.json_repair import extract_json_object, repair_json
from app.models import DEFAULT_LLM_BASE_URL, DEFAULT_LLM_MODEL
from app.settings import AppConfig

logger = logging.getLogger("storybook-app")

SNIPPET_LENGTH = 200

SYSTEM_MESSAGE = "You are a professional children's picture book author."

STORY_PROMPT_TEMPLATE = """You are a professional children's picture book author. Write a short story about "{theme}" for children under 3 years old.

Requirements:
1. The story must be warm, simple, fun and positive
2. Use very simple language that toddlers can follow
3. Split the story into exactly {scene_count} scenes/pages
4. Each scene has 2-3 sentences
5. Give the whole story a catchy title
6. Write the title and scene text in the same language as the theme

Reply strictly in the following JSON format and nothing else:
{{
  "title": "Story title",
  "scenes": [
    {{
      "index": 1,
      "text": "Story text of scene 1",
      "imagePrompt": "English description of the illustration for this scene: characters, action, setting, mood"
    }}
  ]
}}

Note: imagePrompt must be in English and describe the picture in detail so it can be used for AI image generation."""


class Scene(BaseModel):
    index: int
    text: str
    image_prompt: str


class GeneratedStory(BaseModel):
    title: str
    scenes: List[Scene]


class LLMSettings(BaseModel):
    """Snapshot of the stored LLM configuration"""

    api_key: Optional[str] = None
    base_url: str = DEFAULT_LLM_BASE_URL
    model_name: str = DEFAULT_LLM_MODEL


class _RawScene(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(min_length=1)
    image_prompt: Optional[str] = Field(default=None, alias="imagePrompt")


class _RawStory(BaseModel):
    title: str = Field(min_length=1)
    scenes: List[_RawScene] = Field(min_length=1)


def build_story_prompt(theme: str, scene_count: int) -> str:
    return STORY_PROMPT_TEMPLATE.format(theme=theme, scene_count=scene_count)


def parse_story_payload(content: str) -> Dict[str, Any]:
    """Extract and decode the JSON object in an LLM reply, repairing it if needed."""
    candidate = extract_json_object(content or "")
    if candidate is None:
        raise StoryParseError(
            f"No JSON object found in story response: {(content or '')[:SNIPPET_LENGTH]}",
            snippet=(content or "")[:SNIPPET_LENGTH],
        )
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as first_error:
        logger.warning(f"Story JSON invalid ({first_error}), attempting repair")

    repaired = repair_json(candidate)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError as e:
        raise StoryParseError(
            f"Could not parse story JSON ({e.msg}): {candidate[:SNIPPET_LENGTH]}",
            snippet=candidate[:SNIPPET_LENGTH],
        )


def validate_story(payload: Any, scene_count: Optional[int] = None) -> GeneratedStory:
    """Validate the decoded payload and renumber scenes 1..n in the order given."""
    if not isinstance(payload, dict):
        raise StoryFormatError("Story response is not a JSON object")
    try:
        raw = _RawStory.model_validate(payload)
    except pydantic.ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise StoryFormatError(f"Story response has an invalid format ({fields})") from e
    if not raw.title.strip():
        raise StoryFormatError("Story response has an empty title")

    raw_scenes = raw.scenes
    if scene_count is not None and len(raw_scenes) > scene_count:
        logger.warning(f"LLM returned {len(raw_scenes)} scenes, keeping the first {scene_count}")
        raw_scenes = raw_scenes[:scene_count]

    scenes = [
        Scene(
            index=position,
            text=scene.text.strip(),
            image_prompt=(scene.image_prompt or "").strip() or scene.text.strip(),
        )
        for position, scene in enumerate(raw_scenes, start=1)
    ]
    return GeneratedStory(title=raw.title.strip(), scenes=scenes)


class StoryGenerator:
    """Writes a scene-by-scene story for a theme"""

    def __init__(self, temperature: float = None, max_tokens: int = None):
        self.temperature = (
            temperature if temperature is not None else AppConfig.get_float("llm_temperature")
        )
        self.max_tokens = max_tokens if max_tokens is not None else AppConfig.get_int("llm_max_tokens")

    def _client(self, config: LLMSettings) -> openai.AsyncOpenAI:
        return openai.AsyncOpenAI(
            api_key=config.api_key,
            base_url=(config.base_url or DEFAULT_LLM_BASE_URL).rstrip("/"),
            max_retries=0,
        )

    async def generate_story(
        self, theme: str, scene_count: int, config: Optional[LLMSettings]
    ) -> GeneratedStory:
        if config is None or not config.api_key:
            raise StoryGenerationError("The story LLM is not configured; add its API key in settings")

        model = config.model_name or DEFAULT_LLM_MODEL
        prompt = build_story_prompt(theme, scene_count)
        start_time = time.time()
        logger.info(f"story_generation request: model={model}, theme={theme!r}, scene_count={scene_count}")

        content = await self._complete(config, model, prompt)
        story = validate_story(parse_story_payload(content), scene_count)

        logger.info(
            f"story_generation success: model={model}, duration={time.time() - start_time:.2f}s, "
            f"title={story.title!r}, scenes={len(story.scenes)}"
        )
        return story

    async def _complete(self, config: LLMSettings, model: str, prompt: str) -> str:
        client = self._client(config)
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": SYSTEM_MESSAGE},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.APIStatusError as e:
            logger.error(f"story_generation error: model={model}, status={e.status_code}, error={e}")
            raise StoryGenerationError(_vendor_message(e) or f"Story generation failed (HTTP {e.status_code})") from e
        except openai.APIError as e:
            logger.error(f"story_generation error: model={model}, error={e}")
            raise StoryGenerationError(f"Unable to reach the story LLM: {e}") from e
        finally:
            await client.close()

        choices = None if isinstance(response, str) else getattr(response, "choices", None)
        if not choices:
            snippet = str(response)[:SNIPPET_LENGTH]
            logger.error(f"story_generation error: model={model}, unexpected reply={snippet!r}")
            raise StoryParseError(f"Story response was not a chat completion: {snippet}", snippet=snippet)
        content = choices[0].message.content
        if not content or not content.strip():
            raise StoryParseError("Story response was empty")
        return content


def _vendor_message(error: "openai.APIStatusError") -> Optional[str]:
    body = error.body
    if isinstance(body, dict):
        nested = body.get("error") if isinstance(body.get("error"), dict) else body
        message = nested.get("message")
        if isinstance(message, str) and message:
            return message
    return getattr(error, "message", None)
