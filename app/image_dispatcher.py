"""
Prompt enhancement and provider routing.

Every illustration prompt gets the same child-safety and quality modifiers so
that whatever a user types ends up as a gentle picture-book scene.
"""

import logging
from typing import Dict, Optional

import pydantic

from app.errors import ValidationError
from app.model_providers import (
    DEFAULT_IMAGE_SIZE,
    GenerationRequest,
    GenerationResult,
    ProviderRegistry,
)

logger = logging.getLogger("storybook-app")

MAX_SCENE_LENGTH = 200
DEFAULT_STYLE = "cartoon"

# Descriptive phrase appended to every prompt in that style
STYLES: Dict[str, Dict[str, str]] = {
    "cartoon": {
        "name": "Cute Cartoon",
        "prompt": "cute cartoon style, bright vivid colors, simple rounded shapes, child-friendly, kawaii, adorable characters, soft lighting",
    },
    "watercolor": {
        "name": "Watercolor Storybook",
        "prompt": "watercolor illustration, soft pastel colors, storybook style, gentle brushstrokes, dreamy atmosphere, children book illustration",
    },
    "sketch": {
        "name": "Simple Sketch",
        "prompt": "simple line drawing, minimal colors, black outline, easy to understand, clean design, children doodle style",
    },
    "pixar": {
        "name": "3D Animation",
        "prompt": "pixar style 3D render, colorful, friendly characters, high quality, smooth textures, disney-like animation style",
    },
    "ghibli": {
        "name": "Ghibli Style",
        "prompt": "studio ghibli style, anime illustration, warm colors, detailed background, magical atmosphere, miyazaki style",
    },
}

CHILD_SAFE_MODIFIERS = [
    "child-friendly",
    "safe for kids",
    "age-appropriate",
    "no violence",
    "no scary elements",
    "gentle",
    "wholesome",
    "cute",
    "friendly",
]

QUALITY_MODIFIERS = [
    "high quality",
    "detailed",
    "beautiful illustration",
    "vibrant colors",
    "professional artwork",
]

SCENE_SAFETY_CLAUSE = "child-friendly, safe for kids, high quality illustration"


def get_style_prompt(style_id: str) -> str:
    return STYLES.get(style_id, STYLES[DEFAULT_STYLE])["prompt"]


def enhance_prompt(story: str, style_id: str) -> str:
    """Turn free story text into an illustration prompt (deterministic)."""
    scene = story.strip()
    if len(scene) > MAX_SCENE_LENGTH:
        scene = scene[:MAX_SCENE_LENGTH] + "..."

    parts = [
        f"Illustration of: {scene}",
        get_style_prompt(style_id),
        ", ".join(CHILD_SAFE_MODIFIERS),
        ", ".join(QUALITY_MODIFIERS[:3]),
    ]
    return ", ".join(parts)


def build_scene_prompt(image_prompt: str, style_id: str) -> str:
    """Prompt for one storybook page: the scene description plus style and safety clause."""
    return f"{image_prompt}, {get_style_prompt(style_id)}, {SCENE_SAFETY_CLAUSE}"


class GenerationDispatcher:
    """Routes generation requests to the provider registered for an id"""

    def __init__(self, registry: ProviderRegistry, default_size: str = DEFAULT_IMAGE_SIZE):
        self.registry = registry
        self.default_size = default_size

    def enhance(self, story: str, style_id: str) -> str:
        return enhance_prompt(story, style_id)

    def scene_prompt(self, image_prompt: str, style_id: str) -> str:
        return build_scene_prompt(image_prompt, style_id)

    def build_request(
        self,
        provider_id: str,
        prompt: str,
        api_key: str,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        size: Optional[str] = None,
    ) -> GenerationRequest:
        try:
            return GenerationRequest(
                prompt=prompt,
                provider=provider_id,
                api_key=api_key or "",
                base_url=base_url or None,
                model=model or None,
                size=size or self.default_size,
            )
        except pydantic.ValidationError as e:
            message = "; ".join(err["msg"] for err in e.errors())
            raise ValidationError(f"Invalid generation request: {message}") from e

    async def dispatch(self, provider_id: str, request: GenerationRequest) -> GenerationResult:
        provider = self.registry.get_provider(provider_id)
        return await provider.generate(request)
