"""
Stability AI provider implementation for the image provider system
"""

from typing import Any, Dict

import httpx

from app.model_providers import (
    OPENAI_DATA,
    SIMPLE_IMAGES,
    STABILITY_ARTIFACTS,
    GenerationRequest,
    ProviderId,
    SyncImageProvider,
)


class StabilityImageProvider(SyncImageProvider):
    default_base_url = "https://api.stability.ai/v1"
    default_model = "stable-diffusion-xl-1024-v1-0"
    supported_models = ("stable-diffusion-xl-1024-v1-0", "stable-diffusion-v1-6")
    response_shapes = (STABILITY_ARTIFACTS, OPENAI_DATA, SIMPLE_IMAGES)

    def __init__(self, http_client: httpx.AsyncClient):
        super().__init__(ProviderId.STABILITY.value, http_client, display_name="Stability AI")

    def _endpoint(self, request: GenerationRequest, model: str) -> str:
        return f"{self.resolve_base_url(request.base_url)}/generation/{model}/text-to-image"

    def _headers(self, api_key: str) -> Dict[str, str]:
        headers = super()._headers(api_key)
        headers["Accept"] = "application/json"
        return headers

    def _payload(self, request: GenerationRequest, model: str) -> Dict[str, Any]:
        width, height = request.dimensions()
        return {
            "text_prompts": [{"text": request.prompt}],
            "cfg_scale": 7,
            "width": width,
            "height": height,
            "samples": 1,
            "steps": 30,
        }
