"""
Gemini provider implementation for the image provider system
"""

import re
from typing import Any, Dict

import httpx

from app.model_providers import (
    GEMINI_CANDIDATES,
    IMAGEN_PREDICTIONS,
    OPENAI_DATA,
    SIMPLE_IMAGES,
    GenerationRequest,
    ProviderId,
    SyncImageProvider,
)

API_VERSION_PATTERN = re.compile(r"/v1(beta)?(/|$)")


class GeminiImageProvider(SyncImageProvider):
    """Gemini image output through the generateContent endpoint"""

    default_base_url = "https://generativelanguage.googleapis.com"
    default_model = "gemini-2.0-flash-exp"
    # Native candidates first, then Imagen and the shapes proxies tend to use
    response_shapes = (GEMINI_CANDIDATES, IMAGEN_PREDICTIONS, SIMPLE_IMAGES, OPENAI_DATA)

    def __init__(self, http_client: httpx.AsyncClient):
        super().__init__(ProviderId.GEMINI.value, http_client, display_name="Gemini")

    def resolve_base_url(self, base_url: str = None) -> str:
        base = super().resolve_base_url(base_url)
        if not API_VERSION_PATTERN.search(base):
            base = f"{base}/v1beta"
        return base

    def _endpoint(self, request: GenerationRequest, model: str) -> str:
        return f"{self.resolve_base_url(request.base_url)}/models/{model}:generateContent"

    def _headers(self, api_key: str) -> Dict[str, str]:
        headers = super()._headers(api_key)
        # Google reads x-goog-api-key; some proxies only look at the bearer token
        headers["x-goog-api-key"] = api_key
        return headers

    def _payload(self, request: GenerationRequest, model: str) -> Dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": request.prompt}]}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "temperature": 1,
                "topP": 0.95,
                "topK": 40,
                "maxOutputTokens": 8192,
            },
        }
