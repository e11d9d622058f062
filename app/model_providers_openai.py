"""
OpenAI-compatible image providers (OpenAI DALL-E, Doubao, Zhipu CogView).

All three expose POST {base}/images/generations with Bearer auth and answer
with {data: [{url | b64_json}]}.
"""

from typing import Any, Dict

import httpx

from app.model_providers import GenerationRequest, ProviderId, SyncImageProvider


class OpenAICompatibleImageProvider(SyncImageProvider):
    def _endpoint(self, request: GenerationRequest, model: str) -> str:
        return f"{self.resolve_base_url(request.base_url)}/images/generations"

    def _payload(self, request: GenerationRequest, model: str) -> Dict[str, Any]:
        return {"model": model, "prompt": request.prompt, "n": 1, "size": request.size}


class OpenAIImageProvider(OpenAICompatibleImageProvider):
    """OpenAI DALL-E and any proxy speaking the same API"""

    default_base_url = "https://api.openai.com/v1"
    default_model = "dall-e-3"
    supported_models = ("dall-e-3", "dall-e-2", "gpt-image-1")
    allow_custom_models_with_base_url = True
    echo_prompt_as_revised = False

    def __init__(self, http_client: httpx.AsyncClient):
        super().__init__(ProviderId.OPENAI.value, http_client, display_name="OpenAI")

    def _payload(self, request: GenerationRequest, model: str) -> Dict[str, Any]:
        payload = super()._payload(request, model)
        if model == "dall-e-3":
            payload["quality"] = "hd"
        return payload


class DoubaoImageProvider(OpenAICompatibleImageProvider):
    """ByteDance Doubao (Volcengine Ark) image generation"""

    default_base_url = "https://ark.cn-beijing.volces.com/api/v3"
    default_model = "doubao-seedream-3-0-t2i-250415"

    def __init__(self, http_client: httpx.AsyncClient):
        super().__init__(ProviderId.DOUBAO.value, http_client, display_name="Doubao")

    def _payload(self, request: GenerationRequest, model: str) -> Dict[str, Any]:
        width, height = request.dimensions()
        payload = super()._payload(request, model)
        payload.update({"width": width, "height": height})
        return payload


class ZhipuImageProvider(OpenAICompatibleImageProvider):
    """Zhipu CogView"""

    default_base_url = "https://open.bigmodel.cn/api/paas/v4"
    default_model = "cogview-3-plus"

    def __init__(self, http_client: httpx.AsyncClient):
        super().__init__(ProviderId.ZHIPU.value, http_client, display_name="Zhipu")

    def _payload(self, request: GenerationRequest, model: str) -> Dict[str, Any]:
        return {"model": model, "prompt": request.prompt, "size": request.size}
