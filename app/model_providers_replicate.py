"""
Replicate provider implementation for the image provider system
"""

from typing import Any, Dict, Optional

import httpx

from app.errors import UnrecognizedResponseShapeError
from app.model_providers import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_POLL_MAX_ATTEMPTS,
    GenerationRequest,
    GenerationResult,
    ProviderId,
    TaskImageProvider,
)

MODEL_VERSIONS = {
    "flux-schnell": "black-forest-labs/flux-schnell",
    "flux-dev": "black-forest-labs/flux-dev",
    "sdxl": "stability-ai/sdxl:39ed52f2a78e934b3ba6e2a89f5b1c712de7dfea535525255b1aa35c5565e08b",
}


class ReplicateImageProvider(TaskImageProvider):
    default_base_url = "https://api.replicate.com/v1"
    default_model = "flux-schnell"
    supported_models = tuple(MODEL_VERSIONS)

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
    ):
        super().__init__(
            ProviderId.REPLICATE.value,
            http_client,
            display_name="Replicate",
            poll_interval=poll_interval,
            max_attempts=max_attempts,
        )

    def _auth_headers(self, api_key: str) -> Dict[str, str]:
        return {"Authorization": f"Token {api_key}"}

    async def _submit(self, request: GenerationRequest, model: str) -> str:
        base = self.resolve_base_url(request.base_url)
        width, height = request.dimensions()
        prediction = await self._send(
            "POST",
            f"{base}/predictions",
            {"Content-Type": "application/json", **self._auth_headers(request.api_key)},
            {
                "version": MODEL_VERSIONS[model],
                "input": {"prompt": request.prompt, "width": width, "height": height},
            },
        )
        poll_url = (prediction.get("urls") or {}).get("get")
        if not poll_url and prediction.get("id"):
            poll_url = f"{base}/predictions/{prediction['id']}"
        if not poll_url:
            raise UnrecognizedResponseShapeError(
                f"{self.display_name} did not return a prediction to poll",
                provider=self.provider_name,
            )
        return poll_url

    def _task_status(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("status")

    def _task_result(self, payload: Dict[str, Any], request: GenerationRequest) -> GenerationResult:
        output = payload.get("output")
        image_url = output[0] if isinstance(output, list) and output else output
        if not isinstance(image_url, str) or not image_url:
            raise UnrecognizedResponseShapeError(
                f"{self.display_name} prediction succeeded without an output image",
                provider=self.provider_name,
            )
        return GenerationResult(url=image_url, revised_prompt=None)
