"""
Tongyi Wanxiang (Alibaba DashScope) provider implementation.

DashScope text-to-image is asynchronous: the submit call returns a task id
and the result is read from /tasks/{task_id} once task_status is SUCCEEDED.
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


class TongyiImageProvider(TaskImageProvider):
    default_base_url = "https://dashscope.aliyuncs.com/api/v1"
    default_model = "wanx-v1"
    supported_models = ("wanx-v1", "wanx2.0-t2i-turbo", "wanx2.1-t2i-turbo", "wanx2.1-t2i-plus")

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
    ):
        super().__init__(
            ProviderId.TONGYI.value,
            http_client,
            display_name="Tongyi Wanxiang",
            poll_interval=poll_interval,
            max_attempts=max_attempts,
        )

    async def _submit(self, request: GenerationRequest, model: str) -> str:
        base = self.resolve_base_url(request.base_url)
        width, height = request.dimensions()
        headers = {
            "Content-Type": "application/json",
            "X-DashScope-Async": "enable",
            **self._auth_headers(request.api_key),
        }
        payload = await self._send(
            "POST",
            f"{base}/services/aigc/text2image/image-synthesis",
            headers,
            {
                "model": model,
                "input": {"prompt": request.prompt},
                # DashScope spells sizes WIDTH*HEIGHT
                "parameters": {"size": f"{width}*{height}", "n": 1},
            },
        )
        task_id = (payload.get("output") or {}).get("task_id")
        if not task_id:
            raise UnrecognizedResponseShapeError(
                f"{self.display_name} did not return a task id", provider=self.provider_name
            )
        return f"{base}/tasks/{task_id}"

    def _task_status(self, payload: Dict[str, Any]) -> Optional[str]:
        return (payload.get("output") or {}).get("task_status")

    def _task_result(self, payload: Dict[str, Any], request: GenerationRequest) -> GenerationResult:
        results = (payload.get("output") or {}).get("results") or []
        first = results[0] if results and isinstance(results[0], dict) else {}
        if not first.get("url"):
            raise UnrecognizedResponseShapeError(
                first.get("message") or f"{self.display_name} task finished without an image",
                provider=self.provider_name,
            )
        return GenerationResult(
            url=first["url"],
            revised_prompt=first.get("actual_prompt") or first.get("prompt") or request.prompt,
        )
