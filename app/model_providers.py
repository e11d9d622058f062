"""
Image provider system for the storybook generator.

Every vendor adapter turns a common GenerationRequest into the vendor's wire
format and normalises whatever comes back into a GenerationResult. Two
integration shapes are supported:

- SyncImageProvider: one POST, the image (URL or base64) is in the response.
- TaskImageProvider: one POST submits a job, then the job is polled at a fixed
  interval until it succeeds, fails or runs out of attempts.
"""

import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Iterable, NamedTuple, Optional, Tuple

import httpx
from pydantic import BaseModel, field_validator

from app.errors import (
    EmptyResponseError,
    GenerationTimeoutError,
    MalformedResponseError,
    ProviderError,
    UnknownProviderError,
    UnrecognizedResponseShapeError,
)
from app.settings import AppConfig

logger = logging.getLogger("storybook-app")

SIZE_PATTERN = re.compile(r"^\d+x\d+$")
DEFAULT_IMAGE_SIZE = "1024x1024"
SNIPPET_LENGTH = 200
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_POLL_MAX_ATTEMPTS = 60


class ProviderId(str, Enum):
    """Image vendors the registry knows about"""

    OPENAI = "openai"
    DOUBAO = "doubao"
    ZHIPU = "zhipu"
    GEMINI = "gemini"
    STABILITY = "stabilityai"
    TONGYI = "tongyi"
    REPLICATE = "replicate"


class GenerationRequest(BaseModel):
    prompt: str
    provider: str
    api_key: str
    base_url: Optional[str] = None
    model: Optional[str] = None
    size: str = DEFAULT_IMAGE_SIZE

    @field_validator("api_key")
    @classmethod
    def _api_key_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("api_key must not be empty")
        return value.strip()

    @field_validator("size")
    @classmethod
    def _size_is_width_x_height(cls, value: str) -> str:
        if not SIZE_PATTERN.match(value):
            raise ValueError(f"size must look like WIDTHxHEIGHT, got {value!r}")
        return value

    def dimensions(self) -> Tuple[int, int]:
        """Split "WIDTHxHEIGHT" into integers for vendors that want them apart."""
        width, height = self.size.split("x")
        return int(width), int(height)


class GenerationResult(BaseModel):
    url: str
    revised_prompt: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _url_not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("url must not be empty")
        return value


# --- Response shapes ---
# Each parser returns a GenerationResult when the payload has its shape and
# None otherwise. Providers try their shapes in order; no match at all is
# reported as UnrecognizedResponseShapeError.


class ResponseShape(NamedTuple):
    name: str
    parse: Callable[[Dict[str, Any]], Optional[GenerationResult]]


def data_uri(encoded: str, mime_type: Optional[str] = None) -> str:
    return f"data:{mime_type or 'image/png'};base64,{encoded}"


def _first_item(payload: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    items = payload.get(key)
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


def parse_openai_data(payload: Dict[str, Any]) -> Optional[GenerationResult]:
    """{data: [{url | b64_json, revised_prompt?}]}"""
    item = _first_item(payload, "data")
    if not item:
        return None
    if item.get("url"):
        return GenerationResult(url=item["url"], revised_prompt=item.get("revised_prompt"))
    if item.get("b64_json"):
        return GenerationResult(
            url=data_uri(item["b64_json"]), revised_prompt=item.get("revised_prompt")
        )
    return None


def parse_gemini_candidates(payload: Dict[str, Any]) -> Optional[GenerationResult]:
    """{candidates: [{content: {parts: [{inlineData | fileData | image}]}}]}"""
    candidate = _first_item(payload, "candidates")
    if not candidate:
        return None
    content = candidate.get("content") or {}
    for part in content.get("parts") or []:
        if not isinstance(part, dict):
            continue
        inline = part.get("inlineData") or part.get("inline_data")
        if isinstance(inline, dict) and inline.get("data"):
            return GenerationResult(
                url=data_uri(inline["data"], inline.get("mimeType") or inline.get("mime_type"))
            )
        file_data = part.get("fileData") or part.get("file_data")
        if isinstance(file_data, dict):
            uri = file_data.get("fileUri") or file_data.get("uri")
            if uri:
                return GenerationResult(url=uri)
        image = part.get("image")
        if isinstance(image, dict):
            if image.get("url"):
                return GenerationResult(url=image["url"])
            encoded = image.get("base64") or image.get("data")
            if encoded:
                return GenerationResult(url=data_uri(encoded))
    return None


def parse_imagen_predictions(payload: Dict[str, Any]) -> Optional[GenerationResult]:
    """{predictions: [{bytesBase64Encoded, mimeType?}]}"""
    item = _first_item(payload, "predictions")
    if not item or not item.get("bytesBase64Encoded"):
        return None
    return GenerationResult(url=data_uri(item["bytesBase64Encoded"], item.get("mimeType")))


def parse_simple_images(payload: Dict[str, Any]) -> Optional[GenerationResult]:
    """{images: [{url | base64 | data}]}"""
    item = _first_item(payload, "images")
    if not item:
        return None
    if item.get("url"):
        return GenerationResult(url=item["url"])
    encoded = item.get("base64") or item.get("data")
    if encoded:
        return GenerationResult(url=data_uri(encoded))
    return None


def parse_stability_artifacts(payload: Dict[str, Any]) -> Optional[GenerationResult]:
    """{artifacts: [{base64, finishReason}]}"""
    item = _first_item(payload, "artifacts")
    if not item or not item.get("base64"):
        return None
    return GenerationResult(url=data_uri(item["base64"]))


OPENAI_DATA = ResponseShape("openai-data", parse_openai_data)
GEMINI_CANDIDATES = ResponseShape("gemini-candidates", parse_gemini_candidates)
IMAGEN_PREDICTIONS = ResponseShape("imagen-predictions", parse_imagen_predictions)
SIMPLE_IMAGES = ResponseShape("simple-images", parse_simple_images)
STABILITY_ARTIFACTS = ResponseShape("stability-artifacts", parse_stability_artifacts)

DEFAULT_RESPONSE_SHAPES = (
    OPENAI_DATA,
    GEMINI_CANDIDATES,
    IMAGEN_PREDICTIONS,
    SIMPLE_IMAGES,
    STABILITY_ARTIFACTS,
)


def parse_image_response(
    payload: Any, shapes: Iterable[ResponseShape], provider_label: str = "provider"
) -> Tuple[str, GenerationResult]:
    """Try each shape in order and return (shape name, result) for the first match."""
    if isinstance(payload, dict):
        for shape in shapes:
            result = shape.parse(payload)
            if result is not None:
                return shape.name, result
    raise UnrecognizedResponseShapeError(
        f"No image found in the {provider_label} response. Check that the model supports image generation."
    )


ERROR_MESSAGE_PATHS = (
    ("error", "message"),
    ("error",),
    ("message",),
    ("detail",),
    ("output", "message"),
    ("msg",),
)


def extract_error_message(payload: Any) -> Optional[str]:
    """Pull a human readable message out of a vendor error envelope."""
    for path in ERROR_MESSAGE_PATHS:
        value = payload
        for key in path:
            value = value.get(key) if isinstance(value, dict) else None
        if isinstance(value, str) and value.strip():
            return value
    return None


class ImageProvider(ABC):
    """Abstract base class for image generation vendors"""

    default_base_url: str = ""
    default_model: str = ""
    # Empty means any model id is passed through to the vendor untouched
    supported_models: Tuple[str, ...] = ()
    # OpenAI-compatible proxies serve their own model catalogues
    allow_custom_models_with_base_url: bool = False

    def __init__(self, provider_name: str, http_client: httpx.AsyncClient, display_name: str = None):
        self.provider_name = provider_name
        self.display_name = display_name or provider_name
        self.http_client = http_client
        self.logger = logging.getLogger(f"storybook-app.{provider_name}")

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Generate one image and return its URL (or data URI)"""
        model = self.resolve_model(request.model, request.base_url)
        start_time = time.time()
        self._log_request("image_generation", model, prompt_length=len(request.prompt), size=request.size)
        try:
            result = await self._generate(request, model)
        except Exception as e:
            self._log_error("image_generation", model, e, time.time() - start_time)
            raise
        self._log_success("image_generation", model, time.time() - start_time)
        return result

    @abstractmethod
    async def _generate(self, request: GenerationRequest, model: str) -> GenerationResult:
        pass

    def resolve_base_url(self, base_url: Optional[str]) -> str:
        return (base_url or self.default_base_url).rstrip("/")

    def resolve_model(self, model: Optional[str], base_url: Optional[str] = None) -> str:
        if not model:
            return self.default_model
        if self.supported_models and model not in self.supported_models:
            if base_url and self.allow_custom_models_with_base_url:
                return model
            self.logger.warning(
                f"Unknown model '{model}' for {self.provider_name}, falling back to {self.default_model}"
            )
            return self.default_model
        return model

    def _auth_headers(self, api_key: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Perform one HTTP call and return the decoded JSON body.

        Raises EmptyResponseError / MalformedResponseError for unusable bodies
        and ProviderError (with the vendor's own message when it has one) for
        non-2xx answers and network failures.
        """
        try:
            response = await self.http_client.request(method, url, headers=headers, json=json_body)
        except httpx.RequestError as e:
            raise ProviderError(
                f"Unable to reach {self.display_name}: {str(e) or e.__class__.__name__}",
                provider=self.provider_name,
            ) from e

        text = response.text
        if not text or not text.strip():
            raise EmptyResponseError(
                f"{self.display_name} returned an empty response (HTTP {response.status_code})",
                provider=self.provider_name,
                http_status=response.status_code,
            )
        try:
            payload = json.loads(text)
        except ValueError:
            snippet = text[:SNIPPET_LENGTH]
            self.logger.error(f"Response is not valid JSON: {text[:500]}")
            raise MalformedResponseError(
                f"Could not parse {self.display_name} response: {snippet}",
                snippet=snippet,
                provider=self.provider_name,
                http_status=response.status_code,
            )

        if not response.is_success:
            message = extract_error_message(payload) or (
                f"{self.display_name} image generation failed (HTTP {response.status_code})"
            )
            raise ProviderError(message, provider=self.provider_name, http_status=response.status_code)
        return payload

    def _log_request(self, operation: str, model: str, **kwargs):
        """Log provider request for monitoring"""
        self.logger.info(f"{operation} request: provider={self.provider_name}, model={model}, kwargs={kwargs}")

    def _log_success(self, operation: str, model: str, duration: float):
        self.logger.info(f"{operation} success: provider={self.provider_name}, model={model}, duration={duration:.2f}s")

    def _log_error(self, operation: str, model: str, error: Exception, duration: float):
        self.logger.error(
            f"{operation} error: provider={self.provider_name}, model={model}, duration={duration:.2f}s, error={str(error)}"
        )


class SyncImageProvider(ImageProvider):
    """Vendors that answer the generation POST with the image itself"""

    response_shapes: Tuple[ResponseShape, ...] = DEFAULT_RESPONSE_SHAPES
    # Report the prompt we sent when the vendor does not rewrite it
    echo_prompt_as_revised: bool = True

    async def _generate(self, request: GenerationRequest, model: str) -> GenerationResult:
        endpoint = self._endpoint(request, model)
        self.logger.info(f"POST {endpoint}")
        payload = await self._send(
            "POST", endpoint, self._headers(request.api_key), self._payload(request, model)
        )
        shape, result = parse_image_response(payload, self.response_shapes, self.display_name)
        self.logger.debug(f"Matched response shape {shape}")
        if result.revised_prompt is None and self.echo_prompt_as_revised:
            result = result.model_copy(update={"revised_prompt": request.prompt})
        return result

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {"Content-Type": "application/json", **self._auth_headers(api_key)}

    @abstractmethod
    def _endpoint(self, request: GenerationRequest, model: str) -> str:
        pass

    @abstractmethod
    def _payload(self, request: GenerationRequest, model: str) -> Dict[str, Any]:
        pass


class TaskImageProvider(ImageProvider):
    """Vendors that queue a task which has to be polled until it finishes"""

    success_statuses: Tuple[str, ...] = ("succeeded", "SUCCEEDED")
    failure_statuses: Tuple[str, ...] = ("failed", "FAILED")

    def __init__(
        self,
        provider_name: str,
        http_client: httpx.AsyncClient,
        display_name: str = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
    ):
        super().__init__(provider_name, http_client, display_name)
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts

    async def _generate(self, request: GenerationRequest, model: str) -> GenerationResult:
        poll_url = await self._submit(request, model)
        self.logger.info(f"Task submitted, polling {poll_url}")
        return await self._poll(poll_url, request)

    async def _poll(self, poll_url: str, request: GenerationRequest) -> GenerationResult:
        headers = self._auth_headers(request.api_key)
        for attempt in range(1, self.max_attempts + 1):
            # Cancelling the surrounding task interrupts this sleep
            await asyncio.sleep(self.poll_interval)
            payload = await self._send("GET", poll_url, headers)
            status = self._task_status(payload)
            if status in self.success_statuses:
                self.logger.info(f"Task finished after {attempt} poll(s)")
                return self._task_result(payload, request)
            if status in self.failure_statuses:
                raise ProviderError(
                    self._task_error(payload) or f"{self.display_name} generation failed",
                    provider=self.provider_name,
                )
            self.logger.debug(f"Poll {attempt}/{self.max_attempts}: status={status}")

        raise GenerationTimeoutError(
            f"{self.display_name} generation timed out after {self.max_attempts * self.poll_interval:.0f}s",
            attempts=self.max_attempts,
            provider=self.provider_name,
        )

    @abstractmethod
    async def _submit(self, request: GenerationRequest, model: str) -> str:
        """Submit the job and return the URL to poll"""

    @abstractmethod
    def _task_status(self, payload: Dict[str, Any]) -> Optional[str]:
        pass

    @abstractmethod
    def _task_result(self, payload: Dict[str, Any], request: GenerationRequest) -> GenerationResult:
        pass

    def _task_error(self, payload: Dict[str, Any]) -> Optional[str]:
        return extract_error_message(payload)


class ProviderRegistry:
    """One long-lived adapter per vendor, built once at startup and shared"""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
    ):
        from app.model_providers_gemini import GeminiImageProvider
        from app.model_providers_openai import (
            DoubaoImageProvider,
            OpenAIImageProvider,
            ZhipuImageProvider,
        )
        from app.model_providers_replicate import ReplicateImageProvider
        from app.model_providers_stability import StabilityImageProvider
        from app.model_providers_tongyi import TongyiImageProvider

        self.http_client = http_client
        self._providers: Dict[str, ImageProvider] = {}
        for provider in (
            OpenAIImageProvider(http_client),
            DoubaoImageProvider(http_client),
            ZhipuImageProvider(http_client),
            GeminiImageProvider(http_client),
            StabilityImageProvider(http_client),
            TongyiImageProvider(http_client, poll_interval=poll_interval, max_attempts=max_attempts),
            ReplicateImageProvider(http_client, poll_interval=poll_interval, max_attempts=max_attempts),
        ):
            self.register(provider)

    @classmethod
    def from_config(cls, http_client: httpx.AsyncClient) -> "ProviderRegistry":
        return cls(
            http_client,
            poll_interval=AppConfig.get_float("image_poll_interval"),
            max_attempts=AppConfig.get_int("image_poll_max_attempts"),
        )

    def register(self, provider: ImageProvider) -> None:
        self._providers[provider.provider_name] = provider

    def get_provider(self, provider_id: str) -> ImageProvider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise UnknownProviderError(provider_id)
        return provider

    def provider_ids(self) -> Tuple[str, ...]:
        return tuple(self._providers)
