from unittest.mock import AsyncMock, patch

import httpx
import pytest
from conftest import request_json

from app.errors import (
    EmptyResponseError,
    GenerationTimeoutError,
    MalformedResponseError,
    ProviderError,
    UnknownProviderError,
    UnrecognizedResponseShapeError,
)
from app.model_providers import (
    DEFAULT_RESPONSE_SHAPES,
    GenerationRequest,
    ProviderId,
    ProviderRegistry,
    extract_error_message,
    parse_image_response,
)


def make_request(provider, **kwargs):
    kwargs.setdefault("api_key", "sk-test-key")
    return GenerationRequest(prompt="a kitten learning to swim", provider=provider, **kwargs)


def recording_handler(requests, responses):
    """Answer requests in order with the given responses (the last one repeats)."""

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        canned = responses[min(len(requests), len(responses)) - 1]
        return httpx.Response(canned.status_code, headers=canned.headers, content=canned.content)

    return handler


@pytest.fixture
def registry_for(make_http_client):
    def _make(*responses, requests=None):
        requests = requests if requests is not None else []
        return ProviderRegistry(make_http_client(recording_handler(requests, list(responses))))

    return _make


# --- Response shapes ---
def test_parse_image_response_shapes():
    cases = [
        ({"data": [{"url": "https://x/1.png", "revised_prompt": "r"}]}, "openai-data", "https://x/1.png"),
        ({"data": [{"b64_json": "QUJD"}]}, "openai-data", "data:image/png;base64,QUJD"),
        (
            {"candidates": [{"content": {"parts": [{"text": "here"}, {"inlineData": {"mimeType": "image/jpeg", "data": "QUJD"}}]}}]},
            "gemini-candidates",
            "data:image/jpeg;base64,QUJD",
        ),
        (
            {"candidates": [{"content": {"parts": [{"fileData": {"fileUri": "https://x/file.png"}}]}}]},
            "gemini-candidates",
            "https://x/file.png",
        ),
        ({"predictions": [{"bytesBase64Encoded": "QUJD"}]}, "imagen-predictions", "data:image/png;base64,QUJD"),
        ({"images": [{"url": "https://x/2.png"}]}, "simple-images", "https://x/2.png"),
        ({"images": [{"base64": "QUJD"}]}, "simple-images", "data:image/png;base64,QUJD"),
        ({"artifacts": [{"base64": "QUJD", "finishReason": "SUCCESS"}]}, "stability-artifacts", "data:image/png;base64,QUJD"),
    ]
    for payload, expected_shape, expected_url in cases:
        shape, result = parse_image_response(payload, DEFAULT_RESPONSE_SHAPES)
        assert shape == expected_shape
        assert result.url == expected_url


@pytest.mark.parametrize("payload", [{}, {"data": []}, {"candidates": [{"content": {"parts": [{"text": "no image"}]}}]}, []])
def test_parse_image_response_unrecognized(payload):
    with pytest.raises(UnrecognizedResponseShapeError):
        parse_image_response(payload, DEFAULT_RESPONSE_SHAPES, "Gemini")


def test_extract_error_message_paths():
    assert extract_error_message({"error": {"message": "bad key"}}) == "bad key"
    assert extract_error_message({"error": "quota exceeded"}) == "quota exceeded"
    assert extract_error_message({"message": "nope"}) == "nope"
    assert extract_error_message({"detail": "invalid size"}) == "invalid size"
    assert extract_error_message({"output": {"message": "task failed"}}) == "task failed"
    assert extract_error_message({"msg": "limit"}) == "limit"
    assert extract_error_message({"status": 500}) is None


# --- Registry ---
def test_registry_knows_every_vendor(registry_for):
    registry = registry_for(httpx.Response(200, json={}))
    assert set(registry.provider_ids()) == {p.value for p in ProviderId}
    with pytest.raises(UnknownProviderError):
        registry.get_provider("midjourney")


# --- Sync vendors ---
@pytest.mark.anyio
async def test_openai_generation(registry_for):
    requests = []
    registry = registry_for(
        httpx.Response(200, json={"data": [{"url": "https://img/1.png", "revised_prompt": "A kitten"}]}),
        requests=requests,
    )
    result = await registry.get_provider("openai").generate(make_request("openai"))

    assert result.url == "https://img/1.png"
    assert result.revised_prompt == "A kitten"
    sent = requests[0]
    assert str(sent.url) == "https://api.openai.com/v1/images/generations"
    assert sent.headers["Authorization"] == "Bearer sk-test-key"
    assert request_json(sent) == {
        "model": "dall-e-3",
        "prompt": "a kitten learning to swim",
        "n": 1,
        "size": "1024x1024",
        "quality": "hd",
    }


@pytest.mark.anyio
async def test_openai_proxy_base_url_and_custom_model(registry_for):
    requests = []
    registry = registry_for(httpx.Response(200, json={"data": [{"b64_json": "QUJD"}]}), requests=requests)
    request = make_request("openai", base_url="https://proxy.example.com/v1/", model="flux-pro")
    result = await registry.get_provider("openai").generate(request)

    assert result.url == "data:image/png;base64,QUJD"
    assert result.revised_prompt is None
    assert str(requests[0].url) == "https://proxy.example.com/v1/images/generations"
    assert request_json(requests[0])["model"] == "flux-pro"
    assert "quality" not in request_json(requests[0])


@pytest.mark.anyio
async def test_doubao_sends_width_and_height(registry_for):
    requests = []
    registry = registry_for(httpx.Response(200, json={"data": [{"url": "https://img/d.png"}]}), requests=requests)
    result = await registry.get_provider("doubao").generate(make_request("doubao", size="768x1024"))

    assert result.revised_prompt == "a kitten learning to swim"
    body = request_json(requests[0])
    assert str(requests[0].url) == "https://ark.cn-beijing.volces.com/api/v3/images/generations"
    assert (body["size"], body["width"], body["height"]) == ("768x1024", 768, 1024)


@pytest.mark.anyio
async def test_zhipu_payload(registry_for):
    requests = []
    registry = registry_for(httpx.Response(200, json={"data": [{"url": "https://img/z.png"}]}), requests=requests)
    await registry.get_provider("zhipu").generate(make_request("zhipu"))

    assert str(requests[0].url) == "https://open.bigmodel.cn/api/paas/v4/images/generations"
    assert request_json(requests[0]) == {"model": "cogview-3-plus", "prompt": "a kitten learning to swim", "size": "1024x1024"}


@pytest.mark.anyio
async def test_gemini_generation(registry_for):
    requests = []
    payload = {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "QUJD"}}]}}]}
    registry = registry_for(httpx.Response(200, json=payload), requests=requests)
    result = await registry.get_provider("gemini").generate(make_request("gemini"))

    assert result.url == "data:image/png;base64,QUJD"
    sent = requests[0]
    assert str(sent.url) == (
        "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash-exp:generateContent"
    )
    assert sent.headers["x-goog-api-key"] == "sk-test-key"
    assert request_json(sent)["generationConfig"]["responseModalities"] == ["TEXT", "IMAGE"]


@pytest.mark.anyio
async def test_gemini_keeps_explicit_api_version(registry_for):
    requests = []
    payload = {"images": [{"url": "https://img/g.png"}]}
    registry = registry_for(httpx.Response(200, json=payload), requests=requests)
    await registry.get_provider("gemini").generate(make_request("gemini", base_url="https://proxy.example.com/v1/"))

    assert str(requests[0].url) == "https://proxy.example.com/v1/models/gemini-2.0-flash-exp:generateContent"


@pytest.mark.anyio
async def test_stability_unknown_model_falls_back(registry_for):
    requests = []
    registry = registry_for(httpx.Response(200, json={"artifacts": [{"base64": "QUJD"}]}), requests=requests)
    request = make_request("stabilityai", model="sd-unknown", size="512x768")
    result = await registry.get_provider("stabilityai").generate(request)

    assert result.url == "data:image/png;base64,QUJD"
    sent = requests[0]
    assert str(sent.url) == "https://api.stability.ai/v1/generation/stable-diffusion-xl-1024-v1-0/text-to-image"
    assert sent.headers["Accept"] == "application/json"
    body = request_json(sent)
    assert (body["width"], body["height"], body["samples"]) == (512, 768, 1)
    assert body["text_prompts"] == [{"text": "a kitten learning to swim"}]


# --- Failure envelopes ---
@pytest.mark.anyio
async def test_empty_body(registry_for):
    registry = registry_for(httpx.Response(200, content=b""))
    with pytest.raises(EmptyResponseError):
        await registry.get_provider("openai").generate(make_request("openai"))


@pytest.mark.anyio
async def test_non_json_body(registry_for):
    html = "<html>" + "x" * 500 + "</html>"
    registry = registry_for(httpx.Response(502, text=html))
    with pytest.raises(MalformedResponseError) as excinfo:
        await registry.get_provider("zhipu").generate(make_request("zhipu"))
    assert excinfo.value.snippet == html[:200]


@pytest.mark.anyio
async def test_vendor_error_envelope(registry_for):
    registry = registry_for(httpx.Response(401, json={"error": {"message": "Invalid API key"}}))
    with pytest.raises(ProviderError) as excinfo:
        await registry.get_provider("openai").generate(make_request("openai"))
    assert excinfo.value.message == "Invalid API key"
    assert excinfo.value.http_status == 401
    assert excinfo.value.provider == "openai"


@pytest.mark.anyio
async def test_vendor_error_without_message(registry_for):
    registry = registry_for(httpx.Response(503, json={"status": "unavailable"}))
    with pytest.raises(ProviderError, match="HTTP 503"):
        await registry.get_provider("doubao").generate(make_request("doubao"))


@pytest.mark.anyio
async def test_unrecognized_success_body(registry_for):
    registry = registry_for(httpx.Response(200, json={"result": "ok"}))
    with pytest.raises(UnrecognizedResponseShapeError):
        await registry.get_provider("gemini").generate(make_request("gemini"))


@pytest.mark.anyio
async def test_network_failure(make_http_client):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    registry = ProviderRegistry(make_http_client(handler))
    with pytest.raises(ProviderError, match="Unable to reach OpenAI"):
        await registry.get_provider("openai").generate(make_request("openai"))


# --- Submit-then-poll vendors ---
@pytest.mark.anyio
async def test_tongyi_submit_and_poll(registry_for):
    requests = []
    registry = registry_for(
        httpx.Response(200, json={"output": {"task_id": "task-1", "task_status": "PENDING"}}),
        httpx.Response(200, json={"output": {"task_status": "PENDING"}}),
        httpx.Response(200, json={"output": {"task_status": "RUNNING"}}),
        httpx.Response(
            200,
            json={
                "output": {
                    "task_status": "SUCCEEDED",
                    "results": [{"url": "https://img/t.png", "actual_prompt": "a cute kitten swimming"}],
                }
            },
        ),
        requests=requests,
    )
    with patch("app.model_providers.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        result = await registry.get_provider("tongyi").generate(make_request("tongyi", model="wanx-unknown"))

    assert result.url == "https://img/t.png"
    assert result.revised_prompt == "a cute kitten swimming"
    assert mock_sleep.await_count == 3

    submit = requests[0]
    assert str(submit.url) == "https://dashscope.aliyuncs.com/api/v1/services/aigc/text2image/image-synthesis"
    assert submit.headers["X-DashScope-Async"] == "enable"
    assert request_json(submit)["parameters"]["size"] == "1024*1024"
    assert request_json(submit)["model"] == "wanx-v1"
    assert [r.method for r in requests[1:]] == ["GET"] * 3
    assert str(requests[1].url) == "https://dashscope.aliyuncs.com/api/v1/tasks/task-1"


@pytest.mark.anyio
async def test_tongyi_task_failure(registry_for):
    registry = registry_for(
        httpx.Response(200, json={"output": {"task_id": "task-2"}}),
        httpx.Response(200, json={"output": {"task_status": "FAILED", "message": "Content moderation failed"}}),
    )
    with patch("app.model_providers.asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(ProviderError, match="Content moderation failed"):
            await registry.get_provider("tongyi").generate(make_request("tongyi"))


@pytest.mark.anyio
async def test_tongyi_missing_task_id(registry_for):
    registry = registry_for(httpx.Response(200, json={"output": {}}))
    with pytest.raises(UnrecognizedResponseShapeError):
        await registry.get_provider("tongyi").generate(make_request("tongyi"))


@pytest.mark.anyio
async def test_replicate_submit_and_poll(registry_for):
    requests = []
    registry = registry_for(
        httpx.Response(
            201,
            json={"id": "pred-1", "status": "starting", "urls": {"get": "https://api.replicate.com/v1/predictions/pred-1"}},
        ),
        httpx.Response(200, json={"status": "processing"}),
        httpx.Response(200, json={"status": "succeeded", "output": ["https://img/r.png"]}),
        requests=requests,
    )
    with patch("app.model_providers.asyncio.sleep", new_callable=AsyncMock):
        result = await registry.get_provider("replicate").generate(make_request("replicate", size="512x512"))

    assert result.url == "https://img/r.png"
    assert result.revised_prompt is None
    submit = requests[0]
    assert submit.headers["Authorization"] == "Token sk-test-key"
    assert request_json(submit) == {
        "version": "black-forest-labs/flux-schnell",
        "input": {"prompt": "a kitten learning to swim", "width": 512, "height": 512},
    }
    assert str(requests[2].url) == "https://api.replicate.com/v1/predictions/pred-1"


@pytest.mark.anyio
async def test_replicate_poll_url_from_id(registry_for):
    requests = []
    registry = registry_for(
        httpx.Response(201, json={"id": "pred-9"}),
        httpx.Response(200, json={"status": "succeeded", "output": "https://img/single.png"}),
        requests=requests,
    )
    with patch("app.model_providers.asyncio.sleep", new_callable=AsyncMock):
        result = await registry.get_provider("replicate").generate(make_request("replicate"))

    assert result.url == "https://img/single.png"
    assert str(requests[1].url) == "https://api.replicate.com/v1/predictions/pred-9"


@pytest.mark.anyio
async def test_poll_gives_up_after_max_attempts(registry_for):
    requests = []
    registry = registry_for(
        httpx.Response(201, json={"id": "pred-2", "urls": {"get": "https://api.replicate.com/v1/predictions/pred-2"}}),
        httpx.Response(200, json={"status": "processing"}),
        requests=requests,
    )
    with patch("app.model_providers.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        with pytest.raises(GenerationTimeoutError) as excinfo:
            await registry.get_provider("replicate").generate(make_request("replicate"))

    assert excinfo.value.attempts == 60
    assert mock_sleep.await_count == 60
    assert {call.args[0] for call in mock_sleep.await_args_list} == {2.0}
    # one submit plus exactly sixty polls
    assert len(requests) == 61
