import json

import httpx
import pytest

from services.errors import ProviderError, ProviderUnavailable
from services.providers import HttpGenerationProvider, extract_result, normalize_result


def _provider(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpGenerationProvider("https://gen.example/api/", timeout_seconds=5, client=client)


def test_normalize_result_shapes():
    assert normalize_result({"content": "x"}) == {"content": "x"}
    assert normalize_result('{"imageUrl": "https://x/y.png"}') == {"imageUrl": "https://x/y.png"}
    assert normalize_result("plain answer") == {"content": "plain answer"}
    assert normalize_result("[1, 2]") == {"content": [1, 2]}
    assert normalize_result("{not json") == {"content": "{not json"}
    assert normalize_result(None) is None


def test_extract_result_picks_known_keys():
    assert extract_result({"success": True, "content": "Quiz"}) == {"content": "Quiz"}
    assert extract_result({"result": '{"content": "inner"}'}) == {"content": "inner"}
    assert extract_result({"imageUrl": "https://x/y.png", "content": "caption"}) == {
        "imageUrl": "https://x/y.png",
        "content": "caption",
    }
    assert extract_result({"success": True}) is None


@pytest.mark.asyncio
async def test_provider_posts_request_and_returns_result():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "content": "<p>Lesson</p>"})

    provider = _provider(handler)
    result = await provider.generate(request_id="req-1", generation_type="lesson_plan", params={"topic": "Rain"})
    await provider.close()

    assert result == {"content": "<p>Lesson</p>"}
    assert seen["url"] == "https://gen.example/api/lesson_plan"
    assert seen["body"] == {
        "generationRequestId": "req-1",
        "generationType": "lesson_plan",
        "params": {"topic": "Rain"},
    }


@pytest.mark.asyncio
async def test_accepted_response_defers_to_callback():
    provider = _provider(lambda request: httpx.Response(202, json={"status": "accepted"}))
    assert await provider.generate(request_id="req-1", generation_type="quiz", params={}) is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, error",
    [
        (httpx.Response(503, text="busy"), ProviderUnavailable),
        (httpx.Response(429, text="slow down"), ProviderUnavailable),
        (httpx.Response(400, json={"error": "bad params"}), ProviderError),
        (httpx.Response(200, json={"success": False, "error": "model refused"}), ProviderError),
        (httpx.Response(200, json={"success": True}), ProviderError),
        (httpx.Response(200, text="not json"), ProviderError),
    ],
)
async def test_provider_failures_are_classified(response, error):
    provider = _provider(lambda request: response)
    with pytest.raises(error):
        await provider.generate(request_id="req-1", generation_type="quiz", params={})


@pytest.mark.asyncio
async def test_unreachable_provider_is_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderUnavailable):
        await _provider(handler).generate(request_id="req-1", generation_type="quiz", params={})


@pytest.mark.asyncio
async def test_provider_timeout_is_terminal():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderError) as exc_info:
        await _provider(handler).generate(request_id="req-1", generation_type="quiz", params={})
    assert not isinstance(exc_info.value, ProviderUnavailable)
