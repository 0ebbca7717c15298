import json

import httpx
import pytest

from nimproxy.adapters.openai_compat.upstream import NimUpstreamClient
from nimproxy.config.model_mapping import ModelMapping
from nimproxy.config.settings import Settings
from nimproxy.core.gateway import build_gateway, create_app

NIM_BASE = "https://nim.example.com/v1"


def _build_app(handler, model_mapping: ModelMapping | None = None, **overrides):
    app_settings = Settings(_env_file=None, nim_api_key="nvapi-test", nim_api_base=NIM_BASE, **overrides)
    upstream = NimUpstreamClient.from_settings(app_settings, transport=httpx.MockTransport(handler))
    gateway = build_gateway(app_settings, model_mapping=model_mapping, upstream=upstream)
    return create_app(app_settings, gateway=gateway)


async def _request(app, method: str, path: str, **kwargs) -> httpx.Response:
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        return await client.request(method, path, **kwargs)


def _nim_completion(*contents: str, reasoning: str | None = None, usage: dict | None = None) -> dict:
    body = {
        "id": "nim-abc",
        "object": "chat.completion",
        "model": "upstream/model",
        "choices": [
            {
                "index": idx,
                "message": {"role": "assistant", "content": text, "reasoning_content": reasoning},
                "finish_reason": "stop",
            }
            for idx, text in enumerate(contents)
        ],
    }
    if usage is not None:
        body["usage"] = usage
    return body


@pytest.mark.asyncio
async def test_chat_completion_maps_alias_and_reshapes_response():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json=_nim_completion("hello", "there", usage={"total_tokens": 9}))

    app = _build_app(handler)
    messages = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "yo"}, {"role": "user", "content": "again"}]
    response = await _request(app, "POST", "/v1/chat/completions", json={"model": "gpt-4o", "messages": messages})

    assert response.status_code == 200
    body = response.json()
    assert body["model"] == "gpt-4o"
    assert body["object"] == "chat.completion"
    assert [c["index"] for c in body["choices"]] == [0, 1]
    assert [c["message"]["content"] for c in body["choices"]] == ["hello", "there"]
    assert all(c["message"]["role"] == "assistant" for c in body["choices"])
    assert body["usage"] == {"total_tokens": 9}

    assert len(captured) == 1
    sent = captured[0]
    assert str(sent.url) == f"{NIM_BASE}/chat/completions"
    assert sent.headers["authorization"] == "Bearer nvapi-test"
    assert sent.headers["content-type"] == "application/json"
    assert json.loads(sent.content) == {
        "model": "deepseek-ai/deepseek-v3.1",
        "messages": messages,
        "temperature": 0.6,
        "max_tokens": 2048,
        "stream": False,
    }


@pytest.mark.asyncio
async def test_chat_completion_unknown_alias_uses_fallback_model():
    seen_models: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_models.append(json.loads(request.content)["model"])
        return httpx.Response(200, json=_nim_completion("ok"))

    app = _build_app(handler)
    response = await _request(
        app,
        "POST",
        "/v1/chat/completions",
        json={"model": "my-custom-model", "messages": [], "temperature": 0, "max_tokens": None},
    )

    assert response.status_code == 200
    assert response.json()["model"] == "my-custom-model"
    assert seen_models == ["meta/llama-3.1-8b-instruct"]


@pytest.mark.asyncio
async def test_chat_completion_uses_injected_mapping():
    sent: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json=_nim_completion("ok"))

    app = _build_app(handler, model_mapping=ModelMapping({"tiny": "meta/llama-3.2-1b-instruct"}))
    await _request(app, "POST", "/v1/chat/completions", json={"model": "tiny", "messages": [], "temperature": 0})

    assert sent[0]["model"] == "meta/llama-3.2-1b-instruct"
    assert sent[0]["temperature"] == 0


@pytest.mark.asyncio
async def test_chat_completion_hides_reasoning_by_default():
    app = _build_app(lambda _request: httpx.Response(200, json=_nim_completion("answer", reasoning="thinking...")))
    response = await _request(app, "POST", "/v1/chat/completions", json={"model": "gpt-4", "messages": []})

    assert response.json()["choices"][0]["message"]["content"] == "answer"
    assert response.json()["usage"] == {}


@pytest.mark.asyncio
async def test_chat_completion_shows_reasoning_and_requests_thinking_when_enabled():
    sent: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json=_nim_completion("answer", reasoning="thinking..."))

    app = _build_app(handler, show_reasoning=True, enable_thinking_mode=True)
    response = await _request(app, "POST", "/v1/chat/completions", json={"model": "gemini-pro", "messages": []})

    assert response.json()["choices"][0]["message"]["content"] == "<think>\nthinking...\n</think>\n\nanswer"
    assert sent[0]["extra_body"] == {"chat_template_kwargs": {"thinking": True}}


@pytest.mark.asyncio
async def test_upstream_error_status_returns_proxy_error_with_raw_detail():
    upstream_error = {"status": 503, "title": "Service Unavailable", "detail": "model is overloaded"}
    app = _build_app(lambda _request: httpx.Response(503, json=upstream_error))

    response = await _request(app, "POST", "/v1/chat/completions", json={"model": "gpt-4", "messages": []})

    assert response.status_code == 500
    assert response.json() == {"error": {"message": "Proxy error", "detail": upstream_error}}


@pytest.mark.asyncio
async def test_upstream_error_without_body_reports_status():
    app = _build_app(lambda _request: httpx.Response(401))

    response = await _request(app, "POST", "/v1/chat/completions", json={"model": "gpt-4", "messages": []})

    assert response.status_code == 500
    assert response.json()["error"]["detail"] == "Request failed with status code 401"


@pytest.mark.asyncio
async def test_connection_refused_returns_proxy_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    app = _build_app(handler)
    response = await _request(app, "POST", "/v1/chat/completions", json={"model": "gpt-4", "messages": []})

    assert response.status_code == 500
    body = response.json()
    assert body["error"]["message"] == "Proxy error"
    assert "connection refused" in body["error"]["detail"]

    # the app keeps serving after the failure
    health = await _request(app, "GET", "/health")
    assert health.status_code == 200


@pytest.mark.asyncio
async def test_malformed_upstream_body_returns_proxy_error():
    app = _build_app(lambda _request: httpx.Response(200, text="<html>bad gateway</html>"))

    response = await _request(app, "POST", "/v1/chat/completions", json={"model": "gpt-4", "messages": []})

    assert response.status_code == 500
    assert response.json()["error"]["detail"]


@pytest.mark.asyncio
async def test_empty_body_is_forwarded_and_failure_reported():
    sent: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(400, json={"error": "messages is required"})

    app = _build_app(handler)
    response = await _request(app, "POST", "/v1/chat/completions")

    assert sent[0]["model"] == "meta/llama-3.1-8b-instruct"
    assert sent[0]["messages"] is None
    assert response.status_code == 500
    assert response.json()["error"]["detail"] == {"error": "messages is required"}


@pytest.mark.asyncio
async def test_empty_upstream_error_object_is_kept_as_detail():
    app = _build_app(lambda _request: httpx.Response(429, json={}))

    response = await _request(app, "POST", "/v1/chat/completions", json={"model": "gpt-4", "messages": []})

    assert response.status_code == 500
    assert response.json() == {"error": {"message": "Proxy error", "detail": {}}}


@pytest.mark.asyncio
async def test_non_object_json_body_is_forwarded_with_defaults():
    sent: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json=_nim_completion("ok"))

    app = _build_app(handler)
    response = await _request(
        app,
        "POST",
        "/v1/chat/completions",
        content=b"[1, 2]",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 200
    assert sent[0]["model"] == "meta/llama-3.1-8b-instruct"
    assert sent[0]["messages"] is None
    assert sent[0]["temperature"] == 0.6


@pytest.mark.asyncio
async def test_invalid_json_body_returns_proxy_error():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=_nim_completion("ok"))

    app = _build_app(handler)
    response = await _request(
        app,
        "POST",
        "/v1/chat/completions",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 500
    body = response.json()
    assert body["error"]["message"] == "Proxy error"
    assert body["error"]["detail"]
    assert calls == []


@pytest.mark.asyncio
async def test_list_models_returns_mapping_aliases():
    app = _build_app(lambda _request: httpx.Response(500))

    response = await _request(app, "GET", "/v1/models")

    assert response.status_code == 200
    body = response.json()
    assert body["object"] == "list"
    assert {item["id"] for item in body["data"]} == {
        "gpt-3.5-turbo",
        "gpt-4",
        "gpt-4-turbo",
        "gpt-4o",
        "claude-3-opus",
        "claude-3-sonnet",
        "gemini-pro",
    }
    assert {item["owned_by"] for item in body["data"]} == {"railway-nim"}
    assert {item["object"] for item in body["data"]} == {"model"}


@pytest.mark.asyncio
async def test_health():
    app = _build_app(lambda _request: httpx.Response(500))

    response = await _request(app, "GET", "/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "nim-proxy"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("method", "path"),
    [
        ("GET", "/foo"),
        ("POST", "/foo"),
        ("DELETE", "/v1/unknown"),
        ("PUT", "/v1/chat/completions"),
        ("GET", "/v1/chat/completions"),
        ("POST", "/health"),
    ],
)
async def test_unmapped_routes_return_uniform_not_found(method, path):
    app = _build_app(lambda _request: httpx.Response(500))

    response = await _request(app, method, path)

    assert response.status_code == 404
    assert response.json() == {"error": "Not found"}


@pytest.mark.asyncio
async def test_cors_headers_present():
    app = _build_app(lambda _request: httpx.Response(500))

    response = await _request(app, "GET", "/health", headers={"Origin": "https://chat.example.com"})

    assert response.headers["access-control-allow-origin"] == "*"
