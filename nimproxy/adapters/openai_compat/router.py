"""OpenAI-compatible routes."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from nimproxy.adapters.openai_compat.stream_utils import _build_streaming_response
from nimproxy.core.errors import translate_error
from nimproxy.core.translator import TranslationGateway
from nimproxy.util.logger import logger


router = APIRouter()

# 调试日志中请求正文的最大长度
_DEBUG_REQUEST_BODY_MAX_CHARS = 4000


def _get_gateway(request: Request) -> TranslationGateway:
    return request.app.state.gateway


def _should_stream(payload: dict[str, Any]) -> bool:
    return bool(payload.get("stream") is True)


def _log_request_if_debug(request: Request, payload: dict[str, Any]) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    try:
        body_str = json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        body_str = str(payload)
    logger.debug(
        "incoming request method=%s path=%s body_size=%d body=%s",
        request.method,
        request.url.path,
        len(body_str),
        body_str[:_DEBUG_REQUEST_BODY_MAX_CHARS],
    )


def _proxy_error_response(exc: BaseException, model: Any) -> JSONResponse:
    status_code, content = translate_error(exc)
    logger.error("chat completion proxy error model=%s detail=%s", model, content["error"]["detail"])
    return JSONResponse(status_code=status_code, content=content)


@router.get("/models")
async def list_models(request: Request) -> dict:
    return _get_gateway(request).list_models()


async def _read_payload(request: Request) -> dict[str, Any]:
    # 不做入参校验：空正文或非对象 JSON 按 {} 转发，解析失败交给统一错误处理
    raw = await request.body()
    if not raw.strip():
        return {}
    body = json.loads(raw)
    return body if isinstance(body, dict) else {}


@router.post("/chat/completions")
async def chat_completions(request: Request):
    payload: dict[str, Any] = {}
    try:
        payload = await _read_payload(request)
        _log_request_if_debug(request, payload)
        gateway = _get_gateway(request)
        if _should_stream(payload):
            generator = await gateway.stream_chat_completion(payload)
            return _build_streaming_response(generator)
        return JSONResponse(content=await gateway.create_chat_completion(payload))
    except Exception as exc:
        return _proxy_error_response(exc, payload.get("model"))
