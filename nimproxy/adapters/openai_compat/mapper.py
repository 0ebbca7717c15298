"""OpenAI <-> NIM payload mapping."""

from __future__ import annotations

import time
from typing import Any, Mapping

from nimproxy.config.feature_flags import FeatureFlags
from nimproxy.config.model_mapping import ModelMapping
from nimproxy.core.models import ChatCompletionChoice, ChatCompletionResponse, ChatMessage, ModelCard, ModelList

DEFAULT_TEMPERATURE = 0.6
DEFAULT_MAX_TOKENS = 2048
DEFAULT_STREAM = False

THINK_OPEN = "<think>\n"
THINK_CLOSE = "\n</think>\n\n"


def _default_if_none(value: Any, default: Any) -> Any:
    # 0 / False 是合法取值，只有缺失或 null 才回退默认值
    return default if value is None else value


def to_upstream_chat(payload: Mapping[str, Any], mapping: ModelMapping, flags: FeatureFlags) -> dict[str, Any]:
    upstream_payload: dict[str, Any] = {
        "model": mapping.resolve(payload.get("model")),
        "messages": payload.get("messages"),
        "temperature": _default_if_none(payload.get("temperature"), DEFAULT_TEMPERATURE),
        "max_tokens": _default_if_none(payload.get("max_tokens"), DEFAULT_MAX_TOKENS),
        "stream": _default_if_none(payload.get("stream"), DEFAULT_STREAM),
    }
    if flags.enable_thinking_mode:
        upstream_payload["extra_body"] = {"chat_template_kwargs": {"thinking": True}}
    return upstream_payload


def wrap_reasoning(reasoning: str, content: Any) -> str:
    visible = "" if content is None else str(content)
    return f"{THINK_OPEN}{reasoning}{THINK_CLOSE}{visible}"


def render_choice_content(message: Mapping[str, Any], flags: FeatureFlags) -> Any:
    content = message.get("content")
    reasoning = message.get("reasoning_content")
    if flags.show_reasoning and reasoning:
        return wrap_reasoning(str(reasoning), content)
    return content


def new_completion_id() -> str:
    return f"chatcmpl-{int(time.time() * 1000)}"


def to_chat_response(upstream_body: Any, requested_model: Any, flags: FeatureFlags) -> dict[str, Any]:
    """
    Reshape an upstream NIM completion into the OpenAI envelope.

    Raises ``TypeError``/``KeyError`` when the upstream body lacks a usable
    ``choices`` list; the caller folds that into the proxy error.
    """

    if not isinstance(upstream_body, dict):
        raise TypeError(f"unexpected upstream body type: {type(upstream_body).__name__}")
    raw_choices = upstream_body["choices"]
    if not isinstance(raw_choices, list):
        raise TypeError("upstream choices is not a list")

    choices = []
    for index, raw_choice in enumerate(raw_choices):
        message = raw_choice["message"]
        choices.append(
            ChatCompletionChoice(
                index=index,
                message=ChatMessage(role="assistant", content=render_choice_content(message, flags)),
                finish_reason=raw_choice.get("finish_reason"),
            )
        )

    usage = upstream_body.get("usage")
    response = ChatCompletionResponse(
        id=new_completion_id(),
        created=int(time.time()),
        model=requested_model,
        choices=choices,
        usage=usage if usage is not None else {},
    )
    return response.model_dump()


def to_model_list(mapping: ModelMapping, owned_by: str) -> dict[str, Any]:
    return ModelList(data=[ModelCard(id=alias, owned_by=owned_by) for alias in mapping.aliases()]).model_dump()
