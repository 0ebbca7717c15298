"""
流式 SSE 改写与 chunk 构建。从 router 拆出，便于维护与单测。
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterable

from fastapi.responses import StreamingResponse

from nimproxy.adapters.openai_compat.mapper import THINK_CLOSE, THINK_OPEN
from nimproxy.config.feature_flags import FeatureFlags
from nimproxy.core.errors import translate_error

SSE_DONE = "[DONE]"


def _extract_sse_data_payload(line: str) -> str | None:
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    return stripped[5:].strip()


def _sse_chunk(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


def _stream_done_sse_chunk() -> bytes:
    return _sse_chunk(SSE_DONE)


def _stream_error_sse_chunk(exc: BaseException) -> bytes:
    _, body = translate_error(exc)
    return _sse_chunk(json.dumps(body, ensure_ascii=False))


class StreamRewriter:
    """
    Rewrites upstream chat.completion.chunk events for one response.

    Keeps per-choice state so reasoning deltas are opened with ``<think>``
    once and closed right before the first answer delta of that choice.
    """

    def __init__(self, requested_model: Any, flags: FeatureFlags) -> None:
        self.requested_model = requested_model
        self.flags = flags
        self._open_reasoning: set[int] = set()
        self._last_id: Any = None

    def _rewrite_delta(self, index: int, delta: dict[str, Any]) -> dict[str, Any]:
        out = {key: value for key, value in delta.items() if key != "reasoning_content"}
        if not self.flags.show_reasoning:
            return out

        reasoning = delta.get("reasoning_content")
        content = delta.get("content")
        text = ""
        if reasoning:
            if index not in self._open_reasoning:
                self._open_reasoning.add(index)
                text += THINK_OPEN
            text += str(reasoning)
        if content:
            if index in self._open_reasoning:
                self._open_reasoning.discard(index)
                text += THINK_CLOSE
            text += str(content)
        if text:
            out["content"] = text
        return out

    def close_open_reasoning(self) -> bytes | None:
        """Closing chunk for choices whose reasoning block never met an answer delta."""

        if not self._open_reasoning:
            return None
        event = {
            "id": self._last_id,
            "object": "chat.completion.chunk",
            "model": self.requested_model,
            "choices": [
                {"index": index, "delta": {"content": THINK_CLOSE}, "finish_reason": None}
                for index in sorted(self._open_reasoning)
            ],
        }
        self._open_reasoning.clear()
        return _sse_chunk(json.dumps(event, ensure_ascii=False))

    def rewrite_event(self, event: dict[str, Any]) -> dict[str, Any]:
        if "id" in event:
            self._last_id = event["id"]
        if "model" in event:
            event["model"] = self.requested_model
        choices = event.get("choices")
        if not isinstance(choices, list):
            return event
        for position, choice in enumerate(choices):
            if not isinstance(choice, dict):
                continue
            index = choice.get("index")
            if not isinstance(index, int):
                index = position
            delta = choice.get("delta")
            if isinstance(delta, dict):
                choice["delta"] = self._rewrite_delta(index, delta)
            if choice.get("finish_reason") and index in self._open_reasoning and self.flags.show_reasoning:
                # 只有推理、没有正文时也要闭合标记
                self._open_reasoning.discard(index)
                closing = choice.get("delta") if isinstance(choice.get("delta"), dict) else {}
                closing["content"] = f"{closing.get('content') or ''}{THINK_CLOSE}"
                choice["delta"] = closing
        return event

    def rewrite_line(self, line: str) -> bytes | None:
        """Return the bytes to relay for one upstream line, or None to drop it."""

        if not line.strip():
            return None
        data_payload = _extract_sse_data_payload(line)
        if data_payload is None:
            return f"{line}\n\n".encode("utf-8")
        if data_payload == SSE_DONE:
            closing = self.close_open_reasoning()
            return (closing or b"") + _stream_done_sse_chunk()
        try:
            event = json.loads(data_payload)
        except json.JSONDecodeError:
            return _sse_chunk(data_payload)
        if not isinstance(event, dict):
            return _sse_chunk(data_payload)
        return _sse_chunk(json.dumps(self.rewrite_event(event), ensure_ascii=False))


def _build_streaming_response(generator: AsyncIterable[bytes]) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
