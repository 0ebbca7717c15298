"""OpenAI -> NIM translation gateway."""

from __future__ import annotations

import time
from typing import Any, AsyncGenerator, Mapping

from nimproxy.adapters.openai_compat.mapper import to_chat_response, to_model_list, to_upstream_chat
from nimproxy.adapters.openai_compat.stream_utils import StreamRewriter, _stream_done_sse_chunk, _stream_error_sse_chunk
from nimproxy.adapters.openai_compat.upstream import NimUpstreamClient
from nimproxy.config.feature_flags import FeatureFlags
from nimproxy.config.model_mapping import ModelMapping
from nimproxy.core.errors import NimProxyError
from nimproxy.observability.logging import log_event
from nimproxy.util.logger import logger


class TranslationGateway:
    """
    Stateless per request: resolve the alias, shape the NIM payload, make one
    upstream call and reshape the answer. Mapping, flags and upstream client
    are injected and never mutated.
    """

    def __init__(
        self,
        *,
        model_mapping: ModelMapping,
        flags: FeatureFlags,
        upstream: NimUpstreamClient,
        model_owner: str = "railway-nim",
    ) -> None:
        self.model_mapping = model_mapping
        self.flags = flags
        self.upstream = upstream
        self.model_owner = model_owner

    def list_models(self) -> dict[str, Any]:
        return to_model_list(self.model_mapping, self.model_owner)

    def build_upstream_payload(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return to_upstream_chat(payload, self.model_mapping, self.flags)

    async def create_chat_completion(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        started = time.monotonic()
        requested_model = payload.get("model")
        upstream_payload = self.build_upstream_payload(payload)
        upstream_body = await self.upstream.create_chat_completion(upstream_payload)
        response = to_chat_response(upstream_body, requested_model, self.flags)
        log_event(
            "chat_completion",
            model=requested_model,
            upstream_model=upstream_payload["model"],
            choices=len(response["choices"]),
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return response

    async def stream_chat_completion(self, payload: Mapping[str, Any]) -> AsyncGenerator[bytes, None]:
        """
        Open the upstream stream and return a generator of rewritten SSE bytes.

        Upstream failures before the first byte raise ``UpstreamError`` here;
        failures afterwards are emitted as a final SSE error event.
        """

        requested_model = payload.get("model")
        upstream_payload = self.build_upstream_payload(payload)
        upstream_payload["stream"] = True
        response = await self.upstream.open_chat_stream(upstream_payload)
        rewriter = StreamRewriter(requested_model, self.flags)

        async def generator() -> AsyncGenerator[bytes, None]:
            saw_done = False
            try:
                async for line in self.upstream.iter_stream_lines(response):
                    chunk = rewriter.rewrite_line(line)
                    if chunk is None:
                        continue
                    if chunk.endswith(_stream_done_sse_chunk()):
                        saw_done = True
                    yield chunk
            except NimProxyError as exc:
                logger.warning("stream relay failed model=%s error=%s", requested_model, exc)
                yield _stream_error_sse_chunk(exc)
                if not saw_done:
                    yield _stream_done_sse_chunk()
                return
            log_event("chat_completion_stream", model=requested_model, upstream_model=upstream_payload["model"])

        return generator()
