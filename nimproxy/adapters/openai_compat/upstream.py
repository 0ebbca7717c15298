"""
NIM 上游 HTTP 转发：请求头构造、JSON 调用与流式调用。
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncGenerator
from urllib.parse import urlparse, urlunparse

import httpx

from nimproxy.config.settings import Settings
from nimproxy.core.errors import UpstreamError
from nimproxy.util.logger import logger

CHAT_COMPLETIONS_PATH = "/chat/completions"


def _normalize_upstream_base(raw_base: str) -> str:
    candidate = raw_base.strip()
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError("invalid_upstream_scheme")
    if not parsed.netloc:
        raise ValueError("invalid_upstream_host")
    cleaned_path = parsed.path.rstrip("/")
    return urlunparse((parsed.scheme, parsed.netloc, cleaned_path, "", parsed.query, ""))


def _build_upstream_url(upstream_base: str, route_path: str = CHAT_COMPLETIONS_PATH) -> str:
    if not route_path.startswith("/"):
        route_path = f"/{route_path}"
    return f"{upstream_base.rstrip('/')}{route_path}"


def _build_auth_headers(api_key: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def _decode_json_or_text(body: bytes) -> dict[str, Any] | list | str:
    text = body.decode("utf-8", errors="replace")
    if not text:
        return ""
    try:
        parsed = json.loads(text)
        if isinstance(parsed, (dict, list)):
            return parsed
        return text
    except json.JSONDecodeError:
        return text


def _http_error_message(status_code: int) -> str:
    return f"Request failed with status code {status_code}"


class NimUpstreamClient:
    """Thin async client for one NIM-compatible chat-completions endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 60.0,
        max_connections: int = 100,
        max_keepalive_connections: int = 20,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = _normalize_upstream_base(base_url)
        self.chat_url = _build_upstream_url(self.base_url)
        self._api_key = api_key
        self._timeout = httpx.Timeout(timeout_seconds)
        self._limits = httpx.Limits(
            max_connections=max(1, int(max_connections)),
            max_keepalive_connections=max(0, int(max_keepalive_connections)),
        )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock: asyncio.Lock | None = None

    @classmethod
    def from_settings(cls, source: Settings, transport: httpx.AsyncBaseTransport | None = None) -> "NimUpstreamClient":
        return cls(
            base_url=source.nim_api_base,
            api_key=source.nim_api_key or "",
            timeout_seconds=source.upstream_timeout_seconds,
            max_connections=source.upstream_max_connections,
            max_keepalive_connections=source.upstream_max_keepalive_connections,
            transport=transport,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        if self._client_lock is None:
            self._client_lock = asyncio.Lock()
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=self._timeout,
                    limits=self._limits,
                    transport=self._transport,
                )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _encode(self, payload: dict[str, Any]) -> bytes:
        return json.dumps(payload, ensure_ascii=False).encode("utf-8")

    async def create_chat_completion(self, payload: dict[str, Any]) -> Any:
        """POST the payload and return the decoded 2xx body; raise ``UpstreamError`` otherwise."""

        body = self._encode(payload)
        logger.debug("forward_json start url=%s model=%s payload_bytes=%d", self.chat_url, payload.get("model"), len(body))
        client = await self._get_client()
        try:
            response = await client.post(self.chat_url, content=body, headers=_build_auth_headers(self._api_key))
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
            logger.warning("forward_json http_error url=%s error=%s", self.chat_url, detail)
            raise UpstreamError(f"upstream_unreachable: {detail}") from exc

        logger.debug("forward_json done url=%s status=%s", self.chat_url, response.status_code)
        decoded = _decode_json_or_text(response.content)
        if not response.is_success:
            raise UpstreamError(
                _http_error_message(response.status_code),
                status_code=response.status_code,
                detail=decoded,
            )
        return decoded

    async def open_chat_stream(self, payload: dict[str, Any]) -> httpx.Response:
        """
        Send a streaming request and return the open response.

        The status is checked before returning so failures surface before any
        byte reaches the client. The caller must close the response.
        """

        body = self._encode(payload)
        logger.debug("forward_stream start url=%s model=%s payload_bytes=%d", self.chat_url, payload.get("model"), len(body))
        client = await self._get_client()
        request = client.build_request("POST", self.chat_url, content=body, headers=_build_auth_headers(self._api_key))
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
            logger.warning("forward_stream http_error url=%s error=%s", self.chat_url, detail)
            raise UpstreamError(f"upstream_unreachable: {detail}") from exc

        logger.debug("forward_stream connected url=%s status=%s", self.chat_url, response.status_code)
        if not response.is_success:
            try:
                decoded = _decode_json_or_text(await response.aread())
            finally:
                await response.aclose()
            raise UpstreamError(
                _http_error_message(response.status_code),
                status_code=response.status_code,
                detail=decoded,
            )
        return response

    @staticmethod
    async def iter_stream_lines(response: httpx.Response) -> AsyncGenerator[str, None]:
        try:
            async for line in response.aiter_lines():
                yield line
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or "stream_interrupted"
            raise UpstreamError(f"upstream_stream_error: {detail}") from exc
        finally:
            await response.aclose()
