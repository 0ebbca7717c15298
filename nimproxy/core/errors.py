"""Project error hierarchy."""

from __future__ import annotations

from typing import Any

PROXY_ERROR_MESSAGE = "Proxy error"
PROXY_ERROR_STATUS = 500


class NimProxyError(Exception):
    """Base error."""


class ConfigurationError(NimProxyError):
    """Raised at startup when required configuration is missing."""


class ModelMappingError(ConfigurationError):
    """Raised when a model mapping file cannot be loaded."""


class UpstreamError(NimProxyError):
    """Raised when the upstream call fails or answers with a non-2xx status."""

    def __init__(self, message: str, *, status_code: int | None = None, detail: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        # 上游原始错误响应体（JSON 已解析为 dict，否则为文本）
        self.detail = detail


def error_detail(exc: BaseException) -> Any:
    """Prefer the upstream's raw error body, else a local description."""

    # 空对象 {} / [] 也是上游给出的原始响应体，只有缺失或空文本才回退
    if isinstance(exc, UpstreamError) and exc.detail is not None and exc.detail != "":
        return exc.detail
    text = str(exc).strip()
    return text or exc.__class__.__name__


def translate_error(exc: BaseException) -> tuple[int, dict[str, Any]]:
    """
    Fold every upstream or reshaping failure into one proxy error shape.

    Auth failures, rate limits and malformed bodies are intentionally not
    distinguished; callers only ever see status 500 with the raw detail.
    """

    return PROXY_ERROR_STATUS, {
        "error": {
            "message": PROXY_ERROR_MESSAGE,
            "detail": error_detail(exc),
        }
    }
