"""
启动前检查：上游凭据必须存在，否则在监听端口之前退出。
可单独执行：python -m nimproxy.init_config
"""

from __future__ import annotations

import sys

from nimproxy.adapters.openai_compat.upstream import _normalize_upstream_base
from nimproxy.config.settings import Settings, settings
from nimproxy.core.errors import ConfigurationError
from nimproxy.util.logger import logger


def assert_upstream_credentials_ready(app_settings: Settings | None = None) -> None:
    app_settings = app_settings or settings
    if not (app_settings.nim_api_key or "").strip():
        raise ConfigurationError("Missing NIM_API_KEY")
    if not app_settings.nim_api_base.strip():
        raise ConfigurationError("Missing NIM_API_BASE")
    try:
        _normalize_upstream_base(app_settings.nim_api_base)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid NIM_API_BASE {app_settings.nim_api_base!r}: {exc}") from exc


def main() -> None:
    """命令行或 one-off 容器执行时调用。"""
    try:
        assert_upstream_credentials_ready()
    except ConfigurationError as exc:
        logger.error("init_config: %s", exc)
        sys.exit(1)
    logger.info("init_config: upstream credentials ready base=%s", settings.nim_api_base)


if __name__ == "__main__":
    main()
