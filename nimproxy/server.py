"""Process entry: validate configuration, then serve with uvicorn."""

from __future__ import annotations

import sys

import uvicorn

from nimproxy.config.settings import Settings, settings
from nimproxy.core.errors import ConfigurationError
from nimproxy.core.gateway import create_app
from nimproxy.init_config import assert_upstream_credentials_ready
from nimproxy.util.logger import logger


def main(app_settings: Settings | None = None) -> None:
    app_settings = app_settings or settings
    try:
        assert_upstream_credentials_ready(app_settings)
        app = create_app(app_settings)
    except ConfigurationError as exc:
        # 监听端口之前退出
        logger.error("startup aborted: %s", exc)
        sys.exit(1)

    logger.info(
        "server starting host=%s port=%s upstream=%s show_reasoning=%s thinking_mode=%s",
        app_settings.host,
        app_settings.port,
        app_settings.nim_api_base,
        app_settings.show_reasoning,
        app_settings.enable_thinking_mode,
    )
    uvicorn.run(app, host=app_settings.host, port=app_settings.port, log_level=app_settings.log_level.lower())


if __name__ == "__main__":
    main()
