"""FastAPI app entry."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from nimproxy.adapters.openai_compat.router import router as openai_router
from nimproxy.adapters.openai_compat.upstream import NimUpstreamClient
from nimproxy.config.feature_flags import FeatureFlags
from nimproxy.config.model_mapping import ModelMapping, build_model_mapping
from nimproxy.config.settings import Settings, settings as default_settings
from nimproxy.core.translator import TranslationGateway
from nimproxy.util.logger import logger

NOT_FOUND_BODY = {"error": "Not found"}


def _cors_origins(raw: str) -> list[str]:
    origins = [item.strip() for item in raw.split(",") if item.strip()]
    return origins or ["*"]


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    await app.state.gateway.upstream.aclose()


def build_gateway(
    app_settings: Settings,
    *,
    model_mapping: ModelMapping | None = None,
    flags: FeatureFlags | None = None,
    upstream: NimUpstreamClient | None = None,
) -> TranslationGateway:
    if model_mapping is None:
        model_mapping = build_model_mapping(app_settings.model_mapping_path, default=app_settings.default_upstream_model)
    if flags is None:
        flags = FeatureFlags.from_settings(app_settings)
    if upstream is None:
        upstream = NimUpstreamClient.from_settings(app_settings)
    return TranslationGateway(
        model_mapping=model_mapping,
        flags=flags,
        upstream=upstream,
        model_owner=app_settings.model_owner,
    )


def create_app(
    app_settings: Settings | None = None,
    *,
    gateway: TranslationGateway | None = None,
) -> FastAPI:
    app_settings = app_settings or default_settings
    app = FastAPI(title=app_settings.service_name, lifespan=_lifespan)
    app.state.settings = app_settings
    app.state.gateway = gateway or build_gateway(app_settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(app_settings.cors_allow_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(openai_router, prefix="/v1")

    @app.get("/health")
    def health() -> dict:
        logger.debug("health check")
        return {"status": "ok", "service": app_settings.service_name}

    # 未匹配的路径或方法统一返回 404，与方法无关
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code in {404, 405}:
            logger.debug("route not found method=%s path=%s", request.method, request.url.path)
            return JSONResponse(status_code=404, content=NOT_FOUND_BODY)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    return app
