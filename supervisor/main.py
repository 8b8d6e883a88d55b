"""FastAPI 应用入口：初始化生命周期、中间件、健康检查与路由挂载。"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import asyncio
import logging
import time
from uuid import uuid4

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from supervisor.api.router import api_router
from supervisor.application.container import get_container_engine, shutdown_container_resources
from supervisor.config import get_settings
from supervisor.infra.logging.context import bind_log_context
from supervisor.infra.logging.setup import configure_logging, shutdown_logging

settings = get_settings()
configure_logging(settings, process_role="api")
logger = logging.getLogger(__name__)


async def _probe_container_runtime() -> None:
    """启动时探测容器运行时；不可达只记录错误，请求阶段会以 execution_failed 返回。"""
    started = time.perf_counter()
    try:
        version = await asyncio.to_thread(get_container_engine().ping)
    except Exception as exc:
        logger.error(
            "container runtime unreachable",
            extra={
                "event": "container_runtime.probe.failed",
                "external_service": "container-runtime",
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        return
    logger.info(
        "container runtime reachable",
        extra={
            "event": "container_runtime.probe.succeeded",
            "external_service": "container-runtime",
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "payload_preview": {
                "version": version.get("Version"),
                "api_version": version.get("ApiVersion"),
                "components": [item.get("Name") for item in version.get("Components", []) or []],
            },
        },
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """应用生命周期：启动探测容器运行时，关闭释放依赖资源。"""
    logger.info(
        "api startup begin",
        extra={"event": "api.startup.started", "payload_preview": {"storage_root": str(settings.storage_root)}},
    )
    await _probe_container_runtime()
    logger.info("api startup ready", extra={"event": "api.startup.succeeded"})
    try:
        yield
    finally:
        logger.info("api shutdown begin", extra={"event": "api.shutdown.started"})
        shutdown_container_resources()
        shutdown_logging()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

if settings.cors_allowed_origins_list():
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins_list(),
        allow_methods=settings.cors_allowed_methods_list(),
        allow_headers=settings.cors_allowed_headers_list(),
        allow_credentials=settings.cors_allow_credentials,
    )


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    """透传或生成 X-Request-Id，并回写到响应头。"""
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    started = time.perf_counter()
    with bind_log_context(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.exception(
                "http request failed",
                extra={
                    "event": "http.request.failed",
                    "op": f"{request.method} {request.url.path}",
                    "duration_ms": duration_ms,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "http request completed",
            extra={
                "event": "http.request.completed",
                "op": f"{request.method} {request.url.path}",
                "duration_ms": duration_ms,
                "status_code": response.status_code,
            },
        )
    response.headers["X-Request-Id"] = request_id
    return response


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(api_router)


def run() -> None:
    """以 uvicorn 启动监督服务。"""
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
