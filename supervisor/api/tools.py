"""工具接口：发布已注册工具的元数据，并执行工具请求。"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from supervisor.api.schemas import ArtifactsResponse, ToolDescriptor, ToolExecutionResponse
from supervisor.application.container import get_dispatcher
from supervisor.application.dispatcher import JobReport, ToolDispatcher
from supervisor.config import get_settings
from supervisor.domain.errors import ToolExecutionError, ToolValidationError, UnknownToolError

router = APIRouter()
logger = logging.getLogger(__name__)


def _dispatcher() -> ToolDispatcher:
    return get_dispatcher()


def resolve_origin(request: Request) -> tuple[str, str]:
    """确定产物 URL 使用的协议与主机：PUBLIC_BASE_URL > 反向代理头 > 请求本身。"""
    public_base_url = get_settings().public_base_url
    if public_base_url:
        scheme, _, host = public_base_url.rstrip("/").partition("://")
        if host:
            return scheme, host
    protocol = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    # 多级代理时只取最靠近客户端的一项。
    return protocol.split(",")[0].strip(), host.split(",")[0].strip()


def _to_response(report: JobReport) -> ToolExecutionResponse:
    return ToolExecutionResponse(
        session_id=report.session_id,
        tool=report.tool,
        id=report.job_id,
        exit_code=report.exit_code,
        artifacts=ArtifactsResponse(**report.artifacts.as_dict()),
        stdout=report.stdout,
        stdout_trimmed=True if report.stdout_trimmed else None,
        stderr=report.stderr,
        stderr_trimmed=True if report.stderr_trimmed else None,
    )


@router.get("/tools", response_model=dict[str, ToolDescriptor])
def list_tools(dispatcher: ToolDispatcher = Depends(_dispatcher)) -> dict[str, Any]:
    """返回 {tool_type: {name, description, parameters}}。"""
    return dispatcher.list_tools()


@router.post(
    "/tools/execute",
    response_model=ToolExecutionResponse,
    response_model_exclude_none=True,
)
async def execute_tool(
    request: Request,
    dispatcher: ToolDispatcher = Depends(_dispatcher),
) -> ToolExecutionResponse:
    """校验并执行工具请求；超时与非零退出码都属于正常完成。"""
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "validation_failed", "message": f"invalid JSON body: {exc}", "issues": []},
        ) from exc

    protocol, host = resolve_origin(request)
    tool = payload.get("tool") if isinstance(payload, dict) else None
    logger.info("execute_tool requested: tool=%s", tool, extra={"event": "tool.execute.requested"})
    try:
        # 容器等待是阻塞调用，放到线程中执行，避免阻塞事件循环上的其他请求。
        report = await asyncio.to_thread(dispatcher.execute, payload, protocol=protocol, host=host)
    except UnknownToolError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "unknown_tool",
                "message": str(exc),
                "tool": exc.tool,
                "availableTools": exc.available,
            },
        ) from exc
    except ToolValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "validation_failed", "message": str(exc), "issues": exc.issues},
        ) from exc
    except ToolExecutionError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "execution_failed", "message": str(exc)},
        ) from exc
    logger.info(
        "execute_tool completed: tool=%s job_id=%s exit_code=%s",
        report.tool,
        report.job_id,
        report.exit_code,
        extra={"event": "tool.execute.completed", "job_id": report.job_id, "session_id": report.session_id},
    )
    return _to_response(report)
