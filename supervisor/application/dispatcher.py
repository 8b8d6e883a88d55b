"""请求分发服务：校验工具请求、创建作业工作区、调用处理器并汇总产物。"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from supervisor.domain.enums import JobState
from supervisor.domain.errors import ToolExecutionError, ToolValidationError, UnknownToolError
from supervisor.domain.models import ToolExecutionContext
from supervisor.domain.tools.registry import ToolRegistry
from supervisor.infra.logging.context import bind_log_context
from supervisor.infra.storage.artifact import ArtifactManifest, artifact_url, categorize
from supervisor.infra.storage.workspace import WorkspaceStore

DEFAULT_PREVIEW_LIMIT = 10 * 1024

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobReport:
    """单个作业的对外结果视图。"""
    session_id: str
    tool: str
    job_id: str
    exit_code: int
    artifacts: ArtifactManifest
    stdout: str | None = None
    stdout_trimmed: bool = False
    stderr: str | None = None
    stderr_trimmed: bool = False


def new_job_id() -> str:
    return uuid4().hex[:12]


def preview_output(text: str | None, limit: int = DEFAULT_PREVIEW_LIMIT) -> tuple[str | None, bool]:
    """空输出返回 None；上限按 UTF-8 字节计，超出时在字符边界截断并标记 trimmed，完整内容仍可作为产物下载。"""
    if not text:
        return None, False
    raw = text.encode("utf-8")
    if len(raw) > limit:
        # 丢弃被切断的多字节字符尾部。
        return raw[:limit].decode("utf-8", errors="ignore"), True
    return text, False


def _validation_issues(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {
            "loc": [str(part) for part in item.get("loc", ())],
            "msg": item.get("msg", ""),
            "type": item.get("type", ""),
        }
        for item in exc.errors()
    ]


class ToolDispatcher:
    """API 边界的分发器：请求 → 处理器 → 产物清单，所有作业之间互不共享可变状态。"""
    def __init__(
        self,
        *,
        registry: ToolRegistry,
        workspace_store: WorkspaceStore,
        max_timeout_seconds: int = 900,
        preview_limit: int = DEFAULT_PREVIEW_LIMIT,
    ) -> None:
        self._registry = registry
        self._workspace_store = workspace_store
        self._max_timeout_seconds = max_timeout_seconds
        self._preview_limit = preview_limit

    def list_tools(self) -> dict[str, dict[str, Any]]:
        return self._registry.describe()

    def execute(self, payload: Any, *, protocol: str, host: str) -> JobReport:
        """执行一次工具调用；校验失败与未知工具不会创建任何工作区。"""
        if not isinstance(payload, dict):
            raise ToolValidationError(
                "request body must be a JSON object",
                [{"loc": ["body"], "msg": "expected an object", "type": "dict_type"}],
            )
        tool = payload.get("tool")
        if not isinstance(tool, str) or not self._registry.has(tool):
            raise UnknownToolError(tool, self._registry.tool_types())
        handler = self._registry.get(tool)
        try:
            request = handler.request_model.model_validate(payload)
        except ValidationError as exc:
            raise ToolValidationError(f"invalid {handler.tool_type} request", _validation_issues(exc)) from exc

        job_id = new_job_id()
        timeout_seconds = min(request.timeout, self._max_timeout_seconds)
        with bind_log_context(job_id=job_id, session_id=request.session_id, tool=handler.tool_type):
            logger.info(
                "tool execution requested",
                extra={"event": f"job.state.{JobState.created.value}", "payload_preview": {"timeout": timeout_seconds}},
            )
            started = time.perf_counter()
            try:
                workspace_dir = self._workspace_store.create_workspace(request.session_id, job_id)
                logger.info("workspace ready", extra={"event": f"job.state.{JobState.workspace_ready.value}"})
                context = ToolExecutionContext(
                    session_id=request.session_id,
                    job_id=job_id,
                    workspace_dir=workspace_dir,
                    timeout_seconds=timeout_seconds,
                    protocol=protocol,
                    host=host,
                )
                result = handler.execute(request, context)
            except Exception as exc:
                # 已写入的文件保留在磁盘上，便于排查。
                logger.exception(
                    "tool execution failed",
                    extra={
                        "event": "tool.execute.failed",
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    },
                )
                raise ToolExecutionError(f"execution failed: {exc}") from exc

            files = self._workspace_store.list_files(workspace_dir)
            url_for = partial(artifact_url, protocol, host, request.session_id, job_id)
            manifest = categorize(files, result.input_files, url_for)

            stdout, stdout_trimmed = self._preview(workspace_dir, "stdout", result.stdout, result.stdout_trimmed)
            stderr, stderr_trimmed = self._preview(workspace_dir, "stderr", result.stderr, result.stderr_trimmed)

            logger.info(
                "artifacts written",
                extra={
                    "event": f"job.state.{JobState.artifacts_written.value}",
                    "exit_code": result.exit_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "payload_preview": {
                        "inputs": sorted(manifest.inputs),
                        "outputs": sorted(manifest.outputs),
                        "timed_out": result.timed_out,
                    },
                },
            )
            return JobReport(
                session_id=request.session_id,
                tool=handler.tool_type,
                job_id=job_id,
                exit_code=result.exit_code,
                artifacts=manifest,
                stdout=stdout,
                stdout_trimmed=stdout_trimmed,
                stderr=stderr,
                stderr_trimmed=stderr_trimmed,
            )

    def _preview(
        self,
        workspace_dir: Path,
        stream: str,
        captured: str | None,
        already_trimmed: bool,
    ) -> tuple[str | None, bool]:
        """优先使用处理器已捕获的文本，否则读取工作区中的 stdout/stderr 文件。"""
        if captured is None:
            return preview_output(self._workspace_store.read_text(workspace_dir, stream), self._preview_limit)
        text, trimmed = preview_output(captured, self._preview_limit)
        return text, trimmed or already_trimmed
