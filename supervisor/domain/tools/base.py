"""工具能力协议：约束 tool_type/metadata/execute 接口，并提供公共请求模型与沙箱委托。"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, ClassVar, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from supervisor.domain.models import ResourceProfile, ToolExecutionContext, ToolExecutionResult, ToolMetadata
from supervisor.infra.container.engine import ContainerEngine

# 文件系统单个目录名的长度上限。
MAX_SESSION_ID_BYTES = 255
FILENAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")
RESERVED_FILENAMES = frozenset({"stdout", "stderr"})
MIN_TIMEOUT_SECONDS = 1
MAX_TIMEOUT_SECONDS = 900
DEFAULT_TIMEOUT_SECONDS = 30

# 传输层字段不属于工具参数形状，发布 schema 时剔除。
TRANSPORT_FIELDS = ("tool", "sessionId")


def validate_session_id(value: str) -> str:
    """sessionId 是不透明字符串，只要求能安全地作为单个目录名。"""
    if value in {".", ".."} or any(char in value for char in ("/", "\\", "\x00")):
        raise ValueError("sessionId must be a single path segment (no slash, backslash or NUL, not '.' or '..')")
    if len(value.encode("utf-8")) > MAX_SESSION_ID_BYTES:
        raise ValueError(f"sessionId must be at most {MAX_SESSION_ID_BYTES} bytes")
    return value


def validate_workspace_filename(value: str) -> str:
    """校验调用方提供的文件名：单段路径、白名单字符且不占用保留名。"""
    if not FILENAME_RE.match(value) or value in {".", ".."}:
        raise ValueError("filename must be a plain file name ([A-Za-z0-9._-], no path separators)")
    if value in RESERVED_FILENAMES:
        raise ValueError(f"filename {value!r} is reserved for captured output")
    return value


class ToolRequestBase(BaseModel):
    """所有工具请求的公共字段；具体工具以 Literal 的 tool 字段作为判别器。"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    tool: str
    session_id: str = Field(min_length=1, description="Caller session identifier (opaque, used as a directory name)")
    timeout: int = Field(
        default=DEFAULT_TIMEOUT_SECONDS,
        ge=MIN_TIMEOUT_SECONDS,
        le=MAX_TIMEOUT_SECONDS,
        description="Execution timeout in seconds (default: 30s, max: 900s)",
    )

    @field_validator("session_id")
    @classmethod
    def _check_session_id(cls, value: str) -> str:
        return validate_session_id(value)


def parameter_schema(request_model: type[BaseModel]) -> dict[str, Any]:
    """返回工具自身参数的 JSON schema（按别名），不含传输层字段。"""
    schema = request_model.model_json_schema(by_alias=True)
    properties = schema.get("properties", {})
    for name in TRANSPORT_FIELDS:
        properties.pop(name, None)
    if "required" in schema:
        schema["required"] = [name for name in schema["required"] if name not in TRANSPORT_FIELDS]
        if not schema["required"]:
            schema.pop("required")
    return schema


@runtime_checkable
class ToolHandler(Protocol):
    """工具处理器能力集合；新增工具只需实现该协议并注册。"""
    tool_type: ClassVar[str]
    name: ClassVar[str]
    description: ClassVar[str]
    request_model: ClassVar[type[ToolRequestBase]]

    def metadata(self) -> ToolMetadata:
        ...

    def execute(self, request: Any, context: ToolExecutionContext) -> ToolExecutionResult:
        ...


def describe(handler: ToolHandler) -> ToolMetadata:
    """由处理器的类属性构建对外元信息。"""
    return ToolMetadata(
        tool_type=handler.tool_type,
        name=handler.name,
        description=handler.description,
        parameters=parameter_schema(handler.request_model),
    )


def run_in_sandbox(
    engine: ContainerEngine,
    *,
    image: str,
    command: str,
    context: ToolExecutionContext,
    profile: ResourceProfile,
    input_files: set[str],
) -> ToolExecutionResult:
    """将命令委托给容器引擎，并把引擎结果转换为工具执行结果。"""
    outcome = engine.run(
        image=image,
        command=command,
        workspace_dir=Path(context.workspace_dir),
        profile=profile,
        timeout_seconds=context.timeout_seconds,
        job_id=context.job_id,
    )
    return ToolExecutionResult(
        exit_code=outcome.exit_code,
        input_files=set(input_files),
        timed_out=outcome.timed_out,
        duration_ms=outcome.duration_ms,
    )
