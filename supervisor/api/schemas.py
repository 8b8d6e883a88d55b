"""API 响应数据模型定义，约束工具列表与执行结果的返回结构。"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ToolDescriptor(BaseModel):
    """单个工具的对外描述。"""
    name: str
    description: str
    parameters: dict[str, Any]


class ArtifactsResponse(BaseModel):
    """产物清单：文件名到下载 URL 的映射。"""
    inputs: dict[str, str] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)


class ToolExecutionResponse(BaseModel):
    """POST /tools/execute 响应模型；空的 stdout/stderr 与未截断标记不会出现在响应中。"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    tool: str
    id: str
    exit_code: int
    artifacts: ArtifactsResponse
    stdout: str | None = None
    stdout_trimmed: bool | None = None
    stderr: str | None = None
    stderr_trimmed: bool | None = None
