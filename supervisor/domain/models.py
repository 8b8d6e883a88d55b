"""领域数据结构定义：执行上下文、执行结果、资源配置与工具元信息。"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class ToolExecutionContext:
    """工具执行上下文，protocol/host 仅用于拼接产物 URL。"""
    session_id: str
    job_id: str
    workspace_dir: Path
    timeout_seconds: int
    protocol: str
    host: str


@dataclass(slots=True)
class ToolExecutionResult:
    """工具执行结果；input_files 用于产物分类时排除输入文件。"""
    exit_code: int
    input_files: set[str]
    stdout: str | None = None
    stdout_trimmed: bool = False
    stderr: str | None = None
    stderr_trimmed: bool = False
    timed_out: bool = False
    duration_ms: float | None = None


@dataclass(frozen=True, slots=True)
class ResourceProfile:
    """容器资源限制：内存、进程数、CPU 配额与网络开关。"""
    memory_bytes: int = 512 * 1024 * 1024
    pids_limit: int = 128
    cpu_quota: int = 50_000
    cpu_period: int = 100_000
    network_disabled: bool = True


@dataclass(slots=True)
class ToolMetadata:
    """工具元信息，用于 GET /tools 对外发布。"""
    tool_type: str
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)
