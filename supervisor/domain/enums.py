"""领域枚举定义：统一作业状态与代码语言取值。"""

from __future__ import annotations

from enum import Enum


class JobState(str, Enum):
    """作业生命周期状态枚举，终态为 completed/timed_out/failed。"""
    created = "created"
    workspace_ready = "workspace_ready"
    container_running = "container_running"
    completed = "completed"
    timed_out = "timed_out"
    failed = "failed"
    artifacts_written = "artifacts_written"


class Language(str, Enum):
    """代码执行工具支持的语言。"""
    python = "python"
    node = "node"
    bun = "bun"
    bash = "bash"
