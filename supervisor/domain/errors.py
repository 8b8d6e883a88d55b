"""领域异常定义：校验失败、未知工具、执行失败与容器运行时故障。"""

from __future__ import annotations

from typing import Any


class SupervisorError(Exception):
    """监督服务业务异常基类。"""


class ToolValidationError(SupervisorError, ValueError):
    """请求结构不满足工具声明的参数形状。"""

    def __init__(self, message: str, issues: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.issues = issues or []


class UnknownToolError(SupervisorError, KeyError):
    """请求的工具类型未注册。"""

    def __init__(self, tool: str | None, available: list[str]) -> None:
        super().__init__(tool)
        self.tool = tool
        self.available = available

    def __str__(self) -> str:
        return f"unknown tool: {self.tool!r} (available: {', '.join(self.available) or 'none'})"


class ToolExecutionError(SupervisorError, RuntimeError):
    """工具执行阶段的非预期异常，对外统一呈现为 execution failed。"""


class ContainerRuntimeError(SupervisorError, RuntimeError):
    """容器运行时不可达、镜像缺失或 attach 失败等引擎级故障。"""
