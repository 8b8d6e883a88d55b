"""工具注册中心：管理处理器注册、查询与元信息汇总。"""

from __future__ import annotations

from typing import Any

from supervisor.domain.errors import UnknownToolError
from supervisor.domain.tools.base import ToolHandler


class ToolRegistry:
    """工具注册中心，按 tool_type 索引处理器；启动后只读。"""
    def __init__(self, handlers: list[ToolHandler] | None = None) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: ToolHandler) -> None:
        """注册处理器；同名 tool_type 后注册者覆盖先注册者。"""
        if not isinstance(handler, ToolHandler):
            raise TypeError(f"{type(handler).__name__} does not implement the ToolHandler protocol")
        self._handlers[handler.tool_type] = handler

    def get(self, tool_type: str | None) -> ToolHandler:
        """按工具类型获取处理器，未知类型抛出携带可用工具列表的异常。"""
        handler = self._handlers.get(tool_type) if isinstance(tool_type, str) else None
        if handler is None:
            raise UnknownToolError(tool_type, self.tool_types())
        return handler

    def has(self, tool_type: str) -> bool:
        return tool_type in self._handlers

    def tool_types(self) -> list[str]:
        return list(self._handlers)

    def all(self) -> list[ToolHandler]:
        return list(self._handlers.values())

    def describe(self) -> dict[str, dict[str, Any]]:
        """返回 {tool_type: {name, description, parameters}}，供 GET /tools 发布。"""
        described: dict[str, dict[str, Any]] = {}
        for handler in self.all():
            meta = handler.metadata()
            described[meta.tool_type] = {
                "name": meta.name,
                "description": meta.description,
                "parameters": meta.parameters,
            }
        return described
