"""日志上下文：基于 contextvars 透传请求与作业标识，跨 asyncio.to_thread 自动继承。"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType

LOG_CONTEXT_FIELDS = ("request_id", "job_id", "session_id", "tool")

_EMPTY: Mapping[str, str | None] = MappingProxyType({})
_log_context: ContextVar[Mapping[str, str | None]] = ContextVar("supervisor_log_context", default=_EMPTY)


def get_log_context() -> dict[str, str | None]:
    """返回当前上下文中的全部日志字段，未绑定的字段为 None。"""
    current = _log_context.get()
    return {name: current.get(name) for name in LOG_CONTEXT_FIELDS}


@contextmanager
def bind_log_context(**fields: str | None) -> Iterator[None]:
    """在 with 范围内叠加绑定日志字段，退出时恢复外层取值。

    只接受 LOG_CONTEXT_FIELDS 中的字段名；显式传 None 可在内层清除外层的值。
    """
    unknown = set(fields) - set(LOG_CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"unknown log context fields: {', '.join(sorted(unknown))}")
    merged = {**_log_context.get(), **fields}
    token = _log_context.set(MappingProxyType(merged))
    try:
        yield
    finally:
        _log_context.reset(token)
