"""日志初始化：JSON 行格式、队列异步落盘、敏感信息脱敏与按模块/作业放行 DEBUG。"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import Any

from supervisor.config import Settings
from supervisor.infra.logging.context import LOG_CONTEXT_FIELDS, get_log_context

SERVICE_NAME = "aa-tool-supervisor"

# 第三方库默认只保留 WARNING 及以上。
NOISY_LOGGERS = ("uvicorn.access", "urllib3", "docker")

# record 上允许输出的附加字段；数值字段会被规整为 int/float。
NUMERIC_FIELDS = ("duration_ms", "status_code", "exit_code")
TEXT_FIELDS = ("event", "op", "external_service", "container_id", "error_type")

_CREDENTIAL_RE = re.compile(
    r"(?i)\b(authorization\s*[:=]\s*bearer|x-api-key\s*[:=]|password\s*[:=]|token\s*[:=]|secret\s*[:=])\s*[^\s,;\"']+"
)
# 请求里的 fileContent 是整份 base64 文档，日志中只保留长度。
_BASE64_BLOB_RE = re.compile(r"[A-Za-z0-9+/]{256,}={0,2}")

_listener: QueueListener | None = None


def redact_text(value: str | None, mode: str) -> str | None:
    """按模式脱敏：standard 掩盖凭据并折叠 base64 大块，strict 额外掩盖完整键值，off 原样返回。"""
    if value is None:
        return None
    text = str(value)
    mode = mode.lower()
    if mode == "off":
        return text
    text = _CREDENTIAL_RE.sub(lambda match: f"{match.group(1)} ***", text)
    text = _BASE64_BLOB_RE.sub(lambda match: f"<base64 {len(match.group(0))} chars>", text)
    if mode == "strict":
        text = re.sub(r"(?i)\b(authorization|password|token|secret)\S*", r"\1=***", text)
    return text


def render_payload_preview(payload: Any, *, max_chars: int, redaction_mode: str) -> str | None:
    """将附加载荷序列化为截断后的预览文本。"""
    if payload is None:
        return None
    serialized = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False, default=str)
    redacted = redact_text(serialized, redaction_mode) or ""
    if len(redacted) > max_chars:
        return f"{redacted[:max_chars]}...(truncated)"
    return redacted


def _as_number(value: Any) -> int | float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_level(level_text: str) -> int:
    level = logging.getLevelName(level_text.upper())
    return level if isinstance(level, int) else logging.INFO


class DebugRoutingFilter(logging.Filter):
    """全局按 min_level 过滤；DEBUG 仅对指定模块前缀或指定 job_id 放行。"""

    def __init__(self, *, min_level: int, debug_modules: set[str], debug_job_ids: set[str]) -> None:
        super().__init__()
        self._min_level = min_level
        self._debug_prefixes = tuple(f"{name}." for name in debug_modules)
        self._debug_modules = debug_modules
        self._debug_job_ids = debug_job_ids

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self._min_level:
            return True
        if record.levelno != logging.DEBUG:
            return False
        if record.name in self._debug_modules or record.name.startswith(self._debug_prefixes):
            return True
        return getattr(record, "job_id", None) in self._debug_job_ids


class ContextInjectionFilter(logging.Filter):
    """入队前把 contextvars 中的标识写入 record；监听线程看不到调用方的上下文。"""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in get_log_context().items():
            if value is not None and getattr(record, name, None) is None:
                setattr(record, name, value)
        return True


class StructuredJsonFormatter(logging.Formatter):
    """一条记录一行 JSON；值为 None 的字段不输出。"""

    def __init__(self, *, process_role: str, redaction_mode: str, payload_preview_chars: int) -> None:
        super().__init__()
        self._process_role = process_role
        self._redaction_mode = redaction_mode
        self._payload_preview_chars = payload_preview_chars

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "process_role": self._process_role,
            "module": record.name,
            "message": redact_text(record.getMessage(), self._redaction_mode),
        }
        for name in (*LOG_CONTEXT_FIELDS, *TEXT_FIELDS):
            entry[name] = getattr(record, name, None)
        for name in NUMERIC_FIELDS:
            entry[name] = _as_number(getattr(record, name, None))

        error = getattr(record, "error", None)
        if error is None and record.exc_info:
            error = self.formatException(record.exc_info)
        if error is not None:
            entry["error"] = redact_text(str(error), self._redaction_mode)
        entry["payload_preview"] = render_payload_preview(
            getattr(record, "payload_preview", None),
            max_chars=self._payload_preview_chars,
            redaction_mode=self._redaction_mode,
        )
        return json.dumps({key: value for key, value in entry.items() if value is not None}, ensure_ascii=False)


def configure_logging(settings: Settings, *, process_role: str) -> Path:
    """接管根 logger：记录经队列交给监听线程，写入轮转 JSONL 文件，ERROR 同时输出到 stderr。

    返回日志文件路径。重复调用会先停止上一次的监听线程。
    """
    global _listener
    shutdown_logging()

    log_dir = settings.log_dir if settings.log_dir.is_absolute() else (Path.cwd() / settings.log_dir).resolve()
    log_file = log_dir / process_role / "supervisor.jsonl"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    formatter = StructuredJsonFormatter(
        process_role=process_role,
        redaction_mode=settings.log_redaction_mode,
        payload_preview_chars=settings.log_payload_preview_chars,
    )
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    queue: SimpleQueue[logging.LogRecord] = SimpleQueue()
    queue_handler = QueueHandler(queue)
    queue_handler.addFilter(ContextInjectionFilter())
    queue_handler.addFilter(
        DebugRoutingFilter(
            min_level=_parse_level(settings.log_level),
            debug_modules=set(settings.log_debug_modules_list()),
            debug_job_ids=set(settings.log_debug_job_ids_list()),
        )
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(queue_handler)
    root.setLevel(logging.DEBUG)

    _listener = QueueListener(queue, file_handler, stderr_handler, respect_handler_level=True)
    _listener.start()

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_file


def shutdown_logging() -> None:
    """停止队列监听线程，刷新并关闭落盘句柄。"""
    global _listener
    listener, _listener = _listener, None
    if listener is None:
        return
    listener.stop()
    for handler in listener.handlers:
        handler.close()
