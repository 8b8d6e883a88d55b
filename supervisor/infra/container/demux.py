"""容器 attach 流解复用：按帧头拆分 stdout/stderr，容忍分块边界与帧边界不对齐。

帧格式（Docker/Podman 非 TTY 模式）:
- 第 0 字节: 流类型（1=stdout，2=stderr，其余忽略）
- 第 1-3 字节: 保留
- 第 4-7 字节: 负载长度（大端 uint32）
- 之后: 负载
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Callable, Iterable

STDOUT_STREAM = 1
STDERR_STREAM = 2
HEADER_SIZE = 8

_HEADER = struct.Struct(">BxxxL")

logger = logging.getLogger(__name__)

Sink = Callable[[bytes], None]


class StreamDemultiplexer:
    """增量解复用器：完整帧到达即投递，残缺帧缓存到下一块数据。"""

    def __init__(self, on_stdout: Sink, on_stderr: Sink) -> None:
        self._sinks: dict[int, Sink] = {STDOUT_STREAM: on_stdout, STDERR_STREAM: on_stderr}
        self._buffer = bytearray()
        self._closed = False

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> None:
        """消费一块原始字节，投递其中所有完整帧。"""
        if self._closed:
            raise RuntimeError("demultiplexer is already closed")
        if not chunk:
            return
        self._buffer.extend(chunk)
        offset = 0
        size = len(self._buffer)
        while size - offset >= HEADER_SIZE:
            stream_type, payload_size = _HEADER.unpack_from(self._buffer, offset)
            frame_end = offset + HEADER_SIZE + payload_size
            if frame_end > size:
                break
            sink = self._sinks.get(stream_type)
            if sink is not None and payload_size:
                sink(bytes(self._buffer[offset + HEADER_SIZE:frame_end]))
            offset = frame_end
        if offset:
            del self._buffer[:offset]

    def close(self) -> int:
        """结束解复用；残缺尾帧直接丢弃，返回被丢弃的字节数。"""
        discarded = len(self._buffer)
        self._buffer.clear()
        self._closed = True
        if discarded:
            logger.debug(
                "discarded incomplete trailing frame",
                extra={"event": "container.stream.truncated", "payload_preview": {"bytes": discarded}},
            )
        return discarded


def demultiplex(chunks: Iterable[bytes]) -> tuple[bytes, bytes]:
    """一次性解复用整段流，返回 (stdout, stderr)。"""
    stdout = bytearray()
    stderr = bytearray()
    demuxer = StreamDemultiplexer(stdout.extend, stderr.extend)
    for chunk in chunks:
        demuxer.feed(chunk)
    demuxer.close()
    return bytes(stdout), bytes(stderr)


def encode_frame(stream_type: int, payload: bytes) -> bytes:
    """按相同帧格式编码单个负载，供测试与回放使用。"""
    return _HEADER.pack(stream_type, len(payload)) + payload
