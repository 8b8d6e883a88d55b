"""容器执行引擎：创建受限容器、attach 输出、与超时竞速并保证终止与清理。"""

from __future__ import annotations

import contextvars
import logging
import time
from collections.abc import Callable
from concurrent import futures
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from docker import DockerClient
from docker.errors import NotFound
from docker.utils import socket as socket_utils

from supervisor.domain.enums import JobState
from supervisor.domain.errors import ContainerRuntimeError
from supervisor.domain.models import ResourceProfile
from supervisor.infra.container.demux import StreamDemultiplexer
from supervisor.infra.storage.workspace import WorkspaceStore

# 超时哨兵退出码，真实进程退出码不会为负数。
TIMEOUT_EXIT_CODE = -1

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ContainerRunResult:
    """单次容器运行结果，stdout/stderr 为解复用后的原始字节。"""
    exit_code: int
    stdout: bytes
    stderr: bytes
    timed_out: bool
    state: JobState
    duration_ms: float


def timeout_message(elapsed_seconds: float, timeout_seconds: int) -> str:
    return f"\nExecution timed out after {elapsed_seconds:.2f}s (timeout was set to {timeout_seconds}s)\n"


class ContainerEngine:
    """同步容器执行引擎；每次 run 使用独立容器与独立线程，作业间无共享可变状态。"""

    def __init__(
        self,
        client_factory: Callable[[], DockerClient],
        workspace_store: WorkspaceStore,
        *,
        container_workdir: str = "/workspace",
        bind_mount_mode: str = "rw,Z",
        drain_timeout_seconds: float = 5.0,
        read_chunk_size: int = 4096,
    ) -> None:
        self._client_factory = client_factory
        self._workspace_store = workspace_store
        self._container_workdir = container_workdir
        self._bind_mount_mode = bind_mount_mode
        self._drain_timeout_seconds = drain_timeout_seconds
        self._read_chunk_size = read_chunk_size

    def run(
        self,
        *,
        image: str,
        command: str,
        workspace_dir: Path,
        profile: ResourceProfile,
        timeout_seconds: int,
        job_id: str | None = None,
    ) -> ContainerRunResult:
        """运行命令直到终态或超时，并将 stdout/stderr 写入工作区。"""
        stdout = bytearray()
        stderr = bytearray()
        demuxer = StreamDemultiplexer(stdout.extend, stderr.extend)
        pool = futures.ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"container-{job_id or 'job'}")
        container: Any = None
        sock: Any = None
        reader: futures.Future[None] | None = None
        started = time.perf_counter()
        try:
            try:
                client = self._client_factory()
                container = client.containers.create(
                    image,
                    **self._create_kwargs(command, workspace_dir, profile, job_id),
                )
                # 必须先 attach 再 start，否则容器启动后的早期输出会丢失。
                sock = container.attach_socket(params={"stdout": 1, "stderr": 1, "stream": 1})
                reader = pool.submit(contextvars.copy_context().run, self._pump, sock, demuxer)
                # wait 先于 start 提交只能缩小竞态窗口，并不保证守护进程已登记 wait；
                # 极短命容器仍可能先被 auto_remove 删除，此时 wait 返回 NotFound。
                waiter = pool.submit(contextvars.copy_context().run, container.wait, condition="next-exit")
                started = time.perf_counter()
                container.start()
                self._log_state(JobState.container_running, container)

                done, _pending = futures.wait([waiter], timeout=timeout_seconds)
                if waiter in done:
                    try:
                        status = waiter.result()
                    except NotFound as exc:
                        raise ContainerRuntimeError(
                            "container exited and was removed before its exit status could be read"
                        ) from exc
                    exit_code = int(status.get("StatusCode", TIMEOUT_EXIT_CODE))
                    timed_out = False
                else:
                    exit_code = TIMEOUT_EXIT_CODE
                    timed_out = True
                    self._kill(container)
            except Exception as exc:
                logger.exception(
                    "container execution failed",
                    extra={
                        "event": f"job.state.{JobState.failed.value}",
                        "external_service": "container-runtime",
                        "op": "container.run",
                        "container_id": getattr(container, "short_id", None),
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                raise ContainerRuntimeError(f"container execution failed: {exc}") from exc

            elapsed = time.perf_counter() - started
            self._drain(reader, sock)
            demuxer.close()
            if timed_out:
                stderr.extend(timeout_message(elapsed, timeout_seconds).encode("utf-8"))
            state = JobState.timed_out if timed_out else JobState.completed
            duration_ms = round(elapsed * 1000, 2)
            self._log_state(state, container, exit_code=exit_code, duration_ms=duration_ms)

            # 仅在容器进入终态后落盘，空输出也生成文件，调用方始终可定位。
            self._workspace_store.write_file(workspace_dir, "stdout", bytes(stdout))
            self._workspace_store.write_file(workspace_dir, "stderr", bytes(stderr))
            return ContainerRunResult(
                exit_code=exit_code,
                stdout=bytes(stdout),
                stderr=bytes(stderr),
                timed_out=timed_out,
                state=state,
                duration_ms=duration_ms,
            )
        finally:
            self._close_socket(sock)
            if container is not None:
                self._remove(container)
            pool.shutdown(wait=False)

    def ping(self) -> dict[str, Any]:
        """探测容器运行时并返回版本信息。"""
        return self._client_factory().version()

    def _create_kwargs(
        self,
        command: str,
        workspace_dir: Path,
        profile: ResourceProfile,
        job_id: str | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "command": ["bash", "-c", command],
            "working_dir": self._container_workdir,
            "volumes": {str(workspace_dir): {"bind": self._container_workdir, "mode": self._bind_mount_mode}},
            "mem_limit": profile.memory_bytes,
            "pids_limit": profile.pids_limit,
            "cpu_quota": profile.cpu_quota,
            "cpu_period": profile.cpu_period,
            "auto_remove": True,
            "labels": {"aa-supervisor.job": job_id or ""},
        }
        if profile.network_disabled:
            kwargs["network_mode"] = "none"
        return kwargs

    def _pump(self, sock: Any, demuxer: StreamDemultiplexer) -> None:
        """读取 attach 原始字节并送入解复用器，直到流结束。"""
        while True:
            try:
                chunk = socket_utils.read(sock, self._read_chunk_size)
            except (OSError, ValueError) as exc:
                # 引擎在 drain 超时后主动关闭 socket 会走到这里。
                logger.debug(
                    "attach stream closed",
                    extra={"event": "container.stream.closed", "error_type": type(exc).__name__, "error": str(exc)},
                )
                return
            if not chunk:
                return
            demuxer.feed(chunk)

    def _drain(self, reader: futures.Future[None] | None, sock: Any) -> None:
        """等待读取线程消费完剩余输出，超过 drain 时限则强制关闭 socket。"""
        if reader is None:
            return
        try:
            reader.result(timeout=self._drain_timeout_seconds)
        except futures.TimeoutError:
            logger.warning(
                "attach stream did not close in time",
                extra={"event": "container.stream.drain_timeout", "duration_ms": self._drain_timeout_seconds * 1000},
            )
            self._close_socket(sock)
            reader.cancel()

    def _kill(self, container: Any) -> None:
        """超时后强制终止容器；失败只记录日志，最终由 remove(force) 兜底。"""
        try:
            container.kill()
        except Exception as exc:
            logger.warning(
                "container kill failed",
                extra={
                    "event": "container.kill.failed",
                    "container_id": getattr(container, "short_id", None),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def _remove(self, container: Any) -> None:
        try:
            container.remove(force=True)
        except NotFound:
            # auto_remove 已经删除容器。
            return
        except Exception as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            level = logging.DEBUG if status_code == 409 else logging.WARNING
            logger.log(
                level,
                "container remove failed",
                extra={
                    "event": "container.remove.failed",
                    "container_id": getattr(container, "short_id", None),
                    "status_code": status_code,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    @staticmethod
    def _close_socket(sock: Any) -> None:
        if sock is None:
            return
        try:
            sock.close()
        except OSError:
            pass

    @staticmethod
    def _log_state(state: JobState, container: Any, **fields: Any) -> None:
        logger.info(
            f"job state {state.value}",
            extra={
                "event": f"job.state.{state.value}",
                "container_id": getattr(container, "short_id", None),
                **fields,
            },
        )
