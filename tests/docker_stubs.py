"""测试桩：容器运行时桩（真实 socketpair 推送多路复用帧）与直接写工作区的模拟引擎。"""

from __future__ import annotations

import socket
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from supervisor.domain.enums import JobState
from supervisor.infra.container.demux import encode_frame
from supervisor.infra.container.engine import ContainerRunResult


class FakeContainer:
    """容器桩：通过真实 socketpair 推送多路复用帧，模拟 attach/start/wait/kill。"""

    def __init__(
        self,
        *,
        frames: list[tuple[int, bytes]] | None = None,
        exit_code: int = 0,
        run_seconds: float = 0.0,
        chunk_size: int | None = None,
        kill_error: Exception | None = None,
        start_error: Exception | None = None,
        trailing_garbage: bytes = b"",
        wait_error: Exception | None = None,
    ) -> None:
        self.short_id = "fake0001"
        self.frames = frames or []
        self.exit_code = exit_code
        self.run_seconds = run_seconds
        self.chunk_size = chunk_size
        self.kill_error = kill_error
        self.start_error = start_error
        self.trailing_garbage = trailing_garbage
        self.wait_error = wait_error
        self.killed = False
        self.removed = False
        self.attached_before_start: bool | None = None
        self.wait_conditions: list[str | None] = []
        self._started = False
        self._server, self._client = socket.socketpair()
        self._kill_event = threading.Event()
        self._exited = threading.Event()

    def attach_socket(self, params: dict[str, Any]) -> socket.socket:
        self.attach_params = params
        self.attached_before_start = not self._started
        return self._client

    def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self._started = True
        threading.Thread(target=self._run, daemon=True).start()

    def _run(self) -> None:
        stream = b"".join(encode_frame(kind, payload) for kind, payload in self.frames) + self.trailing_garbage
        step = self.chunk_size or len(stream) or 1
        try:
            for offset in range(0, len(stream), step):
                self._server.sendall(stream[offset:offset + step])
            self._kill_event.wait(self.run_seconds)
        finally:
            self._server.close()
            self._exited.set()

    def wait(self, condition: str | None = None, timeout: float | None = None) -> dict[str, Any]:
        self.wait_conditions.append(condition)
        self._exited.wait()
        if self.wait_error is not None:
            raise self.wait_error
        return {"StatusCode": 137 if self.killed else self.exit_code, "Error": None}

    def kill(self) -> None:
        if self.kill_error is not None:
            raise self.kill_error
        self.killed = True
        self._kill_event.set()

    def remove(self, force: bool = False) -> None:
        self.removed = True
        self._kill_event.set()
        if not self._started:
            # 未启动的容器被删除时同样结束 attach 流与 wait。
            self._server.close()
            self._exited.set()


class FakeContainers:
    def __init__(self, container: FakeContainer | None = None, create_error: Exception | None = None) -> None:
        self.container = container
        self.create_error = create_error
        self.create_calls: list[tuple[str, dict[str, Any]]] = []

    def create(self, image: str, **kwargs: Any) -> FakeContainer:
        self.create_calls.append((image, kwargs))
        if self.create_error is not None:
            raise self.create_error
        assert self.container is not None
        return self.container


class FakeDockerClient:
    def __init__(self, container: FakeContainer | None = None, create_error: Exception | None = None) -> None:
        self.containers = FakeContainers(container, create_error)

    def version(self) -> dict[str, Any]:
        return {"Version": "fake", "ApiVersion": "1.43", "Components": [{"Name": "Engine"}]}


class SimulatedEngine:
    """模拟容器：把预设的 stdout/stderr 与输出文件写进挂载的工作区。"""

    def __init__(
        self,
        *,
        stdout: bytes = b"",
        stderr: bytes = b"",
        exit_code: int = 0,
        outputs: dict[str, bytes] | None = None,
        side_effect: Callable[[Path], None] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.outputs = outputs or {}
        self.side_effect = side_effect
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def run(self, *, workspace_dir: Path, **kwargs: Any) -> ContainerRunResult:
        self.calls.append({"workspace_dir": workspace_dir, **kwargs})
        if self.error is not None:
            raise self.error
        for name, content in self.outputs.items():
            target = workspace_dir / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        if self.side_effect is not None:
            self.side_effect(workspace_dir)
        (workspace_dir / "stdout").write_bytes(self.stdout)
        (workspace_dir / "stderr").write_bytes(self.stderr)
        return ContainerRunResult(
            exit_code=self.exit_code,
            stdout=self.stdout,
            stderr=self.stderr,
            timed_out=False,
            state=JobState.completed,
            duration_ms=1.0,
        )
