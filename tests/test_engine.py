"""容器引擎测试：退出码透传、超时终止、attach 顺序、创建参数与故障清理。"""

from __future__ import annotations

import re
from pathlib import Path

import pytest
from docker.errors import NotFound
from docker_stubs import FakeContainer, FakeDockerClient

from supervisor.domain.enums import JobState
from supervisor.domain.errors import ContainerRuntimeError
from supervisor.domain.models import ResourceProfile
from supervisor.infra.container.demux import STDERR_STREAM, STDOUT_STREAM
from supervisor.infra.container.engine import TIMEOUT_EXIT_CODE, ContainerEngine, timeout_message
from supervisor.infra.storage.workspace import WorkspaceStore


def _engine(client: FakeDockerClient, store: WorkspaceStore) -> ContainerEngine:
    return ContainerEngine(lambda: client, store, drain_timeout_seconds=2.0, read_chunk_size=7)


def _run(engine: ContainerEngine, work_dir: Path, *, timeout: int = 5, profile: ResourceProfile | None = None):
    return engine.run(
        image="aa-worker:latest",
        command="python3 script.py",
        workspace_dir=work_dir,
        profile=profile or ResourceProfile(),
        timeout_seconds=timeout,
        job_id="job1",
    )


def test_exit_code_and_streams_are_captured(store: WorkspaceStore) -> None:
    """非零退出码原样透传，stdout/stderr 解复用后写入工作区。"""
    container = FakeContainer(
        frames=[(STDOUT_STREAM, b"hi\n"), (STDERR_STREAM, b"oops\n"), (STDOUT_STREAM, b"bye\n")],
        exit_code=3,
        chunk_size=5,
    )
    work_dir = store.create_workspace("s", "job1")

    result = _run(_engine(FakeDockerClient(container), store), work_dir)

    assert result.exit_code == 3
    assert result.timed_out is False
    assert result.state is JobState.completed
    assert result.stdout == b"hi\nbye\n"
    assert result.stderr == b"oops\n"
    assert (work_dir / "stdout").read_bytes() == b"hi\nbye\n"
    assert (work_dir / "stderr").read_bytes() == b"oops\n"
    assert container.removed is True


def test_empty_output_still_writes_stream_files(store: WorkspaceStore) -> None:
    """无输出时 stdout/stderr 文件依然存在且为空。"""
    work_dir = store.create_workspace("s", "job1")

    result = _run(_engine(FakeDockerClient(FakeContainer()), store), work_dir)

    assert result.exit_code == 0
    assert (work_dir / "stdout").read_bytes() == b""
    assert (work_dir / "stderr").read_bytes() == b""


def test_trailing_partial_frame_is_dropped(store: WorkspaceStore) -> None:
    container = FakeContainer(frames=[(STDOUT_STREAM, b"complete")], trailing_garbage=b"\x01\x00\x00\x00\x00\x00")
    work_dir = store.create_workspace("s", "job1")

    result = _run(_engine(FakeDockerClient(container), store), work_dir)

    assert result.stdout == b"complete"
    assert result.exit_code == 0


def test_timeout_kills_container_and_reports_sentinel(store: WorkspaceStore) -> None:
    """超时后 kill 容器，退出码为 -1，stderr 追加超时说明。"""
    container = FakeContainer(frames=[(STDOUT_STREAM, b"partial")], run_seconds=10)
    work_dir = store.create_workspace("s", "job1")

    result = _run(_engine(FakeDockerClient(container), store), work_dir, timeout=1)

    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.timed_out is True
    assert result.state is JobState.timed_out
    assert container.killed is True
    assert container.removed is True
    assert result.stdout == b"partial"
    stderr = (work_dir / "stderr").read_text(encoding="utf-8")
    assert re.search(r"Execution timed out after \d+\.\d{2}s \(timeout was set to 1s\)", stderr)


def test_kill_failure_is_logged_and_container_still_removed(store: WorkspaceStore) -> None:
    """kill 失败不改变超时结果，最终仍执行强制删除。"""
    container = FakeContainer(run_seconds=10, kill_error=RuntimeError("kill refused"))
    work_dir = store.create_workspace("s", "job1")

    result = _run(_engine(FakeDockerClient(container), store), work_dir, timeout=1)

    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert container.killed is False
    assert container.removed is True


def test_create_failure_raises_runtime_error_without_output_files(store: WorkspaceStore) -> None:
    """镜像缺失等创建失败包装为 ContainerRuntimeError，不写输出文件。"""
    client = FakeDockerClient(create_error=RuntimeError("image not found"))
    work_dir = store.create_workspace("s", "job1")

    with pytest.raises(ContainerRuntimeError, match="image not found"):
        _run(_engine(client, store), work_dir)

    assert not (work_dir / "stdout").exists()
    assert not (work_dir / "stderr").exists()


def test_start_failure_removes_container(store: WorkspaceStore) -> None:
    container = FakeContainer(start_error=RuntimeError("cannot start"))
    work_dir = store.create_workspace("s", "job1")

    with pytest.raises(ContainerRuntimeError):
        _run(_engine(FakeDockerClient(container), store), work_dir)

    assert container.removed is True


def test_container_removed_before_wait_reports_runtime_error(store: WorkspaceStore) -> None:
    """容器在 wait 登记前就被自动删除时，报告运行时错误而不是超时。"""
    container = FakeContainer(frames=[(STDOUT_STREAM, b"x")], wait_error=NotFound("No such container: fake0001"))
    work_dir = store.create_workspace("s", "job1")

    with pytest.raises(ContainerRuntimeError, match="removed before its exit status could be read"):
        _run(_engine(FakeDockerClient(container), store), work_dir)

    assert container.removed is True
    assert not (work_dir / "stdout").exists()


def test_client_factory_failure_is_wrapped(store: WorkspaceStore) -> None:
    """运行时不可达时在执行阶段报错，而不是在构造阶段。"""
    def _unreachable() -> FakeDockerClient:
        raise ConnectionError("socket missing")

    engine = ContainerEngine(_unreachable, store)
    with pytest.raises(ContainerRuntimeError, match="socket missing"):
        _run(engine, store.create_workspace("s", "job1"))


def test_attach_precedes_start_and_wait_uses_next_exit(store: WorkspaceStore) -> None:
    container = FakeContainer(frames=[(STDOUT_STREAM, b"x")])
    _run(_engine(FakeDockerClient(container), store), store.create_workspace("s", "job1"))

    assert container.attached_before_start is True
    assert container.attach_params == {"stdout": 1, "stderr": 1, "stream": 1}
    assert container.wait_conditions == ["next-exit"]


def test_create_kwargs_apply_limits_and_bind_mount(store: WorkspaceStore) -> None:
    """创建参数包含资源限制、网络隔离、自动删除与工作区挂载。"""
    client = FakeDockerClient(FakeContainer())
    work_dir = store.create_workspace("s", "job1")
    profile = ResourceProfile(memory_bytes=256 * 1024 * 1024, pids_limit=64, cpu_quota=25_000)

    _run(_engine(client, store), work_dir, profile=profile)

    image, kwargs = client.containers.create_calls[0]
    assert image == "aa-worker:latest"
    assert kwargs["command"] == ["bash", "-c", "python3 script.py"]
    assert kwargs["working_dir"] == "/workspace"
    assert kwargs["volumes"] == {str(work_dir): {"bind": "/workspace", "mode": "rw,Z"}}
    assert kwargs["mem_limit"] == 256 * 1024 * 1024
    assert kwargs["pids_limit"] == 64
    assert kwargs["cpu_quota"] == 25_000
    assert kwargs["cpu_period"] == 100_000
    assert kwargs["auto_remove"] is True
    assert kwargs["network_mode"] == "none"
    assert kwargs["labels"] == {"aa-supervisor.job": "job1"}


def test_network_mode_omitted_when_network_enabled(store: WorkspaceStore) -> None:
    client = FakeDockerClient(FakeContainer())
    _run(_engine(client, store), store.create_workspace("s", "job1"), profile=ResourceProfile(network_disabled=False))

    _image, kwargs = client.containers.create_calls[0]
    assert "network_mode" not in kwargs


def test_ping_returns_runtime_version(store: WorkspaceStore) -> None:
    assert _engine(FakeDockerClient(), store).ping()["ApiVersion"] == "1.43"


def test_timeout_message_format() -> None:
    assert timeout_message(1.234, 1) == "\nExecution timed out after 1.23s (timeout was set to 1s)\n"
