"""端到端测试：需要可用的容器运行时与 worker 镜像，设置 SUPERVISOR_DOCKER_TESTS=1 时运行。"""

from __future__ import annotations

import base64
import os
from pathlib import Path

import docker
import pytest

from supervisor.application.dispatcher import ToolDispatcher
from supervisor.domain.tools.code_execution import CodeExecutionTool
from supervisor.domain.tools.document_converter import DocumentConverterTool
from supervisor.domain.tools.registry import ToolRegistry
from supervisor.infra.container.engine import ContainerEngine
from supervisor.infra.storage.workspace import WorkspaceStore

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(os.getenv("SUPERVISOR_DOCKER_TESTS") != "1", reason="SUPERVISOR_DOCKER_TESTS!=1"),
]

WORKER_IMAGE = os.getenv("SUPERVISOR_TEST_IMAGE", "aa-worker:latest")


@pytest.fixture
def dispatcher(tmp_path: Path) -> ToolDispatcher:
    store = WorkspaceStore(tmp_path / "storage", dir_mode=0o777)
    engine = ContainerEngine(docker.from_env, store, bind_mount_mode="rw")
    registry = ToolRegistry(
        [
            CodeExecutionTool(engine, store, image=WORKER_IMAGE),
            DocumentConverterTool(engine, store, image=WORKER_IMAGE),
        ]
    )
    return ToolDispatcher(registry=registry, workspace_store=store)


def _execute(dispatcher: ToolDispatcher, payload: dict):
    return dispatcher.execute(payload, protocol="http", host="localhost:8080")


def test_python_prints_hi(dispatcher: ToolDispatcher) -> None:
    report = _execute(
        dispatcher,
        {"tool": "code_execution", "sessionId": "it", "language": "python", "code": "print('hi')"},
    )

    assert report.exit_code == 0
    assert report.stdout == "hi\n"
    assert set(report.artifacts.inputs) == {"script.py"}
    assert set(report.artifacts.outputs) == {"stdout", "stderr"}


def test_exit_code_passthrough(dispatcher: ToolDispatcher) -> None:
    report = _execute(dispatcher, {"tool": "code_execution", "sessionId": "it", "code": "echo err >&2; exit 3"})

    assert report.exit_code == 3
    assert report.stderr == "err\n"


def test_sleep_exceeding_timeout_is_killed(dispatcher: ToolDispatcher) -> None:
    report = _execute(dispatcher, {"tool": "code_execution", "sessionId": "it", "code": "sleep 30", "timeout": 1})

    assert report.exit_code == -1
    assert "timeout was set to 1s" in (report.stderr or "")


def test_network_is_disabled(dispatcher: ToolDispatcher) -> None:
    code = "import urllib.request\nurllib.request.urlopen('http://example.com', timeout=3)\n"
    report = _execute(dispatcher, {"tool": "code_execution", "sessionId": "it", "language": "python", "code": code})

    assert report.exit_code != 0


def test_output_files_become_artifacts(dispatcher: ToolDispatcher) -> None:
    code = "with open('result.csv', 'w') as fh:\n    fh.write('a,b\\n1,2\\n')\n"
    report = _execute(dispatcher, {"tool": "code_execution", "sessionId": "it", "language": "python", "code": code})

    assert report.exit_code == 0
    assert "result.csv" in report.artifacts.outputs


def test_html_to_markdown_with_pandoc(dispatcher: ToolDispatcher) -> None:
    html = b"<h1>Title</h1><p>Body text</p>"
    report = _execute(
        dispatcher,
        {
            "tool": "document_converter",
            "sessionId": "it",
            "fileContent": base64.b64encode(html).decode("ascii"),
            "filename": "input.html",
            "conversionScript": "pandoc input.html -o output.md",
        },
    )

    assert report.exit_code == 0
    assert set(report.artifacts.inputs) == {"input.html"}
    assert "output.md" in report.artifacts.outputs
