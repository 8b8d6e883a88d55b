"""代码执行工具：写入源码文件，按语言推导运行命令并委托容器引擎执行。"""

from __future__ import annotations

import shlex
from typing import Literal

from pydantic import Field, field_validator, model_validator

from supervisor.domain.enums import Language
from supervisor.domain.models import ResourceProfile, ToolExecutionContext, ToolExecutionResult, ToolMetadata
from supervisor.domain.tools.base import ToolRequestBase, describe, run_in_sandbox, validate_workspace_filename
from supervisor.infra.container.engine import ContainerEngine
from supervisor.infra.storage.workspace import WorkspaceStore

# 固定的语言到解释器映射，调用方无法注入任意运行命令。
RUN_COMMANDS: dict[Language, str] = {
    Language.python: "python3 {file}",
    Language.node: "node {file}",
    Language.bun: "bun run {file}",
    Language.bash: "bash {file}",
}

DEFAULT_FILENAMES: dict[Language, str] = {
    Language.python: "script.py",
    Language.node: "script.js",
    Language.bun: "script.ts",
    Language.bash: "script.sh",
}


class CodeExecutionRequest(ToolRequestBase):
    """code_execution 请求体。"""
    tool: Literal["code_execution"] = "code_execution"
    language: Language = Field(default=Language.bash, description="Interpreter used to run the code")
    code: str = Field(min_length=1, description="Source code to execute")
    filename: str | None = Field(
        default=None,
        description="File name the code is written to inside the workspace (defaults per language)",
    )

    @field_validator("filename")
    @classmethod
    def _check_filename(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return validate_workspace_filename(value)

    @model_validator(mode="after")
    def _default_filename(self) -> "CodeExecutionRequest":
        if self.filename is None:
            self.filename = DEFAULT_FILENAMES[self.language]
        return self


def build_run_command(language: Language, filename: str) -> str:
    return RUN_COMMANDS[language].format(file=shlex.quote(filename))


class CodeExecutionTool:
    """在隔离容器中运行一段脚本，源码文件是唯一输入。"""
    tool_type = "code_execution"
    name = "Code Execution"
    description = (
        "Execute code (python, node, bun or bash) in an isolated, network-less container. "
        "The code is written to a file in a fresh workspace and run with the matching interpreter. "
        "Files the code writes into the current directory, stdout and stderr are returned as artifacts."
    )
    request_model = CodeExecutionRequest

    def __init__(
        self,
        engine: ContainerEngine,
        workspace_store: WorkspaceStore,
        *,
        image: str,
        profile: ResourceProfile | None = None,
    ) -> None:
        self._engine = engine
        self._workspace_store = workspace_store
        self._image = image
        self._profile = profile or ResourceProfile()

    def metadata(self) -> ToolMetadata:
        return describe(self)

    def execute(self, request: CodeExecutionRequest, context: ToolExecutionContext) -> ToolExecutionResult:
        filename = request.filename or DEFAULT_FILENAMES[request.language]
        self._workspace_store.write_file(context.workspace_dir, filename, request.code)
        return run_in_sandbox(
            self._engine,
            image=self._image,
            command=build_run_command(request.language, filename),
            context=context,
            profile=self._profile,
            input_files={filename},
        )
