"""文档转换工具：解码 base64 输入文件，以调用方脚本作为命令在沙箱内转换。"""

from __future__ import annotations

import base64
import binascii
from typing import Literal

from pydantic import Field, field_validator

from supervisor.domain.models import ResourceProfile, ToolExecutionContext, ToolExecutionResult, ToolMetadata
from supervisor.domain.tools.base import ToolRequestBase, describe, run_in_sandbox, validate_workspace_filename
from supervisor.infra.container.engine import ContainerEngine
from supervisor.infra.storage.workspace import WorkspaceStore


class DocumentConverterRequest(ToolRequestBase):
    """document_converter 请求体。"""
    tool: Literal["document_converter"] = "document_converter"
    file_content: str = Field(min_length=1, description="Input document, base64 encoded")
    filename: str = Field(min_length=1, description="File name the decoded document is written to")
    conversion_script: str = Field(
        min_length=1,
        description="Bash script for running the conversion (e.g., 'pandoc input.pdf -o output.md')",
    )

    @field_validator("filename")
    @classmethod
    def _check_filename(cls, value: str) -> str:
        return validate_workspace_filename(value)

    @field_validator("file_content")
    @classmethod
    def _check_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("fileContent must be valid base64") from exc
        return value

    def decoded_content(self) -> bytes:
        return base64.b64decode(self.file_content, validate=True)


class DocumentConverterTool:
    """在隔离容器中运行转换脚本；处理器只负责沙箱化，转换流程由调用方决定。"""
    tool_type = "document_converter"
    name = "Document Converter"
    description = (
        "Convert documents to pdf, markdown or other formats using pandoc, pdf2html, libreoffice "
        "in an isolated container. Supports PDF, DOCX, and other formats that those tools can handle. "
        "The file content must be base64-encoded and you provide a custom conversion script (bash commands). "
        "Output files, stdout, and stderr are captured as artifacts."
    )
    request_model = DocumentConverterRequest

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

    def execute(self, request: DocumentConverterRequest, context: ToolExecutionContext) -> ToolExecutionResult:
        self._workspace_store.write_file(context.workspace_dir, request.filename, request.decoded_content())
        return run_in_sandbox(
            self._engine,
            image=self._image,
            command=request.conversion_script,
            context=context,
            profile=self._profile,
            input_files={request.filename},
        )
