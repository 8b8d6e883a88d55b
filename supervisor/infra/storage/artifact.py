"""产物工具：生成下载 URL、按输入集合分类产物并推断内容类型。"""

from __future__ import annotations

import mimetypes
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from urllib.parse import quote

STREAM_FILENAMES = ("stdout", "stderr")

UrlBuilder = Callable[[str], str]


@dataclass(slots=True)
class ArtifactManifest:
    """产物清单：每个文件名只出现在 inputs 或 outputs 之一。"""
    inputs: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, dict[str, str]]:
        return {"inputs": dict(self.inputs), "outputs": dict(self.outputs)}


def artifact_url(protocol: str, host: str, session_id: str, job_id: str, filename: str) -> str:
    """生成产物下载 URL，与 /artifacts/{session}/{job}/{filename} 路由一一对应。"""
    encoded = "/".join(quote(part, safe="") for part in filename.split("/"))
    return f"{protocol}://{host}/artifacts/{quote(session_id, safe='')}/{quote(job_id, safe='')}/{encoded}"


def categorize(files: Iterable[str], input_filenames: set[str], url_for: UrlBuilder) -> ArtifactManifest:
    """按是否属于输入集合将文件划分为 inputs/outputs，不丢弃任何文件。"""
    manifest = ArtifactManifest()
    for filename in files:
        target = manifest.inputs if filename in input_filenames else manifest.outputs
        target[filename] = url_for(filename)
    return manifest


def guess_content_type(filename: str) -> str:
    """尽力推断内容类型；stdout/stderr 固定为纯文本。"""
    if filename in STREAM_FILENAMES:
        return "text/plain; charset=utf-8"
    guessed, _encoding = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"
