"""工作区存储：按 session/job 组织目录，读写文件并列出作业产物。"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

OwnerHook = Callable[[Path], None]


class OwnershipReconciler:
    """以 root 运行时，将新建目录/文件的属主对齐到存储根目录属主。

    容器内非 root 用户需要写回输出文件；若监督进程以 root 创建工作区而存储根
    属于普通用户，bind mount 后容器会因权限不匹配无法写入。
    """

    def __init__(self, storage_root: Path) -> None:
        self._storage_root = storage_root

    @staticmethod
    def is_privileged() -> bool:
        geteuid = getattr(os, "geteuid", None)
        return geteuid is not None and geteuid() == 0

    def __call__(self, target: Path) -> None:
        try:
            stat = self._storage_root.stat()
            os.chown(target, stat.st_uid, stat.st_gid)
        except OSError as exc:
            # 属主对齐失败不阻断作业，只记录日志。
            logger.warning(
                "storage ownership reconcile failed",
                extra={
                    "event": "workspace.chown.failed",
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    "payload_preview": {"path": str(target)},
                },
            )


class WorkspaceStore:
    """工作区存储，独占 <storage_root>/<session>/job-<job> 目录树。"""

    def __init__(
        self,
        storage_root: Path,
        *,
        dir_mode: int = 0o755,
        owner_hook: OwnerHook | None = None,
    ) -> None:
        self._storage_root = storage_root
        self._dir_mode = dir_mode
        self._owner_hook = owner_hook

    @property
    def storage_root(self) -> Path:
        return self._storage_root

    def session_dir(self, session_id: str) -> Path:
        return self._storage_root / session_id

    def job_dir(self, session_id: str, job_id: str) -> Path:
        return self.session_dir(session_id) / f"job-{job_id}"

    def create_workspace(self, session_id: str, job_id: str) -> Path:
        """创建作业工作区目录（递归、幂等），并按需对齐属主。"""
        session_dir = self.session_dir(session_id)
        work_dir = self.job_dir(session_id, job_id)
        work_dir.mkdir(parents=True, exist_ok=True)
        work_dir.chmod(self._dir_mode)
        self._reconcile(session_dir)
        self._reconcile(work_dir)
        logger.debug(
            "workspace created",
            extra={"event": "workspace.created", "payload_preview": {"path": str(work_dir)}},
        )
        return work_dir

    def write_file(self, work_dir: Path, filename: str, content: str | bytes) -> Path:
        """写入文件，存在则覆盖；bytes 原样落盘，不做任何编码转换。"""
        path = work_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, (bytes, bytearray, memoryview)):
            path.write_bytes(bytes(content))
        else:
            path.write_bytes(content.encode("utf-8"))
        self._reconcile(path)
        return path

    def read_text(self, work_dir: Path, filename: str) -> str:
        """按 UTF-8 读取文本，非法字节替换；文件不存在时返回空串。"""
        path = work_dir / filename
        try:
            return path.read_bytes().decode("utf-8", errors="replace")
        except FileNotFoundError:
            return ""

    def list_files(self, work_dir: Path) -> list[str]:
        """递归列出工作区内的常规文件与符号链接（含悬空链接），返回排序后的 POSIX 相对路径。"""
        if not work_dir.is_dir():
            logger.warning(
                "workspace directory missing",
                extra={"event": "workspace.list.missing", "payload_preview": {"path": str(work_dir)}},
            )
            return []
        return sorted(
            path.relative_to(work_dir).as_posix()
            for path in work_dir.rglob("*")
            if path.is_file() or path.is_symlink()
        )

    def artifact_path(self, session_id: str, job_id: str, filename: str) -> Path:
        """将下载请求解析回物理路径，拒绝越界路径与不存在的文件。"""
        relative = PurePosixPath(filename)
        if (
            not filename
            or relative.is_absolute()
            or any(part in {"", ".", ".."} for part in relative.parts)
            or "\\" in filename
            or "\x00" in filename
        ):
            raise FileNotFoundError(f"invalid artifact name: {filename}")
        for segment in (session_id, job_id):
            if not segment or any(char in segment for char in ("/", "\\", "\x00")) or segment in {".", ".."}:
                raise FileNotFoundError("invalid artifact location")

        work_dir = self.job_dir(session_id, job_id).resolve()
        path = (work_dir / Path(*relative.parts)).resolve()
        # 解析符号链接后再次确认仍位于作业目录内。
        if work_dir not in path.parents:
            raise FileNotFoundError(f"artifact escapes workspace: {filename}")
        if not path.is_file():
            raise FileNotFoundError(f"artifact not found: {filename}")
        return path

    def _reconcile(self, target: Path) -> None:
        if self._owner_hook is not None:
            self._owner_hook(target)
