"""测试公共夹具：隔离存储与日志目录，提供工作区存储实例。"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

# 必须在导入 supervisor.main 之前设置，避免测试写入真实的 ~/.aa-storage。
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="aa-supervisor-tests-"))
os.environ.setdefault("AA_STORAGE_PATH", str(_TEST_ROOT / "storage"))
os.environ.setdefault("LOG_DIR", str(_TEST_ROOT / "logs"))
os.environ.setdefault("RECONCILE_STORAGE_OWNERSHIP", "false")

from supervisor.infra.storage.workspace import WorkspaceStore  # noqa: E402


@pytest.fixture
def store(tmp_path: Path) -> WorkspaceStore:
    return WorkspaceStore(tmp_path / "storage")
