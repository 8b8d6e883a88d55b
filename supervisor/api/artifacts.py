"""产物下载接口：按 session/job/文件名返回工作区中的原始文件。"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from supervisor.application.container import get_workspace_store
from supervisor.infra.storage.artifact import guess_content_type
from supervisor.infra.storage.workspace import WorkspaceStore

router = APIRouter()


def _store() -> WorkspaceStore:
    return get_workspace_store()


@router.get("/artifacts/{session_id}/{job_id}/{filename:path}")
def download_artifact(
    session_id: str,
    job_id: str,
    filename: str,
    store: WorkspaceStore = Depends(_store),
) -> FileResponse:
    """下载单个产物文件，不存在或越界时返回 404。"""
    try:
        path = store.artifact_path(session_id, job_id, filename)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail="artifact not found") from exc
    return FileResponse(path=path, media_type=guess_content_type(filename), filename=path.name)
