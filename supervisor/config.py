"""全局配置加载模块：从环境变量构建运行参数并提供缓存访问。"""

from __future__ import annotations

import errno
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _csv_to_list(value: str) -> list[str]:
    """将逗号分隔字符串转换为去空白列表。"""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """系统运行配置对象，从环境变量读取并提供类型化访问。"""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "AA Tool Supervisor"
    environment: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8080
    cors_allowed_origins: str = ""
    cors_allowed_methods: str = "GET,POST,OPTIONS"
    cors_allowed_headers: str = "Content-Type,X-Request-Id"
    cors_allow_credentials: bool = False

    # 若监督进程本身运行在容器内，该路径需在宿主机与容器内一致，bind mount 才能解析。
    storage_root: Path = Field(
        default=Path.home() / ".aa-storage",
        validation_alias=AliasChoices("storage_root", "aa_storage_path"),
    )
    reconcile_storage_ownership: bool = True
    workspace_dir_mode: int = 0o755
    public_base_url: str | None = None

    docker_socket_path: str | None = None
    docker_base_url: str | None = None
    worker_image: str = "aa-worker:latest"
    container_workdir: str = "/workspace"
    bind_mount_mode: str = "rw,Z"
    container_memory_bytes: int = 512 * 1024 * 1024
    container_pids_limit: int = 128
    container_cpu_quota: int = 50_000
    container_cpu_period: int = 100_000
    container_network_disabled: bool = True
    drain_timeout_seconds: float = 5.0

    max_timeout_seconds: int = 900
    output_preview_limit: int = 10 * 1024

    log_dir: Path = Path("./logs")
    log_level: str = "INFO"
    log_debug_modules: str = ""
    log_debug_job_ids: str = ""
    log_redaction_mode: str = "standard"
    log_payload_preview_chars: int = 2000
    log_max_bytes: int = 20 * 1024 * 1024
    log_backup_count: int = 5

    def cors_allowed_origins_list(self) -> list[str]:
        return _csv_to_list(self.cors_allowed_origins)

    def cors_allowed_methods_list(self) -> list[str]:
        return _csv_to_list(self.cors_allowed_methods)

    def cors_allowed_headers_list(self) -> list[str]:
        return _csv_to_list(self.cors_allowed_headers)

    def log_debug_modules_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_modules)

    def log_debug_job_ids_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_job_ids)

    def resolved_docker_base_url(self) -> str | None:
        """返回容器运行时地址；socket 路径优先转换为 unix:// 形式。"""
        if self.docker_base_url:
            return self.docker_base_url
        if self.docker_socket_path:
            return f"unix://{self.docker_socket_path}"
        return None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """构建并缓存 Settings，同时确保存储根目录可写。"""
    settings = Settings()
    # 存储根目录只在此处解析一次，之后作为不可变状态显式传递。
    settings.storage_root = settings.storage_root.expanduser()
    if not settings.storage_root.is_absolute():
        settings.storage_root = (Path.cwd() / settings.storage_root).resolve()
    try:
        settings.storage_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        if exc.errno not in {errno.EACCES, errno.EPERM, errno.EROFS}:
            raise
        # 容器只读或权限受限时回退到当前工作目录下的本地路径。
        fallback = (Path.cwd() / "data" / "aa-storage").resolve()
        fallback.mkdir(parents=True, exist_ok=True)
        settings.storage_root = fallback
    return settings
