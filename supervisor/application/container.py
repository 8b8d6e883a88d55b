"""依赖容器模块，负责单例化创建容器运行时客户端、存储、引擎与分发服务。"""

from __future__ import annotations

import logging
from functools import lru_cache

import docker
from docker import DockerClient

from supervisor.application.dispatcher import ToolDispatcher
from supervisor.config import get_settings
from supervisor.domain.models import ResourceProfile
from supervisor.domain.tools.code_execution import CodeExecutionTool
from supervisor.domain.tools.document_converter import DocumentConverterTool
from supervisor.domain.tools.registry import ToolRegistry
from supervisor.infra.container.engine import ContainerEngine
from supervisor.infra.storage.workspace import OwnershipReconciler, WorkspaceStore

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_docker_client() -> DockerClient:
    """获取容器运行时客户端单例，兼容 Docker 与 Podman 的 Docker 兼容 socket。
    返回:
    - DockerClient；构造时会协商 API 版本，运行时不可达会在此抛出异常。
    """
    base_url = get_settings().resolved_docker_base_url()
    if base_url:
        return DockerClient(base_url=base_url)
    return docker.from_env()


@lru_cache(maxsize=1)
def get_workspace_store() -> WorkspaceStore:
    """获取工作区存储单例。"""
    settings = get_settings()
    owner_hook = None
    # 属主对齐只在以 root 运行时生效，其余部署形态无需该步骤。
    if settings.reconcile_storage_ownership and OwnershipReconciler.is_privileged():
        owner_hook = OwnershipReconciler(settings.storage_root)
    return WorkspaceStore(settings.storage_root, dir_mode=settings.workspace_dir_mode, owner_hook=owner_hook)


@lru_cache(maxsize=1)
def get_resource_profile() -> ResourceProfile:
    settings = get_settings()
    return ResourceProfile(
        memory_bytes=settings.container_memory_bytes,
        pids_limit=settings.container_pids_limit,
        cpu_quota=settings.container_cpu_quota,
        cpu_period=settings.container_cpu_period,
        network_disabled=settings.container_network_disabled,
    )


@lru_cache(maxsize=1)
def get_container_engine() -> ContainerEngine:
    """获取容器执行引擎单例。"""
    settings = get_settings()
    return ContainerEngine(
        get_docker_client,
        get_workspace_store(),
        container_workdir=settings.container_workdir,
        bind_mount_mode=settings.bind_mount_mode,
        drain_timeout_seconds=settings.drain_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_tool_registry() -> ToolRegistry:
    """获取工具注册中心单例；新增工具只需在此注册。
    返回:
    - 已注册 code_execution 与 document_converter 的 ToolRegistry。
    """
    settings = get_settings()
    engine = get_container_engine()
    store = get_workspace_store()
    profile = get_resource_profile()
    return ToolRegistry(
        [
            CodeExecutionTool(engine, store, image=settings.worker_image, profile=profile),
            DocumentConverterTool(engine, store, image=settings.worker_image, profile=profile),
        ]
    )


@lru_cache(maxsize=1)
def get_dispatcher() -> ToolDispatcher:
    """获取请求分发服务单例。"""
    settings = get_settings()
    return ToolDispatcher(
        registry=get_tool_registry(),
        workspace_store=get_workspace_store(),
        max_timeout_seconds=settings.max_timeout_seconds,
        preview_limit=settings.output_preview_limit,
    )


def shutdown_container_resources() -> None:
    """关闭运行时客户端并清理依赖容器缓存。"""
    if get_docker_client.cache_info().currsize:
        try:
            get_docker_client().close()
        except Exception as exc:
            logger.warning(
                "docker client close failed",
                extra={"event": "container_runtime.close.failed", "error_type": type(exc).__name__, "error": str(exc)},
            )

    # 按依赖顺序清理缓存，确保后续请求可重新构建全新实例。
    for provider in (
        get_dispatcher,
        get_tool_registry,
        get_container_engine,
        get_resource_profile,
        get_workspace_store,
        get_docker_client,
    ):
        provider.cache_clear()
