"""Container runtime backends.

``create_runtime`` picks the backend named by ``SANDBOX_RUNTIME_BACKEND``.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from ..exceptions import InvalidSpec
from .base import ContainerRuntime
from .containerd_runtime import ContainerdRuntime
from .docker_runtime import DockerRuntime

if TYPE_CHECKING:
    from ..sandbox_config import SandboxConfig


def create_runtime(cfg: "SandboxConfig") -> ContainerRuntime:
    backend = (cfg.runtime_backend or "docker").strip().lower()
    if backend == DockerRuntime.name:
        return DockerRuntime(
            base_url=cfg.docker_base_url,
            timeout=cfg.docker_timeout_sec,
            stream_queue_size=cfg.stream_queue_size,
        )
    if backend == ContainerdRuntime.name:
        return ContainerdRuntime(
            address=cfg.containerd_address,
            namespace=cfg.containerd_namespace,
            binary=cfg.nerdctl_binary,
            stream_queue_size=cfg.stream_queue_size,
        )
    raise InvalidSpec(
        f"Unknown runtime backend: {backend}",
        backend=backend,
        supported=[DockerRuntime.name, ContainerdRuntime.name],
    )


__all__ = ["ContainerRuntime", "ContainerdRuntime", "DockerRuntime", "create_runtime"]
