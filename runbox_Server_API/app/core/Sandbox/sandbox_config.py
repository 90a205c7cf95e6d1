from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from runbox_Server_API.app.core.config import settings as app_settings


@dataclass
class SandboxConfig:
    runtime_backend: str = "docker"
    docker_base_url: Optional[str] = None
    docker_timeout_sec: int = 60
    containerd_address: str = "/run/containerd/containerd.sock"
    containerd_namespace: str = "default"
    nerdctl_binary: str = "nerdctl"
    workspace_root: Optional[str] = None
    stop_timeout_sec: int = 5
    public_host: str = "localhost"
    git_binary: str = "git"
    git_timeout_sec: float = 300.0
    runtime_images: Dict[str, str] = field(default_factory=dict)
    stream_queue_size: int = 256
    stream_heartbeat_sec: float = 15.0
    tombstone_limit: int = 0
    dispose_on_shutdown: bool = True

    @classmethod
    def from_settings(cls) -> "SandboxConfig":
        def _get(key: str, dv):
            try:
                v = getattr(app_settings, key)
            except AttributeError:
                return dv
            return dv if v is None and dv is not None else v

        def _get_int(key: str, dv: int) -> int:
            try:
                return int(_get(key, dv))
            except (TypeError, ValueError):
                return dv

        def _get_float(key: str, dv: float) -> float:
            try:
                return float(_get(key, dv))
            except (TypeError, ValueError):
                return dv

        return cls(
            runtime_backend=str(_get("SANDBOX_RUNTIME_BACKEND", "docker")).strip().lower(),
            docker_base_url=_get("SANDBOX_DOCKER_BASE_URL", None),
            docker_timeout_sec=_get_int("SANDBOX_DOCKER_TIMEOUT_SEC", 60),
            containerd_address=str(_get("SANDBOX_CONTAINERD_ADDRESS", "/run/containerd/containerd.sock")),
            containerd_namespace=str(_get("SANDBOX_CONTAINERD_NAMESPACE", "default")),
            nerdctl_binary=str(_get("SANDBOX_NERDCTL_BINARY", "nerdctl")),
            workspace_root=_get("SANDBOX_WORKSPACE_ROOT", None),
            stop_timeout_sec=_get_int("SANDBOX_STOP_TIMEOUT_SEC", 5),
            public_host=str(_get("SANDBOX_PUBLIC_HOST", "localhost")),
            git_binary=str(_get("SANDBOX_GIT_BINARY", "git")),
            git_timeout_sec=_get_float("SANDBOX_GIT_TIMEOUT_SEC", 300.0),
            runtime_images=dict(_get("SANDBOX_RUNTIME_IMAGES", {}) or {}),
            stream_queue_size=max(1, _get_int("SANDBOX_STREAM_QUEUE_SIZE", 256)),
            stream_heartbeat_sec=_get_float("SANDBOX_STREAM_HEARTBEAT_SEC", 15.0),
            tombstone_limit=max(0, _get_int("SANDBOX_TOMBSTONE_LIMIT", 0)),
            dispose_on_shutdown=bool(_get("SANDBOX_DISPOSE_ON_SHUTDOWN", True)),
        )
