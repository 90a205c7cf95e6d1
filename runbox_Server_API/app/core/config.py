# config.py
# Description: Configuration settings for the runbox sandbox server.
#
# Imports
import configparser
import json
import os
from collections.abc import MutableMapping
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

#
# 3rd-party Libraries
from dotenv import load_dotenv
from loguru import logger

#
########################################################################################################################
#
# Functions:

API_V1_PREFIX = "/api/v1"


def _project_root() -> Path:
    # __file__ is .../runbox_Server_API/app/core/config.py
    return Path(__file__).resolve().parent.parent.parent


def _load_env_files_early() -> None:
    """Load .env files before any environment reads.

    Keeping override=False ensures explicit environment variables are not replaced.
    """
    root = _project_root()
    candidate_env_paths = [
        root / '.env',
        root / '.ENV',
        root / 'Config_Files' / '.env',
        root / 'Config_Files' / '.ENV',
    ]
    loaded_any = False
    for p in candidate_env_paths:
        if p.exists():
            logger.debug(f"Loading environment variables from: {p}")
            load_dotenv(dotenv_path=str(p), override=False)
            loaded_any = True
    if not loaded_any:
        logger.debug("No .env file found; relying on process env")


@lru_cache(maxsize=1)
def load_comprehensive_config() -> configparser.ConfigParser:
    """Read ``Config_Files/config.txt`` (INI). Missing file yields an empty parser."""
    cp = configparser.ConfigParser()
    config_path = _project_root() / 'Config_Files' / 'config.txt'
    if config_path.exists():
        logger.debug(f"Loading config file: {config_path}")
        cp.read(config_path, encoding="utf-8")
    return cp


def _as_bool(val: object, default: bool) -> bool:
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on", "y"}


def load_settings() -> Dict[str, Any]:
    _load_env_files_early()
    try:
        cp = load_comprehensive_config()
    except configparser.Error as e:
        logger.warning(f"Ignoring unreadable config.txt: {e}")
        cp = None

    def _sbx_get(key: str, fallback: Optional[str] = None) -> Optional[str]:
        if cp is not None and cp.has_section('Sandbox'):
            return cp.get('Sandbox', key, fallback=fallback)
        return fallback

    def _sbx_env_or_cfg(env_key: str, cfg_key: str, default: Optional[str]) -> Optional[str]:
        return os.getenv(env_key) or _sbx_get(cfg_key, default) or default

    def _sbx_int(env_key: str, cfg_key: str, default: int) -> int:
        raw = os.getenv(env_key) or _sbx_get(cfg_key, str(default)) or str(default)
        try:
            return int(str(raw))
        except ValueError:
            return default

    def _sbx_float(env_key: str, cfg_key: str, default: float) -> float:
        raw = os.getenv(env_key) or _sbx_get(cfg_key, str(default)) or str(default)
        try:
            return float(str(raw))
        except ValueError:
            return default

    def _sbx_map(env_key: str, cfg_key: str) -> Dict[str, str]:
        # "node23=node:23-slim,deno=denoland/deno:2" or a JSON object
        raw = os.getenv(env_key) or _sbx_get(cfg_key, None)
        if not raw:
            return {}
        raw = raw.strip()
        if raw.startswith("{"):
            try:
                return {str(k).strip(): str(v).strip() for k, v in json.loads(raw).items()}
            except ValueError:
                logger.warning(f"{env_key} is not valid JSON; ignoring")
                return {}
        out: Dict[str, str] = {}
        for part in raw.split(","):
            if "=" in part:
                k, v = part.split("=", 1)
                if k.strip() and v.strip():
                    out[k.strip()] = v.strip()
        return out

    return {
        "SERVER_HOST": os.getenv("SERVER_HOST", "127.0.0.1"),
        "SERVER_PORT": int(os.getenv("SERVER_PORT", "8000") or 8000),
        "LOG_LEVEL": (os.getenv("LOG_LEVEL") or "INFO").upper(),
        "SANDBOX_RUNTIME_BACKEND": (_sbx_env_or_cfg("SANDBOX_RUNTIME_BACKEND", "runtime_backend", "docker") or "docker").lower(),
        "SANDBOX_DOCKER_BASE_URL": _sbx_env_or_cfg("SANDBOX_DOCKER_BASE_URL", "docker_base_url", None),
        "SANDBOX_DOCKER_TIMEOUT_SEC": _sbx_int("SANDBOX_DOCKER_TIMEOUT_SEC", "docker_timeout_sec", 60),
        "SANDBOX_CONTAINERD_ADDRESS": _sbx_env_or_cfg(
            "SANDBOX_CONTAINERD_ADDRESS", "containerd_address", "/run/containerd/containerd.sock"
        ),
        "SANDBOX_CONTAINERD_NAMESPACE": _sbx_env_or_cfg("SANDBOX_CONTAINERD_NAMESPACE", "containerd_namespace", "default"),
        "SANDBOX_NERDCTL_BINARY": _sbx_env_or_cfg("SANDBOX_NERDCTL_BINARY", "nerdctl_binary", "nerdctl"),
        "SANDBOX_WORKSPACE_ROOT": _sbx_env_or_cfg("SANDBOX_WORKSPACE_ROOT", "workspace_root", None),
        "SANDBOX_STOP_TIMEOUT_SEC": _sbx_int("SANDBOX_STOP_TIMEOUT_SEC", "stop_timeout_sec", 5),
        "SANDBOX_PUBLIC_HOST": _sbx_env_or_cfg("SANDBOX_PUBLIC_HOST", "public_host", "localhost"),
        "SANDBOX_GIT_BINARY": _sbx_env_or_cfg("SANDBOX_GIT_BINARY", "git_binary", "git"),
        "SANDBOX_GIT_TIMEOUT_SEC": _sbx_float("SANDBOX_GIT_TIMEOUT_SEC", "git_timeout_sec", 300.0),
        "SANDBOX_RUNTIME_IMAGES": _sbx_map("SANDBOX_RUNTIME_IMAGES", "runtime_images"),
        "SANDBOX_STREAM_QUEUE_SIZE": _sbx_int("SANDBOX_STREAM_QUEUE_SIZE", "stream_queue_size", 256),
        "SANDBOX_STREAM_HEARTBEAT_SEC": _sbx_float("SANDBOX_STREAM_HEARTBEAT_SEC", "stream_heartbeat_sec", 15.0),
        "SANDBOX_TOMBSTONE_LIMIT": _sbx_int("SANDBOX_TOMBSTONE_LIMIT", "tombstone_limit", 0),
        "SANDBOX_DISPOSE_ON_SHUTDOWN": _as_bool(
            os.getenv("SANDBOX_DISPOSE_ON_SHUTDOWN") or _sbx_get("dispose_on_shutdown", None), True
        ),
    }


class _LazyMapping(MutableMapping):
    def __init__(self, loader):
        object.__setattr__(self, "_loader", loader)
        object.__setattr__(self, "_data", None)

    def _ensure(self):
        if object.__getattribute__(self, "_data") is None:
            object.__setattr__(self, "_data", object.__getattribute__(self, "_loader")())

    def __getitem__(self, key):
        self._ensure()
        return object.__getattribute__(self, "_data")[key]

    def __setitem__(self, key, value):
        self._ensure()
        object.__getattribute__(self, "_data")[key] = value

    def __delitem__(self, key):
        self._ensure()
        del object.__getattribute__(self, "_data")[key]

    def __iter__(self):
        self._ensure()
        return iter(object.__getattribute__(self, "_data"))

    def __len__(self):
        self._ensure()
        return len(object.__getattribute__(self, "_data"))


class LazySettings(_LazyMapping):
    """Lazy settings mapping that also supports attribute-style access."""

    def __getattr__(self, name):
        if name in {"_loader", "_data"}:
            return object.__getattribute__(self, name)
        self._ensure()
        try:
            return object.__getattribute__(self, "_data")[name]
        except KeyError as exc:
            raise AttributeError(name) from exc

    def __setattr__(self, name, value):
        if name in {"_loader", "_data"}:
            object.__setattr__(self, name, value)
            return
        self._ensure()
        object.__getattribute__(self, "_data")[name] = value


settings = LazySettings(load_settings)


def clear_config_cache() -> None:
    """Clear cached configuration loaders (for tests or dynamic reloads)."""
    load_comprehensive_config.cache_clear()
    object.__setattr__(settings, "_data", None)

#
# End of config.py
#######################################################################################################################
