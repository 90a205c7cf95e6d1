from __future__ import annotations

import asyncio
import os
import tarfile
from typing import Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

from loguru import logger

from .exceptions import InvalidSpec, SourceMaterializationFailed, UnsupportedSourceKind
from .models import SourceSpec

SourceHandler = Callable[[SourceSpec, str], Awaitable[None]]


def _redact_url(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if parts.username or parts.password:
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment))
    return url


class GitSourceHandler:
    """Shallow ``git clone`` into the target dir, then an optional checkout of ``ref``."""

    def __init__(self, git_binary: str = "git", timeout_sec: Optional[float] = 300.0) -> None:
        self.git_binary = git_binary
        self.timeout_sec = timeout_sec

    async def _git(self, args: List[str], cwd: Optional[str] = None) -> None:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            process = await asyncio.create_subprocess_exec(
                self.git_binary,
                *args,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise SourceMaterializationFailed(f"git executable not found: {self.git_binary}") from e
        try:
            _stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise SourceMaterializationFailed(f"git {args[0]} timed out after {self.timeout_sec}s")
        if process.returncode != 0:
            tail = (stderr or b"").decode("utf-8", errors="replace").strip()[-500:]
            raise SourceMaterializationFailed(f"git {args[0]} failed ({process.returncode}): {tail}", step=args[0])

    async def __call__(self, source: SourceSpec, target_dir: str) -> None:
        if not source.url:
            raise InvalidSpec("git source requires a url")
        depth = int(source.depth or 1)
        if depth < 1:
            raise InvalidSpec(f"git depth must be >= 1, got {depth}")
        logger.info(f"Cloning {_redact_url(source.url)} (depth={depth}, ref={source.ref or 'default'})")
        await self._git(["clone", "--depth", str(depth), "--", source.url, target_dir])
        if not source.ref:
            return
        try:
            await self._git(["checkout", source.ref], cwd=target_dir)
        except SourceMaterializationFailed:
            # Refs outside the shallow history (e.g. older commits) need an explicit fetch
            logger.debug(f"checkout of {source.ref} failed; fetching it explicitly")
            await self._git(["fetch", "--depth", str(depth), "origin", source.ref], cwd=target_dir)
            await self._git(["checkout", "FETCH_HEAD"], cwd=target_dir)


def safe_extract(tf: tarfile.TarFile, target_dir: str) -> List[str]:
    """Extract every member under ``target_dir``, refusing paths that would land outside it."""
    if hasattr(tarfile, "data_filter"):
        names = tf.getnames()
        tf.extractall(target_dir, filter="data")
        return names
    root = os.path.realpath(target_dir)
    members = tf.getmembers()
    for member in members:
        dest = os.path.realpath(os.path.join(target_dir, member.name))
        if dest != root and not dest.startswith(root + os.sep):
            raise tarfile.TarError(f"member escapes target: {member.name}")
        if member.issym() or member.islnk():
            raise tarfile.TarError(f"links are not allowed: {member.name}")
    tf.extractall(target_dir)
    return [m.name for m in members]


def _extract_tar(path: str, target_dir: str) -> None:
    with tarfile.open(path) as tf:
        safe_extract(tf, target_dir)


async def tar_source_handler(source: SourceSpec, target_dir: str) -> None:
    if not source.path:
        raise InvalidSpec("tar source requires a path")
    if not os.path.isfile(source.path):
        raise SourceMaterializationFailed(f"tar archive not found: {source.path}")
    try:
        await asyncio.to_thread(_extract_tar, source.path, target_dir)
    except (tarfile.TarError, OSError) as e:
        raise SourceMaterializationFailed(f"tar extraction failed: {e}") from e


class SourceMaterializer:
    """Dispatches source descriptors to handlers registered per ``type``."""

    def __init__(self, handlers: Optional[Dict[str, SourceHandler]] = None) -> None:
        self._handlers: Dict[str, SourceHandler] = dict(handlers or {})

    @classmethod
    def default(cls, *, git_binary: str = "git", git_timeout_sec: Optional[float] = 300.0) -> "SourceMaterializer":
        return cls({
            "git": GitSourceHandler(git_binary=git_binary, timeout_sec=git_timeout_sec),
            "tar": tar_source_handler,
        })

    def register(self, kind: str, handler: SourceHandler) -> None:
        self._handlers[kind] = handler

    def kinds(self) -> List[str]:
        return sorted(self._handlers)

    async def materialize(self, source: SourceSpec, target_dir: str) -> None:
        handler = self._handlers.get(source.type)
        if handler is None:
            raise UnsupportedSourceKind(source.type)
        await handler(source, target_dir)
