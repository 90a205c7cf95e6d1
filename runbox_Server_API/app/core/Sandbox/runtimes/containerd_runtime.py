from __future__ import annotations

import asyncio
import json
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional

from loguru import logger

from ..exceptions import (
    ContainerNotRunning,
    EngineUnavailable,
    ImageNotFoundLocally,
    ImagePullFailed,
    InvalidSpec,
    SandboxError,
)
from ..models import ContainerInfo, ContainerSpec, ExecOptions, ExecStatus
from .base import ArchiveStream, ContainerHandle, ContainerRuntime, ExecHandle, ImageRef, StreamChannel

# Two zero-filled 512-byte blocks: a valid tar archive with no members.
EMPTY_TAR = b"\0" * 1024

_ENGINE_DOWN_MARKERS = (
    "connection refused",
    "cannot connect",
    "failed to dial",
    "permission denied",
    "no such file or directory: unknown",
)
_MISSING_MARKERS = ("no such container", "no such image", "not found", "no such object")


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


class NerdctlExec(ExecHandle):
    def __init__(self, runtime: "ContainerdRuntime", argv: List[str]) -> None:
        self._runtime = runtime
        self._argv = argv
        self._proc: Any = None
        self._task: Optional[asyncio.Task] = None
        # nerdctl has no exec ids of its own
        self.id = uuid.uuid4().hex

    async def start(self) -> StreamChannel:
        proc = await self._runtime._spawn(self._argv)
        self._proc = proc
        channel = StreamChannel(self._runtime.stream_queue_size)

        async def _drain(reader) -> None:
            # once the consumer has gone, output is discarded until the process exits
            forwarding = True
            while True:
                chunk = await reader.read(65536)
                if not chunk:
                    return
                if forwarding:
                    forwarding = await channel.put(chunk)

        async def _pump() -> None:
            try:
                await asyncio.gather(_drain(proc.stdout), _drain(proc.stderr))
                await proc.wait()
            except Exception as e:
                await channel.finish(EngineUnavailable(f"exec stream interrupted: {e}"))
                return
            await channel.finish()

        self._task = asyncio.create_task(_pump())
        return channel

    async def inspect(self) -> ExecStatus:
        if self._proc is None or self._proc.returncode is None:
            return ExecStatus.running()
        if self._proc.returncode < 0:
            return ExecStatus.unknown()
        return ExecStatus.exited(self._proc.returncode)


class NerdctlImageRef(ImageRef):
    def __init__(self, runtime: "ContainerdRuntime", ref: str) -> None:
        super().__init__(ref)
        self._runtime = runtime

    async def inspect(self) -> dict:
        res = await self._runtime._run("image", "inspect", self.ref)
        if res.returncode != 0:
            if any(m in res.stderr.lower() for m in _MISSING_MARKERS):
                raise ImageNotFoundLocally(self.ref)
            raise self._runtime._failure("image_inspect", res)
        data = json.loads(res.stdout or "[]")
        return data[0] if isinstance(data, list) and data else {}


class ContainerdRuntime(ContainerRuntime):
    """containerd backend driven through the ``nerdctl`` CLI.

    File download is not available here; ``download_from_container`` returns
    an empty tar archive flagged as degraded.
    """

    name = "containerd"
    supports_download = False

    def __init__(
        self,
        *,
        address: str = "/run/containerd/containerd.sock",
        namespace: str = "default",
        binary: str = "nerdctl",
        stream_queue_size: int = 256,
    ) -> None:
        self.address = address
        self.namespace = namespace
        self.binary = binary
        self.stream_queue_size = stream_queue_size

    def qualify_image(self, ref: str) -> str:
        if "/" not in ref:
            return f"docker.io/library/{ref}"
        first = ref.split("/", 1)[0]
        if "." in first or ":" in first or first == "localhost":
            return ref
        return f"docker.io/{ref}"

    def _argv(self, *args: str) -> List[str]:
        return [self.binary, "--address", self.address, "--namespace", self.namespace, *args]

    async def _spawn(self, args: List[str], *, merge_stderr: bool = False):
        argv = self._argv(*args)
        logger.debug(f"containerd: {' '.join(argv)}")
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EngineUnavailable(f"{self.binary} is not available: {e}") from e

    async def _run(self, *args: str) -> CommandResult:
        proc = await self._spawn(list(args))
        out, err = await proc.communicate()
        return CommandResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=(out or b"").decode("utf-8", errors="replace"),
            stderr=(err or b"").decode("utf-8", errors="replace"),
        )

    def _failure(self, op: str, res: CommandResult) -> SandboxError:
        msg = res.stderr.strip() or res.stdout.strip() or f"exit status {res.returncode}"
        low = msg.lower()
        if any(m in low for m in _ENGINE_DOWN_MARKERS):
            return EngineUnavailable(f"containerd unavailable during {op}: {msg}", op=op)
        if "not running" in low:
            return ContainerNotRunning(msg)
        return InvalidSpec(f"{op} rejected by containerd: {msg}", op=op)

    async def create_container(self, spec: ContainerSpec) -> ContainerHandle:
        args: List[str] = ["create", "-w", spec.working_dir]
        if spec.tty:
            args.append("-t")
        for key, value in spec.labels.items():
            args += ["--label", f"{key}={value}"]
        for desc in spec.ports:
            args += ["-p", desc.key]
        for host, target in spec.binds.items():
            args += ["-v", f"{host}:{target}"]
        # auto_remove is not passed: dispose always removes explicitly
        args += [spec.image, *spec.command]
        res = await self._run(*args)
        if res.returncode != 0:
            raise self._failure("create_container", res)
        container_id = res.stdout.strip().splitlines()[-1].strip() if res.stdout.strip() else ""
        if not container_id:
            raise EngineUnavailable("nerdctl create returned no container id")
        return ContainerHandle(id=container_id, backend=self.name)

    async def start_container(self, handle: ContainerHandle) -> None:
        res = await self._run("start", handle.id)
        if res.returncode != 0:
            raise self._failure("start_container", res)

    async def stop_container(self, handle: ContainerHandle, timeout_seconds: int = 5) -> None:
        res = await self._run("stop", "-t", str(int(timeout_seconds)), handle.id)
        if res.returncode != 0 and not any(m in res.stderr.lower() for m in _MISSING_MARKERS):
            raise self._failure("stop_container", res)

    async def remove_container(self, handle: ContainerHandle, force: bool = False) -> None:
        args = ["rm", "-f", handle.id] if force else ["rm", handle.id]
        res = await self._run(*args)
        if res.returncode != 0 and not any(m in res.stderr.lower() for m in _MISSING_MARKERS):
            raise self._failure("remove_container", res)

    async def inspect_container(self, handle: ContainerHandle) -> ContainerInfo:
        res = await self._run("inspect", handle.id)
        if res.returncode != 0:
            if any(m in res.stderr.lower() for m in _MISSING_MARKERS):
                return ContainerInfo(id=handle.id, running=False, ports={})
            raise self._failure("inspect_container", res)
        try:
            data = json.loads(res.stdout or "[]")
        except ValueError as e:
            raise EngineUnavailable(f"unreadable inspect output from nerdctl: {e}") from e
        attrs = data[0] if isinstance(data, list) and data else {}
        ports = ((attrs.get("NetworkSettings") or {}).get("Ports")) or {}
        running = bool((attrs.get("State") or {}).get("Running"))
        return ContainerInfo(id=handle.id, running=running, ports={k: list(v or []) for k, v in ports.items()})

    async def exec_in_container(self, handle: ContainerHandle, options: ExecOptions) -> ExecHandle:
        info = await self.inspect_container(handle)
        if not info.running:
            raise ContainerNotRunning(f"Container {handle.id[:12]} is not running")
        args = ["exec", "-w", options.workdir]
        for pair in options.env_list():
            args += ["-e", pair]
        args += [handle.id, *options.argv]
        return NerdctlExec(self, args)

    async def download_from_container(self, handle: ContainerHandle, path: str) -> ArchiveStream:
        logger.warning(f"containerd: file download unsupported; returning empty archive for {path}")
        channel = StreamChannel(2)
        await channel.put(EMPTY_TAR)
        await channel.finish()
        return ArchiveStream(channel=channel, degraded=True)

    def get_image(self, ref: str) -> ImageRef:
        return NerdctlImageRef(self, ref)

    async def pull_image(self, ref: str) -> AsyncIterator[dict]:
        proc = await self._spawn(["pull", ref], merge_stderr=True)
        tail: deque = deque(maxlen=20)
        try:
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                tail.append(line)
                yield {"status": line}
            rc = await proc.wait()
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
        if rc != 0:
            raise ImagePullFailed(ref, f"nerdctl pull {ref} failed: {' | '.join(tail) or f'exit status {rc}'}")
