from __future__ import annotations

import asyncio
import io
import os
import tarfile
import uuid
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from runbox_Server_API.app.core.Sandbox.exceptions import (
    ContainerNotRunning,
    ImageNotFoundLocally,
    ImagePullFailed,
    SourceMaterializationFailed,
)
from runbox_Server_API.app.core.Sandbox.models import ContainerInfo, ContainerSpec, ExecOptions, ExecStatus, SourceSpec
from runbox_Server_API.app.core.Sandbox.runtimes.base import (
    ArchiveStream,
    ContainerHandle,
    ContainerRuntime,
    ExecHandle,
    ImageRef,
    StreamChannel,
)
from runbox_Server_API.app.core.Sandbox.sandbox_config import SandboxConfig
from runbox_Server_API.app.core.Sandbox.service import SandboxService
from runbox_Server_API.app.core.Sandbox.sources import SourceMaterializer

HANG = "hang"

# cmd -> (output chunks, exit code or None for "no exit code") or HANG
Script = Callable[[ExecOptions], object]


def default_script(options: ExecOptions):
    if options.cmd == "true":
        return [], 0
    if options.cmd == "false":
        return [], 1
    if options.cmd == "echo":
        return [(" ".join(options.args) + "\n").encode()], 0
    if options.cmd == "npm":
        return [b"added 0 packages\n", b"found 0 vulnerabilities\n"], 0
    if options.cmd == "printenv":
        return [f"{k}={v}\n".encode() for k, v in options.env.items()], 0
    if options.cmd == "binary":
        return [b"\xff\xfe\x00raw"], 0
    if options.cmd == "vanish":
        return [b"partial"], None
    if options.cmd == "sleep":
        return HANG
    return [f"sh: {options.cmd}: not found\n".encode()], 127


class FakeExec(ExecHandle):
    def __init__(self, runtime: "FakeRuntime", options: ExecOptions, container_id: str = "") -> None:
        self.id = uuid.uuid4().hex
        self.options = options
        self.container_id = container_id
        self._runtime = runtime
        self._result = runtime.script(options)
        self._started = False
        self.channel: Optional[StreamChannel] = None

    @property
    def hangs(self) -> bool:
        return self._result == HANG

    async def start(self) -> StreamChannel:
        self._runtime.calls.append(("exec_start", self.options.cmd))
        self._started = True
        if self.hangs:
            channel = StreamChannel(4)
            self._runtime.hanging.append((self.container_id, channel))
        else:
            chunks, _code = self._result
            channel = StreamChannel(len(chunks) + 2)
            for chunk in chunks:
                await channel.put(chunk)
            await channel.finish()
        self.channel = channel
        return channel

    async def inspect(self) -> ExecStatus:
        if not self._started or self.hangs:
            return ExecStatus.running()
        _chunks, code = self._result
        if code is None:
            return ExecStatus.unknown()
        return ExecStatus.exited(code)


class FakeImage(ImageRef):
    def __init__(self, runtime: "FakeRuntime", ref: str) -> None:
        super().__init__(ref)
        self._runtime = runtime

    async def inspect(self) -> dict:
        self._runtime.calls.append(("image_inspect", self.ref))
        if self._runtime.inspect_error is not None:
            raise self._runtime.inspect_error
        if self.ref not in self._runtime.local_images:
            raise ImageNotFoundLocally(self.ref)
        return {"Id": f"sha256:{self.ref}"}


class FakeRuntime(ContainerRuntime):
    """In-memory runtime recording every call, with ephemeral host ports from 49152."""

    name = "fake"
    supports_download = True

    def __init__(self, *, local_images: Tuple[str, ...] = (), script: Script = default_script) -> None:
        self.calls: List[Tuple[str, object]] = []
        self.containers: Dict[str, Dict[str, object]] = {}
        self.local_images = set(local_images)
        self.script = script
        self.hanging: List[Tuple[str, StreamChannel]] = []
        self.fail: Dict[str, Exception] = {}
        self.inspect_error: Optional[Exception] = None
        self.pull_error: Optional[str] = None
        self.publish_ports = True
        self.stop_delay = 0.0
        self.degraded_download = False
        self._next_port = 49152
        self.closed = False

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

    def _maybe_fail(self, op: str) -> None:
        exc = self.fail.get(op)
        if exc is not None:
            raise exc

    async def create_container(self, spec: ContainerSpec) -> ContainerHandle:
        self.calls.append(("create_container", spec))
        self._maybe_fail("create_container")
        cid = f"fake{len(self.containers) + 1:04d}"
        ports = {}
        for desc in spec.ports:
            ports[desc.key] = [{"HostIp": "0.0.0.0", "HostPort": str(self._next_port)}]
            self._next_port += 1
        self.containers[cid] = {"spec": spec, "running": False, "removed": False, "ports": ports}
        return ContainerHandle(id=cid, backend=self.name)

    async def start_container(self, handle: ContainerHandle) -> None:
        self.calls.append(("start_container", handle.id))
        self._maybe_fail("start_container")
        self.containers[handle.id]["running"] = True

    async def stop_container(self, handle: ContainerHandle, timeout_seconds: int = 5) -> None:
        self.calls.append(("stop_container", handle.id))
        self._maybe_fail("stop_container")
        self.containers[handle.id]["running"] = False
        # a stopped container ends its exec sessions with a plain EOF
        for cid, channel in self.hanging:
            if cid == handle.id:
                await channel.finish()
        await asyncio.sleep(self.stop_delay)

    async def remove_container(self, handle: ContainerHandle, force: bool = False) -> None:
        self.calls.append(("remove_container", handle.id))
        self._maybe_fail("remove_container")
        self.containers[handle.id]["running"] = False
        self.containers[handle.id]["removed"] = True

    async def inspect_container(self, handle: ContainerHandle) -> ContainerInfo:
        self.calls.append(("inspect_container", handle.id))
        c = self.containers[handle.id]
        ports = c["ports"] if self.publish_ports else {}
        return ContainerInfo(id=handle.id, running=bool(c["running"]), ports=ports)

    async def exec_in_container(self, handle: ContainerHandle, options: ExecOptions) -> ExecHandle:
        self.calls.append(("exec_in_container", options.cmd))
        if not self.containers[handle.id]["running"]:
            raise ContainerNotRunning(f"{handle.id} is not running")
        return FakeExec(self, options, handle.id)

    async def download_from_container(self, handle: ContainerHandle, path: str) -> ArchiveStream:
        self.calls.append(("download", path))
        if self.degraded_download:
            channel = StreamChannel(2)
            await channel.put(b"\0" * 1024)
            await channel.finish()
            return ArchiveStream(channel=channel, degraded=True)
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tf:
            data = b"hello from the container\n"
            info = tarfile.TarInfo(name=os.path.basename(path.rstrip("/")) or "root")
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
        channel = StreamChannel(4)
        await channel.put(buf.getvalue())
        await channel.finish()
        return ArchiveStream(channel=channel)

    def get_image(self, ref: str) -> ImageRef:
        return FakeImage(self, ref)

    async def pull_image(self, ref: str):
        self.calls.append(("pull_image", ref))
        yield {"status": "Pulling from library", "id": ref}
        if self.pull_error:
            raise ImagePullFailed(ref, self.pull_error)
        yield {"status": "Download complete"}
        self.local_images.add(ref)

    async def close(self) -> None:
        self.closed = True


class RecordingSources:
    """Source handlers that write a marker file instead of touching the network."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []

    async def git(self, source: SourceSpec, target_dir: str) -> None:
        self.calls.append((source.url or "", target_dir))
        if source.url and "unreachable" in source.url:
            raise SourceMaterializationFailed(f"git clone failed: could not resolve host for {source.url}")
        with open(os.path.join(target_dir, "package.json"), "w", encoding="utf-8") as f:
            f.write('{"name": "demo"}\n')

    def materializer(self) -> SourceMaterializer:
        return SourceMaterializer({"git": self.git})


@pytest.fixture()
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def recording_sources() -> RecordingSources:
    return RecordingSources()


@pytest.fixture()
def sandbox_config(tmp_path) -> SandboxConfig:
    return SandboxConfig(
        workspace_root=str(tmp_path / "workspaces"),
        stream_heartbeat_sec=0,
        tombstone_limit=64,
    )


@pytest.fixture()
def service(fake_runtime, recording_sources, sandbox_config) -> SandboxService:
    return SandboxService(fake_runtime, config=sandbox_config, sources=recording_sources.materializer())


@pytest.fixture()
def api_client(service):
    from fastapi.testclient import TestClient
    from runbox_Server_API.app.main import create_app

    with TestClient(create_app(service)) as client:
        yield client


GIT_SOURCE = {"type": "git", "url": "https://example.test/repo.git"}
