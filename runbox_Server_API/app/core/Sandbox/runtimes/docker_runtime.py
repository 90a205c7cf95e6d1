from __future__ import annotations

import asyncio
import socket
import threading
from typing import Any, AsyncIterator, Callable, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound
from docker.errors import NotFound as DockerNotFound
from docker.utils.socket import frames_iter
from loguru import logger
from requests.exceptions import RequestException

from ..exceptions import (
    ContainerNotRunning,
    EngineUnavailable,
    ImageNotFoundLocally,
    ImagePullFailed,
    InvalidSpec,
    NotFound,
    SandboxError,
)
from ..models import ContainerInfo, ContainerSpec, ExecOptions, ExecStatus
from .base import (
    ArchiveStream,
    ContainerHandle,
    ContainerRuntime,
    ExecHandle,
    ImageRef,
    StreamChannel,
    pump_from_thread,
)


def _translate(e: Exception, op: str) -> SandboxError:
    if isinstance(e, SandboxError):
        return e
    if isinstance(e, APIError):
        explanation = str(getattr(e, "explanation", None) or e)
        if e.status_code == 409 and "not running" in explanation.lower():
            return ContainerNotRunning(explanation)
        if e.is_client_error():
            return InvalidSpec(f"{op} rejected by docker: {explanation}", op=op)
        return EngineUnavailable(f"{op} failed: {explanation}", op=op)
    return EngineUnavailable(f"Docker engine unavailable during {op}: {e}", op=op)


def _close_socket(sock: Any) -> None:
    raw = getattr(sock, "_sock", sock)
    try:
        raw.shutdown(socket.SHUT_RDWR)
    except (OSError, AttributeError):
        pass
    try:
        sock.close()
    except OSError:
        pass


class DockerExec(ExecHandle):
    def __init__(self, runtime: "DockerRuntime", exec_id: str) -> None:
        self._runtime = runtime
        self.id = exec_id

    async def start(self) -> StreamChannel:
        # Hijacked socket, no TTY, no stdin: stdout and stderr arrive as separate frames
        # which are forwarded in arrival order onto one channel.
        sock = await self._runtime._call(
            lambda api: api.exec_start(self.id, detach=False, tty=False, socket=True),
            op="exec_start",
            low_level=True,
        )
        channel = StreamChannel(self._runtime.stream_queue_size)
        channel.on_close(lambda: _close_socket(sock))

        def _frames():
            try:
                for _stream, data in frames_iter(sock, tty=False):
                    if data:
                        yield data
            finally:
                _close_socket(sock)

        pump_from_thread(
            channel,
            _frames,
            map_error=lambda e: EngineUnavailable(f"exec stream interrupted: {e}"),
            name=f"docker-exec-{self.id[:12]}",
        )
        return channel

    async def inspect(self) -> ExecStatus:
        info = await self._runtime._call(lambda api: api.exec_inspect(self.id), op="exec_inspect", low_level=True)
        if info.get("Running"):
            return ExecStatus.running()
        code = info.get("ExitCode")
        if code is None:
            return ExecStatus.unknown()
        return ExecStatus.exited(int(code))


class DockerImageRef(ImageRef):
    def __init__(self, runtime: "DockerRuntime", ref: str) -> None:
        super().__init__(ref)
        self._runtime = runtime

    async def inspect(self) -> dict:
        def _get(client):
            try:
                return client.images.get(self.ref).attrs
            except ImageNotFound:
                return None

        attrs = await self._runtime._call(_get, op="image_inspect")
        if attrs is None:
            raise ImageNotFoundLocally(self.ref)
        return attrs


class DockerRuntime(ContainerRuntime):
    """Docker Engine backend on top of the Docker SDK for Python.

    The SDK is blocking, so every engine call runs in a worker thread via
    ``asyncio.to_thread``; streaming calls (exec output, pulls, archives) are
    drained by a daemon thread into a bounded ``StreamChannel``.
    """

    name = "docker"
    supports_download = True

    def __init__(
        self,
        client: Optional[Any] = None,
        *,
        base_url: Optional[str] = None,
        timeout: int = 60,
        stream_queue_size: int = 256,
    ) -> None:
        self._client = client
        self._base_url = base_url
        self._timeout = timeout
        self._lock = threading.Lock()
        self.stream_queue_size = stream_queue_size

    def _get_client(self):
        with self._lock:
            if self._client is None:
                try:
                    if self._base_url:
                        self._client = docker.DockerClient(base_url=self._base_url, timeout=self._timeout)
                    else:
                        self._client = docker.from_env(timeout=self._timeout)
                except DockerException as e:
                    raise EngineUnavailable(f"Docker engine unreachable: {e}") from e
            return self._client

    async def _call(self, fn: Callable[[Any], Any], *, op: str, low_level: bool = False) -> Any:
        def _run():
            client = self._get_client()
            return fn(client.api if low_level else client)

        try:
            return await asyncio.to_thread(_run)
        except (DockerException, RequestException) as e:
            raise _translate(e, op) from e

    def _container(self, client, handle: ContainerHandle):
        return handle.native if handle.native is not None else client.containers.get(handle.id)

    async def create_container(self, spec: ContainerSpec) -> ContainerHandle:
        ports = {desc.key: None for desc in spec.ports}
        volumes = {host: {"bind": target, "mode": "rw"} for host, target in spec.binds.items()}

        def _create(client):
            return client.containers.create(
                image=spec.image,
                command=list(spec.command),
                working_dir=spec.working_dir,
                labels=dict(spec.labels),
                ports=ports,
                volumes=volumes,
                auto_remove=spec.auto_remove,
                tty=spec.tty,
                detach=True,
            )

        container = await self._call(_create, op="create_container")
        logger.debug(f"docker: created container {container.id[:12]} from {spec.image}")
        return ContainerHandle(id=container.id, backend=self.name, native=container)

    async def start_container(self, handle: ContainerHandle) -> None:
        await self._call(lambda c: self._container(c, handle).start(), op="start_container")

    async def stop_container(self, handle: ContainerHandle, timeout_seconds: int = 5) -> None:
        def _stop(client):
            try:
                self._container(client, handle).stop(timeout=timeout_seconds)
            except DockerNotFound:
                logger.debug(f"docker: container {handle.id[:12]} already gone on stop")

        await self._call(_stop, op="stop_container")

    async def remove_container(self, handle: ContainerHandle, force: bool = False) -> None:
        def _remove(client):
            try:
                self._container(client, handle).remove(force=force)
            except DockerNotFound:
                logger.debug(f"docker: container {handle.id[:12]} already removed")
            except APIError as e:
                # auto-remove may already be tearing the container down
                if e.status_code == 409 and "in progress" in str(e.explanation or "").lower():
                    logger.debug(f"docker: removal of {handle.id[:12]} already in progress")
                    return
                raise

        await self._call(_remove, op="remove_container")

    async def inspect_container(self, handle: ContainerHandle) -> ContainerInfo:
        def _inspect(client):
            try:
                container = self._container(client, handle)
                container.reload()
            except DockerNotFound:
                return None
            return container.attrs

        attrs = await self._call(_inspect, op="inspect_container")
        if attrs is None:
            return ContainerInfo(id=handle.id, running=False, ports={})
        ports = ((attrs.get("NetworkSettings") or {}).get("Ports")) or {}
        running = bool((attrs.get("State") or {}).get("Running"))
        return ContainerInfo(id=handle.id, running=running, ports={k: list(v or []) for k, v in ports.items()})

    async def exec_in_container(self, handle: ContainerHandle, options: ExecOptions) -> ExecHandle:
        def _create(api):
            try:
                return api.exec_create(
                    handle.id,
                    cmd=options.argv,
                    stdout=True,
                    stderr=True,
                    stdin=False,
                    tty=False,
                    environment=options.env_list() or None,
                    workdir=options.workdir,
                )
            except DockerNotFound as e:
                raise ContainerNotRunning(f"Container {handle.id[:12]} no longer exists") from e

        res = await self._call(_create, op="exec_create", low_level=True)
        return DockerExec(self, res["Id"])

    async def download_from_container(self, handle: ContainerHandle, path: str) -> ArchiveStream:
        def _archive(client):
            try:
                bits, _stat = self._container(client, handle).get_archive(path)
            except DockerNotFound as e:
                raise NotFound("path", path) from e
            return bits

        bits = await self._call(_archive, op="get_archive")
        channel = StreamChannel(self.stream_queue_size)
        pump_from_thread(
            channel,
            lambda: bits,
            map_error=lambda e: EngineUnavailable(f"archive stream interrupted: {e}"),
            name="docker-archive",
        )
        return ArchiveStream(channel=channel, degraded=False)

    def get_image(self, ref: str) -> ImageRef:
        return DockerImageRef(self, ref)

    async def pull_image(self, ref: str) -> AsyncIterator[dict]:
        def _events():
            for event in self._get_client().api.pull(ref, stream=True, decode=True):
                if isinstance(event, dict) and event.get("error"):
                    raise ImagePullFailed(ref, str(event.get("error")))
                yield event

        channel = StreamChannel(self.stream_queue_size)
        pump_from_thread(
            channel,
            _events,
            map_error=lambda e: e if isinstance(e, ImagePullFailed) else ImagePullFailed(ref, f"{ref}: {e}"),
            name="docker-pull",
        )
        try:
            async for event in channel:
                yield event
        finally:
            channel.close()

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
