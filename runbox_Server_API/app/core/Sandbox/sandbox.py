from __future__ import annotations

import asyncio
import uuid
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

from loguru import logger

from .exceptions import PortNotPublished, SandboxDisposed
from .models import ExecOptions, ExecStatus, SandboxPhase
from .runtimes.base import ArchiveStream, ContainerHandle, ContainerRuntime, ExecHandle, StreamChannel
from .workspace import Workspace, WorkspaceManager


class Exec:
    """One command running inside a sandbox container."""

    def __init__(self, sandbox_id: str, handle: ExecHandle, output: StreamChannel) -> None:
        self.id = str(uuid.uuid4())
        self.sandbox_id = sandbox_id
        self.handle = handle
        self.output = output
        self._final: Optional[ExecStatus] = None

    async def status(self) -> ExecStatus:
        if self._final is not None:
            return self._final
        st = await self.handle.inspect()
        if st.finished:
            self._final = st
        return st

    async def wait(self, *, attempts: int = 40, interval: float = 0.05) -> ExecStatus:
        """Settle the final state once output has ended.

        Engines can report an exec as running for a moment after its streams
        close; if it never settles the result is ``unknown``.
        """
        for _ in range(max(1, attempts)):
            st = await self.status()
            if st.finished:
                return st
            await asyncio.sleep(interval)
        return ExecStatus.unknown()


class Sandbox:
    def __init__(
        self,
        id: str,
        runtime: ContainerRuntime,
        container: ContainerHandle,
        workspace: Workspace,
        port_map: Mapping[int, int],
        *,
        workspaces: WorkspaceManager,
        runtime_tag: str = "",
        image: str = "",
        stop_timeout: int = 5,
        public_host: str = "localhost",
    ) -> None:
        self.id = id
        self.runtime = runtime
        self.container = container
        self.workspace = workspace
        self.runtime_tag = runtime_tag
        self.image = image
        self.stop_timeout = stop_timeout
        self.public_host = public_host
        self._workspaces = workspaces
        self._port_map = MappingProxyType(dict(port_map))
        self._closing = False
        self._disposed = False
        self._dispose_future: Optional[asyncio.Future] = None
        self._live: Dict[str, Exec] = {}

    @property
    def tmp_dir(self) -> str:
        return self.workspace.root_dir

    @property
    def workspace_dir(self) -> str:
        return self.workspace.workspace_dir

    @property
    def port_map(self) -> Mapping[int, int]:
        return self._port_map

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def phase(self) -> SandboxPhase:
        return SandboxPhase.disposed if self._disposed else SandboxPhase.running

    def _ensure_usable(self) -> None:
        if self._closing or self._disposed:
            raise SandboxDisposed(self.id)

    async def exec(self, options: ExecOptions) -> Exec:
        options.validate()
        self._ensure_usable()
        handle = await self.runtime.exec_in_container(self.container, options)
        self._ensure_usable()
        output = await handle.start()
        ex = Exec(self.id, handle, output)
        if self._closing:
            output.close()
            raise SandboxDisposed(self.id)
        self._live[ex.id] = ex
        output.on_close(lambda: self._live.pop(ex.id, None))
        logger.debug(f"exec {ex.id} started in sandbox {self.id}: {options.cmd}")
        return ex

    async def exec_wait_status(
        self,
        options: ExecOptions,
        on_output: Optional[Callable[[bytes], Any]] = None,
    ) -> ExecStatus:
        ex = await self.exec(options)
        try:
            async for chunk in ex.output:
                if on_output is not None:
                    on_output(chunk)
        finally:
            ex.output.close()
        return await ex.wait()

    async def exec_wait(self, options: ExecOptions) -> int:
        return (await self.exec_wait_status(options)).legacy_exit_code

    def public_url(self, port: int) -> str:
        self._ensure_usable()
        host_port = self._port_map.get(int(port))
        if host_port is None:
            raise PortNotPublished(int(port), self.id)
        return f"http://{self.public_host}:{host_port}"

    async def download(self, path: str) -> ArchiveStream:
        self._ensure_usable()
        return await self.runtime.download_from_container(self.container, path)

    async def dispose(self) -> bool:
        """Tear down container and workspace. Never raises.

        Returns True for the call that performed teardown; concurrent and later
        calls wait for it to finish and return False.
        """
        if self._dispose_future is not None:
            await asyncio.shield(self._dispose_future)
            return False
        if self._disposed:
            return False
        self._closing = True
        self._dispose_future = asyncio.get_running_loop().create_future()
        try:
            await self._teardown()
        finally:
            self._disposed = True
            self._dispose_future.set_result(None)
        return True

    async def _teardown(self) -> None:
        log = logger.bind(sandbox_id=self.id)
        # consumers must see the disposal, not the clean EOF a stopping engine produces
        for ex in list(self._live.values()):
            ex.output.abort(SandboxDisposed(self.id))
        self._live.clear()
        try:
            await self.runtime.stop_container(self.container, timeout_seconds=self.stop_timeout)
        except Exception as e:
            log.warning(f"stop failed for sandbox {self.id}: {e}")
        try:
            await self.runtime.remove_container(self.container, force=True)
        except Exception as e:
            log.warning(f"remove failed for sandbox {self.id}: {e}")
        try:
            await self._workspaces.release(self.workspace)
        except Exception as e:
            log.warning(f"workspace cleanup failed for {self.workspace.root_dir}: {e}")
        log.info(f"Sandbox {self.id} disposed")
