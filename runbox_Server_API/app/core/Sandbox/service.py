from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, Tuple

from loguru import logger

from runbox_Server_API.app.core.Logging.log_context import log_context

from .exceptions import ContainerNotRunning, EngineUnavailable, NotFound, SandboxDisposed, SandboxError
from .images import ImageResolver
from .models import WORKSPACE_MOUNT, ContainerSpec, CreateSandboxOptions, ExecOptions, ExecStatus
from .registry import SandboxRegistry
from .runtimes import create_runtime
from .runtimes.base import ArchiveStream, ContainerHandle, ContainerRuntime
from .sandbox import Exec, Sandbox
from .sandbox_config import SandboxConfig
from .sources import SourceMaterializer
from .workspace import Workspace, WorkspaceManager

SANDBOX_LABEL = "runbox.sandbox"
RUNTIME_LABEL = "runbox.runtime"


class SandboxService:
    """Provisioning flow plus id-based access to live sandboxes.

    Collaborators are injected so tests can run against fake runtimes and
    isolated registries.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        config: Optional[SandboxConfig] = None,
        registry: Optional[SandboxRegistry] = None,
        workspaces: Optional[WorkspaceManager] = None,
        sources: Optional[SourceMaterializer] = None,
        images: Optional[ImageResolver] = None,
    ) -> None:
        self.config = config or SandboxConfig()
        self.runtime = runtime
        self.registry = registry or SandboxRegistry(tombstone_limit=self.config.tombstone_limit)
        self.workspaces = workspaces or WorkspaceManager(self.config.workspace_root)
        self.sources = sources or SourceMaterializer.default(
            git_binary=self.config.git_binary,
            git_timeout_sec=self.config.git_timeout_sec,
        )
        self.images = images or ImageResolver(runtime, self.config.runtime_images)

    @classmethod
    def from_settings(cls) -> "SandboxService":
        cfg = SandboxConfig.from_settings()
        return cls(create_runtime(cfg), config=cfg)

    # Provisioning
    async def create_sandbox(self, options: CreateSandboxOptions) -> Sandbox:
        ports = options.port_descriptors()
        image = self.images.resolve(options.runtime)
        sandbox_id = str(uuid.uuid4())
        with log_context(sandbox_id=sandbox_id) as log:
            try:
                workspace = self.workspaces.allocate()
            except OSError as e:
                raise EngineUnavailable(f"workspace allocation failed: {e}") from e
            container: Optional[ContainerHandle] = None
            try:
                await self.sources.materialize(options.source, workspace.workspace_dir)
                await self.images.pull_image_if_missing(image)
                labels = dict(options.labels)
                labels.update({SANDBOX_LABEL: sandbox_id, RUNTIME_LABEL: options.runtime})
                spec = ContainerSpec(
                    image=image,
                    labels=labels,
                    ports=ports,
                    binds={workspace.workspace_dir: WORKSPACE_MOUNT},
                )
                container = await self.runtime.create_container(spec)
                await self.runtime.start_container(container)
                info = await self.runtime.inspect_container(container)
                if not info.running:
                    raise ContainerNotRunning(f"Container {container.id[:12]} exited right after start")
                port_map = info.port_map(ports)
            except BaseException:
                await self._abort_provisioning(workspace, container)
                raise
            missing = [d.container_port for d in ports if d.container_port not in port_map]
            if missing:
                log.warning(f"engine published no host port for {missing}")
            sandbox = Sandbox(
                sandbox_id,
                self.runtime,
                container,
                workspace,
                port_map,
                workspaces=self.workspaces,
                runtime_tag=options.runtime,
                image=image,
                stop_timeout=self.config.stop_timeout_sec,
                public_host=self.config.public_host,
            )
            self.registry.put_sandbox(sandbox)
            log.info(f"Sandbox {sandbox_id} running ({options.runtime} -> {image}, ports={dict(port_map)})")
            return sandbox

    async def _abort_provisioning(self, workspace: Workspace, container: Optional[ContainerHandle]) -> None:
        if container is not None:
            try:
                await self.runtime.remove_container(container, force=True)
            except Exception as e:
                logger.warning(f"cleanup: removing half-created container {container.id[:12]} failed: {e}")
        try:
            await self.workspaces.release(workspace)
        except Exception as e:
            logger.warning(f"cleanup: releasing {workspace.root_dir} failed: {e}")

    # Id-based operations
    def describe(self, sandbox_id: str) -> Sandbox:
        return self.registry.require_sandbox(sandbox_id)

    async def exec_wait(self, sandbox_id: str, options: ExecOptions) -> ExecStatus:
        options.validate()
        sandbox = self.registry.require_sandbox(sandbox_id)
        with log_context(sandbox_id=sandbox_id):
            return await sandbox.exec_wait_status(options)

    async def start_exec(self, sandbox_id: str, options: ExecOptions) -> Exec:
        options.validate()
        sandbox = self.registry.require_sandbox(sandbox_id)
        ex = await sandbox.exec(options)
        self.registry.put_exec(ex)
        # dispose may have started while the exec was being created
        if sandbox.closing or not self.registry.has_sandbox(sandbox_id):
            self.registry.delete_exec(ex.id)
            ex.output.close()
            raise SandboxDisposed(sandbox_id)
        return ex

    async def inspect_exec(self, exec_id: str) -> Tuple[Exec, ExecStatus]:
        ex = self.registry.require_exec(exec_id)
        try:
            status = await ex.status()
        except SandboxError as e:
            logger.debug(f"exec {exec_id} inspect failed: {e}")
            status = ExecStatus.unknown()
        return ex, status

    def public_url(self, sandbox_id: str, port: int) -> str:
        return self.registry.require_sandbox(sandbox_id).public_url(port)

    async def download(self, sandbox_id: str, path: str) -> ArchiveStream:
        return await self.registry.require_sandbox(sandbox_id).download(path)

    async def dispose_sandbox(self, sandbox_id: str) -> bool:
        """Dispose and unregister. Repeating it for a disposed id is a no-op."""
        sandbox = self.registry.get_sandbox(sandbox_id)
        if sandbox is None:
            if self.registry.was_disposed(sandbox_id):
                return False
            raise NotFound("sandbox", sandbox_id)
        with log_context(sandbox_id=sandbox_id):
            try:
                return await sandbox.dispose()
            finally:
                self.registry.delete_sandbox(sandbox_id)

    async def shutdown(self) -> None:
        if self.config.dispose_on_shutdown:
            for sandbox_id in self.registry.sandbox_ids():
                try:
                    await self.dispose_sandbox(sandbox_id)
                except NotFound:
                    continue
        try:
            await self.runtime.close()
        except Exception as e:
            logger.debug(f"runtime close failed: {e}")

    def runtime_info(self) -> Dict[str, Any]:
        return {
            "backend": self.runtime.name,
            "download_supported": bool(self.runtime.supports_download),
            "source_kinds": self.sources.kinds(),
            "runtimes": [
                {"tag": tag, "image": self.runtime.qualify_image(image)}
                for tag, image in sorted(self.images.images.items())
            ],
        }
