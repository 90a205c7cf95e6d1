from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from dataclasses import dataclass
from typing import Optional

from loguru import logger

WORKSPACE_PREFIX = "runws-"


@dataclass(frozen=True)
class Workspace:
    root_dir: str
    workspace_dir: str


class WorkspaceManager:
    """Allocates one temp directory per sandbox; ``root_dir`` is the unit of cleanup."""

    def __init__(self, base_dir: Optional[str] = None, *, remove_attempts: int = 3) -> None:
        self.base_dir = base_dir
        self.remove_attempts = max(1, remove_attempts)

    def allocate(self) -> Workspace:
        if self.base_dir:
            os.makedirs(self.base_dir, exist_ok=True)
        root = tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=self.base_dir)
        ws = os.path.join(root, "workspace")
        os.makedirs(ws, exist_ok=True)
        return Workspace(root_dir=root, workspace_dir=ws)

    def release_sync(self, workspace: Workspace) -> None:
        # A process inside the container may still be writing while we delete,
        # so "directory not empty" gets a couple of retries.
        last: Optional[OSError] = None
        for _ in range(self.remove_attempts):
            try:
                shutil.rmtree(workspace.root_dir)
                return
            except FileNotFoundError:
                return
            except OSError as e:
                last = e
        if last is not None and os.path.exists(workspace.root_dir):
            raise last

    async def release(self, workspace: Workspace) -> None:
        await asyncio.to_thread(self.release_sync, workspace)
        logger.debug(f"workspace released: {workspace.root_dir}")
