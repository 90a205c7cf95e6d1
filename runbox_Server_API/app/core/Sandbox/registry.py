from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Dict, List, Optional

from .exceptions import NotFound, SandboxDisposed
from .sandbox import Exec, Sandbox


class SandboxRegistry:
    """Id -> live object tables for sandboxes and execs.

    Shared by all request handlers; every method takes the lock so presence
    checks and removals are atomic per id. Disposed sandbox ids are kept as
    tombstones so a repeated dispose succeeds and later calls can be told
    "disposed" rather than "not found". ``tombstone_limit`` of 0 keeps every
    id; a positive limit evicts the oldest, after which that id is unknown.
    """

    def __init__(self, tombstone_limit: int = 0) -> None:
        self._lock = threading.RLock()
        self._sandboxes: Dict[str, Sandbox] = {}
        self._execs: Dict[str, Exec] = {}
        self._tombstones: "OrderedDict[str, None]" = OrderedDict()
        self._tombstone_limit = max(0, tombstone_limit)

    # Sandboxes
    def put_sandbox(self, sandbox: Sandbox) -> None:
        with self._lock:
            if sandbox.id in self._sandboxes or sandbox.id in self._tombstones:
                raise ValueError(f"sandbox id already assigned: {sandbox.id}")
            self._sandboxes[sandbox.id] = sandbox

    def get_sandbox(self, sandbox_id: str) -> Optional[Sandbox]:
        with self._lock:
            return self._sandboxes.get(sandbox_id)

    def has_sandbox(self, sandbox_id: str) -> bool:
        with self._lock:
            return sandbox_id in self._sandboxes

    def require_sandbox(self, sandbox_id: str) -> Sandbox:
        with self._lock:
            sb = self._sandboxes.get(sandbox_id)
            if sb is not None:
                return sb
            if sandbox_id in self._tombstones:
                raise SandboxDisposed(sandbox_id)
        raise NotFound("sandbox", sandbox_id)

    def delete_sandbox(self, sandbox_id: str) -> Optional[Sandbox]:
        """Remove a sandbox and every exec it owns; remembers the id as disposed."""
        with self._lock:
            sb = self._sandboxes.pop(sandbox_id, None)
            for exec_id in [k for k, v in self._execs.items() if v.sandbox_id == sandbox_id]:
                del self._execs[exec_id]
            if sb is not None:
                self._tombstones[sandbox_id] = None
                while self._tombstone_limit and len(self._tombstones) > self._tombstone_limit:
                    self._tombstones.popitem(last=False)
            return sb

    def was_disposed(self, sandbox_id: str) -> bool:
        with self._lock:
            return sandbox_id in self._tombstones

    def sandbox_ids(self) -> List[str]:
        with self._lock:
            return list(self._sandboxes)

    # Execs
    def put_exec(self, ex: Exec) -> None:
        with self._lock:
            if ex.id in self._execs:
                raise ValueError(f"exec id already assigned: {ex.id}")
            self._execs[ex.id] = ex

    def get_exec(self, exec_id: str) -> Optional[Exec]:
        with self._lock:
            return self._execs.get(exec_id)

    def has_exec(self, exec_id: str) -> bool:
        with self._lock:
            return exec_id in self._execs

    def require_exec(self, exec_id: str) -> Exec:
        with self._lock:
            ex = self._execs.get(exec_id)
        if ex is None:
            raise NotFound("exec", exec_id)
        return ex

    def delete_exec(self, exec_id: str) -> Optional[Exec]:
        with self._lock:
            return self._execs.pop(exec_id, None)

    def exec_ids_for(self, sandbox_id: str) -> List[str]:
        with self._lock:
            return [k for k, v in self._execs.items() if v.sandbox_id == sandbox_id]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {"sandboxes": len(self._sandboxes), "execs": len(self._execs)}
