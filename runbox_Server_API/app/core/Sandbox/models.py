from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .exceptions import InvalidSpec, MissingCommand


WORKSPACE_MOUNT = "/workspace"
IDLE_COMMAND = ["sleep", "86400"]
ARCHIVE_DEGRADED_HEADER = "X-Runbox-Archive-Degraded"


class SandboxPhase(str, Enum):
    provisioning = "provisioning"
    running = "running"
    disposed = "disposed"


class ExecState(str, Enum):
    running = "running"
    exited = "exited"
    unknown = "unknown"


@dataclass(frozen=True)
class ExecStatus:
    state: ExecState
    exit_code: Optional[int] = None

    @classmethod
    def running(cls) -> "ExecStatus":
        return cls(ExecState.running)

    @classmethod
    def exited(cls, code: int) -> "ExecStatus":
        return cls(ExecState.exited, int(code))

    @classmethod
    def unknown(cls) -> "ExecStatus":
        return cls(ExecState.unknown)

    @property
    def finished(self) -> bool:
        return self.state != ExecState.running

    @property
    def legacy_exit_code(self) -> int:
        """Exit code with -1 standing in for anything that is not a real exit status."""
        return self.exit_code if self.state == ExecState.exited and self.exit_code is not None else -1


@dataclass(frozen=True)
class PortDescriptor:
    container_port: int
    protocol: str = "tcp"
    # 0 asks the engine for any free host port; fixed host ports are not supported
    requested_host_port: int = 0

    @property
    def key(self) -> str:
        return f"{self.container_port}/{self.protocol}"


@dataclass
class SourceSpec:
    type: str
    url: Optional[str] = None
    ref: Optional[str] = None
    depth: Optional[int] = None
    path: Optional[str] = None


@dataclass
class CreateSandboxOptions:
    source: SourceSpec
    runtime: str
    ports: List[int] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)

    def port_descriptors(self) -> List[PortDescriptor]:
        seen: List[int] = []
        for p in self.ports:
            try:
                port = int(p)
            except (TypeError, ValueError):
                raise InvalidSpec(f"Invalid port: {p!r}", port=str(p))
            if port < 1 or port > 65535:
                raise InvalidSpec(f"Port out of range: {port}", port=port)
            if port not in seen:
                seen.append(port)
        return [PortDescriptor(container_port=p) for p in seen]


@dataclass
class ExecOptions:
    cmd: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    workdir: str = WORKSPACE_MOUNT

    def validate(self) -> None:
        if not self.cmd or not str(self.cmd).strip():
            raise MissingCommand()

    @property
    def argv(self) -> List[str]:
        return [self.cmd, *self.args]

    def env_list(self) -> List[str]:
        return [f"{k}={v}" for k, v in self.env.items()]


@dataclass
class ContainerSpec:
    image: str
    command: List[str] = field(default_factory=lambda: list(IDLE_COMMAND))
    working_dir: str = WORKSPACE_MOUNT
    labels: Dict[str, str] = field(default_factory=dict)
    ports: List[PortDescriptor] = field(default_factory=list)
    # host_path -> container_path
    binds: Dict[str, str] = field(default_factory=dict)
    auto_remove: bool = True
    tty: bool = True


@dataclass
class ContainerInfo:
    id: str
    running: bool
    # "3000/tcp" -> [{"HostIp": "0.0.0.0", "HostPort": "49153"}, ...]
    ports: Dict[str, List[Dict[str, str]]] = field(default_factory=dict)

    def port_map(self, requested: List[PortDescriptor]) -> Dict[int, int]:
        out: Dict[int, int] = {}
        for desc in requested:
            for binding in self.ports.get(desc.key) or []:
                try:
                    host_port = int(str((binding or {}).get("HostPort") or "0"))
                except ValueError:
                    continue
                if host_port > 0:
                    out[desc.container_port] = host_port
                    break
        return out
