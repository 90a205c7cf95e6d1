from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from runbox_Server_API.app.core.Sandbox.models import (
    WORKSPACE_MOUNT,
    CreateSandboxOptions,
    ExecOptions,
    SourceSpec,
)


class SourceRequest(BaseModel):
    type: str = Field(..., description="Source kind: 'git' or 'tar'")
    url: Optional[str] = Field(None, description="Repository URL (git)")
    ref: Optional[str] = Field(None, description="Branch, tag or commit to check out (git)")
    depth: Optional[int] = Field(None, ge=1, description="Clone depth, default 1 (git)")
    path: Optional[str] = Field(None, description="Archive path on the server host (tar)")

    def to_spec(self) -> SourceSpec:
        return SourceSpec(type=self.type, url=self.url, ref=self.ref, depth=self.depth, path=self.path)


class SandboxCreateRequest(BaseModel):
    source: SourceRequest
    runtime: str = Field(..., description="Logical runtime tag, e.g. node22")
    ports: List[int] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)

    def to_options(self) -> CreateSandboxOptions:
        return CreateSandboxOptions(
            source=self.source.to_spec(),
            runtime=self.runtime,
            ports=list(self.ports),
            labels=dict(self.labels),
        )


class SandboxCreateResponse(BaseModel):
    id: str
    tmpDir: str
    portMap: Dict[int, int]
    runtime: str
    image: str


class SandboxDescribeResponse(SandboxCreateResponse):
    phase: str


class ExecRequest(BaseModel):
    cmd: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    workdir: str = WORKSPACE_MOUNT

    def to_options(self) -> ExecOptions:
        # empty cmd is rejected by ExecOptions.validate() as MissingCommand
        return ExecOptions(cmd=self.cmd or "", args=list(self.args), env=dict(self.env), workdir=self.workdir or WORKSPACE_MOUNT)


class ExecWaitResponse(BaseModel):
    exitCode: int
    state: Literal["running", "exited", "unknown"]


class ExecInspectResponse(BaseModel):
    execId: str
    sandboxId: str
    state: Literal["running", "exited", "unknown"]
    exitCode: Optional[int] = None


class PublicUrlResponse(BaseModel):
    url: str


class DisposeResponse(BaseModel):
    id: str
    disposed: bool = True


class RuntimeImage(BaseModel):
    tag: str
    image: str


class RuntimesResponse(BaseModel):
    backend: str
    download_supported: bool
    source_kinds: List[str]
    runtimes: List[RuntimeImage]
