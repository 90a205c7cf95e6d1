# sandbox.py
# Description: HTTP bridge for sandbox lifecycle, exec (wait and stream), public URLs and downloads.
#
from __future__ import annotations

from typing import AsyncIterator

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from loguru import logger

from runbox_Server_API.app.api.v1.API_Deps.sandbox_deps import get_sandbox_service
from runbox_Server_API.app.api.v1.schemas.sandbox_schemas import (
    DisposeResponse,
    ExecInspectResponse,
    ExecRequest,
    ExecWaitResponse,
    PublicUrlResponse,
    RuntimesResponse,
    SandboxCreateRequest,
    SandboxCreateResponse,
    SandboxDescribeResponse,
)
from runbox_Server_API.app.core.Sandbox.models import ARCHIVE_DEGRADED_HEADER, ExecState
from runbox_Server_API.app.core.Sandbox.runtimes.base import ArchiveStream
from runbox_Server_API.app.core.Sandbox.service import SandboxService
from runbox_Server_API.app.core.Sandbox.streams import SSE_MEDIA_TYPE, exec_event_stream

router = APIRouter(prefix="/sandbox", tags=["sandbox"])


@router.get("/runtimes", response_model=RuntimesResponse)
async def list_runtimes(service: SandboxService = Depends(get_sandbox_service)) -> RuntimesResponse:
    return RuntimesResponse(**service.runtime_info())


@router.post("/sandboxes", response_model=SandboxCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_sandbox(
    body: SandboxCreateRequest,
    service: SandboxService = Depends(get_sandbox_service),
) -> SandboxCreateResponse:
    sandbox = await service.create_sandbox(body.to_options())
    return SandboxCreateResponse(
        id=sandbox.id,
        tmpDir=sandbox.tmp_dir,
        portMap=dict(sandbox.port_map),
        runtime=sandbox.runtime_tag,
        image=sandbox.image,
    )


@router.get("/sandboxes/{sandbox_id}", response_model=SandboxDescribeResponse)
async def describe_sandbox(sandbox_id: str, service: SandboxService = Depends(get_sandbox_service)) -> SandboxDescribeResponse:
    sandbox = service.describe(sandbox_id)
    return SandboxDescribeResponse(
        id=sandbox.id,
        tmpDir=sandbox.tmp_dir,
        portMap=dict(sandbox.port_map),
        runtime=sandbox.runtime_tag,
        image=sandbox.image,
        phase=sandbox.phase.value,
    )


@router.post("/sandboxes/{sandbox_id}/exec-wait", response_model=ExecWaitResponse)
async def exec_wait(
    sandbox_id: str,
    body: ExecRequest,
    service: SandboxService = Depends(get_sandbox_service),
) -> ExecWaitResponse:
    result = await service.exec_wait(sandbox_id, body.to_options())
    return ExecWaitResponse(exitCode=result.legacy_exit_code, state=result.state.value)


@router.post("/sandboxes/{sandbox_id}/exec")
async def exec_stream(
    sandbox_id: str,
    body: ExecRequest,
    service: SandboxService = Depends(get_sandbox_service),
) -> StreamingResponse:
    # Unknown ids, missing cmd and disposed sandboxes fail here as plain HTTP errors;
    # anything after the start frame is reported in-band.
    ex = await service.start_exec(sandbox_id, body.to_options())
    # the body generator never runs if the client leaves before the first byte
    return StreamingResponse(
        exec_event_stream(ex, heartbeat_sec=service.config.stream_heartbeat_sec),
        media_type=SSE_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=BackgroundTask(ex.output.aclose),
    )


@router.get("/execs/{exec_id}", response_model=ExecInspectResponse)
async def inspect_exec(exec_id: str, service: SandboxService = Depends(get_sandbox_service)) -> ExecInspectResponse:
    ex, st = await service.inspect_exec(exec_id)
    if st.state == ExecState.running:
        code = None
    else:
        code = st.legacy_exit_code
    return ExecInspectResponse(execId=ex.id, sandboxId=ex.sandbox_id, state=st.state.value, exitCode=code)


@router.get("/sandboxes/{sandbox_id}/public-url", response_model=PublicUrlResponse)
async def public_url(
    sandbox_id: str,
    port: int = Query(..., ge=1, le=65535),
    service: SandboxService = Depends(get_sandbox_service),
) -> PublicUrlResponse:
    return PublicUrlResponse(url=service.public_url(sandbox_id, port))


@router.delete("/sandboxes/{sandbox_id}", response_model=DisposeResponse)
async def dispose_sandbox(sandbox_id: str, service: SandboxService = Depends(get_sandbox_service)) -> DisposeResponse:
    """Stop and remove the container, then delete its workspace.

    Repeatable: a disposed id answers 200 again. With a positive
    ``SANDBOX_TOMBSTONE_LIMIT`` only the most recent disposals are remembered
    and an evicted id answers 404 NotFound.
    """
    await service.dispose_sandbox(sandbox_id)
    return DisposeResponse(id=sandbox_id, disposed=True)


async def _archive_body(archive: ArchiveStream, sandbox_id: str, path: str) -> AsyncIterator[bytes]:
    try:
        async for chunk in archive:
            yield chunk
    except Exception as e:
        # headers are already sent; aborting the response is the only signal left
        logger.warning(f"download of {path} from sandbox {sandbox_id} interrupted: {e}")
        raise
    finally:
        await archive.aclose()


@router.get("/sandboxes/{sandbox_id}/download")
async def download(
    sandbox_id: str,
    path: str = Query(..., min_length=1),
    service: SandboxService = Depends(get_sandbox_service),
) -> StreamingResponse:
    archive = await service.download(sandbox_id, path)
    headers = {ARCHIVE_DEGRADED_HEADER: "true" if archive.degraded else "false"}
    return StreamingResponse(
        _archive_body(archive, sandbox_id, path),
        media_type="application/x-tar",
        headers=headers,
        background=BackgroundTask(archive.aclose),
    )

#
# End of sandbox.py
#######################################################################################################################
