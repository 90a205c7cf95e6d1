from __future__ import annotations

import asyncio
import os

import pytest

from runbox_Server_API.app.core.Sandbox.exceptions import (
    ContainerNotRunning,
    EngineUnavailable,
    ImagePullFailed,
    InvalidSpec,
    MissingCommand,
    NotFound,
    PortNotPublished,
    SandboxDisposed,
    SourceMaterializationFailed,
    UnsupportedRuntime,
)
from runbox_Server_API.app.core.Sandbox.models import (
    WORKSPACE_MOUNT,
    CreateSandboxOptions,
    ExecOptions,
    ExecState,
    SandboxPhase,
    SourceSpec,
)
from runbox_Server_API.app.core.Sandbox.service import RUNTIME_LABEL, SANDBOX_LABEL
from runbox_Server_API.app.core.Sandbox.streams import exec_event_stream, iter_sse_frames

pytestmark = pytest.mark.timeout(20)


def _options(runtime="node22", ports=(3000,), url="https://example.test/repo.git"):
    return CreateSandboxOptions(source=SourceSpec(type="git", url=url), runtime=runtime, ports=list(ports))


def _workspace_dirs(config):
    if not os.path.isdir(config.workspace_root):
        return []
    return os.listdir(config.workspace_root)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_node22_sandbox_end_to_end(service, fake_runtime, recording_sources):
    sb = await service.create_sandbox(_options())
    assert sb.image == "node:22-slim"
    assert set(sb.port_map) == {3000}
    assert sb.port_map[3000] >= 49152
    assert os.path.isfile(os.path.join(sb.workspace_dir, "package.json"))
    assert recording_sources.calls == [("https://example.test/repo.git", sb.workspace_dir)]

    spec = fake_runtime.calls[[n for n, _ in fake_runtime.calls].index("create_container")][1]
    assert spec.image == "node:22-slim"
    assert spec.binds == {sb.workspace_dir: WORKSPACE_MOUNT}
    assert spec.working_dir == WORKSPACE_MOUNT
    assert spec.labels[SANDBOX_LABEL] == sb.id
    assert spec.labels[RUNTIME_LABEL] == "node22"
    assert spec.auto_remove is True

    assert await sb.exec_wait(ExecOptions(cmd="npm", args=["install"])) == 0
    assert service.public_url(sb.id, 3000) == f"http://localhost:{sb.port_map[3000]}"

    assert await service.dispose_sandbox(sb.id) is True
    assert not os.path.exists(sb.tmp_dir)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_provisioning_order(service, fake_runtime):
    await service.create_sandbox(_options())
    ops = [name for name, _ in fake_runtime.calls]
    assert ops == ["image_inspect", "pull_image", "create_container", "start_container", "inspect_container"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_present_image_skips_pull(service, fake_runtime):
    fake_runtime.local_images.add("node:22-slim")
    await service.create_sandbox(_options())
    assert fake_runtime.count("pull_image") == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_each_sandbox_gets_distinct_ports_and_ids(service):
    a = await service.create_sandbox(_options())
    b = await service.create_sandbox(_options())
    assert a.id != b.id
    assert a.tmp_dir != b.tmp_dir
    assert a.port_map[3000] != b.port_map[3000]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_no_ports_requested_gives_empty_map(service):
    sb = await service.create_sandbox(_options(ports=()))
    assert dict(sb.port_map) == {}
    with pytest.raises(PortNotPublished):
        sb.public_url(3000)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_port_map_is_read_only(service):
    sb = await service.create_sandbox(_options())
    with pytest.raises(TypeError):
        sb.port_map[4000] = 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unpublished_port_is_omitted(service, fake_runtime):
    fake_runtime.publish_ports = False
    sb = await service.create_sandbox(_options())
    assert dict(sb.port_map) == {}
    with pytest.raises(PortNotPublished) as ei:
        service.public_url(sb.id, 3000)
    assert ei.value.status_code == 404


@pytest.mark.unit
@pytest.mark.asyncio
async def test_invalid_port_rejected_before_any_work(service, fake_runtime, sandbox_config):
    with pytest.raises(InvalidSpec):
        await service.create_sandbox(_options(ports=(70000,)))
    assert fake_runtime.calls == []
    assert _workspace_dirs(sandbox_config) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_runtime_creates_nothing(service, fake_runtime, recording_sources, sandbox_config):
    with pytest.raises(UnsupportedRuntime):
        await service.create_sandbox(_options(runtime="unknown-lang-99"))
    assert fake_runtime.count("create_container") == 0
    assert recording_sources.calls == []
    assert _workspace_dirs(sandbox_config) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_source_failure_cleans_workspace(service, fake_runtime, sandbox_config):
    with pytest.raises(SourceMaterializationFailed):
        await service.create_sandbox(_options(url="https://unreachable.invalid/x.git"))
    assert fake_runtime.count("pull_image") == 0
    assert fake_runtime.count("create_container") == 0
    assert _workspace_dirs(sandbox_config) == []
    assert service.registry.counts()["sandboxes"] == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_pull_failure_cleans_workspace(service, fake_runtime, sandbox_config):
    fake_runtime.pull_error = "manifest unknown"
    with pytest.raises(ImagePullFailed):
        await service.create_sandbox(_options())
    assert fake_runtime.count("create_container") == 0
    assert _workspace_dirs(sandbox_config) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_failure_cleans_workspace(service, fake_runtime, sandbox_config):
    fake_runtime.fail["create_container"] = EngineUnavailable("engine hiccup")
    with pytest.raises(EngineUnavailable):
        await service.create_sandbox(_options())
    assert _workspace_dirs(sandbox_config) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_failure_removes_half_created_container(service, fake_runtime, sandbox_config):
    fake_runtime.fail["start_container"] = ContainerNotRunning("exited immediately")
    with pytest.raises(ContainerNotRunning):
        await service.create_sandbox(_options())
    assert fake_runtime.count("remove_container") == 1
    assert all(c["removed"] for c in fake_runtime.containers.values())
    assert _workspace_dirs(sandbox_config) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_exit_codes(service):
    sb = await service.create_sandbox(_options())
    assert await sb.exec_wait(ExecOptions(cmd="true")) == 0
    assert await sb.exec_wait(ExecOptions(cmd="false")) != 0
    assert await sb.exec_wait(ExecOptions(cmd="no-such-tool")) == 127


@pytest.mark.unit
@pytest.mark.asyncio
async def test_exec_wait_collects_output(service):
    sb = await service.create_sandbox(_options())
    seen = []
    st = await sb.exec_wait_status(ExecOptions(cmd="echo", args=["hi", "there"]), on_output=seen.append)
    assert b"".join(seen) == b"hi there\n"
    assert st.state == ExecState.exited and st.exit_code == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_exit_code_is_reported_unknown(service):
    sb = await service.create_sandbox(_options())
    st = await service.exec_wait(sb.id, ExecOptions(cmd="vanish"))
    assert st.state == ExecState.unknown
    assert st.legacy_exit_code == -1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_empty_command_never_reaches_engine(service, fake_runtime):
    sb = await service.create_sandbox(_options())
    for cmd in ("", "   "):
        with pytest.raises(MissingCommand):
            await service.exec_wait(sb.id, ExecOptions(cmd=cmd))
        with pytest.raises(MissingCommand):
            await service.start_exec(sb.id, ExecOptions(cmd=cmd))
    assert fake_runtime.count("exec_in_container") == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_sandbox_id(service):
    with pytest.raises(NotFound):
        await service.exec_wait("does-not-exist", ExecOptions(cmd="true"))
    with pytest.raises(NotFound):
        await service.dispose_sandbox("does-not-exist")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_dispose_twice(service, fake_runtime):
    sb = await service.create_sandbox(_options())
    cid = sb.container.id
    assert await service.dispose_sandbox(sb.id) is True
    assert fake_runtime.containers[cid]["removed"] is True
    assert not os.path.exists(sb.tmp_dir)
    assert sb.phase == SandboxPhase.disposed

    assert await service.dispose_sandbox(sb.id) is False
    assert fake_runtime.count("remove_container") == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_dispose_tears_down_once(service, fake_runtime):
    sb = await service.create_sandbox(_options())
    results = await asyncio.gather(sb.dispose(), sb.dispose(), sb.dispose())
    assert sorted(results) == [False, False, True]
    assert fake_runtime.count("stop_container") == 1
    assert fake_runtime.count("remove_container") == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_operations_after_dispose_report_disposed(service):
    sb = await service.create_sandbox(_options())
    await service.dispose_sandbox(sb.id)
    with pytest.raises(SandboxDisposed) as ei:
        await service.exec_wait(sb.id, ExecOptions(cmd="true"))
    assert ei.value.status_code == 410
    with pytest.raises(SandboxDisposed):
        service.public_url(sb.id, 3000)
    with pytest.raises(SandboxDisposed):
        await service.download(sb.id, "/workspace")
    # the object itself refuses too, for callers holding a reference
    with pytest.raises(SandboxDisposed):
        await sb.exec(ExecOptions(cmd="true"))
    with pytest.raises(SandboxDisposed):
        sb.public_url(3000)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stop_failure_still_removes_and_cleans(service, fake_runtime):
    sb = await service.create_sandbox(_options())
    fake_runtime.fail["stop_container"] = EngineUnavailable("stop timed out")
    assert await service.dispose_sandbox(sb.id) is True
    assert fake_runtime.containers[sb.container.id]["removed"] is True
    assert not os.path.exists(sb.tmp_dir)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_remove_failure_still_cleans_workspace(service, fake_runtime):
    sb = await service.create_sandbox(_options())
    fake_runtime.fail["stop_container"] = EngineUnavailable("engine gone")
    fake_runtime.fail["remove_container"] = EngineUnavailable("engine gone")
    assert await service.dispose_sandbox(sb.id) is True
    assert not os.path.exists(sb.tmp_dir)
    assert not service.registry.has_sandbox(sb.id)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_dispose_fails_running_stream_consumers(service):
    sb = await service.create_sandbox(_options())
    ex = await service.start_exec(sb.id, ExecOptions(cmd="sleep", args=["1000"]))

    async def _consume():
        async for _ in ex.output:
            pass

    reader = asyncio.ensure_future(_consume())
    await asyncio.sleep(0.01)
    await service.dispose_sandbox(sb.id)
    with pytest.raises(SandboxDisposed):
        await asyncio.wait_for(reader, timeout=5)
    assert service.registry.exec_ids_for(sb.id) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stream_cut_by_dispose_ends_with_error_frame(service, fake_runtime):
    fake_runtime.stop_delay = 0.05
    sb = await service.create_sandbox(_options())
    ex = await service.start_exec(sb.id, ExecOptions(cmd="sleep", args=["1000"]))

    async def _frames():
        parts = [part async for part in exec_event_stream(ex, heartbeat_sec=0)]
        return list(iter_sse_frames("".join(parts).split("\n")))

    reader = asyncio.ensure_future(_frames())
    await asyncio.sleep(0.01)
    await service.dispose_sandbox(sb.id)
    frames = await asyncio.wait_for(reader, timeout=5)
    assert [f["type"] for f in frames] == ["start", "error"]
    assert frames[-1]["error"]["code"] == "SandboxDisposed"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_exec_racing_dispose_leaves_no_orphan(service, fake_runtime):
    sb = await service.create_sandbox(_options())
    original = fake_runtime.exec_in_container
    disposing = []

    async def _racing(handle, options):
        result = await original(handle, options)
        disposing.append(asyncio.ensure_future(service.dispose_sandbox(sb.id)))
        await asyncio.sleep(0)
        return result

    fake_runtime.exec_in_container = _racing
    with pytest.raises(SandboxDisposed):
        await service.start_exec(sb.id, ExecOptions(cmd="sleep", args=["1000"]))
    await disposing[0]
    assert fake_runtime.count("exec_start") == 0
    assert service.registry.counts() == {"sandboxes": 0, "execs": 0}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_inspect_exec_reports_running_then_exited(service):
    sb = await service.create_sandbox(_options())
    ex = await service.start_exec(sb.id, ExecOptions(cmd="echo", args=["x"]))
    assert [c async for c in ex.output] == [b"x\n"]
    _, st = await service.inspect_exec(ex.id)
    assert st.state == ExecState.exited and st.exit_code == 0

    hanging = await service.start_exec(sb.id, ExecOptions(cmd="sleep", args=["5"]))
    _, st = await service.inspect_exec(hanging.id)
    assert st.state == ExecState.running
    await service.dispose_sandbox(sb.id)
    with pytest.raises(NotFound):
        await service.inspect_exec(hanging.id)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_download_returns_tar_stream(service):
    sb = await service.create_sandbox(_options())
    archive = await service.download(sb.id, "/workspace/package.json")
    data = b"".join([c async for c in archive])
    assert data[257:262] == b"ustar"
    assert archive.degraded is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_shutdown_disposes_everything(service, fake_runtime):
    a = await service.create_sandbox(_options())
    b = await service.create_sandbox(_options())
    await service.shutdown()
    assert not os.path.exists(a.tmp_dir) and not os.path.exists(b.tmp_dir)
    assert service.registry.counts()["sandboxes"] == 0
    assert fake_runtime.closed is True
