"""Python client for the runbox HTTP bridge.

    client = SandboxClient("http://127.0.0.1:8000")
    sandbox = client.create_sandbox({"type": "git", "url": repo}, "node22", ports=[3000])
    code = sandbox.exec_wait("npm", ["install"])
    with sandbox.exec("npm", ["start"]) as proc:
        for chunk in proc.iter_output():
            ...
    sandbox.dispose()

Errors come back as the same exception classes the server raised.
"""
from __future__ import annotations

import os
import tarfile
import tempfile
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import httpx

from runbox_Server_API.app.core.config import API_V1_PREFIX

from .exceptions import EngineUnavailable, SandboxError, error_from_payload
from .models import ARCHIVE_DEGRADED_HEADER, WORKSPACE_MOUNT, ExecStatus, ExecState
from .sources import safe_extract
from .streams import frame_bytes, iter_sse_frames

_SPOOL_MAX = 8 * 1024 * 1024


def _raise_for_error(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        raise error_from_payload(payload["error"], response.status_code)
    raise error_from_payload({"message": f"HTTP {response.status_code}: {response.text[:200]}"}, response.status_code)


class RemoteExec:
    """A streaming exec. Iterate ``iter_output()`` once, then ask for ``exit_code()``."""

    def __init__(self, client: "SandboxClient", stream_ctx, response: httpx.Response) -> None:
        self._client = client
        self._ctx = stream_ctx
        self._response = response
        self._frames = iter_sse_frames(response.iter_lines())
        first = next(self._frames, None)
        if not first or first.get("type") != "start":
            self.close()
            raise EngineUnavailable("exec stream did not start")
        self.id: str = first["execId"]
        self._ended = False

    def iter_output(self) -> Iterator[bytes]:
        try:
            for frame in self._frames:
                kind = frame.get("type")
                if kind == "data":
                    yield frame_bytes(frame)
                elif kind == "end":
                    self._ended = True
                    return
                elif kind == "error":
                    raise error_from_payload(frame.get("error") or {})
            if not self._ended:
                raise EngineUnavailable(f"exec {self.id} stream closed before completion")
        finally:
            self.close()

    def inspect(self) -> ExecStatus:
        data = self._client._request("GET", f"/execs/{self.id}").json()
        state = ExecState(data["state"])
        if state == ExecState.exited:
            return ExecStatus.exited(int(data["exitCode"]))
        return ExecStatus(state)

    def exit_code(self) -> int:
        return self.inspect().legacy_exit_code

    def close(self) -> None:
        if self._ctx is not None:
            ctx, self._ctx = self._ctx, None
            ctx.__exit__(None, None, None)

    def __enter__(self) -> "RemoteExec":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class RemoteSandbox:
    def __init__(self, client: "SandboxClient", data: Dict[str, Any]) -> None:
        self._client = client
        self.id: str = data["id"]
        self.tmp_dir: str = data.get("tmpDir", "")
        self.port_map: Dict[int, int] = {int(k): int(v) for k, v in (data.get("portMap") or {}).items()}
        self.runtime: str = data.get("runtime", "")
        self.image: str = data.get("image", "")

    @staticmethod
    def _exec_body(cmd: str, args, env, workdir) -> Dict[str, Any]:
        return {"cmd": cmd, "args": list(args or []), "env": dict(env or {}), "workdir": workdir or WORKSPACE_MOUNT}

    def exec_wait(
        self,
        cmd: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        workdir: str = WORKSPACE_MOUNT,
    ) -> int:
        body = self._exec_body(cmd, args, env, workdir)
        return int(self._client._request("POST", f"/sandboxes/{self.id}/exec-wait", json=body).json()["exitCode"])

    def exec(
        self,
        cmd: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        workdir: str = WORKSPACE_MOUNT,
    ) -> RemoteExec:
        body = self._exec_body(cmd, args, env, workdir)
        ctx = self._client.http.stream("POST", self._client._url(f"/sandboxes/{self.id}/exec"), json=body)
        response = ctx.__enter__()
        try:
            if response.status_code >= 400:
                response.read()
                _raise_for_error(response)
            return RemoteExec(self._client, ctx, response)
        except BaseException:
            ctx.__exit__(None, None, None)
            raise

    def public_url(self, port: int) -> str:
        return self._client._request("GET", f"/sandboxes/{self.id}/public-url", params={"port": port}).json()["url"]

    @contextmanager
    def _open_download(self, path: str) -> Iterator[httpx.Response]:
        with self._client.http.stream(
            "GET", self._client._url(f"/sandboxes/{self.id}/download"), params={"path": path}
        ) as response:
            if response.status_code >= 400:
                response.read()
                _raise_for_error(response)
            yield response

    def download(self, path: str) -> Iterator[bytes]:
        with self._open_download(path) as response:
            for chunk in response.iter_bytes():
                yield chunk

    def copy_to_host(self, path: str, dest: str) -> List[str]:
        """Download ``path`` from the container and unpack it into ``dest``.

        Returns the extracted member names; a backend without file download
        support yields an empty list.
        """
        os.makedirs(dest, exist_ok=True)
        with self._open_download(path) as response:
            if response.headers.get(ARCHIVE_DEGRADED_HEADER) == "true":
                return []
            with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX) as spool:
                for chunk in response.iter_bytes():
                    spool.write(chunk)
                spool.seek(0)
                try:
                    with tarfile.open(fileobj=spool) as tf:
                        return safe_extract(tf, dest)
                except tarfile.TarError as e:
                    raise SandboxError(f"could not unpack {path} into {dest}: {e}", path=path) from e

    def describe(self) -> Dict[str, Any]:
        return self._client._request("GET", f"/sandboxes/{self.id}").json()

    def dispose(self) -> None:
        self._client._request("DELETE", f"/sandboxes/{self.id}")


class SandboxClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        http: Optional[httpx.Client] = None,
        timeout: Optional[float] = None,
    ) -> None:
        if http is None:
            if not base_url:
                raise ValueError("base_url or http client required")
            http = httpx.Client(base_url=base_url, timeout=timeout)
        self.http = http

    @staticmethod
    def _url(path: str) -> str:
        return f"{API_V1_PREFIX}/sandbox{path}"

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self.http.request(method, self._url(path), **kwargs)
        except httpx.TransportError as e:
            raise EngineUnavailable(f"sandbox server unreachable: {e}") from e
        _raise_for_error(response)
        return response

    def create_sandbox(
        self,
        source: Dict[str, Any],
        runtime: str,
        ports: Optional[List[int]] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> RemoteSandbox:
        body = {"source": dict(source), "runtime": runtime, "ports": list(ports or []), "labels": dict(labels or {})}
        return RemoteSandbox(self, self._request("POST", "/sandboxes", json=body).json())

    def sandbox(self, sandbox_id: str) -> RemoteSandbox:
        """Attach to an existing sandbox by id."""
        return RemoteSandbox(self, self._request("GET", f"/sandboxes/{sandbox_id}").json())

    def runtimes(self) -> Dict[str, Any]:
        return self._request("GET", "/runtimes").json()

    def close(self) -> None:
        self.http.close()


__all__ = ["RemoteExec", "RemoteSandbox", "SandboxClient", "SandboxError"]
