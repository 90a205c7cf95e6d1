from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Iterable, List, Optional

from loguru import logger

from ..models import ContainerInfo, ContainerSpec, ExecOptions, ExecStatus


class _Failure:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


_EOF = object()


class StreamChannel:
    """Single-consumer async channel between a backend producer and the sandbox.

    Producers are either coroutines (``put``/``finish``) or worker threads
    (``put_threadsafe``/``finish_threadsafe``). The queue is bounded so a slow
    consumer applies backpressure to the engine stream instead of buffering
    unbounded output in memory.

    ``read()`` is safe to cancel (e.g. under ``asyncio.wait_for``); it returns
    None at end of stream and raises the producer's failure once.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._closed = False
        self._finished = False
        self._on_close: List[Callable[[], Any]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def on_close(self, callback: Callable[[], Any]) -> None:
        self._on_close.append(callback)

    async def put(self, item: Any) -> bool:
        if self._closed:
            return False
        await self._queue.put(item)
        return True

    async def finish(self, exc: Optional[BaseException] = None) -> None:
        await self.put(_Failure(exc) if exc is not None else _EOF)

    def put_threadsafe(self, loop: asyncio.AbstractEventLoop, item: Any) -> bool:
        """Hand an item over from a worker thread; blocks while the queue is full."""
        try:
            fut = asyncio.run_coroutine_threadsafe(self.put(item), loop)
        except RuntimeError:
            return False
        while True:
            try:
                return bool(fut.result(timeout=1.0))
            except concurrent.futures.TimeoutError:
                if self._closed or loop.is_closed():
                    fut.cancel()
                    return False
            except (concurrent.futures.CancelledError, RuntimeError):
                return False

    def finish_threadsafe(self, loop: asyncio.AbstractEventLoop, exc: Optional[BaseException] = None) -> None:
        self.put_threadsafe(loop, _Failure(exc) if exc is not None else _EOF)

    def abort(self, exc: BaseException) -> None:
        """Fail the consumer now, dropping anything still queued, and release the producer."""
        if self._finished:
            return
        self._drain()
        try:
            self._queue.put_nowait(_Failure(exc))
        except asyncio.QueueFull:
            pass
        self._release()

    async def read(self) -> Optional[Any]:
        if self._finished:
            return None
        item = await self._queue.get()
        if item is _EOF:
            self._finished = True
            return None
        if isinstance(item, _Failure):
            self._finished = True
            raise item.exc
        return item

    def __aiter__(self) -> "StreamChannel":
        return self

    async def __anext__(self) -> Any:
        item = await self.read()
        if item is None:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        self._finished = True
        self._drain()
        self._release()

    def _release(self) -> None:
        if self._closed:
            return
        self._closed = True
        for cb in self._on_close:
            try:
                cb()
            except Exception as e:
                logger.debug(f"stream close callback failed: {e}")

    async def aclose(self) -> None:
        self.close()

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return


def pump_from_thread(
    channel: StreamChannel,
    iterable_factory: Callable[[], Iterable[Any]],
    *,
    map_error: Callable[[BaseException], BaseException] = lambda e: e,
    name: str = "runbox-pump",
) -> threading.Thread:
    """Drive a blocking iterator on a daemon thread, feeding ``channel``.

    Must be called from the event loop that will consume the channel.
    """
    loop = asyncio.get_running_loop()

    def _run() -> None:
        iterator = None
        try:
            iterator = iter(iterable_factory())
            for item in iterator:
                if not channel.put_threadsafe(loop, item):
                    return
        except Exception as e:
            if not channel.closed:
                channel.finish_threadsafe(loop, map_error(e))
            return
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()
        channel.finish_threadsafe(loop)

    t = threading.Thread(target=_run, name=name, daemon=True)
    t.start()
    return t


@dataclass
class ContainerHandle:
    """Opaque reference to a backend container; ``native`` never leaves the backend."""

    id: str
    backend: str
    native: Any = None


@dataclass
class ArchiveStream:
    """Tar bytes of a path inside a container.

    ``degraded`` marks backends that cannot extract files and return an empty
    archive instead.
    """

    channel: StreamChannel
    degraded: bool = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.channel.__aiter__()

    async def aclose(self) -> None:
        self.channel.close()


class ExecHandle:
    """A command created inside a container, not yet started."""

    id: str

    async def start(self) -> StreamChannel:
        """Start the process and return its combined stdout/stderr byte stream."""
        raise NotImplementedError

    async def inspect(self) -> ExecStatus:
        raise NotImplementedError


class ImageRef:
    def __init__(self, ref: str) -> None:
        self.ref = ref

    async def inspect(self) -> dict:
        """Return image metadata or raise ``ImageNotFoundLocally``."""
        raise NotImplementedError


class ContainerRuntime:
    """Capability set every container backend implements.

    Backends translate their native errors into the sandbox error taxonomy;
    nothing engine-specific crosses this interface.
    """

    name = "base"
    supports_download = True

    def qualify_image(self, ref: str) -> str:
        return ref

    async def create_container(self, spec: ContainerSpec) -> ContainerHandle:
        raise NotImplementedError

    async def start_container(self, handle: ContainerHandle) -> None:
        raise NotImplementedError

    async def stop_container(self, handle: ContainerHandle, timeout_seconds: int = 5) -> None:
        raise NotImplementedError

    async def remove_container(self, handle: ContainerHandle, force: bool = False) -> None:
        raise NotImplementedError

    async def exec_in_container(self, handle: ContainerHandle, options: ExecOptions) -> ExecHandle:
        raise NotImplementedError

    async def inspect_container(self, handle: ContainerHandle) -> ContainerInfo:
        raise NotImplementedError

    async def download_from_container(self, handle: ContainerHandle, path: str) -> ArchiveStream:
        raise NotImplementedError

    def get_image(self, ref: str) -> ImageRef:
        raise NotImplementedError

    def pull_image(self, ref: str) -> AsyncIterator[dict]:
        """Progress events for a pull; iteration raises ``ImagePullFailed`` on error."""
        raise NotImplementedError

    async def close(self) -> None:
        return None
