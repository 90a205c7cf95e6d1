from __future__ import annotations

import asyncio
import base64
import codecs
import json
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, Optional

from loguru import logger

from .exceptions import EngineUnavailable, SandboxError
from .sandbox import Exec

SSE_MEDIA_TYPE = "text/event-stream"
KEEPALIVE = ": keep-alive\n\n"


class ChunkEncoder:
    """Turns raw output bytes into data frames.

    Text is decoded incrementally so a multibyte character split across two
    engine reads still arrives as utf8; bytes that are not valid UTF-8 are sent
    base64-encoded instead.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()

    def encode(self, chunk: bytes) -> Optional[Dict[str, Any]]:
        held = self._decoder.getstate()[0]
        try:
            text = self._decoder.decode(chunk)
        except UnicodeDecodeError:
            self._decoder.reset()
            return _binary_frame(held + chunk)
        if not text:
            return None
        return {"type": "data", "encoding": "utf8", "chunk": text}

    def flush(self) -> Optional[Dict[str, Any]]:
        held = self._decoder.getstate()[0]
        self._decoder.reset()
        return _binary_frame(held) if held else None


def _binary_frame(data: bytes) -> Dict[str, Any]:
    return {"type": "data", "encoding": "base64", "chunk": base64.b64encode(data).decode("ascii")}


def start_frame(exec_id: str) -> Dict[str, Any]:
    return {"type": "start", "execId": exec_id}


def end_frame() -> Dict[str, Any]:
    return {"type": "end"}


def error_frame(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, SandboxError):
        return {"type": "error", "error": exc.to_dict()}
    return {"type": "error", "error": EngineUnavailable(f"exec stream failed: {exc}").to_dict()}


def to_sse(frame: Dict[str, Any]) -> str:
    return f"data: {json.dumps(frame, separators=(',', ':'))}\n\n"


def frame_bytes(frame: Dict[str, Any]) -> bytes:
    chunk = frame.get("chunk") or ""
    if frame.get("encoding") == "base64":
        return base64.b64decode(chunk)
    return str(chunk).encode("utf-8")


async def exec_event_stream(ex: Exec, *, heartbeat_sec: float = 15.0) -> AsyncIterator[str]:
    """SSE body for a started exec: start, data..., then end or a terminal error.

    The exec's output is closed when the generator finishes or is closed
    early (client went away), which releases the engine exec session.
    """
    encoder = ChunkEncoder()
    try:
        yield to_sse(start_frame(ex.id))
        while True:
            try:
                if heartbeat_sec and heartbeat_sec > 0:
                    chunk = await asyncio.wait_for(ex.output.read(), timeout=heartbeat_sec)
                else:
                    chunk = await ex.output.read()
            except asyncio.TimeoutError:
                yield KEEPALIVE
                continue
            if chunk is None:
                break
            frame = encoder.encode(chunk)
            if frame is not None:
                yield to_sse(frame)
        tail = encoder.flush()
        if tail is not None:
            yield to_sse(tail)
        yield to_sse(end_frame())
    except SandboxError as e:
        logger.info(f"exec {ex.id} stream ended with {e.code}: {e.message}")
        yield to_sse(error_frame(e))
    except Exception as e:
        logger.warning(f"exec {ex.id} stream failed: {e}")
        yield to_sse(error_frame(e))
    finally:
        ex.output.close()


def iter_sse_frames(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """Parse ``data:`` lines of an SSE body back into frames; comments are skipped."""
    buf = []
    for line in lines:
        if line is None:
            continue
        line = line.rstrip("\r")
        if not line:
            if buf:
                yield json.loads("\n".join(buf))
                buf = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            buf.append(line[5:].lstrip(" "))
    if buf:
        yield json.loads("\n".join(buf))
