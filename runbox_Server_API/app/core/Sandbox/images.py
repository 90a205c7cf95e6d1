from __future__ import annotations

from typing import AsyncIterator, Dict, Mapping, Optional

from loguru import logger

from .exceptions import ImageNotFoundLocally, ImagePullFailed, SandboxError, UnsupportedRuntime
from .runtimes.base import ContainerRuntime

RUNTIME_IMAGES: Dict[str, str] = {
    "node22": "node:22-slim",
    "node20": "node:20-slim",
    "node18": "node:18-slim",
    "python312": "python:3.12-slim",
    "python311": "python:3.11-slim",
}


async def follow_progress(events: AsyncIterator[dict], ref: str) -> int:
    """Drain a pull progress stream; returns the number of events seen."""
    count = 0
    try:
        async for event in events:
            count += 1
            status = event.get("status") if isinstance(event, dict) else None
            if status:
                logger.debug(f"pull {ref}: {status} {event.get('progress') or ''}".rstrip())
    except ImagePullFailed:
        raise
    except SandboxError as e:
        raise ImagePullFailed(ref, f"{ref}: {e.message}") from e
    except OSError as e:
        raise ImagePullFailed(ref, f"{ref}: {e}") from e
    return count


class ImageResolver:
    def __init__(self, runtime: ContainerRuntime, extra_images: Optional[Mapping[str, str]] = None) -> None:
        self.runtime = runtime
        self.images: Dict[str, str] = dict(RUNTIME_IMAGES)
        self.images.update(extra_images or {})

    def resolve(self, runtime_tag: str) -> str:
        image = self.images.get((runtime_tag or "").strip())
        if not image:
            raise UnsupportedRuntime(runtime_tag)
        return self.runtime.qualify_image(image)

    async def pull_image_if_missing(self, ref: str) -> bool:
        """Pull ``ref`` unless the engine already has it. Returns True if a pull happened."""
        try:
            await self.runtime.get_image(ref).inspect()
            return False
        except ImageNotFoundLocally:
            pass
        logger.info(f"Pulling image {ref}")
        await follow_progress(self.runtime.pull_image(ref), ref)
        logger.info(f"Pulled image {ref}")
        return True

    async def ensure_image(self, runtime_tag: str) -> str:
        ref = self.resolve(runtime_tag)
        await self.pull_image_if_missing(ref)
        return ref
