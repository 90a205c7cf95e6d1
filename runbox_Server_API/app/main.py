# main.py
# Description: FastAPI application for the runbox sandbox server.
#
# Imports
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

#
# 3rd-party Libraries
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

#
# Local Imports
from runbox_Server_API.app.api.v1.endpoints.sandbox import router as sandbox_router
from runbox_Server_API.app.core.config import API_V1_PREFIX, settings
from runbox_Server_API.app.core.Logging.log_context import REQUEST_ID_HEADER, ensure_request_id, log_context
from runbox_Server_API.app.core.Sandbox.exceptions import SandboxError
from runbox_Server_API.app.core.Sandbox.service import SandboxService

#
########################################################################################################################


class InterceptHandler(logging.Handler):
    """Route stdlib logging (uvicorn, docker SDK, urllib3) into loguru."""

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _ensure_log_extra_fields(record: dict) -> bool:
    extra = record.setdefault("extra", {})
    extra.setdefault("request_id", "")
    extra.setdefault("sandbox_id", "")
    extra.setdefault("exec_id", "")
    return True


def _safe_log_format(record: dict) -> str:
    # Placeholders only; loguru substitutes the message itself so braces in
    # messages (JSON, dicts) are never parsed as format fields.
    return (
        "<dim>{time:YYYY-MM-DD HH:mm:ss.SSS}</dim> | "
        "<level>{level: <8}</level> | "
        "<yellow>req={extra[request_id]}</yellow> <yellow>sbx={extra[sandbox_id]}</yellow> | "
        "<blue>{name}</blue>:<magenta>{function}</magenta>:<cyan>{line}</cyan> - {message}\n{exception}"
    )


def configure_logging(level: Optional[str] = None) -> None:
    logger.remove()
    sink = sys.stdout if os.getenv("LOG_STREAM", "stderr").lower() == "stdout" else sys.stderr
    use_color = sink.isatty() and os.getenv("LOG_COLOR", "1").lower() not in {"0", "false", "no", "off"}
    logger.add(
        sink,
        level=(level or settings.LOG_LEVEL),
        format=_safe_log_format,
        colorize=use_color,
        filter=_ensure_log_extra_fields,
        enqueue=False,
    )
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        std = logging.getLogger(name)
        std.handlers = [InterceptHandler()]
        std.propagate = False


async def _sandbox_error_handler(request: Request, exc: SandboxError) -> JSONResponse:
    if exc.retryable:
        logger.warning(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def create_app(service: Optional[SandboxService] = None) -> FastAPI:
    """Build the application around one SandboxService (and thus one registry)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"runbox server starting (backend={app.state.sandbox_service.runtime.name})")
        yield
        logger.info("runbox server shutting down")
        await app.state.sandbox_service.shutdown()

    app = FastAPI(title="runbox sandbox server", version="0.1.0", lifespan=lifespan)
    app.state.sandbox_service = service or SandboxService.from_settings()

    @app.middleware("http")
    async def _request_id_middleware(request: Request, call_next):
        req_id = ensure_request_id(request)
        with log_context(request_id=req_id):
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = req_id
        return response

    app.add_exception_handler(SandboxError, _sandbox_error_handler)
    app.include_router(sandbox_router, prefix=f"{API_V1_PREFIX}")

    @app.get("/health")
    async def health():
        return {"status": "ok", **app.state.sandbox_service.registry.counts()}

    return app


configure_logging()
app = create_app()


def run_server():
    """Run the FastAPI server using uvicorn."""
    import uvicorn
    uvicorn.run(
        "runbox_Server_API.app.main:app",
        host=settings.SERVER_HOST,
        port=int(settings.SERVER_PORT),
        log_level=str(settings.LOG_LEVEL).lower(),
    )


if __name__ == "__main__":
    run_server()

#
## End of main.py
########################################################################################################################
