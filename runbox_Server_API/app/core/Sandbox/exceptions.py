from __future__ import annotations

from typing import Any, Dict, Optional


class SandboxError(Exception):
    """Base class for all sandbox failures surfaced to callers.

    ``retryable`` separates infrastructure trouble (engine down, pull failed)
    from client-correctable errors (bad ids, bad parameters, disposed sandbox).
    """

    code = "SandboxError"
    status_code = 500
    retryable = False

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.code
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": dict(self.details),
        }


class InvalidSpec(SandboxError):
    code = "InvalidSpec"
    status_code = 422


class UnsupportedRuntime(SandboxError):
    code = "UnsupportedRuntime"
    status_code = 422

    def __init__(self, runtime: str, message: Optional[str] = None) -> None:
        self.runtime = runtime
        super().__init__(message or f"Unsupported runtime: {runtime}", runtime=runtime)


class UnsupportedSourceKind(SandboxError):
    code = "UnsupportedSourceKind"
    status_code = 422

    def __init__(self, kind: str, message: Optional[str] = None) -> None:
        self.kind = kind
        super().__init__(message or f"No source handler registered for kind: {kind}", kind=kind)


class SourceMaterializationFailed(SandboxError):
    code = "SourceMaterializationFailed"
    status_code = 424


class ImagePullFailed(SandboxError):
    code = "ImagePullFailed"
    status_code = 502
    retryable = True

    def __init__(self, image: str, message: Optional[str] = None) -> None:
        self.image = image
        super().__init__(message or f"Failed to pull image {image}", image=image)


class EngineUnavailable(SandboxError):
    code = "EngineUnavailable"
    status_code = 503
    retryable = True


class ContainerNotRunning(SandboxError):
    code = "ContainerNotRunning"
    status_code = 409


class PortNotPublished(SandboxError):
    code = "PortNotPublished"
    status_code = 404

    def __init__(self, port: int, sandbox_id: Optional[str] = None) -> None:
        self.port = port
        super().__init__(f"Port {port} is not published", port=port, sandbox_id=sandbox_id)


class NotFound(SandboxError):
    code = "NotFound"
    status_code = 404

    def __init__(self, kind: str, id: str, message: Optional[str] = None) -> None:
        self.kind = kind
        self.id = id
        super().__init__(message or f"{kind} not found: {id}", kind=kind, id=id)


class SandboxDisposed(SandboxError):
    code = "SandboxDisposed"
    status_code = 410

    def __init__(self, sandbox_id: str) -> None:
        self.sandbox_id = sandbox_id
        super().__init__(f"Sandbox {sandbox_id} has been disposed", sandbox_id=sandbox_id)


class MissingCommand(SandboxError):
    code = "MissingCommand"
    status_code = 400

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "cmd is required")


class ImageNotFoundLocally(Exception):
    """Raised by ``ImageRef.inspect()`` when the engine is reachable but lacks the image."""

    def __init__(self, ref: str) -> None:
        self.ref = ref
        super().__init__(f"Image not present locally: {ref}")


_BY_CODE = {
    cls.code: cls
    for cls in (
        InvalidSpec,
        UnsupportedRuntime,
        UnsupportedSourceKind,
        SourceMaterializationFailed,
        ImagePullFailed,
        EngineUnavailable,
        ContainerNotRunning,
        PortNotPublished,
        NotFound,
        SandboxDisposed,
        MissingCommand,
    )
}


def error_from_payload(payload: Dict[str, Any], status_code: Optional[int] = None) -> SandboxError:
    """Rebuild a taxonomy error from its wire form (``SandboxError.to_dict``)."""
    code = str(payload.get("code") or "")
    message = payload.get("message")
    details = payload.get("details") or {}
    cls = _BY_CODE.get(code)
    err: SandboxError
    if cls is UnsupportedRuntime:
        err = UnsupportedRuntime(str(details.get("runtime", "")), message)
    elif cls is UnsupportedSourceKind:
        err = UnsupportedSourceKind(str(details.get("kind", "")), message)
    elif cls is ImagePullFailed:
        err = ImagePullFailed(str(details.get("image", "")), message)
    elif cls is PortNotPublished:
        err = PortNotPublished(int(details.get("port", 0)), details.get("sandbox_id"))
    elif cls is NotFound:
        err = NotFound(str(details.get("kind", "")), str(details.get("id", "")), message)
    elif cls is SandboxDisposed:
        err = SandboxDisposed(str(details.get("sandbox_id", "")))
    elif cls is MissingCommand:
        err = MissingCommand(message)
    elif cls is not None:
        err = cls(message, **details)
    else:
        err = SandboxError(message or f"HTTP {status_code}", **details)
        if status_code:
            err.status_code = status_code
    return err
