from __future__ import annotations

from fastapi import Request

from runbox_Server_API.app.core.Sandbox.service import SandboxService


def get_sandbox_service(request: Request) -> SandboxService:
    """The service instance owned by the running application (see ``create_app``)."""
    return request.app.state.sandbox_service
