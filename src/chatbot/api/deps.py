"""FastAPI dependency injection for pipeline components.

The lifespan stores the assembled Pipeline on app.state; endpoints pull
it from there through get_pipeline().
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.chatbot.pipeline import Pipeline


def get_pipeline(request: Request) -> Pipeline:
    """Get the running Pipeline (set by the application lifespan).

    Raises:
        HTTPException(503): If the pipeline failed to initialize.
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialized",
        )
    return pipeline


def bind_request_tenant(request: Request, tenant_id: str) -> None:
    """Record the tenant a request acts on for the request log line."""
    request.state.tenant_id = tenant_id


def bind_agent_tenant(agent_id: str, request: Request) -> None:
    """Router dependency binding the ``agent_id`` path parameter as tenant."""
    bind_request_tenant(request, agent_id)
