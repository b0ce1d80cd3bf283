"""FastAPI dependency injection for the supervisor.

Usage in route handlers::

    @router.post("/sessions/create")
    async def create_session(body: SessionCreate, supervisor: SupervisorDep) -> SessionInfo:
        ...

The dependency raises HTTP 503 until the lifespan has created the
supervisor (or after it has been torn down).
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from agentrelay.daemon.supervisor.supervisor import Supervisor


def get_supervisor(request: Request) -> Supervisor:
    """Return the process-wide supervisor stored on ``app.state``."""
    supervisor: Supervisor | None = getattr(request.app.state, "supervisor", None)
    if supervisor is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supervisor not initialised.",
        )
    return supervisor


# -- Annotated type aliases for concise route signatures ---------------------

SupervisorDep = Annotated[Supervisor, Depends(get_supervisor)]
"""Annotated dependency: the daemon's session supervisor."""
