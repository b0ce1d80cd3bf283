"""Agent catalogue endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from agentrelay.daemon.deps import SupervisorDep
from agentrelay.daemon.models.api import AgentDescriptor

router = APIRouter(prefix="/agents", tags=["agents"])


@router.get("/list", response_model=list[AgentDescriptor])
async def list_agents(supervisor: SupervisorDep) -> list[AgentDescriptor]:
    """List every supported agent kind with its capability table."""
    return supervisor.list_agents()
