from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.routing import APIRouter
from loguru import logger
from sse_starlette.sse import AppStatus

from agentrelay.daemon.log import setup_logging
from agentrelay.daemon.normalize.sink import EventLog
from agentrelay.daemon.registry import ProcessRegistry
from agentrelay.daemon.settings import get_settings
from agentrelay.daemon.supervisor.supervisor import Supervisor


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.log_json)

    logger.info("Agent relay starting (host={}, port={})", settings.host, settings.port)
    if settings.install_dir:
        logger.info("Agent binaries: install_dir={} (then PATH)", settings.install_dir)

    # -- SSE -------------------------------------------------------------------
    # Let event streams deliver session.ended on shutdown instead of being
    # cut off as soon as uvicorn starts exiting.
    AppStatus.disable_automatic_graceful_drain()
    AppStatus.should_exit = False

    # -- Supervisor ------------------------------------------------------------
    # The registry lives and dies with this lifespan; once shut down it refuses
    # new sessions for good.
    supervisor = Supervisor(settings, events=EventLog(), registry=ProcessRegistry())
    _app.state.supervisor = supervisor
    logger.info("Supervisor: initialised")

    yield

    # -- Shutdown --------------------------------------------------------------
    logger.info("Agent relay shutting down (active_sessions={})", supervisor.registry.active_count)

    # 1. Refuse new work, let queued prompts finish, then terminate sessions
    #    and stop every agent process and shared server.
    await supervisor.shutdown(timeout=settings.graceful_shutdown_timeout)

    # 2. Signal SSE streams to close.  Must happen AFTER the sessions ended
    #    so that streams can deliver the terminal event before closing.
    AppStatus.should_exit = True
    logger.info("SSE: signalled streams to close")

    _app.state.supervisor = None


app = FastAPI(title="Agent Relay", lifespan=lifespan)

# ---------------------------------------------------------------------------
# API router -- all endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


from agentrelay.daemon.routers.agents import router as agents_router  # noqa: E402
from agentrelay.daemon.routers.sessions import router as sessions_router  # noqa: E402

api.include_router(agents_router)
api.include_router(sessions_router)

app.include_router(api)
