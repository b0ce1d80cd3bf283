import click


@click.group()
@click.version_option(package_name="agentrelay")
def main() -> None:
    """Agent relay - one event stream for many coding agents."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from AGENTRELAY_HOST or 127.0.0.1).")
@click.option("--port", default=None, type=int, help="Bind port (default: from AGENTRELAY_PORT or 8700).")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload for development.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the agent relay daemon."""
    import uvicorn

    from agentrelay.daemon.settings import RelaySettings

    settings = RelaySettings()

    uvicorn.run(
        "agentrelay.daemon.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
        # Queued prompts get graceful_shutdown_timeout, then agents get the
        # SIGTERM grace window; add a buffer for the SSE close signal.
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout + int(settings.terminate_grace_seconds) + 10,
    )


@main.command()
def agents() -> None:
    """Show each agent kind, its capabilities and the binary that would be used."""
    import asyncio

    from agentrelay.daemon.agents import capabilities_of
    from agentrelay.daemon.errors import AgentUnavailableError
    from agentrelay.daemon.models.enums import AgentKind
    from agentrelay.daemon.settings import RelaySettings
    from agentrelay.daemon.supervisor.installer import PathInstaller

    installer = PathInstaller(RelaySettings())

    async def _resolve(kind: AgentKind) -> str:
        try:
            binary = await installer.resolve(kind)
        except AgentUnavailableError:
            return "not installed"
        return str(binary.path)

    for kind in AgentKind:
        caps = capabilities_of(kind)
        flags = [name for name, value in caps.model_dump(exclude={"concurrency"}).items() if value]
        location = asyncio.run(_resolve(kind))
        click.echo(f"{kind:<9} {caps.concurrency:<14} {location}")
        click.echo(f"{'':<9} {', '.join(flags) or '-'}")
