import asyncio
from logging import Logger
from typing import Literal

import click
from fastmcp import FastMCP
from fastmcp.server.middleware.logging import LoggingMiddleware
from fastmcp.utilities.logging import get_logger

from repo_relay_mcp.archives.intake import ArchiveIntake
from repo_relay_mcp.clients.completion import CompletionDispatcher, CredentialPool, get_completion_client_factory
from repo_relay_mcp.clients.github import RepositoryHostClient
from repo_relay_mcp.clients.messaging import MessagingFileClient
from repo_relay_mcp.servers.relay import RelayServer
from repo_relay_mcp.sessions.store import SessionStore
from repo_relay_mcp.settings import ConfigError, Settings
from repo_relay_mcp.sync.pipeline import SyncPipeline

logger: Logger = get_logger(name=__name__)


def build_relay_server(settings: Settings) -> RelayServer:
    """Wire the relay's components together from the process configuration."""

    session_store: SessionStore = SessionStore(
        ttl_seconds=settings.session_ttl_seconds,
        max_users=settings.session_max_users,
        logger=logger,
    )

    dispatcher: CompletionDispatcher = CompletionDispatcher(
        credential_pool=CredentialPool(credentials=[key.get_secret_value() for key in settings.completion_api_keys]),
        model=settings.completion_model,
        client_factory=get_completion_client_factory(base_url=settings.completion_base_url, timeout=settings.completion_timeout_seconds),
        logger=logger,
    )

    sync_pipeline: SyncPipeline | None = None

    if settings.github_token is not None:
        host_client = RepositoryHostClient.from_token(
            token=settings.github_token.get_secret_value(), timeout=settings.github_timeout_seconds, logger=logger
        )
        sync_pipeline = SyncPipeline(host_client=host_client, logger=logger)
    else:
        logger.warning("No GitHub token found, uploads to GitHub are disabled. Set GITHUB_TOKEN to enable them.")

    return RelayServer(
        dispatcher=dispatcher,
        session_store=session_store,
        archive_intake=ArchiveIntake(
            session_store=session_store, scratch_dir=settings.scratch_dir, max_bytes=settings.archive_max_bytes, logger=logger
        ),
        sync_pipeline=sync_pipeline,
        messaging_client=MessagingFileClient(
            token=settings.messaging_token.get_secret_value(),
            file_url=settings.messaging_file_url,
            timeout=settings.download_timeout_seconds,
            max_bytes=settings.archive_max_bytes,
            logger=logger,
        ),
        logger=logger,
    )


def create_mcp(relay_server: RelayServer) -> FastMCP[None]:
    mcp: FastMCP[None] = FastMCP[None](name="Repo Relay MCP")

    mcp.add_middleware(middleware=LoggingMiddleware(include_payloads=False, logger=logger))

    _ = relay_server.register_tools(fastmcp=mcp)
    _ = relay_server.register_routes(fastmcp=mcp)

    return mcp


@click.command()
@click.option(
    "--mcp-transport",
    type=click.Choice(["stdio", "streamable-http"]),
    default="streamable-http",
    help="The transport to run the MCP server on",
)
@click.option("--host", default="0.0.0.0", help="The host the streamable-http transport listens on")
def run_mcp(mcp_transport: Literal["stdio", "streamable-http"], host: str):
    try:
        settings: Settings = Settings.from_env()
    except ConfigError as e:
        raise click.ClickException(f"Refusing to start, the configuration is invalid: {e}") from e

    relay_server: RelayServer = build_relay_server(settings=settings)
    mcp: FastMCP[None] = create_mcp(relay_server=relay_server)

    try:
        if mcp_transport == "stdio":
            mcp.run(transport="stdio")
        else:
            mcp.run(transport="streamable-http", host=host, port=settings.port)
    finally:
        asyncio.run(relay_server.aclose())


if __name__ == "__main__":
    run_mcp()
