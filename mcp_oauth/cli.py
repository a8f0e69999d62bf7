"""CLI entry point for mcp-oauth."""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from pathlib import Path
from typing import Any

import click

from . import __version__
from .config import is_debug_enabled, load_options
from .errors import OAuthError, TokenDecryptionError
from .output import OutputHandler
from .provider import INVALIDATION_SCOPES, OAuthClientProvider
from .store import FileTokenStorage, get_server_url_hash
from .tokens import ClientInformation

# Logger for CLI
logger = logging.getLogger("mcp-oauth")

DECRYPTION_HELP = (
    "Stored credentials cannot be decrypted with the current key.\n"
    "Run 'mcp-oauth logout SERVER_URL' and log in again."
)


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False),
    help="Credential storage root (default ~/.config/mcp-oauth)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: click.Context,
    json_mode: bool,
    env_path: str | None,
    config_dir: str | None,
    verbose: bool,
) -> None:
    """mcp-oauth - OAuth 2.0 authorization-code + PKCE login for MCP servers."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["config_dir"] = Path(config_dir) if config_dir else None
    ctx.obj["output"] = OutputHandler(json_mode)

    # Configure logging based on verbosity
    if verbose or is_debug_enabled():
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_provider(ctx: click.Context, server_url: str, **overrides: Any) -> OAuthClientProvider:
    """Build a provider from the environment and command-line options."""
    output: OutputHandler = ctx.obj["output"]

    def open_browser(url: str) -> bool:
        output.status(f"If the browser does not open, visit:\n{url}")
        return webbrowser.open(url)

    try:
        options = load_options(
            server_url,
            env_path=ctx.obj["env_path"],
            config_dir=ctx.obj["config_dir"],
            **overrides,
        )
        return OAuthClientProvider(options, browser_launcher=open_browser, on_status=output.status)
    except OAuthError as e:
        output.error(e)


def _handle_error(output: OutputHandler, error: OAuthError) -> None:
    if isinstance(error, TokenDecryptionError):
        output.error(error, help_text=DECRYPTION_HELP)
    output.error(error)


@main.command()
@click.argument("server_url")
@click.option("--port", "-p", type=int, help="Callback listener port (default 12334)")
@click.option("--host", help="Callback listener host (default localhost)")
@click.option("--client-id", help="Pre-registered client ID (skips registration)")
@click.option("--client-secret", help="Client secret for a confidential client")
@click.option("--resource", help="Resource indicator to request")
@click.option("--scope", "scopes", multiple=True, help="Scope to request (repeatable)")
@click.option("--timeout", "-t", type=float, help="Seconds to wait for the browser redirect")
@click.option("--force", is_flag=True, help="Discard stored tokens and log in again")
@click.pass_context
def login(
    ctx: click.Context,
    server_url: str,
    port: int | None,
    host: str | None,
    client_id: str | None,
    client_secret: str | None,
    resource: str | None,
    scopes: tuple[str, ...],
    timeout: float | None,
    force: bool,
) -> None:
    """Authenticate with an MCP server through the browser."""
    output: OutputHandler = ctx.obj["output"]

    static_client_info = None
    if client_id:
        static_client_info = ClientInformation(client_id=client_id, client_secret=client_secret)

    provider = get_provider(
        ctx,
        server_url,
        callback_port=port,
        host=host,
        static_client_info=static_client_info,
        authorize_resource=resource,
        scopes=list(scopes) or None,
        authorization_timeout=timeout,
    )

    async def run() -> None:
        async with provider:
            if force:
                await provider.invalidate_credentials("tokens")
            await provider.ensure_authenticated()

    try:
        asyncio.run(run())
    except OAuthError as e:
        _handle_error(output, e)
    except KeyboardInterrupt:
        output.error(OAuthError("Login cancelled"))

    output.success(
        provider.status().to_dict(),
        human_message=click.style(f"Authenticated with {server_url}", fg="green"),
    )


@main.command()
@click.argument("server_url")
@click.pass_context
def status(ctx: click.Context, server_url: str) -> None:
    """Show stored authentication state for an MCP server."""
    provider = get_provider(ctx, server_url)
    auth_status = provider.status()

    data = auth_status.to_dict()
    ctx.obj["output"].fields(f"OAuth status for {server_url}", data)


@main.command()
@click.argument("server_url")
@click.pass_context
def refresh(ctx: click.Context, server_url: str) -> None:
    """Refresh the access token with the stored refresh token."""
    output: OutputHandler = ctx.obj["output"]
    provider = get_provider(ctx, server_url)

    try:
        tokens = provider.storage.get_tokens(provider.server_id)
        if tokens is None or not tokens.has_refresh_token():
            raise OAuthError(
                f"No refresh token stored for {server_url}. Run 'mcp-oauth login {server_url}'."
            )
        asyncio.run(provider.refresh(tokens.refresh_token))  # type: ignore[arg-type]
    except OAuthError as e:
        _handle_error(output, e)

    output.success(
        provider.status().to_dict(),
        human_message=click.style(f"Refreshed access token for {server_url}", fg="green"),
    )


@main.command()
@click.argument("server_url")
@click.option(
    "--scope",
    type=click.Choice(INVALIDATION_SCOPES),
    default="all",
    show_default=True,
    help="Which stored credentials to forget",
)
@click.pass_context
def logout(ctx: click.Context, server_url: str, scope: str) -> None:
    """Forget stored credentials for an MCP server."""
    output: OutputHandler = ctx.obj["output"]
    provider = get_provider(ctx, server_url)

    try:
        asyncio.run(provider.invalidate_credentials(scope))
    except OAuthError as e:
        _handle_error(output, e)

    output.success(
        {"server_url": server_url, "server_id": provider.server_id, "scope": scope},
        human_message=f"Cleared {scope} credentials for {server_url}",
    )


@main.command("server-id")
@click.argument("server_url")
@click.pass_context
def server_id(ctx: click.Context, server_url: str) -> None:
    """Print the storage identity derived from a server URL."""
    output: OutputHandler = ctx.obj["output"]
    identity = get_server_url_hash(server_url)

    config_dir = ctx.obj["config_dir"]
    storage_dir = (config_dir / identity) if config_dir else None

    data: dict[str, Any] = {"server_url": server_url, "server_id": identity}
    if storage_dir is not None:
        data["storage_dir"] = str(storage_dir)

    output.success(data, human_message=identity)


@main.command("list")
@click.pass_context
def list_cmd(ctx: click.Context) -> None:
    """List server identities with stored credentials."""
    output: OutputHandler = ctx.obj["output"]
    storage = FileTokenStorage(ctx.obj["config_dir"], encrypted=False)
    ids = storage.list_server_ids()

    if ctx.obj["json_mode"]:
        output.success(ids)
    elif ids:
        click.echo("\n".join(ids))
    else:
        click.echo("No stored credentials.")


if __name__ == "__main__":
    main()
