"""
Command-line interface for the cloud manager.

Runs the API server and drives servers and the proxy directly against the
same database and Docker daemon, without going through HTTP.
"""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import click
import uvicorn

from mcm_common.config import LOG_LEVELS, Settings, configure_logging
from mcm_common.errors import FleetError, NotFoundError
from mcm_common.models import MinecraftServer, ProxyServer
from mcm_controller.services import Services, open_services


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


def run_with_services(ctx: click.Context, action: Callable[[Services], Awaitable[Any]]) -> Any:
    """Open services, run action, close services; exit 1 on fleet errors."""
    settings: Settings = ctx.obj["settings"]

    async def run():
        services = await open_services(settings)
        try:
            return await action(services)
        finally:
            await services.close()

    try:
        return run_async(run())
    except FleetError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


async def resolve_server_id(services: Services, ref: str) -> str:
    """Accept either a server id or a server name."""
    try:
        return (await services.repository.get_server(ref)).id
    except NotFoundError:
        return (await services.repository.get_server_by_name(ref)).id


def print_server(server: MinecraftServer, json_output: bool) -> None:
    if json_output:
        click.echo(json.dumps(server.to_dict(), indent=2))
        return
    click.echo(f"  ID:          {server.id}")
    click.echo(f"  Name:        {server.name}")
    click.echo(f"  Status:      {server.status.value}")
    click.echo(f"  Max players: {server.max_players}")
    click.echo(f"  MOTD:        {server.motd}")
    click.echo(f"  Version:     {server.version}")
    click.echo(f"  Container:   {server.container_id[:12] or '-'}")
    click.echo(f"  Volume:      {server.volume_id}")


def print_proxy(proxy: ProxyServer, json_output: bool) -> None:
    if json_output:
        click.echo(json.dumps(proxy.to_dict(), indent=2))
        return
    click.echo(f"  ID:             {proxy.id}")
    click.echo(f"  Name:           {proxy.name}")
    click.echo(f"  Status:         {proxy.status.value}")
    click.echo(f"  Port:           {proxy.port}")
    click.echo(f"  Default server: {proxy.default_server_id or '-'}")
    click.echo(f"  Container:      {proxy.container_id[:12] or '-'}")


@click.group()
@click.option("--db-path", envvar="MCM_DB_PATH", help="SQLite database path")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Logging level (default: MCM_LOG_LEVEL or INFO)",
)
@click.pass_context
def cli(ctx: click.Context, db_path: str | None, log_level: str | None):
    """MCM - Manage a fleet of Minecraft servers behind a Velocity proxy."""
    settings = Settings.from_env().with_overrides(
        db_path=db_path, log_level=log_level.upper() if log_level else None
    )
    configure_logging(settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--host", help="Bind host (default: MCM_API_HOST or 0.0.0.0)")
@click.option("--port", type=int, help="Bind port (default: MCM_API_PORT or 8080)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None):
    """Run the HTTP API server."""
    from mcm_api.app import create_app

    settings: Settings = ctx.obj["settings"].with_overrides(api_host=host, api_port=port)
    click.echo(f"Serving API on http://{settings.api_host}:{settings.api_port}")
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


@cli.group()
def server():
    """Manage Minecraft servers."""
    pass


@cli.group()
def proxy():
    """Manage the Velocity proxy."""
    pass


# ============================================================================
# Server Commands
# ============================================================================


@server.command("create")
@click.option("--name", required=True, help="Unique server name (also its network alias)")
@click.option("--max-players", type=int, help="Player cap (default: 20)")
@click.option("--motd", help="Message of the day")
@click.option("--version", "mc_version", help="Minecraft version (default: LATEST)")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def server_create(
    ctx: click.Context,
    name: str,
    max_players: int | None,
    motd: str | None,
    mc_version: str | None,
    json_output: bool,
):
    """Create a new server (not started)."""

    async def create(services: Services):
        return await services.controller.create_server(
            name, max_players=max_players, motd=motd, version=mc_version
        )

    created = run_with_services(ctx, create)
    if not json_output:
        click.echo("✓ Server created successfully")
    print_server(created, json_output)


@server.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def server_list(ctx: click.Context, json_output: bool):
    """List all servers."""

    async def list_all(services: Services):
        return await services.controller.list_servers()

    servers = run_with_services(ctx, list_all)

    if json_output:
        click.echo(json.dumps([s.to_dict() for s in servers], indent=2))
        return

    if not servers:
        click.echo("No servers found.")
        return

    click.echo(f"\n{'ID':<38} {'Name':<24} {'Status':<10} {'Players':<8} {'Version':<10}")
    click.echo("-" * 92)
    for s in servers:
        click.echo(f"{s.id:<38} {s.name:<24} {s.status.value:<10} {s.max_players:<8} {s.version:<10}")
    click.echo()


@server.command("show")
@click.argument("server_ref")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def server_show(ctx: click.Context, server_ref: str, json_output: bool):
    """Show one server by id or name."""

    async def show(services: Services):
        server_id = await resolve_server_id(services, server_ref)
        return await services.controller.get_server(server_id)

    print_server(run_with_services(ctx, show), json_output)


@server.command("update")
@click.argument("server_ref")
@click.option("--max-players", type=int, help="New player cap")
@click.option("--motd", help="New message of the day")
@click.option("--version", "mc_version", help="New Minecraft version")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def server_update(
    ctx: click.Context,
    server_ref: str,
    max_players: int | None,
    motd: str | None,
    mc_version: str | None,
    json_output: bool,
):
    """Update a server's settings."""
    if max_players is None and motd is None and mc_version is None:
        click.echo("Error: Nothing to update", err=True)
        sys.exit(1)

    async def update(services: Services):
        server_id = await resolve_server_id(services, server_ref)
        return await services.controller.update_server(
            server_id, max_players=max_players, motd=motd, version=mc_version
        )

    updated = run_with_services(ctx, update)
    if not json_output:
        click.echo("✓ Server updated")
    print_server(updated, json_output)


@server.command("start")
@click.argument("server_ref")
@click.pass_context
def server_start(ctx: click.Context, server_ref: str):
    """Start a server."""

    async def start(services: Services):
        server_id = await resolve_server_id(services, server_ref)
        return await services.controller.start_server(server_id)

    started = run_with_services(ctx, start)
    click.echo(f"✓ Server {started.name} started")


@server.command("stop")
@click.argument("server_ref")
@click.pass_context
def server_stop(ctx: click.Context, server_ref: str):
    """Stop a server."""

    async def stop(services: Services):
        server_id = await resolve_server_id(services, server_ref)
        return await services.controller.stop_server(server_id)

    stopped = run_with_services(ctx, stop)
    click.echo(f"✓ Server {stopped.name} stopped")


@server.command("delete")
@click.argument("server_ref")
@click.option("--yes", is_flag=True, help="Skip confirmation")
@click.pass_context
def server_delete(ctx: click.Context, server_ref: str, yes: bool):
    """Delete a server with its container and world data."""
    if not yes:
        click.confirm(
            f"Delete server {server_ref} and its world data? This cannot be undone",
            abort=True,
        )

    async def delete(services: Services):
        server_id = await resolve_server_id(services, server_ref)
        return await services.controller.delete_server(server_id)

    deleted = run_with_services(ctx, delete)
    click.echo(f"✓ Server {deleted.name} deleted")


@server.command("exec")
@click.argument("server_ref")
@click.argument("command", nargs=-1, required=True)
@click.pass_context
def server_exec(ctx: click.Context, server_ref: str, command: tuple[str, ...]):
    """Run a console command on a server."""

    async def execute(services: Services):
        server_id = await resolve_server_id(services, server_ref)
        return await services.controller.execute_command(server_id, " ".join(command))

    output = run_with_services(ctx, execute)
    click.echo(output, nl=not output.endswith("\n"))


@server.command("logs")
@click.argument("server_ref")
@click.option("--follow/--no-follow", "-f", default=False, help="Keep streaming new lines")
@click.option("--tail", default="100", show_default=True, help="Lines of history, or 'all'")
@click.pass_context
def server_logs(ctx: click.Context, server_ref: str, follow: bool, tail: str):
    """Print a server's console output."""

    async def logs(services: Services):
        server_id = await resolve_server_id(services, server_ref)
        async for line in services.controller.stream_logs(server_id, follow=follow, tail=tail):
            click.echo(line, nl=False)

    try:
        run_with_services(ctx, logs)
    except KeyboardInterrupt:
        pass


# ============================================================================
# Proxy Commands
# ============================================================================


@proxy.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def proxy_show(ctx: click.Context, json_output: bool):
    """Show the proxy, creating it if it does not exist yet."""

    async def show(services: Services):
        return await services.reconciler.get_proxy()

    print_proxy(run_with_services(ctx, show), json_output)


@proxy.command("start")
@click.pass_context
def proxy_start(ctx: click.Context):
    """Start the proxy."""

    async def start(services: Services):
        return await services.reconciler.start_proxy()

    run_with_services(ctx, start)
    click.echo("✓ Proxy started")


@proxy.command("stop")
@click.pass_context
def proxy_stop(ctx: click.Context):
    """Stop the proxy."""

    async def stop(services: Services):
        return await services.reconciler.stop_proxy()

    run_with_services(ctx, stop)
    click.echo("✓ Proxy stopped")


@proxy.command("set-default")
@click.argument("server_ref", required=False)
@click.option("--clear", is_flag=True, help="Route to every server instead of one default")
@click.pass_context
def proxy_set_default(ctx: click.Context, server_ref: str | None, clear: bool):
    """Set the server players land on first."""
    if clear == bool(server_ref):
        click.echo("Error: Pass either a server or --clear", err=True)
        sys.exit(1)

    async def set_default(services: Services):
        server_id = None if clear else await resolve_server_id(services, server_ref)
        return await services.reconciler.update_proxy(server_id)

    updated = run_with_services(ctx, set_default)
    if updated.default_server_id:
        click.echo(f"✓ Default server set to {updated.default_server_id}")
    else:
        click.echo("✓ Default server cleared")


@proxy.command("regenerate")
@click.option("--show", is_flag=True, help="Print the deployed configuration")
@click.pass_context
def proxy_regenerate(ctx: click.Context, show: bool):
    """Rebuild and deploy the proxy's routing configuration."""

    async def regenerate(services: Services):
        return await services.reconciler.regenerate_config()

    document = run_with_services(ctx, regenerate)
    click.echo("✓ Proxy configuration regenerated")
    if show:
        click.echo(document)


if __name__ == "__main__":
    cli()
