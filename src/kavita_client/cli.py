"""Command line interface for the Kavita client."""

import asyncio
import getpass
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .api_clients.kavita_client import KavitaAPIClient, resolve_reader_kind
from .api_clients.models import ReaderKind, ServerKind
from .api_clients.network_error_handler import APIClientError
from .config import ConfigManager
from .remote.exceptions import RemoteConfigurationError, ServerNotFoundError
from .remote.server_registry import ServerRegistry
from .remote.url_validator import build_server_url, validate_and_normalize_server_url

logger = logging.getLogger(__name__)

console = Console()

T = TypeVar("T")


def run_async(coro):
    """
    Run an async coroutine, handling both new event loops and existing ones.

    Commands normally run with no loop active and use asyncio.run(); when a
    loop is already running (embedded use, some test harnesses) the coroutine
    runs on a fresh loop in a worker thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    result = None
    exception = None

    def run_in_new_loop():
        nonlocal result, exception
        try:
            result = asyncio.run(coro)
        except Exception as e:
            exception = e

    thread = threading.Thread(target=run_in_new_loop)
    thread.start()
    thread.join()

    if exception:
        raise exception
    return result


def _run_with_registry(
    ctx: click.Context, action: Callable[[ServerRegistry], Awaitable[T]]
) -> T:
    """Load the registry, run ``action`` against it and report failures."""
    manager: ConfigManager = ctx.obj["config_manager"]

    async def _run() -> T:
        config = manager.get_config()
        registry = ServerRegistry(manager.create_store(), config=config)
        await registry.load()
        try:
            return await action(registry)
        finally:
            await registry.aclose()

    try:
        return run_async(_run())
    except APIClientError as e:
        console.print(f"❌ {e}", style="red")
        if e.user_guidance:
            console.print(e.user_guidance)
        _print_traceback(ctx)
        sys.exit(1)
    except (RemoteConfigurationError, ValueError) as e:
        console.print(f"❌ {e}", style="red")
        _print_traceback(ctx)
        sys.exit(1)


def _print_traceback(ctx: click.Context) -> None:
    if ctx.obj.get("verbose"):
        import traceback

        console.print(traceback.format_exc(), style="dim red")


async def _client_for(
    registry: ServerRegistry, server_id: Optional[str]
) -> KavitaAPIClient:
    """Client for ``server_id``, or the primary server, with its session loaded."""
    if server_id:
        client = registry.get_client(server_id)
        if client is None:
            raise ServerNotFoundError(server_id)
    else:
        client = registry.get_primary_client()
        if client is None:
            raise RemoteConfigurationError(
                "No servers registered. Add one with 'kavita server add NAME URL'"
            )
    await client.load_credentials()
    return client


server_option = click.option(
    "--server", "-s", "server_id", help="Server id (defaults to the primary server)"
)


@click.group(invoke_without_command=True)
@click.option("--config", "-c", type=click.Path(), help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__, prog_name="kavita")
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool):
    """Browse and sync reading progress with Kavita servers.

    \b
    GETTING STARTED:
      1. kavita server add home http://192.168.1.50:5000
      2. kavita auth login
      3. kavita libraries

    \b
    CONFIGURATION:
      Data directory: ~/.kavita-client (override with KAVITA_CLIENT_HOME)
      Settings:       config.json (timeout, page sizes, concurrency)
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    logging.basicConfig(
        level=logging.WARNING, format="%(levelname)s:%(name)s:%(message)s"
    )
    if verbose:
        logging.getLogger("kavita_client").setLevel(logging.DEBUG)
    else:
        logging.getLogger("httpx").setLevel(logging.WARNING)

    ctx.obj["config_manager"] = ConfigManager(Path(config) if config else None)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.group("server")
def server_group():
    """Manage registered servers."""
    pass


@server_group.command("add")
@click.argument("name")
@click.argument("url")
@click.option("--port", type=int, help="Port, when URL is a bare host name")
@click.option("--https", "use_https", is_flag=True, help="Use HTTPS with --port")
@click.option("--opds", is_flag=True, help="Register an OPDS feed instead of Kavita")
@click.option("--primary", is_flag=True, help="Make this the primary server")
@click.option("--skip-check", is_flag=True, help="Register without a health check")
@click.pass_context
def server_add(
    ctx,
    name: str,
    url: str,
    port: Optional[int],
    use_https: bool,
    opds: bool,
    primary: bool,
    skip_check: bool,
):
    """Register a server after checking that it answers.

    Example:
        kavita server add home http://192.168.1.50:5000
        kavita server add home 192.168.1.50 --port 5000
    """
    kind = ServerKind.OPDS if opds else ServerKind.KAVITA

    async def action(registry: ServerRegistry):
        target = url
        if port is not None or use_https:
            target = build_server_url(url, port, use_https)
        if not skip_check and kind is ServerKind.KAVITA:
            base_url = validate_and_normalize_server_url(target)
            async with KavitaAPIClient(
                base_url, registry.store, timeout=registry.config.timeout
            ) as checker:
                if not await checker.test_connection():
                    raise RemoteConfigurationError(
                        f"Cannot reach the server at {base_url}",
                        "check the address and port, or try toggling HTTP/HTTPS",
                    )
        return await registry.add_server(name, target, kind=kind, is_primary=primary)

    server = _run_with_registry(ctx, action)
    console.print(f"✅ Registered {server.name} ({server.base_url})", style="green")
    console.print(f"🆔 Server id: {server.id}", style="dim")


@server_group.command("list")
@click.pass_context
def server_list(ctx):
    """List registered servers."""

    async def action(registry: ServerRegistry):
        return registry.servers, registry.primary_server_id

    servers, primary_id = _run_with_registry(ctx, action)
    if not servers:
        console.print("No servers registered", style="yellow")
        return

    table = Table(title="Servers")
    table.add_column("", width=1)
    table.add_column("Id", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("URL")
    table.add_column("Kind")
    for server in servers:
        marker = "★" if server.id == primary_id else ""
        table.add_row(marker, server.id, server.name, server.base_url, server.kind.value)
    console.print(table)


@server_group.command("remove")
@click.argument("server_id")
@click.pass_context
def server_remove(ctx, server_id: str):
    """Remove a registered server."""

    async def action(registry: ServerRegistry):
        await registry.remove_server(server_id)
        return registry.primary_server_id

    primary_id = _run_with_registry(ctx, action)
    console.print(f"✅ Removed server {server_id}", style="green")
    if primary_id:
        console.print(f"★ Primary server: {primary_id}", style="dim")


@server_group.command("use")
@click.argument("server_id")
@click.pass_context
def server_use(ctx, server_id: str):
    """Make a server the primary server."""

    async def action(registry: ServerRegistry):
        await registry.set_primary(server_id)

    _run_with_registry(ctx, action)
    console.print(f"★ Primary server is now {server_id}", style="green")


@server_group.command("update")
@click.argument("server_id")
@click.option("--name", help="New display name")
@click.option("--url", help="New server URL")
@click.pass_context
def server_update(ctx, server_id: str, name: Optional[str], url: Optional[str]):
    """Change a server's name or URL."""
    changes: dict = {}
    if name:
        changes["name"] = name
    if url:
        changes["base_url"] = url
    if not changes:
        raise click.UsageError("Nothing to update: pass --name and/or --url")

    async def action(registry: ServerRegistry):
        return await registry.update_server(server_id, **changes)

    server = _run_with_registry(ctx, action)
    console.print(f"✅ Updated {server.name} ({server.base_url})", style="green")


@cli.command("ping")
@server_option
@click.pass_context
def ping(ctx, server_id: Optional[str]):
    """Check that a server answers its health check."""

    async def action(registry: ServerRegistry):
        client = await _client_for(registry, server_id)
        return client.base_url, await client.test_connection()

    base_url, reachable = _run_with_registry(ctx, action)
    if reachable:
        console.print(f"✅ {base_url} is reachable", style="green")
    else:
        console.print(f"❌ {base_url} is not reachable", style="red")
        sys.exit(1)


@cli.group("auth")
def auth_group():
    """Log in to and out of servers."""
    pass


@auth_group.command("login")
@click.option("--username", "-u", help="Username for authentication")
@click.option("--password", "-p", help="Password for authentication")
@server_option
@click.pass_context
def auth_login(ctx, username: Optional[str], password: Optional[str], server_id: Optional[str]):
    """Log in and store the session.

    Examples:
        kavita auth login --username alice --password secret
        kavita auth login  # Interactive prompts for credentials
    """
    if not username:
        username = click.prompt("Username", type=str)
    if not password:
        password = getpass.getpass("Password: ")

    if not username.strip() or not password.strip():
        console.print("❌ Username and password cannot be empty", style="red")
        sys.exit(1)

    async def action(registry: ServerRegistry):
        client = await _client_for(registry, server_id)
        return await client.login(username.strip(), password)

    with console.status("🔐 Authenticating..."):
        user = _run_with_registry(ctx, action)

    console.print(f"✅ Logged in as {user.username or username}", style="green")
    console.print("🔑 Session stored securely", style="cyan")


@auth_group.command("logout")
@server_option
@click.pass_context
def auth_logout(ctx, server_id: Optional[str]):
    """Forget the stored session."""

    async def action(registry: ServerRegistry):
        client = await _client_for(registry, server_id)
        await client.logout()

    _run_with_registry(ctx, action)
    console.print("✅ Logged out", style="green")


@auth_group.command("status")
@server_option
@click.pass_context
def auth_status(ctx, server_id: Optional[str]):
    """Show the stored session for a server."""

    async def action(registry: ServerRegistry):
        client = await _client_for(registry, server_id)
        return client.session_info()

    info = _run_with_registry(ctx, action)
    if not info["authenticated"]:
        console.print(f"🔒 Not logged in to {info['server_url']}", style="yellow")
        return

    console.print(f"🔓 Logged in to {info['server_url']}", style="green")
    if info["username"]:
        console.print(f"👤 {info['username']}", style="dim")
    if info["expires_at"]:
        state = "expired" if info["expired"] else "expires"
        console.print(
            f"⏱  Access token {state} {info['expires_at']:%Y-%m-%d %H:%M} UTC",
            style="dim",
        )


@cli.command("libraries")
@server_option
@click.pass_context
def libraries(ctx, server_id: Optional[str]):
    """List libraries."""

    async def action(registry: ServerRegistry):
        client = await _client_for(registry, server_id)
        return await client.list_libraries()

    libs = _run_with_registry(ctx, action)
    table = Table(title="Libraries")
    table.add_column("Id", style="dim")
    table.add_column("Name", style="cyan")
    for library in libs:
        table.add_row(str(library.id), library.name)
    console.print(table)


@cli.command("series")
@click.argument("library_id", type=int)
@click.option("--page", default=0, show_default=True, help="Zero-based page number")
@click.option("--page-size", type=int, help="Series per page (default from config)")
@server_option
@click.pass_context
def series(ctx, library_id: int, page: int, page_size: Optional[int], server_id: Optional[str]):
    """List series in a library with volume and chapter counts."""

    async def action(registry: ServerRegistry):
        client = await _client_for(registry, server_id)
        size = page_size or registry.config.page_size
        return await client.list_series(library_id, page, size)

    series_list = _run_with_registry(ctx, action)
    table = Table(title=f"Library {library_id}, page {page}")
    table.add_column("Id", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Volumes", justify="right")
    table.add_column("Chapters", justify="right")
    table.add_column("Read", justify="right")
    for item in series_list:
        table.add_row(
            str(item.id),
            item.name,
            _count(item.volume_count),
            _count(item.chapter_count),
            f"{item.pages_read}/{item.pages}",
        )
    console.print(table)


def _count(value: Any) -> str:
    return "?" if value is None else str(value)


@cli.command("volumes")
@click.argument("series_id", type=int)
@server_option
@click.pass_context
def volumes(ctx, series_id: int, server_id: Optional[str]):
    """List volumes and chapters of a series."""

    async def action(registry: ServerRegistry):
        client = await _client_for(registry, server_id)
        return await client.get_series(series_id), await client.list_volumes(series_id)

    detail, volume_list = _run_with_registry(ctx, action)
    console.print(f"📖 {detail.name}", style="bold cyan")
    for volume in volume_list:
        console.print(f"  📚 {volume.name or volume.number} (id {volume.id})")
        for chapter in volume.chapters:
            label = chapter.title or chapter.range or chapter.number or chapter.id
            console.print(f"     • {label} (id {chapter.id}, {chapter.pages} pages)", style="dim")


@cli.command("chapter")
@click.argument("chapter_id", type=int)
@click.option("--warm", is_flag=True, help="Ask the server to prepare the chapter")
@server_option
@click.pass_context
def chapter(ctx, chapter_id: int, warm: bool, server_id: Optional[str]):
    """Show reader information and the first page URL for a chapter."""

    async def action(registry: ServerRegistry):
        client = await _client_for(registry, server_id)
        info = await client.get_chapter_info(chapter_id)
        if warm:
            await client.warm_cache(chapter_id)
        kind = resolve_reader_kind(info)
        url = client.page_image_url(chapter_id, 0, extract_pdf=kind is ReaderKind.PDF)
        return info, kind, url

    info, kind, url = _run_with_registry(ctx, action)
    console.print(f"📄 {info.series_name} - {info.chapter_title or info.chapter_number}")
    console.print(f"   File: {info.file_name}", style="dim")
    console.print(f"   Pages: {info.pages}  Reader: {kind.value}", style="dim")
    console.print(f"   First page: {url}", style="dim")


@cli.command("progress")
@click.argument("series_id", type=int)
@click.argument("volume_id", type=int)
@click.argument("chapter_id", type=int)
@click.argument("page", type=int)
@server_option
@click.pass_context
def progress(ctx, series_id: int, volume_id: int, chapter_id: int, page: int, server_id: Optional[str]):
    """Record reading progress for a chapter."""

    async def action(registry: ServerRegistry):
        client = await _client_for(registry, server_id)
        return await client.record_progress(series_id, volume_id, chapter_id, page)

    if not _run_with_registry(ctx, action):
        console.print(f"❌ Progress not saved for chapter {chapter_id}", style="red")
        sys.exit(1)
    console.print(f"✅ Progress saved: chapter {chapter_id}, page {page}", style="green")


@cli.command("search")
@click.argument("query")
@click.pass_context
def search(ctx, query: str):
    """Search series by name across every registered server."""

    async def action(registry: ServerRegistry):
        return await registry.search_across_servers(query)

    matches = _run_with_registry(ctx, action)
    if not matches:
        console.print(f"No series matching '{query}'", style="yellow")
        return

    table = Table(title=f"Matches for '{query}'")
    table.add_column("Server", style="magenta")
    table.add_column("Library")
    table.add_column("Id", style="dim")
    table.add_column("Name", style="cyan")
    for match in matches:
        table.add_row(match.server_name, match.library_name, str(match.id), match.name)
    console.print(table)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
