"""Command-line interface for AndyTab sync."""

import asyncio
import contextlib
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from andytab import __version__
from andytab.core.config import AppConfig, load_config
from andytab.core.errors import AndyTabError, ConfigInvalidError
from andytab.core.models import Resolution, StartupAction, remove_search_engine
from andytab.core.snapshot import extract_timestamp
from andytab.core.storage import LocalDataStore, StorageKeys
from andytab.core.sync import DownloadResult, SyncEngine
from andytab.sources.webdav import WebDAVClient
from andytab.utils.credentials import CredentialStore
from andytab.utils.logging import setup_logging

# Create Typer app
app = typer.Typer(
    name="andytab",
    help="Synchronize AndyTab shortcuts, settings, todos and notes over WebDAV",
    add_completion=False,
)

# Create console for rich output
console = Console()


@contextlib.asynccontextmanager
async def open_engine(cfg: AppConfig) -> AsyncIterator[SyncEngine]:
    """Build an initialized store and engine, closing them afterwards."""
    store = LocalDataStore.from_config(cfg)
    await store.initialize()

    def announce_reload() -> None:
        console.print("[dim]Local data replaced; reload any open AndyTab pages[/dim]")

    engine = SyncEngine.from_config(cfg, store, on_reload_required=announce_reload)
    try:
        yield engine
    finally:
        await engine.close()


def format_timestamp(ts: int | None) -> str:
    if ts is None:
        return "Never"
    return f"{datetime.fromtimestamp(ts / 1000).strftime('%Y-%m-%d %H:%M:%S')} ({ts})"


def fail(message: str, error: Exception | None = None) -> None:
    console.print(f"[red]✗ {message}[/red]")
    if error is not None:
        console.print(f"[dim]{error}[/dim]")
    raise typer.Exit(1)


def require_sync_enabled(cfg: AppConfig) -> None:
    if not cfg.sync.enabled:
        fail("Sync is disabled in the configuration (set sync.enabled = true)")


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file",
        exists=True,
        dir_okay=False,
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
) -> None:
    """AndyTab - WebDAV sync for the AndyTab new tab page."""
    ctx.ensure_object(dict)
    cfg = load_config(config_file)
    ctx.obj["config"] = cfg
    setup_logging(cfg, level_name=log_level)


@app.command()
def version() -> None:
    """Show version information."""
    import platform

    table = Table(title="AndyTab Version Information")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Python", platform.python_version())
    table.add_row("Platform", platform.platform())

    console.print(table)


@app.command()
def config(
    ctx: typer.Context,
    show: bool = typer.Option(False, "--show", "-s", help="Show current configuration"),
    init: bool = typer.Option(False, "--init", "-i", help="Create a default configuration file"),
) -> None:
    """Manage configuration."""
    cfg: AppConfig = ctx.obj["config"]

    if init:
        config_path = cfg.general.config_file or cfg.default_config_path

        if config_path.exists():
            console.print(f"[yellow]Config file already exists:[/yellow] {config_path}")
            if not typer.confirm("Overwrite existing config?"):
                console.print("[dim]Config creation cancelled[/dim]")
                raise typer.Exit(0)

        cfg.save_to_file(config_path)
        console.print(f"[green]✓ Config file created:[/green] {config_path}")
        console.print("[yellow]Edit this file to configure your WebDAV server.[/yellow]")
        return

    if show:
        table = Table(title="AndyTab Configuration")
        table.add_column("Setting", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")

        table.add_row("Data Directory", str(cfg.general.data_dir))
        table.add_row("Config File", str(cfg.general.config_file or "Not set"))
        table.add_row("Log Level", cfg.general.log_level)

        table.add_row("", "")
        table.add_row("[bold]WebDAV[/bold]", "")
        table.add_row("URL", cfg.webdav.url or "Not set")
        table.add_row("Username", cfg.webdav.username or "Not set")
        table.add_row("Remote Directory", cfg.webdav.remote_dir)
        table.add_row("Timeout", f"{cfg.webdav.timeout_ms} ms")
        table.add_row("Transfer Timeout", f"{cfg.webdav.transfer_timeout_ms} ms")

        table.add_row("", "")
        table.add_row("[bold]Sync[/bold]", "")
        table.add_row("Enabled", "✓" if cfg.sync.enabled else "✗")
        table.add_row("Debounce", f"{cfg.sync.debounce_seconds:g} s")
        table.add_row("Check On Startup", "✓" if cfg.sync.check_on_startup else "✗")

        console.print(table)
    else:
        console.print(f"[yellow]Configuration file:[/yellow] {cfg.general.config_file or 'Not set'}")
        console.print(f"[yellow]Data directory:[/yellow] {cfg.general.data_dir}")
        console.print("\n[dim]Use --show to display full configuration[/dim]")
        console.print("[dim]Use --init to create a default config file[/dim]")


# WebDAV subcommand group
webdav_app = typer.Typer(help="Manage the WebDAV connection")
app.add_typer(webdav_app, name="webdav")


@webdav_app.command("test")
def webdav_test(ctx: typer.Context) -> None:
    """Test the configured WebDAV connection."""
    cfg: AppConfig = ctx.obj["config"]

    async def run_test():
        async with WebDAVClient.from_config(cfg.webdav) as client:
            return await client.test_connection()

    try:
        result = asyncio.run(run_test())
    except ConfigInvalidError as e:
        fail("WebDAV is not configured correctly", e)

    if result.success:
        console.print(f"[green]✓ {result.message}[/green]")
    else:
        fail(result.message)


@webdav_app.command("set-password")
def webdav_set_password(
    ctx: typer.Context,
    username: Optional[str] = typer.Option(None, "--username", "-u", help="WebDAV username"),
) -> None:
    """Store the WebDAV password in the system keyring."""
    cfg: AppConfig = ctx.obj["config"]
    username = username or cfg.webdav.username
    if not username:
        fail("No WebDAV username configured; pass --username")

    password = typer.prompt("WebDAV password", hide_input=True, confirmation_prompt=True)
    try:
        CredentialStore().set_webdav_password(username, password)
    except Exception as e:
        fail("Failed to store password", e)
    console.print(f"[green]✓ Password stored for {username}[/green]")


@webdav_app.command("delete-password")
def webdav_delete_password(
    ctx: typer.Context,
    username: Optional[str] = typer.Option(None, "--username", "-u", help="WebDAV username"),
) -> None:
    """Remove the WebDAV password from the system keyring."""
    cfg: AppConfig = ctx.obj["config"]
    username = username or cfg.webdav.username
    if not username:
        fail("No WebDAV username configured; pass --username")

    if CredentialStore().delete_webdav_password(username):
        console.print(f"[green]✓ Password deleted for {username}[/green]")
    else:
        console.print(f"[yellow]No password stored for {username}[/yellow]")


# Sync subcommand group
sync_app = typer.Typer(help="Synchronize local data with the cloud")
app.add_typer(sync_app, name="sync")


def prompt_resolution(local_ts: int, cloud_ts: int) -> Resolution:
    console.print(
        Panel(
            f"Local data last synced: {format_timestamp(local_ts)}\n"
            f"Cloud snapshot:         {format_timestamp(cloud_ts)}\n\n"
            "[cyan]local[/cyan]  Upload local data and overwrite the cloud\n"
            "[cyan]cloud[/cyan]  Download cloud data and overwrite local data\n"
            "[cyan]merge[/cyan]  Merge both (cloud wins on duplicates) and upload",
            title="Sync conflict",
            border_style="yellow",
        )
    )
    choice = typer.prompt("Resolution", default=Resolution.KEEP_LOCAL.value)
    try:
        return Resolution(choice.strip().lower())
    except ValueError:
        fail(f"Unknown resolution '{choice}' (expected local, cloud or merge)")


@sync_app.command("check")
def sync_check(
    ctx: typer.Context,
    resolution: Optional[Resolution] = typer.Option(
        None,
        "--resolution",
        "-r",
        help="Resolve a conflict without prompting (local, cloud or merge)",
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Run even if the startup check is switched off"),
) -> None:
    """Run the startup sync check and resolve conflicts."""
    cfg: AppConfig = ctx.obj["config"]

    async def run_check():
        async with open_engine(cfg) as engine:
            result = await engine.check_on_startup(force=force)

            if result.action is StartupAction.SKIPPED:
                if engine.client is None:
                    console.print("[yellow]WebDAV is not configured; nothing to sync[/yellow]")
                elif not engine.enabled:
                    console.print("[yellow]Sync is disabled in the configuration[/yellow]")
                else:
                    console.print("[yellow]Startup check is switched off; use --force to run it[/yellow]")
            elif result.action is StartupAction.FAILED:
                fail("Sync check failed", result.error)
            elif result.action is StartupAction.DOWNLOADED:
                console.print(f"[green]✓ Downloaded newer cloud data:[/green] {result.snapshot_name}")
            elif result.action is StartupAction.NONE:
                if result.snapshot_name:
                    console.print("[green]✓ Local data is up to date[/green]")
                else:
                    console.print("[dim]No sync snapshot in the cloud yet[/dim]")
            else:
                chosen = resolution or prompt_resolution(result.local_timestamp, result.cloud_timestamp)
                try:
                    outcome = await engine.resolve_conflict(chosen)
                except AndyTabError as e:
                    fail("Failed to resolve sync conflict", e)
                if isinstance(outcome, DownloadResult):
                    console.print(f"[green]✓ Applied cloud data from[/green] {outcome.filename}")
                else:
                    console.print(f"[green]✓ Uploaded[/green] {outcome.filename}")

    asyncio.run(run_check())


@sync_app.command("push")
def sync_push(ctx: typer.Context) -> None:
    """Upload local data as a new sync snapshot."""
    cfg: AppConfig = ctx.obj["config"]
    require_sync_enabled(cfg)

    async def run_push():
        async with open_engine(cfg) as engine:
            try:
                result = await engine.upload()
            except AndyTabError as e:
                fail("Upload failed", e)
            console.print(f"[green]✓ Uploaded[/green] {result.filename}")
            if result.pruned:
                console.print(f"  [dim]Removed {len(result.pruned)} older snapshot(s)[/dim]")

    asyncio.run(run_push())


@sync_app.command("pull")
def sync_pull(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(None, help="Snapshot to download (default: newest)"),
) -> None:
    """Download a sync snapshot and overwrite local data."""
    cfg: AppConfig = ctx.obj["config"]
    require_sync_enabled(cfg)

    async def run_pull():
        async with open_engine(cfg) as engine:
            try:
                snapshot = name or await engine.get_latest_sync_snapshot()
                if snapshot is None:
                    console.print("[dim]No sync snapshot in the cloud yet[/dim]")
                    return
                result = await engine.download(snapshot)
            except ValueError as e:
                fail("Not a sync snapshot; use 'andytab backup restore' for backups", e)
            except AndyTabError as e:
                fail("Download failed", e)
            console.print(f"[green]✓ Applied cloud data from[/green] {result.filename}")

    asyncio.run(run_pull())


@sync_app.command("status")
def sync_status(ctx: typer.Context) -> None:
    """Show local and cloud sync state."""
    cfg: AppConfig = ctx.obj["config"]

    async def run_status():
        async with open_engine(cfg) as engine:
            try:
                info = await engine.status()
            except AndyTabError as e:
                fail("Failed to query cloud state", e)

        table = Table(title="Sync Status")
        table.add_column("Property", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")
        table.add_row("WebDAV Configured", "✓" if info["configured"] else "✗")
        table.add_row("Last Local Sync", format_timestamp(info["local_timestamp"]))
        table.add_row("Latest Cloud Snapshot", info["latest_snapshot"] or "None")
        table.add_row("Cloud Timestamp", format_timestamp(info["cloud_timestamp"]))
        console.print(table)

    asyncio.run(run_status())


# Local data subcommand group
data_app = typer.Typer(help="Read and edit local data")
app.add_typer(data_app, name="data")


@data_app.command("get")
def data_get(ctx: typer.Context, key: str = typer.Argument(..., help="Storage key")) -> None:
    """Print the JSON value stored for a key."""
    cfg: AppConfig = ctx.obj["config"]

    async def run_get():
        store = LocalDataStore.from_config(cfg)
        await store.initialize()
        return await store.get(key)

    console.print_json(json.dumps(asyncio.run(run_get()), ensure_ascii=False))


@data_app.command("set")
def data_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Storage key"),
    value: str = typer.Argument(..., help="JSON value"),
    no_sync: bool = typer.Option(False, "--no-sync", help="Do not upload the change"),
) -> None:
    """Store a JSON value and upload the change after the quiet period."""
    cfg: AppConfig = ctx.obj["config"]

    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        fail("Value is not valid JSON", e)

    async def run_set():
        async with open_engine(cfg) as engine:
            if not no_sync:
                engine.attach()
            try:
                await engine.store.set(key, parsed)
            except AndyTabError as e:
                fail(f"Failed to store {key}", e)
            if engine.has_pending_upload:
                console.print(f"[dim]Waiting {cfg.sync.debounce_seconds:g}s before uploading...[/dim]")
                await asyncio.sleep(cfg.sync.debounce_seconds)
                await engine.flush()
        console.print(f"[green]✓ Stored[/green] {key}")

    asyncio.run(run_set())


@data_app.command("remove-engine")
def data_remove_engine(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Search engine key"),
    no_sync: bool = typer.Option(False, "--no-sync", help="Do not upload the change"),
) -> None:
    """Remove a custom search engine (built-in engines cannot be removed)."""
    cfg: AppConfig = ctx.obj["config"]

    async def run_remove():
        async with open_engine(cfg) as engine:
            if not no_sync:
                engine.attach()
            dataset = await engine.store.load_dataset()
            if key not in dataset.search_engines:
                fail(f"No search engine named '{key}'")
            try:
                engines = remove_search_engine(dataset.search_engines, key)
            except ValueError as e:
                fail("Cannot remove search engine", e)
            await engine.store.set(
                StorageKeys.SEARCH_ENGINES,
                {name: value.model_dump() for name, value in engines.items()},
            )
            if engine.has_pending_upload:
                await asyncio.sleep(cfg.sync.debounce_seconds)
                await engine.flush()
        console.print(f"[green]✓ Removed search engine[/green] {key}")

    asyncio.run(run_remove())


# Backup subcommand group
backup_app = typer.Typer(help="Manage backups")
app.add_typer(backup_app, name="backup")


@backup_app.command("create")
def backup_create(ctx: typer.Context) -> None:
    """Upload a backup of the current local data."""
    cfg: AppConfig = ctx.obj["config"]

    async def run_backup():
        async with open_engine(cfg) as engine:
            try:
                name = await engine.create_backup()
            except AndyTabError as e:
                fail("Backup failed", e)
            console.print(f"[green]✓ Backup created:[/green] {name}")

    asyncio.run(run_backup())


@backup_app.command("list")
def backup_list(ctx: typer.Context) -> None:
    """List backups and sync snapshots in the cloud."""
    cfg: AppConfig = ctx.obj["config"]

    async def run_list():
        async with open_engine(cfg) as engine:
            try:
                return await engine.list_backups()
            except AndyTabError as e:
                fail("Failed to list backups", e)

    entries = asyncio.run(run_list())
    if not entries:
        console.print("[dim]No backups found[/dim]")
        return

    table = Table(title="Backups")
    table.add_column("Name", style="cyan")
    table.add_column("Date", style="green")
    table.add_column("Size", justify="right")
    for entry in entries:
        timestamp = extract_timestamp(entry.name)
        date = format_timestamp(timestamp) if timestamp is not None else "Unknown"
        table.add_row(entry.name, date, str(entry.size))
    console.print(table)


@backup_app.command("restore")
def backup_restore(ctx: typer.Context, name: str = typer.Argument(..., help="Backup file name")) -> None:
    """Replace local data with a backup from the cloud."""
    cfg: AppConfig = ctx.obj["config"]

    async def run_restore():
        async with open_engine(cfg) as engine:
            try:
                await engine.restore_backup(name)
            except AndyTabError as e:
                fail("Restore failed", e)
            console.print(f"[green]✓ Restored[/green] {name}")

    asyncio.run(run_restore())


@backup_app.command("delete")
def backup_delete(ctx: typer.Context, name: str = typer.Argument(..., help="Backup file name")) -> None:
    """Delete a backup from the cloud."""
    cfg: AppConfig = ctx.obj["config"]

    async def run_delete():
        async with open_engine(cfg) as engine:
            try:
                await engine.delete_backup(name)
            except AndyTabError as e:
                fail("Delete failed", e)
            console.print(f"[green]✓ Deleted[/green] {name}")

    asyncio.run(run_delete())


@backup_app.command("export")
def backup_export(
    ctx: typer.Context,
    destination: Path = typer.Argument(Path("."), help="Target file or directory"),
) -> None:
    """Write local data to a JSON backup file."""
    cfg: AppConfig = ctx.obj["config"]

    async def run_export():
        async with open_engine(cfg) as engine:
            return await engine.export_local(destination)

    path = asyncio.run(run_export())
    console.print(f"[green]✓ Exported to[/green] {path}")


@backup_app.command("import")
def backup_import(
    ctx: typer.Context,
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="Backup JSON file"),
) -> None:
    """Apply a local JSON backup file."""
    cfg: AppConfig = ctx.obj["config"]

    async def run_import():
        async with open_engine(cfg) as engine:
            try:
                return await engine.import_local(source)
            except AndyTabError as e:
                fail("Import failed", e)

    written = asyncio.run(run_import())
    console.print(f"[green]✓ Imported {len(written)} data categories from[/green] {source}")


def main_entry() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        logging.exception("Unhandled exception")
        sys.exit(1)


if __name__ == "__main__":
    main_entry()
