"""
CLI for FieldSync.

Commands:
- init: Create the local store and configuration
- add / update / delete / show / list: Work with records offline
- stats / queue / purge: Inspect the local store and mutation queue
- sync / watch / status: Synchronize with the remote store
- connect / callback / disconnect: Manage the Yandex Disk authorization
- export / import: JSON backup of all records
"""

import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from fieldsync import __version__
from fieldsync.config import AuthFlow, Config, RemoteBackend
from fieldsync.core.records import RecordRepository
from fieldsync.core.validation import ValidationError
from fieldsync.errors import FieldSyncError
from fieldsync.models import CollectionName, MutationStatus
from fieldsync.storage.local_store import LocalStore
from fieldsync.sync.adapter import RemoteAdapterProtocol
from fieldsync.sync.credentials import FileCredentialStore, OAuthSession
from fieldsync.sync.encryption import EncryptionError, EncryptionLayer
from fieldsync.sync.local_file_adapter import LocalFileAdapter
from fieldsync.sync.manager import SyncManager, SyncResult, SyncStatus
from fieldsync.sync.scheduler import AutoSync
from fieldsync.sync.yandex_disk_adapter import YandexDiskAdapter

console = Console()

logger = logging.getLogger("fieldsync")

COLLECTION_CHOICE = click.Choice([c.value for c in CollectionName])
HANDLED_ERRORS = (FieldSyncError, ValidationError, EncryptionError, ValueError)


def fail(message: str) -> None:
    """Print an error and exit with status 1."""
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


def build_adapter(config: Config) -> RemoteAdapterProtocol:
    """Create the remote adapter selected by the configuration."""
    if config.remote_backend == RemoteBackend.LOCAL:
        if not config.remote_path:
            raise ValueError("remote_path must be set when remote_backend is 'local'")
        return LocalFileAdapter(Path(config.remote_path) / config.root_folder)

    encryption = EncryptionLayer(config.credential_key) if config.credential_key else None
    session = OAuthSession(
        client_id=config.client_id,
        client_secret=config.client_secret,
        redirect_uri=config.redirect_uri,
        scope=config.oauth_scope,
        flow=config.auth_flow,
        oauth_base_url=config.oauth_base_url,
        refresh_margin=config.token_refresh_margin,
        timeout=config.request_timeout,
        store=FileCredentialStore(config.credentials_path, encryption),
    )
    return YandexDiskAdapter(
        session,
        root_folder=config.root_folder,
        api_base_url=config.api_base_url,
        timeout=config.request_timeout,
    )


def build_components(config: Config) -> Tuple[LocalStore, RemoteAdapterProtocol, SyncManager]:
    """Wire the local store, remote adapter and sync manager together."""
    store = LocalStore(config.sqlite_path)
    if store.degraded:
        console.print("[yellow]Local database unavailable; working in memory only.[/yellow]")

    adapter = build_adapter(config)
    manager = SyncManager(
        store,
        adapter,
        check_remote_version=config.check_remote_version,
        retry_failed=config.retry_failed,
        purge_after_sync=config.purge_after_sync,
    )
    return store, adapter, manager


def ensure_initialized(config: Config) -> LocalStore:
    """Ensure FieldSync is initialized and return the local store."""
    if not config.sqlite_path.exists():
        console.print("[red]FieldSync not initialized. Run 'fieldsync init' first.[/red]")
        sys.exit(1)
    return LocalStore(config.sqlite_path)


def ensure_yandex(adapter: RemoteAdapterProtocol) -> YandexDiskAdapter:
    if not isinstance(adapter, YandexDiskAdapter):
        console.print("[yellow]The local folder backend needs no authorization.[/yellow]")
        sys.exit(0)
    return adapter


def close_adapter(adapter: RemoteAdapterProtocol) -> None:
    """Release the HTTP clients held by a remote adapter."""
    if isinstance(adapter, YandexDiskAdapter):
        adapter.close()


def parse_payload(data: str) -> dict:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint="DATA")
    return payload


def print_sync_result(result: SyncResult) -> None:
    """Print a sync result summary."""
    colors = {
        SyncStatus.SUCCESS: "green",
        SyncStatus.ERROR: "red",
        SyncStatus.LOCAL_ONLY: "yellow",
        SyncStatus.ALREADY_SYNCING: "yellow",
        SyncStatus.SYNCING: "blue",
    }
    color = colors[result.status]
    console.print(f"[bold {color}]Sync {result.status.value}[/bold {color}]")

    if result.status == SyncStatus.LOCAL_ONLY:
        console.print("[dim]Not connected; changes stay queued. Run 'fieldsync connect'.[/dim]")
        return

    console.print(f"  Uploaded: {result.uploaded}")
    console.print(f"  Downloaded: {result.downloaded}")

    for conflict in result.conflicts:
        console.print(f"  [yellow]Conflict: {conflict}[/yellow]")

    if result.errors:
        table = Table(title=f"Errors ({len(result.errors)})")
        table.add_column("Phase", style="cyan", width=6)
        table.add_column("Path", width=40)
        table.add_column("Message", width=60)
        for item in result.errors:
            table.add_row(item.phase, item.path, item.message)
        console.print(table)


@click.group()
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="fieldsync")
@click.pass_context
def main(ctx: click.Context, config: Optional[str], verbose: bool) -> None:
    """FieldSync - Offline-first record sync for field inspections."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.ensure_object(dict)

    if config:
        ctx.obj["config"] = Config.load(Path(config))
        ctx.obj["config_path"] = Path(config)
    else:
        ctx.obj["config"] = Config.load()
        ctx.obj["config_path"] = None


@main.command()
@click.option(
    "--backend", "-b",
    type=click.Choice([b.value for b in RemoteBackend]),
    default=None,
    help="Remote store (default: yandex)",
)
@click.option("--remote-path", type=click.Path(file_okay=False), default=None,
              help="Shared folder for the local backend")
@click.option("--client-id", default=None, help="Yandex OAuth application id")
@click.option("--client-secret", default=None, help="Yandex OAuth application secret")
@click.option(
    "--flow",
    type=click.Choice([f.value for f in AuthFlow]),
    default=None,
    help="OAuth grant (code or token)",
)
@click.pass_context
def init(
    ctx: click.Context,
    backend: Optional[str],
    remote_path: Optional[str],
    client_id: Optional[str],
    client_secret: Optional[str],
    flow: Optional[str],
) -> None:
    """Initialize FieldSync storage and configuration."""
    config: Config = ctx.obj["config"]

    console.print(Panel.fit(
        f"[bold blue]FieldSync v{__version__}[/bold blue]\n"
        "Offline-first record sync",
        border_style="blue",
    ))

    if backend:
        config.remote_backend = RemoteBackend(backend)
    if remote_path:
        config.remote_path = Path(remote_path)
    if client_id is not None:
        config.client_id = client_id
    if client_secret is not None:
        config.client_secret = client_secret
    if flow:
        config.auth_flow = AuthFlow(flow)

    if config.remote_backend == RemoteBackend.LOCAL and not config.remote_path:
        fail("--remote-path is required for the local backend")

    config.ensure_directories()

    try:
        LocalStore(config.sqlite_path, fallback=False)
    except FieldSyncError as e:
        fail(f"Cannot create local database: {e}")

    config_path = ctx.obj.get("config_path") or config.storage_path / "config.yaml"
    config.save(config_path)

    console.print(f"\n[green]✓ FieldSync initialized[/green]")
    console.print(f"[dim]Remote: {config.remote_backend.value}[/dim]")
    console.print(f"[dim]Config: {config_path}[/dim]")
    console.print(f"[dim]Database: {config.sqlite_path}[/dim]")
    console.print("\n[bold]Next steps:[/bold]")
    if config.remote_backend == RemoteBackend.YANDEX:
        console.print("  1. Authorize: [cyan]fieldsync connect[/cyan]")
        console.print("  2. Add records: [cyan]fieldsync add objects '{\"name\": \"Warehouse 3\"}'[/cyan]")
    else:
        console.print("  1. Add records: [cyan]fieldsync add objects '{\"name\": \"Warehouse 3\"}'[/cyan]")
        console.print("  2. Sync: [cyan]fieldsync sync[/cyan]")


# ========== Records ==========

@main.command()
@click.argument("collection", type=COLLECTION_CHOICE)
@click.argument("data")
@click.option("--id", "record_id", default=None, help="Record id (default: new UUID)")
@click.pass_context
def add(ctx: click.Context, collection: str, data: str, record_id: Optional[str]) -> None:
    """Add a record. DATA is a JSON object."""
    store = ensure_initialized(ctx.obj["config"])
    repo = RecordRepository(store)

    try:
        envelope = repo.create(collection, parse_payload(data), record_id=record_id)
    except HANDLED_ERRORS as e:
        fail(str(e))

    console.print(f"\n[bold]Record added ([yellow]queued[/yellow])[/bold]")
    console.print(f"  ID: {envelope.id}")
    console.print(f"  Collection: {collection}")
    console.print(f"  Version: {envelope.version}")


@main.command()
@click.argument("collection", type=COLLECTION_CHOICE)
@click.argument("record_id")
@click.argument("data")
@click.pass_context
def update(ctx: click.Context, collection: str, record_id: str, data: str) -> None:
    """Replace the payload of a record. DATA is a JSON object."""
    store = ensure_initialized(ctx.obj["config"])
    repo = RecordRepository(store)

    try:
        envelope = repo.update(collection, record_id, parse_payload(data))
    except HANDLED_ERRORS as e:
        fail(str(e))

    console.print(f"[green]✓ Record {envelope.id} updated to version {envelope.version}[/green]")


@main.command()
@click.argument("collection", type=COLLECTION_CHOICE)
@click.argument("record_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx: click.Context, collection: str, record_id: str, yes: bool) -> None:
    """Delete a record by ID."""
    store = ensure_initialized(ctx.obj["config"])
    repo = RecordRepository(store)

    try:
        envelope = repo.get(collection, record_id)
    except HANDLED_ERRORS as e:
        fail(str(e))

    if envelope is None:
        fail(f"Record not found: {collection}/{record_id}")

    if not yes and not Confirm.ask(f"Delete {collection}/{record_id} (v{envelope.version})?"):
        return

    try:
        repo.delete(collection, record_id)
    except HANDLED_ERRORS as e:
        fail(str(e))

    console.print(f"[green]✓ Record deleted (removal queued)[/green]")


@main.command()
@click.argument("collection", type=COLLECTION_CHOICE)
@click.argument("record_id")
@click.pass_context
def show(ctx: click.Context, collection: str, record_id: str) -> None:
    """Show a record as JSON."""
    store = ensure_initialized(ctx.obj["config"])

    try:
        envelope = RecordRepository(store).get(collection, record_id)
    except HANDLED_ERRORS as e:
        fail(str(e))

    if envelope is None:
        fail(f"Record not found: {collection}/{record_id}")

    console.print_json(json.dumps(envelope.to_wire(), ensure_ascii=False))


@main.command("list")
@click.argument("collection", type=COLLECTION_CHOICE)
@click.option("--limit", "-l", default=20, help="Maximum number of results")
@click.pass_context
def list_records(ctx: click.Context, collection: str, limit: int) -> None:
    """List records of a collection."""
    store = ensure_initialized(ctx.obj["config"])

    try:
        records = RecordRepository(store).list(collection)
    except HANDLED_ERRORS as e:
        fail(str(e))

    if not records:
        console.print(f"[dim]No {collection} stored yet.[/dim]")
        return

    table = Table(title=f"{collection.capitalize()} ({len(records)})")
    table.add_column("ID", style="dim", width=36)
    table.add_column("Ver", justify="right", width=4)
    table.add_column("Updated", width=20)
    table.add_column("Payload", width=50)

    for envelope in records[:limit]:
        preview = json.dumps(envelope.payload, ensure_ascii=False)
        preview = preview[:47] + "..." if len(preview) > 50 else preview
        table.add_row(
            envelope.id,
            str(envelope.version),
            envelope.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
            preview,
        )

    console.print(table)


# ========== Local store ==========

@main.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show record counts and queue depth."""
    store = ensure_initialized(ctx.obj["config"])

    try:
        data = store.stats()
    except HANDLED_ERRORS as e:
        fail(str(e))

    table = Table(title="Local store")
    table.add_column("Collection", style="cyan")
    table.add_column("Records", justify="right")
    for name, count in data["collections"].items():
        table.add_row(name, str(count))
    console.print(table)

    queue = data["queue"]
    console.print(
        f"Queue: [yellow]{queue['pending']} pending[/yellow], "
        f"[red]{queue['error']} error[/red], [green]{queue['synced']} synced[/green]"
    )


@main.command()
@click.option(
    "--status", "-s",
    type=click.Choice([s.value for s in MutationStatus]),
    default=None,
    help="Filter by entry status",
)
@click.pass_context
def queue(ctx: click.Context, status: Optional[str]) -> None:
    """List mutation queue entries."""
    store = ensure_initialized(ctx.obj["config"])

    try:
        entries = store.all_mutations()
    except HANDLED_ERRORS as e:
        fail(str(e))

    if status:
        entries = [e for e in entries if e.status.value == status]

    if not entries:
        console.print("[dim]Mutation queue is empty.[/dim]")
        return

    styles = {
        MutationStatus.PENDING: "yellow",
        MutationStatus.SYNCED: "green",
        MutationStatus.ERROR: "red",
    }
    table = Table(title=f"Mutation queue ({len(entries)})")
    table.add_column("Created", width=20)
    table.add_column("Action", style="cyan", width=7)
    table.add_column("Path", width=50)
    table.add_column("Status", width=8)
    table.add_column("Error", width=40)

    for entry in entries:
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.action.value,
            entry.path,
            f"[{styles[entry.status]}]{entry.status.value}[/{styles[entry.status]}]",
            entry.error or "",
        )

    console.print(table)


@main.command()
@click.pass_context
def purge(ctx: click.Context) -> None:
    """Delete synced entries from the mutation queue."""
    store = ensure_initialized(ctx.obj["config"])

    try:
        count = store.purge_synced_mutations()
    except HANDLED_ERRORS as e:
        fail(str(e))

    console.print(f"[green]✓ Purged {count} synced entr{'y' if count == 1 else 'ies'}[/green]")


# ========== Sync ==========

@main.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Run one sync pass."""
    config: Config = ctx.obj["config"]
    ensure_initialized(config)

    try:
        _, adapter, manager = build_components(config)
    except HANDLED_ERRORS as e:
        fail(str(e))

    try:
        with console.status("[bold green]Syncing..."):
            result = manager.sync()
    finally:
        close_adapter(adapter)

    print_sync_result(result)
    if result.status == SyncStatus.ERROR:
        sys.exit(1)


@main.command()
@click.option("--interval", "-i", type=float, default=None, help="Seconds between passes")
@click.pass_context
def watch(ctx: click.Context, interval: Optional[float]) -> None:
    """Sync continuously until interrupted."""
    config: Config = ctx.obj["config"]
    ensure_initialized(config)

    try:
        _, adapter, manager = build_components(config)
        auto = AutoSync(manager, interval or config.sync_interval)
    except HANDLED_ERRORS as e:
        fail(str(e))

    def report(status: SyncStatus, result: SyncResult) -> None:
        if status == SyncStatus.SYNCING:
            return
        console.print(
            f"[dim]{time.strftime('%H:%M:%S')}[/dim] {status.value}: "
            f"uploaded={result.uploaded} downloaded={result.downloaded} errors={len(result.errors)}"
        )

    manager.on_status_change(report)

    console.print(f"[green]Auto-sync every {auto.interval:g}s. Press Ctrl+C to stop.[/green]")
    auto.start()
    auto.trigger()
    try:
        while auto.running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping after the current pass...[/yellow]")
    finally:
        auto.stop()
        close_adapter(adapter)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show connection and sync status."""
    config: Config = ctx.obj["config"]
    ensure_initialized(config)

    try:
        store, adapter, manager = build_components(config)
    except HANDLED_ERRORS as e:
        fail(str(e))

    try:
        connected = adapter.is_authenticated()
        pending = store.unsynced_count()
    except HANDLED_ERRORS as e:
        fail(str(e))
    finally:
        close_adapter(adapter)

    last_sync = manager.last_sync_time
    console.print(f"Remote: {config.remote_backend.value}")
    console.print(
        "Connection: " + ("[green]authenticated[/green]" if connected else "[yellow]offline / not connected[/yellow]")
    )
    console.print(f"Last sync: {last_sync.strftime('%Y-%m-%d %H:%M:%S %Z') if last_sync else 'never'}")
    console.print(f"Unsynced changes: {pending}")
    if store.degraded:
        console.print("[yellow]Local store degraded: working in memory only[/yellow]")


# ========== Authorization ==========

@main.command()
@click.pass_context
def connect(ctx: click.Context) -> None:
    """Print the Yandex authorization URL."""
    config: Config = ctx.obj["config"]

    try:
        with ensure_yandex(build_adapter(config)) as adapter:
            url = adapter.get_authorization_url()
    except HANDLED_ERRORS as e:
        fail(str(e))

    console.print("[bold]Open this URL and grant access:[/bold]")
    console.print(url, soft_wrap=True)
    console.print("\nThen run: [cyan]fieldsync callback '<redirected URL or code>'[/cyan]")


@main.command()
@click.argument("raw")
@click.pass_context
def callback(ctx: click.Context, raw: str) -> None:
    """Complete authorization with a redirect URL, fragment or code."""
    config: Config = ctx.obj["config"]
    config.ensure_directories()

    try:
        with ensure_yandex(build_adapter(config)) as adapter:
            token = adapter.consume_callback(raw)
    except HANDLED_ERRORS as e:
        fail(str(e))

    console.print(f"[green]✓ Connected[/green] [dim](token valid until {token.expires_at:%Y-%m-%d %H:%M} UTC)[/dim]")


@main.command()
@click.pass_context
def disconnect(ctx: click.Context) -> None:
    """Forget the stored Yandex credential."""
    config: Config = ctx.obj["config"]

    try:
        with ensure_yandex(build_adapter(config)) as adapter:
            adapter.disconnect()
    except HANDLED_ERRORS as e:
        fail(str(e))

    console.print("[green]✓ Disconnected[/green]")


# ========== Backup ==========

@main.command("export")
@click.argument("output", type=click.Path(dir_okay=False), required=False)
@click.pass_context
def export_records(ctx: click.Context, output: Optional[str]) -> None:
    """Export all records as JSON (to OUTPUT or stdout)."""
    store = ensure_initialized(ctx.obj["config"])

    try:
        snapshot = store.export_snapshot()
    except HANDLED_ERRORS as e:
        fail(str(e))

    content = json.dumps(snapshot, indent=2, ensure_ascii=False)
    if output:
        Path(output).write_text(content, encoding="utf-8")
        total = sum(len(records) for records in snapshot["collections"].values())
        console.print(f"[green]✓ Exported {total} record(s) to {output}[/green]")
    else:
        click.echo(content)


@main.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def import_records(ctx: click.Context, source: str) -> None:
    """Import records from an exported JSON file."""
    store = ensure_initialized(ctx.obj["config"])

    try:
        snapshot = json.loads(Path(source).read_text(encoding="utf-8"))
        count = store.import_snapshot(snapshot)
    except HANDLED_ERRORS as e:
        fail(str(e))

    console.print(f"[green]✓ Imported {count} record(s)[/green]")


if __name__ == "__main__":
    main()
