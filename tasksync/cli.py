from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import typer
from rich import print
from rich.markup import escape

from . import __version__, commands
from .config import (
    TaskSyncConfig,
    get_config_path,
    load_config,
    parse_config_value,
    read_config_file,
    write_config_file,
)
from .errors import StoreError, TaskSyncError, UnknownRecordError
from .local_store import LocalStore, data_file_path
from .merge import MergeResult
from .models import Collection, Item
from .replica import ReplicaState
from .server.api import run_sync_server
from .server.partition_store import PartitionStore
from .sync.client import SyncClient
from .sync.http_client import build_base_url, request_json
from .sync.transport import SyncTransport

app = typer.Typer(help="tasksync: offline-first task list with two-way sync")
lists_app = typer.Typer(help="Manage task lists")
app.add_typer(lists_app, name="lists")
config_app = typer.Typer(help="Show and edit the config file")
app.add_typer(config_app, name="config")

USER_HELP = "Participant id (defaults to config participant_id)"


@app.callback()
def _main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        print(f"[red]Unknown log level: {log_level}[/red]")
        raise typer.Exit(code=1)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _config(user: str | None) -> TaskSyncConfig:
    cfg = load_config()
    if user:
        cfg.participant_id = user
    if not cfg.participant_id:
        print("[red]No participant id. Pass --user or set TASKSYNC_PARTICIPANT_ID.[/red]")
        raise typer.Exit(code=1)
    return cfg


def _local_store(cfg: TaskSyncConfig) -> LocalStore:
    assert cfg.participant_id
    return LocalStore(data_file_path(cfg.data_path, cfg.participant_id), cfg.participant_id)


def _open_local(cfg: TaskSyncConfig) -> tuple[ReplicaState, LocalStore]:
    store = _local_store(cfg)
    state = ReplicaState()
    try:
        store.load(state)
    except StoreError as exc:
        print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc
    default_id = commands.default_collection_id(store.participant_id, cfg.default_collection)
    if commands.ensure_default_collection(state, cfg.default_collection, collection_id=default_id):
        store.mark_dirty()
    return state, store


def _commit(state: ReplicaState, store: LocalStore) -> None:
    store.mark_dirty()
    if not store.save(state):
        print(f"[red]Failed to save {store.path}[/red]")
        raise typer.Exit(code=1)


@contextmanager
def _data_file_locked(cfg: TaskSyncConfig) -> Iterator[None]:
    lock = _local_store(cfg).lock()
    try:
        lock.acquire()
    except StoreError as exc:
        print(f"[red]{escape(str(exc))}[/red]")
        print("[dim]Is tasksync run or tasksync sync active for this participant?[/dim]")
        raise typer.Exit(code=1) from exc
    try:
        yield
    finally:
        lock.release()


def _apply(cfg: TaskSyncConfig, action: Callable[[ReplicaState], Any]) -> Any:
    with _data_file_locked(cfg):
        state, store = _open_local(cfg)
        try:
            result = action(state)
        except TaskSyncError as exc:
            print(f"[red]{escape(str(exc))}[/red]")
            raise typer.Exit(code=1) from exc
        _commit(state, store)
    return result


def _resolve_item(state: ReplicaState, ref: str) -> Item:
    ref = ref.strip()
    if ref in state.items:
        return state.items[ref]
    wanted = ref.casefold()
    matches = [item for item in state.items.values() if item.title.casefold() == wanted]
    if not matches and len(ref) >= 4:
        matches = [item for item in state.items.values() if item.id.startswith(ref)]
    if len(matches) != 1:
        reason = "ambiguous" if matches else "unknown"
        raise UnknownRecordError(f"{reason} item: {ref}")
    return matches[0]


def _resolve_collection(state: ReplicaState, name: str) -> Collection:
    collection = state.find_collection(name.strip())
    if collection is None:
        raise UnknownRecordError(f"unknown list: {name}")
    return collection


def _format_item(item: Item, state: ReplicaState) -> str:
    mark = "x" if item.completed else " "
    owner = state.collections.get(item.collection_id or "")
    suffix = f" [dim]({owner.name})[/dim]" if owner is not None else ""
    return f"\\[{mark}] {escape(item.title)} [dim]{item.id[:8]}[/dim]{suffix}"


def _build_client(
    cfg: TaskSyncConfig,
    *,
    on_error: Callable[[BaseException], None] | None = None,
    on_sync_applied: Callable[[MergeResult], None] | None = None,
) -> SyncClient:
    assert cfg.participant_id
    stop_event = threading.Event()
    transport = SyncTransport(
        cfg.server_url,
        cfg.participant_id,
        attempts=cfg.retry_attempts,
        retry_delay_s=cfg.retry_delay_s,
        timeout_s=cfg.request_timeout_s,
        stop_event=stop_event,
    )
    return SyncClient(
        cfg,
        ReplicaState(),
        _local_store(cfg),
        transport,
        on_sync_applied=on_sync_applied,
        on_error=on_error,
    )


def _print_error(exc: BaseException) -> None:
    print(f"[red]{escape(str(exc))}[/red]")


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)


@app.command()
def server(
    host: str | None = typer.Option(None, help="Host to bind the sync server"),
    port: int | None = typer.Option(None, help="Port to bind the sync server"),
) -> None:
    """Run the sync server until interrupted."""

    cfg = load_config()
    bind_host = host or cfg.server_host
    bind_port = port or cfg.server_port
    print(f"[green]Sync server listening on {bind_host}:{bind_port}[/green]")
    try:
        run_sync_server(
            bind_host,
            bind_port,
            store=PartitionStore(),
            max_body_bytes=cfg.max_body_bytes,
        )
    except KeyboardInterrupt:
        print("Stopped")
    except OSError as exc:
        print(f"[red]Failed to start sync server: {exc}[/red]")
        raise typer.Exit(code=1) from exc


@app.command()
def run(
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
    server_url: str | None = typer.Option(None, help="Sync server url"),
) -> None:
    """Run the sync client (push, pull, autosave) until interrupted."""

    cfg = _config(user)
    if server_url:
        cfg.server_url = server_url

    def on_sync_applied(result: MergeResult) -> None:
        counts = result.summary()
        print(
            f"Synced: {counts['adopted']} new, {counts['updated']} updated, "
            f"{counts['removed']} removed"
        )

    try:
        client = _build_client(cfg, on_error=_print_error, on_sync_applied=on_sync_applied)
    except ValueError as exc:
        print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc
    with _data_file_locked(cfg):
        client.start()
        print(f"[green]Syncing {cfg.participant_id} with {client.transport.base_url}[/green]")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            print("Stopping...")
        finally:
            client.shutdown()


@app.command()
def add(
    title: str,
    list_name: str | None = typer.Option(None, "--list", "-l", help="Task list name"),
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
) -> None:
    """Add a task."""

    cfg = _config(user)

    def action(state: ReplicaState) -> Item:
        collection_id = _resolve_collection(state, list_name).id if list_name else None
        item, _events = commands.add_item(state, title, collection_id)
        return item

    item = _apply(cfg, action)
    print(f"Added {item.title} [dim]{item.id[:8]}[/dim]")


@app.command()
def done(
    ref: str = typer.Argument(..., help="Task id, id prefix or title"),
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
) -> None:
    """Mark a task completed."""

    cfg = _config(user)
    _apply(
        cfg, lambda state: commands.set_item_completed(state, _resolve_item(state, ref).id, True)
    )
    print(f"Completed {ref}")


@app.command()
def undone(
    ref: str = typer.Argument(..., help="Task id, id prefix or title"),
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
) -> None:
    """Mark a task not completed."""

    cfg = _config(user)
    _apply(
        cfg, lambda state: commands.set_item_completed(state, _resolve_item(state, ref).id, False)
    )
    print(f"Reopened {ref}")


@app.command()
def rename(
    ref: str = typer.Argument(..., help="Task id, id prefix or title"),
    title: str = typer.Argument(..., help="New title"),
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
) -> None:
    """Rename a task."""

    cfg = _config(user)
    _apply(cfg, lambda state: commands.rename_item(state, _resolve_item(state, ref).id, title))
    print(f"Renamed {ref} to {title}")


@app.command("rm")
def remove(
    ref: str = typer.Argument(..., help="Task id, id prefix or title"),
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
) -> None:
    """Delete a task."""

    cfg = _config(user)
    _apply(cfg, lambda state: commands.delete_item(state, _resolve_item(state, ref).id))
    print(f"Deleted {ref}")


@app.command("ls")
def list_items(
    list_name: str | None = typer.Option(None, "--list", "-l", help="Only this task list"),
    completed: bool = typer.Option(True, help="Include completed tasks"),
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
) -> None:
    """List tasks."""

    cfg = _config(user)
    state, _store = _open_local(cfg)
    if list_name:
        try:
            items = state.items_in(_resolve_collection(state, list_name).id)
        except UnknownRecordError as exc:
            print(f"[red]{escape(str(exc))}[/red]")
            raise typer.Exit(code=1) from exc
    else:
        items = state.all_items()
    if not completed:
        items = [item for item in items if not item.completed]
    items.sort(key=lambda item: (item.completed, item.last_modified))
    if not items:
        print("No tasks")
        return
    for item in items:
        print(_format_item(item, state))


@lists_app.command("add")
def lists_add(
    name: str,
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
) -> None:
    """Create a task list."""

    cfg = _config(user)
    collection = _apply(cfg, lambda state: commands.add_collection(state, name)[0])
    print(f"Created list {collection.name}")


@lists_app.command("rename")
def lists_rename(
    name: str,
    new_name: str,
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
) -> None:
    """Rename a task list."""

    cfg = _config(user)
    _apply(
        cfg,
        lambda state: commands.rename_collection(
            state, _resolve_collection(state, name).id, new_name
        ),
    )
    print(f"Renamed list {name} to {new_name}")


@lists_app.command("rm")
def lists_rm(
    name: str,
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
) -> None:
    """Delete a task list and its tasks."""

    cfg = _config(user)
    _apply(
        cfg, lambda state: commands.delete_collection(state, _resolve_collection(state, name).id)
    )
    print(f"Deleted list {name}")


@lists_app.command("ls")
def lists_ls(
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
) -> None:
    """Show task lists."""

    cfg = _config(user)
    state, _store = _open_local(cfg)
    for collection in sorted(state.collections.values(), key=lambda c: c.name):
        items = state.items_in(collection.id)
        open_count = sum(1 for item in items if not item.completed)
        print(f"{collection.name} [dim]{open_count}/{len(items)} open[/dim]")


@app.command()
def sync(
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
    server_url: str | None = typer.Option(None, help="Sync server url"),
) -> None:
    """Push local state once, then pull the server snapshot once."""

    cfg = _config(user)
    if server_url:
        cfg.server_url = server_url
    errors: list[BaseException] = []
    try:
        client = _build_client(cfg, on_error=errors.append)
    except ValueError as exc:
        print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc
    with _data_file_locked(cfg):
        client.load()
        ok = client.sync_now()
        client.shutdown(0)
    if not ok:
        for exc in errors:
            print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=1)
    status = client.status()
    print(f"[green]Synced with {client.transport.base_url}[/green]")
    print(f"- Tasks: {len(client.state.items)}")
    print(f"- Lists: {len(client.state.collections)}")
    print(f"- Pending tombstones: {status.pending_tombstones}")


@app.command()
def status(
    user: str | None = typer.Option(None, "--user", "-u", help=USER_HELP),
) -> None:
    """Show local replica and server reachability."""

    cfg = _config(user)
    state, store = _open_local(cfg)
    print(f"- Participant: {cfg.participant_id}")
    print(f"- Data file: {store.path}")
    print(f"- Tasks: {len(state.uncompleted())} open, {len(state.completed())} done")
    print(f"- Lists: {len(state.collections)}")
    print(f"- Tombstones: {len(state.tombstones) + len(state.collection_tombstones)}")
    print(f"- Sync: {'enabled' if cfg.sync_enabled else 'disabled'}")
    base_url = build_base_url(cfg.server_url)
    try:
        code, payload = request_json(
            "GET", f"{base_url}/api/status", timeout_s=cfg.request_timeout_s
        )
    except (OSError, ValueError) as exc:
        print(f"- Server: [red]offline[/red] ({escape(str(exc))})")
        return
    if code == 200 and payload and payload.get("ok"):
        print(f"- Server: [green]online[/green] ({base_url})")
    else:
        print(f"- Server: [yellow]unexpected response {code}[/yellow]")


def _read_config_or_exit() -> dict[str, Any]:
    try:
        return read_config_file()
    except ValueError as exc:
        print(f"[red]Invalid config at {get_config_path()}: {exc}[/red]")
        raise typer.Exit(code=1) from exc


@config_app.command("show")
def config_show() -> None:
    """Print the effective config (file values plus TASKSYNC_* overrides)."""

    print(f"[dim]{escape(str(get_config_path()))}[/dim]")
    print(escape(json.dumps(load_config().to_dict(), indent=2)))


@config_app.command("set")
def config_set(key: str, value: str) -> None:
    """Store a value in the config file."""

    try:
        parsed = parse_config_value(key, value)
    except ValueError as exc:
        print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc
    data = _read_config_or_exit()
    data[key] = parsed
    path = write_config_file(data)
    print(f"Set {key} in {escape(str(path))}")


@config_app.command("unset")
def config_unset(key: str) -> None:
    """Remove a value from the config file so the default applies again."""

    data = _read_config_or_exit()
    if key not in data:
        print(f"{key} is not set")
        return
    del data[key]
    path = write_config_file(data)
    print(f"Removed {key} from {escape(str(path))}")


def main() -> None:
    app()

