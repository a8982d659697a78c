"""
CLI: ``rampart queue`` — deferred action queue commands.
"""

from __future__ import annotations

from datetime import UTC, datetime

import typer

from rampart.cli.utils import console, fail, open_store, output_data

app = typer.Typer(no_args_is_help=True)


def _queue_names(store, prefix: str) -> list[str]:
    scope = f"{prefix}:queue:"
    names = []
    for key in store.keys(scope):
        name, _, leaf = key[len(scope):].rpartition(":")
        if leaf == "actions" and name:
            names.append(name)
    return sorted(names)


@app.command("list")
def list_queues(
    name: str | None = typer.Argument(None, help="Queue to show; omit to list queues"),
    store_path: str | None = typer.Option(None, "--store", help="Path to the SQLite store"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List deferred queues, or the pending actions of one queue."""
    from rampart.core.settings import get_settings
    from rampart.execution.deferred import DeferredActionQueue

    prefix = get_settings().key_prefix
    store = open_store(store_path)
    try:
        if name is None:
            rows = [
                {"queue": q, "pending": len(DeferredActionQueue.from_settings(q, store))}
                for q in _queue_names(store, prefix)
            ]
            output_data(rows, as_json=json_out, title="Deferred Queues")
            return

        actions = DeferredActionQueue.from_settings(name, store).pending()
        rows = [
            {
                "id": a.id,
                "attempts": a.attempts,
                "enqueued_at": datetime.fromtimestamp(a.enqueued_at, UTC).isoformat(),
                "payload": a.payload,
            }
            for a in actions
        ]
        output_data(rows, as_json=json_out, title=f"Queue: {name}")
    finally:
        store.close()


@app.command("purge")
def purge(
    name: str = typer.Argument(..., help="Queue to purge"),
    action_id: str | None = typer.Option(None, "--id", help="Remove a single action"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    store_path: str | None = typer.Option(None, "--store", help="Path to the SQLite store"),
) -> None:
    """Remove pending actions from a queue."""
    from rampart.execution.deferred import DeferredActionQueue

    store = open_store(store_path)
    try:
        queue = DeferredActionQueue.from_settings(name, store)
        if action_id is not None:
            if not queue.remove(action_id):
                fail(f"No action '{action_id}' in queue '{name}'", code="NOT_FOUND")
            console.print(f"[green]Removed[/green] {action_id}")
            return

        pending = len(queue)
        if pending == 0:
            console.print("[dim]Queue is empty.[/dim]")
            return
        if not yes:
            typer.confirm(f"Discard {pending} pending action(s) from '{name}'?", abort=True)
        removed = queue.clear()
        console.print(f"[green]Purged[/green] {removed} action(s) from {name}")
    finally:
        store.close()
