from __future__ import annotations

import json
from pathlib import Path

import typer
from rich import print
from rich.table import Table

from . import __version__
from .bus import CommandBus
from .config import load_config
from .documents import DocumentError, ProjectDefaults, last_edited, shared_uid
from .registry import LocalOnly, Networked, ProjectRegistry, RegistryMode
from .remote import RemoteProjectAPI
from .storage import KeyValueStore
from .utils import pretty_edited_at

app = typer.Typer(help="projectsync: keep projects in sync across tabs and share them")
shared_app = typer.Typer(help="Browse the shared projects registry")
app.add_typer(shared_app, name="shared")


def _notify(message: str) -> None:
    print(f"[yellow]{message}[/yellow]")


def _registry(store_path: str | None, *, require_remote: bool = False) -> ProjectRegistry:
    cfg = load_config()
    store = KeyValueStore(store_path or cfg.store_path)
    mode: RegistryMode = LocalOnly()
    if cfg.networked:
        mode = Networked(
            RemoteProjectAPI(cfg.api_url, timeout_s=cfg.api_timeout_s),
            notify=_notify,
            initial_limit=cfg.shared_initial_limit,
            page_limit=cfg.shared_page_limit,
        )
    elif require_remote:
        store.close()
        print("[red]No shared projects registry configured (set PROJECTSYNC_API_URL)[/red]")
        raise typer.Exit(code=1)
    return ProjectRegistry(
        store,
        CommandBus(),
        mode=mode,
        defaults=ProjectDefaults(target=cfg.default_target),
        username=cfg.username,
    )


def _require_project(registry: ProjectRegistry, uid: str) -> None:
    if uid not in registry:
        print(f"[red]Unknown project: {uid}[/red]")
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Print the installed version."""

    print(__version__)


@app.command("list")
def list_projects(
    store_path: str = typer.Option(None, "--store", help="Path to the project store"),
) -> None:
    """List local projects, most recently edited first."""

    registry = _registry(store_path)
    try:
        recent = registry.most_recent()
        table = Table("uid", "name", "shared", "edited")
        ordered = sorted(
            registry.projects.items(),
            key=lambda item: last_edited(item[1]),
            reverse=True,
        )
        for uid, document in ordered:
            meta = document.get("project") or {}
            marker = "* " if uid == recent else ""
            table.add_row(
                f"{marker}{uid}",
                str(meta.get("name", "")),
                str((meta.get("shared") or {}).get("uid", "")),
                pretty_edited_at(last_edited(document)),
            )
        print(table)
    finally:
        registry.store.close()


@app.command()
def new(
    name: str = typer.Option(None, help="Name for the new project"),
    store_path: str = typer.Option(None, "--store", help="Path to the project store"),
) -> None:
    """Create an empty project."""

    registry = _registry(store_path)
    try:
        uid = registry.create()
        if name:
            registry.rename(uid, name)
        print(f"[green]Created project {uid}[/green]")
    finally:
        registry.store.close()


@app.command()
def show(
    uid: str = typer.Argument(..., help="Project uid"),
    store_path: str = typer.Option(None, "--store", help="Path to the project store"),
) -> None:
    """Print a project document."""

    registry = _registry(store_path)
    try:
        _require_project(registry, uid)
        print(json.dumps(registry.get(uid), ensure_ascii=False, indent=2))
    finally:
        registry.store.close()


@app.command()
def rename(
    uid: str = typer.Argument(..., help="Project uid"),
    name: str = typer.Argument(..., help="New project name"),
    store_path: str = typer.Option(None, "--store", help="Path to the project store"),
) -> None:
    """Rename a project."""

    registry = _registry(store_path)
    try:
        _require_project(registry, uid)
        if not name.strip():
            print("[yellow]Empty name, nothing changed[/yellow]")
            return
        registry.rename(uid, name)
        print(f"[green]Renamed {uid} to {name.strip()}[/green]")
    finally:
        registry.store.close()


@app.command("rm")
def remove(
    uid: str = typer.Argument(..., help="Project uid"),
    store_path: str = typer.Option(None, "--store", help="Path to the project store"),
) -> None:
    """Delete a project (unsharing it first when shared)."""

    registry = _registry(store_path)
    try:
        _require_project(registry, uid)
        registry.remove(uid)
        print(f"[green]Removed project {uid}[/green]")
    finally:
        registry.store.close()


@app.command("export")
def export_project(
    uid: str = typer.Argument(..., help="Project uid"),
    output: str = typer.Option(None, "--output", "-o", help="Output file"),
    store_path: str = typer.Option(None, "--store", help="Path to the project store"),
) -> None:
    """Write a project to a file without its sharing credentials."""

    registry = _registry(store_path)
    try:
        _require_project(registry, uid)
        target = Path(output or registry.export_filename(uid))
        target.write_text(registry.export(uid), encoding="utf-8")
        print(f"[green]Exported {uid} to {target}[/green]")
    finally:
        registry.store.close()


@app.command("import")
def import_project(
    path: str = typer.Argument(..., help="Project file to import"),
    store_path: str = typer.Option(None, "--store", help="Path to the project store"),
) -> None:
    """Import a project file as a new project."""

    source = Path(path)
    if not source.exists():
        print(f"[red]File not found: {source}[/red]")
        raise typer.Exit(code=1)
    registry = _registry(store_path)
    try:
        try:
            uid = registry.import_document(source.read_bytes())
        except DocumentError as exc:
            print(f"[red]Invalid project file: {exc}[/red]")
            raise typer.Exit(code=1) from exc
        print(f"[green]Imported project {uid}[/green]")
    finally:
        registry.store.close()


@app.command()
def share(
    uid: str = typer.Argument(..., help="Project uid"),
    store_path: str = typer.Option(None, "--store", help="Path to the project store"),
) -> None:
    """Publish a project to the shared registry."""

    registry = _registry(store_path, require_remote=True)
    try:
        _require_project(registry, uid)
        if not registry.share(uid):
            print(f"[red]Could not share {uid}[/red]")
            raise typer.Exit(code=1)
        print(f"[green]Shared {uid} as {shared_uid(registry.get(uid))}[/green]")
    finally:
        registry.store.close()


@app.command("update-shared")
def update_shared(
    uid: str = typer.Argument(..., help="Project uid"),
    store_path: str = typer.Option(None, "--store", help="Path to the project store"),
) -> None:
    """Push the local state of a shared project to the registry."""

    registry = _registry(store_path, require_remote=True)
    try:
        _require_project(registry, uid)
        if not registry.update_shared(uid):
            print(f"[red]Could not update shared copy of {uid}[/red]")
            raise typer.Exit(code=1)
        print(f"[green]Updated shared copy of {uid}[/green]")
    finally:
        registry.store.close()


@app.command()
def unshare(
    uid: str = typer.Argument(..., help="Project uid"),
    store_path: str = typer.Option(None, "--store", help="Path to the project store"),
) -> None:
    """Withdraw a project from the shared registry."""

    registry = _registry(store_path, require_remote=True)
    try:
        _require_project(registry, uid)
        if not registry.unshare(uid):
            print(f"[red]Could not unshare {uid}[/red]")
            raise typer.Exit(code=1)
        print(f"[green]Unshared {uid}[/green]")
    finally:
        registry.store.close()


def _print_summaries(registry: ProjectRegistry) -> None:
    assert registry.shared is not None
    table = Table("uid", "name", "author", "edited")
    for item in registry.shared:
        table.add_row(
            str(item.get("uid", "")),
            str(item.get("name", "")),
            str(item.get("author", "")),
            pretty_edited_at(int(item.get("lastEdited", 0))),
        )
    print(table)


@shared_app.command("list")
def shared_list(
    pages: int = typer.Option(1, help="Number of pages to load"),
    store_path: str = typer.Option(None, "--store", help="Path to the project store"),
) -> None:
    """Show the newest shared projects."""

    registry = _registry(store_path, require_remote=True)
    try:
        assert registry.shared is not None
        if registry.shared.prime() is None:
            print("[red]Failed to fetch shared projects[/red]")
            raise typer.Exit(code=1)
        for _ in range(max(0, pages - 1)):
            added = registry.shared.fetch_older()
            if not added:
                break
        _print_summaries(registry)
    finally:
        registry.store.close()


@shared_app.command("clone")
def shared_clone(
    uid: str = typer.Argument(..., help="Shared project uid"),
    store_path: str = typer.Option(None, "--store", help="Path to the project store"),
) -> None:
    """Copy a shared project into the local collection."""

    registry = _registry(store_path, require_remote=True)
    try:
        assert registry.shared is not None
        local_uid = registry.shared.clone(uid)
        if local_uid is None:
            print(f"[red]Could not clone shared project {uid}[/red]")
            raise typer.Exit(code=1)
        print(f"[green]Cloned {uid} into {local_uid}[/green]")
    finally:
        registry.store.close()
