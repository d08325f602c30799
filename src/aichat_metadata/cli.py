"""CLI entry point for aichat-metadata."""

import logging
from functools import wraps

import click
import uvicorn

from .config import METADATA_DB_ENV, get_metadata_db_path
from .core import ListSessionsOptions
from .errors import MetadataStoreError
from .export import (
    metadata_to_dict,
    metadata_to_json,
    metadata_to_text,
    project_to_dict,
    search_result_to_dict,
    stats_to_dict,
    tag_count_to_dict,
    to_json,
)
from .store import MetadataStore

FORMAT_OPTION = click.option(
    "--format", "fmt", type=click.Choice(["text", "json"]), default="text", help="Output format."
)


def store_command(func):
    """Pass the group's MetadataStore in and turn store errors into CLI errors."""

    @click.pass_obj
    @wraps(func)
    def wrapper(store: MetadataStore, *args, **kwargs):
        try:
            return func(store, *args, **kwargs)
        except (MetadataStoreError, ValueError) as e:
            raise click.ClickException(str(e))

    return wrapper


@click.group()
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False),
    envvar=METADATA_DB_ENV,
    default=None,
    help="Path to the metadata database.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, db_path: str | None, verbose: bool):
    """Nicknames, tags and projects for your AI coding chat sessions."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    store = MetadataStore(db_path or get_metadata_db_path())
    ctx.obj = store
    ctx.call_on_close(store.close)


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.pass_obj
def serve(store: MetadataStore, port: int, host: str):
    """Start the HTTP API."""
    from .server import create_app

    click.echo(f"Starting aichat-metadata on http://{host}:{port} ({store.db_path})")
    uvicorn.run(create_app(store), host=host, port=port, reload=False)


@main.command()
@click.argument("ref")
@FORMAT_OPTION
@store_command
def get(store: MetadataStore, ref: str, fmt: str):
    """Show a session by nickname, id or id prefix."""
    metadata = store.resolve_session(ref)
    if metadata is None:
        raise click.ClickException(f"Session not found: {ref}")

    if fmt == "json":
        click.echo(metadata_to_json(metadata))
        return

    for key, value in metadata_to_dict(metadata).items():
        if isinstance(value, list):
            value = ", ".join(value)
        if value not in (None, ""):
            click.echo(f"{key:>22}: {value}")


@main.command("list")
@click.option("--project", default=None, help="Only sessions for this project path.")
@click.option("--tagged-only", is_flag=True, help="Only sessions with at least one tag.")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Maximum sessions to show.")
@FORMAT_OPTION
@store_command
def list_sessions(store: MetadataStore, project: str | None, tagged_only: bool, limit: int | None, fmt: str):
    """List sessions, newest first."""
    sessions = store.list_sessions(
        ListSessionsOptions(project=project, tagged_only=tagged_only, limit=limit)
    )
    if fmt == "json":
        click.echo(metadata_to_json(sessions))
        return
    if not sessions:
        click.echo("No sessions found.")
    for metadata in sessions:
        click.echo(metadata_to_text(metadata))


@main.command()
@click.argument("ref")
@store_command
def delete(store: MetadataStore, ref: str):
    """Forget a session's metadata (the transcript is untouched)."""
    metadata = store.resolve_session(ref)
    if metadata is None:
        raise click.ClickException(f"Session not found: {ref}")
    store.delete_session_metadata(metadata.session_id)
    click.echo(f"Deleted metadata for {metadata.session_id}")


# ── Nicknames ────────────────────────────────────────────────────


@main.command()
@click.argument("session_id")
@click.argument("nickname")
@store_command
def nickname(store: MetadataStore, session_id: str, nickname: str):
    """Set a nickname for a session."""
    store.set_nickname(session_id, nickname)
    click.echo(f'Nickname "{nickname}" set for session {session_id[:8]}...')


@main.command()
@store_command
def nicknames(store: MetadataStore):
    """List every nickname in use."""
    for name in store.list_nicknames():
        click.echo(name)


# ── Tags ─────────────────────────────────────────────────────────


@main.group()
def tag():
    """Manage session tags."""
    pass


@tag.command("add")
@click.argument("ref")
@click.argument("tags", nargs=-1, required=True)
@store_command
def tag_add(store: MetadataStore, ref: str, tags: tuple[str, ...]):
    """Add tag(s) to a session (by id or nickname)."""
    session_id = _resolve_id(store, ref)
    for t in tags:
        store.add_tag(session_id, t)
    click.echo(f"Added {len(tags)} tag(s) to session: {', '.join(tags)}")


@tag.command("remove")
@click.argument("ref")
@click.argument("tags", nargs=-1, required=True)
@store_command
def tag_remove(store: MetadataStore, ref: str, tags: tuple[str, ...]):
    """Remove tag(s) from a session."""
    session_id = _resolve_id(store, ref)
    for t in tags:
        store.remove_tag(session_id, t)
    click.echo(f"Removed {len(tags)} tag(s) from session")


@tag.command("list")
@FORMAT_OPTION
@store_command
def tag_list(store: MetadataStore, fmt: str):
    """List all tags with session counts."""
    tags = store.list_all_tags()
    if fmt == "json":
        click.echo(to_json([tag_count_to_dict(t) for t in tags]))
        return
    if not tags:
        click.echo("No tags yet.")
    for t in tags:
        click.echo(f"{t.count:>5}  {t.tag}")


@tag.command("find")
@click.argument("tag_name")
@FORMAT_OPTION
@store_command
def tag_find(store: MetadataStore, tag_name: str, fmt: str):
    """List sessions carrying a tag."""
    sessions = store.find_by_tag(tag_name)
    if fmt == "json":
        click.echo(metadata_to_json(sessions))
        return
    for metadata in sessions:
        click.echo(metadata_to_text(metadata))


# ── Projects ─────────────────────────────────────────────────────


@main.group()
def project():
    """Manage session project paths."""
    pass


@project.command("set")
@click.argument("ref")
@click.argument("path")
@store_command
def project_set(store: MetadataStore, ref: str, path: str):
    """Associate a session with a project path."""
    session_id = _resolve_id(store, ref)
    store.set_project(session_id, path)
    click.echo(f"Project for {session_id} set to {path}")


@main.command()
@FORMAT_OPTION
@store_command
def projects(store: MetadataStore, fmt: str):
    """List projects with session counts."""
    infos = store.list_projects()
    if fmt == "json":
        click.echo(to_json([project_to_dict(p) for p in infos]))
        return
    if not infos:
        click.echo("No projects found.")
    for info in infos:
        click.echo(f"{info.session_count:>5}  {info.project_path}")


# ── Stats and search ─────────────────────────────────────────────


@main.command()
@FORMAT_OPTION
@store_command
def stats(store: MetadataStore, fmt: str):
    """Show database statistics."""
    data = stats_to_dict(store.get_stats())
    if fmt == "json":
        click.echo(to_json(data))
        return
    for key, value in data.items():
        click.echo(f"{key.replace('_', ' ').capitalize():<25} {value}")


@main.command()
@click.argument("query")
@click.option("--project", default=None, help="Only sessions for this project path.")
@click.option("--limit", type=click.IntRange(min=1), default=20, help="Maximum results.")
@FORMAT_OPTION
@store_command
def search(store: MetadataStore, query: str, project: str | None, limit: int, fmt: str):
    """Full-text search over indexed session content."""
    results = store.search_content(query, project=project, limit=limit)
    if fmt == "json":
        click.echo(to_json([search_result_to_dict(r) for r in results]))
        return
    if not results:
        click.echo("No matches.")
    for result in results:
        click.echo(metadata_to_text(result.metadata))
        click.echo(f"    {result.snippet}")


def _resolve_id(store: MetadataStore, ref: str) -> str:
    """Resolve a nickname or id prefix to a full id; unknown refs are taken as new ids."""
    metadata = store.resolve_session(ref)
    return metadata.session_id if metadata else ref
