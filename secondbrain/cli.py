"""CLI entry point for secondbrain.

Commands:
    secondbrain init           - write a starter config in the current directory
    secondbrain migrate        - open the store and bring its schema up to date
    secondbrain stats          - row counts per table
    secondbrain dump           - export the store as a replayable SQL script
    secondbrain import-events  - import Google Calendar events from a JSON file
    secondbrain serve          - start the HTTP/WebSocket API
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from secondbrain.config import CONFIG_FILENAME, ConfigError, load_config

DEFAULT_CONFIG = {
    "db_path": "~/.secondbrain/secondbrain.db",
    "backend": "auto",
    "store_name": "secondbrain",
    "kv_path": "~/.secondbrain/kv.json",
    "user_id": None,
    "log_level": "INFO",
}


def _load(ctx: click.Context) -> dict[str, Any]:
    """Load config; exit with a message on error."""
    try:
        config = load_config(ctx.obj["config_path"])
    except ConfigError as e:
        click.echo(f"Config error: {e}", err=True)
        sys.exit(1)

    if not ctx.obj["verbose"]:
        logging.getLogger().setLevel(config["log_level"])
    return config


async def _open(config: dict[str, Any]):
    from db.repository import open_store

    return await open_store(
        backend=config["backend"],
        db_path=config["db_path"],
        kv_path=config["kv_path"],
        store_name=config["store_name"],
        user_id=config["user_id"],
    )


@click.group()
@click.option("--config", "config_path", default=None, help="Path to secondbrain.config.json")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """secondbrain: local entity store for tasks, subtasks and calendar events."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


@main.command()
def init() -> None:
    """Create a starter secondbrain.config.json."""
    config_path = Path.cwd() / CONFIG_FILENAME

    if config_path.exists():
        click.echo(f"Config already exists: {config_path}")
        return

    config_path.write_text(json.dumps(DEFAULT_CONFIG, indent=2) + "\n")
    click.echo(f"Created {config_path}")


@main.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Open the store and apply any pending schema upgrades."""
    config = _load(ctx)

    async def run() -> None:
        from db.migrations import SchemaManager

        repo = await _open(config)
        try:
            version = await SchemaManager(repo.backend).get_schema_version()
            click.echo(f"Backend: {repo.backend.kind}")
            click.echo(f"Schema version: {version}")
        finally:
            await repo.close()

    asyncio.run(run())


@main.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Print the number of rows in each table."""
    config = _load(ctx)

    async def run() -> None:
        from db.schema import TABLE_CREATION_ORDER

        repo = await _open(config)
        try:
            for table in TABLE_CREATION_ORDER:
                click.echo(f"{table:<15} {await repo.count(table)}")
        finally:
            await repo.close()

    asyncio.run(run())


@main.command()
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None)
@click.pass_context
def dump(ctx: click.Context, output: str | None) -> None:
    """Export the whole store as SQL statements."""
    config = _load(ctx)

    async def run() -> str:
        from db.export import dump_sql

        repo = await _open(config)
        try:
            return await dump_sql(repo)
        finally:
            await repo.close()

    script = asyncio.run(run())
    if output:
        Path(output).write_text(script)
        click.echo(f"Wrote {output}")
    else:
        click.echo(script, nl=False)


@main.command("import-events")
@click.argument("events_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--user-id", default=None, help="Owner of the imported events")
@click.pass_context
def import_events(ctx: click.Context, events_file: str, user_id: str | None) -> None:
    """Import Google Calendar events (a JSON list or {"items": [...]})."""
    config = _load(ctx)
    user_id = user_id or config["user_id"]
    if not user_id:
        click.echo("Error: --user-id is required (or set user_id in config)", err=True)
        sys.exit(1)

    try:
        data = json.loads(Path(events_file).read_text())
    except json.JSONDecodeError as e:
        click.echo(f"Error: invalid JSON in {events_file}: {e}", err=True)
        sys.exit(1)
    items = data.get("items", []) if isinstance(data, dict) else data

    from secondbrain.calendar_import import convert_google_event, import_calendar_events

    try:
        events = [convert_google_event(item) for item in items]
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    async def run():
        repo = await _open(config)
        try:
            return await import_calendar_events(repo, user_id, events)
        finally:
            await repo.close()

    result = asyncio.run(run())
    click.echo(f"Imported {result.created} event(s), skipped {result.skipped}")


@main.command()
@click.option("--host", default="127.0.0.1")
@click.option("--port", default=8000, type=int)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Start the secondbrain API server."""
    config = _load(ctx)

    import uvicorn

    from api.app import create_app

    uvicorn.run(create_app(config=config), host=host, port=port)
