"""
tflocker CLI
============

Command-line interface for the state backend.

Commands:
    tflocker serve                       - Run the HTTP state backend
    tflocker init-db                     - Create the states table
    tflocker status                      - List all states with version and lock
    tflocker history <name> <state_id>   - Show every version of a state
    tflocker read <name> <state_id>      - Print the current blob of a state
    tflocker lock <name> <state_id>      - Lock a state by hand, print the token
    tflocker unlock <name> <id> <token>  - Release a lock
"""

import sys

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import ConfigError, load_config
from .errors import StateError
from .lock_info import LockInfo, lock_id
from .logs import setup_logging


console = Console()


def _open_store(config: dict):
    from .store import create_store

    try:
        return create_store(config)
    except StateError as e:
        console.print(f"[red]Can't open ledger: {e}[/red]")
        sys.exit(1)


def _parse_key(name: str, state_id: str):
    from .state.ledger import StateKey

    try:
        return StateKey.parse(name, state_id)
    except StateError as e:
        raise click.BadParameter(str(e)) from e


@click.group()
@click.version_option(version=__version__, prog_name="tflocker")
@click.option(
    "--config", "-c", "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="YAML config file (default: $TFLOCKER_CONFIG or ./config.yaml)",
)
@click.option("--log-level", "-l", default=None, help="Override logging.level")
@click.pass_context
def main(ctx: click.Context, config_path: str, log_level: str):
    """tflocker - Remote state backend with locking"""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    if log_level:
        config["logging"]["level"] = log_level
    setup_logging(config["logging"]["level"])
    ctx.obj = config


@main.command()
@click.option("--host", default=None, help="Interface to bind (default: server.host)")
@click.option("--port", "-p", type=int, default=None, help="Port (default: server.port or $PORT)")
@click.pass_obj
def serve(config: dict, host: str, port: int):
    """Run the HTTP state backend."""
    from .server import create_app

    host = host or config["server"]["host"]
    port = port or config["server"]["port"]

    console.print("\n[bold blue]tflocker[/bold blue] - Remote State Backend\n")
    console.print(f"[dim]Database:[/dim] {config['database']['url']}")
    console.print(f"[dim]Listening:[/dim] http://{host}:{port}/state/<name>/<state_id>")
    console.print()

    store = _open_store(config)
    app = create_app(store)
    try:
        app.run(host=host, port=port, threaded=True)
    finally:
        store.ledger.close()
        console.print("[dim]Ledger closed[/dim]")


@main.command("init-db")
@click.pass_obj
def init_db(config: dict):
    """Create the states table if it does not exist."""
    store = _open_store(config)
    store.ledger.close()
    console.print(f"[green]✓ Ledger ready:[/green] {config['database']['url']}")


@main.command()
@click.pass_obj
def status(config: dict):
    """List all states with their current version and lock."""
    store = _open_store(config)
    try:
        keys = store.ledger.keys()
    finally:
        store.ledger.close()

    if not keys:
        console.print("[dim]No states found[/dim]")
        return

    table = Table(title="States")
    table.add_column("Name")
    table.add_column("State ID")
    table.add_column("Version", justify="right")
    table.add_column("Lock")

    for key, version, locked in keys:
        table.add_row(
            key.name,
            str(key.state_id),
            str(version),
            "[red]locked[/red]" if locked else "[green]unlocked[/green]",
        )

    console.print(table)


@main.command()
@click.argument("name")
@click.argument("state_id")
@click.pass_obj
def history(config: dict, name: str, state_id: str):
    """Show every version of a state, newest first."""
    from .server import md5_hash

    key = _parse_key(name, state_id)
    store = _open_store(config)
    try:
        records = store.ledger.history(key)
    finally:
        store.ledger.close()

    if not records:
        console.print(f"[dim]No versions of {key}[/dim]")
        return

    table = Table(title=f"History of {key}")
    table.add_column("Version", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("MD5")
    table.add_column("Lock")

    for record in records:
        table.add_row(
            str(record.version),
            str(len(record.blob)),
            md5_hash(record.blob) if record.blob else "-",
            _format_lock(record.lock_token),
        )

    console.print(table)


@main.command()
@click.argument("name")
@click.argument("state_id")
@click.option("--output", "-o", type=click.File("wb"), default="-", help="Write blob here (default: stdout)")
@click.pass_obj
def read(config: dict, name: str, state_id: str, output):
    """Print the current blob of a state."""
    key = _parse_key(name, state_id)
    store = _open_store(config)
    try:
        data = store.read(key)
    except StateError as e:
        raise click.ClickException(str(e)) from e
    finally:
        store.ledger.close()
    output.write(data)


@main.command()
@click.argument("name")
@click.argument("state_id")
@click.option("--operation", default="manual", help="Operation recorded in the lock info")
@click.option("--info", default="", help="Free-form note recorded in the lock info")
@click.pass_obj
def lock(config: dict, name: str, state_id: str, operation: str, info: str):
    """Lock a state by hand and print the lock token."""
    from .errors import AlreadyLocked

    key = _parse_key(name, state_id)
    token = LockInfo.new(operation=operation, info=info).to_json()
    store = _open_store(config)
    try:
        store.lock(key, token)
    except AlreadyLocked as e:
        console.print(f"[red]{key} is already locked:[/red] {_format_lock(e.current_token)}")
        sys.exit(1)
    except StateError as e:
        raise click.ClickException(str(e)) from e
    finally:
        store.ledger.close()

    console.print(f"[green]✓ Locked {key}[/green]")
    click.echo(token)


@main.command()
@click.argument("name")
@click.argument("state_id")
@click.argument("token")
@click.pass_obj
def unlock(config: dict, name: str, state_id: str, token: str):
    """Release a lock; TOKEN must be exactly the token holding it."""
    key = _parse_key(name, state_id)
    store = _open_store(config)
    try:
        store.unlock(key, token)
    except StateError as e:
        raise click.ClickException(str(e)) from e
    finally:
        store.ledger.close()
    console.print(f"[green]✓ Unlocked {key}[/green]")


def _format_lock(token: str) -> str:
    """Describe a lock token for display"""
    if not token:
        return "-"
    try:
        info = LockInfo.from_json(token)
    except ValueError:
        return lock_id(token)
    who = f" by {info.Who}" if info.Who else ""
    created = info.created_at
    since = f" since {created:%Y-%m-%d %H:%M}" if created else ""
    return f"{info.ID}{who}{since}"


if __name__ == "__main__":
    main()
