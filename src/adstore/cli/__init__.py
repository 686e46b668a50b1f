"""adstore CLI: operator console for inspecting and managing an entity store."""

from __future__ import annotations

import logging
from typing import Optional

import typer
from click.core import ParameterSource

from adstore.cli import company, entities, export_cmd, info, init_cmd

app = typer.Typer(
    name="adstore",
    help="adstore CLI: operator console for the versioned entity store.",
    no_args_is_help=True,
)


class _State:
    """Global CLI state shared across subcommands."""

    db: str = "adstore.db"
    storage_uri: str | None = None
    json_output: bool = False
    verbose: bool = False


state = _State()


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError, version

        try:
            v = version("adstore")
        except PackageNotFoundError:
            v = "unknown"
        print(f"adstore {v}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(
        None,
        "--db",
        envvar="ADSTORE_DB",
        help="SQLite index database file path (default: adstore.db)",
    ),
    storage_uri: Optional[str] = typer.Option(
        None,
        "--storage-uri",
        envvar="ADSTORE_STORAGE_URI",
        help="Payload storage URI (e.g. sqlite:///adstore.db or s3://bucket/prefix)",
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output when supported"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    version: bool = typer.Option(
        False, "--version", help="Show version", is_eager=True, callback=_version_callback
    ),
) -> None:
    """Global options for all adstore commands."""
    from adstore.errors import DataAccessError
    from adstore.storage import parse_storage_target

    db_source = ctx.get_parameter_source("db")
    uri_source = ctx.get_parameter_source("storage_uri")

    resolved_db = db or "adstore.db"
    resolved_uri = storage_uri
    # Explicit --db overrides ADSTORE_STORAGE_URI unless --storage-uri is also given.
    if db_source == ParameterSource.COMMANDLINE and uri_source == ParameterSource.ENVIRONMENT:
        resolved_uri = None

    if resolved_uri:
        db_for_validation = None
        if db_source == ParameterSource.COMMANDLINE and resolved_uri.startswith("sqlite:"):
            db_for_validation = resolved_db
        try:
            parse_storage_target(db_path=db_for_validation, storage_uri=resolved_uri)
        except DataAccessError as e:
            raise typer.BadParameter(str(e))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    state.db = resolved_db
    state.storage_uri = resolved_uri
    state.json_output = json_output
    state.verbose = verbose
    if ctx.invoked_subcommand is None and not version:
        print(ctx.get_help())
        raise typer.Exit()


app.command(name="init")(init_cmd.init_cmd)
app.command(name="info")(info.info_cmd)
app.command(name="get")(entities.get_cmd)
app.command(name="list")(entities.list_cmd)
app.command(name="history")(entities.history_cmd)
app.command(name="status")(entities.status_cmd)
app.command(name="add-company")(company.add_company_cmd)
app.command(name="export")(export_cmd.export_cmd)


def main() -> None:
    """Entry point for the adstore CLI."""
    app()
