"""adstore get / list / history / status: inspect and manage entities."""

from __future__ import annotations

from typing import Optional

import typer

from adstore.cli import _exitcodes as ec
from adstore.cli._output import print_error, print_object, print_table, print_yaml
from adstore.cli._storage import open_repo, request_context
from adstore.entities import EntityId
from adstore.errors import AdStoreError, EntityNotFoundError, StaleEntityError, ValidationError
from adstore.filters import EntityFilter
from adstore.keys import TableKey
from adstore.serialization import entity_to_document


def _parse_id(raw: str) -> EntityId:
    try:
        return EntityId(raw)
    except ValidationError as e:
        print_error(str(e))
        raise typer.Exit(ec.USAGE_ERROR)


def get_cmd(
    entity_id: str = typer.Argument(..., help="Entity id (32 hex digits or a UUID)"),
    version: Optional[int] = typer.Option(None, "--version", help="Read a historical version"),
    system: bool = typer.Option(False, "--system", help="Include System properties"),
    extended: bool = typer.Option(False, "--extended", help="Include Extended properties"),
    no_associations: bool = typer.Option(False, "--no-associations", help="Omit associations"),
    output_format: str = typer.Option("json", "--format", help="Output format: json or yaml"),
) -> None:
    """Show one entity."""
    from adstore.cli import state

    if output_format not in ("json", "yaml"):
        print_error(f"Unsupported format '{output_format}'; use json or yaml")
        raise typer.Exit(ec.USAGE_ERROR)
    eid = _parse_id(entity_id)
    try:
        entity_filter = EntityFilter(
            include_default=True,
            include_system=system,
            include_extended=extended,
            include_associations=not no_associations,
            version=version,
        )
    except ValidationError as e:
        print_error(str(e))
        raise typer.Exit(ec.USAGE_ERROR)

    try:
        repo = open_repo()
    except AdStoreError as e:
        print_error(f"Cannot open storage backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        entity = repo.get_entity(request_context(entity_filter), eid)
        document = entity_to_document(entity, entity_filter) or {}
        if output_format == "yaml" and not state.json_output:
            print_yaml(document)
        else:
            print_object(document, json_mode=True)
    except EntityNotFoundError as e:
        print_error(str(e))
        raise typer.Exit(ec.NOT_FOUND)
    except AdStoreError as e:
        print_error(str(e))
        raise typer.Exit(ec.DATABASE_ERROR)
    finally:
        repo.close()


def list_cmd(
    category: str = typer.Argument(..., help="Entity category, e.g. Company or Campaign"),
    external_type: Optional[str] = typer.Option(None, "--type", help="Only this external type"),
) -> None:
    """List the active entities of a category."""
    from adstore.cli import state

    try:
        repo = open_repo()
    except AdStoreError as e:
        print_error(f"Cannot open storage backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        infos = repo.get_entity_info_by_category(request_context(), category)
        if external_type is not None:
            infos = [e for e in infos if e.external_type == external_type]
        rows = [
            [str(e.external_entity_id), e.external_name, e.entity_category, e.external_type]
            for e in infos
        ]
        print_table(
            ["external_entity_id", "external_name", "entity_category", "external_type"],
            rows,
            json_mode=state.json_output,
        )
        if not state.json_output and not rows:
            print(f"No active {category} entities.")
    except AdStoreError as e:
        print_error(str(e))
        raise typer.Exit(ec.DATABASE_ERROR)
    finally:
        repo.close()


def history_cmd(
    entity_id: str = typer.Argument(..., help="Entity id"),
) -> None:
    """List every stored version of an entity with its storage key."""
    from adstore.cli import state

    eid = _parse_id(entity_id)
    try:
        repo = open_repo()
    except AdStoreError as e:
        print_error(f"Cannot open storage backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        keys = repo.get_entity_history(request_context(), eid)
        if not keys:
            print_error(f"entity not found: {eid}")
            raise typer.Exit(ec.NOT_FOUND)
        rows = []
        for key in keys:
            if isinstance(key, TableKey):
                location = f"{key.table}/{key.partition}/{key.row_id}"
            else:
                location = f"{key.container}/{key.blob_id}"
            rows.append([key.local_version, key.kind, location, key.version_timestamp])
        print_table(["version", "kind", "location", "timestamp"], rows, json_mode=state.json_output)
    except AdStoreError as e:
        print_error(str(e))
        raise typer.Exit(ec.DATABASE_ERROR)
    finally:
        repo.close()


def status_cmd(
    entity_ids: list[str] = typer.Argument(..., help="One or more entity ids"),
    active: bool = typer.Option(..., "--active/--inactive", help="Status to set"),
) -> None:
    """Activate or deactivate entities."""
    from adstore.cli import state

    ids = [_parse_id(raw) for raw in entity_ids]
    try:
        repo = open_repo()
    except AdStoreError as e:
        print_error(f"Cannot open storage backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        updated = repo.set_entity_status(request_context(), ids, active)
        data = {"requested": len(ids), "updated": updated, "active": active}
        if state.json_output:
            print_object(data, json_mode=True)
        else:
            label = "active" if active else "inactive"
            print(f"Set {updated} of {len(ids)} entities {label}")
        if updated != len(ids):
            raise typer.Exit(ec.NOT_FOUND)
    except StaleEntityError as e:
        print_error(str(e))
        raise typer.Exit(ec.STALE_ENTITY)
    except AdStoreError as e:
        print_error(str(e))
        raise typer.Exit(ec.DATABASE_ERROR)
    finally:
        repo.close()
