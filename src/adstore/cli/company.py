"""adstore add-company: provision storage for a new company."""

from __future__ import annotations

import typer

from adstore.cli import _exitcodes as ec
from adstore.cli._output import print_error, print_object
from adstore.cli._storage import open_repo, request_context
from adstore.errors import AdStoreError
from adstore.keys import TableKey
from adstore.registry import COMPANY


def add_company_cmd(
    name: str = typer.Argument(..., help="Company name"),
) -> None:
    """Create a company with its own entity table."""
    from adstore.cli import state

    try:
        repo = open_repo()
    except AdStoreError as e:
        print_error(f"Cannot open storage backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        company = repo.registry.create(COMPANY, name)
        saved = repo.add_company(request_context(), company)
        key = saved.key
        storage = key.table if isinstance(key, TableKey) else key.container
        data = {
            "external_entity_id": str(saved.external_entity_id),
            "external_name": saved.external_name,
            "storage": storage,
            "local_version": saved.local_version,
        }
        print_object(data, json_mode=state.json_output)
    except AdStoreError as e:
        print_error(str(e))
        raise typer.Exit(ec.DATABASE_ERROR)
    finally:
        repo.close()
