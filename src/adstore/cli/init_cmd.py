"""adstore init: provision storage and create the default company."""

from __future__ import annotations

import typer

from adstore.cli import _exitcodes as ec
from adstore.cli._output import print_error, print_object
from adstore.cli._storage import open_repo, request_context
from adstore.entities import Entity, EntityId
from adstore.errors import AdStoreError
from adstore.registry import COMPANY

DEFAULT_COMPANY_NAME = "DefaultCompany"


def init_cmd(
    name: str = typer.Option(DEFAULT_COMPANY_NAME, "--name", help="Name of the default company"),
) -> None:
    """Create the default company if it does not exist yet."""
    from adstore.cli import state

    try:
        repo = open_repo()
    except AdStoreError as e:
        print_error(f"Cannot open storage backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        context = request_context()
        company_id = EntityId(repo.config.default_company_id)
        existing = repo.try_get_entity(context, company_id)
        created = existing is None
        if created:
            company = Entity(external_entity_id=company_id, entity_category=COMPANY, external_name=name)
            existing = repo.add_company(context, company)
        data = {
            "company_id": str(company_id),
            "company_name": existing.external_name,
            "created": created,
        }
        if state.json_output:
            print_object(data, json_mode=True)
        elif created:
            print(f"Created default company {existing.external_name} ({company_id})")
        else:
            print(f"Default company already exists ({company_id})")
    except AdStoreError as e:
        print_error(str(e))
        raise typer.Exit(ec.DATABASE_ERROR)
    finally:
        repo.close()
