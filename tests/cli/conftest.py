"""Shared fixtures for CLI tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from typer.testing import CliRunner

from adstore.cli import app
from adstore.config import DEFAULT_COMPANY_ID
from adstore.entities import Association, Entity, EntityId, EntityProperty
from adstore.filters import EntityFilter, RequestContext
from adstore.registry import COMPANY
from adstore.storage import open_repository

if TYPE_CHECKING:
    from click.testing import Result

CAMPAIGN_ID = "0000000000000000000000000000a001"
OTHER_CAMPAIGN_ID = "0000000000000000000000000000a002"
PARTNER_ID = "0000000000000000000000000000b001"


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def cli_db(tmp_path):
    """Create a temp DB path and set it as the CLI state."""
    db_path = str(tmp_path / "cli_test.db")
    return db_path


@pytest.fixture
def seeded_db(cli_db):
    """Create a DB with the default company, two campaigns and a partner."""
    repo = open_repository(cli_db)
    ctx = RequestContext(
        external_company_id=DEFAULT_COMPANY_ID,
        user_id="seed",
        entity_filter=EntityFilter.everything(),
    )
    repo.add_company(
        ctx,
        Entity(
            external_entity_id=EntityId(DEFAULT_COMPANY_ID),
            entity_category=COMPANY,
            external_name="DefaultCompany",
        ),
    )
    partner = repo.save_entity(
        ctx, Entity(external_entity_id=EntityId(PARTNER_ID), entity_category="Partner", external_name="Agency")
    )
    repo.save_entity(
        ctx,
        Entity(
            external_entity_id=EntityId(CAMPAIGN_ID),
            entity_category="Campaign",
            external_name="Spring",
            external_type="Display",
            properties=(
                EntityProperty("Budget", 1000.0),
                EntityProperty.system("Sys", "internal"),
            ),
            associations=(Association("Partners", partner.external_entity_id, "Partner"),),
        ),
    )
    repo.save_entity(
        ctx,
        Entity(
            external_entity_id=EntityId(OTHER_CAMPAIGN_ID),
            entity_category="Campaign",
            external_name="Autumn",
            external_type="Video",
        ),
    )
    # Second version of the first campaign; only Default properties are replaced.
    repo.save_entity(
        ctx.evolve(entity_filter=EntityFilter.client_default()),
        Entity(
            external_entity_id=EntityId(CAMPAIGN_ID),
            entity_category="Campaign",
            external_name="Spring",
            external_type="Display",
            properties=(EntityProperty("Budget", 1500.0),),
        ),
    )
    repo.close()
    return cli_db


def invoke(runner: CliRunner, args: list[str], db_path: str | None = None) -> "Result":
    """Invoke CLI with proper state setup."""
    if db_path:
        # Inject --db before subcommand
        args = ["--db", db_path] + args
    result = runner.invoke(app, args, catch_exceptions=False)
    return result
