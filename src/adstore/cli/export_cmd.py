"""adstore export: export current entity versions as JSONL or Parquet."""

from __future__ import annotations

import os
from typing import Any, Optional

import pyarrow as pa
import pyarrow.parquet as pq
import typer

from adstore.cli import _exitcodes as ec
from adstore.cli._output import print_error
from adstore.cli._storage import open_repo, request_context
from adstore.entities import Entity
from adstore.errors import AdStoreError
from adstore.filters import EntityFilter
from adstore.repository import EntityRepository
from adstore.serialization import entity_to_json

_PARQUET_SCHEMA = pa.schema(
    [
        ("external_entity_id", pa.string()),
        ("entity_category", pa.string()),
        ("external_name", pa.string()),
        ("external_type", pa.string()),
        ("local_version", pa.int64()),
        ("last_modified_date", pa.timestamp("us", tz="UTC")),
        ("last_modified_user", pa.string()),
        ("document", pa.string()),
    ]
)


def export_cmd(
    output: str = typer.Option(..., "--output", help="Output directory path"),
    category: Optional[str] = typer.Option(None, "--category", help="Export only this category"),
    output_format: str = typer.Option("jsonl", "--format", help="jsonl or parquet"),
) -> None:
    """Export the current version of every active entity, one file per category."""
    if output_format not in ("jsonl", "parquet"):
        print_error(f"Unsupported format '{output_format}'; use jsonl or parquet")
        raise typer.Exit(ec.USAGE_ERROR)

    try:
        repo = open_repo()
    except AdStoreError as e:
        print_error(f"Cannot open storage backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        os.makedirs(output, exist_ok=True)
        categories = [category] if category else list(repo.count_by_category())
        total_rows = 0
        for name in categories:
            entities = _load_category(repo, name)
            if output_format == "jsonl":
                filepath = os.path.join(output, f"{name}.jsonl")
                with open(filepath, "w") as f:
                    for entity in entities:
                        f.write(entity_to_json(entity, EntityFilter.everything()) + "\n")
            else:
                filepath = os.path.join(output, f"{name}.parquet")
                table = pa.Table.from_pylist([_parquet_row(e) for e in entities], schema=_PARQUET_SCHEMA)
                pq.write_table(table, filepath)
            total_rows += len(entities)

        print(f"Exported {total_rows} entities to {output}/")
    except typer.Exit:
        raise
    except (AdStoreError, OSError) as e:
        print_error(str(e))
        raise typer.Exit(ec.EXECUTION_FAILURE)
    finally:
        repo.close()


def _load_category(repo: EntityRepository, category: str) -> list[Entity]:
    query_context = request_context(EntityFilter(queries={"EntityCategory": category}))
    entity_ids = repo.get_filtered_entity_ids(query_context)
    return repo.try_get_entities(request_context(EntityFilter.everything()), entity_ids)


def _parquet_row(entity: Entity) -> dict[str, Any]:
    return {
        "external_entity_id": str(entity.external_entity_id),
        "entity_category": entity.entity_category,
        "external_name": entity.external_name,
        "external_type": entity.external_type,
        "local_version": entity.local_version,
        "last_modified_date": entity.last_modified_date,
        "last_modified_user": entity.last_modified_user,
        "document": entity_to_json(entity, EntityFilter.everything()),
    }
