"""adstore info: show storage status and per-category counts."""

from __future__ import annotations

import os
from typing import Any

import typer

from adstore.cli import _exitcodes as ec
from adstore.cli._output import print_error, print_object
from adstore.cli._storage import open_repo, resolve_storage_binding
from adstore.errors import AdStoreError


def info_cmd(
    stats: bool = typer.Option(False, "--stats", help="Show per-category entity counts"),
) -> None:
    """Show storage status and high-level metadata."""
    from adstore.cli import state

    json_mode = state.json_output
    db_path, storage_uri = resolve_storage_binding()
    if db_path is None and storage_uri is not None:
        from adstore.storage import parse_storage_target

        try:
            db_path = parse_storage_target(storage_uri=storage_uri).db_path
        except AdStoreError as e:
            print_error(f"Invalid storage URI: {e}")
            raise typer.Exit(ec.DATABASE_ERROR)

    if db_path and not os.path.exists(db_path):
        print_error(f"Database not found: {db_path}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        repo = open_repo()
    except AdStoreError as e:
        print_error(f"Cannot open storage backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        storage = repo.storage_info()
        data: dict[str, Any] = {"storage_account": repo.storage_account, **storage}
        if db_path and os.path.exists(db_path):
            data["file_size_bytes"] = os.path.getsize(db_path)
        if stats:
            data["entity_counts"] = repo.count_by_category()

        if json_mode:
            print_object(data, json_mode=True)
            return

        print(f"Index backend: {storage.get('index_backend')}")
        print(f"Index database: {storage.get('db_path')}")
        if "file_size_bytes" in data:
            print(f"File size: {int(data['file_size_bytes']):,} bytes")
        payload_backend = storage.get("payload_backend")
        print(f"Payload backend: {payload_backend}")
        if payload_backend == "s3":
            print(f"Storage URI: {storage.get('storage_uri')}")
            print(f"Bucket: {storage.get('bucket')}")
            print(f"Prefix: {storage.get('prefix')}")
        else:
            print(f"Tables: {storage.get('tables')}")
            print(f"Records: {storage.get('records')}")
            print(f"Blobs: {storage.get('blobs')}")
        print(f"Storage account: {repo.storage_account}")

        if stats:
            print("\nEntity counts:")
            for name, cnt in data["entity_counts"].items():
                print(f"  {name}: {cnt}")
    except AdStoreError as e:
        print_error(str(e))
        raise typer.Exit(ec.DATABASE_ERROR)
    finally:
        repo.close()
