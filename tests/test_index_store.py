"""Tests for the SQLite index store: sequencing, concurrency and status."""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone

import pytest

from adstore.entities import Association, EntityId
from adstore.errors import DataAccessError, StaleEntityError
from adstore.index_store import SqliteIndexStore
from adstore.keys import TableKey, build_updated_key

from tests.conftest import make_entity

ACCOUNT = "local"
NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _versioned(entity, version, row="r0"):
    return entity.evolve(
        local_version=version,
        key=TableKey(ACCOUNT, "AcmeTable", str(entity.external_entity_id), f"{row}-{version}"),
        last_modified_date=NOW,
        create_date=NOW,
    )


class TestCreate:
    def test_create_and_read(self, index_store):
        entity = _versioned(make_entity(name="Spring"), 0)
        index_store.save_entity(entity)
        key = index_store.get_storage_key(entity.external_entity_id, ACCOUNT)
        assert key.row_id == entity.key.row_id
        assert key.table == "AcmeTable"
        assert key.local_version == 0
        indexed = index_store.get_entity(entity.external_entity_id, ACCOUNT)
        assert indexed.external_name == "Spring"
        assert indexed.local_version == 0

    def test_create_must_start_at_zero(self, index_store):
        with pytest.raises(DataAccessError):
            index_store.save_entity(_versioned(make_entity(), 1))

    def test_duplicate_create_rejected(self, index_store):
        entity = _versioned(make_entity(), 0)
        index_store.save_entity(entity)
        with pytest.raises(DataAccessError):
            index_store.save_entity(entity)

    def test_unknown_entity(self, index_store):
        assert index_store.get_storage_key(EntityId.new(), ACCOUNT) is None
        assert index_store.get_entity(EntityId.new(), ACCOUNT) is None

    def test_memory_database_rejected(self):
        with pytest.raises(DataAccessError):
            SqliteIndexStore(":memory:")


class TestUpdate:
    def test_sequential_updates(self, index_store):
        entity = make_entity()
        index_store.save_entity(_versioned(entity, 0))
        index_store.save_entity(_versioned(entity, 1), is_update=True)
        index_store.save_entity(_versioned(entity, 2), is_update=True)
        versions = index_store.list_versions(entity.external_entity_id, ACCOUNT)
        assert [k.local_version for k in versions] == [0, 1, 2]

    def test_stale_version_raises_stale(self, index_store):
        entity = make_entity()
        index_store.save_entity(_versioned(entity, 0))
        index_store.save_entity(_versioned(entity, 1), is_update=True)
        with pytest.raises(StaleEntityError):
            index_store.save_entity(_versioned(entity, 1, row="other"), is_update=True)

    def test_version_gap_is_not_stale(self, index_store):
        entity = make_entity()
        index_store.save_entity(_versioned(entity, 0))
        with pytest.raises(DataAccessError) as excinfo:
            index_store.save_entity(_versioned(entity, 3), is_update=True)
        assert not isinstance(excinfo.value, StaleEntityError)

    def test_update_of_unknown_entity(self, index_store):
        with pytest.raises(DataAccessError):
            index_store.save_entity(_versioned(make_entity(), 1), is_update=True)

    def test_key_fields_conflict_rolls_back_version(self, index_store, tmp_db):
        entity = make_entity()
        index_store.save_entity(_versioned(entity, 0))
        with sqlite3.connect(tmp_db) as conn:
            conn.execute(
                "INSERT INTO entity_key_fields (external_entity_id, version, storage_account, "
                "table_name, partition, row_id, version_timestamp) VALUES (?, 1, ?, 't', 'p', 'r', 'x')",
                (str(entity.external_entity_id), ACCOUNT),
            )
        with pytest.raises(DataAccessError):
            index_store.save_entity(_versioned(entity, 1), is_update=True)
        assert index_store.get_entity(entity.external_entity_id, ACCOUNT).local_version == 0

    def test_pinned_version_read(self, index_store):
        entity = make_entity()
        first = _versioned(entity, 0)
        index_store.save_entity(first)
        index_store.save_entity(_versioned(entity, 1), is_update=True)
        pinned = index_store.get_entity(entity.external_entity_id, ACCOUNT, version=0)
        assert pinned.key.row_id == first.key.row_id
        assert index_store.get_entity(entity.external_entity_id, ACCOUNT, version=5) is None

    def test_concurrent_same_version_has_one_winner(self, index_store):
        entity = make_entity()
        base = _versioned(entity, 0)
        index_store.save_entity(base)

        outcomes: list[str] = []
        barrier = threading.Barrier(2)

        def attempt(i: int) -> None:
            candidate = base.evolve(local_version=1, key=build_updated_key(base.key, "p"))
            barrier.wait()
            try:
                index_store.save_entity(candidate, is_update=True)
                outcomes.append("ok")
            except StaleEntityError:
                outcomes.append("stale")

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "stale"]
        assert index_store.get_entity(entity.external_entity_id, ACCOUNT).local_version == 1


class TestAssociationsAndStatus:
    def test_associations_stored_per_version(self, index_store):
        target = make_entity("Creative", "c1")
        index_store.save_entity(_versioned(target, 0))
        source = make_entity().with_associations(
            [Association("creatives", target.external_entity_id, "Creative")]
        )
        index_store.save_entity(_versioned(source, 0))
        index_store.save_entity(_versioned(source.with_associations([]), 1), is_update=True)

        current = index_store.get_entity(source.external_entity_id, ACCOUNT)
        assert current.associations == ()
        old = index_store.get_entity(source.external_entity_id, ACCOUNT, version=0)
        assert [a.target_entity_id for a in old.associations] == [target.external_entity_id]

    def test_inactive_targets_hidden_from_current_read(self, index_store):
        target = make_entity("Creative", "c1")
        index_store.save_entity(_versioned(target, 0))
        source = make_entity().with_associations(
            [
                Association("creatives", target.external_entity_id, "Creative"),
                Association("creatives", EntityId.new(), "Creative"),
            ]
        )
        index_store.save_entity(_versioned(source, 0))
        index_store.save_entity(_versioned(target, 1), is_update=True, active=False)

        current = index_store.get_entity(source.external_entity_id, ACCOUNT)
        assert len(current.associations) == 1
        assert current.associations[0].target_entity_id != target.external_entity_id

    def test_category_listing_excludes_inactive(self, index_store):
        a = make_entity(name="a")
        b = make_entity(name="b")
        index_store.save_entity(_versioned(a, 0))
        index_store.save_entity(_versioned(b, 0))
        index_store.save_entity(_versioned(b, 1), is_update=True, active=False)
        names = [e.external_name for e in index_store.get_entity_info_by_category("Campaign")]
        assert names == ["a"]
        assert index_store.get_entity_ids("Campaign") == [a.external_entity_id]
        assert index_store.count_by_category() == {"Campaign": 1}

    def test_save_can_set_active_flag(self, index_store):
        entity = make_entity()
        index_store.save_entity(_versioned(entity, 0))
        index_store.save_entity(_versioned(entity, 1), is_update=True, active=False)
        assert index_store.get_entity_ids("Campaign") == []
