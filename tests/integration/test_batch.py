"""Batch engine tests against a real SQLite file."""

from __future__ import annotations

import pytest

from rowkeep import BatchError, BatchResult, Database, ValidationError
from tests._support import assert_pool_idle
from tests._support.entities import AuditEntry, Player, Setting, Tag, make_player


def _players(count: int, prefix: str = "p") -> list[Player]:
    return [make_player(f"{prefix}{i:05d}", level=i) for i in range(count)]


class TestStaging:
    def test_pending_and_clear(self, db: Database):
        batch = db.batch(Player).insert(make_player("a")).update_all(_players(2, "u")).delete(make_player("d"))
        assert batch.pending == 4
        batch.clear()
        assert batch.pending == 0

    def test_wrong_type_rejected(self, db: Database):
        with pytest.raises(TypeError, match="cannot stage Setting"):
            db.batch(Player).insert(Setting(name="x"))

    @pytest.mark.parametrize("size", [0, -5, 2.5, True])
    def test_invalid_batch_size(self, db: Database, size):
        with pytest.raises(ValidationError) as exc_info:
            db.batch(Player).batch_size(size)
        assert exc_info.value.context.table == "players"

    def test_default_batch_size_from_config(self, db: Database):
        assert "batch_size=1000" in repr(db.batch(Player))
        assert "batch_size=25" in repr(db.batch(Player, batch_size=25))


class TestExecute:
    def test_empty_batch(self, db: Database):
        before = db.stats()
        result = db.batch(Player).execute()

        assert result == BatchResult()
        assert result.total_affected == 0
        after = db.stats()
        assert after.total_queries == before.total_queries
        assert after.total_transactions == before.total_transactions

    def test_chunking(self, db: Database):
        result = db.batch(Player, batch_size=500).insert_all(_players(2500)).execute()

        assert result.inserted_count == 2500
        assert result.chunks_executed == 5
        assert result.total_affected == 2500
        assert result.execution_time_ms > 0
        assert db.count(Player) == 2500

    def test_partial_last_chunk(self, db: Database):
        result = db.batch(Player, batch_size=400).insert_all(_players(1001)).execute()
        assert result.chunks_executed == 3
        assert result.inserted_count == 1001

    def test_inserts_then_updates_then_deletes(self, db: Database):
        existing = make_player("existing")
        db.insert(existing)

        newcomer = make_player("newcomer", level=1)
        promoted = make_player("newcomer", level=50)
        promoted.id = newcomer.id

        # Staged in reverse order: the update only matches if the insert ran first,
        # and the delete only removes what the insert created.
        result = (
            db.batch(Player)
            .delete(existing)
            .delete(newcomer)
            .update(promoted)
            .insert(newcomer)
            .execute()
        )

        assert (result.inserted_count, result.updated_count, result.deleted_count) == (1, 1, 2)
        assert db.count(Player) == 0

    def test_update_counts_matched_rows(self, db: Database):
        players = _players(3)
        for p in players:
            db.insert(p)
        for p in players:
            p.balance = 5.0

        result = db.batch(Player).update_all(players).update(make_player("ghost")).execute()
        assert result.updated_count == 3
        assert db.select(Player).where("balance", 5.0).count() == 3

    def test_key_only_updates_count_matches(self, db: Database):
        db.create_table(Tag)
        db.batch(Tag).insert_all([Tag(label="pvp"), Tag(label="raid")]).execute()

        result = (
            db.batch(Tag, batch_size=1)
            .update_all([Tag(label="pvp"), Tag(label="raid"), Tag(label="missing")])
            .execute()
        )
        assert result.updated_count == 2
        assert result.chunks_executed == 3
        assert db.count(Tag) == 2

    def test_success_clears_staging(self, db: Database):
        batch = db.batch(Setting).insert(Setting(name="a", value="1"))
        batch.execute()
        assert batch.pending == 0
        assert batch.execute() == BatchResult()

    def test_generated_keys(self, db: Database):
        entries = [AuditEntry(message=f"m{i}") for i in range(10)]
        result = db.batch(AuditEntry, batch_size=3).insert_all(entries).execute()

        assert result.inserted_count == 10
        assert result.chunks_executed == 4
        assert db.count(AuditEntry) == 10
        assert all(e.entry_id is None for e in entries)

    def test_bypasses_cache(self, db: Database):
        setting = Setting(name="theme", value="dark")
        db.insert(setting)
        assert db.find(Setting, "theme").value == "dark"  # cached

        db.batch(Setting).update(Setting(name="theme", value="light")).execute()
        assert db.find(Setting, "theme").value == "dark"

        db.cache.invalidate(Setting, "theme")
        assert db.find(Setting, "theme").value == "light"

    def test_to_dict(self, db: Database):
        d = db.batch(Setting).insert(Setting(name="a")).execute().to_dict()
        assert d["inserted_count"] == 1
        assert d["total_affected"] == 1
        assert d["chunks_executed"] == 1


class TestFailure:
    def test_failing_chunk_rolls_back_everything(self, db: Database):
        players = _players(5)
        players[3] = make_player(players[0].name)  # UNIQUE(name) clash in the second chunk

        batch = db.batch(Player, batch_size=2).insert_all(players)
        with pytest.raises(BatchError) as exc_info:
            batch.execute()

        err = exc_info.value
        assert err.failed_operation == "insert"
        assert err.chunk_index == 1
        assert err.partial_result.inserted_count == 2
        assert err.partial_result.chunks_executed == 1
        assert err.context.table == "players"
        assert err.context.metadata["chunk_index"] == 1
        assert type(err.__cause__).__name__ == "IntegrityError"

        assert db.count(Player) == 0
        assert batch.pending == 5
        assert_pool_idle(db.connection_manager)

    def test_failure_in_later_operation(self, db: Database):
        db.insert(make_player("taken"))
        other = make_player("other")
        db.insert(other)
        other.name = "taken"

        with pytest.raises(BatchError) as exc_info:
            db.batch(Player).insert(make_player("ok")).update(other).execute()

        err = exc_info.value
        assert err.failed_operation == "update"
        assert err.chunk_index == 0
        assert err.partial_result.inserted_count == 1
        assert db.count(Player) == 2
        assert db.select(Player).where("name", "ok").count() == 0

    def test_rolled_back_transaction_recorded(self, db: Database):
        players = [make_player("same"), make_player("same")]
        with pytest.raises(BatchError):
            db.batch(Player).insert_all(players).execute()
        assert db.stats().rolled_back_transactions == 1
