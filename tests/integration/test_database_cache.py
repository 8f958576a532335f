"""Read-through entity caching in the Database facade."""

from __future__ import annotations

from rowkeep import Database
from tests._support.clock import ManualClock
from tests._support.entities import AuditEntry, Player, Setting, make_player


def _queries(db: Database) -> int:
    return db.stats().total_queries


class TestReadThrough:
    def test_insert_populates_cache(self, db: Database):
        player = make_player("Alex")
        db.insert(player)

        before = _queries(db)
        found = db.find(Player, player.id)
        assert found == player
        assert _queries(db) == before

    def test_miss_loads_and_caches(self, db: Database):
        player = make_player("Alex")
        db.insert(player)
        db.cache.clear_all()

        before = _queries(db)
        db.find(Player, player.id)
        db.find(Player, player.id)
        assert _queries(db) == before + 1

        stats = db.cache_stats(Player)
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.size == 1

    def test_missing_rows_are_not_cached(self, db: Database):
        player = make_player("Ghost")
        before = _queries(db)
        assert db.find(Player, player.id) is None
        assert db.find(Player, player.id) is None
        assert _queries(db) == before + 2

    def test_expiry(self, db: Database, clock: ManualClock):
        player = make_player("Alex")
        db.insert(player)

        clock.advance(59)
        before = _queries(db)
        db.find(Player, player.id)
        assert _queries(db) == before

        clock.advance(2)
        db.find(Player, player.id)
        assert _queries(db) == before + 1
        assert db.cache_stats(Player).expirations == 1

    def test_uncached_type(self, db: Database):
        key = db.insert(AuditEntry(message="x"))
        before = _queries(db)
        db.find(AuditEntry, key)
        db.find(AuditEntry, key)
        assert _queries(db) == before + 2
        assert db.cache_stats(AuditEntry) is None


class TestIsolation:
    def test_returned_copy_is_independent(self, db: Database):
        player = make_player("Alex", level=3)
        db.insert(player)

        first = db.find(Player, player.id)
        first.level = 99
        assert db.find(Player, player.id).level == 3

    def test_caller_mutation_after_insert(self, db: Database):
        player = make_player("Alex", level=3)
        db.insert(player)
        player.level = 50
        assert db.find(Player, player.id).level == 3


class TestWrites:
    def test_update_refreshes(self, db: Database):
        player = make_player("Alex", level=1)
        db.insert(player)
        player.level = 7
        db.update(player)

        before = _queries(db)
        assert db.find(Player, player.id).level == 7
        assert _queries(db) == before

    def test_refresh_on_write_disabled_invalidates(self, db: Database):
        db.insert(Setting(name="theme", value="dark"))
        assert db.cache_stats(Setting) is None or db.cache_stats(Setting).size == 0

        assert db.find(Setting, "theme").value == "dark"
        db.save(Setting(name="theme", value="light"))
        assert db.cache_stats(Setting).size == 0
        assert db.find(Setting, "theme").value == "light"

    def test_delete_invalidates(self, db: Database):
        player = make_player("Alex")
        db.insert(player)
        db.delete(player)
        assert db.find(Player, player.id) is None

    def test_delete_by_id_invalidates(self, db: Database):
        db.insert(Setting(name="volume", value="3"))
        db.find(Setting, "volume")
        db.delete_by_id(Setting, "volume")
        assert db.find(Setting, "volume") is None

    def test_update_of_missing_row_drops_stale_copy(self, db: Database):
        player = make_player("Alex")
        db.insert(player)
        db.execute("DELETE FROM players")

        assert db.update(player) is False
        assert db.find(Player, player.id) is None

    def test_drop_table_clears(self, db: Database):
        player = make_player("Alex")
        db.insert(player)
        db.drop_table(Player)
        assert db.cache_stats(Player).size == 0

    def test_transactional_writes_bypass_cache(self, db: Database):
        player = make_player("Alex", level=1)
        db.insert(player)

        with db.transaction() as tx:
            changed = make_player("Alex", level=2)
            changed.id = player.id
            db.using(tx).update(changed)

        assert db.find(Player, player.id).level == 1
        db.cache.invalidate(Player, player.id)
        assert db.find(Player, player.id).level == 2


class TestSweeper:
    def test_sweep_removes_expired(self, db: Database, clock: ManualClock):
        for i in range(3):
            db.insert(make_player(f"P{i}"))
        clock.advance(61)
        assert db.cache.sweep() == 3
        assert db.cache_stats(Player).size == 0

    def test_start_and_stop(self, db: Database):
        db.cache.start_sweeper(interval_seconds=0.01)
        assert db.cache.sweeper_running
        db.cache.stop()
        assert not db.cache.sweeper_running

    def test_close_stops_sweeper(self, sqlite_config):
        database = Database(sqlite_config)
        database.cache.start_sweeper(interval_seconds=60)
        database.close()
        assert not database.cache.sweeper_running


class TestKeyForms:
    def test_text_key_sees_updates(self, db: Database):
        player = make_player("Alex", level=1)
        db.insert(player)
        assert db.find(Player, str(player.id)).level == 1

        player.level = 2
        db.update(player)
        assert db.find(Player, str(player.id)).level == 2

    def test_text_and_typed_keys_share_one_entry(self, db: Database):
        player = make_player("Alex")
        db.insert(player)
        db.cache.clear_all()

        db.find(Player, str(player.id))
        before = _queries(db)
        db.find(Player, player.id)
        assert _queries(db) == before
        assert db.cache_stats(Player).size == 1

    def test_delete_by_text_key_invalidates(self, db: Database):
        player = make_player("Alex")
        db.insert(player)
        db.find(Player, player.id)

        assert db.delete_by_id(Player, str(player.id)) is True
        assert db.find(Player, player.id) is None

    def test_malformed_key_skips_cache(self, db: Database):
        assert db.find(Player, "not-a-uuid") is None
        assert db.cache_stats(Player) is None or db.cache_stats(Player).size == 0
