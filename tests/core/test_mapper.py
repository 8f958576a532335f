"""Tests for row <-> entity conversion."""

from __future__ import annotations

import datetime as dt
import enum
import uuid
from decimal import Decimal

import pytest

from rowkeep import EntityMapper, MappingError, MetadataCache, ValueKind, column, entity, primary_key
from rowkeep.dialect import get_dialect
from tests._support.entities import AuditEntry, Player, make_player


class Tier(enum.Enum):
    GOLD = "gold"
    SILVER = "silver"


@pytest.fixture
def metadata() -> MetadataCache:
    return MetadataCache()


@pytest.fixture
def sqlite_mapper() -> EntityMapper:
    return EntityMapper(get_dialect("sqlite"))


@pytest.fixture
def pg_mapper() -> EntityMapper:
    return EntityMapper(get_dialect("postgresql"))


class TestToDatabase:
    def test_sqlite_parameters(self, sqlite_mapper: EntityMapper, metadata: MetadataCache):
        player = make_player("Alex", level=7, balance=12.5, active=True)
        params = sqlite_mapper.to_parameters(metadata.describe(Player), player)
        assert params == [str(player.id), "Alex", 7, 12.5, 1, "2024-03-01T12:30:15"]

    def test_native_backend_keeps_types(self, pg_mapper: EntityMapper, metadata: MetadataCache):
        player = make_player("Alex", active=False)
        params = pg_mapper.to_parameters(metadata.describe(Player), player)
        assert params[4] is False
        assert params[5] == dt.datetime(2024, 3, 1, 12, 30, 15)
        assert params[0] == str(player.id)

    def test_selected_columns(self, sqlite_mapper: EntityMapper, metadata: MetadataCache):
        d = metadata.describe(AuditEntry)
        entry = AuditEntry(message="hi", created_on=dt.date(2024, 1, 2), payload=bytearray(b"\x00\x01"))
        assert sqlite_mapper.to_parameters(d, entry, d.insert_columns) == [
            "hi",
            "2024-01-02",
            b"\x00\x01",
            0,
        ]

    def test_none_passes_through(self, sqlite_mapper: EntityMapper, metadata: MetadataCache):
        col = metadata.describe(Player).column("joined_at")
        assert sqlite_mapper.to_db_value(col, None) is None

    def test_enum_values(self, sqlite_mapper: EntityMapper):
        @entity
        class Member:
            key: int = primary_key()
            tier: str = column(default="")

        col = MetadataCache().describe(Member).column("tier")
        assert sqlite_mapper.to_db_value(col, Tier.GOLD) == "gold"


class TestFromDatabase:
    def test_round_trip(self, sqlite_mapper: EntityMapper, metadata: MetadataCache):
        d = metadata.describe(Player)
        player = make_player("Alex", level=3, balance=9.75, active=False)
        row = dict(zip(d.column_names, sqlite_mapper.to_parameters(d, player), strict=True))

        assert sqlite_mapper.to_entity(d, row) == player

    def test_transient_field_gets_default(self, sqlite_mapper: EntityMapper, metadata: MetadataCache):
        d = metadata.describe(Player)
        player = make_player("Alex")
        player.session_token = "secret"
        row = dict(zip(d.column_names, sqlite_mapper.to_parameters(d, player), strict=True))

        assert sqlite_mapper.to_entity(d, row).session_token is None

    def test_extra_columns_ignored(self, sqlite_mapper: EntityMapper, metadata: MetadataCache):
        d = metadata.describe(AuditEntry)
        row = {"entry_id": 1, "message": "m", "created_on": None, "payload": None, "sequence": 4, "other": "x"}
        entry = sqlite_mapper.to_entity(d, row)
        assert entry.entry_id == 1
        assert entry.sequence == 4

    def test_case_insensitive_lookup(self, sqlite_mapper: EntityMapper, metadata: MetadataCache):
        d = metadata.describe(AuditEntry)
        row = {"ENTRY_ID": 5, "MESSAGE": "m", "CREATED_ON": "2024-05-06", "PAYLOAD": None, "SEQUENCE": 0}
        entry = sqlite_mapper.to_entity(d, row)
        assert entry.entry_id == 5
        assert entry.created_on == dt.date(2024, 5, 6)

    @pytest.mark.parametrize(
        "kind,raw,expected",
        [
            (ValueKind.BOOLEAN, 0, False),
            (ValueKind.BOOLEAN, 1, True),
            (ValueKind.BOOLEAN, "true", True),
            (ValueKind.BOOLEAN, "0", False),
            (ValueKind.INTEGER, Decimal("42"), 42),
            (ValueKind.LONG, "9007199254740993", 9007199254740993),
            (ValueKind.DOUBLE, Decimal("1.5"), 1.5),
            (ValueKind.DOUBLE, 3, 3.0),
            (ValueKind.BINARY, memoryview(b"ab"), b"ab"),
            (ValueKind.DATE, dt.datetime(2024, 1, 2, 3, 4), dt.date(2024, 1, 2)),
            (ValueKind.TIMESTAMP, dt.date(2024, 1, 2), dt.datetime(2024, 1, 2)),
            (ValueKind.TIMESTAMP, "2024-01-02 03:04:05.123456", dt.datetime(2024, 1, 2, 3, 4, 5, 123456)),
        ],
    )
    def test_value_conversion(self, sqlite_mapper: EntityMapper, kind, raw, expected):
        col = _column(kind)
        value = sqlite_mapper.from_db_value(col, raw)
        assert value == expected
        assert type(value) is type(expected)

    def test_uuid_from_text(self, sqlite_mapper: EntityMapper):
        key = uuid.uuid4()
        assert sqlite_mapper.from_db_value(_column(ValueKind.UUID), str(key)) == key


class TestMappingErrors:
    def test_missing_column(self, sqlite_mapper: EntityMapper, metadata: MetadataCache):
        d = metadata.describe(AuditEntry)
        with pytest.raises(MappingError) as exc_info:
            sqlite_mapper.to_entity(d, {"entry_id": 1, "message": "m"})

        ctx = exc_info.value.context
        assert ctx.column == "created_on"
        assert ctx.table == "audit_log"
        assert ctx.entity == "AuditEntry"

    def test_unconvertible_value(self, sqlite_mapper: EntityMapper, metadata: MetadataCache):
        d = metadata.describe(Player)
        row = {
            "id": "not-a-uuid",
            "name": "Alex",
            "level": 1,
            "balance": 0.0,
            "active": 1,
            "joined_at": None,
        }
        with pytest.raises(MappingError) as exc_info:
            sqlite_mapper.to_entity(d, row)

        assert exc_info.value.context.column == "id"
        assert isinstance(exc_info.value.__cause__, ValueError)


def _column(kind: ValueKind):
    from rowkeep.metadata import ColumnDescriptor

    return ColumnDescriptor(name="c", source_field="c", kind=kind)


class TestKeyNormalization:
    def test_text_and_uuid_keys_agree(self, sqlite_mapper: EntityMapper, metadata: MetadataCache):
        d = metadata.describe(Player)
        key = uuid.uuid4()
        assert sqlite_mapper.normalize_key(d, str(key)) == key
        assert sqlite_mapper.normalize_key(d, key) == key

    def test_malformed_key(self, sqlite_mapper: EntityMapper, metadata: MetadataCache):
        assert sqlite_mapper.normalize_key(metadata.describe(Player), "not-a-uuid") is None

    def test_integer_key_from_text(self, sqlite_mapper: EntityMapper, metadata: MetadataCache):
        assert sqlite_mapper.normalize_key(metadata.describe(AuditEntry), "7") == 7
