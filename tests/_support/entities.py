"""Sample entity declarations shared by the test suite."""

from __future__ import annotations

import datetime as dt
import uuid

from rowkeep import ValueKind, column, entity, primary_key, transient


@entity(table="players", cache_ttl=60, cache_max_size=100)
class Player:
    id: uuid.UUID = primary_key()
    name: str = column(length=32, nullable=False, unique=True, default="")
    level: int = column(nullable=False, default_value="1", default=1)
    balance: float = 0.0
    active: bool = True
    joined_at: dt.datetime | None = None
    session_token: str | None = transient(default=None)


@entity(table="audit_log")
class AuditEntry:
    entry_id: int | None = primary_key(generated=True)
    message: str = ""
    created_on: dt.date | None = None
    payload: bytes | None = None
    sequence: int = column(kind=ValueKind.LONG, default=0)


@entity(cache_ttl=30, refresh_on_write=False)
class Setting:
    name: str = primary_key(length=64)
    value: str = ""


@entity(table="tags")
class Tag:
    label: str = primary_key(length=32)


def make_player(name: str, *, level: int = 1, balance: float = 0.0, active: bool = True) -> Player:
    """A new player with a random key and a fixed join time."""
    return Player(
        id=uuid.uuid4(),
        name=name,
        level=level,
        balance=balance,
        active=active,
        joined_at=dt.datetime(2024, 3, 1, 12, 30, 15),
    )
