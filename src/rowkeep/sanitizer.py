"""Validation gate for caller-supplied SQL fragments.

Table names, column names, comparison operators and sort directions are
the only pieces of caller input that ever reach SQL text. Everything else
is bound as a query parameter. These checks run before any SQL string is
assembled, so a rejected fragment means no statement is sent.

Identifier grammar is ``^[A-Za-z_][A-Za-z0-9_]*$``. Identifiers are never
trimmed, unquoted or otherwise "cleaned": anything outside the grammar is
rejected as-is.

Examples:
    >>> validate_identifier("player_name")
    True
    >>> validate_identifier("name; DROP TABLE players")
    False
    >>> require_operator(" not like ")
    'NOT LIKE'
"""

from __future__ import annotations

import re
from typing import Any

from rowkeep.errors import InvalidIdentifierError, UnsupportedOperatorError

IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

ALLOWED_OPERATORS: frozenset[str] = frozenset(
    {"=", "!=", "<>", "<", ">", "<=", ">=", "LIKE", "NOT LIKE", "IN", "NOT IN", "IS", "IS NOT"}
)

ALLOWED_DIRECTIONS: frozenset[str] = frozenset({"ASC", "DESC"})


def _normalize_keyword(value: str) -> str:
    # Surrounding whitespace is tolerated, internal whitespace is not rewritten.
    return value.strip().upper()


def validate_identifier(name: Any) -> bool:
    """Return ``True`` if ``name`` is a safe SQL identifier."""
    return isinstance(name, str) and IDENTIFIER_PATTERN.fullmatch(name) is not None


def validate_operator(op: Any) -> bool:
    """Return ``True`` if ``op`` is an allowed comparison operator."""
    return isinstance(op, str) and _normalize_keyword(op) in ALLOWED_OPERATORS


def validate_direction(direction: Any) -> bool:
    """Return ``True`` if ``direction`` is ``ASC`` or ``DESC`` (any case)."""
    return isinstance(direction, str) and _normalize_keyword(direction) in ALLOWED_DIRECTIONS


def require_identifier(name: Any) -> str:
    """Return ``name`` unchanged or raise :class:`InvalidIdentifierError`."""
    if not validate_identifier(name):
        raise InvalidIdentifierError(
            f"Invalid SQL identifier: {name!r}. Only letters, digits and "
            f"underscores are allowed, starting with a letter or underscore.",
            value=name,
        )
    return name


def require_operator(op: Any) -> str:
    """Return the normalized operator or raise :class:`UnsupportedOperatorError`."""
    if not validate_operator(op):
        raise UnsupportedOperatorError(
            f"Unsupported SQL operator: {op!r}. Allowed: {sorted(ALLOWED_OPERATORS)}",
            value=op,
            kind="operator",
        )
    return _normalize_keyword(op)


def require_direction(direction: Any) -> str:
    """Return ``ASC``/``DESC`` or raise :class:`UnsupportedOperatorError`."""
    if not validate_direction(direction):
        raise UnsupportedOperatorError(
            f"Invalid ORDER BY direction: {direction!r}. Allowed: ASC, DESC",
            value=direction,
            kind="direction",
        )
    return _normalize_keyword(direction)


__all__ = [
    "ALLOWED_DIRECTIONS",
    "ALLOWED_OPERATORS",
    "IDENTIFIER_PATTERN",
    "require_direction",
    "require_identifier",
    "require_operator",
    "validate_direction",
    "validate_identifier",
    "validate_operator",
]
