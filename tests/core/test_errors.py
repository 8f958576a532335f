"""Tests for rowkeep.errors module."""

import pytest

from rowkeep.batch import BatchResult
from rowkeep.errors import (
    BatchError,
    ConfigurationError,
    DatabaseConnectionError,
    DatabaseError,
    ErrorCategory,
    ErrorContext,
    IntegrityError,
    InvalidIdentifierError,
    MappingError,
    QueryError,
    RowkeepError,
    TransactionError,
    UnsupportedOperatorError,
    ValidationError,
    attach_secondary_error,
    categorize_error,
    is_retryable,
)


class TestErrorContext:
    """Test ErrorContext dataclass."""

    def test_create_empty_context(self):
        ctx = ErrorContext()
        assert ctx.table is None
        assert ctx.sql is None
        assert ctx.metadata == {}

    def test_to_dict_excludes_none(self):
        ctx = ErrorContext(table="players", operation="find")
        assert ctx.to_dict() == {"table": "players", "operation": "find"}

    def test_to_dict_merges_metadata(self):
        ctx = ErrorContext(table="players", metadata={"chunk_index": 3})
        assert ctx.to_dict() == {"table": "players", "chunk_index": 3}


class TestRowkeepError:
    """Test the base error."""

    def test_defaults(self):
        err = RowkeepError("boom")
        assert err.message == "boom"
        assert err.category == ErrorCategory.INTERNAL
        assert err.retryable is False
        assert err.cause is None

    def test_cause_is_chained(self):
        original = ValueError("driver said no")
        err = QueryError("Statement failed", cause=original)
        assert err.cause is original
        assert err.__cause__ is original

    def test_with_context_sets_fields_and_metadata(self):
        err = QueryError("failed").with_context(table="players", sql="SELECT 1", attempt=2)
        assert err.context.table == "players"
        assert err.context.sql == "SELECT 1"
        assert err.context.metadata == {"attempt": 2}

    def test_with_context_returns_self(self):
        err = QueryError("failed")
        assert err.with_context(table="t") is err

    def test_to_dict(self):
        err = IntegrityError("dup", cause=ValueError("UNIQUE")).with_context(table="players")
        d = err.to_dict()
        assert d["error_type"] == "IntegrityError"
        assert d["category"] == "DATABASE"
        assert d["retryable"] is False
        assert d["context"] == {"table": "players"}
        assert d["cause"] == "UNIQUE"

    def test_repr(self):
        assert repr(MappingError("bad row")) == "MappingError('bad row', category=MAPPING)"


class TestHierarchy:
    """Categories and retry flags per subclass."""

    @pytest.mark.parametrize(
        "cls,category,retryable",
        [
            (ConfigurationError, ErrorCategory.CONFIG, False),
            (ValidationError, ErrorCategory.VALIDATION, False),
            (InvalidIdentifierError, ErrorCategory.VALIDATION, False),
            (UnsupportedOperatorError, ErrorCategory.VALIDATION, False),
            (MappingError, ErrorCategory.MAPPING, False),
            (DatabaseError, ErrorCategory.DATABASE, False),
            (DatabaseConnectionError, ErrorCategory.DATABASE, True),
            (QueryError, ErrorCategory.DATABASE, False),
            (IntegrityError, ErrorCategory.DATABASE, False),
            (TransactionError, ErrorCategory.DATABASE, False),
        ],
    )
    def test_defaults(self, cls, category, retryable):
        err = cls("x")
        assert err.category == category
        assert err.retryable is retryable
        assert isinstance(err, RowkeepError)

    def test_validation_errors_carry_value(self):
        err = InvalidIdentifierError("bad", value="a;b")
        assert err.value == "a;b"

    def test_unsupported_operator_kind(self):
        assert UnsupportedOperatorError("x").kind == "operator"
        assert UnsupportedOperatorError("x", kind="direction").kind == "direction"

    def test_retryable_override(self):
        assert DatabaseConnectionError("closed", retryable=False).retryable is False


class TestBatchError:
    def test_carries_partial_result(self):
        partial = BatchResult(inserted_count=500, chunks_executed=1)
        err = BatchError("chunk failed", partial_result=partial, operation="insert", chunk_index=1)

        assert err.partial_result is partial
        assert err.failed_operation == "insert"
        assert err.chunk_index == 1
        assert err.context.operation == "insert"
        assert err.context.metadata["inserted_count"] == 500
        assert isinstance(err, DatabaseError)


class TestHelpers:
    def test_is_retryable(self):
        assert is_retryable(DatabaseConnectionError("pool exhausted")) is True
        assert is_retryable(QueryError("syntax")) is False
        assert is_retryable(RuntimeError("foreign")) is False

    def test_categorize_error(self):
        assert categorize_error(MappingError("x")) == ErrorCategory.MAPPING
        assert categorize_error(KeyError("x")) == ErrorCategory.UNKNOWN

    def test_attach_secondary_error_to_rowkeep_error(self):
        primary = QueryError("insert failed")
        attach_secondary_error(primary, RuntimeError("rollback broke"), "rollback_error")

        assert "rollback broke" in primary.context.metadata["rollback_error"]
        assert any("rollback_error" in note for note in primary.__notes__)

    def test_attach_secondary_error_to_foreign_error(self):
        primary = ValueError("user code failed")
        attach_secondary_error(primary, RuntimeError("rollback broke"), "rollback_error")
        assert primary.__notes__ == ["rollback_error: RuntimeError('rollback broke')"]
