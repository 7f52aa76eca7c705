"""
Tests for the session stores.
The Snowflake store runs against a mocked Snowpark session.
"""

from unittest.mock import Mock

import pytest
from snowflake.snowpark.exceptions import SnowparkSQLException

from qualifier.circuit_breaker import CircuitBreaker
from qualifier.session_store import (
    COLUMNS,
    ConcurrentUpdateError,
    InMemorySessionStore,
    SessionExistsError,
    SessionNotFoundError,
    SnowflakeSessionStore,
    StoreUnavailableError,
)


class TestInMemorySessionStore:
    """Compare-and-set saves, expiry and eviction."""

    def test_create_and_get(self, memory_store):
        memory_store.create_session("s1", context_hint="Acme")

        session = memory_store.get_session("s1")

        assert session.session_id == "s1"
        assert session.current_step == 1
        assert session.context_hint == "Acme"
        assert session.version == 0

    def test_get_unknown_returns_none(self, memory_store):
        assert memory_store.get_session("missing") is None

    def test_duplicate_create_rejected(self, memory_store):
        memory_store.create_session("s1")
        with pytest.raises(SessionExistsError):
            memory_store.create_session("s1")

    def test_save_increments_version(self, memory_store):
        memory_store.create_session("s1")
        session = memory_store.get_session("s1")
        session.structured_data = {"problemType": "operations"}

        memory_store.save_session(session)

        stored = memory_store.get_session("s1")
        assert session.version == 1
        assert stored.version == 1
        assert stored.structured_data == {"problemType": "operations"}

    def test_stale_save_rejected(self, memory_store):
        memory_store.create_session("s1")
        first = memory_store.get_session("s1")
        second = memory_store.get_session("s1")

        first.current_step = 2
        memory_store.save_session(first)

        second.current_step = 3
        with pytest.raises(ConcurrentUpdateError):
            memory_store.save_session(second)

        assert memory_store.get_session("s1").current_step == 2

    def test_loaded_sessions_are_copies(self, memory_store):
        memory_store.create_session("s1")
        session = memory_store.get_session("s1")

        session.structured_data["problemType"] = "marketing"

        assert memory_store.get_session("s1").structured_data == {}

    def test_save_unknown_session(self, memory_store):
        memory_store.create_session("s1")
        session = memory_store.get_session("s1")
        memory_store.delete_session("s1")

        with pytest.raises(SessionNotFoundError):
            memory_store.save_session(session)

    def test_delete(self, memory_store):
        memory_store.create_session("s1")

        assert memory_store.delete_session("s1") is True
        assert memory_store.delete_session("s1") is False
        assert memory_store.count() == 0

    def test_idle_sessions_expire(self):
        store = InMemorySessionStore(max_sessions=10, ttl_seconds=60)
        store.create_session("old")
        store.create_session("new")
        store._sessions["old"]["ts"] -= 120

        assert store.get_session("old") is None
        assert store.get_session("new") is not None

    def test_capacity_evicts_least_recently_used(self):
        store = InMemorySessionStore(max_sessions=2, ttl_seconds=3600)
        store.create_session("a")
        store.create_session("b")
        store.get_session("a")

        store.create_session("c")

        assert store.get_session("b") is None
        assert store.get_session("a") is not None
        assert store.count() == 2

    def test_no_circuit_breaker(self, memory_store):
        assert memory_store.get_circuit_breaker_state() is None


@pytest.fixture
def mock_snowpark():
    """Mock Snowpark session; every statement reports one affected row."""
    session = Mock()
    session.sql.return_value.collect.return_value = [(1,)]
    return session


@pytest.fixture
def snowflake_store(mock_snowpark):
    return SnowflakeSessionStore(session=mock_snowpark, table="TEST_SESSIONS")


class TestSnowflakeSessionStore:
    """Statement shapes and error mapping."""

    def test_creates_table_on_init(self, snowflake_store, mock_snowpark):
        statement = mock_snowpark.sql.call_args_list[0].args[0]
        assert statement.startswith("CREATE TABLE IF NOT EXISTS TEST_SESSIONS")

    def test_create_session_binds_parameters(self, snowflake_store, mock_snowpark):
        session = snowflake_store.create_session("s1", context_hint="Acme")

        call = mock_snowpark.sql.call_args
        assert call.args[0].startswith("MERGE INTO TEST_SESSIONS")
        assert "WHEN NOT MATCHED THEN INSERT" in call.args[0]
        assert "s1" not in call.args[0]
        assert call.kwargs["params"][0] == "s1"
        assert len(call.kwargs["params"]) == len(COLUMNS)
        assert session.context_hint == "Acme"

    def test_create_existing_session(self, snowflake_store, mock_snowpark):
        mock_snowpark.sql.return_value.collect.return_value = [(0,)]

        with pytest.raises(SessionExistsError):
            snowflake_store.create_session("s1")

    def test_get_session_reads_row(self, snowflake_store, mock_snowpark):
        row = Mock()
        row.as_dict.return_value = {
            "SESSION_ID": "s1",
            "CURRENT_STEP": 2,
            "STRUCTURED_DATA": '{"problemType": "operations", "jobFunction": "cto"}',
            "OPTIONAL_ASKED": False,
            "STATUS": "active",
            "COMPLETED_AT": None,
            "CONTEXT_HINT": None,
            "LAST_UTTERANCE": "I'm the CTO",
            "STARTED_AT": "2026-10-01T12:00:00+00:00",
            "VERSION": 3,
        }
        mock_snowpark.table.return_value.filter.return_value.collect.return_value = [row]

        session = snowflake_store.get_session("s1")

        assert session.current_step == 2
        assert session.structured_data == {"problemType": "operations", "jobFunction": "cto"}
        assert session.version == 3

    def test_get_unknown_session(self, snowflake_store, mock_snowpark):
        mock_snowpark.table.return_value.filter.return_value.collect.return_value = []
        assert snowflake_store.get_session("missing") is None

    def test_save_uses_version_guard(self, snowflake_store, mock_snowpark):
        session = snowflake_store.create_session("s1")

        snowflake_store.save_session(session)

        call = mock_snowpark.sql.call_args
        assert call.args[0].endswith("WHERE SESSION_ID = ? AND VERSION = ?")
        assert call.kwargs["params"][-2:] == ["s1", 0]
        assert session.version == 1

    def test_stale_save_rejected(self, snowflake_store, mock_snowpark):
        session = snowflake_store.create_session("s1")
        mock_snowpark.sql.return_value.collect.return_value = [(0,)]
        row = Mock()
        row.as_dict.return_value = {"SESSION_ID": "s1", "VERSION": 5}
        mock_snowpark.table.return_value.filter.return_value.collect.return_value = [row]

        with pytest.raises(ConcurrentUpdateError):
            snowflake_store.save_session(session)
        assert session.version == 0

    def test_save_deleted_session(self, snowflake_store, mock_snowpark):
        session = snowflake_store.create_session("s1")
        mock_snowpark.sql.return_value.collect.return_value = [(0,)]
        mock_snowpark.table.return_value.filter.return_value.collect.return_value = []

        with pytest.raises(SessionNotFoundError):
            snowflake_store.save_session(session)

    def test_sql_error_maps_to_unavailable(self, snowflake_store, mock_snowpark):
        mock_snowpark.sql.return_value.collect.side_effect = SnowparkSQLException("warehouse suspended")

        with pytest.raises(StoreUnavailableError):
            snowflake_store.create_session("s1")

    def test_connection_error_maps_to_unavailable(self, snowflake_store, mock_snowpark):
        mock_snowpark.table.return_value.filter.return_value.collect.side_effect = ConnectionError(
            "connection reset"
        )

        with pytest.raises(StoreUnavailableError):
            snowflake_store.get_session("s1")
        assert snowflake_store.circuit_breaker.failure_count == 1

    def test_open_circuit_skips_snowflake(self, snowflake_store, mock_snowpark):
        snowflake_store.circuit_breaker = CircuitBreaker(failure_threshold=1, timeout=60, name="Test")
        mock_snowpark.sql.return_value.collect.side_effect = SnowparkSQLException("down")

        with pytest.raises(StoreUnavailableError):
            snowflake_store.delete_session("s1")
        calls_before = mock_snowpark.sql.call_count

        with pytest.raises(StoreUnavailableError):
            snowflake_store.delete_session("s1")

        assert mock_snowpark.sql.call_count == calls_before
        assert snowflake_store.get_circuit_breaker_state()["state"] == "open"

    def test_delete(self, snowflake_store, mock_snowpark):
        assert snowflake_store.delete_session("s1") is True
        mock_snowpark.sql.return_value.collect.return_value = [(0,)]
        assert snowflake_store.delete_session("s1") is False

    def test_close(self, snowflake_store, mock_snowpark):
        snowflake_store.close()
        mock_snowpark.close.assert_called_once()
