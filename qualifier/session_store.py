"""
Session stores for qualification interviews.

Two implementations share one contract:
- InMemorySessionStore: bounded OrderedDict, used for development and tests
- SnowflakeSessionStore: Snowpark-backed table, protected by a circuit breaker

Both save with compare-and-set on ``version`` (optimistic concurrency), so
two writers racing on the same session cannot silently overwrite each other.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any

from snowflake.snowpark import Session
from snowflake.snowpark.exceptions import SnowparkSQLException
from snowflake.snowpark.functions import col

from qualifier.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from qualifier.config import settings
from qualifier.conversation_state import QualificationSession
from qualifier.observability import trace_span

logger = logging.getLogger(__name__)


class SessionNotFoundError(LookupError):
    """Raised when a session identifier is unknown."""


class SessionExistsError(ValueError):
    """Raised when creating a session whose identifier is already taken."""


class ConcurrentUpdateError(RuntimeError):
    """Raised when a save loses an optimistic-concurrency race."""


class StoreUnavailableError(RuntimeError):
    """Raised when the backing store cannot be reached."""


class SessionStore(ABC):
    """Persistence contract for qualification sessions."""

    @abstractmethod
    def create_session(self, session_id: str, context_hint: str | None = None) -> QualificationSession:
        """Create and persist a fresh session at step 1. Raises SessionExistsError."""

    @abstractmethod
    def get_session(self, session_id: str) -> QualificationSession | None:
        """Load a session, or None if the identifier is unknown."""

    @abstractmethod
    def save_session(self, session: QualificationSession) -> None:
        """
        Persist ``session`` if the stored version still equals ``session.version``.

        On success ``session.version`` is incremented.

        Raises:
            SessionNotFoundError: If the session no longer exists
            ConcurrentUpdateError: If another writer saved first
        """

    @abstractmethod
    def delete_session(self, session_id: str) -> bool:
        """Remove a session. Returns False when it did not exist."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored sessions (for monitoring)."""

    def get_circuit_breaker_state(self) -> dict | None:
        """Circuit breaker state for monitoring; None for stores without one."""
        return None


class InMemorySessionStore(SessionStore):
    """
    Process-local session store.

    Records are kept as flattened rows, never as live objects, so callers
    cannot mutate stored state without going through ``save_session``.

    Memory safety:
    - sessions idle longer than ``ttl_seconds`` are expired
    - beyond ``max_sessions`` the least recently used sessions are evicted
    Pruning runs on every create/get, so memory usage is self-healing.
    """

    def __init__(self, max_sessions: int | None = None, ttl_seconds: int | None = None):
        self.max_sessions = settings.max_sessions if max_sessions is None else max_sessions
        self.ttl_seconds = settings.session_ttl_seconds if ttl_seconds is None else ttl_seconds

        # session_id -> {"ts": last access, "record": flattened session}
        self._sessions: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def _prune_sessions(self) -> None:
        now = time.time()

        expired = [
            sid for sid, meta in self._sessions.items() if now - meta["ts"] > self.ttl_seconds
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info(f"Expired {len(expired)} idle sessions")

        while len(self._sessions) > self.max_sessions:
            oldest_sid, _ = self._sessions.popitem(last=False)
            logger.info(f"Evicted session {oldest_sid} (capacity {self.max_sessions})")

    def _touch(self, session_id: str) -> None:
        self._sessions[session_id]["ts"] = time.time()
        self._sessions.move_to_end(session_id)

    def create_session(self, session_id: str, context_hint: str | None = None) -> QualificationSession:
        with self._lock:
            self._prune_sessions()
            if session_id in self._sessions:
                raise SessionExistsError(f"Session {session_id} already exists")

            session = QualificationSession(session_id=session_id, context_hint=context_hint)
            self._sessions[session_id] = {"ts": time.time(), "record": session.to_record()}
            self._prune_sessions()

        logger.info(f"Created session: {session_id}")
        return session

    def get_session(self, session_id: str) -> QualificationSession | None:
        with self._lock:
            self._prune_sessions()
            meta = self._sessions.get(session_id)
            if meta is None:
                return None
            self._touch(session_id)
            return QualificationSession.from_record(meta["record"])

    def save_session(self, session: QualificationSession) -> None:
        with self._lock:
            meta = self._sessions.get(session.session_id)
            if meta is None:
                raise SessionNotFoundError(f"Session {session.session_id} not found")

            stored_version = meta["record"]["version"]
            if stored_version != session.version:
                raise ConcurrentUpdateError(
                    f"Session {session.session_id} was updated concurrently "
                    f"(expected version {session.version}, found {stored_version})"
                )

            session.version += 1
            meta["record"] = session.to_record()
            self._touch(session.session_id)

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)


COLUMNS = [
    "SESSION_ID",
    "CURRENT_STEP",
    "STRUCTURED_DATA",
    "OPTIONAL_ASKED",
    "STATUS",
    "COMPLETED_AT",
    "CONTEXT_HINT",
    "LAST_UTTERANCE",
    "STARTED_AT",
    "VERSION",
]


class SnowflakeSessionStore(SessionStore):
    """
    Snowflake-backed session store.

    All statements use bound parameters; the table name comes from settings,
    never from request data. Every round trip goes through the circuit
    breaker, and an unreachable Snowflake surfaces as StoreUnavailableError.
    """

    def __init__(self, session: Session | None = None, table: str | None = None):
        """
        Args:
            session: Existing Snowpark session (tests inject a mock); when
                omitted a session is built from settings.
            table: Sessions table name
        """
        self.table = table or settings.snowflake_sessions_table
        self.session = session or self._initialize_session()

        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout,
            name="SnowflakeCircuitBreaker",
        )

        self._run(self._ensure_table)

    def _initialize_session(self) -> Session:
        connection_params = {
            "account": settings.snowflake_account,
            "user": settings.snowflake_user,
            "password": settings.snowflake_password,
            "warehouse": settings.snowflake_warehouse,
            "database": settings.snowflake_database,
            "schema": settings.snowflake_schema,
        }

        session = Session.builder.configs(connection_params).create()
        logger.info("Snowflake session initialized successfully")
        return session

    def _run(self, func, *args):
        """Execute one Snowflake round trip under the circuit breaker."""
        try:
            return self.circuit_breaker.call(func, *args)
        except CircuitBreakerOpenError as e:
            raise StoreUnavailableError(str(e)) from e
        except SnowparkSQLException as e:
            logger.error(f"Snowflake error: {e}")
            raise StoreUnavailableError("Session store query failed") from e
        except Exception as e:
            # connection drops and driver errors; already counted by the breaker
            logger.error(f"Snowflake call failed: {e!r}")
            raise StoreUnavailableError("Session store unreachable") from e

    def _ensure_table(self) -> None:
        self.session.sql(
            f"CREATE TABLE IF NOT EXISTS {self.table} ("
            "SESSION_ID STRING PRIMARY KEY, CURRENT_STEP INTEGER, STRUCTURED_DATA STRING, "
            "OPTIONAL_ASKED BOOLEAN, STATUS STRING, COMPLETED_AT STRING, CONTEXT_HINT STRING, "
            "LAST_UTTERANCE STRING, STARTED_AT STRING, VERSION INTEGER)"
        ).collect()

    def _insert_if_absent(self, record: dict[str, Any]) -> int:
        # Snowflake does not enforce PRIMARY KEY; MERGE makes the existence check and insert one statement
        source = ", ".join(f"? AS {c}" for c in COLUMNS)
        rows = self.session.sql(
            f"MERGE INTO {self.table} AS t USING (SELECT {source}) AS s "
            "ON t.SESSION_ID = s.SESSION_ID "
            f"WHEN NOT MATCHED THEN INSERT ({', '.join(COLUMNS)}) "
            f"VALUES ({', '.join(f's.{c}' for c in COLUMNS)})",
            params=[record[c.lower()] for c in COLUMNS],
        ).collect()
        return int(rows[0][0]) if rows else 0

    def _select(self, session_id: str) -> dict[str, Any] | None:
        rows = self.session.table(self.table).filter(col("SESSION_ID") == session_id).collect()
        return rows[0].as_dict() if rows else None

    def _update_if_version(self, record: dict[str, Any], expected_version: int) -> int:
        assignments = ", ".join(f"{c} = ?" for c in COLUMNS if c != "SESSION_ID")
        rows = self.session.sql(
            f"UPDATE {self.table} SET {assignments} WHERE SESSION_ID = ? AND VERSION = ?",
            params=[record[c.lower()] for c in COLUMNS if c != "SESSION_ID"]
            + [record["session_id"], expected_version],
        ).collect()
        return int(rows[0][0]) if rows else 0

    def _delete(self, session_id: str) -> int:
        rows = self.session.sql(
            f"DELETE FROM {self.table} WHERE SESSION_ID = ?", params=[session_id]
        ).collect()
        return int(rows[0][0]) if rows else 0

    def _count(self) -> int:
        return self.session.table(self.table).count()

    def create_session(self, session_id: str, context_hint: str | None = None) -> QualificationSession:
        session = QualificationSession(session_id=session_id, context_hint=context_hint)
        with trace_span("snowflake_create", session=session_id):
            inserted = self._run(self._insert_if_absent, session.to_record())
        if not inserted:
            raise SessionExistsError(f"Session {session_id} already exists")
        logger.info(f"Created session in Snowflake: {session_id}")
        return session

    def get_session(self, session_id: str) -> QualificationSession | None:
        with trace_span("snowflake_get", session=session_id):
            record = self._run(self._select, session_id)
        return QualificationSession.from_record(record) if record else None

    def save_session(self, session: QualificationSession) -> None:
        record = session.to_record()
        record["version"] = session.version + 1

        with trace_span("snowflake_save", session=session.session_id):
            updated = self._run(self._update_if_version, record, session.version)

        if not updated:
            if self.get_session(session.session_id) is None:
                raise SessionNotFoundError(f"Session {session.session_id} not found")
            raise ConcurrentUpdateError(
                f"Session {session.session_id} was updated concurrently (expected version {session.version})"
            )
        session.version += 1

    def delete_session(self, session_id: str) -> bool:
        with trace_span("snowflake_delete", session=session_id):
            return bool(self._run(self._delete, session_id))

    def count(self) -> int:
        return self._run(self._count)

    def get_circuit_breaker_state(self) -> dict:
        return self.circuit_breaker.get_state()

    def close(self):
        """Close Snowflake session."""
        if self.session:
            self.session.close()
            logger.info("Snowflake session closed")


def build_session_store() -> SessionStore:
    """
    Pick the store from configuration.

    Snowflake is used when an account is configured; if the connection
    cannot be established the process falls back to the in-memory store.
    """
    if not settings.snowflake_account:
        logger.info("No Snowflake account configured; using in-memory session store")
        return InMemorySessionStore()

    try:
        return SnowflakeSessionStore()
    except Exception as e:
        logger.error(f"Failed to initialize Snowflake session store: {e}")
        logger.warning("Falling back to in-memory session store")
        return InMemorySessionStore()
