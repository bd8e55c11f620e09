"""Location store backends for the pipeline."""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2 import extras, pool

from poi_discovery.core.config import Settings
from poi_discovery.core.errors import InvalidTransition, PersistenceFailure, PersistenceUnavailable
from poi_discovery.core.models import CanonicalRecord, ModerationState, StoredLocation, utcnow

logger = logging.getLogger(__name__)

_CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


def _check_transition(location: StoredLocation, state: ModerationState) -> None:
    if not location.status.can_transition(state):
        raise InvalidTransition(f"{location.id}: cannot move from {location.status.value} to {state.value}")


class InMemoryLocationStore:
    """Thread-safe dictionary store used in tests and when no database is configured."""

    def __init__(self) -> None:
        self._documents: Dict[str, StoredLocation] = {}
        self._lock = threading.Lock()

    def get_all(self) -> List[StoredLocation]:
        with self._lock:
            return list(self._documents.values())

    def get_by_id(self, location_id: str) -> Optional[StoredLocation]:
        with self._lock:
            return self._documents.get(location_id)

    def save(self, location: StoredLocation) -> str:
        if not location.id:
            location.id = str(uuid.uuid4())
        with self._lock:
            self._documents[location.id] = location
        logger.debug("Saved location %s (%s)", location.id, location.name)
        return location.id

    def update_status(self, location_id: str, state: ModerationState) -> StoredLocation:
        with self._lock:
            location = self._documents.get(location_id)
            if location is None:
                raise KeyError(location_id)
            _check_transition(location, state)
            location.status = state
            return location

    def update_record(
        self,
        location_id: str,
        record: CanonicalRecord,
        *,
        last_enriched: Optional[datetime] = None,
        enrichment_source: Optional[str] = None,
    ) -> StoredLocation:
        with self._lock:
            location = self._documents.get(location_id)
            if location is None:
                raise KeyError(location_id)
            location.record = record
            location.last_enriched = last_enriched or utcnow()
            location.enrichment_source = enrichment_source
            return location


_SCHEMA = """
CREATE TABLE IF NOT EXISTS locations (
    id UUID PRIMARY KEY,
    status TEXT NOT NULL,
    document JSONB NOT NULL,
    submitted_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_UPSERT_LOCATION = """
INSERT INTO locations (
    id,
    status,
    document,
    submitted_at,
    updated_at
) VALUES (
    %(id)s,
    %(status)s,
    %(document)s,
    %(submitted_at)s,
    NOW()
)
ON CONFLICT (id) DO UPDATE SET
    status = EXCLUDED.status,
    document = EXCLUDED.document,
    updated_at = NOW();
"""

_SELECT_ALL = "SELECT document FROM locations ORDER BY submitted_at"
_SELECT_ONE = "SELECT document FROM locations WHERE id = %(id)s"
_SELECT_ONE_FOR_UPDATE = "SELECT document FROM locations WHERE id = %(id)s FOR UPDATE"


class PostgresLocationStore:
    """JSONB document store on top of a pooled psycopg2 connection."""

    def __init__(self, database_url: str, minconn: int = 1, maxconn: int = 5) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        self.database_url = database_url
        self.minconn = minconn
        self.maxconn = maxconn
        self._connection_pool: Optional[pool.ThreadedConnectionPool] = None
        self._pool_lock = threading.Lock()

    def init_pool(self) -> pool.ThreadedConnectionPool:
        """Initialise and return the shared connection pool."""
        with self._pool_lock:
            if self._connection_pool is None:
                try:
                    self._connection_pool = pool.ThreadedConnectionPool(
                        self.minconn,
                        self.maxconn,
                        dsn=self.database_url,
                        connect_timeout=10,
                    )
                except psycopg2.Error as exc:
                    raise PersistenceUnavailable(f"cannot connect to location store: {exc}") from exc
                logger.info("Database connection pool initialised")
        return self._connection_pool

    @contextmanager
    def get_connection(self):
        """Context manager yielding a pooled connection."""
        pg_pool = self.init_pool()
        try:
            conn = pg_pool.getconn()
        except psycopg2.Error as exc:
            raise PersistenceUnavailable(f"no connection available: {exc}") from exc
        try:
            yield conn
        finally:
            pg_pool.putconn(conn)

    def ensure_schema(self) -> None:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_SCHEMA)
            conn.commit()

    def get_all(self) -> List[StoredLocation]:
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(_SELECT_ALL)
                    rows = cur.fetchall()
        except psycopg2.Error as exc:
            raise PersistenceUnavailable(f"cannot read locations: {exc}") from exc
        return [StoredLocation.from_document(row[0]) for row in rows]

    def get_by_id(self, location_id: str) -> Optional[StoredLocation]:
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(_SELECT_ONE, {"id": location_id})
                    row = cur.fetchone()
        except psycopg2.Error as exc:
            raise PersistenceUnavailable(f"cannot read location {location_id}: {exc}") from exc
        return StoredLocation.from_document(row[0]) if row else None

    def save(self, location: StoredLocation) -> str:
        """Persist a location document, performing an idempotent upsert."""
        if not location.id:
            location.id = str(uuid.uuid4())
        params = _prepare_params(location)
        try:
            with self.get_connection() as conn:
                try:
                    with conn.cursor() as cur:
                        cur.execute(_UPSERT_LOCATION, params)
                    conn.commit()
                except psycopg2.Error:
                    conn.rollback()
                    raise
        except _CONNECTION_ERRORS as exc:
            raise PersistenceUnavailable(f"lost connection saving location {location.id}: {exc}") from exc
        except psycopg2.Error as exc:
            raise PersistenceFailure(f"cannot save location {location.id}: {exc}") from exc
        logger.debug("Upserted location %s", location.name)
        return location.id

    def update_status(self, location_id: str, state: ModerationState) -> StoredLocation:
        def _apply(location: StoredLocation) -> None:
            _check_transition(location, state)
            location.status = state

        return self._update(location_id, _apply)

    def update_record(
        self,
        location_id: str,
        record: CanonicalRecord,
        *,
        last_enriched: Optional[datetime] = None,
        enrichment_source: Optional[str] = None,
    ) -> StoredLocation:
        def _apply(location: StoredLocation) -> None:
            location.record = record
            location.last_enriched = last_enriched or utcnow()
            location.enrichment_source = enrichment_source

        return self._update(location_id, _apply)

    def _update(self, location_id: str, apply) -> StoredLocation:
        try:
            with self.get_connection() as conn:
                try:
                    with conn.cursor() as cur:
                        cur.execute(_SELECT_ONE_FOR_UPDATE, {"id": location_id})
                        row = cur.fetchone()
                        if row is None:
                            raise KeyError(location_id)
                        location = StoredLocation.from_document(row[0])
                        apply(location)
                        cur.execute(_UPSERT_LOCATION, _prepare_params(location))
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except _CONNECTION_ERRORS as exc:
            raise PersistenceUnavailable(f"lost connection updating location {location_id}: {exc}") from exc
        except psycopg2.Error as exc:
            raise PersistenceFailure(f"cannot update location {location_id}: {exc}") from exc
        return location


def _prepare_params(location: StoredLocation) -> Dict[str, Any]:
    return {
        "id": location.id,
        "status": location.status.value,
        "document": extras.Json(location.to_document()),
        "submitted_at": location.submitted_at,
    }


def build_store(settings: Settings):
    """Pick the Postgres store when DATABASE_URL is set, otherwise keep locations in memory."""
    if settings.database_url:
        store = PostgresLocationStore(settings.database_url)
        store.ensure_schema()
        return store
    return InMemoryLocationStore()
