"""
PostgreSQL storage for the provisioning back office
Direct database connections with raw SQL queries for transparency and performance

Blocking psycopg2 calls run in worker threads (asyncio.to_thread) so a provisioning run
waiting on the database never blocks the event loop. Every failure surfaces as
StorageError: the orchestrator must know when a fact could not be recorded.
"""

import json
import time
import asyncio
import logging
import threading
import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor
from typing import Optional, Dict, List, Any, Iterable

from provisioning_config import DatabaseConfig
from services.provisioning_models import StorageError, EVENT_PROVISIONING_STARTED

logger = logging.getLogger(__name__)

_connection_pool = None
_pool_lock = threading.Lock()
_pool_recreation_count = 0
_last_pool_recreation = 0.0
_database_config: Optional[DatabaseConfig] = None

# Connection-level error fragments that mean the pool holds dead connections
_DEAD_CONNECTION_INDICATORS = ('connection closed', 'server closed', 'ssl connection', 'timeout', 'broken pipe')


def configure_database(config: DatabaseConfig) -> None:
    """Set the connection settings used the next time the pool is created"""
    global _database_config
    _database_config = config


def _get_database_config() -> DatabaseConfig:
    global _database_config
    if _database_config is None:
        _database_config = DatabaseConfig.from_env()
    return _database_config


def _create_pool(minconn: int) -> psycopg2.pool.ThreadedConnectionPool:
    config = _get_database_config()
    return psycopg2.pool.ThreadedConnectionPool(
        minconn=minconn,
        maxconn=config.max_connections,
        dsn=config.dsn,
        cursor_factory=RealDictCursor,
        connect_timeout=config.connect_timeout,
        keepalives_idle=600,
        keepalives_interval=30,
        keepalives_count=3,
    )


def get_connection_pool() -> psycopg2.pool.ThreadedConnectionPool:
    """Get or create the threaded connection pool"""
    global _connection_pool
    if _connection_pool is None:
        with _pool_lock:
            if _connection_pool is None:
                try:
                    config = _get_database_config()
                    _connection_pool = _create_pool(config.min_connections)
                    logger.info(f"✅ Connection pool created ({config.min_connections}-{config.max_connections} connections)")
                except Exception as e:
                    logger.error(f"❌ Failed to create connection pool: {e}")
                    raise StorageError(f"Database unavailable: {e}") from e
    return _connection_pool


def recreate_connection_pool() -> bool:
    """Recreate the pool to recover from dead connections (rate limited to once per 10s)"""
    global _connection_pool, _pool_recreation_count, _last_pool_recreation

    current_time = time.time()
    if current_time - _last_pool_recreation < 10:
        logger.debug("🔄 Pool recreation rate limited - skipping")
        return False

    with _pool_lock:
        try:
            if _connection_pool is not None:
                try:
                    _connection_pool.closeall()
                except Exception as close_error:
                    logger.warning(f"⚠️ Error closing existing pool: {close_error}")

            _connection_pool = _create_pool(1)
            _pool_recreation_count += 1
            _last_pool_recreation = current_time
            logger.info(f"✅ Connection pool recreated (#{_pool_recreation_count})")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to recreate connection pool: {e}")
            _connection_pool = None
            return False


def close_connection_pool() -> None:
    """Close every pooled connection (service shutdown)"""
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("🔄 Connection pool closed")


def get_connection():
    """Get a healthy pooled connection in autocommit mode"""
    pool = get_connection_pool()
    for attempt in range(3):
        conn = pool.getconn()
        conn.autocommit = True
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
                cursor.fetchone()
            return conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            logger.warning(f"🔄 Pool connection {attempt + 1}/3 unhealthy: {e}")
            return_connection(conn, is_broken=True)
            time.sleep(0.1)
    raise psycopg2.OperationalError("No healthy connection available from pool")


def return_connection(conn, is_broken: bool = False) -> None:
    """Return a connection to the pool, closing it when broken"""
    try:
        get_connection_pool().putconn(conn, close=is_broken)
    except Exception:
        try:
            conn.close()
        except Exception as close_error:
            logger.debug(f"Connection close failed: {close_error}")


def _handle_connection_error(e: Exception) -> None:
    error_msg = str(e).lower()
    if any(indicator in error_msg for indicator in _DEAD_CONNECTION_INDICATORS):
        logger.warning(f"🔄 Detected dead connection, recreating pool: {e}")
        recreate_connection_pool()


async def execute_query(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute a SELECT query and return rows as dicts (retries connection-level failures)"""

    def _execute() -> List[Dict]:
        max_retries = 3
        for attempt in range(max_retries):
            conn = None
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    results = cursor.fetchall()
                    return [dict(row) for row in results] if results else []
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                if conn:
                    return_connection(conn, is_broken=True)
                    conn = None
                _handle_connection_error(e)
                if attempt < max_retries - 1:
                    logger.warning(f"Database connection retry {attempt + 1}/{max_retries}: {e}")
                    time.sleep(0.5 + (attempt * 0.5))
                    continue
                logger.error(f"💥 All database connection attempts failed after {max_retries} retries: {e}")
                raise StorageError(f"Database unavailable: {e}") from e
            except psycopg2.Error as e:
                logger.error(f"❌ Database query error: {e}")
                raise StorageError(f"Database query failed: {e}") from e
            finally:
                if conn:
                    return_connection(conn)
        raise StorageError("Database query failed after all retries")

    return await asyncio.to_thread(_execute)


async def execute_update(query: str, params: Optional[tuple] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE and return affected rows (no retries to prevent duplicates)"""

    def _execute() -> int:
        conn = None
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.rowcount
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            if conn:
                return_connection(conn, is_broken=True)
                conn = None
            _handle_connection_error(e)
            logger.error(f"💥 Database update connection failed: {e}")
            raise StorageError(f"Database unavailable: {e}") from e
        except psycopg2.Error as e:
            logger.error(f"💥 Database update operation failed: {e}")
            raise StorageError(f"Database update failed: {e}") from e
        finally:
            if conn:
                return_connection(conn)

    return await asyncio.to_thread(_execute)


async def execute_returning(query: str, params: Optional[tuple] = None) -> Optional[Dict]:
    """Execute an INSERT/UPDATE ... RETURNING and return the first row, or None when no row was written"""

    def _execute() -> Optional[Dict]:
        conn = None
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                row = cursor.fetchone()
                return dict(row) if row else None
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            if conn:
                return_connection(conn, is_broken=True)
                conn = None
            _handle_connection_error(e)
            logger.error(f"💥 Database write connection failed: {e}")
            raise StorageError(f"Database unavailable: {e}") from e
        except psycopg2.Error as e:
            logger.error(f"💥 Database write failed: {e}")
            raise StorageError(f"Database write failed: {e}") from e
        finally:
            if conn:
                return_connection(conn)

    return await asyncio.to_thread(_execute)


async def init_database():
    """Create the provisioning tables, indexes and append-only guard if they don't exist"""

    def _init():
        conn = get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS provisioning_subjects (
                        id SERIAL PRIMARY KEY,
                        client_id INTEGER NOT NULL,
                        service_id INTEGER NOT NULL,
                        name VARCHAR(255) NOT NULL,
                        operation_type VARCHAR(20) NOT NULL
                            CHECK (operation_type IN ('register', 'transfer', 'existing')),
                        status VARCHAR(30) NOT NULL DEFAULT 'pending_payment'
                            CHECK (status IN ('pending_payment', 'pending_provisioning', 'active', 'failed', 'cancelled')),
                        provider_name VARCHAR(100),
                        provider_order_id VARCHAR(255),
                        transfer_auth_code VARCHAR(255),
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_provisioning_subjects_status
                    ON provisioning_subjects(status)
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS provisioning_events (
                        id BIGSERIAL PRIMARY KEY,
                        subject_id INTEGER NOT NULL REFERENCES provisioning_subjects(id),
                        type VARCHAR(100) NOT NULL,
                        message TEXT,
                        payload JSONB,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_provisioning_events_subject_type
                    ON provisioning_events(subject_id, type)
                """)

                # Only one run may ever claim a subject
                cursor.execute(f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_provisioning_events_started
                    ON provisioning_events(subject_id)
                    WHERE type = '{EVENT_PROVISIONING_STARTED}'
                """)

                cursor.execute("""
                    CREATE OR REPLACE FUNCTION provisioning_events_append_only()
                    RETURNS trigger AS $$
                    BEGIN
                        RAISE EXCEPTION 'provisioning_events is append-only';
                    END;
                    $$ LANGUAGE plpgsql
                """)
                cursor.execute("DROP TRIGGER IF EXISTS trg_provisioning_events_append_only ON provisioning_events")
                cursor.execute("""
                    CREATE TRIGGER trg_provisioning_events_append_only
                    BEFORE UPDATE OR DELETE ON provisioning_events
                    FOR EACH ROW EXECUTE FUNCTION provisioning_events_append_only()
                """)

            logger.info("✅ Provisioning tables initialized")
        finally:
            return_connection(conn)

    try:
        await asyncio.to_thread(_init)
    except psycopg2.Error as e:
        logger.error(f"❌ Database initialization failed: {e}")
        raise StorageError(f"Database initialization failed: {e}") from e


# ====================================================================
# PROVISIONING SUBJECTS
# ====================================================================

async def create_provisioning_subject(client_id: int, service_id: int, name: str, operation_type: str,
                                      status: str = 'pending_payment',
                                      transfer_auth_code: Optional[str] = None) -> int:
    """Create a subject and return its id"""
    row = await execute_returning("""
        INSERT INTO provisioning_subjects
            (client_id, service_id, name, operation_type, status, transfer_auth_code)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id
    """, (client_id, service_id, name.strip().lower(), operation_type, status, transfer_auth_code))
    if not row:
        raise StorageError(f"Subject for {name} was not created")
    return row['id']


async def get_provisioning_subject(subject_id: int) -> Optional[Dict]:
    rows = await execute_query("""
        SELECT id, client_id, service_id, name, operation_type, status, provider_name,
               provider_order_id, transfer_auth_code, created_at, updated_at
        FROM provisioning_subjects WHERE id = %s
    """, (subject_id,))
    return rows[0] if rows else None


async def update_subject_status(subject_id: int, status: str) -> bool:
    rows_updated = await execute_update("""
        UPDATE provisioning_subjects
        SET status = %s, updated_at = CURRENT_TIMESTAMP
        WHERE id = %s
    """, (status, subject_id))
    return rows_updated > 0


async def transition_subject_status(subject_id: int, from_statuses: Iterable[str], to_status: str) -> bool:
    """Conditional status update; True only when the subject was in one of from_statuses"""
    rows_updated = await execute_update("""
        UPDATE provisioning_subjects
        SET status = %s, updated_at = CURRENT_TIMESTAMP
        WHERE id = %s AND status = ANY(%s)
    """, (to_status, subject_id, list(from_statuses)))
    return rows_updated > 0


async def update_subject_provider_order(subject_id: int, provider_name: str, provider_order_id: str) -> bool:
    rows_updated = await execute_update("""
        UPDATE provisioning_subjects
        SET provider_name = %s, provider_order_id = %s, updated_at = CURRENT_TIMESTAMP
        WHERE id = %s
    """, (provider_name, provider_order_id, subject_id))
    return rows_updated > 0


async def get_unclaimed_pending_subject_ids(limit: int = 100) -> List[int]:
    """Subjects waiting for provisioning that no run has claimed yet"""
    rows = await execute_query(f"""
        SELECT s.id FROM provisioning_subjects s
        WHERE s.status = 'pending_provisioning'
        AND NOT EXISTS (
            SELECT 1 FROM provisioning_events e
            WHERE e.subject_id = s.id AND e.type = '{EVENT_PROVISIONING_STARTED}'
        )
        ORDER BY s.id
        LIMIT %s
    """, (limit,))
    return [row['id'] for row in rows]


# ====================================================================
# PROVISIONING EVENTS (append-only)
# ====================================================================

def _encode_payload(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    if payload is None:
        return None
    return json.dumps(payload, default=str)


async def append_provisioning_event(subject_id: int, event_type: str, message: str,
                                    payload: Optional[Dict[str, Any]] = None) -> int:
    row = await execute_returning("""
        INSERT INTO provisioning_events (subject_id, type, message, payload)
        VALUES (%s, %s, %s, %s::jsonb)
        RETURNING id
    """, (subject_id, event_type, message, _encode_payload(payload)))
    if not row:
        raise StorageError(f"Event {event_type} for subject {subject_id} was not recorded")
    return row['id']


async def claim_provisioning_start(subject_id: int, message: str,
                                   payload: Optional[Dict[str, Any]] = None) -> Optional[int]:
    """
    Atomically append provisioning.started unless one already exists.

    Returns the new event id, or None when another run holds the claim.
    """
    row = await execute_returning(f"""
        INSERT INTO provisioning_events (subject_id, type, message, payload)
        VALUES (%s, '{EVENT_PROVISIONING_STARTED}', %s, %s::jsonb)
        ON CONFLICT (subject_id) WHERE type = '{EVENT_PROVISIONING_STARTED}' DO NOTHING
        RETURNING id
    """, (subject_id, message, _encode_payload(payload)))
    return row['id'] if row else None


async def has_provisioning_event(subject_id: int, event_type: str) -> bool:
    rows = await execute_query("""
        SELECT EXISTS (
            SELECT 1 FROM provisioning_events WHERE subject_id = %s AND type = %s
        ) AS occurred
    """, (subject_id, event_type))
    return bool(rows and rows[0]['occurred'])


async def get_provisioning_events(subject_id: int) -> List[Dict]:
    return await execute_query("""
        SELECT id, subject_id, type, message, payload, created_at
        FROM provisioning_events
        WHERE subject_id = %s
        ORDER BY id
    """, (subject_id,))


# ====================================================================
# EXTERNAL COLLABORATOR DATA (read-only)
# ====================================================================

async def get_service_plan_name(service_id: int) -> Optional[str]:
    """WHM package for the plan behind a service, falling back to the plan name"""
    rows = await execute_query("""
        SELECT COALESCE(NULLIF(p.whm_package, ''), p.name) AS plan_name
        FROM services s
        JOIN plans p ON p.id = s.plan_id
        WHERE s.id = %s
    """, (service_id,))
    return rows[0]['plan_name'] if rows else None


async def get_client_contact(client_id: int) -> Optional[Dict]:
    rows = await execute_query("""
        SELECT id, name, email, phone, address, city, state, postcode, country, tax_id
        FROM clients WHERE id = %s
    """, (client_id,))
    return rows[0] if rows else None
