"""capgate - Database Connection

Engine construction, pooled DB-API cursors and retry logic with exponential
backoff for transient store errors.

Two backends are supported:
- any SQLAlchemy URL from ``database_url`` (SQLite for local use and tests)
- Azure SQL via ``mssql+pyodbc`` with an Entra ID access token, when
  ``azure_sql_server`` is set

Queries use qmark (``?``) parameters, which both sqlite3 and pyodbc accept.
The schema is declared with SQLAlchemy Core so ``init_schema`` works on both.
"""

import struct
import time
import logging
from contextlib import contextmanager
from functools import wraps
from typing import Any, Generator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool

from .config import get_settings

logger = logging.getLogger(__name__)

# Error codes / messages treated as transient (Azure SQL + SQLite)
TRANSIENT_SQL_ERRORS = {
    "08S01",   # Communication link failure
    "08001",   # Unable to connect to server
    "40613",   # Database not currently available (auto-pause resume)
    "40197",   # Service error processing request
    "40501",   # Service busy
    "49918",   # Not enough resources
    "4060",    # Cannot open database (during failover)
    "40001",   # Deadlock victim
    "10054",   # Connection forcibly closed (TCP reset)
    "database is locked",
}

POOL_SIZE = 5
MAX_OVERFLOW = 15
POOL_TIMEOUT = 30
POOL_RECYCLE = 1800

MAX_RETRIES = 3
BASE_DELAY = 0.5        # seconds
MAX_DELAY = 4.0         # seconds


class StoreUnavailableError(Exception):
    """The backing store could not serve a request after retries."""


class StoreError(Exception):
    """A request the store refused on its own rules. Never retried."""


# ============================================================================
# SCHEMA
# ============================================================================

metadata = MetaData()

users = Table(
    "users", metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("display_name", String(255)),
    Column("created_at", DateTime),
)

workspaces = Table(
    "workspaces", metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(100), nullable=False, unique=True),
    Column("created_by", String(64), ForeignKey("users.id")),
    Column("created_at", DateTime),
)

projects = Table(
    "projects", metadata,
    Column("id", String(64), primary_key=True),
    Column("workspace_id", String(64), ForeignKey("workspaces.id"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("created_by", String(64), ForeignKey("users.id")),
    Column("created_at", DateTime),
)

workspace_members = Table(
    "workspace_members", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", String(64), ForeignKey("workspaces.id"), nullable=False),
    Column("user_id", String(64), ForeignKey("users.id"), nullable=False),
    Column("role", String(50), nullable=False, default="member"),
    Column("capabilities", Text, nullable=False, default='["view"]'),
    Column("added_by", String(64)),
    Column("created_at", DateTime),
    UniqueConstraint("workspace_id", "user_id", name="uq_workspace_member"),
)

project_members = Table(
    "project_members", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("project_id", String(64), ForeignKey("projects.id"), nullable=False),
    Column("user_id", String(64), ForeignKey("users.id"), nullable=False),
    Column("role", String(50), nullable=False, default="member"),
    Column("capabilities", Text, nullable=False, default='["view"]'),
    Column("added_by", String(64)),
    Column("created_at", DateTime),
    UniqueConstraint("project_id", "user_id", name="uq_project_member"),
)

api_tokens = Table(
    "api_tokens", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("user_id", String(64), ForeignKey("users.id"), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("expires_at", DateTime),
    Column("created_at", DateTime),
    Column("last_used_at", DateTime),
    Column("notes", String(500)),
)

invitations = Table(
    "invitations", metadata,
    Column("id", String(64), primary_key=True),
    Column("workspace_id", String(64), ForeignKey("workspaces.id"), nullable=False),
    Column("project_id", String(64), ForeignKey("projects.id")),
    Column("email", String(255), nullable=False),
    Column("role", String(50), nullable=False, default="member"),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("status", String(20), nullable=False, default="pending"),
    Column("invited_by", String(64), ForeignKey("users.id"), nullable=False),
    Column("accepted_by", String(64)),
    Column("created_at", DateTime),
    Column("expires_at", DateTime),
    Column("accepted_at", DateTime),
)

audit_log = Table(
    "audit_log", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", String(64)),
    Column("actor_id", String(64)),
    Column("action", String(100), nullable=False),
    Column("severity", String(10), nullable=False, default="low"),
    Column("detail", String(500)),
    Column("created_at", DateTime),
)


# ============================================================================
# ENGINE
# ============================================================================

_engine = None


def _create_azure_connection():
    """Create a raw pyodbc connection with Entra ID token auth."""
    import pyodbc
    from azure.identity import DefaultAzureCredential

    settings = get_settings()

    credential = DefaultAzureCredential()
    token_bytes = credential.get_token(
        "https://database.windows.net/.default"
    ).token.encode("UTF-16-LE")
    token_struct = struct.pack(f'<I{len(token_bytes)}s', len(token_bytes), token_bytes)

    conn_str = (
        f"DRIVER={{ODBC Driver 18 for SQL Server}};"
        f"SERVER={settings.azure_sql_server};"
        f"DATABASE={settings.azure_sql_database};"
        f"Encrypt=yes;TrustServerCertificate=no;"
    )

    SQL_COPT_SS_ACCESS_TOKEN = 1256
    return pyodbc.connect(conn_str, attrs_before={SQL_COPT_SS_ACCESS_TOKEN: token_struct})


def build_engine(database_url: str = None) -> Engine:
    """Build an engine for the configured backend.

    An explicit ``database_url`` wins over settings. In-memory SQLite gets a
    StaticPool so every cursor sees the same database.
    """
    settings = get_settings()

    if database_url is None and settings.uses_azure_sql():
        engine = create_engine(
            "mssql+pyodbc://",
            creator=_create_azure_connection,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
        )
        logger.info(
            "Database pool configured",
            extra={
                "backend": "azure-sql",
                "pool_size": POOL_SIZE,
                "max_overflow": MAX_OVERFLOW,
                "pool_recycle": POOL_RECYCLE,
            }
        )
        return engine

    url = database_url or settings.database_url
    if url.startswith("sqlite") and (":memory:" in url or url in ("sqlite://", "sqlite:///")):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(url, pool_pre_ping=True)
    logger.info("Database engine configured", extra={"backend": engine.dialect.name})
    return engine


def get_engine() -> Engine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def init_schema(engine: Engine = None) -> None:
    """Create all tables that do not exist yet."""
    eng = engine or get_engine()
    metadata.create_all(eng)
    logger.info("Schema ensured", extra={"tables": sorted(metadata.tables)})


# ============================================================================
# CURSORS AND RETRY
# ============================================================================

def is_transient_error(exception: Exception) -> bool:
    """Check if a database error is transient and worth retrying."""
    error_str = str(exception)
    return any(code in error_str for code in TRANSIENT_SQL_ERRORS)


def retry_on_transient(max_retries: int = MAX_RETRIES, base_delay: float = BASE_DELAY, max_delay: float = MAX_DELAY):
    """
    Retry on transient store errors with exponential backoff.

    Delays: 0.5s -> 1.0s -> 2.0s (capped at max_delay).
    After all retries are exhausted, raises StoreUnavailableError so callers
    can tell an outage apart from an authorization outcome.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except (StoreUnavailableError, StoreError):
                    raise
                except Exception as e:
                    if not is_transient_error(e):
                        raise  # Non-transient errors pass through immediately
                    if attempt == max_retries:
                        logger.error(
                            "Database operation failed after %d attempts: %s",
                            attempt + 1, e, exc_info=True
                        )
                        raise StoreUnavailableError(
                            "Database temporarily unavailable. Please try again in a moment."
                        ) from e
                    delay = min(base_delay * (2 ** attempt), max_delay)
                    logger.warning(
                        "Transient database error (attempt %d/%d): %s: %s. Retrying in %.1fs",
                        attempt + 1, max_retries + 1, type(e).__name__, e, delay
                    )
                    time.sleep(delay)
        return wrapper
    return decorator


@contextmanager
def get_db_for(engine: Engine) -> Generator[Any, None, None]:
    """Yield a DB-API cursor from ``engine``; commit on success, roll back on error.

    ``conn.close()`` returns the connection to the pool.
    """
    conn = engine.raw_connection()
    cursor = conn.cursor()
    try:
        yield cursor
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        cursor.close()
        conn.close()


def check_connection(engine: Engine = None) -> bool:
    """Test database connectivity for the readiness check."""
    with get_db_for(engine or get_engine()) as cursor:
        cursor.execute("SELECT 1")
        return True


def rows_to_list(cursor, rows: list) -> list[dict]:
    """Convert multiple DB-API rows to a list of dictionaries."""
    columns = [column[0] for column in cursor.description]
    return [dict(zip(columns, row)) for row in rows]
