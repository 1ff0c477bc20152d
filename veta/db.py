import os
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


def _normalize_sqlalchemy_postgres_url(url: str) -> str:
    """
    Normalize a Postgres URL into a SQLAlchemy psycopg2 URL.

    Accepts:
    - postgresql://...
    - postgresql+psycopg2://...

    Returns:
    - postgresql+psycopg2://...
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg2://", 1)
    return url


def _env_postgres_url_if_usable() -> str | None:
    """
    Return a SQLAlchemy-ready URL from POSTGRES_URL, but only if it is usable.

    A credential-less POSTGRES_URL such as postgresql://localhost:5432/veta makes
    psycopg2 fall back to the OS user, which rarely exists as a database role.
    Such URLs are ignored so the next configuration source can be tried.
    """
    postgres_url = os.getenv("POSTGRES_URL")
    if not postgres_url:
        return None

    if postgres_url.startswith(("postgresql://", "postgresql+psycopg2://")):
        normalized = _normalize_sqlalchemy_postgres_url(postgres_url)
        try:
            parsed = make_url(normalized)
        except Exception:
            # Let SQLAlchemy report the malformed URL when the engine is built.
            return normalized

        if parsed.username and parsed.password:
            return normalized
        return None

    return postgres_url


def _default_sqlite_url() -> str:
    """Build a SQLite URL from VETA_DB_PATH (default ~/.veta/notes.db), creating its directory."""
    raw = os.getenv("VETA_DB_PATH") or str(Path.home() / ".veta" / "notes.db")
    path = Path(raw).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{path}"


def _build_database_url() -> str:
    """
    Build a SQLAlchemy database URL.

    Preference order:
    1) VETA_DATABASE_URL (used verbatim)
    2) POSTGRES_URL (only if it includes explicit credentials; see _env_postgres_url_if_usable)
    3) POSTGRES_USER/POSTGRES_PASSWORD/POSTGRES_DB/POSTGRES_PORT (compose a URL)
    4) Final fallback: a local SQLite file at VETA_DB_PATH
    """
    explicit = os.getenv("VETA_DATABASE_URL")
    if explicit:
        return _normalize_sqlalchemy_postgres_url(explicit)

    usable_env_url = _env_postgres_url_if_usable()
    if usable_env_url:
        return usable_env_url

    user = os.getenv("POSTGRES_USER")
    password = os.getenv("POSTGRES_PASSWORD")
    db = os.getenv("POSTGRES_DB")
    port = os.getenv("POSTGRES_PORT")
    if user and password and db and port:
        host = os.getenv("POSTGRES_HOST", "localhost")
        return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{db}"

    return _default_sqlite_url()


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:
    # pysqlite must not open transactions on its own; BEGIN is emitted by _begin_sqlite_transaction
    # so that SAVEPOINTs always nest inside it.
    dbapi_connection.isolation_level = None
    # SQLite ships with foreign key enforcement off; ON DELETE CASCADE needs it.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite_transaction(conn) -> None:
    conn.exec_driver_sql("BEGIN")


# PUBLIC_INTERFACE
def make_engine(url: str) -> Engine:
    """Create an engine for url, applying the SQLite tweaks the schema relies on."""
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if parsed.database in (None, "", ":memory:"):
        # A single shared connection, otherwise every pooled connection sees its own empty database.
        kwargs["poolclass"] = StaticPool
    sqlite_engine = create_engine(url, **kwargs)
    event.listen(sqlite_engine, "connect", _configure_sqlite_connection)
    event.listen(sqlite_engine, "begin", _begin_sqlite_transaction)
    return sqlite_engine


DATABASE_URL = _build_database_url()

# Engine + session configuration
engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


# PUBLIC_INTERFACE
def get_db():
    """FastAPI dependency that yields a database session and ensures it is closed."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
