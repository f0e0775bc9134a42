from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from locateme.dependencies.settings import Settings, get_settings

Base = declarative_base()

# Lazy engine creation to avoid environment races (tests may set env vars before import)
_engine: Engine | None = None
SessionLocal = sessionmaker(autoflush=False, autocommit=False)


def create_db_engine(settings: Settings) -> Engine:
    """
    Build the Position Store engine from settings.

    PostgreSQL connections get a bounded pool (queued, never unbounded) plus
    connect and statement timeouts; SQLite (tests, local runs) keeps the
    dialect's default pool.
    """
    url = settings.database_url
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})

    connect_args = {}
    if url.startswith("postgresql"):
        connect_args = {
            "connect_timeout": max(1, settings.db_pool_timeout_seconds),
            "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
        }
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_min_size,
        max_overflow=settings.db_pool_max_size - settings.db_pool_min_size,
        pool_timeout=settings.db_pool_timeout_seconds,
        pool_recycle=3600,
        connect_args=connect_args,
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_db_engine(get_settings())
        SessionLocal.configure(bind=_engine)
    return _engine


def recreate_engine(new_database_url: str | None = None) -> Engine:
    """
    Re-create the engine, optionally against a new DATABASE_URL.

    Safe to call from test setup or admin scripts; re-binds `SessionLocal`.
    """
    global _engine
    if _engine is not None:
        _engine.dispose()
    settings = get_settings()
    if new_database_url:
        settings = settings.model_copy(update={"database_url": new_database_url})
    _engine = create_db_engine(settings)
    SessionLocal.configure(bind=_engine)
    return _engine


def get_db():
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
