"""
TaskGuard Database Connection Manager
Engine construction, session factory and FastAPI session dependency
"""

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from taskguard.core.config import settings
from taskguard.core.logging import get_logger
from taskguard.database.models import Base

logger = get_logger(__name__)


def create_db_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Create a SQLAlchemy engine for the configured database.

    In-memory SQLite URLs share one connection through StaticPool so every
    session sees the same database.
    """
    url = database_url or settings.DATABASE_URL
    echo = settings.DATABASE_ECHO if echo is None else echo

    if url.startswith("sqlite"):
        engine_kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            engine_kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **engine_kwargs)
    else:
        engine = create_engine(url, echo=echo, pool_pre_ping=True)

    logger.debug(f"Database engine created for {engine.url.render_as_string(hide_password=True)}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


engine = create_db_engine()
SessionLocal = create_session_factory(engine)


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding a request-scoped session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """Transactional scope around a series of operations"""
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_database(bind: Optional[Engine] = None, drop_existing: bool = False) -> None:
    """Create all tables"""
    # Register security tables on the shared metadata
    import taskguard.security.models  # noqa: F401

    target = bind or engine
    if drop_existing:
        logger.warning("Dropping all existing tables")
        Base.metadata.drop_all(bind=target)

    Base.metadata.create_all(bind=target)

    with target.connect() as conn:
        conn.execute(text("SELECT 1"))

    logger.info(f"Database schema ready ({len(Base.metadata.tables)} tables)")


def check_database_health(bind: Optional[Engine] = None) -> bool:
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


