import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(database_url: str):
    """Create the engine for the configured URL.

    SQLite connections are shared across the threadpool; in-memory databases
    need a single static connection or every session would see an empty db.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True, pool_recycle=3600)


def build_session_factory(engine):
    return sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)


def init_schema(engine) -> None:
    # models must be imported so the table is registered on Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database schema ready on %s", engine.url.render_as_string(hide_password=True))


@contextmanager
def session_scope(session_factory):
    """Yield a session; commit on success, roll back on errors, always close."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
