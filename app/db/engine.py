# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# The job store uses a synchronous SQLAlchemy engine:
# - Celery workers are synchronous and call it directly
# - FastAPI handlers reach it through asyncio.to_thread() inside the gateway
#
# SESSION LIFECYCLE (get_sync_session):
#   create → yield → commit (or rollback on error) → close
#
# Lazy initialization: importing this module never opens a connection, so
# tests can swap in an in-memory SQLite session factory before first use.
# =============================================================================

from collections.abc import Callable, Generator
from contextlib import AbstractContextManager, contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.db.models import Base

SessionFactory = Callable[[], AbstractContextManager[Session]]

_sync_engine: Engine | None = None
_sync_session_factory: sessionmaker | None = None


def build_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the job store.

    SQLite URLs get `check_same_thread=False` because the gateway touches
    the store from worker threads. An in-memory SQLite database additionally
    needs a StaticPool so every session sees the same connection.
    """
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def _get_sync_engine() -> Engine:
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = build_engine(settings.database_url, echo=settings.debug)
    return _sync_engine


def _get_sync_session_factory() -> sessionmaker:
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=_get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


def make_session_scope(factory: sessionmaker) -> SessionFactory:
    """
    Wrap a sessionmaker into a transactional context-manager factory.

    Usage:
        scope = make_session_scope(sessionmaker(bind=engine))
        with scope() as session:
            session.add(obj)
            # Auto-commits on exit, auto-rollbacks on exception
    """

    @contextmanager
    def scope() -> Generator[Session, None, None]:
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return scope


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager that provides a transactional session on the job store."""
    with make_session_scope(_get_sync_session_factory())() as session:
        yield session


def init_db(engine: Engine | None = None) -> None:
    """Create the job store tables if they do not exist yet."""
    Base.metadata.create_all(engine or _get_sync_engine())
