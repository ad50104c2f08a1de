"""Database engine and session handle."""

from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    pass


class Database:
    """
    Explicitly constructed engine + session factory.

    One instance per process, created at startup and passed to the app
    factory; dispose() releases the pool at shutdown.
    """

    def __init__(self, url: str, **engine_kwargs):
        if url.startswith("sqlite"):
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
            if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
                # Every connection must see the same in-memory database
                engine_kwargs.setdefault("poolclass", StaticPool)
        else:
            engine_kwargs.setdefault("pool_recycle", 280)    # Reconnect before MySQL's default idle timeout
            engine_kwargs.setdefault("pool_pre_ping", True)  # Test connection health before use

        self.url = url
        self.engine = create_engine(url, **engine_kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self) -> None:
        # Registers the tables on Base.metadata
        from server import models  # noqa: F401
        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self):
        """
        Provide a transactional database session.

        Commits on success, rolls back on any exception, always closes the session.
        Usage:
            with database.session() as db:
                db.add(record)
        """
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
