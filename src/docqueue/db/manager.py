"""Database connection manager with SQLite WAL mode support."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from docqueue.db.base import Base
from docqueue.errors import PersistenceError

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Manages database connections and sessions with SQLite optimizations."""

    def __init__(
        self,
        database_url: str = "sqlite:///data/docqueue.db",
        echo: bool = False,
        busy_timeout_seconds: float = 30.0,
    ) -> None:
        """
        Initialize the database manager.

        Args:
            database_url: SQLAlchemy database URL
            echo: Enable SQL echo logging
            busy_timeout_seconds: How long a SQLite writer waits for the lock
        """
        self._database_url = database_url
        self._echo = echo
        self._busy_timeout = busy_timeout_seconds
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self._database_url.startswith("sqlite")

    @property
    def supports_row_locks(self) -> bool:
        """Whether SELECT ... FOR UPDATE is honoured by the backend."""
        return not self.is_sqlite

    @property
    def engine(self) -> Engine:
        """Get or create the database engine."""
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    def _create_engine(self) -> Engine:
        """Create a new SQLAlchemy engine with SQLite optimizations."""
        connect_args = {}

        # Ensure data directory exists for SQLite
        if self._database_url.startswith("sqlite:///"):
            db_path = self._database_url.replace("sqlite:///", "")
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        if self.is_sqlite:
            connect_args["timeout"] = self._busy_timeout

        engine = create_engine(
            self._database_url,
            echo=self._echo,
            pool_pre_ping=True,  # Enable connection health checks
            connect_args=connect_args,
        )

        if self.is_sqlite:
            self._configure_sqlite(engine)

        return engine

    def _configure_sqlite(self, engine: Engine) -> None:
        """Configure SQLite pragmas and write-serializing transactions."""

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # type: ignore
            # Let SQLAlchemy emit BEGIN itself (see do_begin)
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute(f"PRAGMA busy_timeout={int(self._busy_timeout * 1000)}")
            # Enable WAL mode for better concurrency
            cursor.execute("PRAGMA journal_mode=WAL")
            # Enable foreign key enforcement
            cursor.execute("PRAGMA foreign_keys=ON")
            # Faster synchronous mode (still safe with WAL)
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

        @event.listens_for(engine, "begin")
        def do_begin(conn) -> None:  # type: ignore
            # SQLite has no row locks; IMMEDIATE takes the write lock up front
            # so read-modify-write transactions serialize instead of racing.
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        logger.info("SQLite pragmas configured with immediate transactions")

    @property
    def session_factory(self) -> sessionmaker[Session]:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False,
            )
        return self._session_factory

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Get a database session with automatic commit/rollback.

        Store failures are rolled back and re-raised as PersistenceError;
        any other exception is rolled back and propagated unchanged.

        Usage:
            with db_manager.get_session() as session:
                session.execute(select(Job))
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error, transaction rolled back: {e}")
            raise PersistenceError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def session_scope(self, session: Session | None = None) -> Generator[Session, None, None]:
        """
        Join the caller's transaction when one is given, else open a new one.

        Lets components expose single-call operations that can also be
        composed into a larger unit of work (e.g. ledger + history commit).
        """
        if session is not None:
            yield session
            return
        with self.get_session() as own_session:
            yield own_session

    def init_db(self) -> None:
        """Create all tables if they don't exist."""
        from docqueue.db import models  # noqa: F401  (registers tables)

        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created/verified")

    def health_check(self) -> bool:
        """
        Check if the database connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        """Close the database engine and release resources."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed")
