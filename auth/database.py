"""
Database setup and connection management for the authorization server.

This module handles:
- SQLAlchemy engine creation from AuthConfig
- Session factory and the FastAPI session dependency
- Table creation for the auth models
"""

import logging
import urllib.parse
from typing import Generator

from sqlalchemy import create_engine, event, inspect, pool, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from auth.config import AuthConfig
from auth.models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Owns the engine and session factory.

    Usage:
        database = Database(AuthConfig())
        database.create_tables()
        session = database.session()
    """

    def __init__(self, config: AuthConfig = None):
        self.config = config or AuthConfig()
        uri = self._build_connection_uri(self.config.database_url)
        self.engine = self._create_engine(uri)
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
            expire_on_commit=False,
        )
        logger.info(f"Database configured for dialect {self.engine.dialect.name}")

    def _create_engine(self, uri: str):
        if uri.startswith("sqlite"):
            kwargs = {"echo": self.config.echo, "connect_args": {"check_same_thread": False}}
            if ":memory:" in uri or uri == "sqlite://":
                # One shared connection, otherwise every session sees an empty database
                kwargs["poolclass"] = pool.StaticPool
            engine = create_engine(uri, **kwargs)
            self._install_sqlite_transaction_fix(engine)
            return engine

        return create_engine(
            uri,
            pool_size=self.config.pool_size,
            max_overflow=self.config.max_overflow,
            pool_recycle=self.config.pool_recycle,
            pool_pre_ping=True,
            echo=self.config.echo,
        )

    @staticmethod
    def _install_sqlite_transaction_fix(engine):
        # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; take control of it
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN")

    @staticmethod
    def _build_connection_uri(connection_string: str) -> str:
        """
        Build SQLAlchemy connection URI from connection string.
        Supports Azure SQL (pymssql), PostgreSQL and SQLite.
        """
        if not connection_string:
            raise ValueError("Connection string is empty")

        if "://" in connection_string:
            return connection_string

        # Azure SQL - parse connection string
        parts = {}
        for part in connection_string.split(";"):
            if "=" in part:
                key, value = part.split("=", 1)
                parts[key.strip()] = value.strip()

        required = ["Server", "Initial Catalog", "User ID", "Password"]
        missing = [f for f in required if f not in parts]
        if missing:
            raise ValueError(f"Invalid connection string: missing {missing}")

        server = parts["Server"].replace("tcp:", "").split(",")[0]
        database = parts["Initial Catalog"]
        user = parts["User ID"]
        password = urllib.parse.quote_plus(parts["Password"])

        return f"mssql+pymssql://{user}:{password}@{server}:1433/{database}"

    def create_tables(self):
        """Create all tables if they don't exist (idempotent)"""
        existing = set(inspect(self.engine).get_table_names())
        Base.metadata.create_all(bind=self.engine, checkfirst=True)
        created = set(Base.metadata.tables) - existing
        if created:
            logger.info(f"Created tables: {sorted(created)}")

    def drop_tables(self):
        """Drop all tables. For tests only."""
        logger.warning("Dropping all auth tables")
        Base.metadata.drop_all(bind=self.engine)

    def session(self) -> Session:
        return self.SessionLocal()

    def health_check(self) -> bool:
        """Check if database is reachable"""
        try:
            with self.SessionLocal() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def get_db(self) -> Generator[Session, None, None]:
        """
        FastAPI dependency for database sessions.

        Commits when the request handler returns, rolls back on any error.
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self):
        self.engine.dispose()
