import logging
import os
import time
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Explicitly load .env from project root (parent of shorty/)
ENV_PATH = Path(__file__).parent.parent / ".env"
load_dotenv(ENV_PATH)

logger = logging.getLogger("shorty.database")

Base = declarative_base()


def database_url_from_env() -> str:
    """Dev: SQLite (zero config), Prod: PostgreSQL via DATABASE_URL."""
    if os.getenv("ENVIRONMENT", "dev") == "prod":
        url = os.getenv("DATABASE_URL")
        if not url:
            raise RuntimeError("DATABASE_URL must be set in production")
        return url
    db_path = Path(__file__).parent.parent / "shorty_dev.db"
    return os.getenv("DATABASE_URL") or f"sqlite:///{db_path}"


def _make_engine(url: str):
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}  # needed for SQLite + FastAPI
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty db
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
    )


class Database:
    """Storage handle: one engine plus its session factory.

    Built explicitly and owned by the application. ``init`` runs once at
    startup, ``ping`` backs the health check and ``close`` disposes the pool
    at shutdown.
    """

    def __init__(self, url: str | None = None):
        self.url = url or database_url_from_env()
        self.engine = _make_engine(self.url)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init(self, attempts: int = 3, backoff: float = 2.0) -> bool:
        """Check connectivity and create the schema, retrying a bounded number of times.

        Returns True once the table is ready, False when every attempt failed.
        """
        # registers the links table on Base.metadata
        from shorty import models  # noqa: F401

        for attempt in range(1, attempts + 1):
            try:
                with self.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                Base.metadata.create_all(bind=self.engine)
                logger.info("Database initialized: links table ready")
                return True
            except SQLAlchemyError as exc:
                logger.error("Failed to initialize database (%d/%d): %s", attempt, attempts, exc)
                if attempt < attempts:
                    time.sleep(backoff)
        return False

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.warning("Database ping failed", exc_info=True)
            return False

    def session(self):
        return self.SessionLocal()

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Database connection pool closed")
