import os
import logging
from pathlib import Path
from typing import Optional
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def default_database_url() -> str:
    # Prefer explicit DATABASE_URL env var. If not provided, construct a safe
    # local SQLite URL in a `data/` folder adjacent to the package directory.
    env_db = os.getenv("DATABASE_URL")
    if env_db:
        return env_db
    pkg_root = Path(__file__).resolve().parents[1]
    data_dir = pkg_root / "data"
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        logger.warning("Could not create %s, falling back to in-memory SQLite", data_dir)
        return "sqlite:///:memory:"
    db_file = data_dir / "tracker.db"
    # Use POSIX path style for SQLAlchemy URL on Windows as well
    return f"sqlite:///{db_file.as_posix()}"


class Database:
    """Owns the engine and session factory for one application instance.

    Created by the app factory, opened on startup and closed on shutdown.
    Request handlers never touch this directly; they get a session from
    ``deps.get_db``.
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        self.url = url or default_database_url()
        if echo is None:
            echo = os.getenv("SQL_ECHO", "").lower() in ("1", "true", "yes")
        self.echo = echo
        self.engine = None
        self.SessionLocal = None

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def open(self):
        if self.is_open:
            return self
        kwargs = {"echo": self.echo}
        if self.url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in self.url:
                # one shared connection, otherwise every session sees an empty DB
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(self.url, **kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        logger.info("Using DATABASE_URL: %s", self.url)
        return self

    def close(self):
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Database connections closed")
        self.engine = None
        self.SessionLocal = None

    def session(self):
        if not self.is_open:
            raise RuntimeError("Database is not open")
        return self.SessionLocal()

    def ping(self) -> dict:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"ok": True, "dialect": self.engine.dialect.name}
