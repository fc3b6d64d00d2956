"""Engine, session and schema setup for the storefront database."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, make_url, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from alembic import command
from config import APP_ENV, DATABASE_ECHO, DATABASE_URL, ROOT_DIR

from .models import Base

SessionFactory = Callable[[], Session]

PRODUCTION_ENVS = frozenset({"prod", "production"})
MIGRATIONS_DIR = Path(ROOT_DIR).resolve() / "alembic"


def _sqlite_file(url: URL) -> Path | None:
    if url.get_backend_name() != "sqlite" or url.database in (None, "", ":memory:"):
        return None
    path = Path(url.database).expanduser()
    return path if path.is_absolute() else (Path.cwd() / path).resolve()


def _engine_options(url: URL) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": DATABASE_ECHO, "pool_pre_ping": True}
    if url.get_backend_name() == "sqlite":
        # Handlers run repository calls on worker threads.
        options["connect_args"] = {"check_same_thread": False}
        if _sqlite_file(url) is None:
            # In-memory: a single shared connection or each session gets its own empty database.
            options["poolclass"] = StaticPool
    return options


def build_session_factory(database_url: str) -> tuple[Engine, SessionFactory]:
    url = make_url(database_url)
    db_file = _sqlite_file(url)
    if db_file is not None:
        db_file.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, **_engine_options(url))
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


ENGINE, SessionLocal = build_session_factory(DATABASE_URL)


def _require_production_backend(database_url: str) -> None:
    if str(APP_ENV or "").strip().lower() not in PRODUCTION_ENVS:
        return
    if make_url(database_url).get_backend_name() != "postgresql":
        raise RuntimeError("DATABASE_URL must be PostgreSQL in production")


def _alembic_config(database_url: str) -> AlembicConfig:
    ini_path = MIGRATIONS_DIR.parent / "alembic.ini"
    if not ini_path.exists():
        raise RuntimeError(f"missing alembic.ini: {ini_path}")
    cfg = AlembicConfig(str(ini_path))
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    # The ini parser interpolates '%', which URL-encoded passwords contain.
    cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    return cfg


def init_store_db(engine: Engine | None = None) -> None:
    """
    Bring the schema up to date.

    With an explicit engine the tables are created straight from the models,
    which is how isolated test databases are prepared. Without one, Alembic
    migrations run against DATABASE_URL; production refuses anything but
    PostgreSQL.
    """
    if engine is not None:
        Base.metadata.create_all(bind=engine)
        return
    _require_production_backend(DATABASE_URL)
    command.upgrade(_alembic_config(DATABASE_URL), "head")


@contextmanager
def session_scope(session_factory: SessionFactory | None = None) -> Iterator[Session]:
    factory = session_factory or SessionLocal
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_database(session_factory: SessionFactory | None = None) -> str | None:
    """Return None when the database answers, otherwise the driver error text."""
    try:
        with session_scope(session_factory) as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return str(exc)
    return None
