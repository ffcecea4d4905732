from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, make_url
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import Settings, get_settings

Base = declarative_base()


def create_db_engine(database_url: Optional[str] = None, settings: Optional[Settings] = None) -> Engine:
    """Create a synchronous engine; in-memory SQLite shares one connection across threads."""
    settings = settings or get_settings()
    url = database_url or settings.database_url
    if url == "sqlite://" or (url.startswith("sqlite") and ":memory:" in url):
        return create_engine(
            url,
            echo=settings.database_echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        database = make_url(url).database
        if database:
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(url, echo=settings.database_echo, connect_args={"check_same_thread": False})
    return create_engine(url, echo=settings.database_echo, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables registered on ``Base``."""
    from ..models import chunk  # noqa: F401  register the ORM models

    Base.metadata.create_all(engine)
