from __future__ import annotations

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from config import config
from db.models import Base


def create_db_engine(database_url: str | None = None, *, echo: bool = False) -> Engine:
    url = database_url or config().database_url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=echo, connect_args=connect_args)


def init_db(database_url: str | None = None, *, echo: bool = False) -> sessionmaker[Session]:
    """Create missing tables and return a session factory bound to the database."""
    engine = create_db_engine(database_url, echo=echo)
    Base.metadata.create_all(engine)
    return sessionmaker(engine, expire_on_commit=False)
