from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from gold_pricer.config import settings
from gold_pricer.models import Base

_connect_args = {"check_same_thread": False} if settings.GOLD_SYNC_DB_URL.startswith("sqlite") else {}

engine: Engine = create_engine(settings.GOLD_SYNC_DB_URL, future=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db() -> None:
    Base.metadata.create_all(bind=engine)


def get_session():
    session: Session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
