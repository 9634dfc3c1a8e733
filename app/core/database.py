# app/core/database.py
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.core.config import DATABASE_URL

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (sqlite in dev/tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """
    Transaction scope for a multi-step mutation.

    Commits when the body completes, rolls back on any exception and re-raises.
    Nothing written inside the block is visible to other sessions unless the
    whole block succeeds.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
