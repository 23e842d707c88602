from __future__ import annotations

import re
import secrets
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .errors import StorageFault


_OBJECT_ID_RE = re.compile(r"[0-9a-f]{24}", re.IGNORECASE)


class HubBase(DeclarativeBase):
    pass


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back out.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_object_id() -> str:
    return secrets.token_hex(12)


def is_object_id(value: str) -> bool:
    return _OBJECT_ID_RE.fullmatch(value) is not None


@lru_cache(maxsize=None)
def get_engine(database_url: str) -> Engine:
    """Process-wide engine per database URL, created on first use."""
    if not database_url:
        raise RuntimeError("DATABASE_URL is required for HUB_STORE_BACKEND=sql")
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    engine = create_engine(database_url, future=True, pool_pre_ping=True, connect_args=connect_args)
    if database_url.startswith("sqlite"):
        # Import for side effect: registers every table on HubBase.metadata.
        from . import channels, conversations, ledger  # noqa: F401

        HubBase.metadata.create_all(engine)
    return engine


def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False, future=True)


@contextmanager
def storage_errors() -> Iterator[None]:
    """Translate driver errors into StorageFault. IntegrityError passes through."""
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        raise StorageFault(f"storage operation failed: {exc.__class__.__name__}") from exc
