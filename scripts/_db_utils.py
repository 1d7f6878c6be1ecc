from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.aba.db import build_engine, build_sessionmaker

DEFAULT_LOCAL_DB = "sqlite:///aba.db"


def database_url_from_env(explicit: str | None = None) -> str:
    """Explicit URL, then DATABASE_URL, then the local SQLite file used in development."""
    return (explicit or os.environ.get("DATABASE_URL") or "").strip() or DEFAULT_LOCAL_DB


@contextmanager
def script_session(db_url: str) -> Iterator[Session]:
    """Session on a throwaway engine for scripts that run without a Flask app."""
    engine = build_engine(db_url)
    s: Session = build_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
