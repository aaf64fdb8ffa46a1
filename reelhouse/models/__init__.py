from __future__ import annotations

import os
from functools import lru_cache

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base

DB_TIMEOUT_SECONDS = float(os.environ.get("REELHOUSE_DB_TIMEOUT_SECONDS", "30"))

VideoBase = declarative_base()


def _sqlite_engine(db_path: str, timeout: float):
    db_dir = os.path.dirname(db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": timeout},
        pool_pre_ping=True,
    )

    @event.listens_for(engine, "connect")
    def _configure_sqlite(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA busy_timeout=5000;")
        cursor.close()

    return engine


@lru_cache(maxsize=8)
def get_video_engine(db_path: str):
    return _sqlite_engine(db_path, DB_TIMEOUT_SECONDS)
