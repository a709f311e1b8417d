# pastillero/storage/db.py
from sqlmodel import SQLModel, create_engine, Session

from core.settings import STORE_DB_PATH

# Ensure SQLModel metadata is populated
import models.kv_entry  # noqa: F401


# sessions are opened from worker threads by the key/value store
_engine = create_engine(
    f"sqlite:///{STORE_DB_PATH.as_posix()}",
    echo=False,
    connect_args={"check_same_thread": False},
)


def init_db(engine=None):
    STORE_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    SQLModel.metadata.create_all(engine or _engine)


def get_engine():
    return _engine


def get_session() -> Session:
    return Session(_engine)
