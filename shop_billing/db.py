import os
from typing import Iterator

from sqlmodel import SQLModel, Session, create_engine

DB_URL = os.getenv("DB_URL", "sqlite:///./shop_billing.db")
DB_ECHO = os.getenv("DB_ECHO", "0") == "1"

# sqlite connections are per-thread by default; FastAPI runs sync handlers in a threadpool
_connect_args = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}
engine = create_engine(DB_URL, echo=DB_ECHO, connect_args=_connect_args)


def init_db(bind=None):
    SQLModel.metadata.create_all(bind or engine)


def get_session() -> Iterator[Session]:
    with Session(engine) as s:
        yield s
