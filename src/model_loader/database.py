from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Union, cast, Self

from sqlalchemy import create_engine, Connection
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from model_loader.config import DatabaseSettings


def engine_from_settings(s: DatabaseSettings) -> Engine:
    url = make_url(s.sqlalchemy_url())
    kwargs: dict[str, Any] = {"pool_pre_ping": s.pool_pre_ping}
    if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
        # One shared connection, so the readiness probe (run in a worker
        # thread) and table creation see the same in-memory database.
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


@dataclass(slots=True)
class SessionManager:
    engine: Engine

    @classmethod
    def from_settings(cls, s: DatabaseSettings) -> Self:
        return cls(engine=engine_from_settings(s))

    @contextmanager
    def session(self) -> Iterator[Session]:
        sess = Session(self.engine)
        try:
            yield sess
            sess.commit()
        except Exception:
            sess.rollback()
            raise
        finally:
            sess.close()


DbHandle = Union[Engine, Connection, SessionManager]


def normalize_db_handle(db: DbHandle) -> Engine | Connection:
    if isinstance(db, SessionManager):
        return db.engine
    return cast(Union[Engine, Connection], db)
