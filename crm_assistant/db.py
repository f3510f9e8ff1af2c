# crm_assistant/db.py
# Engine somente leitura: o assistente consulta, nunca escreve.
from __future__ import annotations

from functools import lru_cache
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine, make_url
from sqlmodel import Session, create_engine

from .config import DATABASE_URL, STATEMENT_TIMEOUT_MS


def _on_sqlite_connect(dbapi_conn, _conn_record):
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys = ON;")
    cur.execute("PRAGMA query_only = ON;")
    cur.close()


def _make_engine(url: str, **kwargs) -> Engine:
    backend = make_url(url).get_backend_name()
    connect_args = kwargs.pop("connect_args", {})
    if backend == "sqlite":
        connect_args.setdefault("check_same_thread", False)
    elif backend == "postgresql":
        connect_args.setdefault(
            "options",
            f"-c default_transaction_read_only=on -c statement_timeout={STATEMENT_TIMEOUT_MS}",
        )
    engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True, **kwargs)
    if backend == "sqlite":
        # registra o hook no Engine síncrono
        event.listen(engine, "connect", _on_sqlite_connect)
    return engine


@lru_cache(maxsize=8)
def get_engine(url: str = DATABASE_URL) -> Engine:
    return _make_engine(url)


def get_session() -> Iterator[Session]:
    """Dependência do FastAPI: uma Session por requisição."""
    with Session(get_engine()) as session:
        yield session
