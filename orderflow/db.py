from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from orderflow.config import settings


class Base(DeclarativeBase):
    pass


def _configure_sqlite(engine: Engine) -> None:
    """Serialize SQLite writers on the database lock.

    pysqlite defers BEGIN until the first write, so a transaction that reads
    first can fail on lock upgrade instead of waiting for the busy timeout.
    Taking over transaction control and issuing BEGIN IMMEDIATE makes every
    unit of work acquire the write lock up front.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(database_url: str, **kwargs) -> Engine:
    kwargs.setdefault("echo", settings.database_echo)
    if database_url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", settings.sqlite_busy_timeout)
        engine = create_engine(database_url, connect_args=connect_args, **kwargs)
        _configure_sqlite(engine)
        return engine
    kwargs.setdefault("pool_pre_ping", True)
    return create_engine(database_url, **kwargs)


def init_db(bind: Engine) -> None:
    # registers the mapped classes on Base.metadata
    import orderflow.models  # noqa: F401

    Base.metadata.create_all(bind=bind)


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
