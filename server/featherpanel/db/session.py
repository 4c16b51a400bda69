from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from featherpanel.core.settings import get_settings

settings = get_settings()


def _enable_sqlite_transactions(engine: Engine) -> None:
    # pysqlite commits implicitly around DDL; take over BEGIN so drops can roll back.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # pragma: no cover - driver hook
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str) -> Engine:
    engine = create_engine(url, connect_args={"check_same_thread": False})
    _enable_sqlite_transactions(engine)
    return engine


database_url = settings.database_url
engine = build_engine(database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
