"""Logical SQL dumps built from SQLAlchemy reflection.

The output is a plain script of ``DROP TABLE IF EXISTS`` / ``CREATE TABLE`` /
``CREATE INDEX`` / ``INSERT`` statements, one per ``;``, that the restore path
replays statement by statement. Binary values are written as hex literals.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Iterable, TextIO

from sqlalchemy import MetaData, inspect
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.schema import CreateIndex, CreateTable

logger = logging.getLogger(__name__)

EXCLUDED_TABLES: tuple[str, ...] = (
    "featherpanel_server_activities",
    "featherpanel_featherzerotrust_scan_logs",
    "featherpanel_featherzerotrust_cron_logs",
    "featherpanel_chatbot_messages",
    "featherpanel_chatbot_conversations",
    "featherpanel_activity",
)

INSERT_BATCH_SIZE = 100


def sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"X'{bytes(value).hex()}'"
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return _quote_text(value.isoformat(sep=" "))
    if isinstance(value, (date, time)):
        return _quote_text(value.isoformat())
    return _quote_text(str(value))


def _quote_text(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def list_tables(conn: Connection) -> list[str]:
    return list(inspect(conn).get_table_names())


def dump_database(engine: Engine, out: TextIO, *, exclude: Iterable[str] = EXCLUDED_TABLES) -> int:
    """Write every non-excluded table to ``out``; returns the number of tables dumped."""

    excluded = set(exclude)
    with engine.connect() as conn:
        with conn.begin():
            dialect = conn.dialect
            quote = dialect.identifier_preparer.quote
            metadata = MetaData()
            names = [name for name in list_tables(conn) if name not in excluded]
            metadata.reflect(bind=conn, only=names)

            out.write("-- FeatherPanel database snapshot\n")
            out.write(f"-- Dialect: {dialect.name}\n")
            out.write(f"-- Created: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')} UTC\n\n")

            for table in metadata.sorted_tables:
                quoted = quote(table.name)
                out.write(f"-- Table {table.name}\n")
                out.write(f"DROP TABLE IF EXISTS {quoted};\n")
                create = str(CreateTable(table).compile(dialect=dialect)).strip()
                out.write(f"{create};\n")
                for index in sorted(table.indexes, key=lambda item: item.name or ""):
                    out.write(f"{str(CreateIndex(index).compile(dialect=dialect)).strip()};\n")

                columns = ", ".join(quote(column.name) for column in table.columns)
                result = conn.exec_driver_sql(f"SELECT {columns} FROM {quoted}")
                while True:
                    rows = result.fetchmany(INSERT_BATCH_SIZE)
                    if not rows:
                        break
                    values = ",\n".join(
                        "(" + ", ".join(sql_literal(value) for value in row) + ")" for row in rows
                    )
                    out.write(f"INSERT INTO {quoted} ({columns}) VALUES\n{values};\n")
                out.write("\n")
            logger.info("Dumped %d tables", len(metadata.sorted_tables))
            return len(metadata.sorted_tables)


__all__ = ["EXCLUDED_TABLES", "dump_database", "list_tables", "sql_literal"]
