"""Helpers for handling raw SQL text: dump validation and statement splitting."""

from __future__ import annotations

import re

from featherpanel.core.errors import PanelError

HTML_INDICATORS = ("<!doctype", "<html", "<head", "<body", "<script", "content-type: text/html")
SQL_KEYWORDS = ("CREATE", "INSERT", "DROP", "ALTER", "UPDATE", "DELETE", "SELECT", "TABLE", "DATABASE")

_JSON_ERROR_PATTERN = re.compile(r'^\s*\{.*"error".*"message"', re.IGNORECASE | re.DOTALL)


def validate_sql_content(content: str) -> None:
    """Reject payloads that are clearly not a SQL dump.

    Catches the usual results of a failed download: an empty file, an HTML
    error page, or a JSON error body.
    """

    if not content or not content.strip():
        raise PanelError(
            "Backup file is empty or invalid. The file does not contain any SQL data.",
            "INVALID_SQL_CONTENT",
            400,
        )

    head = content.strip()[:500].lower()
    if any(indicator in head for indicator in HTML_INDICATORS):
        raise PanelError(
            "Invalid backup file: The file appears to contain HTML content instead of SQL. "
            "This usually means the file is corrupted, was downloaded incorrectly, or is not a valid "
            "FeatherPanel Backup (.fpb) file. Please try downloading the backup again or create a new snapshot.",
            "INVALID_SQL_CONTENT",
            400,
        )

    if _JSON_ERROR_PATTERN.match(content):
        raise PanelError(
            "Invalid backup file: The file appears to contain an error response instead of SQL data. "
            "This usually means the download failed or the file is corrupted. "
            "Please try downloading the backup again or create a new snapshot.",
            "INVALID_SQL_CONTENT",
            400,
        )

    upper = content.upper()
    if not any(keyword in upper for keyword in SQL_KEYWORDS):
        raise PanelError(
            "Invalid backup file: The file does not appear to contain valid SQL statements. "
            "This usually means the file is corrupted or is not a valid FeatherPanel Backup (.fpb) file. "
            "Please try downloading the backup again or create a new snapshot.",
            "INVALID_SQL_CONTENT",
            400,
        )


def split_statements(sql: str) -> list[str]:
    """Split a SQL script into statements on top-level semicolons.

    Semicolons inside quoted strings, quoted identifiers and comments are
    ignored. ``--`` and ``/* */`` comments are dropped from the output.
    Quotes are escaped by doubling; a backslash is an ordinary character.
    Compound bodies (``BEGIN ... END`` in triggers or routines) are not
    supported.
    """

    statements: list[str] = []
    buffer: list[str] = []
    quote: str | None = None
    index = 0
    length = len(sql)

    while index < length:
        char = sql[index]
        nxt = sql[index + 1] if index + 1 < length else ""

        if quote:
            buffer.append(char)
            if char == quote:
                if nxt == quote:
                    buffer.append(nxt)
                    index += 2
                    continue
                quote = None
            index += 1
            continue

        if char in ("'", '"', "`"):
            quote = char
            buffer.append(char)
            index += 1
            continue

        if char == "-" and nxt == "-":
            end = sql.find("\n", index)
            index = length if end == -1 else end
            continue

        if char == "/" and nxt == "*":
            end = sql.find("*/", index + 2)
            index = length if end == -1 else end + 2
            buffer.append(" ")
            continue

        if char == ";":
            statement = "".join(buffer).strip()
            if statement:
                statements.append(statement)
            buffer = []
            index += 1
            continue

        buffer.append(char)
        index += 1

    tail = "".join(buffer).strip()
    if tail:
        statements.append(tail)
    return statements


__all__ = ["validate_sql_content", "split_statements", "HTML_INDICATORS", "SQL_KEYWORDS"]
