"""Database driver for SQLite files, accepting sqlite, sqlite3 and sqlcipher URLs."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Iterator
from urllib.parse import parse_qsl, urlencode, urlsplit

from .database import (
    NIL_VERSION,
    AtomicBool,
    DatabaseError,
    LockedError,
    NotLockedError,
)

DEFAULT_MIGRATIONS_TABLE = "schema_migrations"

_SCHEMES = ("sqlite3", "sqlite", "sqlcipher")

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}


@dataclass
class SqliteConfig:
    """Options for the SQLite driver."""

    migrations_table: str = ""
    database_name: str = ""
    no_tx_wrap: bool = False


def _parse_bool(value: str) -> bool:
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    raise ValueError(f'strconv.ParseBool: parsing "{value}": invalid syntax')


def _read(migration: Any) -> bytes:
    data = migration.read() if hasattr(migration, "read") else migration
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def _split_statements(script: str) -> Iterator[str]:
    """Yield the complete SQL statements of ``script`` one at a time."""
    parts = script.split(";")
    buffer = ""
    for part in parts[:-1]:
        buffer += part + ";"
        if sqlite3.complete_statement(buffer):
            if buffer.strip(" \t\r\n;"):
                yield buffer.strip()
            buffer = ""
    remainder = buffer + parts[-1]
    if remainder.strip():
        yield remainder.strip()


def _filtered_location(url: str) -> tuple[str, list[tuple[str, str]]]:
    """Strip the scheme and any ``x-`` query options from ``url``.

    Returns the database location and the full list of query parameters.
    """
    base, _, query = url.partition("?")
    params = parse_qsl(query, keep_blank_values=True)
    kept = [(key, value) for key, value in params if not key.startswith("x-")]
    for scheme in _SCHEMES:
        prefix = scheme + "://"
        if base.startswith(prefix):
            base = base[len(prefix):]
            break
    if kept:
        base = f"{base}?{urlencode(kept)}"
    return base, params


def _connect(location: str) -> sqlite3.Connection:
    if location.startswith("file:"):
        return sqlite3.connect(location, uri=True)
    if "?" in location:
        return sqlite3.connect("file:" + location, uri=True)
    return sqlite3.connect(location)


class SqliteDriver:
    """Runs migrations against a SQLite database and records the applied version."""

    def __init__(
        self,
        instance: sqlite3.Connection | None = None,
        config: SqliteConfig | None = None,
    ) -> None:
        self.db = instance
        self.config = config if config is not None else SqliteConfig()
        self._locked = AtomicBool()

    def _ensure_version_table(self) -> None:
        self.lock()
        try:
            table = self.config.migrations_table
            self.db.executescript(
                f"CREATE TABLE IF NOT EXISTS {table} (version uint64,dirty bool);\n"
                f"CREATE UNIQUE INDEX IF NOT EXISTS version_unique ON {table} (version);"
            )
        finally:
            self.unlock()

    def open(self, url: str) -> SqliteDriver:
        """Open the database named by ``url`` and return a driver for it."""
        location, params = _filtered_location(url)
        options: dict[str, str] = {}
        for key, value in params:
            options.setdefault(key, value)

        migrations_table = options.get("x-migrations-table", "") or DEFAULT_MIGRATIONS_TABLE

        no_tx_wrap = False
        raw = options.get("x-no-tx-wrap", "")
        if raw != "":
            try:
                no_tx_wrap = _parse_bool(raw)
            except ValueError as exc:
                raise ValueError(f"x-no-tx-wrap: {exc}") from exc

        connection = _connect(location)
        try:
            return with_instance(
                connection,
                SqliteConfig(
                    migrations_table=migrations_table,
                    database_name=urlsplit(url).path,
                    no_tx_wrap=no_tx_wrap,
                ),
            )
        except BaseException:
            connection.close()
            raise

    def close(self) -> None:
        self.db.close()

    def drop(self) -> None:
        """Drop every table in the database, then vacuum it."""
        query = "SELECT name FROM sqlite_master WHERE type = 'table';"
        try:
            rows = self.db.execute(query).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        table_names = [name for (name,) in rows if name]
        if not table_names:
            return
        for table in table_names:
            statement = f"DROP TABLE {table}"
            try:
                self._execute_in_transaction(statement)
            except DatabaseError as exc:
                raise DatabaseError(orig_err=exc, query=statement.encode()) from exc
        try:
            self.db.execute("VACUUM")
        except sqlite3.Error as exc:
            raise DatabaseError(orig_err=exc, query=b"VACUUM") from exc

    def lock(self) -> None:
        if not self._locked.compare_and_swap(False, True):
            raise LockedError()

    def unlock(self) -> None:
        if not self._locked.compare_and_swap(True, False):
            raise NotLockedError()

    def run(self, migration: Any) -> None:
        """Execute a migration body, inside a transaction unless ``no_tx_wrap`` is set."""
        query = _read(migration).decode("utf-8")
        if self.config.no_tx_wrap:
            self._execute_without_transaction(query)
        else:
            self._execute_in_transaction(query)

    def _rollback(self) -> None:
        if self.db.in_transaction:
            self.db.execute("ROLLBACK")

    def _execute_in_transaction(self, query: str) -> None:
        try:
            self.db.execute("BEGIN")
        except sqlite3.Error as exc:
            raise DatabaseError("transaction start failed", orig_err=exc) from exc
        try:
            for statement in _split_statements(query):
                self.db.execute(statement)
        except sqlite3.Error as exc:
            self._rollback()
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        try:
            self.db.execute("COMMIT")
        except sqlite3.Error as exc:
            raise DatabaseError("transaction commit failed", orig_err=exc) from exc

    def _execute_without_transaction(self, query: str) -> None:
        try:
            self.db.executescript(query)
        except sqlite3.Error as exc:
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc

    def set_version(self, version: int, dirty: bool) -> None:
        """Replace the recorded version with ``version`` and its dirty flag."""
        table = self.config.migrations_table
        try:
            self.db.execute("BEGIN")
        except sqlite3.Error as exc:
            raise DatabaseError("transaction start failed", orig_err=exc) from exc

        query = f"DELETE FROM {table}"
        try:
            self.db.execute(query)
        except sqlite3.Error as exc:
            self._rollback()
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc

        # A dirty nil version is kept so a failed first down migration is still visible.
        if version >= 0 or (version == NIL_VERSION and dirty):
            query = f"INSERT INTO {table} (version, dirty) VALUES (?, ?)"
            try:
                self.db.execute(query, (version, bool(dirty)))
            except sqlite3.Error as exc:
                self._rollback()
                raise DatabaseError(orig_err=exc, query=query.encode()) from exc

        try:
            self.db.execute("COMMIT")
        except sqlite3.Error as exc:
            raise DatabaseError("transaction commit failed", orig_err=exc) from exc

    def version(self) -> tuple[int, bool]:
        """Return the recorded version and dirty flag, or the nil version if none."""
        query = f"SELECT version, dirty FROM {self.config.migrations_table} LIMIT 1"
        try:
            row = self.db.execute(query).fetchone()
        except sqlite3.Error:
            return NIL_VERSION, False
        if row is None:
            return NIL_VERSION, False
        return int(row[0]), bool(row[1])


def with_instance(instance: sqlite3.Connection, config: SqliteConfig | None) -> SqliteDriver:
    """Wrap an open connection in a driver, creating the migrations table if needed.

    The connection is switched to autocommit mode so the driver controls transactions.
    """
    if config is None:
        raise ValueError("no config")
    instance.execute("SELECT 1")
    if not config.migrations_table:
        config.migrations_table = DEFAULT_MIGRATIONS_TABLE
    instance.isolation_level = None
    driver = SqliteDriver(instance, config)
    driver._ensure_version_table()
    return driver