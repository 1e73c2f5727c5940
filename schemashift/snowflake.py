"""Database driver for Snowflake, working over any DB-API 2.0 connection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from .database import (
    NIL_VERSION,
    AtomicBool,
    DatabaseError,
    LockedError,
    NotLockedError,
)

DEFAULT_MIGRATIONS_TABLE = "schema_migrations"

_PLACEHOLDER = "%s"
_UNDEFINED_TABLE = "42P01"
_NEWLINE = "\n"


@dataclass
class SnowflakeConfig:
    """Options for the Snowflake driver."""

    migrations_table: str = ""
    database_name: str = ""


def _read(migration: Any) -> bytes:
    data = migration.read() if hasattr(migration, "read") else migration
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def compute_line_from_pos(text: str, pos: int) -> tuple[int, int, bool]:
    """Turn a 1-based character position into ``(line, column, ok)``.

    CRLF line endings count as a single newline. ``ok`` is False when the
    position lies beyond the end of ``text``.
    """
    if pos < 0:
        raise ValueError(f"position must not be negative: {pos}")
    text = text.replace("\r\n", "\n")
    if pos > len(text):
        return 0, 0, False
    selected = text[:pos]
    line = selected.count(_NEWLINE) + 1
    column = pos - 1 - selected.rfind(_NEWLINE)
    return line, column, True


def _error_fields(exc: BaseException) -> tuple[str, str, str] | None:
    """Return ``(message, position, detail)`` for server errors that carry them."""
    diag = getattr(exc, "diag", None)
    if diag is not None:
        return (
            getattr(diag, "message_primary", None) or str(exc),
            str(getattr(diag, "statement_position", None) or ""),
            getattr(diag, "message_detail", None) or "",
        )
    if hasattr(exc, "pgcode"):
        return (
            getattr(exc, "message", None) or str(exc),
            str(getattr(exc, "position", None) or ""),
            getattr(exc, "detail", None) or "",
        )
    return None


def _is_undefined_table(exc: BaseException) -> bool:
    return getattr(exc, "pgcode", None) == _UNDEFINED_TABLE


class SnowflakeDriver:
    """Runs migrations against Snowflake and records the applied version."""

    def __init__(self, instance: Any, config: SnowflakeConfig) -> None:
        self.db = instance
        self.config = config
        self._locked = AtomicBool()

    def _execute(self, query: str, params: Sequence[Any] = ()) -> list[tuple[Any, ...]]:
        cursor = self.db.cursor()
        try:
            if params:
                cursor.execute(query, tuple(params))
            else:
                cursor.execute(query)
            if query.lstrip().upper().startswith("SELECT"):
                return list(cursor.fetchall())
            return []
        finally:
            cursor.close()

    def close(self) -> None:
        self.db.close()

    def lock(self) -> None:
        if not self._locked.compare_and_swap(False, True):
            raise LockedError()

    def unlock(self) -> None:
        if not self._locked.compare_and_swap(True, False):
            raise NotLockedError()

    def run(self, migration: Any) -> None:
        """Execute a migration body, reporting the failing line and column if known."""
        body = _read(migration)
        query = body.decode("utf-8")
        try:
            self._execute(query)
        except Exception as exc:
            fields = _error_fields(exc)
            if fields is None:
                raise DatabaseError("migration failed", orig_err=exc, query=body) from exc
            text, position, detail = fields
            line = column = 0
            located = False
            if position.isdigit():
                line, column, located = compute_line_from_pos(query, int(position))
            message = f"migration failed: {text}"
            if located:
                message = f"{message} (column {column})"
            if detail:
                message = f"{message}, {detail}"
            raise DatabaseError(message, orig_err=exc, query=body, line=line) from exc

    def _rollback_and_raise(self, exc: BaseException, query: str) -> None:
        try:
            self.db.rollback()
        except Exception as rollback_exc:
            raise DatabaseError(orig_err=rollback_exc, query=query.encode()) from exc
        raise DatabaseError(orig_err=exc, query=query.encode()) from exc

    def set_version(self, version: int, dirty: bool) -> None:
        """Replace the recorded version with ``version`` and its dirty flag."""
        table = self.config.migrations_table
        try:
            cursor = self.db.cursor()
        except Exception as exc:
            raise DatabaseError("transaction start failed", orig_err=exc) from exc
        try:
            query = f'DELETE FROM "{table}"'
            try:
                cursor.execute(query)
            except Exception as exc:
                self._rollback_and_raise(exc, query)

            # A dirty nil version is kept so a failed first down migration is still visible.
            if version >= 0 or (version == NIL_VERSION and dirty):
                flag = "true" if dirty else "false"
                query = (
                    f'INSERT INTO "{table}" (version,\n'
                    f"\t\t\t\tdirty) VALUES ({int(version)},\n"
                    f"\t\t\t\t{flag})"
                )
                try:
                    cursor.execute(query)
                except Exception as exc:
                    self._rollback_and_raise(exc, query)
        finally:
            cursor.close()

        try:
            self.db.commit()
        except Exception as exc:
            raise DatabaseError("transaction commit failed", orig_err=exc) from exc

    def version(self) -> tuple[int, bool]:
        """Return the recorded version and dirty flag, or the nil version if none."""
        query = f'SELECT version, dirty FROM "{self.config.migrations_table}" LIMIT 1'
        try:
            rows = self._execute(query)
        except Exception as exc:
            if _is_undefined_table(exc):
                return NIL_VERSION, False
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        if not rows:
            return NIL_VERSION, False
        version, dirty = rows[0][0], rows[0][1]
        return int(version), bool(dirty)

    def drop(self) -> None:
        """Drop every base table in the current schema."""
        query = (
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema=(SELECT current_schema()) AND table_type='BASE TABLE'"
        )
        try:
            rows = self._execute(query)
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        table_names = [row[0] for row in rows if row[0]]
        for table in table_names:
            statement = f"DROP TABLE IF EXISTS {table} CASCADE"
            try:
                self._execute(statement)
            except Exception as exc:
                raise DatabaseError(orig_err=exc, query=statement.encode()) from exc

    def _ensure_version_table(self) -> None:
        """Create the migrations table if it is missing; locks while doing so."""
        self.lock()
        try:
            table = self.config.migrations_table
            query = (
                "SELECT COUNT(1) FROM information_schema.tables WHERE table_name = "
                f"{_PLACEHOLDER} AND table_schema = (SELECT current_schema()) LIMIT 1"
            )
            try:
                rows = self._execute(query, (table,))
            except Exception as exc:
                raise DatabaseError(orig_err=exc, query=query.encode()) from exc
            if rows and int(rows[0][0]) == 1:
                return

            query = (
                f'CREATE TABLE if not exists "{table}" (\n'
                "\t\t\tversion bigint not null primary key, dirty boolean not null)"
            )
            try:
                self._execute(query)
            except Exception as exc:
                raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        finally:
            self.unlock()


def with_instance(instance: Any, config: SnowflakeConfig | None) -> SnowflakeDriver:
    """Wrap an open connection in a driver, creating the migrations table if needed."""
    if config is None:
        raise ValueError("no config")

    cursor = instance.cursor()
    try:
        cursor.execute("SELECT 1")
        cursor.fetchall()
    finally:
        cursor.close()

    if not config.database_name:
        query = "SELECT CURRENT_DATABASE()"
        cursor = instance.cursor()
        try:
            cursor.execute(query)
            row = cursor.fetchone()
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        finally:
            cursor.close()
        if row is None:
            raise DatabaseError("no rows in result set", query=query.encode())
        name = row[0] or ""
        if not name:
            raise ValueError("no database name")
        config.database_name = name

    if not config.migrations_table:
        config.migrations_table = DEFAULT_MIGRATIONS_TABLE

    driver = SnowflakeDriver(instance, config)
    driver._ensure_version_table()
    return driver