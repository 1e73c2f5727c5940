"""Database driver for YugabyteDB (YSQL), working over any DB-API 2.0 connection.

Locking uses a dedicated lock table, and the transactional steps are retried
with exponential backoff when the server reports a transient failure.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import backoff

from .database import (
    NIL_VERSION,
    AtomicBool,
    DatabaseError,
    LockedError,
    NotLockedError,
    cas_restore_on_err,
    generate_advisory_lock_id,
)

DEFAULT_MAX_RETRY_INTERVAL = 15.0
DEFAULT_MAX_RETRY_ELAPSED_TIME = 30.0
DEFAULT_MAX_RETRIES = 10
DEFAULT_MIGRATIONS_TABLE = "migrations"
DEFAULT_LOCK_TABLE = "migrations_locks"

_PLACEHOLDER = "%s"
_UNDEFINED_TABLE = "42P01"

# serialization failure, deadlock detected, connection failure, internal error
_RETRYABLE_CODES = frozenset({"40001", "40P01", "08006", "XX000"})

_INITIAL_INTERVAL = 0.5
_MULTIPLIER = 1.5

_SCHEME_PREFIX = re.compile(r"^(yugabyte(db)?|ysql)")

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_INTEGER = re.compile(r"[+-]?\d+")


@dataclass
class YugabyteConfig:
    """Options for the YugabyteDB driver. Durations are in seconds."""

    migrations_table: str = ""
    lock_table: str = ""
    force_lock: bool = False
    database_name: str = ""
    max_retry_interval: float = 0.0
    max_retry_elapsed_time: float = 0.0
    max_retries: int = 0


class _PermanentError(Exception):
    """Marks an error that must not be retried."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.cause = cause


def _read(migration: Any) -> bytes:
    data = migration.read() if hasattr(migration, "read") else migration
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def _sqlstate(err: BaseException) -> str | None:
    return getattr(err, "pgcode", None) or getattr(err, "sqlstate", None)


def err_is_retryable(err: BaseException) -> bool:
    """Return True if the first server error in ``err``'s chain is a transient one."""
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        code = _sqlstate(current)
        if code is not None:
            return code in _RETRYABLE_CODES
        current = getattr(current, "orig_err", None) or current.__cause__
    return False


def _parse_bool(value: str) -> bool:
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean: {value!r}")


def _parse_duration(text: str) -> float:
    """Parse a duration such as ``"1m30s"`` or ``"500ms"`` into seconds."""
    if not text:
        raise ValueError("time: invalid duration \"\"")
    sign = 1.0
    body = text
    if body[0] in "+-":
        sign = -1.0 if body[0] == "-" else 1.0
        body = body[1:]
    if body == "0":
        return 0.0
    if not body:
        raise ValueError(f"time: invalid duration {text!r}")
    total = 0.0
    position = 0
    while position < len(body):
        match = _DURATION_PART.match(body, position)
        if match is None:
            raise ValueError(f"time: invalid duration {text!r}")
        total += float(match[1]) * _DURATION_UNITS[match[2]]
        position = match.end()
    return sign * total


def _parse_int(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"invalid integer: {text!r}")
    return int(text)


def config_from_url(url: str) -> tuple[str, YugabyteConfig]:
    """Split a ``yugabytedb://`` URL into a postgres connect string and driver options.

    Options starting with ``x-`` are removed from the connect string; values that
    cannot be parsed fall back to their defaults.
    """
    parts = urlsplit(url)
    params = parse_qsl(parts.query, keep_blank_values=True)
    options: dict[str, str] = {}
    for key, value in params:
        options.setdefault(key, value)

    kept = sorted(
        ((key, value) for key, value in params if not key.startswith("x-")),
        key=lambda pair: pair[0],
    )
    filtered = urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment)
    )
    connect_string = _SCHEME_PREFIX.sub("postgres", filtered, count=1)

    try:
        force_lock = _parse_bool(options.get("x-force-lock", ""))
    except ValueError:
        force_lock = False
    try:
        max_interval = _parse_duration(options.get("x-max-retry-interval", ""))
    except ValueError:
        max_interval = DEFAULT_MAX_RETRY_INTERVAL
    try:
        max_elapsed = _parse_duration(options.get("x-max-retry-elapsed-time", ""))
    except ValueError:
        max_elapsed = DEFAULT_MAX_RETRY_ELAPSED_TIME
    try:
        max_retries = _parse_int(options.get("x-max-retries", ""))
    except ValueError:
        max_retries = DEFAULT_MAX_RETRIES

    config = YugabyteConfig(
        migrations_table=options.get("x-migrations-table", "") or DEFAULT_MIGRATIONS_TABLE,
        lock_table=options.get("x-lock-table", "") or DEFAULT_LOCK_TABLE,
        force_lock=force_lock,
        database_name=parts.path,
        max_retry_interval=max_interval,
        max_retry_elapsed_time=max_elapsed,
        max_retries=max_retries,
    )
    return connect_string, config


class YugabyteDriver:
    """Runs migrations against YugabyteDB and records the applied version."""

    def __init__(self, instance: Any, config: YugabyteConfig) -> None:
        self.db = instance
        self.config = config
        self._locked = AtomicBool()

    def _rollback_quietly(self) -> None:
        try:
            self.db.rollback()
        except Exception:
            pass

    def _statement(
        self, query: str, params: Sequence[Any] = (), fetch: bool = False
    ) -> list[tuple[Any, ...]]:
        """Execute one statement outside an explicit transaction and commit it."""
        cursor = self.db.cursor()
        try:
            if params:
                cursor.execute(query, tuple(params))
            else:
                cursor.execute(query)
            rows = list(cursor.fetchall()) if fetch else []
            self.db.commit()
            return rows
        except BaseException:
            self._rollback_quietly()
            raise
        finally:
            cursor.close()

    def _do_tx_with_retry(self, func: Callable[[Any], None]) -> None:
        """Run ``func`` in a serializable transaction, retrying transient failures."""

        def attempt() -> None:
            try:
                cursor = self.db.cursor()
            except Exception as exc:
                raise _PermanentError(exc) from exc
            try:
                try:
                    cursor.execute("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE")
                except Exception as exc:
                    self._rollback_quietly()
                    raise _PermanentError(exc) from exc
                try:
                    func(cursor)
                    self.db.commit()
                except BaseException:
                    self._rollback_quietly()
                    raise
            finally:
                cursor.close()

        max_retries = self.config.max_retries
        retrying = backoff.on_exception(
            backoff.expo,
            Exception,
            max_tries=None if max_retries < 0 else max_retries + 1,
            max_time=self.config.max_retry_elapsed_time,
            giveup=lambda e: isinstance(e, _PermanentError) or not err_is_retryable(e),
            logger=None,
            base=_MULTIPLIER,
            factor=_INITIAL_INTERVAL,
            max_value=self.config.max_retry_interval,
        )(attempt)
        try:
            retrying()
        except _PermanentError as permanent:
            raise permanent.cause from permanent.cause.__cause__

    def close(self) -> None:
        self.db.close()

    def lock(self) -> None:
        """Take the migration lock by inserting a row into the lock table."""

        def take() -> None:
            def in_tx(cursor: Any) -> None:
                lock_id = generate_advisory_lock_id(self.config.database_name)
                query = f"SELECT * FROM {self.config.lock_table} WHERE lock_id = {_PLACEHOLDER}"
                try:
                    cursor.execute(query, (lock_id,))
                    locked = cursor.fetchone() is not None
                except Exception as exc:
                    raise DatabaseError(
                        "failed to fetch migration lock", orig_err=exc, query=query.encode()
                    ) from exc
                if locked and not self.config.force_lock:
                    raise LockedError()

                query = f"INSERT INTO {self.config.lock_table} (lock_id) VALUES ({_PLACEHOLDER})"
                try:
                    cursor.execute(query, (lock_id,))
                except Exception as exc:
                    raise DatabaseError(
                        "failed to set migration lock", orig_err=exc, query=query.encode()
                    ) from exc

            self._do_tx_with_retry(in_tx)

        cas_restore_on_err(self._locked, False, True, LockedError(), take)

    def unlock(self) -> None:
        """Release the migration lock; a missing lock table counts as unlocked."""

        def release() -> None:
            lock_id = generate_advisory_lock_id(self.config.database_name)
            query = f"DELETE FROM {self.config.lock_table} WHERE lock_id = {_PLACEHOLDER}"
            try:
                self._statement(query, (lock_id,))
            except Exception as exc:
                if _sqlstate(exc) == _UNDEFINED_TABLE:
                    return
                raise DatabaseError(
                    "failed to release migration lock", orig_err=exc, query=query.encode()
                ) from exc

        cas_restore_on_err(self._locked, True, False, NotLockedError(), release)

    def run(self, migration: Any) -> None:
        """Execute a migration body."""
        body = _read(migration)
        try:
            self._statement(body.decode("utf-8"))
        except Exception as exc:
            raise DatabaseError("migration failed", orig_err=exc, query=body) from exc

    def set_version(self, version: int, dirty: bool) -> None:
        """Replace the recorded version with ``version`` and its dirty flag."""
        table = self.config.migrations_table

        def in_tx(cursor: Any) -> None:
            cursor.execute(f'DELETE FROM "{table}"')
            # A dirty nil version is kept so a failed first down migration is still visible.
            if version >= 0 or (version == NIL_VERSION and dirty):
                cursor.execute(
                    f'INSERT INTO "{table}" (version, dirty) VALUES ({_PLACEHOLDER}, {_PLACEHOLDER})',
                    (version, bool(dirty)),
                )

        self._do_tx_with_retry(in_tx)

    def version(self) -> tuple[int, bool]:
        """Return the recorded version and dirty flag, or the nil version if none."""
        query = f'SELECT version, dirty FROM "{self.config.migrations_table}" LIMIT 1'
        try:
            rows = self._statement(query, fetch=True)
        except Exception as exc:
            if _sqlstate(exc) == _UNDEFINED_TABLE:
                return NIL_VERSION, False
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        if not rows:
            return NIL_VERSION, False
        return int(rows[0][0]), bool(rows[0][1])

    def drop(self) -> None:
        """Drop every base table in the current schema."""
        query = (
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema=(SELECT current_schema()) AND table_type='BASE TABLE'"
        )
        try:
            rows = self._statement(query, fetch=True)
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        for table in [row[0] for row in rows if row[0]]:
            statement = f"DROP TABLE IF EXISTS {table} CASCADE"
            try:
                self._statement(statement)
            except Exception as exc:
                raise DatabaseError(orig_err=exc, query=statement.encode()) from exc

    def _table_exists(self, table: str) -> bool:
        query = (
            "SELECT COUNT(1) FROM information_schema.tables WHERE table_name = "
            f"{_PLACEHOLDER} AND table_schema = (SELECT current_schema()) LIMIT 1"
        )
        try:
            rows = self._statement(query, (table,), fetch=True)
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        return bool(rows) and int(rows[0][0]) == 1

    def _create_table(self, query: str) -> None:
        try:
            self._statement(query)
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc

    def _ensure_version_table(self) -> None:
        """Create the migrations table if it is missing; locks while doing so."""
        self.lock()
        try:
            table = self.config.migrations_table
            if not self._table_exists(table):
                self._create_table(
                    f'CREATE TABLE "{table}" (version INT NOT NULL PRIMARY KEY, dirty BOOL NOT NULL)'
                )
        finally:
            self.unlock()

    def _ensure_lock_table(self) -> None:
        table = self.config.lock_table
        if not self._table_exists(table):
            self._create_table(f'CREATE TABLE "{table}" (lock_id TEXT NOT NULL PRIMARY KEY)')


def with_instance(instance: Any, config: YugabyteConfig | None) -> YugabyteDriver:
    """Wrap an open connection in a driver, creating the lock and migrations tables."""
    if config is None:
        raise ValueError("no config")

    driver = YugabyteDriver(instance, config)
    driver._statement("SELECT 1", fetch=True)

    if not config.database_name:
        query = "SELECT current_database()"
        try:
            rows = driver._statement(query, fetch=True)
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        if not rows:
            raise DatabaseError("no rows in result set", query=query.encode())
        name = rows[0][0] or ""
        if not name:
            raise ValueError("no database name")
        config.database_name = name

    if not config.migrations_table:
        config.migrations_table = DEFAULT_MIGRATIONS_TABLE
    if not config.lock_table:
        config.lock_table = DEFAULT_LOCK_TABLE
    if config.max_retry_interval == 0:
        config.max_retry_interval = DEFAULT_MAX_RETRY_INTERVAL
    if config.max_retry_elapsed_time == 0:
        config.max_retry_elapsed_time = DEFAULT_MAX_RETRY_ELAPSED_TIME
    if config.max_retries == 0:
        config.max_retries = DEFAULT_MAX_RETRIES

    # The version table is created under the lock, so the lock table comes first.
    driver._ensure_lock_table()
    driver._ensure_version_table()
    return driver