"""Shared pieces for database drivers: errors, locking helpers and the logger interface."""

from __future__ import annotations

import threading
import zlib
from abc import ABC, abstractmethod
from typing import Callable

NIL_VERSION = -1

_ADVISORY_LOCK_ID_SALT = 1486364155


class DatabaseError(Exception):
    """An error raised by a database driver, optionally carrying the failing query."""

    def __init__(
        self,
        err: str = "",
        *,
        orig_err: BaseException | None = None,
        query: bytes = b"",
        line: int = 0,
    ) -> None:
        self.err = err
        self.orig_err = orig_err
        self.query = query
        self.line = line
        super().__init__(str(self))

    def __str__(self) -> str:
        message = self.err or (str(self.orig_err) if self.orig_err is not None else "")
        if self.err and self.orig_err is not None:
            message = f"{self.err}: {self.orig_err}"
        if self.line:
            message = f"{message} in line {self.line}"
        if self.query:
            message = f"{message}: {self.query.decode('utf-8', errors='replace')}"
        return message


class LockedError(Exception):
    """Raised when a lock is requested but is already held."""

    def __init__(self, message: str = "can't acquire lock") -> None:
        super().__init__(message)


class NotLockedError(Exception):
    """Raised when an unlock is requested but no lock is held."""

    def __init__(self, message: str = "can't unlock, as not currently locked") -> None:
        super().__init__(message)


class Logger(ABC):
    """Interface for a logger that a migration run can report through."""

    @abstractmethod
    def printf(self, fmt: str, *args: object) -> None:
        """Write a formatted message."""

    @abstractmethod
    def verbose(self) -> bool:
        """Return True when verbose output is wanted."""


class AtomicBool:
    """A boolean flag with atomic load, store and compare-and-swap."""

    def __init__(self, value: bool = False) -> None:
        self._value = bool(value)
        self._mutex = threading.Lock()

    def load(self) -> bool:
        with self._mutex:
            return self._value

    def store(self, value: bool) -> None:
        with self._mutex:
            self._value = bool(value)

    def compare_and_swap(self, old: bool, new: bool) -> bool:
        """Set the flag to ``new`` if it equals ``old``; return whether it was swapped."""
        with self._mutex:
            if self._value != old:
                return False
            self._value = bool(new)
            return True

    def __repr__(self) -> str:
        return f"AtomicBool({self.load()})"


def generate_advisory_lock_id(database_name: str, *args: str) -> str:
    """Derive a numeric advisory lock id from a database name and optional extra names."""
    if args:
        database_name = "\x00".join([*args, database_name])
    checksum = zlib.crc32(database_name.encode("utf-8")) & 0xFFFFFFFF
    return str((checksum * _ADVISORY_LOCK_ID_SALT) & 0xFFFFFFFF)


def cas_restore_on_err(
    lock: AtomicBool,
    old: bool,
    new: bool,
    cas_error: BaseException,
    func: Callable[[], object],
) -> None:
    """Swap ``lock`` from ``old`` to ``new`` and run ``func``; restore ``old`` if it raises."""
    if not lock.compare_and_swap(old, new):
        raise cas_error
    try:
        func()
    except BaseException:
        lock.store(old)
        raise