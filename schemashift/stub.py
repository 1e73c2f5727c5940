"""An in-memory database driver that records the migrations it is given."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .database import NIL_VERSION, AtomicBool, LockedError, NotLockedError

DROP = "DROP"


@dataclass
class StubConfig:
    """Configuration for the stub driver; it has no options."""


def _read(migration: Any) -> bytes:
    data = migration.read() if hasattr(migration, "read") else migration
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


@dataclass
class StubDriver:
    """Driver that keeps its version and migration history in memory."""

    url: str = ""
    instance: Any = None
    current_version: int = NIL_VERSION
    migration_sequence: list[str] = field(default_factory=list)
    last_run_migration: bytes | None = None
    is_dirty: bool = False
    config: StubConfig | None = None
    _locked: AtomicBool = field(default_factory=AtomicBool, repr=False, compare=False)

    def open(self, url: str) -> StubDriver:
        return StubDriver(url=url, config=StubConfig())

    def close(self) -> None:
        pass

    def lock(self) -> None:
        if not self._locked.compare_and_swap(False, True):
            raise LockedError()

    def unlock(self) -> None:
        if not self._locked.compare_and_swap(True, False):
            raise NotLockedError()

    def run(self, migration: Any) -> None:
        body = _read(migration)
        self.last_run_migration = body
        self.migration_sequence.append(body.decode("utf-8", errors="replace"))

    def set_version(self, version: int, dirty: bool) -> None:
        self.current_version = version
        self.is_dirty = dirty

    def version(self) -> tuple[int, bool]:
        return self.current_version, self.is_dirty

    def drop(self) -> None:
        self.current_version = NIL_VERSION
        self.last_run_migration = None
        self.migration_sequence.append(DROP)

    def equal_sequence(self, seq: list[str]) -> bool:
        return list(seq) == self.migration_sequence


def with_instance(instance: Any, config: StubConfig | None) -> StubDriver:
    """Create a stub driver wrapping an existing instance."""
    return StubDriver(instance=instance, config=config)