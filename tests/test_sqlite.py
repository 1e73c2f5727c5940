import sqlite3

import pytest

from schemashift.database import NIL_VERSION, DatabaseError, LockedError, NotLockedError
from schemashift.sqlite import (
    DEFAULT_MIGRATIONS_TABLE,
    SqliteConfig,
    SqliteDriver,
    with_instance,
)

SCHEMES = ["sqlite", "sqlite3", "sqlcipher"]


def _tables(path):
    with sqlite3.connect(path) as conn:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    conn.close()
    return {name for (name,) in rows}


def _exercise(driver, migration):
    assert driver.version() == (NIL_VERSION, False)

    driver.lock()
    with pytest.raises(LockedError):
        driver.lock()
    driver.unlock()
    with pytest.raises(NotLockedError):
        driver.unlock()

    driver.run(migration)

    for version, dirty, expected in [
        (1, False, (1, False)),
        (2, True, (2, True)),
        (NIL_VERSION, True, (NIL_VERSION, True)),
        (NIL_VERSION, False, (NIL_VERSION, False)),
        (0, False, (0, False)),
    ]:
        driver.set_version(version, dirty)
        assert driver.version() == expected

    driver.drop()
    assert driver.version() == (NIL_VERSION, False)


@pytest.mark.parametrize("scheme", SCHEMES)
def test_open_and_full_cycle(tmp_path, scheme):
    path = tmp_path / "sqlite.db"
    driver = SqliteDriver().open(f"{scheme}://{path}")
    try:
        _exercise(driver, b"CREATE TABLE t (Qty int, Name string);")
    finally:
        driver.close()
    assert "t" not in _tables(path)


def test_run_creates_table(tmp_path):
    path = tmp_path / "sqlite.db"
    driver = SqliteDriver().open(f"sqlite://{path}")
    driver.run("CREATE TABLE t (Qty int, Name string);")
    driver.close()
    assert _tables(path) == {"t", DEFAULT_MIGRATIONS_TABLE}


def test_run_accepts_file_object(tmp_path):
    import io

    path = tmp_path / "sqlite.db"
    driver = SqliteDriver().open(f"sqlite://{path}")
    driver.run(io.BytesIO(b"CREATE TABLE a (x int); CREATE TABLE b (y int);"))
    driver.close()
    assert {"a", "b"} <= _tables(path)


def test_with_instance_default_table(tmp_path):
    conn = sqlite3.connect(tmp_path / "sqlite.db")
    config = SqliteConfig()
    driver = with_instance(conn, config)
    assert config.migrations_table == DEFAULT_MIGRATIONS_TABLE
    driver.set_version(3, False)
    assert driver.version() == (3, False)
    conn.close()


def test_migration_table(tmp_path):
    conn = sqlite3.connect(tmp_path / "sqlite.db")
    config = SqliteConfig(migrations_table="my_migration_table")
    driver = with_instance(conn, config)
    driver.run("CREATE TABLE t (Qty int, Name string);")
    driver.set_version(1, False)
    rows = conn.execute("SELECT version, dirty FROM my_migration_table").fetchall()
    assert rows == [(1, 1)]
    conn.close()


def test_with_instance_requires_config(tmp_path):
    conn = sqlite3.connect(tmp_path / "sqlite.db")
    with pytest.raises(ValueError, match="no config"):
        with_instance(conn, None)
    conn.close()


def test_migrations_table_from_url(tmp_path):
    path = tmp_path / "sqlite.db"
    driver = SqliteDriver().open(f"sqlite://{path}?x-migrations-table=custom_versions")
    assert driver.config.migrations_table == "custom_versions"
    driver.close()
    assert "custom_versions" in _tables(path)


def test_database_name_is_url_path(tmp_path):
    path = tmp_path / "sqlite.db"
    driver = SqliteDriver().open(f"sqlite3://{path}")
    assert driver.config.database_name == str(path)
    driver.close()


@pytest.mark.parametrize("scheme", SCHEMES)
def test_no_tx_wrap(tmp_path, scheme):
    path = tmp_path / "sqlite.db"
    driver = SqliteDriver().open(f"{scheme}://{path}?x-no-tx-wrap=true")
    assert driver.config.no_tx_wrap is True
    try:
        _exercise(driver, b"BEGIN; CREATE TABLE t (Qty int, Name string); COMMIT;")
    finally:
        driver.close()


def test_explicit_begin_fails_when_wrapped(tmp_path):
    path = tmp_path / "sqlite.db"
    driver = SqliteDriver().open(f"sqlite://{path}")
    with pytest.raises(DatabaseError) as info:
        driver.run(b"BEGIN; CREATE TABLE t (Qty int, Name string); COMMIT;")
    assert b"BEGIN" in info.value.query
    driver.close()
    assert "t" not in _tables(path)


@pytest.mark.parametrize("scheme", SCHEMES)
def test_no_tx_wrap_invalid_value(tmp_path, scheme):
    path = tmp_path / "sqlite.db"
    with pytest.raises(ValueError) as info:
        SqliteDriver().open(f"{scheme}://{path}?x-no-tx-wrap=yeppers")
    assert "x-no-tx-wrap" in str(info.value)
    assert "invalid syntax" in str(info.value)


@pytest.mark.parametrize("value, expected", [("1", True), ("t", True), ("False", False), ("0", False)])
def test_no_tx_wrap_accepted_values(tmp_path, value, expected):
    path = tmp_path / "sqlite.db"
    driver = SqliteDriver().open(f"sqlite://{path}?x-no-tx-wrap={value}")
    assert driver.config.no_tx_wrap is expected
    driver.close()


@pytest.mark.parametrize("scheme", ["sqlite", "sqlite3"])
def test_file_uri_location(tmp_path, scheme):
    path = tmp_path / "sqlite.db"
    driver = SqliteDriver().open(f"{scheme}://file:{path}")
    try:
        _exercise(driver, b"CREATE TABLE t (Qty int, Name string);")
    finally:
        driver.close()
    assert path.exists()


def test_failed_migration_rolls_back(tmp_path):
    path = tmp_path / "sqlite.db"
    driver = SqliteDriver().open(f"sqlite://{path}")
    with pytest.raises(DatabaseError) as info:
        driver.run("CREATE TABLE ok_table (x int); THIS IS NOT SQL;")
    assert info.value.query.startswith(b"CREATE TABLE ok_table")
    driver.close()
    assert "ok_table" not in _tables(path)


def test_statement_with_semicolon_in_literal(tmp_path):
    path = tmp_path / "sqlite.db"
    driver = SqliteDriver().open(f"sqlite://{path}")
    driver.run("CREATE TABLE t (s text); INSERT INTO t VALUES ('a;b');")
    driver.close()
    with sqlite3.connect(path) as conn:
        rows = conn.execute("SELECT s FROM t").fetchall()
    conn.close()
    assert rows == [("a;b",)]


def test_close_closes_connection(tmp_path):
    conn = sqlite3.connect(tmp_path / "sqlite.db")
    driver = with_instance(conn, SqliteConfig())
    driver.close()
    with pytest.raises(sqlite3.ProgrammingError):
        conn.execute("SELECT 1")


def test_drop_removes_all_tables(tmp_path):
    path = tmp_path / "sqlite.db"
    driver = SqliteDriver().open(f"sqlite://{path}")
    driver.run("CREATE TABLE a (x int); CREATE TABLE b (y int);")
    driver.set_version(5, False)
    driver.drop()
    driver.close()
    assert _tables(path) == set()
    assert NIL_VERSION == -1