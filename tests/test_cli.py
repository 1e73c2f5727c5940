import io
import re
import sys

import pytest

from schemashift import cli


def run(argv):
    with pytest.raises(SystemExit) as info:
        cli.main(argv)
    return info.value.code


def test_version_flag_prints_version(capsys):
    assert run(["-version"]) == 0
    assert capsys.readouterr().err == cli.VERSION + "\n"


def test_no_command_prints_usage_and_exits_2(capsys):
    assert run([]) == 2
    assert "Usage: migrate OPTIONS COMMAND [arg...]" in capsys.readouterr().err


def test_unknown_command_exits_2(capsys):
    assert run(["bogus"]) == 2
    assert "Commands:" in capsys.readouterr().err


def test_help_flag_lists_drivers(capsys):
    assert run(["-help"]) == 0
    err = capsys.readouterr().err
    assert "Database drivers:" in err
    assert "sqlite3" in err


def test_short_help_flag_exits_0(capsys):
    assert run(["-h"]) == 0
    assert "Usage: migrate" in capsys.readouterr().err


def test_undefined_flag(capsys):
    assert run(["-nosuch"]) == 2
    assert "flag provided but not defined: -nosuch" in capsys.readouterr().err


def test_invalid_boolean_flag(capsys):
    assert run(["-verbose=maybe", "up"]) == 2
    assert 'invalid boolean value "maybe" for -verbose' in capsys.readouterr().err


def test_flag_missing_argument(capsys):
    assert run(["-prefetch"]) == 2
    assert "flag needs an argument: -prefetch" in capsys.readouterr().err


def test_create_sequential_files(tmp_path, capsys):
    cli.main(["create", "-ext", "sql", "-dir", str(tmp_path), "-seq", "init"])
    names = sorted(p.name for p in tmp_path.iterdir())
    assert names == ["000001_init.down.sql", "000001_init.up.sql"]
    assert str(tmp_path / "000001_init.up.sql") in capsys.readouterr().err


def test_create_sequential_increments(tmp_path):
    cli.main(["create", "-ext", "sql", "-dir", str(tmp_path), "-seq", "-digits", "4", "first"])
    cli.main(["create", "-ext", ".sql", "-dir", str(tmp_path), "-seq", "-digits", "4", "second"])
    assert (tmp_path / "0002_second.up.sql").exists()
    assert (tmp_path / "0002_second.down.sql").exists()


def test_create_timestamped_files(tmp_path):
    cli.main(["create", "-ext", "sql", "-dir", str(tmp_path), "-format", "20060102", "-tz", "UTC", "daily"])
    names = sorted(p.name for p in tmp_path.iterdir())
    assert len(names) == 2
    assert all(re.fullmatch(r"\d{8}_daily\.(up|down)\.sql", n) for n in names)


def test_create_duplicate_version(tmp_path, capsys):
    args = ["create", "-ext", "sql", "-dir", str(tmp_path), "-format", "20060102", "dup"]
    cli.main(args)
    assert run(args) == 1
    assert "duplicate migration version" in capsys.readouterr().err


def test_create_seq_with_format_conflict(tmp_path, capsys):
    assert run(["create", "-ext", "sql", "-dir", str(tmp_path), "-seq", "-format", "unix", "x"]) == 1
    assert "error: The seq and format options are mutually exclusive" in capsys.readouterr().err
    assert list(tmp_path.iterdir()) == []


def test_create_requires_name(capsys):
    assert run(["create", "-ext", "sql"]) == 1
    assert "error: please specify name" in capsys.readouterr().err


def test_create_requires_ext(tmp_path, capsys):
    assert run(["create", "-dir", str(tmp_path), "name"]) == 1
    assert "error: -ext flag must be specified" in capsys.readouterr().err


def test_create_unknown_timezone(tmp_path, capsys):
    assert run(["create", "-ext", "sql", "-dir", str(tmp_path), "-tz", "Nowhere/Invalid", "x"]) == 1
    assert "unknown time zone Nowhere/Invalid" in capsys.readouterr().err


def test_create_invalid_digits(capsys):
    assert run(["create", "-digits", "abc", "x"]) == 2
    assert 'invalid value "abc" for flag -digits' in capsys.readouterr().err


def test_create_help_lists_flags(capsys):
    assert run(["create", "-help"]) == 0
    err = capsys.readouterr().err
    assert "Create a set of timestamped up/down migrations titled NAME" in err
    assert "  -ext string" in err


def test_up_help(capsys):
    assert run(["up", "-help"]) == 0
    assert "Apply all or N up migrations" in capsys.readouterr().err


def test_up_without_source_reports_empty_url(capsys):
    assert run(["up"]) == 1
    assert "error: URL cannot be empty" in capsys.readouterr().err


def test_path_becomes_file_source(capsys):
    assert run(["-path", "migrations", "goto", "3"]) == 1
    assert "unknown driver file" in capsys.readouterr().err


def test_source_without_scheme(capsys):
    assert run(["-source", "nosource", "version"]) == 1
    assert "error: no scheme" in capsys.readouterr().err


def test_drop_aborted_without_confirmation(monkeypatch, capsys):
    monkeypatch.setattr(sys, "stdin", io.StringIO("n\n"))
    assert run(["drop"]) == 1
    assert "Aborted dropping the entire database schema" in capsys.readouterr().err


def test_drop_confirmed_then_needs_session(monkeypatch, capsys):
    monkeypatch.setattr(sys, "stdin", io.StringIO(" Y \n"))
    assert run(["drop"]) == 1
    err = capsys.readouterr().err
    assert "Dropping the entire database schema" in err
    assert "error: URL cannot be empty" in err


def test_drop_force_skips_prompt(capsys):
    assert run(["drop", "-f"]) == 1
    err = capsys.readouterr().err
    assert "Are you sure" not in err
    assert "error: URL cannot be empty" in err


def test_down_help_mentions_all(capsys):
    assert run(["down", "-help"]) == 0
    assert "Use -all to apply all down migrations" in capsys.readouterr().err