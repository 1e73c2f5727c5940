"""Command-line entry point: global options, sub-commands and their flags."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from importlib import metadata
from typing import Callable, NoReturn, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .commands import DEFAULT_TIME_FORMAT, DEFAULT_TIMEZONE, create_cmd, logger
from .urls import scheme_from_url

try:
    VERSION = metadata.version("schemashift")
except metadata.PackageNotFoundError:
    VERSION = "dev"

CREATE_USAGE = """create [-ext E] [-dir D] [-seq] [-digits N] [-format] [-tz] NAME
	   Create a set of timestamped up/down migrations titled NAME, in directory D with extension E.
	   Use -seq option to generate sequential up/down migrations with N digits.
	   Use -format option to specify a Go time format string. Note: migrations with the same time cause "duplicate migration version" error.
           Use -tz option to specify the timezone that will be used when generating non-sequential migrations (defaults: UTC).
"""
GOTO_USAGE = "goto V       Migrate to version V"
UP_USAGE = "up [N]       Apply all or N up migrations"
DOWN_USAGE = """down [N] [-all]    Apply all or N down migrations
	Use -all to apply all down migrations"""
DROP_USAGE = """drop [-f]    Drop everything inside database
	Use -f to bypass confirmation"""
FORCE_USAGE = "force V      Set version V but don't run migration (ignores dirty state)"

SOURCE_DRIVERS: tuple[str, ...] = ()
DATABASE_DRIVERS: tuple[str, ...] = ("sqlcipher", "sqlite", "sqlite3", "stub")

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}
_TYPE_NAMES = {"bool": "", "str": "string", "int": "int", "uint": "uint"}


class _FlagError(Exception):
    """A command-line flag could not be parsed."""


class _HelpRequested(Exception):
    """-h or -help was given without being defined."""


@dataclass
class _Flag:
    name: str
    kind: str
    default: object
    usage: str


def _parse_bool(text: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError("parse error")


def _parse_value(kind: str, text: str) -> object:
    if kind == "str":
        return text
    try:
        value = int(text, 0)
    except ValueError:
        raise ValueError("parse error") from None
    if kind == "uint" and value < 0:
        raise ValueError("parse error")
    return value


class _FlagSet:
    """Flags in the single-dash style: ``-name value``, ``-name=value`` or ``-bool``."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._flags: dict[str, _Flag] = {}
        self.values: dict[str, object] = {}

    def define(self, name: str, kind: str, default: object, usage: str) -> None:
        self._flags[name] = _Flag(name, kind, default, usage)
        self.values[name] = default

    def __getitem__(self, name: str) -> object:
        return self.values[name]

    def parse(self, arguments: Sequence[str]) -> list[str]:
        """Consume leading flags and return the remaining arguments."""
        remaining = list(arguments)
        while remaining:
            token = remaining[0]
            if len(token) < 2 or token[0] != "-":
                break
            minuses = 2 if token[1] == "-" else 1
            remaining.pop(0)
            if minuses == 2 and len(token) == 2:
                break
            body = token[minuses:]
            if not body or body[0] in "-=":
                raise _FlagError(f"bad flag syntax: {token}")
            name, has_value, value = body.partition("=")
            flag = self._flags.get(name)
            if flag is None:
                if name in ("help", "h"):
                    raise _HelpRequested()
                raise _FlagError(f"flag provided but not defined: -{name}")
            if flag.kind == "bool":
                text = value if has_value else "true"
                try:
                    self.values[name] = _parse_bool(text)
                except ValueError as exc:
                    raise _FlagError(f'invalid boolean value "{text}" for -{name}: {exc}') from None
                continue
            if not has_value:
                if not remaining:
                    raise _FlagError(f"flag needs an argument: -{name}")
                value = remaining.pop(0)
            try:
                self.values[name] = _parse_value(flag.kind, value)
            except ValueError as exc:
                raise _FlagError(f'invalid value "{value}" for flag -{name}: {exc}') from None
        return remaining

    def defaults(self) -> str:
        """Describe every flag, its type and its non-zero default."""
        lines = []
        for name in sorted(self._flags):
            flag = self._flags[name]
            entry = f"  -{name}"
            type_name = _TYPE_NAMES[flag.kind]
            if type_name:
                entry += " " + type_name
            entry += "\t" if len(entry) <= 4 else "\n    \t"
            entry += flag.usage.replace("\n", "\n    \t")
            if flag.default not in ("", 0, False):
                shown = f'"{flag.default}"' if flag.kind == "str" else str(flag.default)
                entry += f" (default {shown})"
            lines.append(entry + "\n")
        return "".join(lines)


def _print_usage() -> None:
    sys.stderr.write(
        "Usage: migrate OPTIONS COMMAND [arg...]\n"
        "       migrate [ -version | -help ]\n"
        "\n"
        "Options:\n"
        "  -source          Location of the migrations (driver://url)\n"
        "  -path            Shorthand for -source=file://path\n"
        "  -database        Run migrations against this database (driver://url)\n"
        "  -prefetch N      Number of migrations to load in advance before executing (default 10)\n"
        "  -lock-timeout N  Allow N seconds to acquire database lock (default 15)\n"
        "  -verbose         Print verbose logging\n"
        "  -version         Print version\n"
        "  -help            Print usage\n"
        "\n"
        "Commands:\n"
        f"  {CREATE_USAGE}\n"
        f"  {GOTO_USAGE}\n"
        f"  {UP_USAGE}\n"
        f"  {DOWN_USAGE}\n"
        f"  {DROP_USAGE}\n"
        f"  {FORCE_USAGE}\n"
        "  version      Print current migration version\n"
        "\n"
        f"Source drivers: {', '.join(SOURCE_DRIVERS)}\n"
        f"Database drivers: {', '.join(DATABASE_DRIVERS)}\n"
    )
    sys.stderr.flush()


def _usage_and_exit() -> NoReturn:
    _print_usage()
    raise SystemExit(2)


def _parse_or_exit(
    flags: _FlagSet, arguments: Sequence[str], usage: Callable[[], None]
) -> list[str]:
    try:
        return flags.parse(arguments)
    except _HelpRequested:
        usage()
        raise SystemExit(0) from None
    except _FlagError as exc:
        sys.stderr.write(f"{exc}\n")
        usage()
        raise SystemExit(2) from None


def _sub_flags(name: str) -> _FlagSet:
    flags = _FlagSet(name)
    flags.define("help", "bool", False, "Print help information")
    return flags


def _parse_sub(flags: _FlagSet, arguments: Sequence[str], usage: str) -> list[str]:
    """Parse a sub-command's flags, printing its help and exiting if asked."""

    def default_usage() -> None:
        sys.stderr.write(f"Usage of {flags.name}:\n{flags.defaults()}")

    rest = _parse_or_exit(flags, arguments, default_usage)
    if flags["help"]:
        sys.stderr.write(usage + "\n" + flags.defaults())
        raise SystemExit(0)
    return rest


def _session_error(source_url: str) -> Exception:
    """Explain why a migration session cannot be opened from ``source_url``.

    No migration source drivers are available, so every source is refused.
    """
    try:
        scheme = scheme_from_url(source_url)
    except ValueError as exc:
        return exc
    return ValueError(f"source driver: unknown driver {scheme} (forgotten import?)")


def _load_location(name: str) -> tzinfo:
    if name in ("", "UTC"):
        return timezone.utc
    if name == "Local":
        local = datetime.now().astimezone().tzinfo
        return local if local is not None else timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise ValueError(f"unknown time zone {name}") from None


def _confirmed() -> bool:
    words = sys.stdin.readline().split()
    response = words[0] if words else ""
    return response.strip().lower() == "y"


def _create(arguments: Sequence[str], session_error: Exception, start_time: datetime) -> None:
    flags = _sub_flags("create")
    flags.define("ext", "str", "", "File extension")
    flags.define("dir", "str", "", "Directory to place file in (default: current working directory)")
    flags.define(
        "format",
        "str",
        DEFAULT_TIME_FORMAT,
        'The Go time format string to use. If the string "unix" or "unixNano" is specified, '
        "then the seconds or nanoseconds since January 1, 1970 UTC respectively will be used. "
        "Caution, due to the behavior of time.Time.Format(), invalid format strings will not error",
    )
    flags.define(
        "tz",
        "str",
        DEFAULT_TIMEZONE,
        "The timezone that will be used for generating timestamps (default: utc)",
    )
    flags.define("seq", "bool", False, "Use sequential numbers instead of timestamps (default: false)")
    flags.define("digits", "int", 6, "The number of digits to use in sequences (default: 6)")

    rest = _parse_sub(flags, arguments, CREATE_USAGE)
    if not rest:
        logger.fatal("error: please specify name")
    name = rest[0]
    if flags["ext"] == "":
        logger.fatal("error: -ext flag must be specified")
    try:
        location = _load_location(str(flags["tz"]))
    except ValueError as exc:
        logger.fatal(exc)
    try:
        create_cmd(
            str(flags["dir"]),
            start_time.astimezone(location),
            str(flags["format"]),
            name,
            str(flags["ext"]),
            bool(flags["seq"]),
            int(flags["digits"]),
            True,
        )
    except (OSError, ValueError) as exc:
        logger.fatal_err(exc)


def _migration_command(name: str, usage: str) -> Callable[..., None]:
    def handler(arguments: Sequence[str], session_error: Exception, start_time: datetime) -> None:
        _parse_sub(_sub_flags(name), arguments, usage)
        logger.fatal_err(session_error)

    return handler


def _down(arguments: Sequence[str], session_error: Exception, start_time: datetime) -> None:
    flags = _sub_flags("down")
    flags.define("all", "bool", False, "Apply all down migrations")
    _parse_sub(flags, arguments, DOWN_USAGE)
    logger.fatal_err(session_error)


def _drop(arguments: Sequence[str], session_error: Exception, start_time: datetime) -> None:
    flags = _sub_flags("drop")
    flags.define("f", "bool", False, "Force the drop command by bypassing the confirmation prompt")
    _parse_sub(flags, arguments, DROP_USAGE)
    if not flags["f"]:
        logger.println("Are you sure you want to drop the entire database schema? [y/N]")
        if _confirmed():
            logger.println("Dropping the entire database schema")
        else:
            logger.fatal("Aborted dropping the entire database schema")
    logger.fatal_err(session_error)


def _version(arguments: Sequence[str], session_error: Exception, start_time: datetime) -> None:
    logger.fatal_err(session_error)


_COMMANDS: dict[str, Callable[[Sequence[str], Exception, datetime], None]] = {
    "create": _create,
    "goto": _migration_command("goto", GOTO_USAGE),
    "up": _migration_command("up", UP_USAGE),
    "down": _down,
    "drop": _drop,
    "force": _migration_command("force", FORCE_USAGE),
    "version": _version,
}


def main(argv: Sequence[str] | None = None) -> None:
    """Run the command line; exits through SystemExit on errors, help and -version."""
    arguments = list(sys.argv[1:] if argv is None else argv)

    flags = _FlagSet("migrate")
    flags.define("help", "bool", False, "")
    flags.define("version", "bool", False, "")
    flags.define("verbose", "bool", False, "")
    flags.define("prefetch", "uint", 10, "")
    flags.define("lock-timeout", "uint", 15, "")
    flags.define("path", "str", "", "")
    flags.define("database", "str", "", "")
    flags.define("source", "str", "", "")

    rest = _parse_or_exit(flags, arguments, _print_usage)
    logger.verbose_output = bool(flags["verbose"])

    if flags["version"]:
        sys.stderr.write(VERSION + "\n")
        raise SystemExit(0)
    if flags["help"]:
        _print_usage()
        raise SystemExit(0)

    source_url = str(flags["source"])
    if source_url == "" and flags["path"] != "":
        source_url = f"file://{flags['path']}"

    session_error = _session_error(source_url)
    start_time = datetime.now(timezone.utc)

    if not rest:
        _usage_and_exit()
    handler = _COMMANDS.get(rest[0])
    if handler is None:
        _usage_and_exit()
    handler(rest[1:], session_error, start_time)