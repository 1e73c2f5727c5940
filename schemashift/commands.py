"""Operations behind the command-line commands: creating migration files and parsing arguments."""

from __future__ import annotations

import fnmatch
import os
import re
from datetime import datetime, timezone
from typing import Iterator, Sequence

from .clilog import CliLog

DEFAULT_TIME_FORMAT = "20060102150405"
DEFAULT_TIMEZONE = "UTC"

_UINT64_MAX = 2**64 - 1
_ASCII_DIGITS = re.compile(r"[0-9]+")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

logger = CliLog()

_LONG_MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)
_LONG_DAYS = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")

_ZERO_KINDS = {
    "1": "zero_month",
    "2": "zero_day",
    "3": "zero_hour12",
    "4": "zero_minute",
    "5": "zero_second",
    "6": "year",
}
_TZ_FORMS = (
    ("070000", "sec"),
    ("07:00:00", "colon_sec"),
    ("0700", "plain"),
    ("07:00", "colon"),
    ("07", "short"),
)


def _parse_uint(text: str) -> int:
    if not _ASCII_DIGITS.fullmatch(text):
        raise ValueError(f'strconv.ParseUint: parsing "{text}": invalid syntax')
    value = int(text)
    if value > _UINT64_MAX:
        raise ValueError(f'strconv.ParseUint: parsing "{text}": value out of range')
    return value


def _base_name(path: str) -> str:
    return os.path.basename(os.path.normpath(path)) if path else "."


def next_seq_version(matches: Sequence[str], seq_digits: int) -> str:
    """Return the zero-padded sequence number that follows the last of ``matches``."""
    if seq_digits <= 0:
        raise ValueError("Digits must be positive")

    next_seq = 1
    if matches:
        filename = matches[-1]
        base = _base_name(filename)
        index = base.find("_")
        if index < 1:
            raise ValueError(f"Malformed migration filename: {filename}")
        next_seq = (_parse_uint(base[:index]) + 1) & _UINT64_MAX

    version = f"{next_seq:0{seq_digits}d}"
    if len(version) > seq_digits:
        raise ValueError(
            f"Next sequence number {version} too large. At most {seq_digits} digits are allowed"
        )
    return version


def _as_aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def _unix_seconds(moment: datetime) -> int:
    delta = _as_aware(moment) - _EPOCH
    return delta.days * 86400 + delta.seconds


def _unix_nanos(moment: datetime) -> int:
    delta = _as_aware(moment) - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 10**9 + delta.microseconds * 1000


def _starts_lower(layout: str, index: int) -> bool:
    return index < len(layout) and "a" <= layout[index] <= "z"


def _match_chunk(layout: str, i: int) -> tuple[str, int, object] | None:
    """Recognise a reference-time element at ``layout[i]``: (kind, length, argument)."""
    c = layout[i]
    rest = layout[i:]
    if c == "J":
        if rest.startswith("Jan"):
            if rest.startswith("January"):
                return "long_month", 7, None
            if not _starts_lower(layout, i + 3):
                return "month", 3, None
    elif c == "M":
        if rest.startswith("Mon"):
            if rest.startswith("Monday"):
                return "long_weekday", 6, None
            if not _starts_lower(layout, i + 3):
                return "weekday", 3, None
        if rest.startswith("MST"):
            return "tz_name", 3, None
    elif c == "0":
        if len(rest) >= 2 and "1" <= rest[1] <= "6":
            return _ZERO_KINDS[rest[1]], 2, None
        if rest.startswith("002"):
            return "zero_yday", 3, None
    elif c == "1":
        if rest.startswith("15"):
            return "hour", 2, None
        return "num_month", 1, None
    elif c == "2":
        if rest.startswith("2006"):
            return "long_year", 4, None
        return "day", 1, None
    elif c == "_":
        if rest.startswith("_2"):
            if rest.startswith("_2006"):
                return None
            return "under_day", 2, None
        if rest.startswith("__2"):
            return "under_yday", 3, None
    elif c in "345":
        return {"3": "hour12", "4": "minute", "5": "second"}[c], 1, None
    elif c == "P":
        if rest.startswith("PM"):
            return "PM", 2, None
    elif c == "p":
        if rest.startswith("pm"):
            return "pm", 2, None
    elif c in "-Z":
        for suffix, form in _TZ_FORMS:
            if rest.startswith(c + suffix):
                return "tz_offset", len(suffix) + 1, (c == "Z", form)
    elif c in ".,":
        if len(rest) > 1 and rest[1] in "09":
            digit = rest[1]
            j = 1
            while j < len(rest) and rest[j] == digit:
                j += 1
            if not (j < len(rest) and "0" <= rest[j] <= "9"):
                kind = "frac0" if digit == "0" else "frac9"
                return kind, j, (c, j - 1)
    return None


def _chunks(layout: str) -> Iterator[tuple[str, str, object]]:
    i = 0
    literal_start = 0
    while i < len(layout):
        match = _match_chunk(layout, i)
        if match is None:
            i += 1
            continue
        kind, length, argument = match
        if literal_start < i:
            yield "literal", layout[literal_start:i], None
        yield kind, layout[i:i + length], argument
        i += length
        literal_start = i
    if literal_start < len(layout):
        yield "literal", layout[literal_start:], None


def _offset_text(offset: int, iso: bool, form: str) -> str:
    if iso and offset == 0:
        return "Z"
    zone = int(offset / 60)
    absolute = offset
    sign = "+"
    if zone < 0:
        sign = "-"
        zone = -zone
        absolute = -absolute
    text = f"{sign}{zone // 60:02d}"
    if form in ("colon", "colon_sec"):
        text += ":"
    if form != "short":
        text += f"{zone % 60:02d}"
    if form in ("sec", "colon_sec"):
        if form == "colon_sec":
            text += ":"
        text += f"{absolute % 60:02d}"
    return text


def _render(kind: str, raw: str, argument: object, moment: datetime) -> str:
    hour12 = moment.hour % 12 or 12
    yday = moment.timetuple().tm_yday
    simple = {
        "literal": raw,
        "long_month": _LONG_MONTHS[moment.month - 1],
        "month": _LONG_MONTHS[moment.month - 1][:3],
        "num_month": str(moment.month),
        "zero_month": f"{moment.month:02d}",
        "long_weekday": _LONG_DAYS[(moment.weekday() + 1) % 7],
        "weekday": _LONG_DAYS[(moment.weekday() + 1) % 7][:3],
        "day": str(moment.day),
        "under_day": f"{moment.day:>2d}",
        "zero_day": f"{moment.day:02d}",
        "under_yday": f"{yday:>3d}",
        "zero_yday": f"{yday:03d}",
        "hour": f"{moment.hour:02d}",
        "hour12": str(hour12),
        "zero_hour12": f"{hour12:02d}",
        "minute": str(moment.minute),
        "zero_minute": f"{moment.minute:02d}",
        "second": str(moment.second),
        "zero_second": f"{moment.second:02d}",
        "long_year": f"{moment.year:04d}",
        "year": f"{moment.year % 100:02d}",
        "PM": "PM" if moment.hour >= 12 else "AM",
        "pm": "pm" if moment.hour >= 12 else "am",
    }
    if kind in simple:
        return simple[kind]

    utc_offset = moment.utcoffset()
    offset = int(utc_offset.total_seconds()) if utc_offset is not None else 0
    if kind == "tz_name":
        name = moment.tzname() if moment.tzinfo is not None else "UTC"
        if name:
            return name
        return _offset_text(offset, False, "plain")
    if kind == "tz_offset":
        iso, form = argument
        return _offset_text(offset, iso, form)

    separator, digits = argument
    fraction = f"{moment.microsecond * 1000:09d}"[: min(digits, 9)]
    if kind == "frac9":
        fraction = fraction.rstrip("0")
        if not fraction:
            return ""
    return separator + fraction


def _format_layout(moment: datetime, layout: str) -> str:
    """Format ``moment`` using a reference-time layout such as ``20060102150405``."""
    return "".join(_render(kind, raw, arg, moment) for kind, raw, arg in _chunks(layout))


def time_version(start_time: datetime, time_format: str) -> str:
    """Return a version string for ``start_time``.

    ``time_format`` is ``"unix"``, ``"unixNano"`` or a reference-time layout.
    Naive datetimes are taken as UTC.
    """
    if time_format == "":
        raise ValueError("Time format may not be empty")
    if time_format == "unix":
        return str(_unix_seconds(start_time))
    if time_format == "unixNano":
        return str(_unix_nanos(start_time))
    return _format_layout(start_time, time_format)


def _glob(directory: str, pattern: str) -> list[str]:
    try:
        names = os.listdir(directory)
    except (OSError, ValueError):
        return []
    return sorted(
        os.path.normpath(os.path.join(directory, name))
        for name in names
        if fnmatch.fnmatchcase(name, pattern)
    )


def _create_file(filename: str) -> None:
    with open(filename, "x"):
        pass


def create_cmd(
    directory: str,
    start_time: datetime,
    time_format: str,
    name: str,
    ext: str,
    seq: bool,
    seq_digits: int,
    print_paths: bool,
) -> None:
    """Create an empty up/down migration pair named ``name`` in ``directory``."""
    if seq and time_format != DEFAULT_TIME_FORMAT:
        raise ValueError("The seq and format options are mutually exclusive")

    directory = os.path.normpath(directory) if directory else "."
    ext = "." + (ext[1:] if ext.startswith(".") else ext)

    if seq:
        version = next_seq_version(_glob(directory, "*" + ext), seq_digits)
    else:
        version = time_version(start_time, time_format)

    if _glob(directory, version + "_*" + ext):
        raise ValueError(f"duplicate migration version: {version}")

    try:
        os.makedirs(directory, exist_ok=True)
    except ValueError as exc:
        raise ValueError(f"mkdir {directory}: invalid argument") from exc

    for direction in ("up", "down"):
        filename = os.path.normpath(
            os.path.join(directory, f"{version}_{name}.{direction}{ext}")
        )
        _create_file(filename)
        if print_paths:
            logger.println(os.path.abspath(filename))


def num_down_migrations_from_args(apply_all: bool, args: Sequence[str]) -> tuple[int, bool]:
    """Return how many down migrations to apply (-1 for all) and whether to confirm first."""
    if apply_all:
        if args:
            raise ValueError("-all cannot be used with other arguments")
        return -1, False

    if len(args) == 0:
        return -1, True
    if len(args) == 1:
        try:
            return _parse_uint(args[0]), False
        except ValueError:
            raise ValueError("can't read limit argument N") from None
    raise ValueError("too many arguments")