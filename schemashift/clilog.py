"""Logger used by the command-line interface."""

from __future__ import annotations

import re
import sys
import time
from typing import NoReturn, TextIO

from .database import Logger

_VERB_V = re.compile(r"%([-+# 0]*\d*(?:\.\d+)?)v")


def _text(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _format(fmt: str, args: tuple[object, ...]) -> str:
    if not args:
        return fmt
    converted = tuple(_text(a) if isinstance(a, bool) else a for a in args)
    return _VERB_V.sub(r"%\1s", fmt) % converted


class CliLog(Logger):
    """Writes plain messages to stderr, or timestamped ones when verbose."""

    def __init__(self, verbose: bool = False, stream: TextIO | None = None) -> None:
        self.verbose_output = verbose
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stderr

    def _emit(self, message: str) -> None:
        if self.verbose_output:
            if not message.endswith("\n"):
                message += "\n"
            message = time.strftime("%Y/%m/%d %H:%M:%S ") + message
        self.stream.write(message)
        self.stream.flush()

    def printf(self, fmt: str, *args: object) -> None:
        self._emit(_format(fmt, args))

    def println(self, *args: object) -> None:
        self._emit(" ".join(_text(a) for a in args) + "\n")

    def verbose(self) -> bool:
        return self.verbose_output

    def fatal(self, *args: object) -> NoReturn:
        self.println(*args)
        raise SystemExit(1)

    def fatal_err(self, err: object) -> NoReturn:
        self.fatal("error:", err)