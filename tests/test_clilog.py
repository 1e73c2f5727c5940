import io
import re

import pytest

from schemashift.clilog import CliLog

_STAMP = re.compile(r"^\d{4}/\d{2}/\d{2} \d{2}:\d{2}:\d{2} ")


def test_printf_plain():
    out = io.StringIO()
    CliLog(stream=out).printf("%v (dirty)\n", 3)
    assert out.getvalue() == "3 (dirty)\n"


def test_println_plain_joins_with_spaces():
    out = io.StringIO()
    CliLog(stream=out).println("a", 1, True)
    assert out.getvalue() == "a 1 true\n"


def test_verbose_flag():
    assert CliLog(verbose=True).verbose() is True
    assert CliLog().verbose() is False


def test_verbose_println_has_timestamp():
    out = io.StringIO()
    CliLog(verbose=True, stream=out).println("hello")
    value = out.getvalue()
    assert _STAMP.match(value)
    assert value.endswith("hello\n")


def test_verbose_printf_adds_newline():
    out = io.StringIO()
    CliLog(verbose=True, stream=out).printf("step %d", 2)
    value = out.getvalue()
    assert _STAMP.match(value)
    assert value.endswith("step 2\n")


def test_fatal_exits_with_one():
    out = io.StringIO()
    with pytest.raises(SystemExit) as info:
        CliLog(stream=out).fatal("stop")
    assert info.value.code == 1
    assert out.getvalue() == "stop\n"


def test_fatal_err_prefixes_error():
    out = io.StringIO()
    with pytest.raises(SystemExit) as info:
        CliLog(stream=out).fatal_err(ValueError("boom"))
    assert info.value.code == 1
    assert out.getvalue() == "error: boom\n"


def test_defaults_to_stderr(capsys):
    CliLog().println("to", "stderr")
    captured = capsys.readouterr()
    assert captured.err == "to stderr\n"
    assert captured.out == ""