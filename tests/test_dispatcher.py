"""Tests for verb dispatch, argument binding and JSON emission."""

from enum import Enum

import pytest

from skillquery.core.commands import Arg, Command, Dispatcher
from skillquery.core.errors import CommandError


class Verb(str, Enum):
    ECHO = "echo"
    SUM = "sum"
    BOOM = "boom"
    QUIET = "quiet"
    OPEN = "open"


class FakeSettings:
    def __init__(self, ready=True):
        self.ready = ready
        self.checked = 0

    def ensure_ready(self):
        self.checked += 1
        if not self.ready:
            raise CommandError("missing_api_key", fix="set FAKE_KEY")


def cmd_echo(ctx, name, count):
    return {"name": name, "count": count}


def cmd_sum(ctx, numbers):
    return {"total": sum(int(n) for n in numbers)}


def cmd_boom(ctx):
    raise RuntimeError("kaboom")


def cmd_quiet(ctx):
    return None


def cmd_open(ctx):
    return {"client": ctx.client}


COMMANDS = (
    Command(
        Verb.ECHO,
        cmd_echo,
        "Echo a name",
        args=(Arg("name", required=True), Arg("count", default=3, numeric=True)),
        hints={"hint": "try: fake echo bob"},
    ),
    Command(Verb.SUM, cmd_sum, "Add numbers", group="Math", args=(Arg("numbers", required=True, variadic=True),)),
    Command(Verb.BOOM, cmd_boom, "Crash"),
    Command(Verb.QUIET, cmd_quiet, "No output"),
    Command(Verb.OPEN, cmd_open, "Open without config", needs_config=False),
)


@pytest.fixture
def settings():
    return FakeSettings()


@pytest.fixture
def make(settings):
    created = []

    def _make(settings_obj=None):
        return Dispatcher(
            prog="fake",
            title="Fake tool",
            verbs=Verb,
            commands=COMMANDS,
            settings_factory=lambda: settings_obj or settings,
            client_factory=lambda s, app: created.append(s) or "client",
            footer="Examples:\n  fake echo bob",
        )

    _make.created = created
    return _make


class TestHelp:
    @pytest.mark.parametrize("argv", [[], ["help"], ["--help"], ["-h"]])
    def test_help_needs_nothing(self, argv, capsys):
        calls = []
        dispatcher = Dispatcher(
            prog="fake",
            title="Fake tool",
            verbs=Verb,
            commands=COMMANDS,
            settings_factory=lambda: calls.append("settings"),
            client_factory=lambda s, app: calls.append("client"),
        )
        assert dispatcher.dispatch(argv) == 0
        out = capsys.readouterr().out
        assert "fake - Fake tool" in out
        assert "echo <name> [count]" in out
        assert "Math:" in out
        assert "All output is JSON" in out
        assert calls == []


class TestDispatch:
    def test_success(self, make, run):
        code, result = run(make(), "echo", "bob", "5")
        assert code == 0
        assert result == {"name": "bob", "count": 5}

    def test_defaults(self, make, run):
        assert run(make(), "echo", "bob")[1] == {"name": "bob", "count": 3}

    def test_unknown_verb(self, make, run):
        code, result = run(make(), "nope")
        assert code == 1
        assert result["error"] == "unknown_command"
        assert result["command"] == "nope"
        assert "echo" in result["available"] and "help" in result["available"]

    def test_missing_argument(self, make, run):
        code, result = run(make(), "echo")
        assert code == 1
        assert result == {"error": "missing_name", "usage": "fake echo <name> [count]", "hint": "try: fake echo bob"}

    def test_invalid_numeric_argument(self, make, run):
        code, result = run(make(), "echo", "bob", "abc")
        assert code == 1
        assert result["error"] == "invalid_count"
        assert result["got"] == "abc"

    def test_non_ascii_digit_is_invalid(self, make, run):
        code, result = run(make(), "echo", "bob", "\u00b2")
        assert code == 1
        assert result["error"] == "invalid_count"

    def test_variadic(self, make, run):
        assert run(make(), "sum", "1", "2", "3")[1] == {"total": 6}

    def test_variadic_required(self, make, run):
        assert run(make(), "sum")[1]["error"] == "missing_numbers"

    def test_config_checked_before_arguments(self, make, run):
        code, result = run(make(FakeSettings(ready=False)), "echo")
        assert code == 1
        assert result == {"error": "missing_api_key", "fix": "set FAKE_KEY"}

    def test_no_client_when_config_missing(self, make, run):
        dispatcher = make(FakeSettings(ready=False))
        run(dispatcher, "echo", "bob")
        assert make.created == []

    def test_needs_config_false_skips_check(self, make, run):
        not_ready = FakeSettings(ready=False)
        code, result = run(make(not_ready), "open")
        assert code == 0
        assert result == {"client": "client"}
        assert not_ready.checked == 0

    def test_unexpected_exception_is_json(self, make, run):
        code, result = run(make(), "boom")
        assert code == 1
        assert result == {"error": "internal_error", "message": "RuntimeError: kaboom"}

    def test_none_result_prints_nothing(self, make, run):
        code, out = run(make(), "quiet")
        assert code == 0
        assert out == ""

    def test_errors_are_single_line(self, make, capsys):
        make().dispatch(["nope"])
        assert capsys.readouterr().out.count("\n") == 1

    def test_every_verb_needs_a_command(self):
        with pytest.raises(ValueError):
            Dispatcher(
                prog="fake",
                title="t",
                verbs=Verb,
                commands=COMMANDS[:1],
                settings_factory=FakeSettings,
                client_factory=lambda s, app: None,
            )
