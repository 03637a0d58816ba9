"""Command dispatch.

Each integration declares an enum of verbs and one `Command` per verb. The
`Dispatcher` owns everything the handlers should not repeat:

1. help works with zero configuration and no network;
2. unknown verbs list what is available;
3. settings are resolved once and checked before arguments;
4. arguments are bound and validated from their declarations;
5. exactly one JSON document is printed, exit code 0 or 1.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

import typer
from pydantic import ValidationError
from rich.console import Console

from skillquery.adapters.json_exporter import render_json
from skillquery.core.config import AppSettings
from skillquery.core.errors import CommandError, invalid_argument, missing_argument

logger = logging.getLogger(__name__)

HELP_VERBS = frozenset({"help", "--help", "-h"})

Handler = Callable[..., "Mapping[str, Any] | None"]


@dataclass(frozen=True)
class Arg:
    """One positional argument of a verb."""

    name: str
    required: bool = False
    default: Any = None
    numeric: bool = False
    variadic: bool = False
    invalid_message: str | None = None

    @property
    def param(self) -> str:
        return self.name.replace("-", "_")

    @property
    def metavar(self) -> str:
        suffix = "..." if self.variadic else ""
        return f"<{self.name}{suffix}>" if self.required else f"[{self.name}{suffix}]"


@dataclass(frozen=True)
class Command:
    verb: Enum
    handler: Handler
    summary: str
    group: str = "Commands"
    args: tuple[Arg, ...] = ()
    hints: Mapping[str, str] = field(default_factory=dict)
    needs_config: bool = True

    def usage(self, prog: str) -> str:
        return " ".join([prog, self.verb.value, *(arg.metavar for arg in self.args)])

    def bind(self, values: Sequence[str], prog: str) -> dict[str, Any]:
        bound: dict[str, Any] = {}
        for index, arg in enumerate(self.args):
            if arg.variadic:
                rest = list(values[index:])
                if arg.required and not any(rest):
                    raise missing_argument(arg.param, self.usage(prog), **self.hints)
                bound[arg.param] = rest
                continue

            raw = values[index] if index < len(values) else ""
            if raw == "":
                if arg.required:
                    raise missing_argument(arg.param, self.usage(prog), **self.hints)
                bound[arg.param] = arg.default
            elif arg.numeric:
                if not (raw.isascii() and raw.isdigit()):
                    message = arg.invalid_message or f"{arg.name} must be a non-negative integer"
                    raise invalid_argument(arg.param, message, raw)
                bound[arg.param] = int(raw)
            else:
                bound[arg.param] = raw
        return bound


@dataclass
class CommandContext:
    """What a handler gets: resolved settings, a lazy client, a stderr console."""

    prog: str
    settings: Any
    app: AppSettings
    client_factory: Callable[[Any, AppSettings], Any]
    console: Console = field(default_factory=lambda: Console(stderr=True, highlight=False))
    _client: Any = None

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = self.client_factory(self.settings, self.app)
        return self._client

    def note(self, text: str) -> None:
        """Progress/context line on stderr; never part of the result."""

        self.console.print(f"# {text}", markup=False)

    def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            self._client.close()
        self._client = None


class Dispatcher:
    def __init__(
        self,
        *,
        prog: str,
        title: str,
        verbs: type[Enum],
        commands: Sequence[Command],
        settings_factory: Callable[[], Any],
        client_factory: Callable[[Any, AppSettings], Any],
        app_settings: AppSettings | None = None,
        footer: str = "",
        console: Console | None = None,
    ) -> None:
        self.prog = prog
        self.title = title
        self.verbs = verbs
        self.commands: dict[Enum, Command] = {command.verb: command for command in commands}
        undeclared = [verb.value for verb in verbs if verb not in self.commands]
        if undeclared:
            raise ValueError(f"verbs without a command: {', '.join(undeclared)}")
        self.settings_factory = settings_factory
        self.client_factory = client_factory
        self.app_settings = app_settings
        self.footer = footer
        self.console = console

    @property
    def available(self) -> list[str]:
        return [verb.value for verb in self.verbs] + ["help"]

    def usage(self) -> str:
        rows = [(f"{c.verb.value} {' '.join(a.metavar for a in c.args)}".rstrip(), c) for c in self.commands.values()]
        width = max(len(left) for left, _ in rows) + 3
        lines = [f"{self.prog} - {self.title}"]
        group: str | None = None
        for left, command in rows:
            if command.group != group:
                group = command.group
                lines.extend(["", f"{group}:"])
            lines.append(f"  {left.ljust(width)}{command.summary}")
        if self.footer:
            lines.extend(["", self.footer.rstrip()])
        lines.extend(["", "All output is JSON. Errors have {error, message, fix/hint} structure."])
        return "\n".join(lines)

    def dispatch(self, argv: Sequence[str]) -> int:
        name = argv[0] if argv else "help"
        if name in HELP_VERBS:
            typer.echo(self.usage())
            return 0

        try:
            verb = self.verbs(name)
        except ValueError:
            return self._emit({"error": "unknown_command", "command": name, "available": self.available})

        command = self.commands[verb]
        logger.debug("dispatch %s %s", self.prog, verb.value)
        result = self._run(command, list(argv[1:]))
        if result is None:
            return 0
        return self._emit(result)

    def _run(self, command: Command, values: list[str]) -> Mapping[str, Any] | None:
        context: CommandContext | None = None
        try:
            settings = self.settings_factory()
            if command.needs_config:
                settings.ensure_ready()
            kwargs = command.bind(values, self.prog)
            context = CommandContext(
                prog=self.prog,
                settings=settings,
                app=self.app_settings or AppSettings(),
                client_factory=self.client_factory,
            )
            if self.console is not None:
                context.console = self.console
            return command.handler(context, **kwargs)
        except CommandError as exc:
            return exc.to_result()
        except ValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            return {
                "error": "invalid_config",
                "message": str(first.get("msg", exc)),
                "setting": ".".join(str(part) for part in first.get("loc", ())),
            }
        except Exception as exc:  # noqa: BLE001 - process boundary, must stay JSON
            logger.exception("%s %s crashed", self.prog, command.verb.value)
            return {"error": "internal_error", "message": f"{type(exc).__name__}: {exc}"}
        finally:
            if context is not None:
                context.close()

    def _emit(self, result: Mapping[str, Any]) -> int:
        failed = isinstance(result.get("error"), str)
        typer.echo(render_json(result, compact=failed))
        return 1 if failed else 0
