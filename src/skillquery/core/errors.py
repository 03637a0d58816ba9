"""Expected failures, expressed as data.

Every failure a command can hit is raised as `CommandError` at the point of
detection and turned into a JSON object by the dispatcher. The `kind` becomes
the `error` field; extra keyword arguments are copied next to it.
"""

from __future__ import annotations

from typing import Any


class CommandError(Exception):
    """A failure that maps onto one Normalized Result with an `error` field."""

    def __init__(self, kind: str, **fields: Any) -> None:
        super().__init__(fields.get("message") or kind)
        self.kind = kind
        self.fields = fields

    def to_result(self) -> dict[str, Any]:
        return {"error": self.kind, **self.fields}


def missing_dependency(tool: str, fix: str) -> CommandError:
    return CommandError("missing_dependency", dependency=tool, fix=fix)


def missing_argument(name: str, usage: str, **hints: Any) -> CommandError:
    return CommandError(f"missing_{name}", usage=usage, **hints)


def invalid_argument(name: str, message: str, got: Any) -> CommandError:
    return CommandError(f"invalid_{name}", message=message, got=got)
