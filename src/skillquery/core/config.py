"""Core configuration.

Two layers live here:
- `AppSettings`: process-wide knobs for the tool itself (timeouts, logging),
  read with plain pydantic-settings from `SKILLQUERY_*` variables.
- `SkillSettings`: base class for per-integration credentials. Values come from
  an ordered chain of lookup strategies (process env, nearest `.env` walking up
  from the CWD, `~/.env`) so a skill works from any subdirectory of a project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, ClassVar, Iterable, Mapping, Protocol, Sequence

from pydantic import Field
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

ENV_FILENAME = ".env"


def get_user_config_dir() -> Path:
    """Per-user configuration directory (cross-platform, no extra dependency)."""

    if sys.platform.startswith("win"):
        base = Path(os.environ.get("APPDATA", str(Path.home())))
        return base / "skillquery"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "skillquery"

    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "skillquery"
    return Path.home() / ".config" / "skillquery"


def get_user_env_file() -> Path:
    return get_user_config_dir() / ENV_FILENAME


def parse_env_lines(text: str) -> dict[str, str]:
    """Parse `KEY=value` lines. The first occurrence of a key wins."""

    data: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in data:
            data[key] = value
    return data


def read_env_file(path: Path | None) -> dict[str, str]:
    if path is None or not path.is_file():
        return {}
    try:
        return parse_env_lines(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError):
        return {}


def find_env_file(start: Path, filename: str = ENV_FILENAME) -> Path | None:
    """Return the first `filename` found walking from `start` up to the root."""

    current = start.resolve()
    for directory in (current, *current.parents):
        candidate = directory / filename
        if candidate.is_file():
            return candidate
    return None


def write_env_vars(path: Path, values: Mapping[str, str | None], *, header: str | None = None) -> Path:
    """Write/update variables in a flat `KEY=value` file."""

    path.parent.mkdir(parents=True, exist_ok=True)

    existing = read_env_file(path)
    existing.update({k: v for k, v in values.items() if v is not None})

    lines = [f"# {header}"] if header else []
    for key in sorted(existing.keys()):
        lines.append(f'{key}="{existing[key]}"')
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


# -- Resolution strategies -----------------------------------------------------


class LookupStrategy(Protocol):
    """One place a setting may come from. Returns None when it has no value."""

    def lookup(self, name: str) -> str | None: ...


class ProcessEnv:
    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = os.environ if environ is None else environ

    def lookup(self, name: str) -> str | None:
        value = self._environ.get(name, "")
        return value or None

    def __repr__(self) -> str:
        return "ProcessEnv()"


class EnvFile:
    """A `KEY=value` file, parsed lazily on first lookup."""

    def __init__(self, path: Path | None) -> None:
        self.path = path
        self._values: dict[str, str] | None = None

    def lookup(self, name: str) -> str | None:
        if self._values is None:
            self._values = read_env_file(self.path)
        return self._values.get(name) or None

    def __repr__(self) -> str:
        return f"EnvFile({self.path})"


def default_strategies(
    *,
    filename: str = ENV_FILENAME,
    environ: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    home: Path | None = None,
) -> tuple[LookupStrategy, ...]:
    """Env first, then the nearest project file, then the home directory file."""

    cwd = cwd or Path.cwd()
    home = home or Path.home()
    return (
        ProcessEnv(environ),
        EnvFile(find_env_file(cwd, filename)),
        EnvFile(home / filename),
    )


def resolve(
    names: Mapping[str, Sequence[str]] | Iterable[str],
    strategies: Sequence[LookupStrategy],
) -> dict[str, str]:
    """Resolve settings against `strategies` in priority order.

    `names` is either plain setting names or a mapping of setting -> candidate
    variable names. Unresolved settings come back as empty strings; deciding
    whether that is fatal is the caller's job.
    """

    if isinstance(names, Mapping):
        candidates = {key: tuple(value) for key, value in names.items()}
    else:
        candidates = {name: (name,) for name in names}

    resolved: dict[str, str] = {}
    for setting, aliases in candidates.items():
        resolved[setting] = ""
        for strategy in strategies:
            value = next((v for v in map(strategy.lookup, aliases) if v), None)
            if value:
                resolved[setting] = value
                break
    return resolved


# -- Settings ------------------------------------------------------------------


class ResolverSource(PydanticBaseSettingsSource):
    """pydantic-settings source backed by the lookup strategy chain."""

    def __init__(self, settings_cls: type[BaseSettings], strategies: Sequence[LookupStrategy]) -> None:
        super().__init__(settings_cls)
        self._resolved = resolve(settings_cls.env_names, strategies)  # type: ignore[attr-defined]

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._resolved.get(field_name) or None, field_name, False

    def __call__(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for field_name, field in self.settings_cls.model_fields.items():
            value, key, _ = self.get_field_value(field, field_name)
            if value is not None:
                data[key] = value
        return data


class SkillSettings(BaseSettings):
    """Base class for integration credentials.

    Subclasses declare `env_names` (field -> candidate variable names) and
    implement `ensure_ready()`. Instances are immutable; init kwargs win over
    every other source.
    """

    model_config = SettingsConfigDict(frozen=True, extra="ignore")

    env_names: ClassVar[dict[str, tuple[str, ...]]] = {}
    env_filename: ClassVar[str] = ENV_FILENAME

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        strategies = default_strategies(filename=cls.env_filename)
        return (init_settings, ResolverSource(settings_cls, strategies))

    def ensure_ready(self) -> None:
        """Raise `CommandError` if a required value is missing."""

    def describe(self) -> dict[str, Any]:
        """Safe summary for `config` verbs (secrets reduced to a flag)."""

        return self.model_dump()


def mask(secret: str, keep: int = 4) -> str:
    if not secret:
        return ""
    if len(secret) <= keep * 2:
        return "*" * len(secret)
    return f"{secret[:keep]}...{secret[-keep:]}"


class AppSettings(BaseSettings):
    """Process-wide settings for the tool itself."""

    model_config = SettingsConfigDict(
        env_prefix="SKILLQUERY_",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
        # Later files win: the project .env overrides the user config dir.
        env_file=(str(get_user_env_file()), ENV_FILENAME),
        env_file_encoding="utf-8",
    )

    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for read requests (seconds).",
    )
    write_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for POST/PATCH requests, which may run queries upstream.",
    )
    user_agent: str = Field(
        default="skillquery/0.1",
        min_length=1,
        description="User-Agent sent to every upstream API.",
    )
    log_level: str = Field(
        default="WARNING",
        description="Log level for stderr diagnostics (stdout stays JSON).",
    )
