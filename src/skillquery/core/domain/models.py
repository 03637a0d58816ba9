"""Domain models.

Two kinds of structures live here:
- The classified upstream response (`ApiError | Empty | Success`), decided once
  right after an HTTP call so projections never re-check error shapes.
- Pydantic v2 models for upstream records whose shape is stable enough to
  validate (Trigger.dev runs, Sentry issues/releases). They ignore unknown
  fields and keep upstream names as aliases.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import BaseModel, Field, field_validator
from pydantic.config import ConfigDict


@dataclass(frozen=True)
class ApiError:
    """Upstream reported a failure (or the transport sentinel did)."""

    message: str
    not_found: bool = False


@dataclass(frozen=True)
class Empty:
    """Upstream answered successfully with no records."""

    raw: Any = None


@dataclass(frozen=True)
class Success:
    """Usable payload; `items` is the record list when the call returns one."""

    payload: Any
    items: list[Any] = field(default_factory=list)


Outcome = Union[ApiError, Empty, Success]


class TriggerRunError(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str | None = Field(default=None, description="Error class/name reported by the task.")
    message: str = Field(default="", description="Error message.")
    stack_trace: str | None = Field(default=None, alias="stackTrace")


class TriggerRun(BaseModel):
    """A Trigger.dev run as returned by the list and retrieve endpoints."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(..., min_length=1, description="Run id (`run_...`).")
    status: str = Field(default="UNKNOWN", description="Run status (COMPLETED, FAILED, ...).")
    task: str = Field(default="unknown", alias="taskIdentifier")
    created: str | None = Field(default=None, alias="createdAt")
    started: str | None = Field(default=None, alias="startedAt")
    finished: str | None = Field(default=None, alias="finishedAt")
    duration_ms: int = Field(default=0, alias="durationMs")
    is_test: bool = Field(default=False, alias="isTest")
    tags: list[str] = Field(default_factory=list)
    error: TriggerRunError | None = None
    attempt_count: int | None = Field(default=None, alias="attemptCount")

    @field_validator("duration_ms", mode="before")
    @classmethod
    def _none_duration(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("task", mode="before")
    @classmethod
    def _none_task(cls, value: Any) -> Any:
        return value or "unknown"


class SentryIssue(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    short_id: str | None = Field(default=None, alias="shortId")
    title: str = ""
    culprit: str | None = None
    level: str = "error"
    status: str = "unknown"
    count: int = 0
    user_count: int = Field(default=0, alias="userCount")
    first_seen: str = Field(default="", alias="firstSeen")
    last_seen: str = Field(default="", alias="lastSeen")
    permalink: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("level", "status", "title", mode="before")
    @classmethod
    def _none_text(cls, value: Any, info: Any) -> Any:
        if value is None:
            return {"level": "error", "status": "unknown"}.get(info.field_name, "")
        return value


class SentryRelease(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    version: str
    short_version: str | None = Field(default=None, alias="shortVersion")
    date_created: str = Field(default="", alias="dateCreated")
    new_groups: int = Field(default=0, alias="newGroups")
    authors: list[Any] = Field(default_factory=list)
    commit_count: int = Field(default=0, alias="commitCount")

    @field_validator("new_groups", "commit_count", mode="before")
    @classmethod
    def _none_count(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("authors", mode="before")
    @classmethod
    def _none_authors(cls, value: Any) -> Any:
        return [] if value is None else value
