"""Error types and helpers for the workforce scheduler."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import click


class ReasonCode(StrEnum):
    """Structured failure codes reported across component boundaries."""

    DUPLICATE_TASK = "duplicate_task"
    UNKNOWN_TASK = "unknown_task"
    UNKNOWN_ROLE = "unknown_role"
    UNKNOWN_ESCALATION = "unknown_escalation"
    ALREADY_RESOLVED = "already_resolved"
    INVALID_RECOMMENDATION = "invalid_recommendation"
    SELF_TARGET = "self_target"
    PERSONA_TARGET = "persona_target"
    CROSS_TEAM_TARGET = "cross_team_target"
    AMENDMENT_LIMIT = "amendment_limit"
    PROTECTED_PATTERN = "protected_pattern"
    CONFLICTING_AMENDMENT = "conflicting_amendment"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    INSUFFICIENT_DATA = "insufficient_data"


@dataclass
class OperationResult:
    """Outcome of a public operation; failures carry a reason code instead of raising."""

    ok: bool
    reason: ReasonCode | None = None
    message: str = ""
    data: Any = None

    @classmethod
    def success(cls, data: Any = None, message: str = "") -> OperationResult:
        return cls(ok=True, data=data, message=message)

    @classmethod
    def failure(cls, reason: ReasonCode, message: str, data: Any = None) -> OperationResult:
        return cls(ok=False, reason=reason, message=message, data=data)

    def __bool__(self) -> bool:
        return self.ok


@dataclass(eq=False)
class PolicyViolation(Exception):
    """Raised when an amendment or escalation would break a hardcoded safety constraint."""

    reason: ReasonCode
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.reason.value}: {self.message}"


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
        if "does not exist" in message and "relation" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Workforce schema is not initialized{table_hint}.",
        "Run: `uv run alembic upgrade head`",
        "Or validate with: `uv run workforce schema-check`",
    ]
    return "\n".join(lines)
