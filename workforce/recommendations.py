"""Knowledge-bot recommendation contract: validation and expiry."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from .config import settings
from .errors import OperationResult, ReasonCode
from .roles import TeamConfig
from .types import Amendment, parse_datetime, utcnow

MAX_CONTENT_WORDS = 200
VALID_TYPES = ("addition", "modification", "suggestion")
VALID_IMPACTS = ("low", "medium", "high")
REQUIRED_FIELDS = ("type", "content", "targeting_pattern", "expected_impact", "reasoning", "sources")
MIN_PATTERN_LENGTH = 3


@dataclass
class Recommendation:
    team_id: str
    target_role: str
    type: str
    content: str
    targeting_pattern: str
    expected_impact: str
    reasoning: str
    sources: list[str] = field(default_factory=list)
    source_bot: str | None = None
    id: str = field(default_factory=lambda: f"rec-{uuid4().hex[:12]}")
    status: str = "pending"
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        self.created_at = parse_datetime(self.created_at) or utcnow()
        self.expires_at = parse_datetime(self.expires_at) or (
            self.created_at + timedelta(days=settings.recommendation_expiry_days)
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Recommendation:
        return cls(
            team_id=data.get("team_id", ""),
            target_role=data.get("target_role", ""),
            type=data.get("type", ""),
            content=data.get("content", ""),
            targeting_pattern=data.get("targeting_pattern", data.get("targetingPattern", "")),
            expected_impact=data.get("expected_impact", data.get("expectedImpact", "")),
            reasoning=data.get("reasoning", ""),
            sources=list(data.get("sources") or []),
            source_bot=data.get("source_bot"),
            created_at=data.get("created_at") or utcnow(),
            expires_at=data.get("expires_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "team_id": self.team_id,
            "target_role": self.target_role,
            "type": self.type,
            "content": self.content,
            "targeting_pattern": self.targeting_pattern,
            "expected_impact": self.expected_impact,
            "reasoning": self.reasoning,
            "sources": list(self.sources),
            "source_bot": self.source_bot,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class ValidationReport:
    valid: bool
    errors: list[str]

    def as_result(self, rec: Recommendation) -> OperationResult:
        if self.valid:
            return OperationResult.success(rec)
        return OperationResult.failure(
            ReasonCode.INVALID_RECOMMENDATION, "; ".join(self.errors), data=rec
        )


def validate_recommendation(
    rec: Recommendation,
    team: TeamConfig,
    active_amendments: Sequence[Amendment] = (),
) -> ValidationReport:
    errors: list[str] = []

    for name in REQUIRED_FIELDS:
        if not getattr(rec, name):
            errors.append(f"Missing required field: {name}")

    if rec.type and rec.type not in VALID_TYPES:
        errors.append(f"Invalid type: {rec.type}. Must be one of: {', '.join(VALID_TYPES)}")

    if rec.expected_impact and rec.expected_impact not in VALID_IMPACTS:
        errors.append(
            f"Invalid expected_impact: {rec.expected_impact}. "
            f"Must be one of: {', '.join(VALID_IMPACTS)}"
        )

    words = len(rec.content.split())
    if words > MAX_CONTENT_WORDS:
        errors.append(f"Content exceeds {MAX_CONTENT_WORDS} words (has {words})")

    pattern = (rec.targeting_pattern or "").strip().lower()
    if rec.targeting_pattern and len(pattern) < MIN_PATTERN_LENGTH:
        errors.append("targeting_pattern must be a meaningful pattern description")
    elif pattern:
        for amendment in active_amendments:
            trigger = amendment.trigger_pattern.lower()
            if amendment.target_role == rec.target_role and (trigger in pattern or pattern in trigger):
                errors.append(f"Recommendation duplicates active amendment {amendment.id}")
                break

    if rec.target_role == team.lead_role:
        errors.append(f"Recommendations cannot target the team lead ({team.lead_role})")
    elif rec.source_bot and rec.target_role == rec.source_bot:
        errors.append("Recommendations cannot target the knowledge bot itself")
    elif rec.target_role == team.knowledge_bot:
        errors.append("Recommendations cannot target the knowledge bot itself")
    elif not team.is_subordinate(rec.target_role):
        errors.append(f"{rec.target_role} is not a subordinate of team {team.team_id}")

    if rec.team_id and rec.team_id != team.team_id:
        errors.append(f"Recommendation belongs to team {rec.team_id}, not {team.team_id}")

    return ValidationReport(valid=not errors, errors=errors)


def expire_stale(recs: Iterable[Recommendation], now: datetime | None = None) -> list[Recommendation]:
    """Mark pending recommendations past their expiry; returns the ones changed."""
    now = now or utcnow()
    expired = []
    for rec in recs:
        if rec.status == "pending" and rec.is_expired(now):
            rec.status = "expired"
            expired.append(rec)
    return expired
