"""Static organisation configuration: roles, teams and hardcoded safety constraints.

Everything here is frozen. Components receive an ``Organization`` from the
composition root and never mutate it; roles cannot change their own limits.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum


class ReviewCadence(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def interval(self) -> timedelta:
        return timedelta(days=1) if self is ReviewCadence.DAILY else timedelta(weeks=1)


@dataclass(frozen=True)
class SafetyConstraints:
    """Hardcoded limits for the amendment loop. Not read from the environment."""

    self_modify_blocked: bool = True
    persona_modify_blocked: bool = True
    max_active_amendments: int = 10
    min_tasks_for_trend: int = 5
    cos_critical: float = 0.3
    cos_warning: float = 0.5
    protected_patterns: tuple[str, ...] = (
        r"checkout",
        r"billing",
        r"payment",
        r"subscribe",
        r"credit.?card",
        r"cvv",
        r"purchase",
        r"buy.?now",
        r"escalate.*authority",
        r"bypass.*approval",
        r"override.*decision",
        r"disable.*safety",
        r"remove.*constraint",
        r"modify.*protected",
    )


SAFETY = SafetyConstraints()


@dataclass(frozen=True)
class TeamConfig:
    """A team lead and the subordinates it may review and amend."""

    lead_role: str
    team_id: str
    subordinates: tuple[str, ...]
    review_cadence: ReviewCadence = ReviewCadence.DAILY
    amendment_authority: bool = True
    supervisor: str = "cos"
    consecutive_failure_threshold: int = 3
    knowledge_bot: str | None = None
    persona_areas: tuple[str, ...] = ("persona", "identity", "values", "voice")

    def is_subordinate(self, role: str) -> bool:
        return role in self.subordinates and role != self.lead_role


@dataclass(frozen=True)
class Organization:
    """All teams plus the coordinating role used as the routing fallback."""

    teams: tuple[TeamConfig, ...]
    default_role: str = "cos"
    extra_roles: tuple[str, ...] = (
        "ceo",
        "clo",
        "cco",
        "ciso",
        "cro",
        "devops",
        "data",
        "qa",
    )

    def team_for_lead(self, role: str) -> TeamConfig | None:
        for team in self.teams:
            if team.lead_role == role:
                return team
        return None

    def team_for_subordinate(self, role: str) -> TeamConfig | None:
        for team in self.teams:
            if team.is_subordinate(role):
                return team
        return None

    def known_roles(self) -> set[str]:
        roles = {self.default_role, *self.extra_roles}
        for team in self.teams:
            roles.add(team.lead_role)
            roles.update(team.subordinates)
        return roles


DEFAULT_TEAMS: tuple[TeamConfig, ...] = (
    TeamConfig(
        lead_role="cto",
        team_id="tech",
        subordinates=(
            "web_dev_lead",
            "app_dev_lead",
            "devops_lead",
            "qa_lead",
            "infrastructure_lead",
        ),
        knowledge_bot="tech_kb",
    ),
    TeamConfig(
        lead_role="cmo",
        team_id="marketing",
        subordinates=("content_lead", "social_media_lead", "seo_growth_lead", "brand_lead"),
        knowledge_bot="marketing_kb",
    ),
    TeamConfig(
        lead_role="cpo",
        team_id="product",
        subordinates=("ux_research_lead", "product_analytics_lead", "feature_spec_lead"),
        knowledge_bot="product_kb",
    ),
    TeamConfig(
        lead_role="coo",
        team_id="operations",
        subordinates=("vendor_management_lead", "process_automation_lead"),
        review_cadence=ReviewCadence.WEEKLY,
        knowledge_bot="operations_kb",
    ),
    TeamConfig(
        lead_role="cfo",
        team_id="finance",
        subordinates=("expense_tracking_lead", "revenue_analytics_lead"),
        review_cadence=ReviewCadence.WEEKLY,
        consecutive_failure_threshold=2,  # stricter for finance
        knowledge_bot="finance_kb",
    ),
    TeamConfig(
        lead_role="chro",
        team_id="people",
        subordinates=("hiring_lead", "compliance_lead"),
        review_cadence=ReviewCadence.WEEKLY,
        knowledge_bot="people_kb",
    ),
)

DEFAULT_ORGANIZATION = Organization(teams=DEFAULT_TEAMS)
