"""Workforce schema: task history, escalations, routing learnings, reviews and amendments.

Revision ID: 0001_initial
Revises: None
Create Date: 2026-10-17
"""

from collections.abc import Sequence

from alembic import op

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

TABLES = (
    "task_history",
    "escalations",
    "routing_learnings",
    "pattern_log",
    "amendments",
    "amendment_evaluations",
    "cos_reviews",
    "recommendations",
    "safety_log",
)


def upgrade() -> None:
    bind = op.get_bind()
    from workforce.models import Base

    tables = [Base.metadata.tables[name] for name in TABLES]
    Base.metadata.create_all(bind=bind, tables=tables, checkfirst=True)


def downgrade() -> None:
    bind = op.get_bind()
    from workforce.models import Base

    tables = [Base.metadata.tables[name] for name in TABLES]
    Base.metadata.drop_all(bind=bind, tables=tables, checkfirst=True)
