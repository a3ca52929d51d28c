"""Main CLI entry point for the workforce scheduler."""

import asyncio
import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .app import Runtime, dry_run_executors
from .config import settings
from .escalation import EscalationDetector
from .patterns import PatternDetector, PatternThresholds
from .review import ReviewEngine
from .roles import DEFAULT_ORGANIZATION, SAFETY
from .router import LearnedRouter
from .store import MemoryStore
from .types import ExecutionResult, HistoryEntry, Task

console = Console()


def _load_json(path: Path) -> list[dict]:
    data = json.loads(path.read_text())
    if isinstance(data, dict):
        data = data.get("tasks") or data.get("history") or [data]
    return list(data)


def _history(path: Path, role: str | None = None) -> list[HistoryEntry]:
    entries = [HistoryEntry.from_dict(item) for item in _load_json(path)]
    if role is not None:
        entries = [e for e in entries if e.role == role]
    return sorted(entries, key=lambda e: e.completed_at, reverse=True)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Adaptive task scheduling, routing and escalation for an agent workforce."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


@main.command()
@click.argument("tasks_file", type=click.Path(exists=True, path_type=Path), required=False)
@click.option("--duration", default=10.0, help="Seconds to run before stopping")
def run(tasks_file: Path | None, duration: float) -> None:
    """Run the dispatch and review loops with dry-run executors.

    TASKS_FILE: Optional JSON list of tasks to enqueue first
    """

    async def inner() -> None:
        runtime = Runtime.build(dry_run_executors())
        if tasks_file is not None:
            tasks = [Task.from_dict(item) for item in _load_json(tasks_file)]
            for result in await runtime.orchestrator.enqueue_many(tasks):
                if not result.ok:
                    console.print(f"[yellow]{result.message}[/yellow]")
        await runtime.run(duration)

        summary = runtime.orchestrator.daily_summary()
        console.print(
            Panel(
                f"Finished: {summary['finished']}\n"
                f"By status: {summary['by_status']}\n"
                f"By role: {summary['by_role']}\n"
                f"Pending escalations: {len(summary['pending_escalations'])}",
                title=f"Daily summary {summary['date']}",
            )
        )

    asyncio.run(inner())


@main.command()
@click.argument("tasks_file", type=click.Path(exists=True, path_type=Path))
def enqueue(tasks_file: Path) -> None:
    """Score tasks from a JSON file and show the resulting queue order.

    TASKS_FILE: JSON list of tasks
    """

    async def inner() -> None:
        runtime = Runtime.build(dry_run_executors(), store=MemoryStore())
        tasks = [Task.from_dict(item) for item in _load_json(tasks_file)]
        for result in await runtime.orchestrator.enqueue_many(tasks):
            if not result.ok:
                console.print(f"[yellow]{result.reason}: {result.message}[/yellow]")

        table = Table(title="Queue")
        table.add_column("#", justify="right")
        table.add_column("Task")
        table.add_column("Priority")
        table.add_column("Score", justify="right")
        table.add_column("Blocked by")
        table.add_column("Ready")
        for index, task in enumerate(runtime.orchestrator.queue, start=1):
            ready = runtime.orchestrator.can_dispatch(task)
            table.add_row(
                str(index),
                task.id,
                task.priority.value,
                str(task.priority_score),
                ", ".join(task.blocked_by or []) or "-",
                "[green]yes[/green]" if ready else "[red]no[/red]",
            )
        console.print(table)

    asyncio.run(inner())


@main.command()
@click.argument("content")
@click.option("--role", help="Explicitly assigned role")
@click.option("--priority", default="medium", help="critical, high, medium or low")
@click.option("--workflow", help="Workflow name")
def route(content: str, role: str | None, priority: str, workflow: str | None) -> None:
    """Show the routing decision for a task description.

    CONTENT: Task description
    """
    router = LearnedRouter()
    task = Task(id="cli", content=content, priority=priority, assigned_role=role, workflow=workflow)
    decision = router.route(task)
    console.print(
        Panel(
            f"Primary: [bold cyan]{decision.primary_role}[/bold cyan]\n"
            f"Alternates: {', '.join(decision.alternate_roles) or '-'}\n"
            f"Task type: {decision.task_type}\n"
            f"Confidence: {decision.confidence:.0%}\n\n"
            f"{decision.reasoning}",
            title="Routing decision",
        )
    )


@main.command(name="check-escalation")
@click.argument("content")
@click.option("--role", default="cos", help="Acting role")
@click.option("--notes", default="", help="Task notes")
@click.option("--priority", default="medium", help="Task priority")
@click.option("--analysis", default="", help="Executor analysis text")
def check_escalation(content: str, role: str, notes: str, priority: str, analysis: str) -> None:
    """Check whether a task outcome would escalate.

    CONTENT: Task description
    """
    task = Task(id="cli", content=content, notes=notes, priority=priority)
    result = ExecutionResult(analysis=analysis) if analysis else None
    decision = EscalationDetector().evaluate(task, result, role)
    if not decision.escalate:
        console.print("[green]No escalation required[/green]")
        return
    console.print(f"[red]Escalation required[/red] (priority: {decision.priority.value})")
    for reason in decision.reasons:
        console.print(f"  - {reason}")
    raise SystemExit(2)


@main.command()
@click.argument("lead_role")
@click.argument("history_file", type=click.Path(exists=True, path_type=Path))
def review(lead_role: str, history_file: Path) -> None:
    """Run a team lead's review over a JSON history file.

    LEAD_ROLE: Team lead (e.g. cto)
    HISTORY_FILE: JSON list of history entries with a role field
    """
    team = DEFAULT_ORGANIZATION.team_for_lead(lead_role)
    if team is None:
        console.print(f"[red]{lead_role} does not lead a team[/red]")
        raise SystemExit(1)

    async def inner() -> None:
        store = MemoryStore()
        for entry in _history(history_file):
            await store.append_history(entry)
        engine = ReviewEngine(store, DEFAULT_ORGANIZATION)

        table = Table(title=f"{lead_role} review ({team.review_cadence.value})")
        table.add_column("Role")
        table.add_column("Tasks", justify="right")
        table.add_column("Score", justify="right")
        table.add_column("Trend")
        table.add_column("Failures", justify="right")
        table.add_column("Intervention")
        table.add_column("Message")
        for result in await engine.run_review_cycle(team):
            score = f"{result.cos_score:.0%}" if result.cos_score is not None else "-"
            table.add_row(
                result.subordinate_role,
                str(result.tasks_analyzed),
                score,
                result.trend.value,
                str(result.consecutive_failures),
                result.intervention.value,
                result.message,
            )
        console.print(table)

        for amendment in store.amendments.values():
            console.print(
                Panel(amendment.content, title=f"Amendment for {amendment.target_role}: {amendment.target_area}")
            )

    asyncio.run(inner())


@main.command()
@click.argument("history_file", type=click.Path(exists=True, path_type=Path))
@click.option("--role", help="Only analyse entries for this role")
@click.option("--min-confidence", default=settings.pattern_min_confidence, help="Minimum confidence")
def patterns(history_file: Path, role: str | None, min_confidence: float) -> None:
    """Detect failure patterns in a JSON history file.

    HISTORY_FILE: JSON list of history entries
    """
    detector = PatternDetector(
        PatternThresholds(
            min_tasks=settings.pattern_min_tasks,
            min_confidence=min_confidence,
            lookback=settings.pattern_lookback,
        )
    )
    report = detector.detect(_history(history_file, role))
    if report.insufficient:
        console.print(f"[yellow]{report.message} ({report.tasks_analyzed} tasks)[/yellow]")
        return
    if not report.findings:
        console.print(f"[green]No patterns in {report.tasks_analyzed} tasks[/green]")
        return

    table = Table(title=f"Patterns ({report.tasks_analyzed} tasks)")
    table.add_column("Pattern")
    table.add_column("Confidence", justify="right")
    table.add_column("Suggested action")
    for finding in report.findings:
        table.add_row(finding.type.value, f"{finding.confidence:.0%}", finding.suggested_action)
    console.print(table)


@main.command()
def teams() -> None:
    """Show team structure and safety constraints."""
    table = Table(title="Teams")
    table.add_column("Team")
    table.add_column("Lead")
    table.add_column("Cadence")
    table.add_column("Amends")
    table.add_column("Escalates to")
    table.add_column("Subordinates")
    for team in DEFAULT_ORGANIZATION.teams:
        table.add_row(
            team.team_id,
            team.lead_role,
            team.review_cadence.value,
            "yes" if team.amendment_authority else "no",
            team.supervisor,
            ", ".join(team.subordinates),
        )
    console.print(table)
    console.print(
        Panel(
            f"Critical score: {SAFETY.cos_critical:.0%}\n"
            f"Warning score: {SAFETY.cos_warning:.0%}\n"
            f"Max active amendments: {SAFETY.max_active_amendments}\n"
            f"Min tasks for trend: {SAFETY.min_tasks_for_trend}\n"
            f"Protected patterns: {len(SAFETY.protected_patterns)}",
            title="Safety constraints",
        )
    )


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> None:
        from sqlalchemy import text

        from . import db
        from .models import Base

        async with db.get_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT table_name FROM information_schema.tables
                    WHERE table_schema = 'public'
                    """
                )
            )
            tables = {row[0] for row in result}

        missing = set(Base.metadata.tables) - tables
        if missing:
            console.print(f"[red]Missing tables: {sorted(missing)}[/red]")
            console.print("Run: `uv run alembic upgrade head`")
            raise SystemExit(1)
        console.print("[green]Schema ready[/green]")

    asyncio.run(check())


if __name__ == "__main__":
    main()
