"""
Basic Task Example

Demonstrates enqueuing a small batch of tasks with dependencies, running the
dispatch loop against dry-run executors, and inspecting the escalation that a
large purchase request raises.

Usage:
    python examples/basic_task.py
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from workforce.app import Runtime, dry_run_executors
from workforce.store import MemoryStore
from workforce.types import Priority, Task

console = Console()


def build_tasks() -> list[Task]:
    """Three tasks: one blocked on another, one that needs CEO sign-off."""
    return [
        Task(id="api-auth", content="Add JWT authentication to the API", priority=Priority.HIGH),
        Task(
            id="auth-docs",
            content="Write a blog post announcing the new login flow",
            priority=Priority.MEDIUM,
            blocked_by=["api-auth"],
        ),
        Task(
            id="vendor-contract",
            content="Approve vendor contract worth $40,000 for hosting",
            priority=Priority.MEDIUM,
        ),
    ]


async def display_queue(runtime: Runtime) -> None:
    table = Table(title="Queue")

    table.add_column("Task", style="cyan")
    table.add_column("Priority", style="magenta")
    table.add_column("Score", justify="right")
    table.add_column("Ready")

    for task in runtime.orchestrator.queue:
        ready = runtime.orchestrator.can_dispatch(task)
        table.add_row(task.id, task.priority.value, str(task.priority_score), "yes" if ready else "no")

    console.print("\n")
    console.print(table)


async def main():
    """Main execution function."""
    console.print(
        Panel.fit(
            "[bold]Basic Task Example[/bold]\nDemonstrates queueing, routing and escalation",
            border_style="blue",
        )
    )

    runtime = Runtime.build(dry_run_executors(), store=MemoryStore())
    await runtime.orchestrator.enqueue_many(build_tasks())
    await display_queue(runtime)

    # Two ticks: the blocked task becomes dispatchable once api-auth completes.
    for _ in range(2):
        await runtime.orchestrator.tick()
        await runtime.orchestrator.drain()

    for task in runtime.orchestrator.tasks.values():
        console.print(f"[green]✓[/green] {task.id}: {task.status.value}")

    for escalation in runtime.orchestrator.pending_escalations():
        console.print(
            Panel(
                "\n".join(escalation.reasons),
                title=f"Escalation {escalation.id} ({escalation.priority.value})",
                border_style="red",
            )
        )

    console.print("\nNext steps:")
    console.print("1. Run the loops: [cyan]uv run workforce run --duration 30[/cyan]")
    console.print('2. Try routing: [cyan]uv run workforce route "Deploy the new CI pipeline"[/cyan]')


if __name__ == "__main__":
    asyncio.run(main())
