"""CLI entrypoint for report-pipeline."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from report_pipeline import __version__
from report_pipeline.orchestrator.controllers import (
    ClearCommand,
    InspectTaskCommand,
    ListTasksCommand,
    OrchestratorCliController,
    PlanCommand,
    ResumeCommand,
    ScheduleCommand,
    SweepCommand,
    WorkerCommand,
)
from report_pipeline.orchestrator.errors import OrchestratorError
from report_pipeline.orchestrator.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_outline_option = click.option(
    "--outline",
    "outline_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Outline JSON file: a list of chapters or an object with an `outline` list.",
)
_embed_ready_option = click.option(
    "--embed-ready/--no-embed-ready",
    default=False,
    show_default=True,
    help="Some asset of the project has embeddings.",
)
_table_ready_option = click.option(
    "--table-ready/--no-table-ready",
    default=False,
    show_default=True,
    help="Some asset of the project has extracted tables.",
)


@click.group()
@click.version_option(version=__version__, prog_name="report-pipeline")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def report_pipeline(verbose: bool) -> None:
    """Report task orchestration CLI."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@report_pipeline.command("plan")
@_outline_option
@_embed_ready_option
@_table_ready_option
def plan(outline_path: Path, embed_ready: bool, table_ready: bool) -> None:
    """Print the task graph an outline would produce, without persisting it."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.plan(
            PlanCommand(
                outline_path=outline_path,
                embed_ready=embed_ready,
                table_ready=table_ready,
            ),
        ),
    )


@report_pipeline.command("schedule")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@_outline_option
@_embed_ready_option
@_table_ready_option
@click.option(
    "--context",
    "context_json",
    default=None,
    help="Project context as a JSON object; also the bindings for fixed content.",
)
@click.option(
    "--chapter-context",
    "chapter_context_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON file mapping `metrics`/`writing_journal`/`evidence_map` to per-chapter values.",
)
@click.option(
    "--reset/--no-reset",
    default=True,
    show_default=True,
    help="Clear existing tasks of the project before scheduling.",
)
def schedule(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    outline_path: Path,
    embed_ready: bool,
    table_ready: bool,
    context_json: str | None,
    chapter_context_path: Path | None,
    reset: bool,
) -> None:
    """Plan an outline, persist its task graph, and dispatch ready tasks."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.schedule(
            ScheduleCommand(
                db_path=db_path,
                project_id=project_id,
                outline_path=outline_path,
                embed_ready=embed_ready,
                table_ready=table_ready,
                context_json=context_json,
                chapter_context_path=chapter_context_path,
                reset=reset,
            ),
        ),
    )


@report_pipeline.command("resume")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
def resume(db_path: Path | None, project_id: str) -> None:
    """Dispatch tasks that are ready according to persisted state."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.resume(
            ResumeCommand(db_path=db_path, project_id=project_id),
        ),
    )


@report_pipeline.command("tasks")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@click.option(
    "--status",
    "statuses",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    multiple=True,
    help="Status filter. Can be repeated.",
)
def tasks(db_path: Path | None, project_id: str, statuses: tuple[str, ...]) -> None:
    """List tasks of a project in plan order."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, project_id=project_id, statuses=statuses),
        ),
    )


@report_pipeline.command("inspect")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@click.option("--node-id", required=True, help="Task node id, for example `verify:1.2`.")
def inspect(db_path: Path | None, project_id: str, node_id: str) -> None:
    """Inspect one task with its event history."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.inspect_task(
            InspectTaskCommand(db_path=db_path, project_id=project_id, node_id=node_id),
        ),
    )


@report_pipeline.command("worker")
@_db_path_option
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Run a single claim-execute cycle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Process up to N jobs in one thread, then exit.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads per queue (default from REPORT_PIPELINE_WORKER_CONCURRENCY).",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    concurrency: int | None,
) -> None:
    """Run the local work functions until every queue is drained."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                concurrency=concurrency,
            ),
        ),
    )


@report_pipeline.command("sweep")
@_db_path_option
def sweep(db_path: Path | None) -> None:
    """Fail running tasks and autofix pauses that are past their deadline."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.sweep(SweepCommand(db_path=db_path)))


@report_pipeline.command("clear")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
def clear(db_path: Path | None, project_id: str) -> None:
    """Delete every task of a project."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.clear(
            ClearCommand(db_path=db_path, project_id=project_id),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (ValueError, OrchestratorError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    report_pipeline()
