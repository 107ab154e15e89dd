import typer
from pathlib import Path
from typing import Optional, List
import asyncio
from rich.panel import Panel

from . import config, task_manager, ui, utils
from .models import ComplexityReport, OperationResult, Subtask, Task
from .task_manager import PipelineContext
from .utils import log

app = typer.Typer(help="Taskloom: synthesize, expand and analyze development tasks with AI.")


def _run(result_coro) -> OperationResult:
    """Runs an operation and exits non-zero on failure."""
    result: OperationResult = asyncio.run(result_coro)
    if not result.success:
        ui.display_error(result.error)
        raise typer.Exit(code=1)
    return result


def _pipeline(ctx: typer.Context) -> PipelineContext:
    return ctx.obj["PIPELINE"]


def _tag(ctx: typer.Context) -> str:
    return ctx.obj["TAG"]


@app.callback()
def main_callback(
    ctx: typer.Context,
    tasks_file: Path = typer.Option(config.TASKS_FILE_PATH, "--tasks-file", "-f", help="Path to the tasks JSON file.", show_default=False),
    report_dir: Path = typer.Option(config.COMPLEXITY_REPORT_DIR, "--report-dir", help="Directory holding per-tag complexity reports.", show_default=False),
    tag: str = typer.Option(config.DEFAULT_SCOPE, "--tag", "-t", help="Tag (task list) to operate on.", show_default=False),
    project_root: Path = typer.Option(config.PROJECT_ROOT, "--project-root", help="Root used for file context and the project tree.", show_default=False),
):
    ctx.ensure_object(dict)
    ctx.obj["TAG"] = tag
    ctx.obj["PIPELINE"] = PipelineContext.from_config(
        tasks_file=Path.cwd() / tasks_file,
        report_dir=Path.cwd() / report_dir,
        project_root=Path.cwd() / project_root,
        log=log,
    )
    missing_keys = config.check_api_keys()
    if missing_keys:
         log.warning(f"Missing required API keys in .env: {', '.join(missing_keys)}")
         ui.console.print(f"[bold yellow]Warning:[/bold yellow] Missing API keys in .env: {', '.join(missing_keys)}")
         ui.console.print("[yellow]Some commands may not function correctly.[/yellow]")


@app.command(name="parse-prd")
def parse_prd_cmd(
    ctx: typer.Context,
    input_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Path to the requirements (PRD) document."),
    num_tasks: int = typer.Option(config.DEFAULT_NUM_TASKS, "--num-tasks", "-n", help="Approximate number of tasks to generate."),
    append: bool = typer.Option(False, "--append", help="Append to the tag's existing tasks."),
    force: bool = typer.Option(False, "--force", help="Overwrite the tag's existing tasks."),
    research: bool = typer.Option(False, "--research", "-r", help="Use the research model."),
):
    """Generates tasks from a requirements document."""
    ui.display_banner()
    text = utils.read_file(input_file)
    if not text:
        ui.console.print(f"[bold red]Error:[/bold red] No content found in {input_file}")
        raise typer.Exit(code=1)
    with ui.console.status("[bold green]Generating tasks with AI...", spinner="dots"):
        result = _run(task_manager.synthesize_tasks_from_requirement(
            _pipeline(ctx), _tag(ctx), text, num_tasks=num_tasks, append=append, overwrite=force,
            research=research, source_file=str(input_file),
        ))
    ui.console.print(f"[bold green]Success:[/bold green] Generated {result.data['tasksCreated']} tasks in tag '{_tag(ctx)}'")
    ui.display_tasks_summary(asyncio.run(_pipeline(ctx).store.list_tasks(_tag(ctx))))
    ui.display_telemetry(result.data.get("telemetryData"))


@app.command()
def expand(
    ctx: typer.Context,
    task_id: Optional[int] = typer.Option(None, "--id", "-i", help="ID of the specific task to expand."),
    all_tasks: bool = typer.Option(False, "--all", "-a", help="Expand all eligible tasks."),
    num_subtasks: Optional[int] = typer.Option(None, "--num", "-n", help=f"Number of subtasks (default: from report or {config.DEFAULT_SUBTASKS})."),
    research: bool = typer.Option(False, "--research", "-r", help="Use the research model."),
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Additional context/prompt for subtask generation."),
    force: bool = typer.Option(False, "--force", help="Regenerate subtasks even if the task already has some."),
):
    """Expands tasks into subtasks with acceptance criteria."""
    ui.display_banner()
    if task_id is not None and all_tasks:
        ui.console.print("[bold red]Error:[/bold red] Cannot use --id and --all together.")
        raise typer.Exit(code=1)
    if task_id is None and not all_tasks:
        ui.console.print("[bold red]Error:[/bold red] Must specify either --id or --all.")
        raise typer.Exit(code=1)

    pipeline, tag = _pipeline(ctx), _tag(ctx)
    if all_tasks:
        result = _run(task_manager.expand_all_tasks(pipeline, tag, num_subtasks, prompt, research, force))
        ui.display_batch_results(result.data["results"], "Bulk Expansion")
        return

    with ui.console.status(f"[bold green]Expanding task {task_id}...", spinner="dots"):
        result = _run(task_manager.expand_task(pipeline, tag, task_id, num_subtasks, prompt, research, force))
    if result.data["subtasksAdded"] == 0:
        ui.console.print(f"[yellow]Info:[/yellow] Task {task_id} already has subtasks. Use --force to regenerate them.")
        return
    task = result.data["task"]
    ui.console.print(f"[bold green]Success:[/bold green] Added {result.data['subtasksAdded']} subtasks to task {task_id}.")
    ui.display_subtasks_summary([Subtask.model_validate(st) for st in task["subtasks"]], task_id)
    ui.display_telemetry(result.data.get("telemetryData"))


@app.command(name="analyze-complexity")
def analyze_complexity_cmd(
    ctx: typer.Context,
    ids: Optional[str] = typer.Option(None, "--id", help="Comma-separated task IDs to analyze."),
    from_id: Optional[int] = typer.Option(None, "--from", help="First task ID of a range."),
    to_id: Optional[int] = typer.Option(None, "--to", help="Last task ID of a range."),
    research: bool = typer.Option(False, "--research", "-r", help="Use the research model."),
    threshold: float = typer.Option(5.0, "--threshold", min=1.0, max=10.0, help="Complexity threshold (1-10) for expansion recommendations."),
):
    """Analyzes task complexity and merges the results into the tag's report."""
    ui.display_banner()
    task_ids = [int(part) for part in ids.split(",") if part.strip()] if ids else None
    with ui.console.status("[bold green]Analyzing complexity with AI...", spinner="dots"):
        result = _run(task_manager.analyze_complexity(_pipeline(ctx), _tag(ctx), task_ids, from_id, to_id, threshold, research))
    if result.data.get("reusedPreviousReport"):
        ui.console.print("[yellow]No matching tasks to analyze; existing report kept.[/yellow]")
    report = ComplexityReport.model_validate(result.data["report"])
    ui.display_complexity_summary(report)
    ui.display_telemetry(result.data.get("telemetryData"))


@app.command(name="complexity-report")
def complexity_report_cmd(ctx: typer.Context):
    """Displays the saved complexity report for the tag."""
    ui.display_banner()
    report = asyncio.run(_pipeline(ctx).reports.get(_tag(ctx)))
    ui.display_complexity_report(report, _tag(ctx))


@app.command()
def update(
    ctx: typer.Context,
    from_id: int = typer.Option(1, "--from", help="Task ID to start updating from (inclusive)."),
    prompt: str = typer.Option(..., "--prompt", "-p", help="Prompt describing the changes required."),
    research: bool = typer.Option(False, "--research", "-r", help="Use the research model."),
):
    """Updates every unfinished task from a given ID onwards."""
    ui.display_banner()
    result = _run(task_manager.update_tasks(_pipeline(ctx), _tag(ctx), from_id, prompt, research))
    ui.display_batch_results(result.data["results"], "Task Updates")


@app.command(name="update-task")
def update_task_cmd(
    ctx: typer.Context,
    task_id: int = typer.Option(..., "--id", "-i", help="ID of the task to update."),
    prompt: str = typer.Option(..., "--prompt", "-p", help="Prompt describing the changes required."),
    append: bool = typer.Option(False, "--append", help="Append timestamped notes instead of rewriting the task."),
    research: bool = typer.Option(False, "--research", "-r", help="Use the research model."),
):
    """Updates a single task from a prompt."""
    ui.display_banner()
    with ui.console.status(f"[bold green]Updating task {task_id}...", spinner="dots"):
        result = _run(task_manager.update_task(_pipeline(ctx), _tag(ctx), task_id, prompt, append, research))
    tasks = asyncio.run(_pipeline(ctx).store.list_tasks(_tag(ctx)))
    ui.display_task_details(Task.model_validate(result.data["task"]), tasks)
    ui.display_telemetry(result.data.get("telemetryData"))


@app.command(name="update-subtask")
def update_subtask_cmd(
    ctx: typer.Context,
    subtask_id: str = typer.Option(..., "--id", "-i", help="Subtask ID in the form <parent>.<subtask>."),
    prompt: str = typer.Option(..., "--prompt", "-p", help="Information to add to the subtask."),
    research: bool = typer.Option(False, "--research", "-r", help="Use the research model."),
):
    """Appends timestamped notes to a subtask."""
    ui.display_banner()
    with ui.console.status(f"[bold green]Updating subtask {subtask_id}...", spinner="dots"):
        result = _run(task_manager.update_subtask(_pipeline(ctx), _tag(ctx), subtask_id, prompt, research))
    snippet = result.data.get("newlyAddedSnippet")
    if snippet:
        ui.console.print(Panel(snippet, title=f"Added to subtask {subtask_id}", border_style="green", expand=False))
    else:
        ui.console.print("[yellow]AI returned no new information; subtask left unchanged.[/yellow]")
    ui.display_telemetry(result.data.get("telemetryData"))


def _parse_ids(ids: str) -> List[int]:
    try:
        return [int(part.strip()) for part in ids.split(",") if part.strip()]
    except ValueError:
        raise typer.BadParameter(f"Task IDs must be comma-separated numbers, got '{ids}'.")


@app.command(name="add-task")
def add_task_cmd(
    ctx: typer.Context,
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Description of the task to create with AI."),
    title: Optional[str] = typer.Option(None, "--title", help="Task title (with --description, creates the task without AI)."),
    description: Optional[str] = typer.Option(None, "--description", help="Task description."),
    details: Optional[str] = typer.Option(None, "--details", help="Implementation details."),
    test_strategy: Optional[str] = typer.Option(None, "--test-strategy", help="Test strategy."),
    dependencies: Optional[str] = typer.Option(None, "--dependencies", help="Comma-separated IDs of tasks it depends on."),
    priority: Optional[str] = typer.Option(None, "--priority", help="high, medium or low."),
    research: bool = typer.Option(False, "--research", "-r", help="Use the research model."),
):
    """Adds one new task to the tag."""
    ui.display_banner()
    deps = _parse_ids(dependencies) if dependencies else []
    with ui.console.status("[bold green]Creating task...", spinner="dots"):
        result = _run(task_manager.add_task(
            _pipeline(ctx), _tag(ctx), prompt, deps, priority, research,
            title=title, description=description, details=details, test_strategy=test_strategy,
        ))
    tasks = asyncio.run(_pipeline(ctx).store.list_tasks(_tag(ctx)))
    ui.display_task_details(Task.model_validate(result.data["task"]), tasks)
    ui.display_telemetry(result.data.get("telemetryData"))


def _scope_command(ctx: typer.Context, direction: str, ids: str, strength: str, prompt: Optional[str], research: bool):
    ui.display_banner()
    operation = task_manager.scope_up_tasks if direction == "up" else task_manager.scope_down_tasks
    with ui.console.status(f"[bold green]Scoping {direction} tasks {ids}...", spinner="dots"):
        result = _run(operation(_pipeline(ctx), _tag(ctx), _parse_ids(ids), strength, prompt, research))
    ui.display_batch_results(result.data["results"], f"Scope {direction.capitalize()} ({strength})")


@app.command(name="scope-up")
def scope_up_cmd(
    ctx: typer.Context,
    ids: str = typer.Option(..., "--id", "-i", help="Comma-separated task IDs."),
    strength: str = typer.Option("regular", "--strength", "-s", help="light, regular or heavy."),
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Extra instructions for the AI."),
    research: bool = typer.Option(False, "--research", "-r", help="Use the research model."),
):
    """Increases the scope of one or more tasks."""
    _scope_command(ctx, "up", ids, strength, prompt, research)


@app.command(name="scope-down")
def scope_down_cmd(
    ctx: typer.Context,
    ids: str = typer.Option(..., "--id", "-i", help="Comma-separated task IDs."),
    strength: str = typer.Option("regular", "--strength", "-s", help="light, regular or heavy."),
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Extra instructions for the AI."),
    research: bool = typer.Option(False, "--research", "-r", help="Use the research model."),
):
    """Reduces the scope of one or more tasks."""
    _scope_command(ctx, "down", ids, strength, prompt, research)


@app.command()
def research(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="The question to research."),
    ids: Optional[str] = typer.Option(None, "--id", "-i", help="Comma-separated task/subtask IDs to include as context."),
    files: Optional[List[Path]] = typer.Option(None, "--file", help="Files to include as context (repeatable)."),
    context: str = typer.Option("", "--context", "-c", help="Additional free-text context."),
    tree: bool = typer.Option(False, "--tree", help="Include the project tree."),
    detail: str = typer.Option("medium", "--detail", "-d", help="Detail level: low, medium or high."),
):
    """Researches a question using project context and the research model."""
    ui.display_banner()
    task_ids = [part.strip() for part in ids.split(",") if part.strip()] if ids else []
    with ui.console.status("[bold green]Researching...", spinner="dots"):
        result = _run(task_manager.research(
            _pipeline(ctx), _tag(ctx), query, task_ids, [str(f) for f in files or []], context, tree, detail,
        ))
    ui.display_context_breakdown(result.data["tokenBreakdown"])
    if result.data["discoveredTaskIds"]:
        ui.console.print(f"[dim]Related tasks found: {', '.join(result.data['discoveredTaskIds'])}[/dim]")
    ui.console.print(Panel(result.data["result"], title=f"Research: {utils.truncate(query, 60)}", border_style="cyan"))
    ui.display_telemetry(result.data.get("telemetryData"))


@app.command(name="add-dependency")
def add_dependency_cmd(
    ctx: typer.Context,
    task_id: int = typer.Option(..., "--id", "-i", help="Task that gains the dependency."),
    depends_on: int = typer.Option(..., "--depends-on", "-d", help="Task it should depend on."),
):
    """Adds a dependency between two tasks, rejecting cycles."""
    _run(task_manager.add_dependency(_pipeline(ctx), _tag(ctx), task_id, depends_on))
    ui.console.print(f"[bold green]Success:[/bold green] Task {task_id} now depends on {depends_on}.")


@app.command(name="remove-dependency")
def remove_dependency_cmd(
    ctx: typer.Context,
    task_id: int = typer.Option(..., "--id", "-i", help="Task to remove the dependency from."),
    depends_on: int = typer.Option(..., "--depends-on", "-d", help="Dependency to remove."),
):
    """Removes a dependency from a task."""
    _run(task_manager.remove_dependency(_pipeline(ctx), _tag(ctx), task_id, depends_on))
    ui.console.print(f"[bold green]Success:[/bold green] Task {task_id} no longer depends on {depends_on}.")


@app.command(name="validate-deps")
def validate_deps_cmd(ctx: typer.Context):
    """Validates task dependencies for issues like missing refs or cycles."""
    ui.display_banner()
    result = _run(task_manager.validate_dependencies(_pipeline(ctx), _tag(ctx)))
    ui.display_dependency_issues(result.data["issues"])


@app.command(name="fix-deps")
def fix_deps_cmd(ctx: typer.Context):
    """Automatically fixes invalid dependencies (missing refs, self-deps, duplicates, cycles)."""
    ui.display_banner()
    result = _run(task_manager.fix_dependencies(_pipeline(ctx), _tag(ctx)))
    fixes = result.data["fixes"]
    if result.data["changed"]:
        ui.console.print(Panel(
            f"[bold green]Dependencies fixed successfully![/bold green]\n\n"
            f"Missing refs removed: {fixes['missing']}\n"
            f"Self-deps removed: {fixes['self']}\n"
            f"Duplicates removed: {fixes['duplicate']}\n"
            f"Cycles broken: {fixes['cycle']}\n\n"
            f"Tasks updated: {', '.join(map(str, result.data['tasksUpdated']))}",
            border_style="green"
        ))
    else:
        ui.console.print(Panel("[bold blue]No dependency issues found.[/bold blue]", border_style="blue"))


@app.command(name="list")
def list_cmd(
    ctx: typer.Context,
    task_id: Optional[int] = typer.Option(None, "--id", "-i", help="Show the details of one task."),
):
    """Lists the tag's tasks."""
    tasks = asyncio.run(_pipeline(ctx).store.list_tasks(_tag(ctx)))
    if task_id is None:
        ui.display_tasks_summary(tasks, title=f"Tasks ({_tag(ctx)})")
        return
    task = next((t for t in tasks if t.id == task_id), None)
    if task is None:
        ui.console.print(f"[bold red]Error:[/bold red] Task {task_id} not found in tag '{_tag(ctx)}'.")
        raise typer.Exit(code=1)
    ui.display_task_details(task, tasks)
