from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.text import Text
from typing import List, Optional, Dict, Any

from . import models, config
from .complexity import summarize_scores
from .utils import truncate

console = Console()

# --- Color Mapping ---
STATUS_COLORS = {
    "pending": "yellow", "in-progress": "blue", "review": "magenta", "done": "green",
    "deferred": "grey50", "cancelled": "red",
}
PRIORITY_COLORS = { "high": "red", "medium": "yellow", "low": "green" }
COMPLEXITY_COLORS = { (1, 4): "green", (5, 7): "yellow", (8, 10): "red" }

# --- Formatting Functions ---
def get_status_style(status: Optional[str]) -> str:
    status_val = status or "pending"
    return STATUS_COLORS.get(status_val.lower(), "white")

def format_status(status: Optional[str]) -> Text:
    status_val = status or "pending"
    style = get_status_style(status_val)
    display_text = status_val.replace("-", " ").title()
    return Text(display_text, style=style)

def get_priority_style(priority: Optional[str]) -> str:
    priority_val = priority or config.DEFAULT_PRIORITY
    return PRIORITY_COLORS.get(priority_val.lower(), "white")

def format_priority(priority: Optional[str]) -> Text:
    priority_val = priority or config.DEFAULT_PRIORITY
    style = get_priority_style(priority_val)
    return Text(priority_val.capitalize(), style=style)

def get_complexity_style(score: Optional[float]) -> str:
    if score is None: return "grey50"
    for (low, high), color in COMPLEXITY_COLORS.items():
        if low <= score <= high: return color
    return "white"

def format_complexity(score: Optional[float]) -> Text:
    if score is None: return Text("N/A", style="grey50")
    style = get_complexity_style(score)
    return Text(f"{score}/10", style=style)

def format_dependencies(dependencies: List[int], all_tasks: List[models.Task]) -> Text:
    """Formats task dependencies with a done/pending marker per dependency."""
    if not dependencies:
        return Text("None", style="grey50")
    status_by_id = {t.id: t.status for t in all_tasks}
    text_result = Text("")
    for i, dep_id in enumerate(dependencies):
        status = status_by_id.get(dep_id)
        if status is None:
            text_result.append(f"❓{dep_id}", style="red")
        elif status in models.FINISHED_STATUSES:
            text_result.append(f"✅{dep_id}", style="green")
        else:
            text_result.append(f"⏳{dep_id}", style="yellow")
        if i < len(dependencies) - 1: text_result.append(", ")
    return text_result

# --- Display Functions ---
def display_banner():
    console.print(Panel(
        Text("Taskloom", style="bold blue", justify="center"),
        title="[bold cyan]Welcome[/]", border_style="cyan"
    ))

def display_error(error: Optional[models.ErrorInfo]):
    if error is None: return
    details = {k: v for k, v in error.details.items() if v is not None and k not in ("timestamp", "results")}
    body = f"[bold]{error.message}[/bold]"
    if details:
        body += "\n\n" + "\n".join(f"[dim]{k}:[/dim] {truncate(str(v), 300)}" for k, v in details.items())
    console.print(Panel(body, title=f"[bold red]{error.code}[/]", border_style="red", expand=False))

def display_tasks_summary(tasks: List[models.Task], title: str = "Tasks Overview"):
    """Displays a summary table of tasks."""
    if not tasks:
        console.print("[yellow]No tasks found.[/yellow]")
        return
    table = Table(title=title, show_header=True, header_style="bold magenta", expand=True)
    table.add_column("ID", style="dim", width=6, no_wrap=True)
    table.add_column("Title", min_width=30, ratio=3)
    table.add_column("Status", justify="center", width=12)
    table.add_column("Prio", justify="center", width=6)
    table.add_column("#Sub", justify="right", width=5)
    table.add_column("Dependencies", width=18)

    for task in tasks:
        table.add_row(
            str(task.id),
            task.title,
            format_status(task.status),
            format_priority(task.priority),
            str(len(task.subtasks)),
            format_dependencies(task.dependencies, tasks),
        )
    console.print(table)

def display_subtasks_summary(subtasks: List[models.Subtask], parent_id: int):
    """Displays a summary table of subtasks, including acceptance criteria."""
    if not subtasks: return
    table = Table(title=f"Subtasks for Task {parent_id}", show_header=True, header_style="bold cyan", expand=True)
    table.add_column("Sub ID", style="dim", width=10, no_wrap=True)
    table.add_column("Title", min_width=30, ratio=2)
    table.add_column("Status", justify="center", width=12)
    table.add_column("Acceptance Criteria", ratio=3)
    table.add_column("Deps (Sibling ID)", justify="center", width=15)

    for subtask in subtasks:
         sibling_deps_str = ", ".join(map(str, subtask.dependencies)) if subtask.dependencies else "None"
         acceptance_crit = truncate(subtask.acceptanceCriteria, 60) if subtask.acceptanceCriteria else "[dim]N/A[/]"
         table.add_row(
             f"{parent_id}.{subtask.id}",
             subtask.title,
             format_status(subtask.status),
             acceptance_crit,
             sibling_deps_str
         )
    console.print(table)

def display_task_details(task: models.Task, all_tasks: List[models.Task]):
    """Displays detailed information about a single task."""
    panel_content = Text()
    panel_content.append("Status: ").append(format_status(task.status)).append("\n")
    panel_content.append("Priority: ").append(format_priority(task.priority)).append("\n")
    panel_content.append("Dependencies: ").append(format_dependencies(task.dependencies, all_tasks)).append("\n")

    panel_content.append("\nDescription:\n", style="bold")
    panel_content.append(task.description or "N/A").append("\n")
    panel_content.append("\nImplementation Details:\n", style="bold")
    panel_content.append(task.details or "N/A").append("\n")
    panel_content.append("\nTest Strategy:\n", style="bold")
    panel_content.append(task.testStrategy or "N/A").append("\n")

    console.print(Panel(panel_content, title=f"Details: Task #{task.id} - {task.title}", border_style="blue", expand=True))
    display_subtasks_summary(task.subtasks, task.id)

def display_complexity_report(report: Optional[models.ComplexityReport], scope: str):
    """Displays the complexity analysis report in a formatted way."""
    if report is None:
        console.print(f"[bold red]Error:[/bold red] No complexity report found for tag '{scope}'. Run analyze-complexity first.")
        return

    meta = report.meta
    threshold = meta.thresholdScore
    console.print(Panel(f"Complexity Analysis Report ({meta.generatedAt})", style="bold blue", expand=True))
    console.print(f"Project: {meta.projectName or 'N/A'} | Tag: {meta.scope or scope}")
    console.print(f"Tasks Analyzed: {meta.tasksAnalyzed} of {meta.totalTasks if meta.totalTasks is not None else 'N/A'} | Threshold: {threshold}")
    console.print(f"Research Used: {'Yes' if meta.usedResearch else 'No'}")

    table = Table(title="Task Complexity Analysis", show_header=True, header_style="bold magenta", expand=True)
    table.add_column("ID", style="dim", width=7, no_wrap=True)
    table.add_column("Title", min_width=30, ratio=2)
    table.add_column("Complexity", justify="center", width=12)
    table.add_column("Rec. Sub", justify="center", width=10)
    table.add_column("Reasoning / Expand Prompt", ratio=3)

    sorted_analysis = sorted(report.complexityAnalysis, key=lambda x: x.complexityScore, reverse=True)

    for item in sorted_analysis:
        reasoning_prompt = Text()
        reasoning_prompt.append(item.reasoning or "N/A", style="italic")
        reasoning_prompt.append("\nExpand Prompt: ", style="dim")
        reasoning_prompt.append(truncate(item.expansionPrompt, 150))

        row_style = "on grey19" if item.complexityScore >= threshold else ""
        table.add_row(
            str(item.taskId),
            item.taskTitle,
            format_complexity(item.complexityScore),
            str(item.recommendedSubtasks),
            reasoning_prompt,
            style=row_style
        )

    console.print(table)
    display_complexity_summary(report)

def display_complexity_summary(report: models.ComplexityReport):
     """Prints a brief score distribution for the report."""
     counts = summarize_scores(report.complexityAnalysis)
     if not counts["total"]:
         console.print("[yellow]No complexity scores generated.[/yellow]")
         return

     avg_score = sum(item.complexityScore for item in report.complexityAnalysis) / counts["total"]
     threshold = report.meta.thresholdScore
     recommended_for_expansion = sum(1 for item in report.complexityAnalysis if item.complexityScore >= threshold)

     console.print(Panel(
         f"[bold]{counts['total']}[/] tasks in report. Average Complexity: [bold]{avg_score:.1f}/10[/].\n"
         f"Distribution: [red]High ({counts['high']})[/] | [yellow]Medium ({counts['medium']})[/] | [green]Low ({counts['low']})[/].\n"
         f"[bold]{recommended_for_expansion}[/] tasks recommended for expansion (score >= {threshold}).",
         title="Complexity Summary", border_style="green", expand=False
     ))

def display_telemetry(telemetry: Optional[Dict[str, Any]]):
    """Shows token usage and cost for one AI call."""
    if not telemetry: return
    console.print(
        f"[dim]AI usage ({telemetry.get('commandName') or 'call'}, {telemetry.get('modelUsed')}): "
        f"{telemetry.get('inputTokens', 0)} in / {telemetry.get('outputTokens', 0)} out tokens, "
        f"est. cost ${telemetry.get('totalCost', 0.0):.6f}[/dim]"
    )

def display_context_breakdown(breakdown: Dict[str, Any]):
    """Renders the per-section token counts of a gathered context."""
    table = Table(title="Context Token Breakdown", show_header=True, header_style="bold cyan", expand=False)
    table.add_column("Section")
    table.add_column("Tokens", justify="right")
    if breakdown.get("customContext"):
        table.add_row("Custom context", str(breakdown["customContext"]["tokens"]))
    for task in breakdown.get("tasks", []):
        table.add_row(f"Task {task['id']}: {truncate(task.get('title'), 40)}", str(task["tokens"]))
    for file in breakdown.get("files", []):
        table.add_row(f"File {file['path']} ({file['sizeKB']} KB)", str(file["tokens"]))
    if breakdown.get("projectTree"):
        table.add_row("Project tree", str(breakdown["projectTree"]["tokens"]))
    table.add_row("[bold]Total[/bold]", f"[bold]{breakdown.get('total', 0)}[/bold]")
    console.print(table)

def display_dependency_issues(issues: List[Dict[str, Any]]):
    if not issues:
        console.print(Panel("[bold green]All dependencies are valid.[/bold green]", border_style="green"))
        return
    console.print(Panel(f"[bold yellow]Found {len(issues)} dependency issues:[/bold yellow]", border_style="yellow"))
    table = Table("Type", "Task/Subtask ID", "Details", title="Dependency Issues")
    descriptions = {
        "missing": "Depends on missing: {dep}",
        "self": "Self-dependency",
        "duplicate": "Duplicate dependency: {dep}",
        "cycle": "Cycle closed by edge {id} -> {dep}",
    }
    for issue in issues:
        table.add_row(f"[red]{issue['type'].upper()}[/]", issue["id"], descriptions[issue["type"]].format(**issue))
    console.print(table)
    console.print("\nRun [cyan]taskloom fix-deps[/] to attempt automatic fixes.")

def display_batch_results(results: List[Dict[str, Any]], title: str):
    """Shows per-item outcomes of a batch operation."""
    if not results:
        console.print(f"[yellow]{title}: nothing to do.[/yellow]")
        return
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Task", style="dim", justify="right")
    table.add_column("Result")
    for item in results:
        if item["success"]:
            extra = f" ({item['subtasksAdded']} subtasks)" if "subtasksAdded" in item else ""
            if "complexityChange" in item:
                extra = f" (complexity change {item['complexityChange']})"
            table.add_row(str(item["taskId"]), Text(f"OK{extra}", style="green"))
        else:
            error = item.get("error") or {}
            table.add_row(str(item["taskId"]), Text(f"{error.get('code')}: {truncate(error.get('message'), 80)}", style="red"))
    console.print(table)
