"""Complexity report maintenance: coverage filling and per-scope merging."""
import logging
from typing import Iterable, List, Optional

from . import config
from .models import ComplexityAnalysisItem, ComplexityReport, ReportMeta, Task
from .utils import log as default_log

DEFAULT_COMPLEXITY_SCORE = 5
DEFAULT_RECOMMENDED_SUBTASKS = 3
MISSING_ANALYSIS_REASONING = "Automatically added due to missing analysis in AI response."


def default_analysis_for(task: Task) -> ComplexityAnalysisItem:
    return ComplexityAnalysisItem(
        taskId=task.id,
        taskTitle=task.title,
        complexityScore=DEFAULT_COMPLEXITY_SCORE,
        recommendedSubtasks=DEFAULT_RECOMMENDED_SUBTASKS,
        expansionPrompt=f"Break down this task with a focus on {task.title.lower()}.",
        reasoning=MISSING_ANALYSIS_REASONING,
    )


def fill_missing_analyses(
    entries: List[ComplexityAnalysisItem],
    batch_tasks: List[Task],
    log: Optional[logging.Logger] = None,
) -> List[ComplexityAnalysisItem]:
    """Returns exactly one entry per batch task, in batch order.

    Entries for tasks outside the batch are dropped, duplicates keep the first
    occurrence, and tasks the AI skipped get a default entry.
    """
    log = log or default_log
    batch_ids = [t.id for t in batch_tasks]
    by_id = {}
    for entry in entries:
        if entry.taskId not in batch_ids:
            log.warning(f"AI returned analysis for task {entry.taskId}, which was not requested. Dropping it.")
            continue
        if entry.taskId in by_id:
            log.warning(f"AI returned duplicate analysis for task {entry.taskId}. Keeping the first one.")
            continue
        by_id[entry.taskId] = entry

    missing = [t for t in batch_tasks if t.id not in by_id]
    if missing:
        log.warning(f"Missing analysis for {len(missing)} tasks: {', '.join(str(t.id) for t in missing)}")
    for task in missing:
        log.info(f"Adding default analysis for task {task.id}")
        by_id[task.id] = default_analysis_for(task)

    return [by_id[task_id] for task_id in batch_ids]


def merge_complexity_analysis(
    new_entries: List[ComplexityAnalysisItem],
    previous_report: Optional[ComplexityReport],
    scope_task_ids: Iterable[int],
    log: Optional[logging.Logger] = None,
) -> List[ComplexityAnalysisItem]:
    """Keeps previous entries still in scope and not re-analyzed, then appends the new ones."""
    log = log or default_log
    if previous_report is None:
        return list(new_entries)

    analyzed_ids = {e.taskId for e in new_entries}
    in_scope = set(scope_task_ids)
    kept: List[ComplexityAnalysisItem] = []
    seen = set()
    for item in previous_report.complexityAnalysis:
        if item.taskId in analyzed_ids or item.taskId not in in_scope or item.taskId in seen:
            continue
        seen.add(item.taskId)
        kept.append(item)

    log.info(f"Merged {len(new_entries)} new analyses with {len(kept)} existing entries")
    return kept + list(new_entries)


def build_report(
    analysis: List[ComplexityAnalysisItem],
    scope: str,
    tasks_analyzed: int,
    total_tasks: int,
    threshold: float,
    used_research: bool,
) -> ComplexityReport:
    return ComplexityReport(
        meta=ReportMeta(
            tasksAnalyzed=tasks_analyzed,
            totalTasks=total_tasks,
            analysisCount=len(analysis),
            thresholdScore=threshold,
            usedResearch=used_research,
            scope=scope,
            projectName=config.PROJECT_NAME,
        ),
        complexityAnalysis=analysis,
    )


def find_task_in_complexity_report(report: Optional[ComplexityReport], task_id: int) -> Optional[ComplexityAnalysisItem]:
    if report is None:
        return None
    return next((item for item in report.complexityAnalysis if item.taskId == task_id), None)


def summarize_scores(analysis: List[ComplexityAnalysisItem]) -> dict:
    """Counts high (>=8), medium (5-7) and low (<5) complexity entries."""
    scores = [item.complexityScore for item in analysis]
    return {
        "high": sum(1 for s in scores if s >= 8),
        "medium": sum(1 for s in scores if 5 <= s < 8),
        "low": sum(1 for s in scores if s < 5),
        "total": len(scores),
    }
