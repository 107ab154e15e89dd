import asyncio
import functools
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar, get_args

from pydantic import BaseModel, TypeAdapter, ValidationError as PydanticValidationError

from . import config, dependency_manager
from .ai_services import Generator, LiteLLMGenerator
from .complexity import (
    build_report, fill_missing_analyses, find_task_in_complexity_report, merge_complexity_analysis, summarize_scores,
)
from .context_gatherer import ContextGatherer, TokenCounter
from .errors import NotFoundError, ParseError, TaskloomError, ValidationError
from .fuzzy_search import FuzzyTaskSearch, flatten_tasks_with_subtasks
from .models import (
    ACTIVE_STATUSES, FINISHED_STATUSES, ComplexityAnalysisItem, ContextResult, ErrorInfo, GenerationResult,
    GenerationRole, HistoryEntry, NewTaskDraft, OperationResult, PrdResponse, ScopeAdjustment, ScopeDirection,
    ScopeStrength, Subtask, SubtaskBatch, SubtaskDraft, Task, TaskDraft, TaskPriority, utc_now_iso,
)
from .prompts import PromptManager, PromptResolver
from .response_parser import (
    parse_complexity_analysis, parse_object, parse_subtask_drafts, parse_task_drafts, parse_updated_task, resequence_subtasks,
)
from .storage import JsonReportStore, JsonTaskStore, ReportStore, TaskStore
from .utils import get_next_task_id, log as default_log, parse_task_ref, truncate

ModelT = TypeVar("ModelT", bound=BaseModel)

RELATED_TASKS_LIMIT = 8
NOT_EXPANDABLE_STATUSES = FINISHED_STATUSES + ("cancelled",)


# --- Pipeline wiring ---
@dataclass
class PipelineContext:
    """Collaborators and per-scope locks shared by every operation."""

    store: TaskStore
    reports: ReportStore
    generator: Generator
    prompts: PromptResolver = field(default_factory=PromptManager)
    project_root: Path = config.PROJECT_ROOT
    log: logging.Logger = default_log
    token_counter: Optional[TokenCounter] = None
    _locks: Dict[str, asyncio.Lock] = field(default_factory=dict, repr=False)

    @classmethod
    def from_config(
        cls,
        tasks_file: Optional[Path] = None,
        report_dir: Optional[Path] = None,
        project_root: Optional[Path] = None,
        log: Optional[logging.Logger] = None,
    ) -> "PipelineContext":
        log = log or default_log
        return cls(
            store=JsonTaskStore(tasks_file or config.TASKS_FILE_PATH, log=log),
            reports=JsonReportStore(report_dir or config.COMPLEXITY_REPORT_DIR, log=log),
            generator=LiteLLMGenerator(),
            project_root=project_root or config.PROJECT_ROOT,
            log=log,
        )

    def scope_lock(self, scope: str) -> asyncio.Lock:
        lock = self._locks.get(scope)
        if lock is None:
            lock = self._locks[scope] = asyncio.Lock()
        return lock

    def gatherer(self, scope: str) -> ContextGatherer:
        return ContextGatherer(self.project_root, self.store, scope, token_counter=self.token_counter, log=self.log)


def operation(func: Callable[..., Awaitable[Dict[str, Any]]]) -> Callable[..., Awaitable[OperationResult]]:
    """Serializes the call on its scope and turns pipeline errors into a failed OperationResult."""
    name = func.__name__

    @functools.wraps(func)
    async def wrapper(ctx: PipelineContext, scope: str = config.DEFAULT_SCOPE, *args, **kwargs) -> OperationResult:
        async with ctx.scope_lock(scope):
            try:
                data = await func(ctx, scope, *args, **kwargs)
            except TaskloomError as e:
                e.with_context(scope=scope, operation=name)
                ctx.log.error(f"{name} failed in scope '{scope}': [{e.code}] {e.message}")
                return OperationResult(success=False, error=ErrorInfo(**e.to_dict()))
        return OperationResult(success=True, data=data)

    return wrapper


# --- Shared helpers ---
def _role(research: bool) -> GenerationRole:
    return "research" if research else "main"


def _telemetry(result: GenerationResult) -> Optional[Dict[str, Any]]:
    return result.telemetry.model_dump() if result.telemetry else None


def _result_text(result: GenerationResult) -> str:
    if result.kind == "text":
        return result.value or ""
    value = result.value
    if isinstance(value, BaseModel):
        value = value.model_dump(mode='json')
    return json.dumps(value)


def _object_items(
    result: GenerationResult,
    schema: Type[BaseModel],
    attr: str,
    text_parser: Callable[..., List[Any]],
    log: logging.Logger,
) -> List[Any]:
    """Pulls the item list out of an object result, or parses it from a text result."""
    if result.kind == "text":
        return text_parser(result.value, log=log)
    value = result.value
    if isinstance(value, schema):
        return getattr(value, attr)
    if isinstance(value, BaseModel):
        value = value.model_dump()
    if isinstance(value, list):
        value = {attr: value}
    try:
        return getattr(schema.model_validate(value), attr)
    except PydanticValidationError as e:
        raise ParseError(f"AI object failed {schema.__name__} validation: {e.error_count()} error(s)", excerpt=truncate(str(value), 500))


async def _require_task(ctx: PipelineContext, scope: str, number: int) -> Task:
    task = await ctx.store.get_task(scope, number)
    if task is None:
        raise NotFoundError(f"Task {number} not found in scope '{scope}'.", scope=scope, task_id=number)
    return task


async def _gather_related(
    ctx: PipelineContext,
    scope: str,
    query: str,
    search_type: str,
    exclude_ids: Iterable[str] = (),
    task_ids: Sequence[str] = (),
    files: Sequence[str] = (),
    custom_context: str = "",
    include_project_tree: bool = False,
) -> Tuple[ContextResult, List[str]]:
    """Ranks the scope's tasks against `query` and gathers them with any explicit inputs."""
    corpus = await ctx.store.list_tasks(scope)
    search = FuzzyTaskSearch(flatten_tasks_with_subtasks(corpus), search_type)
    results = search.find_relevant_tasks(
        query,
        max_results=RELATED_TASKS_LIMIT,
        include_recent=True,
        include_category_matches=True,
        exclude_ids=list(exclude_ids) + list(task_ids),
    )
    discovered = search.get_task_ids(results)
    if discovered:
        ctx.log.debug(f"Relevant tasks for {search_type}: {', '.join(discovered)}")
    gathered = await ctx.gatherer(scope).gather(
        tasks=list(task_ids) + discovered,
        files=files,
        custom_context=custom_context,
        include_project_tree=include_project_tree,
        format="research",
    )
    return gathered, discovered


def _info_block(text: str) -> str:
    timestamp = utc_now_iso()
    return f"<info added on {timestamp}>\n{text.strip()}\n</info added on {timestamp}>"


async def _record(ctx: PipelineContext, scope: str, task_id: Any, action: str, summary: str,
                  previous: Optional[BaseModel] = None, new: Optional[BaseModel] = None) -> None:
    await ctx.store.append_history(scope, HistoryEntry(
        taskId=task_id,
        action=action,
        changeSummary=summary,
        previousValue=previous.model_dump(mode='json') if previous is not None else None,
        newValue=new.model_dump(mode='json') if new is not None else None,
    ))


def _batch_outcome(results: List[Dict[str, Any]], errors: List[TaskloomError]) -> None:
    """Raises the first item error when every attempted item failed."""
    if results and len(errors) == len(results):
        first = errors[0]
        first.details["results"] = results
        raise first


# --- PRD synthesis ---
@operation
async def synthesize_tasks_from_requirement(
    ctx: PipelineContext,
    scope: str,
    text: str,
    num_tasks: int = config.DEFAULT_NUM_TASKS,
    append: bool = False,
    overwrite: bool = False,
    research: bool = False,
    source_file: Optional[str] = None,
) -> Dict[str, Any]:
    """Turns requirement text into numbered, dependency-consistent tasks in `scope`."""
    if not text or not text.strip():
        raise ValidationError("Requirement text is empty.")
    if num_tasks <= 0:
        raise ValidationError(f"Number of tasks must be positive, got {num_tasks}.")
    if append and overwrite:
        raise ValidationError("Use either append or overwrite, not both.")

    existing = await ctx.store.list_tasks(scope)
    if existing and not (append or overwrite):
        raise ValidationError(
            f"Scope '{scope}' already contains {len(existing)} tasks. Use append or overwrite.",
        )
    start_number = 1 if overwrite else get_next_task_id(existing)
    ctx.log.info(f"Generating ~{num_tasks} tasks for scope '{scope}' starting at {start_number}")

    pair = ctx.prompts.load_prompt("parse-prd", {
        "num_tasks": num_tasks,
        "next_id": start_number,
        "prd_content": text,
        "default_priority": config.DEFAULT_PRIORITY,
        "gathered_context": "",
    }, "research" if research else "default")
    result = await ctx.generator.generate_object(
        _role(research), PrdResponse, pair.systemPrompt, pair.userPrompt, command_name="parse-prd",
    )
    drafts: List[TaskDraft] = _object_items(result, PrdResponse, "tasks", parse_task_drafts, ctx.log)
    if not drafts:
        raise ParseError("AI returned no tasks for the requirement text.")

    if overwrite and existing:
        ctx.log.warning(f"Overwriting {len(existing)} existing tasks in scope '{scope}'")
        for task in existing:
            await ctx.store.delete_task(scope, task.id)
        await _record(ctx, scope, "*", "cleared", f"Removed {len(existing)} tasks before regenerating from requirements.")
        stale_report = await ctx.reports.get(scope)
        if stale_report is not None and stale_report.complexityAnalysis:
            # Task numbers restart at 1, so old entries would attach to the new tasks
            ctx.log.info(f"Clearing complexity report for scope '{scope}'")
            await ctx.reports.put(scope, build_report([], scope, 0, 0, stale_report.meta.thresholdScore, stale_report.meta.usedResearch))
        existing = []

    tasks = dependency_manager.remap_synthesized_dependencies(
        drafts, [t.id for t in existing], start_number, config.DEFAULT_PRIORITY, log=ctx.log,
    )
    created: List[Task] = []
    for task in tasks:
        saved = await ctx.store.create_task(scope, task)
        await _record(ctx, scope, saved.id, "created", f"Generated from {source_file or 'requirement text'}.", new=saved)
        created.append(saved)

    ctx.log.info(f"Created {len(created)} tasks in scope '{scope}'")
    return {
        "tasksCreated": len(created),
        "taskIds": [t.id for t in created],
        "tasks": [t.model_dump(mode='json') for t in created],
        "telemetryData": _telemetry(result),
    }


# --- Single task creation ---
def _normalize_priority(priority: Optional[str], log: logging.Logger) -> str:
    if priority is None:
        return config.DEFAULT_PRIORITY
    normalized = priority.strip().lower()
    if normalized not in get_args(TaskPriority):
        log.warning(f"Invalid priority '{priority}'. Using default priority '{config.DEFAULT_PRIORITY}'.")
        return config.DEFAULT_PRIORITY
    return normalized


def _single_object(result: GenerationResult, schema: Type[ModelT], key: str, log: logging.Logger) -> ModelT:
    """Validates an object result against `schema`, or parses it out of a text result."""
    if result.kind == "text":
        return parse_object(result.value, schema, key=key, log=log)
    value = result.value
    if isinstance(value, schema):
        return value
    if isinstance(value, BaseModel):
        value = value.model_dump()
    if isinstance(value, dict) and isinstance(value.get(key), dict):
        value = value[key]
    try:
        return schema.model_validate(value)
    except PydanticValidationError as e:
        raise ParseError(f"AI object failed {schema.__name__} validation: {e.error_count()} error(s)", excerpt=truncate(str(value), 500))


@operation
async def add_task(
    ctx: PipelineContext,
    scope: str,
    prompt: Optional[str] = None,
    dependencies: Sequence[int] = (),
    priority: Optional[str] = None,
    research: bool = False,
    title: Optional[str] = None,
    description: Optional[str] = None,
    details: Optional[str] = None,
    test_strategy: Optional[str] = None,
) -> Dict[str, Any]:
    """Creates one task, from a title and description directly or from a prompt via the AI.

    The new task gets the next free number. Its dependencies may only point at
    existing tasks; the AI's suggestions win over `dependencies` when it gives any.
    """
    manual = bool(title and title.strip() and description and description.strip())
    if not manual and not (prompt and prompt.strip()):
        raise ValidationError("Provide a prompt, or both a title and a description.")

    existing = await ctx.store.list_tasks(scope)
    existing_ids = {t.id for t in existing}
    new_id = get_next_task_id(existing)
    effective_priority = _normalize_priority(priority, ctx.log)

    requested: List[int] = []
    for dep in dependencies:
        if int(dep) in existing_ids:
            requested.append(int(dep))
        else:
            ctx.log.warning(f"Dependency {dep} does not exist in scope '{scope}'. Removing it.")

    result: Optional[GenerationResult] = None
    if manual:
        draft = NewTaskDraft(title=title, description=description, details=details or "", testStrategy=test_strategy or "")
    else:
        gathered, _ = await _gather_related(ctx, scope, prompt, "add-task")
        pair = ctx.prompts.load_prompt("add-task", {
            "prompt": prompt,
            "new_id": new_id,
            "existing_tasks": existing,
            "dependencies": requested,
            "priority": effective_priority,
            "title": title,
            "description": description,
            "details": details,
            "test_strategy": test_strategy,
            "gathered_context": gathered.context,
        }, "research" if research else "default")
        result = await ctx.generator.generate_object(
            _role(research), NewTaskDraft, pair.systemPrompt, pair.userPrompt, command_name="add-task",
        )
        draft = _single_object(result, NewTaskDraft, "task", ctx.log)

    proposed = draft.dependencies or requested
    [task] = dependency_manager.remap_synthesized_dependencies(
        [TaskDraft(id=new_id, **draft.model_dump(exclude={"dependencies"}), dependencies=proposed, priority=effective_priority)],
        existing_ids, new_id, effective_priority, log=ctx.log,
    )
    saved = await ctx.store.create_task(scope, task)
    await _record(ctx, scope, saved.id, "created", truncate(prompt or saved.title, 120), new=saved)
    ctx.log.info(f"Added task {saved.id} to scope '{scope}'")
    return {
        "taskId": saved.id,
        "task": saved.model_dump(mode='json'),
        "telemetryData": _telemetry(result) if result else None,
    }


# --- Expansion ---
async def _expand(
    ctx: PipelineContext,
    scope: str,
    task_number: int,
    subtask_count: Optional[int] = None,
    prompt: Optional[str] = None,
    research: bool = False,
    force: bool = False,
) -> Dict[str, Any]:
    task = await _require_task(ctx, scope, task_number)
    if task.status in FINISHED_STATUSES:
        raise ValidationError(f"Task {task.id} is already '{task.status}' and cannot be expanded.", task_id=task.id)
    if task.subtasks and not force:
        ctx.log.info(f"Task {task.id} already has {len(task.subtasks)} subtasks. Skipping expansion.")
        return {"task": task.model_dump(mode='json'), "subtasksAdded": 0, "hasExistingSubtasks": True}
    if subtask_count is not None and subtask_count <= 0:
        raise ValidationError(f"Subtask count must be positive, got {subtask_count}.", task_id=task.id)

    analysis = find_task_in_complexity_report(await ctx.reports.get(scope), task.id)
    count = subtask_count or (analysis.recommendedSubtasks if analysis else None) or config.DEFAULT_SUBTASKS
    additional_context = prompt or (analysis.expansionPrompt if analysis else "") or ""
    if analysis:
        ctx.log.info(f"Using complexity analysis for task {task.id} (score {analysis.complexityScore})")

    own_refs = [str(task.id)] + [f"{task.id}.{st.id}" for st in task.subtasks]
    gathered, _ = await _gather_related(ctx, scope, f"{task.title} {task.description or ''}", "expand-task", exclude_ids=own_refs)

    pair = ctx.prompts.load_prompt("expand-task", {
        "task": task,
        "subtask_count": count,
        "additional_context": additional_context,
        "gathered_context": gathered.context,
    }, "research" if research else "default")
    result = await ctx.generator.generate_object(
        _role(research), SubtaskBatch, pair.systemPrompt, pair.userPrompt, command_name="expand-task",
    )
    drafts: List[SubtaskDraft] = _object_items(result, SubtaskBatch, "subtasks", parse_subtask_drafts, ctx.log)
    if not drafts:
        raise ParseError(f"AI returned no subtasks for task {task.id}.", task_id=task.id)
    if len(drafts) != count:
        ctx.log.warning(f"Requested {count} subtasks for task {task.id}, AI returned {len(drafts)}")

    old_ids = [d.id if d.id is not None else position for position, d in enumerate(drafts, start=1)]
    subtasks = resequence_subtasks([
        Subtask(
            id=old_id,
            title=d.title,
            description=d.description,
            details=d.details,
            acceptanceCriteria=d.acceptanceCriteria,
            dependencies=d.dependencies,
        )
        for old_id, d in zip(old_ids, drafts)
    ], task.id, old_ids=old_ids, log=ctx.log)

    updated = await ctx.store.update_task(scope, task.id, {"subtasks": [st.model_dump() for st in subtasks]})
    await _record(ctx, scope, task.id, "expanded", f"Generated {len(subtasks)} subtasks.", previous=task, new=updated)
    ctx.log.info(f"Added {len(subtasks)} subtasks to task {task.id}")
    return {
        "task": updated.model_dump(mode='json'),
        "subtasksAdded": len(subtasks),
        "hasExistingSubtasks": bool(task.subtasks),
        "telemetryData": _telemetry(result),
    }


@operation
async def expand_task(
    ctx: PipelineContext,
    scope: str,
    task_number: int,
    subtask_count: Optional[int] = None,
    prompt: Optional[str] = None,
    research: bool = False,
    force: bool = False,
) -> Dict[str, Any]:
    """Expands one task into subtasks. Existing subtasks are kept unless `force` is set."""
    try:
        return await _expand(ctx, scope, task_number, subtask_count, prompt, research, force)
    except TaskloomError as e:
        raise e.with_context(task_id=task_number)


@operation
async def expand_all_tasks(
    ctx: PipelineContext,
    scope: str,
    subtask_count: Optional[int] = None,
    prompt: Optional[str] = None,
    research: bool = False,
    force: bool = False,
) -> Dict[str, Any]:
    """Expands every eligible task one at a time, most complex first."""
    tasks = await ctx.store.list_tasks(scope)
    eligible = [t for t in tasks if t.status not in NOT_EXPANDABLE_STATUSES and (force or not t.subtasks)]
    report = await ctx.reports.get(scope)
    scores = {item.taskId: item.complexityScore for item in report.complexityAnalysis} if report else {}
    eligible.sort(key=lambda t: (-scores.get(t.id, 0), t.id))
    ctx.log.info(f"Found {len(eligible)} tasks eligible for expansion in scope '{scope}'")

    results: List[Dict[str, Any]] = []
    errors: List[TaskloomError] = []
    for task in eligible:
        try:
            data = await _expand(ctx, scope, task.id, subtask_count, prompt, research, force)
            results.append({"taskId": task.id, "success": True, "subtasksAdded": data["subtasksAdded"]})
        except TaskloomError as e:
            e.with_context(scope=scope, task_id=task.id, operation="expand_all_tasks")
            ctx.log.error(f"Expansion failed for task {task.id}: {e.message}")
            errors.append(e)
            results.append({"taskId": task.id, "success": False, "error": e.to_dict()})

    _batch_outcome(results, errors)
    return {
        "tasksEligible": len(eligible),
        "expandedCount": len(results) - len(errors),
        "failedCount": len(errors),
        "results": results,
    }


# --- Complexity analysis ---
def _select_for_analysis(tasks: List[Task], task_ids: Optional[Iterable[int]], from_id: Optional[int], to_id: Optional[int]) -> List[Task]:
    active = [t for t in tasks if t.status in ACTIVE_STATUSES]
    if task_ids:
        wanted = {int(i) for i in task_ids}
        return [t for t in active if t.id in wanted]
    if from_id is not None or to_id is not None:
        low = from_id if from_id is not None else 1
        high = to_id if to_id is not None else max((t.id for t in tasks), default=0)
        return [t for t in active if low <= t.id <= high]
    return active


@operation
async def analyze_complexity(
    ctx: PipelineContext,
    scope: str,
    task_ids: Optional[Iterable[int]] = None,
    from_id: Optional[int] = None,
    to_id: Optional[int] = None,
    threshold: float = 5.0,
    research: bool = False,
) -> Dict[str, Any]:
    """Scores active tasks and merges the result into the scope's complexity report."""
    if not 1 <= threshold <= 10:
        raise ValidationError(f"Threshold must be between 1 and 10, got {threshold}.")
    all_tasks = await ctx.store.list_tasks(scope)
    batch = _select_for_analysis(all_tasks, task_ids, from_id, to_id)
    previous = await ctx.reports.get(scope)

    if not batch:
        if previous is not None:
            ctx.log.info(f"No tasks to analyze in scope '{scope}'. Keeping the existing report.")
            return {"report": previous.model_dump(mode='json'), "tasksAnalyzed": 0, "reusedPreviousReport": True}
        report = build_report([], scope, 0, len(all_tasks), threshold, research)
        await ctx.reports.put(scope, report)
        return {"report": report.model_dump(mode='json'), "tasksAnalyzed": 0, "reusedPreviousReport": False}

    ctx.log.info(f"Analyzing complexity of {len(batch)} tasks in scope '{scope}'")
    query = " ".join(f"{t.title} {t.description or ''}" for t in batch)
    gathered, _ = await _gather_related(ctx, scope, query, "analyze-complexity", exclude_ids=[str(t.id) for t in batch])

    pair = ctx.prompts.load_prompt("analyze-complexity", {
        "tasks": batch,
        "gathered_context": gathered.context,
    }, "research" if research else "default")
    result = await ctx.generator.generate_text(
        _role(research), pair.systemPrompt, pair.userPrompt, command_name="analyze-complexity",
    )
    if result.kind == "object":
        try:
            entries = TypeAdapter(List[ComplexityAnalysisItem]).validate_python(result.value)
        except PydanticValidationError as e:
            raise ParseError(f"AI object failed complexity analysis validation: {e.error_count()} error(s)", excerpt=truncate(str(result.value), 500))
    else:
        entries = parse_complexity_analysis(result.value, log=ctx.log)

    entries = fill_missing_analyses(entries, batch, log=ctx.log)
    merged = merge_complexity_analysis(entries, previous, [t.id for t in all_tasks], log=ctx.log)
    report = build_report(merged, scope, len(batch), len(all_tasks), threshold, research)
    await ctx.reports.put(scope, report)

    return {
        "report": report.model_dump(mode='json'),
        "tasksAnalyzed": len(batch),
        "summary": summarize_scores(entries),
        "reusedPreviousReport": False,
        "telemetryData": _telemetry(result),
    }


# --- Updates ---
async def _generate_task_update(
    ctx: PipelineContext,
    scope: str,
    task: Task,
    prompt: str,
    append: bool,
    research: bool,
) -> Tuple[GenerationResult, Optional[Dict[str, Any]]]:
    """Calls the AI for one task update and returns the patch to store, or None when nothing came back."""
    gathered, _ = await _gather_related(ctx, scope, f"{task.title} {prompt}", "update-task", exclude_ids=[str(task.id)])
    variant = "append" if append else ("research" if research else "default")
    pair = ctx.prompts.load_prompt("update-task", {
        "task": task,
        "update_prompt": prompt,
        "gathered_context": gathered.context,
    }, variant)
    result = await ctx.generator.generate_text(
        _role(research), pair.systemPrompt, pair.userPrompt, command_name="update-task",
    )

    if append:
        text = _result_text(result)
        if not text.strip():
            return result, None
        block = _info_block(text)
        return result, {"details": f"{task.details}\n{block}" if task.details else block}

    updated_task = parse_updated_task(_result_text(result), task, prompt, log=ctx.log)
    if updated_task.dependencies != task.dependencies:
        updated_task.dependencies = dependency_manager.filter_task_dependencies(
            await ctx.store.list_tasks(scope), task.id, updated_task.dependencies, log=ctx.log,
        )
    return result, updated_task.model_dump(exclude={"id", "updatedAt"})


async def _update_one(
    ctx: PipelineContext,
    scope: str,
    task_number: int,
    prompt: str,
    append: bool = False,
    research: bool = False,
) -> Dict[str, Any]:
    if not prompt or not prompt.strip():
        raise ValidationError("Update prompt is empty.", task_id=task_number)
    task = await _require_task(ctx, scope, task_number)
    if task.status in FINISHED_STATUSES:
        raise ValidationError(f"Task {task.id} is already '{task.status}'. Completed tasks are not updated.", task_id=task.id)

    try:
        result, patch = await _generate_task_update(ctx, scope, task, prompt, append, research)
    except TaskloomError as e:
        raise e.with_context(task_id=task.id)
    if patch is None:
        ctx.log.warning(f"AI returned no text for task {task.id}. Details left unchanged.")
        return {"task": task.model_dump(mode='json'), "updated": False, "telemetryData": _telemetry(result)}

    updated = await ctx.store.update_task(scope, task.id, patch)
    await _record(ctx, scope, task.id, "updated", truncate(prompt, 120), previous=task, new=updated)
    ctx.log.info(f"Updated task {task.id} in scope '{scope}'")
    return {"task": updated.model_dump(mode='json'), "updated": True, "telemetryData": _telemetry(result)}


@operation
async def update_task(
    ctx: PipelineContext,
    scope: str,
    task_number: int,
    prompt: str,
    append: bool = False,
    research: bool = False,
) -> Dict[str, Any]:
    """Rewrites a task from a free-text prompt, or appends a timestamped note when `append` is set."""
    return await _update_one(ctx, scope, task_number, prompt, append, research)


@operation
async def update_tasks(
    ctx: PipelineContext,
    scope: str,
    from_id: int,
    prompt: str,
    research: bool = False,
) -> Dict[str, Any]:
    """Applies the same update prompt to every unfinished task numbered `from_id` or higher."""
    if not prompt or not prompt.strip():
        raise ValidationError("Update prompt is empty.")
    tasks = [t for t in await ctx.store.list_tasks(scope) if t.id >= from_id and t.status not in FINISHED_STATUSES]
    ctx.log.info(f"Updating {len(tasks)} tasks from ID {from_id} in scope '{scope}'")

    results: List[Dict[str, Any]] = []
    errors: List[TaskloomError] = []
    for task in tasks:
        try:
            await _update_one(ctx, scope, task.id, prompt, append=False, research=research)
            results.append({"taskId": task.id, "success": True})
        except TaskloomError as e:
            e.with_context(scope=scope, task_id=task.id, operation="update_tasks")
            ctx.log.error(f"Update failed for task {task.id}: {e.message}")
            errors.append(e)
            results.append({"taskId": task.id, "success": False, "error": e.to_dict()})

    _batch_outcome(results, errors)
    return {"updatedCount": len(results) - len(errors), "failedCount": len(errors), "results": results}


def _neighbour(parent: Task, index: int) -> Optional[Dict[str, Any]]:
    if 0 <= index < len(parent.subtasks):
        sub = parent.subtasks[index]
        return {"id": f"{parent.id}.{sub.id}", "title": sub.title, "status": sub.status}
    return None


@operation
async def update_subtask(
    ctx: PipelineContext,
    scope: str,
    subtask_ref: str,
    prompt: str,
    research: bool = False,
) -> Dict[str, Any]:
    """Appends AI-written, timestamped notes to a subtask's details."""
    parent_number, sub_number = parse_task_ref(subtask_ref)
    if sub_number is None:
        raise ValidationError(f"Invalid subtask ID '{subtask_ref}'. Expected '<parent>.<subtask>'.", task_id=subtask_ref)
    if not prompt or not prompt.strip():
        raise ValidationError("Update prompt is empty.", task_id=subtask_ref)

    parent = await _require_task(ctx, scope, parent_number)
    index = next((i for i, st in enumerate(parent.subtasks) if st.id == sub_number), -1)
    if index == -1:
        raise NotFoundError(f"Subtask {subtask_ref} not found in scope '{scope}'.", scope=scope, task_id=subtask_ref)
    subtask = parent.subtasks[index]

    gathered, _ = await _gather_related(
        ctx, scope, f"{subtask.title} {prompt}", "update-subtask", exclude_ids=[str(parent.id), subtask_ref],
    )
    pair = ctx.prompts.load_prompt("update-subtask", {
        "parent_task": {"id": parent.id, "title": parent.title},
        "prev_subtask": _neighbour(parent, index - 1),
        "next_subtask": _neighbour(parent, index + 1),
        "current_details": subtask.details,
        "update_prompt": prompt,
        "gathered_context": gathered.context,
    }, "research" if research else "default")
    try:
        result = await ctx.generator.generate_text(
            _role(research), pair.systemPrompt, pair.userPrompt, command_name="update-subtask",
        )
    except TaskloomError as e:
        raise e.with_context(task_id=subtask_ref)

    text = _result_text(result)
    if not text.strip():
        ctx.log.warning(f"AI response for subtask {subtask_ref} was empty. Original details remain unchanged.")
        return {"subtask": subtask.model_dump(mode='json'), "newlyAddedSnippet": None, "telemetryData": _telemetry(result)}

    block = _info_block(text)
    new_subtask = subtask.model_copy(update={"details": f"{subtask.details}\n{block}" if subtask.details else block})
    subtasks = list(parent.subtasks)
    subtasks[index] = new_subtask
    await ctx.store.update_task(scope, parent.id, {"subtasks": [st.model_dump() for st in subtasks]})
    await _record(ctx, scope, subtask_ref, "updated", truncate(prompt, 120), previous=subtask, new=new_subtask)
    ctx.log.info(f"Updated subtask {subtask_ref} in scope '{scope}'")
    return {"subtask": new_subtask.model_dump(mode='json'), "newlyAddedSnippet": block, "telemetryData": _telemetry(result)}


# --- Scope adjustment ---
async def _adjust_scope(
    ctx: PipelineContext,
    scope: str,
    task_number: int,
    direction: ScopeDirection,
    strength: ScopeStrength,
    prompt: Optional[str],
    research: bool,
) -> Dict[str, Any]:
    task = await _require_task(ctx, scope, task_number)
    if task.status in FINISHED_STATUSES:
        raise ValidationError(f"Task {task.id} is already '{task.status}'. Its scope is not adjusted.", task_id=task.id)

    gathered, _ = await _gather_related(
        ctx, scope, f"{task.title} {task.description or ''}", f"scope-{direction}", exclude_ids=[str(task.id)],
    )
    pair = ctx.prompts.load_prompt("scope-adjust", {
        "task": task,
        "direction": direction,
        "strength": strength,
        "custom_prompt": prompt,
        "gathered_context": gathered.context,
    }, "research" if research else "default")
    result = await ctx.generator.generate_object(
        _role(research), ScopeAdjustment, pair.systemPrompt, pair.userPrompt, command_name=f"scope-{direction}",
    )
    adjustment = _single_object(result, ScopeAdjustment, "task", ctx.log)

    history = list(getattr(task, "scopeHistory", None) or [])
    history.append({
        "timestamp": utc_now_iso(),
        "direction": direction,
        "strength": strength,
        "complexityChange": adjustment.complexityChange,
        "scopeChanges": adjustment.scopeChanges,
        "removedRequirements": adjustment.removedRequirements,
        "reasoning": adjustment.reasoning,
        "prompt": prompt,
    })
    updated = await ctx.store.update_task(scope, task.id, {
        "title": adjustment.title,
        "description": adjustment.description,
        "details": adjustment.details,
        "testStrategy": adjustment.testStrategy or task.testStrategy,
        "scopeHistory": history,
    })
    await _record(ctx, scope, task.id, f"scope-{direction}", f"Scoped {direction} with {strength} strength.", previous=task, new=updated)
    ctx.log.info(f"Scoped {direction} task {task.id} (complexity change {adjustment.complexityChange})")
    return {
        "taskId": task.id,
        "title": updated.title,
        "complexityChange": adjustment.complexityChange,
        "changes": adjustment.scopeChanges,
        "telemetryData": _telemetry(result),
    }


async def _adjust_scope_batch(
    ctx: PipelineContext,
    scope: str,
    task_ids: Sequence[int],
    direction: ScopeDirection,
    strength: str,
    prompt: Optional[str],
    research: bool,
) -> Dict[str, Any]:
    if strength not in get_args(ScopeStrength):
        raise ValidationError(f"Invalid strength '{strength}'. Expected one of: {', '.join(get_args(ScopeStrength))}.")
    if not task_ids:
        raise ValidationError("At least one task ID is required.")
    ctx.log.info(f"Scoping {direction} {len(task_ids)} task(s) in scope '{scope}' with strength '{strength}'")

    operation_name = f"scope_{direction}_tasks"
    results: List[Dict[str, Any]] = []
    errors: List[TaskloomError] = []
    for task_id in task_ids:
        try:
            data = await _adjust_scope(ctx, scope, int(task_id), direction, strength, prompt, research)
            results.append({"success": True, **data})
        except TaskloomError as e:
            e.with_context(scope=scope, task_id=task_id, operation=operation_name)
            ctx.log.error(f"Scope {direction} failed for task {task_id}: {e.message}")
            errors.append(e)
            results.append({"taskId": task_id, "success": False, "error": e.to_dict()})

    _batch_outcome(results, errors)
    return {
        "strength": strength,
        "updatedCount": len(results) - len(errors),
        "failedCount": len(errors),
        "results": results,
    }


@operation
async def scope_up_tasks(
    ctx: PipelineContext,
    scope: str,
    task_ids: Sequence[int],
    strength: str = "regular",
    prompt: Optional[str] = None,
    research: bool = False,
) -> Dict[str, Any]:
    """Rewrites each task with more scope, one task at a time."""
    return await _adjust_scope_batch(ctx, scope, task_ids, "up", strength, prompt, research)


@operation
async def scope_down_tasks(
    ctx: PipelineContext,
    scope: str,
    task_ids: Sequence[int],
    strength: str = "regular",
    prompt: Optional[str] = None,
    research: bool = False,
) -> Dict[str, Any]:
    """Rewrites each task with less scope, one task at a time."""
    return await _adjust_scope_batch(ctx, scope, task_ids, "down", strength, prompt, research)


# --- Research ---
@operation
async def research(
    ctx: PipelineContext,
    scope: str,
    query: str,
    task_ids: Sequence[str] = (),
    file_paths: Sequence[str] = (),
    custom_context: str = "",
    include_project_tree: bool = False,
    detail_level: str = "medium",
) -> Dict[str, Any]:
    """Answers a free-text question with the research role, grounded in project context."""
    if not query or not query.strip():
        raise ValidationError("Research query is empty.")
    task_ids = [str(t) for t in task_ids]
    for ref in task_ids:
        parse_task_ref(ref)

    gathered, discovered = await _gather_related(
        ctx, scope, query, "research",
        task_ids=task_ids,
        files=file_paths,
        custom_context=custom_context,
        include_project_tree=include_project_tree,
    )
    pair = ctx.prompts.load_prompt("research", {
        "query": query,
        "detail_level": detail_level,
        "gathered_context": gathered.context,
    })
    result = await ctx.generator.generate_text("research", pair.systemPrompt, pair.userPrompt, command_name="research")
    return {
        "query": query,
        "result": _result_text(result),
        "contextTokens": gathered.tokenBreakdown.total,
        "tokenBreakdown": gathered.tokenBreakdown.model_dump(),
        "discoveredTaskIds": discovered,
        "detailLevel": detail_level,
        "telemetryData": _telemetry(result),
    }


# --- Dependency edits ---
@operation
async def add_dependency(ctx: PipelineContext, scope: str, task_id: int, dependency_id: int) -> Dict[str, Any]:
    before = await _require_task(ctx, scope, task_id)
    updated = await dependency_manager.add_dependency(ctx.store, scope, task_id, dependency_id, log=ctx.log)
    if updated.dependencies != before.dependencies:
        await _record(ctx, scope, task_id, "dependency-added", f"Now depends on {dependency_id}.", previous=before, new=updated)
    return {"task": updated.model_dump(mode='json')}


@operation
async def remove_dependency(ctx: PipelineContext, scope: str, task_id: int, dependency_id: int) -> Dict[str, Any]:
    before = await _require_task(ctx, scope, task_id)
    updated = await dependency_manager.remove_dependency(ctx.store, scope, task_id, dependency_id, log=ctx.log)
    await _record(ctx, scope, task_id, "dependency-removed", f"No longer depends on {dependency_id}.", previous=before, new=updated)
    return {"task": updated.model_dump(mode='json')}


@operation
async def validate_dependencies(ctx: PipelineContext, scope: str) -> Dict[str, Any]:
    tasks = await ctx.store.list_tasks(scope)
    is_valid, issues = dependency_manager.validate_dependencies(tasks)
    return {"valid": is_valid, "issues": [i.model_dump() for i in issues], "tasksChecked": len(tasks)}


@operation
async def fix_dependencies(ctx: PipelineContext, scope: str) -> Dict[str, Any]:
    tasks = await ctx.store.list_tasks(scope)
    originals = {t.id: t.model_copy(deep=True) for t in tasks}
    made_changes, fixes_summary = dependency_manager.fix_dependencies(tasks, log=ctx.log)

    changed: List[int] = []
    for task in tasks:
        before = originals[task.id]
        if task.dependencies == before.dependencies and [st.dependencies for st in task.subtasks] == [st.dependencies for st in before.subtasks]:
            continue
        updated = await ctx.store.update_task(scope, task.id, {
            "dependencies": task.dependencies,
            "subtasks": [st.model_dump() for st in task.subtasks],
        })
        await _record(ctx, scope, task.id, "dependencies-fixed", "Removed invalid dependencies.", previous=before, new=updated)
        changed.append(task.id)
    return {"changed": made_changes, "fixes": fixes_summary, "tasksUpdated": changed}
