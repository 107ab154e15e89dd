import logging
from typing import Dict, Iterable, List, Literal, Optional, Set, Tuple, get_args

from pydantic import BaseModel

from . import config
from .errors import NotFoundError, StructuralConflictError, ValidationError
from .models import Task, TaskDraft, TaskStatus
from .storage import TaskStore
from .utils import log as default_log

Graph = Dict[int, List[int]]
IssueType = Literal["missing", "self", "cycle", "duplicate"]


class DependencyIssue(BaseModel):
    type: IssueType
    id: str
    dep: Optional[str] = None


# --- Pure graph helpers ---
def build_graph(tasks: Iterable[Task]) -> Graph:
    return {task.id: list(task.dependencies) for task in tasks}


def would_create_cycle(graph: Graph, task_id: int, dependency_id: int) -> bool:
    """True if making `task_id` depend on `dependency_id` closes a cycle.

    Walks from `dependency_id` along existing edges with an explicit frontier;
    reaching `task_id` means the new edge would close a loop.
    """
    if task_id == dependency_id:
        return True
    frontier = [dependency_id]
    visited: Set[int] = set()
    while frontier:
        node = frontier.pop()
        if node == task_id:
            return True
        if node in visited:
            continue
        visited.add(node)
        frontier.extend(dep for dep in graph.get(node, ()) if dep not in visited)
    return False


def find_cycles(graph: Graph) -> List[Tuple[int, int]]:
    """Returns the back edges (from, to) found by an iterative DFS.

    Removing every returned edge leaves the graph acyclic. Nodes are visited in
    ascending order so the result is stable.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in graph}
    back_edges: List[Tuple[int, int]] = []

    for root in sorted(graph):
        if color[root] != WHITE:
            continue
        color[root] = GREY
        stack = [(root, iter(graph[root]))]
        while stack:
            node, edges = stack[-1]
            advanced = False
            for dep in edges:
                state = color.get(dep)
                if state is None:
                    continue # Dangling edge, reported as 'missing' elsewhere
                if state == GREY:
                    back_edges.append((node, dep))
                elif state == WHITE:
                    color[dep] = GREY
                    stack.append((dep, iter(graph[dep])))
                    advanced = True
                    break
            if not advanced:
                color[node] = BLACK
                stack.pop()
    return back_edges


# --- Synthesis remapping ---
def remap_synthesized_dependencies(
    drafts: List[TaskDraft],
    existing_ids: Iterable[int],
    start_number: int,
    default_priority: str = config.DEFAULT_PRIORITY,
    log: Optional[logging.Logger] = None,
) -> List[Task]:
    """Assigns final numbers to AI drafts and rewrites their dependencies.

    Drafts are numbered `start_number`, `start_number + 1`, ... in the order
    given. A dependency is first looked up among the batch's own draft ids and
    then among the scope's existing task numbers; it survives only if the
    resolved number is lower than the dependent task's number.
    """
    log = log or default_log
    existing = set(existing_ids)
    id_map: Dict[int, int] = {}
    for offset, draft in enumerate(drafts):
        id_map.setdefault(draft.id, start_number + offset)

    valid_statuses = get_args(TaskStatus)
    tasks: List[Task] = []
    for offset, draft in enumerate(drafts):
        number = start_number + offset
        dependencies: List[int] = []
        for dep in draft.dependencies:
            if dep in id_map:
                resolved = id_map[dep]
            elif dep in existing:
                resolved = dep
            else:
                log.warning(f"Task {number} ('{draft.title}') depends on unknown task {dep}. Dropping dependency.")
                continue
            if resolved >= number:
                log.warning(f"Task {number} ('{draft.title}') depends on later or same task {resolved}. Dropping dependency.")
                continue
            if resolved not in dependencies:
                dependencies.append(resolved)

        tasks.append(Task(
            id=number,
            title=draft.title,
            description=draft.description,
            details=draft.details or "",
            testStrategy=draft.testStrategy or "",
            status=draft.status if draft.status in valid_statuses else "pending",
            priority=draft.priority or default_priority,
            dependencies=sorted(dependencies),
        ))
    return tasks


def filter_task_dependencies(
    tasks: List[Task],
    task_id: int,
    proposed: Iterable[int],
    log: Optional[logging.Logger] = None,
) -> List[int]:
    """Keeps the proposed dependencies of `task_id` that the scope's graph can accept.

    Self-edges, unknown tasks, duplicates and edges that would close a cycle
    are dropped with a warning. Edges are accepted in the order given.
    """
    log = log or default_log
    task_ids = {t.id for t in tasks}
    graph = build_graph(tasks)
    kept: List[int] = []
    graph[task_id] = kept
    for dep in proposed:
        if dep == task_id:
            log.warning(f"Dropping self-dependency from task {task_id}.")
        elif dep not in task_ids:
            log.warning(f"Dropping dependency {dep} from task {task_id}: no such task in scope.")
        elif dep in kept:
            continue
        elif would_create_cycle(graph, task_id, dep):
            log.warning(f"Dropping dependency {dep} from task {task_id}: it would create a cycle.")
        else:
            kept.append(dep)
    return kept


# --- Validation & Repair ---
def validate_dependencies(tasks: List[Task]) -> Tuple[bool, List[DependencyIssue]]:
    """Reports missing, self, duplicate and cycle edges for tasks and subtasks."""
    issues: List[DependencyIssue] = []
    task_ids = {task.id for task in tasks}

    for task in tasks:
        seen: Set[int] = set()
        for dep in task.dependencies:
            if dep == task.id:
                issues.append(DependencyIssue(type="self", id=str(task.id), dep=str(dep)))
            elif dep not in task_ids:
                issues.append(DependencyIssue(type="missing", id=str(task.id), dep=str(dep)))
            elif dep in seen:
                issues.append(DependencyIssue(type="duplicate", id=str(task.id), dep=str(dep)))
            seen.add(dep)

        sibling_ids = {st.id for st in task.subtasks}
        for subtask in task.subtasks:
            sub_ref = f"{task.id}.{subtask.id}"
            for dep in subtask.dependencies:
                if dep == subtask.id:
                    issues.append(DependencyIssue(type="self", id=sub_ref, dep=f"{task.id}.{dep}"))
                elif dep not in sibling_ids:
                    issues.append(DependencyIssue(type="missing", id=sub_ref, dep=f"{task.id}.{dep}"))

        sub_graph = {st.id: [d for d in st.dependencies if d in sibling_ids and d != st.id] for st in task.subtasks}
        for from_id, to_id in find_cycles(sub_graph):
            issues.append(DependencyIssue(type="cycle", id=f"{task.id}.{from_id}", dep=f"{task.id}.{to_id}"))

    graph = {t.id: [d for d in t.dependencies if d in task_ids and d != t.id] for t in tasks}
    for from_id, to_id in find_cycles(graph):
        issues.append(DependencyIssue(type="cycle", id=str(from_id), dep=str(to_id)))

    return len(issues) == 0, issues


def fix_dependencies(tasks: List[Task], log: Optional[logging.Logger] = None) -> Tuple[bool, Dict[str, int]]:
    """Removes invalid dependencies in place and breaks cycles at their back edge.

    Returns whether anything changed and a count per fix type.
    """
    log = log or default_log
    fixes_summary = {"missing": 0, "self": 0, "duplicate": 0, "cycle": 0}
    task_ids = {task.id for task in tasks}

    def _clean(owner: str, own_id: int, deps: List[int], valid: Set[int]) -> List[int]:
        kept: List[int] = []
        for dep in deps:
            if dep == own_id:
                log.warning(f"Removing self-dependency from {owner}")
                fixes_summary["self"] += 1
            elif dep not in valid:
                log.warning(f"Removing missing dependency '{dep}' from {owner}")
                fixes_summary["missing"] += 1
            elif dep in kept:
                fixes_summary["duplicate"] += 1
            else:
                kept.append(dep)
        return kept

    # --- Pass 1: drop self, missing and duplicate references ---
    for task in tasks:
        task.dependencies = _clean(f"task {task.id}", task.id, task.dependencies, task_ids)
        sibling_ids = {st.id for st in task.subtasks}
        for subtask in task.subtasks:
            subtask.dependencies = _clean(f"subtask {task.id}.{subtask.id}", subtask.id, subtask.dependencies, sibling_ids)

    # --- Pass 2: break cycles ---
    by_id = {task.id: task for task in tasks}
    for from_id, to_id in find_cycles(build_graph(tasks)):
        log.warning(f"Breaking cycle: Removing dependency {from_id} -> {to_id}")
        by_id[from_id].dependencies = [d for d in by_id[from_id].dependencies if d != to_id]
        fixes_summary["cycle"] += 1
    for task in tasks:
        subtasks_by_id = {st.id: st for st in task.subtasks}
        sub_graph = {st.id: list(st.dependencies) for st in task.subtasks}
        for from_id, to_id in find_cycles(sub_graph):
            log.warning(f"Breaking cycle: Removing dependency {task.id}.{from_id} -> {task.id}.{to_id}")
            subtasks_by_id[from_id].dependencies = [d for d in subtasks_by_id[from_id].dependencies if d != to_id]
            fixes_summary["cycle"] += 1

    return any(fixes_summary.values()), fixes_summary


# --- Manual edits ---
async def add_dependency(
    store: TaskStore,
    scope: str,
    task_id: int,
    dependency_id: int,
    log: Optional[logging.Logger] = None,
) -> Task:
    """Adds `dependency_id` to task `task_id`, rejecting self-edges and cycles.

    The new edge is checked against the stored graph before writing and the
    written graph is checked again afterwards; on conflict the task's original
    dependency list is restored before the error is raised.
    """
    log = log or default_log
    if task_id == dependency_id:
        raise StructuralConflictError(f"Task {task_id} cannot depend on itself.", scope=scope, task_id=task_id)

    tasks = await store.list_tasks(scope)
    by_id = {t.id: t for t in tasks}
    if task_id not in by_id:
        raise NotFoundError(f"Task {task_id} not found in scope '{scope}'.", scope=scope, task_id=task_id)
    if dependency_id not in by_id:
        raise NotFoundError(f"Dependency target {dependency_id} does not exist in scope '{scope}'.", scope=scope, task_id=dependency_id)

    target = by_id[task_id]
    original_deps = list(target.dependencies)
    if dependency_id in original_deps:
        log.info(f"Dependency {dependency_id} already exists in task {task_id}.")
        return target

    graph = build_graph(tasks)
    if would_create_cycle(graph, task_id, dependency_id):
        raise StructuralConflictError(
            f"Cannot add dependency {dependency_id} to task {task_id} as it would create a circular dependency.",
            scope=scope, task_id=task_id,
        )

    updated = await store.update_task(scope, task_id, {"dependencies": sorted(original_deps + [dependency_id])})

    # The store may have changed between the check and the write
    written_graph = build_graph(await store.list_tasks(scope))
    written_graph[task_id] = [d for d in written_graph.get(task_id, []) if d != dependency_id]
    if would_create_cycle(written_graph, task_id, dependency_id):
        await store.update_task(scope, task_id, {"dependencies": original_deps})
        raise StructuralConflictError(
            f"Dependency {task_id} -> {dependency_id} formed a cycle after writing; change rolled back.",
            scope=scope, task_id=task_id,
        )

    log.info(f"Added dependency {dependency_id} to task {task_id}")
    return updated


async def remove_dependency(
    store: TaskStore,
    scope: str,
    task_id: int,
    dependency_id: int,
    log: Optional[logging.Logger] = None,
) -> Task:
    log = log or default_log
    task = await store.get_task(scope, task_id)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found in scope '{scope}'.", scope=scope, task_id=task_id)
    if dependency_id not in task.dependencies:
        raise ValidationError(f"Task {task_id} does not depend on {dependency_id}.", scope=scope, task_id=task_id)
    updated = await store.update_task(scope, task_id, {"dependencies": [d for d in task.dependencies if d != dependency_id]})
    log.info(f"Removed dependency {dependency_id} from task {task_id}")
    return updated
