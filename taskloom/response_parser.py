"""Recovery of structured content from free-form AI text.

`extract_json` walks a fixed ladder of cleanup stages and stops at the first
one whose candidate parses:

    braces    -> first '{'/'[' through the matching last '}'/']', then the other pair
    codeblock -> contents of a fenced ``` block
    prefix    -> text with a stray 'json\\n' / 'javascript\\n' line removed
    raw       -> the trimmed text as-is

Parsed data is then validated against a pydantic schema. Validation failures
raise ParseError with the head of the cleaned text; nothing is guessed.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Literal, Optional, Tuple, Type, TypeVar, get_args

from pydantic import BaseModel, TypeAdapter, ValidationError as PydanticValidationError

from .errors import ParseError
from .models import (
    ComplexityAnalysisItem, Subtask, SubtaskDraft, Task, TaskDraft, TaskPriority, TaskStatus, FINISHED_STATUSES,
)
from .utils import log as default_log

M = TypeVar("M", bound=BaseModel)
ExpectedShape = Literal["array", "object", "any"]
ParseStage = Literal["braces", "codeblock", "prefix", "raw"]

EXCERPT_LENGTH = 500
KNOWN_PREFIXES = ("json\n", "javascript\n")
_CODE_BLOCK_RE = re.compile(r"```(?:json|javascript)?\s*([\s\S]*?)\s*```", re.IGNORECASE)

EDITABLE_STATUSES = ("pending", "in-progress", "review", "deferred", "cancelled")
STATUS_ALIASES = {"completed": "done", "in progress": "in-progress", "canceled": "cancelled"}


@dataclass
class ExtractionResult:
    data: Any
    stage: ParseStage
    cleaned: str


def _bracket_candidates(text: str, expect: ExpectedShape) -> List[str]:
    if expect == "array":
        pairs = [("[", "]")]
    elif expect == "object":
        pairs = [("{", "}")]
    else:
        # Earlier opener first; the other pair is kept as a fallback
        pairs = sorted([("[", "]"), ("{", "}")], key=lambda p: (text.find(p[0]) == -1, text.find(p[0])))
    candidates = []
    for opener, closer in pairs:
        start, end = text.find(opener), text.rfind(closer)
        if start != -1 and end > start + 1:
            candidates.append(text[start:end + 1])
    return candidates


def _strip_prefix(text: str) -> Optional[str]:
    lowered = text.lower()
    for prefix in KNOWN_PREFIXES:
        if lowered.startswith(prefix):
            return text[len(prefix):].strip()
    return None


def _try_load(candidate: Optional[str]) -> Tuple[bool, Any]:
    if candidate is None:
        return False, None
    try:
        return True, json.loads(candidate)
    except json.JSONDecodeError:
        return False, None


def extract_json(text: Optional[str], expect: ExpectedShape = "any", log: Optional[logging.Logger] = None) -> ExtractionResult:
    """Returns the first successfully parsed JSON value along the recovery ladder."""
    log = log or default_log
    if not text or not text.strip():
        raise ParseError("AI response text is empty.", excerpt="")
    cleaned = text.strip()

    code_match = _CODE_BLOCK_RE.search(cleaned)
    ladder: List[Tuple[ParseStage, Optional[str]]] = [("braces", c) for c in _bracket_candidates(cleaned, expect)]
    ladder += [
        ("codeblock", code_match.group(1).strip() if code_match else None),
        ("prefix", _strip_prefix(cleaned)),
        ("raw", cleaned),
    ]
    for stage, candidate in ladder:
        ok, data = _try_load(candidate)
        if ok:
            log.debug(f"Parsed AI response via '{stage}' stage ({len(candidate)} chars)")
            return ExtractionResult(data=data, stage=stage, cleaned=candidate)

    # Report the most promising candidate, not the prose around it
    best = next((c for _, c in ladder if c), cleaned)
    log.error(f"Failed to parse JSON from AI response. Cleaned head: {best[:EXCERPT_LENGTH]}")
    raise ParseError("Failed to parse JSON from AI response after all recovery strategies.", excerpt=best[:EXCERPT_LENGTH])


def _validate(adapter_type: Any, data: Any, extraction: ExtractionResult, what: str) -> Any:
    try:
        return TypeAdapter(adapter_type).validate_python(data)
    except PydanticValidationError as e:
        raise ParseError(
            f"AI response failed {what} validation: {e.error_count()} error(s); first: {e.errors()[0]['msg']}",
            excerpt=extraction.cleaned[:EXCERPT_LENGTH],
            stage=extraction.stage,
        )


def _unwrap_list(data: Any, key: str) -> Any:
    if isinstance(data, dict) and isinstance(data.get(key), list):
        return data[key]
    return data


# --- Task synthesis (array) ---
def parse_task_drafts(text: str, log: Optional[logging.Logger] = None) -> List[TaskDraft]:
    extraction = extract_json(text, expect="any", log=log)
    return _validate(List[TaskDraft], _unwrap_list(extraction.data, "tasks"), extraction, "task list")

def parse_subtask_drafts(text: str, log: Optional[logging.Logger] = None) -> List[SubtaskDraft]:
    extraction = extract_json(text, expect="any", log=log)
    return _validate(List[SubtaskDraft], _unwrap_list(extraction.data, "subtasks"), extraction, "subtask list")

# --- Complexity analysis (array) ---
def parse_complexity_analysis(text: str, log: Optional[logging.Logger] = None) -> List[ComplexityAnalysisItem]:
    extraction = extract_json(text, expect="array", log=log)
    return _validate(List[ComplexityAnalysisItem], _unwrap_list(extraction.data, "complexityAnalysis"), extraction, "complexity analysis")

# --- Single task (object) ---
def parse_object(text: str, schema: Type[M], key: Optional[str] = None, log: Optional[logging.Logger] = None) -> M:
    """Parses one JSON object into `schema`, unwrapping `{key: {...}}` when the AI nests it."""
    extraction = extract_json(text, expect="object", log=log)
    data = extraction.data
    if key and isinstance(data, dict) and isinstance(data.get(key), dict):
        data = data[key]
    return _validate(schema, data, extraction, schema.__name__)

def parse_updated_task(text: str, original: Task, update_prompt: str, log: Optional[logging.Logger] = None) -> Task:
    """Parses an updated task object and restores the fields the AI may not change.

    The AI is not trusted with identity: the original id always wins, and the
    original status wins unless the prompt talks about status. Completed
    subtasks that were altered or dropped are put back.
    """
    log = log or default_log
    extraction = extract_json(text, expect="object", log=log)
    data = extraction.data
    if not isinstance(data, dict):
        raise ParseError("Parsed AI response is not a JSON object.", excerpt=extraction.cleaned[:EXCERPT_LENGTH], stage=extraction.stage)
    if isinstance(data.get("task"), dict) and "title" not in data:
        data = data["task"]

    for field in ("details", "testStrategy"):
        if data.get(field) is not None and not isinstance(data[field], str):
            data[field] = str(data[field])
    data["status"] = _restore_status(data.get("status"), original, update_prompt, log)
    data["priority"] = _normalize_priority(data.get("priority"), original, log)
    data.setdefault("dependencies", original.dependencies)
    raw_subtasks = data.get("subtasks") if isinstance(data.get("subtasks"), list) else None
    data["subtasks"] = []

    if data.get("id") != original.id:
        log.warning(f"AI returned task with ID {data.get('id')}, but expected {original.id}. Restoring original ID.")
    data["id"] = original.id

    updated: Task = _validate(Task, data, extraction, "task structure")
    if not updated.title or not updated.description:
        raise ParseError("Updated task is missing a title or description.", excerpt=extraction.cleaned[:EXCERPT_LENGTH], stage=extraction.stage)

    updated.subtasks = _reconcile_subtasks(raw_subtasks, original, extraction, log)
    return updated


def _restore_status(value: Any, original: Task, update_prompt: str, log: logging.Logger) -> str:
    """Keeps the original status unless the prompt asks about status and the AI gave a known one."""
    if value is None:
        return original.status
    if "status" not in update_prompt.lower():
        if value != original.status:
            log.warning(f"AI changed task status to '{value}'. Restoring original status '{original.status}'.")
        return original.status
    normalized = str(value).strip().lower()
    normalized = STATUS_ALIASES.get(normalized, normalized)
    if normalized not in get_args(TaskStatus):
        log.warning(f"AI returned unknown status '{value}'. Keeping '{original.status}'.")
        return original.status
    return normalized


def _normalize_priority(value: Any, original: Task, log: logging.Logger) -> str:
    if value is None:
        return original.priority
    normalized = str(value).strip().lower()
    if normalized not in get_args(TaskPriority):
        log.warning(f"AI returned unknown priority '{value}'. Keeping '{original.priority}'.")
        return original.priority
    return normalized


def _reconcile_subtasks(raw_subtasks: Optional[List[Any]], original: Task, extraction: ExtractionResult, log: logging.Logger) -> List[Subtask]:
    if raw_subtasks is None:
        if original.subtasks:
            log.warning("Subtasks removed by AI. Restoring original subtasks.")
        return list(original.subtasks)

    drafts: List[SubtaskDraft] = _validate(List[SubtaskDraft], raw_subtasks, extraction, "subtask list")
    finished = {st.id: st for st in original.subtasks if st.status in FINISHED_STATUSES}

    merged: List[Subtask] = []
    old_ids: List[int] = []
    for position, (draft, raw) in enumerate(zip(drafts, raw_subtasks), start=1):
        old_id = draft.id if draft.id is not None else position
        if old_id in finished:
            kept = finished.pop(old_id)
            if draft.title != kept.title or (draft.details or "") != (kept.details or ""):
                log.warning(f"Completed subtask {original.id}.{old_id} was modified by AI. Restoring.")
            merged.append(kept)
        else:
            status = raw.get("status") if isinstance(raw, dict) else None
            merged.append(Subtask(
                id=old_id,
                title=draft.title,
                description=draft.description,
                details=draft.details,
                acceptanceCriteria=draft.acceptanceCriteria,
                status=status if status in EDITABLE_STATUSES else "pending",
                dependencies=draft.dependencies,
            ))
        old_ids.append(old_id)

    for old_id, kept in finished.items():
        log.warning(f"Completed subtask {original.id}.{old_id} was removed by AI. Restoring.")
        merged.append(kept)
        old_ids.append(old_id)

    # Restored subtasks go back to their original position
    ordered = sorted(zip(old_ids, merged), key=lambda pair: pair[0])
    return resequence_subtasks([st for _, st in ordered], original.id, old_ids=[i for i, _ in ordered], log=log)


def resequence_subtasks(
    subtasks: List[Subtask],
    parent_id: int,
    old_ids: Optional[List[int]] = None,
    log: Optional[logging.Logger] = None,
) -> List[Subtask]:
    """Renumbers subtasks 1..N and keeps only dependencies on earlier siblings.

    `old_ids` are the ids the dependencies were written against; they default
    to the subtasks' current ids.
    """
    log = log or default_log
    old_ids = old_ids if old_ids is not None else [st.id for st in subtasks]
    old_to_new = {}
    for index, old_id in enumerate(old_ids, start=1):
        old_to_new.setdefault(old_id, index)

    renumbered: List[Subtask] = []
    for index, subtask in enumerate(subtasks, start=1):
        kept: List[int] = []
        for dep in subtask.dependencies:
            new_dep = old_to_new.get(dep)
            if new_dep is not None and new_dep < index:
                if new_dep not in kept:
                    kept.append(new_dep)
            else:
                log.warning(f"Subtask {parent_id}.{index} has invalid dependency {dep}. Removing.")
        renumbered.append(subtask.model_copy(update={"id": index, "dependencies": kept}))
    return renumbered
