"""Persistence contracts consumed by the pipeline, plus JSON file implementations.

The task file is partitioned by scope (tag):

    {"master": {"tasks": [...], "metadata": {...}, "history": [...]}, "feature-x": {...}}

Complexity reports are stored one file per scope so that an analysis run in
one scope can never drop entries that belong to another.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from . import config
from .errors import NotFoundError, StructuralConflictError, UpstreamError
from .models import ComplexityReport, HistoryEntry, Subtask, Task, TasksData, utc_now_iso
from .utils import log as default_log, read_json, sanitize_filename, write_json


class TaskStore(Protocol):
    async def get_task(self, scope: str, number: int) -> Optional[Task]: ...
    async def list_tasks(self, scope: str) -> List[Task]: ...
    async def create_task(self, scope: str, task: Task) -> Task: ...
    async def update_task(self, scope: str, number: int, patch: Dict[str, Any]) -> Task: ...
    async def delete_task(self, scope: str, number: int) -> bool: ...
    async def list_subtasks(self, scope: str, number: int) -> List[Subtask]: ...
    async def append_history(self, scope: str, entry: HistoryEntry) -> None: ...


class ReportStore(Protocol):
    async def get(self, scope: str) -> Optional[ComplexityReport]: ...
    async def put(self, scope: str, report: ComplexityReport) -> None: ...


class JsonTaskStore:
    """TaskStore backed by a single tag-partitioned tasks.json file."""

    def __init__(self, tasks_file: Path = config.TASKS_FILE_PATH, log: Optional[logging.Logger] = None):
        self.tasks_file = Path(tasks_file)
        self.log = log or default_log
        self._write_lock = asyncio.Lock()

    # --- raw file access (runs in a worker thread) ---
    def _load_raw(self) -> Dict[str, Any]:
        data = read_json(self.tasks_file)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise UpstreamError(f"Tasks file {self.tasks_file} does not contain a JSON object.")
        if "tasks" in data and isinstance(data["tasks"], list):
            # Legacy untagged layout: treat it as the default scope
            data = {config.DEFAULT_SCOPE: data}
        return data

    def _load_scope(self, raw: Dict[str, Any], scope: str) -> TasksData:
        block = raw.get(scope) or {}
        try:
            return TasksData.model_validate({k: v for k, v in block.items() if k != "history"})
        except PydanticValidationError as e:
            raise UpstreamError(f"Invalid tasks file structure for scope '{scope}' in {self.tasks_file}", cause=e, scope=scope)

    def _store_scope(self, raw: Dict[str, Any], scope: str, data: TasksData) -> None:
        block = raw.get(scope) or {}
        history = block.get("history", [])
        data.metadata.updatedAt = utc_now_iso()
        if not data.metadata.createdAt:
            data.metadata.createdAt = data.metadata.updatedAt
        raw[scope] = {**data.model_dump(mode='json', exclude_none=True), "history": history}
        write_json(self.tasks_file, raw)

    async def _read_scope(self, scope: str) -> TasksData:
        raw = await asyncio.to_thread(self._load_raw)
        return self._load_scope(raw, scope)

    # --- TaskStore contract ---
    async def list_scopes(self) -> List[str]:
        raw = await asyncio.to_thread(self._load_raw)
        return sorted(raw.keys())

    async def list_tasks(self, scope: str) -> List[Task]:
        return (await self._read_scope(scope)).tasks

    async def get_task(self, scope: str, number: int) -> Optional[Task]:
        data = await self._read_scope(scope)
        return next((t for t in data.tasks if t.id == number), None)

    async def create_task(self, scope: str, task: Task) -> Task:
        async with self._write_lock:
            raw = await asyncio.to_thread(self._load_raw)
            data = self._load_scope(raw, scope)
            if any(t.id == task.id for t in data.tasks):
                raise StructuralConflictError(f"Task #{task.id} already exists in scope '{scope}'.", scope=scope, task_id=task.id)
            created = task.model_copy(update={"updatedAt": utc_now_iso()})
            data.tasks.append(created)
            data.tasks.sort(key=lambda t: t.id)
            await asyncio.to_thread(self._store_scope, raw, scope, data)
            self.log.debug(f"Created task #{created.id} in scope '{scope}'")
            return created

    async def update_task(self, scope: str, number: int, patch: Dict[str, Any]) -> Task:
        async with self._write_lock:
            raw = await asyncio.to_thread(self._load_raw)
            data = self._load_scope(raw, scope)
            index = next((i for i, t in enumerate(data.tasks) if t.id == number), -1)
            if index == -1:
                raise NotFoundError(f"Task #{number} not found in scope '{scope}'.", scope=scope, task_id=number)
            merged = {**data.tasks[index].model_dump(), **patch, "id": number, "updatedAt": utc_now_iso()}
            updated = Task.model_validate(merged)
            data.tasks[index] = updated
            await asyncio.to_thread(self._store_scope, raw, scope, data)
            self.log.debug(f"Updated task #{number} in scope '{scope}' ({', '.join(sorted(patch))})")
            return updated

    async def delete_task(self, scope: str, number: int) -> bool:
        async with self._write_lock:
            raw = await asyncio.to_thread(self._load_raw)
            data = self._load_scope(raw, scope)
            remaining = [t for t in data.tasks if t.id != number]
            if len(remaining) == len(data.tasks):
                return False
            data.tasks = remaining
            await asyncio.to_thread(self._store_scope, raw, scope, data)
            return True

    async def list_subtasks(self, scope: str, number: int) -> List[Subtask]:
        task = await self.get_task(scope, number)
        if task is None:
            raise NotFoundError(f"Task #{number} not found in scope '{scope}'.", scope=scope, task_id=number)
        return task.subtasks

    async def append_history(self, scope: str, entry: HistoryEntry) -> None:
        async with self._write_lock:
            raw = await asyncio.to_thread(self._load_raw)
            block = raw.setdefault(scope, {"tasks": []})
            block.setdefault("history", []).append(entry.model_dump(mode='json', exclude_none=True))
            await asyncio.to_thread(write_json, self.tasks_file, raw)

    async def list_history(self, scope: str) -> List[HistoryEntry]:
        raw = await asyncio.to_thread(self._load_raw)
        return [HistoryEntry.model_validate(h) for h in (raw.get(scope) or {}).get("history", [])]


class JsonReportStore:
    """ReportStore keeping one complexity report file per scope."""

    def __init__(self, report_dir: Path = config.COMPLEXITY_REPORT_DIR, log: Optional[logging.Logger] = None):
        self.report_dir = Path(report_dir)
        self.log = log or default_log

    def path_for(self, scope: str) -> Path:
        if scope == config.DEFAULT_SCOPE:
            return self.report_dir / "task-complexity-report.json"
        return self.report_dir / f"task-complexity-report_{sanitize_filename(scope)}.json"

    async def get(self, scope: str) -> Optional[ComplexityReport]:
        path = self.path_for(scope)
        try:
            data = await asyncio.to_thread(read_json, path)
        except UpstreamError as e:
            self.log.warning(f"Could not read existing report {path}: {e}")
            return None
        if data is None:
            return None
        try:
            return ComplexityReport.model_validate(data)
        except PydanticValidationError as e:
            self.log.warning(f"Existing report {path} is invalid and will be ignored: {e}")
            return None

    async def put(self, scope: str, report: ComplexityReport) -> None:
        path = self.path_for(scope)
        await asyncio.to_thread(write_json, path, report.model_dump(mode='json', exclude_none=True))
        self.log.info(f"Complexity report for scope '{scope}' written to {path}")
