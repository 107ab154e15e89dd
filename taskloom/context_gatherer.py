"""
Context gathering for AI prompts.

Assembles selected tasks, files, free text and an optional project tree into
one bounded context string and reports how many tokens each part costs.
"""
import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Iterable, List, Literal, Optional, Tuple

import litellm

from . import config
from .models import (
    ContextResult, FileTokenCount, SectionTokenCount, Task, TaskTokenCount, TokenBreakdown,
)
from .storage import TaskStore
from .utils import log as default_log, parse_task_ref, truncate
from .errors import ValidationError

ContextFormat = Literal["research", "cli"]
TokenCounter = Callable[[str], int]

SECTION_SEPARATOR = "\n\n"
IGNORED_DIRS = frozenset({
    ".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache",
    ".pytest_cache", ".ruff_cache", ".tox", "dist", "build", ".idea", ".vscode",
})


def litellm_token_counter(model: str = config.LLM_MODEL) -> TokenCounter:
    def count(text: str) -> int:
        if not text:
            return 0
        return litellm.token_counter(model=model, text=text)
    return count


class ContextGatherer:
    """Builds the retrieval context for one request in one scope."""

    def __init__(
        self,
        project_root: Path,
        store: TaskStore,
        scope: str,
        token_counter: Optional[TokenCounter] = None,
        log: Optional[logging.Logger] = None,
        max_file_bytes: int = config.MAX_CONTEXT_FILE_BYTES,
        max_tree_depth: int = config.PROJECT_TREE_MAX_DEPTH,
    ):
        self.project_root = Path(project_root).resolve()
        self.store = store
        self.scope = scope
        self.count_tokens = token_counter or litellm_token_counter()
        self.log = log or default_log
        self.max_file_bytes = max_file_bytes
        self.max_tree_depth = max_tree_depth

    async def gather(
        self,
        tasks: Iterable[str] = (),
        files: Iterable[str] = (),
        custom_context: str = "",
        include_project_tree: bool = False,
        format: ContextFormat = "research",
    ) -> ContextResult:
        """Returns the assembled context and its token breakdown.

        Only sections with input appear. Unknown tasks and unreadable files are
        skipped with a warning.
        """
        sections: List[str] = []
        breakdown = TokenBreakdown()

        if custom_context and custom_context.strip():
            block = self._heading("Custom Context", format) + "\n\n" + custom_context.strip()
            sections.append(block)
            breakdown.customContext = SectionTokenCount(tokens=self.count_tokens(block), characters=len(block))

        task_refs = _dedupe(str(t) for t in tasks)
        if task_refs:
            corpus = await self.store.list_tasks(self.scope)
            for ref in task_refs:
                block, title = self._task_block(ref, corpus, format)
                if block is None:
                    continue
                sections.append(block)
                breakdown.tasks.append(TaskTokenCount(id=ref, title=title, tokens=self.count_tokens(block)))

        for rel_path in _dedupe(files):
            loaded = await asyncio.to_thread(self._read_context_file, rel_path)
            if loaded is None:
                continue
            content, size_bytes = loaded
            block = self._heading(f"File: {rel_path}", format) + "\n\n```\n" + content + "\n```"
            sections.append(block)
            breakdown.files.append(FileTokenCount(
                path=rel_path, tokens=self.count_tokens(block), sizeKB=round(size_bytes / 1024, 2),
            ))

        if include_project_tree:
            tree = await asyncio.to_thread(self._project_tree)
            block = self._heading("Project Structure", format) + "\n\n" + tree
            sections.append(block)
            breakdown.projectTree = SectionTokenCount(tokens=self.count_tokens(block), characters=len(block))

        context = SECTION_SEPARATOR.join(sections)
        breakdown.total = self.count_tokens(context)
        self.log.debug(
            f"Gathered context for scope '{self.scope}': {len(breakdown.tasks)} tasks, "
            f"{len(breakdown.files)} files, {breakdown.total} tokens"
        )
        return ContextResult(context=context, tokenBreakdown=breakdown, format=format)

    # --- section builders ---
    def _heading(self, title: str, format: ContextFormat) -> str:
        if format == "cli":
            return f"=== {title} ==="
        return f"## {title}"

    def _task_block(self, ref: str, corpus: List[Task], format: ContextFormat) -> Tuple[Optional[str], Optional[str]]:
        try:
            task_number, sub_number = parse_task_ref(ref)
        except ValidationError:
            self.log.warning(f"Skipping malformed task reference '{ref}' in context gathering.")
            return None, None
        task = next((t for t in corpus if t.id == task_number), None)
        if task is None:
            self.log.warning(f"Task {ref} not found in scope '{self.scope}'; skipping it in context.")
            return None, None

        if sub_number is not None:
            subtask = next((st for st in task.subtasks if st.id == sub_number), None)
            if subtask is None:
                self.log.warning(f"Subtask {ref} not found in scope '{self.scope}'; skipping it in context.")
                return None, None
            lines = [
                self._heading(f"Subtask {ref}: {subtask.title}", format),
                "",
                f"Parent Task: {task.id} - {task.title}",
                f"Status: {subtask.status}",
                f"Description: {subtask.description or 'N/A'}",
            ]
            if subtask.details:
                lines.append(f"Details: {subtask.details}")
            return "\n".join(lines), subtask.title

        lines = [
            self._heading(f"Task {task.id}: {task.title}", format),
            "",
            f"Status: {task.status}",
            f"Priority: {task.priority}",
            f"Description: {task.description or 'N/A'}",
            f"Dependencies: {', '.join(str(d) for d in task.dependencies) or 'None'}",
        ]
        if task.details:
            lines.append(f"Details: {task.details}")
        if task.testStrategy:
            lines.append(f"Test Strategy: {task.testStrategy}")
        if task.subtasks:
            lines.append("Subtasks:")
            lines.extend(f"- {task.id}.{st.id} {truncate(st.title, 80)} [{st.status}]" for st in task.subtasks)
        return "\n".join(lines), task.title

    def _read_context_file(self, rel_path: str) -> Optional[Tuple[str, int]]:
        path = (self.project_root / rel_path).resolve()
        if path != self.project_root and self.project_root not in path.parents:
            self.log.warning(f"File {rel_path} is outside the project root; skipping it in context.")
            return None
        if not path.is_file():
            self.log.warning(f"File {rel_path} not found; skipping it in context.")
            return None
        try:
            size_bytes = path.stat().st_size
            with path.open("rb") as f:
                raw = f.read(self.max_file_bytes)
        except OSError as e:
            self.log.warning(f"Could not read {rel_path}: {e}; skipping it in context.")
            return None
        # A multi-byte character cut at the limit is dropped
        content = raw.decode("utf-8", errors="ignore")
        if size_bytes > self.max_file_bytes:
            content += f"\n... [truncated, {size_bytes - self.max_file_bytes} more bytes]"
        return content, size_bytes

    def _project_tree(self) -> str:
        lines = [f"{self.project_root.name}/"]
        root_depth = len(self.project_root.parts)
        for dirpath, dirnames, filenames in os.walk(self.project_root):
            dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS and not d.startswith("."))
            depth = len(Path(dirpath).parts) - root_depth
            if depth >= self.max_tree_depth:
                dirnames[:] = []
            indent = "  " * (depth + 1)
            if depth > 0:
                lines.append(f"{'  ' * depth}{Path(dirpath).name}/")
            if depth < self.max_tree_depth:
                lines.extend(f"{indent}{name}" for name in sorted(filenames) if not name.startswith("."))
        return "\n".join(lines)


def _dedupe(values: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered
