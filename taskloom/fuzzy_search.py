"""Heuristic relevance ranking over the task corpus.

Scores are a weighted sum of query/item token overlap, a recency bonus and a
keyword-bucket (category) bonus. Ranking is fully deterministic: for the same
items, query, options and reference time the same ids come back in the same
order, with ties broken by the lower task number.
"""
import datetime
import re
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from . import config
from .models import SearchItem, SearchResult, Task

SIMILARITY_WEIGHT = 0.7
RECENCY_WEIGHT = 0.15
CATEGORY_WEIGHT = 0.15

STOPWORDS: FrozenSet[str] = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in", "into", "is", "it",
    "of", "on", "or", "that", "the", "this", "to", "with", "we", "should", "will", "can",
    "add", "make", "use", "using", "new", "task", "tasks",
})

CATEGORY_KEYWORDS: Dict[str, FrozenSet[str]] = {
    "testing": frozenset({"test", "tests", "testing", "unit", "integration", "e2e", "qa", "coverage", "pytest", "mock"}),
    "api": frozenset({"api", "endpoint", "endpoints", "rest", "graphql", "route", "routes", "http", "request", "response"}),
    "auth": frozenset({"auth", "authentication", "authorization", "login", "logout", "oauth", "jwt", "token", "session", "password"}),
    "database": frozenset({"database", "db", "sql", "schema", "migration", "migrations", "query", "table", "postgres", "index"}),
    "ui": frozenset({"ui", "frontend", "component", "components", "page", "layout", "css", "style", "button", "form"}),
    "setup": frozenset({"setup", "install", "config", "configuration", "initialize", "scaffold", "deploy", "docker", "ci", "environment"}),
    "performance": frozenset({"performance", "optimize", "optimization", "cache", "caching", "latency", "speed", "profiling"}),
    "security": frozenset({"security", "encrypt", "encryption", "vulnerability", "sanitize", "xss", "csrf", "permission", "permissions"}),
    "docs": frozenset({"docs", "documentation", "readme", "guide", "tutorial", "docstring"}),
}

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: Optional[str]) -> Set[str]:
    if not text:
        return set()
    return {tok for tok in _TOKEN_RE.findall(text.lower()) if tok not in STOPWORDS and len(tok) > 1}


def categories_for(tokens: Iterable[str]) -> Set[str]:
    token_set = set(tokens)
    return {name for name, keywords in CATEGORY_KEYWORDS.items() if token_set & keywords}


def flatten_tasks_with_subtasks(tasks: List[Task]) -> List[SearchItem]:
    """Expands every task into itself plus one addressable item per subtask ('3.2')."""
    items: List[SearchItem] = []
    for task in tasks:
        items.append(SearchItem(
            id=str(task.id),
            taskNumber=task.id,
            title=task.title,
            description=task.description or "",
            status=task.status,
            updatedAt=task.updatedAt,
        ))
        for subtask in task.subtasks:
            items.append(SearchItem(
                id=f"{task.id}.{subtask.id}",
                taskNumber=task.id,
                subtaskNumber=subtask.id,
                title=subtask.title,
                description=subtask.description or "",
                status=subtask.status,
                updatedAt=getattr(subtask, "updatedAt", None) or task.updatedAt,
            ))
    return items


def _parse_timestamp(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


class FuzzyTaskSearch:
    """Ranks flattened task items against a free-text query."""

    def __init__(self, items: List[SearchItem], search_type: str = "default", recent_window_days: int = config.RECENT_WINDOW_DAYS):
        self.items = items
        self.search_type = search_type
        self.recent_window = datetime.timedelta(days=recent_window_days)
        self._item_tokens = {item.id: tokenize(f"{item.title} {item.description}") for item in items}

    def _similarity(self, query_tokens: Set[str], item_tokens: Set[str]) -> float:
        if not query_tokens or not item_tokens:
            return 0.0
        # Share of the query covered by the item
        return len(query_tokens & item_tokens) / len(query_tokens)

    def _is_recent(self, item: SearchItem, now: datetime.datetime) -> bool:
        modified = _parse_timestamp(item.updatedAt)
        return modified is not None and datetime.timedelta(0) <= now - modified <= self.recent_window

    def find_relevant_tasks(
        self,
        query: str,
        max_results: int = 8,
        include_recent: bool = False,
        include_category_matches: bool = False,
        exclude_ids: Optional[Iterable[str]] = None,
        now: Optional[datetime.datetime] = None,
    ) -> List[SearchResult]:
        """Returns at most `max_results` items ordered by descending score, then task/subtask number."""
        if max_results <= 0:
            return []
        now = now or datetime.datetime.now(datetime.timezone.utc)
        query_tokens = tokenize(query)
        query_categories = categories_for(query_tokens) if include_category_matches else set()
        excluded = {str(i) for i in exclude_ids or ()}

        results: List[SearchResult] = []
        for item in self.items:
            if item.id in excluded:
                continue
            item_tokens = self._item_tokens[item.id]
            score = SIMILARITY_WEIGHT * self._similarity(query_tokens, item_tokens)
            if include_category_matches and query_categories & categories_for(item_tokens):
                score += CATEGORY_WEIGHT
            if include_recent and self._is_recent(item, now):
                score += RECENCY_WEIGHT
            score = round(score, 6)
            if score > 0:
                results.append(SearchResult(id=item.id, score=score, taskNumber=item.taskNumber, subtaskNumber=item.subtaskNumber))

        results.sort(key=lambda r: (-r.score, r.taskNumber, r.subtaskNumber if r.subtaskNumber is not None else -1))
        return results[:max_results]

    def get_task_ids(self, results: List[SearchResult]) -> List[str]:
        return [r.id for r in results]
