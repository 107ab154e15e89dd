"""Error taxonomy for the task pipeline.

Every error carries the scope, task id and operation it happened in plus a
UTC timestamp, so a failed call can be reconstructed from the audit log.
"""
import datetime
from typing import Any, Dict, Optional, Union


class TaskloomError(Exception):
    """Base class for all errors raised by the pipeline."""

    code = "TASKLOOM_ERROR"

    def __init__(
        self,
        message: str,
        *,
        scope: Optional[str] = None,
        task_id: Optional[Union[int, str]] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.scope = scope
        self.task_id = task_id
        self.operation = operation
        self.details = details or {}
        self.timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()

    def with_context(self, **kwargs) -> "TaskloomError":
        """Fills in scope/task_id/operation that were not known where the error was raised."""
        for key in ("scope", "task_id", "operation"):
            if getattr(self, key) is None and kwargs.get(key) is not None:
                setattr(self, key, kwargs[key])
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": {
                **self.details,
                "scope": self.scope,
                "taskId": self.task_id,
                "operation": self.operation,
                "timestamp": self.timestamp,
            },
        }


class ValidationError(TaskloomError):
    """Bad input shape or a missing required field. Never retried."""

    code = "INPUT_VALIDATION_ERROR"


class NotFoundError(TaskloomError):
    """A referenced task, subtask or scope does not exist."""

    code = "NOT_FOUND"


class ParseError(TaskloomError):
    """AI text failed every recovery strategy or the expected schema."""

    code = "PARSE_ERROR"

    def __init__(self, message: str, *, excerpt: str = "", stage: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.excerpt = excerpt
        self.stage = stage
        self.details.setdefault("excerpt", excerpt)
        self.details.setdefault("stage", stage)


class StructuralConflictError(TaskloomError):
    """Cycle, self-dependency or duplicate; rejected with full rollback."""

    code = "STRUCTURAL_CONFLICT"


class UpstreamError(TaskloomError):
    """The Generation Adapter or the persistence layer failed."""

    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause
            self.details.setdefault("cause", f"{type(cause).__name__}: {cause}")
