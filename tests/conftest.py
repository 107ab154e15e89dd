"""Shared fixtures for taskloom tests.

The AI is replaced by FakeGenerator, which replays queued responses in
order and records every call; stores are real JSON stores under tmp_path.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from taskloom.models import GenerationResult, Subtask, Task, TelemetryData
from taskloom.storage import JsonReportStore, JsonTaskStore
from taskloom.task_manager import PipelineContext


def count_words(text: str) -> int:
    return len(text.split())


class FakeGenerator:
    """Generator double: pops one queued response per call.

    A queued exception is raised instead of returned. Running out of
    responses fails the test, which doubles as a "no AI call" assertion.
    """

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def _respond(self, **call: Any) -> GenerationResult:
        self.calls.append(call)
        if not self.responses:
            raise AssertionError(f"Unexpected AI call: {call.get('command_name')}")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        telemetry = TelemetryData(
            commandName=call.get("command_name"), role=call["role"], modelUsed="fake-model",
            inputTokens=10, outputTokens=5, totalTokens=15,
        )
        return GenerationResult.from_raw(response, telemetry=telemetry)

    async def generate_text(self, role, system_prompt, prompt, command_name=None):
        return await self._respond(kind="text", role=role, system_prompt=system_prompt, prompt=prompt, command_name=command_name)

    async def generate_object(self, role, schema, system_prompt, prompt, command_name=None):
        return await self._respond(
            kind="object", role=role, schema=schema, system_prompt=system_prompt, prompt=prompt, command_name=command_name,
        )


def make_task(number: int, title: Optional[str] = None, **fields: Any) -> Task:
    fields.setdefault("description", f"Description for task {number}")
    subtasks = [st if isinstance(st, Subtask) else Subtask(**st) for st in fields.pop("subtasks", [])]
    return Task(id=number, title=title or f"Task {number}", subtasks=subtasks, **fields)


async def seed(store: JsonTaskStore, scope: str, tasks: List[Task]) -> None:
    for task in tasks:
        await store.create_task(scope, task)


@pytest.fixture
def task_store(tmp_path: Path) -> JsonTaskStore:
    return JsonTaskStore(tmp_path / "tasks" / "tasks.json")


@pytest.fixture
def report_store(tmp_path: Path) -> JsonReportStore:
    return JsonReportStore(tmp_path / "reports")


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def pipeline(tmp_path: Path, task_store: JsonTaskStore, report_store: JsonReportStore, generator: FakeGenerator) -> PipelineContext:
    return PipelineContext(
        store=task_store,
        reports=report_store,
        generator=generator,
        project_root=tmp_path,
        token_counter=count_words,
    )
