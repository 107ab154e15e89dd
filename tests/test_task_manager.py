"""End-to-end tests for the pipeline operations against real JSON stores and a scripted generator."""

import json

import pytest

from taskloom import task_manager
from taskloom.complexity import build_report
from taskloom.errors import UpstreamError
from taskloom.models import ComplexityAnalysisItem

from tests.conftest import make_task, seed


def _analysis(task_id: int, score: int = 6, subtasks: int = 4) -> ComplexityAnalysisItem:
    return ComplexityAnalysisItem(
        taskId=task_id, taskTitle=f"Task {task_id}", complexityScore=score,
        recommendedSubtasks=subtasks, expansionPrompt=f"Focus on task {task_id} internals", reasoning="r",
    )


def _drafts(*titles, start=1, dependencies=None):
    dependencies = dependencies or {}
    return {"tasks": [
        {"id": start + i, "title": t, "description": f"{t} description", "dependencies": dependencies.get(start + i, [])}
        for i, t in enumerate(titles)
    ]}


class TestSynthesizeTasks:
    @pytest.mark.asyncio
    async def test_append_continues_numbering_and_drops_unknown_dependencies(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(n) for n in range(1, 6)])
        generator.queue(_drafts("Add caching", "Cache invalidation", start=6, dependencies={7: [6, 42]}))

        result = await task_manager.synthesize_tasks_from_requirement(pipeline, "master", "Add a caching layer", num_tasks=2, append=True)

        assert result.success is True
        assert result.data["taskIds"] == [6, 7]
        stored = {t.id: t for t in await task_store.list_tasks("master")}
        assert sorted(stored) == [1, 2, 3, 4, 5, 6, 7]
        assert stored[7].dependencies == [6]
        assert stored[6].status == "pending"
        assert result.data["telemetryData"]["commandName"] == "parse-prd"

    @pytest.mark.asyncio
    async def test_non_empty_scope_requires_a_flag(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1)])

        result = await task_manager.synthesize_tasks_from_requirement(pipeline, "master", "Requirements")

        assert result.success is False
        assert result.error.code == "INPUT_VALIDATION_ERROR"
        assert result.error.details["operation"] == "synthesize_tasks_from_requirement"
        assert result.error.details["scope"] == "master"
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, pipeline, generator):
        result = await task_manager.synthesize_tasks_from_requirement(pipeline, "master", "   ")

        assert result.success is False
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_text_response_is_parsed(self, pipeline, task_store, generator):
        generator.queue(
            "Here are your tasks:\n```json\n" + json.dumps(_drafts("Scaffold", "Build", dependencies={2: [1]})) + "\n```"
        )

        result = await task_manager.synthesize_tasks_from_requirement(pipeline, "master", "Build a CLI")

        assert result.success is True
        assert [t.title for t in await task_store.list_tasks("master")] == ["Scaffold", "Build"]
        assert (await task_store.get_task("master", 2)).dependencies == [1]

    @pytest.mark.asyncio
    async def test_overwrite_replaces_scope_after_generation(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(n) for n in range(1, 4)])
        generator.queue(_drafts("Fresh start"))

        result = await task_manager.synthesize_tasks_from_requirement(pipeline, "master", "New plan", overwrite=True)

        assert result.data["taskIds"] == [1]
        assert [t.title for t in await task_store.list_tasks("master")] == ["Fresh start"]
        assert "cleared" in [h.action for h in await task_store.list_history("master")]

    @pytest.mark.asyncio
    async def test_overwrite_clears_the_old_complexity_report(self, pipeline, task_store, report_store, generator):
        await seed(task_store, "master", [make_task(1), make_task(2)])
        await report_store.put("master", build_report([_analysis(1, subtasks=7)], "master", 1, 2, 5, False))
        generator.queue(_drafts("Fresh start"), {"subtasks": [{"title": f"Step {n}"} for n in range(1, 4)]})

        await task_manager.synthesize_tasks_from_requirement(pipeline, "master", "New plan", overwrite=True)
        expanded = await task_manager.expand_task(pipeline, "master", 1)

        assert (await report_store.get("master")).complexityAnalysis == []
        assert "exactly 3 specific" in generator.calls[1]["prompt"]
        assert "Focus on task 1 internals" not in generator.calls[1]["prompt"]
        assert expanded.data["subtasksAdded"] == 3

    @pytest.mark.asyncio
    async def test_failed_generation_leaves_scope_untouched(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1), make_task(2)])
        generator.queue(UpstreamError("provider down"))

        result = await task_manager.synthesize_tasks_from_requirement(pipeline, "master", "New plan", overwrite=True)

        assert result.success is False
        assert result.error.code == "UPSTREAM_ERROR"
        assert [t.id for t in await task_store.list_tasks("master")] == [1, 2]

    @pytest.mark.asyncio
    async def test_unparseable_response_is_a_parse_error(self, pipeline, generator):
        generator.queue("I am unable to help with that.")

        result = await task_manager.synthesize_tasks_from_requirement(pipeline, "master", "Plan")

        assert result.success is False
        assert result.error.code == "PARSE_ERROR"
        assert "unable to help" in result.error.details["excerpt"]


class TestExpandTask:
    @pytest.mark.asyncio
    async def test_subtasks_are_numbered_with_sibling_dependencies(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1, "Build API")])
        generator.queue({"subtasks": [
            {"title": "Routes"},
            {"title": "Handlers", "dependencies": [1]},
            {"title": "Tests", "dependencies": [3, 5]},
        ]})

        result = await task_manager.expand_task(pipeline, "master", 1, subtask_count=3)

        assert result.success is True
        assert result.data["subtasksAdded"] == 3
        subtasks = (await task_store.get_task("master", 1)).subtasks
        assert [(st.id, st.dependencies) for st in subtasks] == [(1, []), (2, [1]), (3, [])]
        assert "exactly 3 specific" in generator.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_second_expansion_without_force_is_a_no_op(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1, subtasks=[{"id": 1, "title": "Existing"}])])

        result = await task_manager.expand_task(pipeline, "master", 1)

        assert result.success is True
        assert result.data["subtasksAdded"] == 0
        assert result.data["hasExistingSubtasks"] is True
        assert generator.calls == []
        assert [st.title for st in (await task_store.get_task("master", 1)).subtasks] == ["Existing"]

    @pytest.mark.asyncio
    async def test_force_replaces_subtasks(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1, subtasks=[{"id": 1, "title": "Existing"}])])
        generator.queue({"subtasks": [{"title": "New one"}]})

        result = await task_manager.expand_task(pipeline, "master", 1, subtask_count=1, force=True)

        assert result.data["hasExistingSubtasks"] is True
        assert [st.title for st in (await task_store.get_task("master", 1)).subtasks] == ["New one"]

    @pytest.mark.asyncio
    async def test_done_task_is_rejected(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1, status="done")])

        result = await task_manager.expand_task(pipeline, "master", 1)

        assert result.success is False
        assert result.error.code == "INPUT_VALIDATION_ERROR"
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_missing_task(self, pipeline):
        result = await task_manager.expand_task(pipeline, "master", 42)

        assert result.error.code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_generation_error_names_the_task(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(4)])
        generator.queue(UpstreamError("provider down"))

        result = await task_manager.expand_task(pipeline, "master", 4)

        assert result.error.code == "UPSTREAM_ERROR"
        assert result.error.details["taskId"] == 4
        assert result.error.details["operation"] == "expand_task"

    @pytest.mark.asyncio
    async def test_report_recommendation_sets_count_and_prompt(self, pipeline, task_store, report_store, generator):
        await seed(task_store, "master", [make_task(1)])
        await report_store.put("master", build_report([_analysis(1, subtasks=5)], "master", 1, 1, 5, False))
        generator.queue({"subtasks": [{"title": f"Step {n}"} for n in range(1, 6)]})

        result = await task_manager.expand_task(pipeline, "master", 1)

        assert result.data["subtasksAdded"] == 5
        assert "exactly 5 specific" in generator.calls[0]["prompt"]
        assert "Focus on task 1 internals" in generator.calls[0]["prompt"]


class TestExpandAllTasks:
    @pytest.mark.asyncio
    async def test_partial_failure_is_reported_per_task(self, pipeline, task_store, report_store, generator):
        await seed(task_store, "master", [make_task(1), make_task(2), make_task(3, status="done")])
        await report_store.put("master", build_report([_analysis(1, score=3), _analysis(2, score=9)], "master", 2, 3, 5, False))
        generator.queue({"subtasks": [{"title": "a"}]}, "not json at all")

        result = await task_manager.expand_all_tasks(pipeline, "master", subtask_count=1)

        assert result.success is True
        assert result.data["tasksEligible"] == 2
        assert result.data["expandedCount"] == 1
        assert result.data["failedCount"] == 1
        # Highest complexity first
        assert [(r["taskId"], r["success"]) for r in result.data["results"]] == [(2, True), (1, False)]

    @pytest.mark.asyncio
    async def test_total_failure_fails_the_operation(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1), make_task(2)])
        generator.queue(UpstreamError("down"), UpstreamError("still down"))

        result = await task_manager.expand_all_tasks(pipeline, "master")

        assert result.success is False
        assert result.error.code == "UPSTREAM_ERROR"
        assert len(result.error.details["results"]) == 2

    @pytest.mark.asyncio
    async def test_nothing_eligible(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1, status="done")])

        result = await task_manager.expand_all_tasks(pipeline, "master")

        assert result.success is True
        assert result.data["tasksEligible"] == 0
        assert generator.calls == []


class TestAnalyzeComplexity:
    @pytest.mark.asyncio
    async def test_every_requested_task_is_covered(self, pipeline, task_store, report_store, generator):
        await seed(task_store, "master", [make_task(1), make_task(2), make_task(3)])
        generator.queue(json.dumps([
            _analysis(1, score=8).model_dump(),
            _analysis(3, score=2).model_dump(),
        ]))

        result = await task_manager.analyze_complexity(pipeline, "master")

        assert result.success is True
        report = await report_store.get("master")
        assert [item.taskId for item in report.complexityAnalysis] == [1, 2, 3]
        assert report.complexityAnalysis[1].complexityScore == 5
        assert result.data["summary"] == {"high": 1, "medium": 1, "low": 1, "total": 3}

    @pytest.mark.asyncio
    async def test_reports_do_not_leak_across_scopes(self, pipeline, task_store, report_store, generator):
        await seed(task_store, "master", [make_task(1)])
        await seed(task_store, "feature-x", [make_task(1, "Other")])
        await report_store.put("feature-x", build_report([_analysis(1, score=2)], "feature-x", 1, 1, 5, False))
        generator.queue(json.dumps([_analysis(1, score=9).model_dump()]))

        await task_manager.analyze_complexity(pipeline, "master")

        assert (await report_store.get("feature-x")).complexityAnalysis[0].complexityScore == 2
        assert (await report_store.get("master")).complexityAnalysis[0].complexityScore == 9

    @pytest.mark.asyncio
    async def test_partial_run_merges_with_previous_report(self, pipeline, task_store, report_store, generator):
        await seed(task_store, "master", [make_task(1), make_task(2), make_task(3)])
        await report_store.put("master", build_report([_analysis(n, score=4) for n in (1, 2, 3)], "master", 3, 3, 5, False))
        generator.queue(json.dumps([_analysis(2, score=10).model_dump()]))

        await task_manager.analyze_complexity(pipeline, "master", task_ids=[2])

        scores = {i.taskId: i.complexityScore for i in (await report_store.get("master")).complexityAnalysis}
        assert scores == {1: 4, 2: 10, 3: 4}

    @pytest.mark.asyncio
    async def test_no_matching_tasks_returns_previous_report(self, pipeline, task_store, report_store, generator):
        await seed(task_store, "master", [make_task(1)])
        await report_store.put("master", build_report([_analysis(1)], "master", 1, 1, 5, False))

        result = await task_manager.analyze_complexity(pipeline, "master", task_ids=[99])

        assert result.success is True
        assert result.data["reusedPreviousReport"] is True
        assert result.data["report"]["complexityAnalysis"][0]["taskId"] == 1
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_threshold_out_of_range(self, pipeline):
        result = await task_manager.analyze_complexity(pipeline, "master", threshold=11)

        assert result.error.code == "INPUT_VALIDATION_ERROR"


class TestUpdates:
    @pytest.mark.asyncio
    async def test_update_keeps_id_and_status(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(3, "Build API", status="in-progress")])
        generator.queue(json.dumps({"id": 9, "title": "Build API with auth", "description": "Now with JWT", "status": "done"}))

        result = await task_manager.update_task(pipeline, "master", 3, "Add JWT authentication")

        assert result.success is True
        stored = await task_store.get_task("master", 3)
        assert stored.title == "Build API with auth"
        assert stored.status == "in-progress"
        assert await task_store.get_task("master", 9) is None

    @pytest.mark.asyncio
    async def test_invalid_ai_dependencies_are_not_persisted(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1), make_task(2, dependencies=[1])])
        generator.queue(json.dumps({"id": 1, "title": "Task 1", "description": "d", "dependencies": [1, 2, 99]}))

        result = await task_manager.update_task(pipeline, "master", 1, "Refine wording")

        assert result.success is True
        assert (await task_store.get_task("master", 1)).dependencies == []
        is_valid = await task_manager.validate_dependencies(pipeline, "master")
        assert is_valid.data["valid"] is True

    @pytest.mark.asyncio
    async def test_valid_ai_dependencies_are_kept(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1), make_task(2), make_task(3)])
        generator.queue(json.dumps({"id": 3, "title": "Task 3", "description": "d", "dependencies": [2, 1]}))

        await task_manager.update_task(pipeline, "master", 3, "It needs the first two tasks")

        assert (await task_store.get_task("master", 3)).dependencies == [2, 1]

    @pytest.mark.asyncio
    async def test_unknown_status_and_capitalised_priority_do_not_fail(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1, priority="low")])
        generator.queue(json.dumps({"id": 1, "title": "Task 1", "description": "d", "status": "completed", "priority": "High"}))

        result = await task_manager.update_task(pipeline, "master", 1, "Make it more important")

        assert result.success is True
        stored = await task_store.get_task("master", 1)
        assert stored.status == "pending"
        assert stored.priority == "high"

    @pytest.mark.asyncio
    async def test_parse_error_names_the_task(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1)])
        generator.queue("no json here")

        result = await task_manager.update_task(pipeline, "master", 1, "Refine wording")

        assert result.error.code == "PARSE_ERROR"
        assert result.error.details["taskId"] == 1
        assert result.error.details["scope"] == "master"
        assert result.error.details["operation"] == "update_task"
        assert result.error.details["timestamp"]

    @pytest.mark.asyncio
    async def test_append_adds_timestamped_block(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1, details="Original details")])
        generator.queue("Use Redis for the session cache.")

        result = await task_manager.update_task(pipeline, "master", 1, "Mention the cache", append=True)

        details = (await task_store.get_task("master", 1)).details
        assert result.data["updated"] is True
        assert details.startswith("Original details\n<info added on ")
        assert "Use Redis for the session cache." in details
        assert details.rstrip().endswith(">")

    @pytest.mark.asyncio
    async def test_done_task_not_updated(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1, status="done")])

        result = await task_manager.update_task(pipeline, "master", 1, "Change it")

        assert result.error.code == "INPUT_VALIDATION_ERROR"
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_update_tasks_from_id(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1), make_task(2), make_task(3, status="done"), make_task(4)])
        generator.queue(
            json.dumps({"id": 2, "title": "Two v2", "description": "d"}),
            json.dumps({"id": 4, "title": "Four v2", "description": "d"}),
        )

        result = await task_manager.update_tasks(pipeline, "master", 2, "Switch to async IO")

        assert result.data["updatedCount"] == 2
        titles = [t.title for t in await task_store.list_tasks("master")]
        assert titles == ["Task 1", "Two v2", "Task 3", "Four v2"]

    @pytest.mark.asyncio
    async def test_update_subtask_appends_notes(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1, subtasks=[
            {"id": 1, "title": "Design", "status": "done"},
            {"id": 2, "title": "Implement", "details": "Started"},
        ])])
        generator.queue("Found the off-by-one in the pager.")

        result = await task_manager.update_subtask(pipeline, "master", "1.2", "Log the bug")

        assert result.success is True
        assert "Found the off-by-one" in result.data["newlyAddedSnippet"]
        subtask = (await task_store.get_task("master", 1)).subtasks[1]
        assert subtask.details.startswith("Started\n<info added on ")
        assert "Previous subtask: 1.1 Design [done]" in generator.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_update_subtask_requires_dotted_id(self, pipeline):
        result = await task_manager.update_subtask(pipeline, "master", "1", "x")

        assert result.error.code == "INPUT_VALIDATION_ERROR"


class TestAddTask:
    @pytest.mark.asyncio
    async def test_manual_task_skips_the_ai(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1), make_task(2)])

        result = await task_manager.add_task(
            pipeline, "master", title="Write docs", description="User guide", dependencies=[2, 9], priority="LOW",
        )

        assert result.success is True
        assert result.data["taskId"] == 3
        stored = await task_store.get_task("master", 3)
        assert stored.dependencies == [2]
        assert stored.priority == "low"
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_ai_task_keeps_only_existing_dependencies(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1), make_task(2)])
        generator.queue({"title": "Add caching", "description": "Cache hot reads", "dependencies": [1, 3, 7]})

        result = await task_manager.add_task(pipeline, "master", "Add a cache in front of the database")

        assert result.success is True
        stored = await task_store.get_task("master", 3)
        assert stored.title == "Add caching"
        assert stored.dependencies == [1]
        assert stored.status == "pending"
        assert generator.calls[0]["kind"] == "object"
        assert result.data["telemetryData"]["commandName"] == "add-task"

    @pytest.mark.asyncio
    async def test_requested_dependencies_used_when_ai_gives_none(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1), make_task(2)])
        generator.queue({"title": "Deploy", "description": "Ship it"})

        await task_manager.add_task(pipeline, "master", "Deploy to staging", dependencies=[2])

        assert (await task_store.get_task("master", 3)).dependencies == [2]

    @pytest.mark.asyncio
    async def test_prompt_or_title_required(self, pipeline, generator):
        result = await task_manager.add_task(pipeline, "master", title="Only a title")

        assert result.error.code == "INPUT_VALIDATION_ERROR"
        assert generator.calls == []


def _adjustment(title: str, change: int = 2) -> dict:
    return {
        "title": title,
        "description": f"{title} description",
        "details": "Adjusted details",
        "testStrategy": "Adjusted tests",
        "scopeChanges": ["Changed one thing"],
        "complexityChange": change,
        "reasoning": "r",
    }


class TestScopeAdjustment:
    @pytest.mark.asyncio
    async def test_scope_up_runs_per_task_and_records_history(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1, "Login"), make_task(2, status="done")])
        generator.queue(_adjustment("Login with MFA", change=3))

        result = await task_manager.scope_up_tasks(pipeline, "master", [1, 2], "heavy")

        assert result.success is True
        assert result.data["updatedCount"] == 1
        assert [(r["taskId"], r["success"]) for r in result.data["results"]] == [(1, True), (2, False)]
        stored = await task_store.get_task("master", 1)
        assert stored.title == "Login with MFA"
        assert stored.scopeHistory[0]["direction"] == "up"
        assert stored.scopeHistory[0]["strength"] == "heavy"
        assert stored.scopeHistory[0]["complexityChange"] == 3
        assert generator.calls[0]["command_name"] == "scope-up"
        assert "scope-up" in [h.action for h in await task_store.list_history("master")]

    @pytest.mark.asyncio
    async def test_scope_down_appends_to_existing_history(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1, "Search")])
        generator.queue(_adjustment("Search v2"), _adjustment("Basic search", change=7))

        await task_manager.scope_up_tasks(pipeline, "master", [1])
        result = await task_manager.scope_down_tasks(pipeline, "master", [1], "light", prompt="Drop fuzzy matching")

        assert result.data["results"][0]["complexityChange"] == 5
        history = (await task_store.get_task("master", 1)).scopeHistory
        assert [(h["direction"], h["strength"]) for h in history] == [("up", "regular"), ("down", "light")]
        assert history[1]["prompt"] == "Drop fuzzy matching"
        assert "Drop fuzzy matching" in generator.calls[1]["prompt"]

    @pytest.mark.asyncio
    async def test_invalid_strength_rejected(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1)])

        result = await task_manager.scope_up_tasks(pipeline, "master", [1], "extreme")

        assert result.error.code == "INPUT_VALIDATION_ERROR"
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_total_failure_fails_the_operation(self, pipeline, task_store, generator):
        await seed(task_store, "master", [make_task(1)])
        generator.queue(UpstreamError("down"))

        result = await task_manager.scope_down_tasks(pipeline, "master", [1])

        assert result.success is False
        assert result.error.details["taskId"] == 1
        assert result.error.details["operation"] == "scope_down_tasks"


class TestResearch:
    @pytest.mark.asyncio
    async def test_research_uses_research_role_and_reports_tokens(self, pipeline, task_store, generator):
        await seed(task_store, "master", [
            make_task(1, "Login endpoint", description="JWT login"),
            make_task(2, "Token refresh", description="Rotate JWT tokens"),
        ])
        generator.queue("Use short-lived access tokens.")

        result = await task_manager.research(pipeline, "master", "How should JWT tokens be rotated?", task_ids=["1"])

        data = result.data
        assert data["result"] == "Use short-lived access tokens."
        assert "1" not in data["discoveredTaskIds"]
        assert "2" in data["discoveredTaskIds"]
        assert data["contextTokens"] == data["tokenBreakdown"]["total"] > 0
        assert generator.calls[0]["role"] == "research"

    @pytest.mark.asyncio
    async def test_unknown_detail_level(self, pipeline, generator):
        result = await task_manager.research(pipeline, "master", "question", detail_level="extreme")

        assert result.error.code == "INPUT_VALIDATION_ERROR"
        assert generator.calls == []


class TestDependencyOperations:
    @pytest.mark.asyncio
    async def test_cycle_is_rejected_and_nothing_changes(self, pipeline, task_store):
        await seed(task_store, "master", [make_task(1), make_task(2, dependencies=[1])])

        result = await task_manager.add_dependency(pipeline, "master", 1, 2)

        assert result.success is False
        assert result.error.code == "STRUCTURAL_CONFLICT"
        assert result.error.details["operation"] == "add_dependency"
        assert (await task_store.get_task("master", 1)).dependencies == []

    @pytest.mark.asyncio
    async def test_add_and_remove_record_history(self, pipeline, task_store):
        await seed(task_store, "master", [make_task(1), make_task(2)])

        added = await task_manager.add_dependency(pipeline, "master", 2, 1)
        removed = await task_manager.remove_dependency(pipeline, "master", 2, 1)

        assert added.data["task"]["dependencies"] == [1]
        assert removed.data["task"]["dependencies"] == []
        actions = [h.action for h in await task_store.list_history("master")]
        assert actions == ["dependency-added", "dependency-removed"]

    @pytest.mark.asyncio
    async def test_validate_then_fix(self, pipeline, task_store):
        await seed(task_store, "master", [make_task(1, dependencies=[1]), make_task(2, dependencies=[9]), make_task(3)])

        before = await task_manager.validate_dependencies(pipeline, "master")
        fixed = await task_manager.fix_dependencies(pipeline, "master")
        after = await task_manager.validate_dependencies(pipeline, "master")

        assert before.data["valid"] is False
        assert fixed.data["tasksUpdated"] == [1, 2]
        assert fixed.data["fixes"]["self"] == 1
        assert fixed.data["fixes"]["missing"] == 1
        assert after.data == {"valid": True, "issues": [], "tasksChecked": 3}


def test_scope_locks_are_per_scope(pipeline):
    assert pipeline.scope_lock("master") is pipeline.scope_lock("master")
    assert pipeline.scope_lock("master") is not pipeline.scope_lock("feature-x")
