"""Tests for recovering JSON from AI text and restoring protected task fields."""

import json

import pytest

from taskloom.errors import ParseError
from taskloom.models import Subtask, Task
from taskloom.response_parser import (
    extract_json,
    parse_complexity_analysis,
    parse_subtask_drafts,
    parse_task_drafts,
    parse_updated_task,
    resequence_subtasks,
)


class TestExtractJson:
    def test_fenced_array_inside_prose(self):
        text = (
            "Sure! Here is the breakdown you asked for:\n"
            "```json\n"
            '[{"id": 1, "title": "Set up repo", "description": "Init"}]\n'
            "```\n"
            "Let me know if you need anything else."
        )
        result = extract_json(text, expect="array")

        assert result.stage == "braces"
        assert result.data == [{"id": 1, "title": "Set up repo", "description": "Init"}]

    def test_code_block_used_when_braces_do_not_parse(self):
        # The brace span runs from the prose bracket to the array end and is not JSON
        text = 'Notes [draft]\n```\n[1, 2, 3]\n```'

        result = extract_json(text, expect="array")

        assert result.stage == "codeblock"
        assert result.data == [1, 2, 3]

    def test_prefix_stripped(self):
        result = extract_json('json\n{"a": 1}', expect="array")

        assert result.stage == "prefix"
        assert result.data == {"a": 1}

    def test_raw_scalar(self):
        result = extract_json("42")

        assert result.stage == "raw"
        assert result.data == 42

    def test_unparseable_text_raises_with_excerpt(self):
        with pytest.raises(ParseError) as exc_info:
            extract_json("I could not produce any tasks for this document.")

        assert exc_info.value.code == "PARSE_ERROR"
        assert "could not produce" in exc_info.value.excerpt

    def test_object_found_after_bracketed_prose(self):
        text = 'Based on the PRD [v2], here are the tasks: {"tasks": [{"id": 1, "title": "A", "description": "a"}]}'

        result = extract_json(text)

        assert result.stage == "braces"
        assert result.data["tasks"][0]["title"] == "A"
        assert [d.title for d in parse_task_drafts(text)] == ["A"]

    def test_empty_text_raises(self):
        with pytest.raises(ParseError):
            extract_json("   \n ")

    def test_excerpt_is_bounded(self):
        with pytest.raises(ParseError) as exc_info:
            extract_json("x" * 2000)

        assert len(exc_info.value.excerpt) == 500


class TestParseDrafts:
    def test_tasks_wrapper_object_accepted(self):
        text = json.dumps({"tasks": [{"id": 1, "title": "A", "description": "a", "dependencies": ["x", 2]}]})

        drafts = parse_task_drafts(text)

        assert len(drafts) == 1
        assert drafts[0].dependencies == [2]

    def test_missing_title_is_a_parse_error_with_stage(self):
        text = '[{"id": 1, "description": "no title"}]'

        with pytest.raises(ParseError) as exc_info:
            parse_task_drafts(text)

        assert exc_info.value.stage == "braces"
        assert "no title" in exc_info.value.excerpt

    def test_subtasks_wrapper_object_accepted(self):
        drafts = parse_subtask_drafts('{"subtasks": [{"title": "First"}, {"title": "Second", "dependencies": [1]}]}')

        assert [d.title for d in drafts] == ["First", "Second"]
        assert drafts[0].id is None

    def test_complexity_scores_clamped_and_rounded(self):
        text = json.dumps([
            {"taskId": 1, "taskTitle": "A", "complexityScore": 7.6, "recommendedSubtasks": 4,
             "expansionPrompt": "p", "reasoning": "r"},
            {"taskId": 2, "taskTitle": "B", "complexityScore": 15, "recommendedSubtasks": 0,
             "expansionPrompt": "p", "reasoning": "r"},
        ])

        items = parse_complexity_analysis(text)

        assert [i.complexityScore for i in items] == [8, 10]
        assert items[1].recommendedSubtasks == 1


class TestParseUpdatedTask:
    @pytest.fixture
    def original(self) -> Task:
        return Task(
            id=3,
            title="Build API",
            description="REST endpoints",
            status="in-progress",
            subtasks=[
                Subtask(id=1, title="Schema", status="done", details="Finished schema"),
                Subtask(id=2, title="Routes", status="pending"),
            ],
        )

    def test_id_and_status_are_restored(self, original):
        text = json.dumps({"id": 99, "title": "Build API v2", "description": "REST + auth", "status": "done"})

        updated = parse_updated_task(text, original, "Add authentication requirements")

        assert updated.id == 3
        assert updated.status == "in-progress"
        assert updated.title == "Build API v2"

    def test_status_change_allowed_when_prompt_mentions_status(self, original):
        text = json.dumps({"id": 3, "title": "Build API", "description": "REST", "status": "review"})

        updated = parse_updated_task(text, original, "Set the status to review")

        assert updated.status == "review"

    def test_unknown_status_is_restored_instead_of_failing(self, original):
        text = json.dumps({"id": 3, "title": "Build API", "description": "REST", "status": "completed"})

        updated = parse_updated_task(text, original, "Tighten the description")

        assert updated.status == "in-progress"

    def test_status_alias_accepted_when_prompt_mentions_status(self, original):
        text = json.dumps({"id": 3, "title": "Build API", "description": "REST", "status": "Completed"})

        updated = parse_updated_task(text, original, "Mark the status as finished")

        assert updated.status == "done"

    def test_priority_is_normalized(self, original):
        capitalised = json.dumps({"id": 3, "title": "Build API", "description": "REST", "priority": "High"})
        unknown = json.dumps({"id": 3, "title": "Build API", "description": "REST", "priority": "urgent"})

        assert parse_updated_task(capitalised, original, "Raise priority").priority == "high"
        assert parse_updated_task(unknown, original, "Raise priority").priority == original.priority

    def test_missing_subtasks_keep_originals(self, original):
        text = json.dumps({"id": 3, "title": "Build API", "description": "REST"})

        updated = parse_updated_task(text, original, "Clarify description")

        assert [st.title for st in updated.subtasks] == ["Schema", "Routes"]

    def test_dropped_done_subtask_is_restored_in_place(self, original):
        text = json.dumps({
            "id": 3, "title": "Build API", "description": "REST",
            "subtasks": [
                {"id": 2, "title": "Routes v2", "dependencies": [1]},
                {"id": 3, "title": "Auth middleware", "dependencies": [2]},
            ],
        })

        updated = parse_updated_task(text, original, "Add auth")

        assert [(st.id, st.title) for st in updated.subtasks] == [(1, "Schema"), (2, "Routes v2"), (3, "Auth middleware")]
        assert updated.subtasks[0].status == "done"
        assert updated.subtasks[1].dependencies == [1]
        assert updated.subtasks[2].dependencies == [2]

    def test_modified_done_subtask_is_reverted(self, original):
        text = json.dumps({
            "id": 3, "title": "Build API", "description": "REST",
            "subtasks": [
                {"id": 1, "title": "Schema rewritten", "details": "changed"},
                {"id": 2, "title": "Routes"},
            ],
        })

        updated = parse_updated_task(text, original, "Refresh")

        assert updated.subtasks[0].title == "Schema"
        assert updated.subtasks[0].details == "Finished schema"

    def test_missing_title_raises(self, original):
        with pytest.raises(ParseError):
            parse_updated_task('{"id": 3, "title": "", "description": "x"}', original, "x")


def test_resequence_keeps_only_earlier_sibling_dependencies():
    subtasks = [
        Subtask(id=10, title="a", dependencies=[30]),
        Subtask(id=20, title="b", dependencies=[10, 10]),
        Subtask(id=30, title="c", dependencies=[20, 99]),
    ]

    result = resequence_subtasks(subtasks, parent_id=5)

    assert [st.id for st in result] == [1, 2, 3]
    assert [st.dependencies for st in result] == [[], [1], [2]]
