"""Tests for prompt template resolution."""

import pytest

from taskloom.errors import ValidationError
from taskloom.prompts import PromptManager

from tests.conftest import make_task


@pytest.fixture
def prompts():
    return PromptManager()


def test_unknown_template(prompts):
    with pytest.raises(ValidationError):
        prompts.load_prompt("summarize", {})


def test_missing_parameter(prompts):
    with pytest.raises(ValidationError) as exc_info:
        prompts.load_prompt("parse-prd", {"num_tasks": 3})

    assert "prd_content" in exc_info.value.message


def test_unknown_variant_falls_back_to_default(prompts):
    pair = prompts.load_prompt("research", {"query": "q"}, "research")

    assert "Research query: q" in pair.userPrompt


def test_research_variant_adds_guidance(prompts):
    params = {"num_tasks": 4, "next_id": 6, "prd_content": "Build a blog"}

    default = prompts.load_prompt("parse-prd", params)
    research = prompts.load_prompt("parse-prd", params, "research")

    assert "starting from 6" in default.systemPrompt
    assert "best practices" not in default.systemPrompt
    assert "best practices" in research.systemPrompt


def test_gathered_context_is_included_only_when_present(prompts):
    task = make_task(2, "Parser")

    without = prompts.load_prompt("expand-task", {"task": task, "subtask_count": 3})
    with_context = prompts.load_prompt("expand-task", {"task": task, "subtask_count": 3, "gathered_context": "## Task 1: Lexer"})

    assert "# Project Context" not in without.userPrompt
    assert "## Task 1: Lexer" in with_context.userPrompt


def test_update_task_append_variant_asks_for_plain_text(prompts):
    pair = prompts.load_prompt("update-task", {"task": make_task(1), "update_prompt": "note"}, "append")

    assert "do not return JSON" in pair.systemPrompt


def test_scope_adjust_carries_direction_and_strength(prompts):
    task = make_task(4, "Search")

    down = prompts.load_prompt("scope-adjust", {"task": task, "direction": "down", "strength": "heavy", "custom_prompt": "No facets"})
    up = prompts.load_prompt("scope-adjust", {"task": task, "direction": "up", "strength": "light"})

    assert "Reduce the scope" in down.systemPrompt
    assert 'Strength "heavy"' in down.systemPrompt
    assert "Additional instructions: No facets" in down.userPrompt
    assert "Increase the scope" in up.systemPrompt


def test_add_task_lists_existing_tasks(prompts):
    pair = prompts.load_prompt("add-task", {
        "prompt": "Add caching",
        "new_id": 3,
        "existing_tasks": [make_task(1, "Scaffold"), make_task(2, "Database")],
        "title": "Cache layer",
    })

    assert "Create task 3" in pair.userPrompt
    assert "- 2: Database [pending]" in pair.userPrompt
    assert "Suggested title: Cache layer" in pair.userPrompt
