"""Tests for complexity report coverage and merging."""

from taskloom.complexity import (
    MISSING_ANALYSIS_REASONING,
    build_report,
    fill_missing_analyses,
    find_task_in_complexity_report,
    merge_complexity_analysis,
    summarize_scores,
)
from taskloom.models import ComplexityAnalysisItem

from tests.conftest import make_task


def _item(task_id: int, score: int = 6) -> ComplexityAnalysisItem:
    return ComplexityAnalysisItem(
        taskId=task_id,
        taskTitle=f"Task {task_id}",
        complexityScore=score,
        recommendedSubtasks=4,
        expansionPrompt=f"Expand task {task_id}",
        reasoning="Because",
    )


class TestFillMissingAnalyses:
    def test_every_batch_task_gets_exactly_one_entry(self):
        batch = [make_task(1), make_task(2, "Wire Payments"), make_task(3)]

        entries = fill_missing_analyses([_item(3), _item(1), _item(1, score=9), _item(8)], batch)

        assert [e.taskId for e in entries] == [1, 2, 3]
        assert entries[0].complexityScore == 6
        default = entries[1]
        assert default.complexityScore == 5
        assert default.recommendedSubtasks == 3
        assert default.reasoning == MISSING_ANALYSIS_REASONING
        assert default.expansionPrompt == "Break down this task with a focus on wire payments."


class TestMergeComplexityAnalysis:
    def test_no_previous_report(self):
        assert merge_complexity_analysis([_item(1)], None, [1]) == [_item(1)]

    def test_new_entries_replace_old_and_out_of_scope_entries_drop(self):
        previous = build_report([_item(1, 3), _item(2, 4), _item(7, 8)], "master", 3, 3, 5, False)

        merged = merge_complexity_analysis([_item(2, 9)], previous, scope_task_ids=[1, 2, 3])

        assert [(e.taskId, e.complexityScore) for e in merged] == [(1, 3), (2, 9)]

    def test_merging_twice_is_stable(self):
        previous = build_report([_item(1), _item(2)], "master", 2, 2, 5, False)
        new = [_item(2, 7)]

        once = merge_complexity_analysis(new, previous, [1, 2])
        twice = merge_complexity_analysis(new, build_report(once, "master", 1, 2, 5, False), [1, 2])

        assert once == twice


def test_build_report_meta():
    report = build_report([_item(1)], "feature-x", 1, 4, 6, True)

    assert report.meta.scope == "feature-x"
    assert report.meta.analysisCount == 1
    assert report.meta.totalTasks == 4
    assert report.meta.usedResearch is True
    assert find_task_in_complexity_report(report, 1).taskId == 1
    assert find_task_in_complexity_report(report, 2) is None
    assert find_task_in_complexity_report(None, 1) is None


def test_summarize_scores():
    summary = summarize_scores([_item(1, 9), _item(2, 8), _item(3, 5), _item(4, 2)])

    assert summary == {"high": 2, "medium": 1, "low": 1, "total": 4}
