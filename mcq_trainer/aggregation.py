"""
Rollup of per-question counters into the hierarchical statistics report.
"""
from collections import defaultdict
from typing import Dict, Iterable, List

from .models import (
    AllQuestionsSummary,
    CategoryHeader,
    Question,
    StatisticsReport,
    SubCategoryStatistic,
)


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator else 0.0


def summarize(questions: List[Question]) -> AllQuestionsSummary:
    """Overall summary across all given questions."""
    total_attempts = sum(q.times_answered for q in questions)
    total_correct = sum(q.times_correct for q in questions)
    return AllQuestionsSummary(
        total_questions=len(questions),
        total_distinct_questions_answered=sum(1 for q in questions if q.times_answered > 0),
        total_attempts=total_attempts,
        total_correct_attempts=total_correct,
        overall_average_correctness=_ratio(total_correct, total_attempts),
    )


def rollup_sub_category(category: str, sub_category: str, questions: List[Question]) -> SubCategoryStatistic:
    """
    Counters for one (category, sub-category) group.

    Correctness is attempt-weighted (all correct answers over all attempts).
    The average recent streak only counts questions with a positive streak.
    """
    total_answered = sum(q.times_answered for q in questions)
    total_correct = sum(q.times_correct for q in questions)
    streaks = [q.times_correct_recent for q in questions if q.times_correct_recent > 0]

    return SubCategoryStatistic(
        parent_category_name=category,
        sub_category_name=sub_category,
        total_questions=len(questions),
        total_answered=sum(1 for q in questions if q.times_answered > 0),
        total_correct=total_correct,
        average_correctness=_ratio(total_correct, total_answered),
        average_recent_streak=_ratio(sum(streaks), len(streaks)),
    )


def aggregate(questions: Iterable[Question]) -> StatisticsReport:
    """
    Fold a snapshot of the question bank into a statistics report.

    Entries are a category header followed by that category's sub-category
    rollups, both sorted ascending. Pure: the same snapshot always gives an
    equal report.
    """
    questions = list(questions)

    groups: Dict[str, Dict[str, List[Question]]] = defaultdict(lambda: defaultdict(list))
    for question in questions:
        groups[question.category][question.sub_category].append(question)

    entries = []
    for category in sorted(groups):
        entries.append(CategoryHeader(category_name=category))
        sub_categories = groups[category]
        for sub_category in sorted(sub_categories):
            entries.append(rollup_sub_category(category, sub_category, sub_categories[sub_category]))

    return StatisticsReport(summary=summarize(questions), entries=tuple(entries))


def format_report(report: StatisticsReport) -> List[str]:
    """Plain-text lines of a report, one per entry, summary first."""
    summary = report.summary
    lines = [
        f"Questions: {summary.total_questions} "
        f"(answered: {summary.total_distinct_questions_answered})",
        f"Attempts: {summary.total_attempts}, correct: {summary.total_correct_attempts} "
        f"({summary.overall_average_correctness:.0%})",
    ]
    for entry in report.entries:
        if isinstance(entry, CategoryHeader):
            lines.append(f"**{entry.category_name}**")
        else:
            lines.append(
                f"• {entry.sub_category_name}: {entry.total_answered}/{entry.total_questions} answered, "
                f"{entry.average_correctness:.0%} correct, "
                f"avg streak {entry.average_recent_streak:.1f}"
            )
    return lines
