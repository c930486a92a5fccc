"""
Per-answer statistics update rule and its persistence.
"""
import dataclasses
import logging
import time

from .models import Question, VALID_OPTIONS
from .question_store import PersistenceWriteFailure, QuestionStore


_CHOSEN_COUNTERS = {
    "A": "times_chosen_a",
    "B": "times_chosen_b",
    "C": "times_chosen_c",
    "D": "times_chosen_d",
}


def apply_answer(question: Question, chosen_option: str, was_correct: bool) -> Question:
    """
    Apply one answer to a question's counters.

    The input question is left untouched. A correct answer extends the
    recent streak; an incorrect one resets it to 0. Only an exact "A".."D"
    choice increments a per-option counter, anything else is ignored.

    Args:
        question: Question snapshot to update
        chosen_option: Option the user picked
        was_correct: Whether the answer was judged correct

    Returns:
        A new Question with updated counters
    """
    changes = {"times_answered": question.times_answered + 1}

    if was_correct:
        changes["times_correct"] = question.times_correct + 1
        changes["times_correct_recent"] = question.times_correct_recent + 1
    else:
        changes["times_correct_recent"] = 0

    if chosen_option in VALID_OPTIONS:
        counter = _CHOSEN_COUNTERS[chosen_option]
        changes[counter] = getattr(question, counter) + 1

    return dataclasses.replace(question, **changes)


class StatisticsUpdater:
    """Applies answers and writes the result back to the question store."""

    def __init__(self, store: QuestionStore):
        self.store = store
        self.logger = logging.getLogger(__name__)

    def record_answer(self, question: Question, chosen_option: str, was_correct: bool) -> Question:
        """
        Record an answer as one atomic write keyed by the question's id.

        The stored record is the base of the update, so answers recorded
        since the session snapshot was taken are not lost.

        Raises:
            PersistenceWriteFailure: If the question is not persisted or the write fails
        """
        if not question.is_persisted:
            raise PersistenceWriteFailure("Cannot record an answer for a question that has not been persisted")

        updated = self.store.update_with(
            question.id,
            lambda stored: apply_answer(stored, chosen_option, was_correct),
        )

        self.logger.debug(f"Recorded answer {chosen_option!r} for question {question.id}", extra={
            'event_type': 'answer_recorded',
            'question_id': question.id,
            'was_correct': was_correct,
            'timestamp': time.time()
        })
        return updated
