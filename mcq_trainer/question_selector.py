"""
Question selection for quiz sessions.
"""
import logging
from typing import List, Optional

from .models import Question, QuizRequest, RequestScope, SubCategoryLearningMode, TrainerSettings
from .question_store import QuestionStore


class InvalidQuizRequest(ValueError):
    """Raised when a request's scope and mode do not describe a selection."""
    pass


class QuestionSelector:
    """
    Decides which questions enter a quiz.

    Order of the returned list is not meaningful. The store randomizes the
    unscoped path (which is also capped) and the category path; sessions
    shuffle every selection before use.
    """

    def __init__(self, store: QuestionStore, settings: Optional[TrainerSettings] = None):
        self.store = store
        self.settings = settings or TrainerSettings()
        self.logger = logging.getLogger(__name__)

    def select_questions(
        self,
        category: Optional[str] = None,
        sub_category: Optional[str] = None,
        only_weak: bool = False,
        recent_streak_threshold: Optional[int] = None,
    ) -> List[Question]:
        """
        Select questions by category scope, optionally only the weak ones.

        A sub_category without a category is ignored, which widens the
        scope to the whole bank.

        Args:
            category: Restrict to this category
            sub_category: Restrict to this sub-category of ``category``
            only_weak: Only return questions with a recent streak below the threshold
            recent_streak_threshold: Weak threshold, defaults to the configured one

        Returns:
            Candidate questions, possibly empty
        """
        if not category:
            category = None
            sub_category = None
        elif not sub_category:
            sub_category = None

        if only_weak:
            threshold = self._resolve_threshold(recent_streak_threshold)
            questions = self.store.get_weak_questions(threshold, category, sub_category)
        elif category and sub_category:
            questions = self.store.get_questions_by_subcategory(category, sub_category)
        elif category:
            questions = self.store.get_questions_by_category(category)
        else:
            questions = self.store.get_random_questions(self.settings.random_question_limit)

        self.logger.info(
            f"Selected {len(questions)} questions "
            f"(category={category}, sub_category={sub_category}, only_weak={only_weak})"
        )
        return questions

    def select_unanswered(self, category: Optional[str] = None, sub_category: Optional[str] = None) -> List[Question]:
        """Questions never answered, in one sub-category or store-wide."""
        if bool(category) != bool(sub_category):
            raise InvalidQuizRequest("Unanswered questions need both a category and a sub-category, or neither")
        return self.store.get_unanswered_questions(category or None, sub_category or None)

    def select_incorrectly_answered(self, category: str, sub_category: str) -> List[Question]:
        """Questions of one sub-category answered wrongly at least once."""
        if not category or not sub_category:
            raise InvalidQuizRequest("Incorrectly answered questions need a category and a sub-category")
        return self.store.get_incorrectly_answered_questions(category, sub_category)

    def select_for_request(self, request: QuizRequest) -> List[Question]:
        """
        Resolve a tagged quiz request to its candidate questions.

        Raises:
            InvalidQuizRequest: If the scope is missing its names or the mode
                is not a selection (RESET_STATS)
        """
        category, sub_category = self._validate_scope(request)
        mode = request.mode

        if mode == SubCategoryLearningMode.ALL:
            return self.select_questions(category, sub_category)
        if mode == SubCategoryLearningMode.WEAK_RECENT_STREAK:
            return self.select_questions(
                category, sub_category,
                only_weak=True,
                recent_streak_threshold=request.recent_streak_threshold,
            )
        if mode == SubCategoryLearningMode.UNANSWERED:
            if request.scope == RequestScope.CATEGORY:
                raise InvalidQuizRequest("Unanswered mode is available for a sub-category or all questions")
            return self.select_unanswered(category, sub_category)
        if mode == SubCategoryLearningMode.INCORRECT:
            if request.scope != RequestScope.SUB_CATEGORY:
                raise InvalidQuizRequest("Incorrect mode is only available for a sub-category")
            return self.select_incorrectly_answered(category, sub_category)

        raise InvalidQuizRequest(f"Mode {mode.value} does not select questions")

    @staticmethod
    def _validate_scope(request: QuizRequest):
        if request.scope == RequestScope.OVERALL:
            return None, None
        if not request.category:
            raise InvalidQuizRequest(f"Scope {request.scope.value} requires a category")
        if request.scope == RequestScope.CATEGORY:
            return request.category, None
        if not request.sub_category:
            raise InvalidQuizRequest("Sub-category scope requires a sub-category")
        return request.category, request.sub_category

    def _resolve_threshold(self, threshold: Optional[int]) -> int:
        if threshold is None:
            return self.settings.weak_threshold
        if not isinstance(threshold, int) or isinstance(threshold, bool):
            raise InvalidQuizRequest(f"Streak threshold must be an integer, got {type(threshold).__name__}")
        return threshold
