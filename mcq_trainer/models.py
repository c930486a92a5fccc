"""
Core data models for the MCQ trainer.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional


VALID_OPTIONS = ("A", "B", "C", "D")


@dataclass
class Question:
    """A single multiple-choice question with its answer statistics."""
    category: str
    sub_category: str
    question_number: str
    text: str
    option_a: str
    option_b: str
    option_c: str
    option_d: str
    correct_answer: str
    image_name: Optional[str] = None

    times_answered: int = 0
    times_correct: int = 0
    times_chosen_a: int = 0
    times_chosen_b: int = 0
    times_chosen_c: int = 0
    times_chosen_d: int = 0
    times_correct_recent: int = 0  # current run of consecutive correct answers

    id: Optional[int] = None  # assigned by the store

    @property
    def is_persisted(self) -> bool:
        return bool(self.id)

    def correctness_ratio(self) -> float:
        """Share of attempts answered correctly, 0.0 for unanswered questions."""
        if self.times_answered == 0:
            return 0.0
        return self.times_correct / self.times_answered

    def option_text(self, option: str) -> Optional[str]:
        return {
            "A": self.option_a,
            "B": self.option_b,
            "C": self.option_c,
            "D": self.option_d,
        }.get(option.upper())


@dataclass
class TrainerSettings:
    """Configuration settings for quiz selection and persistence."""
    weak_threshold: int = 3
    random_question_limit: int = 1000
    write_mode: str = "optimistic"


class RequestScope(Enum):
    """Which part of the question bank a request covers."""
    OVERALL = "overall"
    CATEGORY = "category"
    SUB_CATEGORY = "sub_category"


class SubCategoryLearningMode(Enum):
    """What a request asks the trainer to do with its scope."""
    ALL = "all"
    UNANSWERED = "unanswered"
    INCORRECT = "incorrect"
    WEAK_RECENT_STREAK = "weak_recent_streak"
    RESET_STATS = "reset_stats"


@dataclass(frozen=True)
class QuizRequest:
    """Tagged description of a quiz (or reset) request."""
    scope: RequestScope = RequestScope.OVERALL
    mode: SubCategoryLearningMode = SubCategoryLearningMode.ALL
    category: Optional[str] = None
    sub_category: Optional[str] = None
    recent_streak_threshold: Optional[int] = None

    @classmethod
    def for_filter(
        cls,
        category: Optional[str] = None,
        sub_category: Optional[str] = None,
        only_weak: bool = False,
        recent_streak_threshold: Optional[int] = None,
    ) -> "QuizRequest":
        """Build a request from the classic category/sub-category/weak filter."""
        if category and sub_category:
            scope = RequestScope.SUB_CATEGORY
        elif category:
            scope = RequestScope.CATEGORY
            sub_category = None
        else:
            scope = RequestScope.OVERALL
            category = None
            sub_category = None
        mode = SubCategoryLearningMode.WEAK_RECENT_STREAK if only_weak else SubCategoryLearningMode.ALL
        return cls(
            scope=scope,
            mode=mode,
            category=category,
            sub_category=sub_category,
            recent_streak_threshold=recent_streak_threshold,
        )

    def describe(self) -> str:
        if self.scope == RequestScope.SUB_CATEGORY:
            where = f"{self.category} / {self.sub_category}"
        elif self.scope == RequestScope.CATEGORY:
            where = f"{self.category}"
        else:
            where = "all questions"
        return f"{where} ({self.mode.value.replace('_', ' ')})"


class SessionState(Enum):
    """Enumeration of quiz session states."""
    LOADING = "loading"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


@dataclass
class QuizSession:
    """Represents one quiz run in a Discord channel."""
    channel_id: int
    request: QuizRequest
    questions: List[Question] = field(default_factory=list)
    current_index: int = 0
    score: int = 0
    state: SessionState = SessionState.LOADING
    start_time: datetime = field(default_factory=datetime.now)
    pending_writes: List[Any] = field(default_factory=list)
    write_errors: List[str] = field(default_factory=list)
    # Serializes judge, record and advance for one session
    answer_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def total(self) -> int:
        return len(self.questions)

    @property
    def is_finished(self) -> bool:
        return self.state == SessionState.FINISHED


@dataclass(frozen=True)
class AllQuestionsSummary:
    """Overall summary across the whole question bank."""
    total_questions: int = 0
    total_distinct_questions_answered: int = 0
    total_attempts: int = 0
    total_correct_attempts: int = 0
    overall_average_correctness: float = 0.0


@dataclass(frozen=True)
class CategoryHeader:
    category_name: str


@dataclass(frozen=True)
class SubCategoryStatistic:
    """Rolled-up counters for one (category, sub-category) pair."""
    parent_category_name: str
    sub_category_name: str
    total_questions: int
    total_answered: int
    total_correct: int
    average_correctness: float
    average_recent_streak: float


@dataclass(frozen=True)
class StatisticsReport:
    """Overall summary followed by category headers and their sub-category rollups."""
    summary: AllQuestionsSummary
    entries: tuple = ()

    @property
    def sub_categories(self) -> List[SubCategoryStatistic]:
        return [entry for entry in self.entries if isinstance(entry, SubCategoryStatistic)]

    @property
    def categories(self) -> List[str]:
        return [entry.category_name for entry in self.entries if isinstance(entry, CategoryHeader)]
