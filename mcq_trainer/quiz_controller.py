"""
Quiz session controller for the MCQ trainer.
Drives one quiz run per Discord channel: selection, ordering, answers, score.
"""
import asyncio
import logging
import random
import time
from datetime import datetime
from typing import Any, Dict, Optional, Set

from .config_manager import ConfigManager
from .models import Question, QuizRequest, QuizSession, RequestScope, SessionState, SubCategoryLearningMode
from .question_selector import InvalidQuizRequest, QuestionSelector
from .question_store import PersistenceWriteFailure, QuestionStore, QuestionStoreError
from .statistics_engine import StatisticsUpdater


class QuizControllerError(Exception):
    """Base exception for quiz controller errors."""
    pass


class SessionConflictError(QuizControllerError):
    """Raised when attempting to create a session that conflicts with existing session."""
    pass


class SessionNotFoundError(QuizControllerError):
    """Raised when attempting to operate on a non-existent session."""
    pass


class InvalidSessionStateError(QuizControllerError):
    """Raised when session is in an invalid state for the requested operation."""
    pass


class QuizController:
    """
    Orchestrates quiz sessions across Discord channels.

    A session moves LOADING -> IN_PROGRESS -> FINISHED, or straight from
    LOADING to FINISHED when the selection is empty. Each channel holds at
    most one session; a finished session stays readable until the next
    quiz starts or it is stopped.

    Answers are written back through the statistics updater. In
    "optimistic" write mode the session advances before the write
    completes and failures are collected for ``flush_pending_writes``; in
    "confirm" mode the write is awaited and a failure leaves the session
    where it was.
    """

    def __init__(
        self,
        store: QuestionStore,
        config_manager: ConfigManager,
        selector: Optional[QuestionSelector] = None,
        updater: Optional[StatisticsUpdater] = None,
    ):
        """
        Initialize the quiz controller.

        Args:
            store: Question store shared by selection and updates
            config_manager: Instance for managing configuration
            selector: Selection engine, built from the store if None
            updater: Statistics updater, built from the store if None
        """
        self.logger = logging.getLogger(__name__)
        self.store = store
        self.config_manager = config_manager
        self.selector = selector or QuestionSelector(store, config_manager.settings)
        self.updater = updater or StatisticsUpdater(store)

        # Sessions mapped by channel ID
        self._sessions: Dict[int, QuizSession] = {}
        # Strong references to in-flight optimistic writes
        self._background_writes: Set[asyncio.Task] = set()

        self.logger.info("QuizController initialized")

    # Session lifecycle

    def get_session(self, channel_id: int) -> Optional[QuizSession]:
        return self._sessions.get(channel_id)

    def has_active_session(self, channel_id: int) -> bool:
        """True while a session in the channel is loading or in progress."""
        session = self._sessions.get(channel_id)
        return session is not None and session.state != SessionState.FINISHED

    def get_session_state(self, channel_id: int) -> Optional[SessionState]:
        session = self._sessions.get(channel_id)
        return session.state if session else None

    async def start_session(self, channel_id: int, request: QuizRequest) -> QuizSession:
        """
        Select questions for a request and start a session with them.

        Args:
            channel_id: Discord channel identifier
            request: What to quiz on

        Returns:
            The new session, IN_PROGRESS, or FINISHED when nothing matched

        Raises:
            SessionConflictError: If the channel already has an unfinished session
            InvalidQuizRequest: If the request does not describe a selection
            QuestionStoreError: If the questions cannot be read
            SessionNotFoundError: If the session was stopped while loading
        """
        if self.has_active_session(channel_id):
            raise SessionConflictError(f"Channel {channel_id} already has a quiz in progress")

        session = QuizSession(channel_id=channel_id, request=request, start_time=datetime.now())
        previous = self._sessions.get(channel_id)
        if previous is not None:
            # unsaved answers of the replaced run stay reportable
            session.pending_writes = [task for task in previous.pending_writes if not task.done()]
            session.write_errors = previous.write_errors
        self._sessions[channel_id] = session

        try:
            questions = await asyncio.to_thread(self.selector.select_for_request, request)
        except Exception:
            if self._sessions.get(channel_id) is session:
                if previous is not None:
                    self._sessions[channel_id] = previous
                else:
                    del self._sessions[channel_id]
            raise

        if self._sessions.get(channel_id) is not session:
            self.logger.info(
                f"Session for channel {channel_id} was stopped while loading",
                extra={
                    'event_type': 'session_stopped_while_loading',
                    'channel_id': channel_id,
                    'timestamp': time.time()
                }
            )
            raise SessionNotFoundError(f"Quiz in channel {channel_id} was stopped before it started")

        questions = list(questions)
        random.shuffle(questions)
        session.questions = questions
        session.current_index = 0
        session.score = 0
        session.state = SessionState.IN_PROGRESS if questions else SessionState.FINISHED

        self.logger.info(
            f"Started session for channel {channel_id}: {request.describe()}, {len(questions)} questions",
            extra={
                'event_type': 'session_started',
                'channel_id': channel_id,
                'question_count': len(questions),
                'state': session.state.value,
                'timestamp': time.time()
            }
        )
        return session

    async def stop_session(self, channel_id: int) -> bool:
        """
        Remove the channel's session.

        Optimistic writes already scheduled still run to completion.

        Returns:
            True if a session was removed, False if there was none
        """
        session = self._sessions.pop(channel_id, None)
        if session is None:
            self.logger.warning(
                f"Cannot stop session for channel {channel_id}: no session exists",
                extra={
                    'event_type': 'session_stop_no_session',
                    'channel_id': channel_id,
                    'timestamp': time.time()
                }
            )
            return False

        self.logger.info(
            f"Stopped session for channel {channel_id} at {session.current_index}/{session.total}",
            extra={
                'event_type': 'session_stopped',
                'channel_id': channel_id,
                'pending_writes': sum(1 for task in session.pending_writes if not task.done()),
                'timestamp': time.time()
            }
        )
        return True

    # Answers

    def get_current_question(self, channel_id: int) -> Optional[Question]:
        """
        Get the question at the session's current index.

        Returns:
            Current Question, or None without an in-progress session or when
            the index is out of range
        """
        session = self._sessions.get(channel_id)
        if session is None or session.state != SessionState.IN_PROGRESS:
            return None
        if not 0 <= session.current_index < len(session.questions):
            return None
        return session.questions[session.current_index]

    async def submit_answer(self, channel_id: int, chosen_option: str) -> Dict[str, Any]:
        """
        Judge an answer, record it and advance the session.

        Submitting to a finished session is ignored and reported with
        ``accepted`` False.

        Args:
            channel_id: Discord channel identifier
            chosen_option: Option picked by the user, compared case-insensitively

        Returns:
            Dictionary with accepted, correct, correct_answer, question,
            finished, score and total

        Raises:
            SessionNotFoundError: If the channel has no session
            InvalidSessionStateError: If the session is still loading
            PersistenceWriteFailure: In confirm mode, if the write fails
        """
        session = self._sessions.get(channel_id)
        if session is None:
            raise SessionNotFoundError(f"No quiz session in channel {channel_id}")

        if session.state == SessionState.LOADING:
            raise InvalidSessionStateError(f"Session in channel {channel_id} is still loading")

        async with session.answer_lock:
            return await self._judge_and_advance(session, chosen_option)

    async def _judge_and_advance(self, session: QuizSession, chosen_option: str) -> Dict[str, Any]:
        channel_id = session.channel_id
        question = None
        if session.state == SessionState.IN_PROGRESS and 0 <= session.current_index < session.total:
            question = session.questions[session.current_index]
        if question is None:
            # index ran past the end: treat as finished
            session.state = SessionState.FINISHED
            self.logger.debug(f"Ignoring answer for finished session in channel {channel_id}")
            return {
                'accepted': False,
                'correct': False,
                'correct_answer': None,
                'question': None,
                'finished': True,
                'score': session.score,
                'total': session.total
            }

        chosen = (chosen_option or "").strip()
        correct = chosen.upper() == question.correct_answer.strip().upper()

        if self.config_manager.get_write_mode() == "confirm":
            try:
                await asyncio.to_thread(self.updater.record_answer, question, chosen, correct)
            except PersistenceWriteFailure as e:
                self.logger.error(
                    f"Answer for question {question.id} not saved, session not advanced: {e}",
                    extra={
                        'event_type': 'answer_write_failed',
                        'channel_id': channel_id,
                        'question_id': question.id,
                        'timestamp': time.time()
                    }
                )
                raise
        else:
            self._schedule_write(session, question, chosen, correct)

        if correct:
            session.score += 1
        session.current_index += 1
        if session.current_index >= len(session.questions):
            session.state = SessionState.FINISHED
            self.logger.info(
                f"Quiz finished in channel {channel_id}: {session.score}/{session.total}",
                extra={
                    'event_type': 'session_finished',
                    'channel_id': channel_id,
                    'score': session.score,
                    'total': session.total,
                    'timestamp': time.time()
                }
            )

        return {
            'accepted': True,
            'correct': correct,
            'correct_answer': question.correct_answer,
            'question': question,
            'finished': session.state == SessionState.FINISHED,
            'score': session.score,
            'total': session.total
        }

    def _schedule_write(self, session: QuizSession, question: Question, chosen: str, correct: bool) -> None:
        task = asyncio.create_task(
            asyncio.to_thread(self.updater.record_answer, question, chosen, correct)
        )
        session.pending_writes.append(task)
        self._background_writes.add(task)

        def on_done(finished: asyncio.Task) -> None:
            self._background_writes.discard(finished)
            if finished.cancelled():
                session.write_errors.append(f"Answer for question {question.id} was cancelled")
                return
            error = finished.exception()
            if error is not None:
                session.write_errors.append(str(error))
                self.logger.error(
                    f"Background write for question {question.id} failed: {error}",
                    extra={
                        'event_type': 'answer_write_failed',
                        'channel_id': session.channel_id,
                        'question_id': question.id,
                        'timestamp': time.time()
                    }
                )

        task.add_done_callback(on_done)

    async def flush_pending_writes(self, channel_id: int) -> int:
        """
        Wait for the session's optimistic writes.

        Session progress is never rolled back; failures are only reported.

        Returns:
            Number of writes awaited

        Raises:
            SessionNotFoundError: If the channel has no session
            PersistenceWriteFailure: If any awaited or earlier write failed
        """
        session = self._sessions.get(channel_id)
        if session is None:
            raise SessionNotFoundError(f"No quiz session in channel {channel_id}")

        tasks = list(session.pending_writes)
        session.pending_writes.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if session.write_errors:
            errors = list(session.write_errors)
            session.write_errors.clear()
            raise PersistenceWriteFailure(
                f"{len(errors)} answer(s) could not be saved: {'; '.join(errors)}"
            )
        return len(tasks)

    async def wait_for_background_writes(self) -> None:
        """Wait for every in-flight optimistic write, across all sessions."""
        if self._background_writes:
            await asyncio.gather(*list(self._background_writes), return_exceptions=True)

    # Progress

    def get_session_progress(self, channel_id: int) -> Optional[Dict[str, Any]]:
        """
        Get progress information for a session.

        Returns:
            Dictionary with progress info, None if no session
        """
        session = self._sessions.get(channel_id)
        if session is None:
            return None

        return {
            'request': session.request,
            'state': session.state,
            'current_question': min(session.current_index + 1, session.total),
            'answered': session.current_index,
            'total_questions': session.total,
            'score': session.score,
            'start_time': session.start_time,
            'pending_writes': sum(1 for task in session.pending_writes if not task.done()),
            'write_errors': len(session.write_errors)
        }

    def get_session_result(self, channel_id: int) -> Optional[Dict[str, int]]:
        """Final score and total of a finished session, None otherwise."""
        session = self._sessions.get(channel_id)
        if session is None or session.state != SessionState.FINISHED:
            return None
        return {'score': session.score, 'total': session.total}

    def get_session_status_summary(self, channel_id: int) -> str:
        """
        Get a human-readable summary of the session status.

        Returns:
            Formatted string describing the session status
        """
        progress = self.get_session_progress(channel_id)
        if progress is None:
            return "No quiz session in this channel."

        status_parts = [
            f"Quiz: {progress['request'].describe()}",
            f"Progress: {progress['answered']}/{progress['total_questions']}",
            f"Score: {progress['score']}",
            f"Status: {progress['state'].value.replace('_', ' ').title()}",
        ]

        duration = datetime.now() - progress['start_time']
        minutes = int(duration.total_seconds() // 60)
        seconds = int(duration.total_seconds() % 60)
        status_parts.append(f"Duration: {minutes}m {seconds}s")

        return " | ".join(status_parts)

    # Result-dict operations used by the bot

    async def start_quiz(self, channel_id: int, request: QuizRequest) -> Dict[str, Any]:
        """
        Start a quiz and report the outcome without raising.

        Returns:
            Dictionary with success, message, user_message and session_info
        """
        result = {
            'success': False,
            'message': '',
            'user_message': '',
            'session_info': None
        }

        try:
            session = await self.start_session(channel_id, request)
        except SessionConflictError as e:
            result['message'] = str(e)
            result['user_message'] = "A quiz is already running in this channel. Use /stop to end it first."
            return result
        except InvalidQuizRequest as e:
            result['message'] = str(e)
            result['user_message'] = f"That quiz cannot be started: {e}"
            return result
        except SessionNotFoundError as e:
            result['message'] = str(e)
            result['user_message'] = "The quiz was stopped before it started."
            return result
        except QuestionStoreError as e:
            self.logger.error(f"Failed to load questions for channel {channel_id}: {e}")
            result['message'] = str(e)
            result['user_message'] = "Questions could not be loaded. Please try again."
            return result

        result['success'] = True
        result['session_info'] = self.get_session_progress(channel_id)
        if session.state == SessionState.FINISHED:
            result['message'] = "No questions matched"
            result['user_message'] = f"No questions matched {request.describe()}. Quiz finished with 0/0."
        else:
            result['message'] = f"Started quiz with {session.total} questions"
            result['user_message'] = f"Started a quiz on {request.describe()} with {session.total} questions."
        return result

    async def answer_question(self, channel_id: int, chosen_option: str) -> Dict[str, Any]:
        """
        Submit an answer and report the outcome without raising.

        Returns:
            The ``submit_answer`` dictionary plus success and user_message
        """
        try:
            outcome = await self.submit_answer(channel_id, chosen_option)
        except SessionNotFoundError:
            return {'success': False, 'user_message': "No quiz is running in this channel. Start one with /quiz."}
        except InvalidSessionStateError as e:
            return {'success': False, 'user_message': f"The quiz cannot take answers right now: {e}"}
        except PersistenceWriteFailure as e:
            return {
                'success': False,
                'user_message': f"Your answer could not be saved, please answer again. ({e})"
            }

        outcome['success'] = True
        if not outcome['accepted']:
            outcome['user_message'] = "This quiz is already finished. Start a new one with /quiz."
        elif outcome['correct']:
            outcome['user_message'] = "✅ Correct!"
        else:
            outcome['user_message'] = f"❌ Wrong, the correct answer is {outcome['correct_answer']}."
        return outcome

    async def reset_statistics(self, category: str, sub_category: str) -> Dict[str, Any]:
        """Zero the statistics of one sub-category and report the outcome."""
        if not category or not sub_category:
            return {
                'success': False,
                'reset_count': 0,
                'user_message': "Resetting statistics needs a category and a sub-category."
            }
        try:
            count = await asyncio.to_thread(self.store.reset_statistics_for_subcategory, category, sub_category)
        except PersistenceWriteFailure as e:
            self.logger.error(f"Statistics reset failed: {e}")
            return {
                'success': False,
                'reset_count': 0,
                'user_message': "Statistics could not be reset. Please try again."
            }
        return {
            'success': True,
            'reset_count': count,
            'user_message': f"Statistics reset for {count} questions in {category} / {sub_category}."
        }

    async def dispatch_request(self, channel_id: int, request: QuizRequest) -> Dict[str, Any]:
        """
        Route a tagged request: RESET_STATS resets, every other mode starts a quiz.

        Returns:
            Result dictionary of ``reset_statistics`` or ``start_quiz``, with an
            'action' key naming which one ran
        """
        if request.mode == SubCategoryLearningMode.RESET_STATS:
            if request.scope != RequestScope.SUB_CATEGORY:
                return {
                    'success': False,
                    'action': 'reset_stats',
                    'user_message': "Statistics can only be reset for a single sub-category."
                }
            result = await self.reset_statistics(request.category, request.sub_category)
            result['action'] = 'reset_stats'
            return result

        result = await self.start_quiz(channel_id, request)
        result['action'] = 'quiz'
        return result
