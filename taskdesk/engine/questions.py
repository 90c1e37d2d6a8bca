"""Question/answer coordination for one task.

Backends (and the task itself) ask interactive confirmation questions.
At most one question is current at a time; overlapping askers queue in
FIFO order and each becomes current in turn. "Always" (``a``) and
"don't ask again" (``d``) answers are remembered per question key for
the lifetime of the coordinator.
"""
from __future__ import annotations

import asyncio
import collections
import logging
from collections.abc import Callable

from .config import EventCallback, fire_event
from .models import Answer, QuestionData
from .waiters import WaiterQueue

logger = logging.getLogger(__name__)

# Answer forwarded to connectors: (answer, question)
AnswerForwarder = Callable[[str, QuestionData], None]

GROUP_QUESTION_ANSWERS = (
    Answer(text="(Y)es", shortkey="y"),
    Answer(text="(N)o", shortkey="n"),
    Answer(text="(A)ll", shortkey="a"),
    Answer(text="(S)kip all", shortkey="s"),
)

STICKY_INPUTS = {"d", "a"}


def normalize_answer(question: QuestionData, answer: str) -> str:
    """Map raw input onto the question's answer set.

    Anything that is neither a known shortkey nor a yes shorthand
    resolves to "n".
    """
    raw = answer.strip().lower()
    for candidate in question.answers or ():
        if candidate.shortkey.lower() == raw:
            return candidate.shortkey
    return "y" if raw in ("a", "y") else "n"


class QuestionCoordinator:
    """Serializes questions to a single consumer and caches sticky answers."""

    def __init__(
        self,
        task_id: str,
        base_dir: str,
        *,
        event_callback: EventCallback | None = None,
        forward_answer: AnswerForwarder | None = None,
    ) -> None:
        self._task_id = task_id
        self._base_dir = base_dir
        self._event_callback = event_callback
        self._forward_answer = forward_answer
        self._current: QuestionData | None = None
        self._answer_waiters: WaiterQueue[tuple[str, str | None]] = WaiterQueue("answers")
        self._turns: collections.deque[asyncio.Future[None]] = collections.deque()
        # True between handing the turn to a queued asker and that asker running.
        self._handoff = False
        self._stored_answers: dict[str, str] = {}

    @property
    def current_question(self) -> QuestionData | None:
        return self._current

    @property
    def stored_answers(self) -> dict[str, str]:
        return dict(self._stored_answers)

    def clear_stored_answers(self) -> None:
        self._stored_answers.clear()

    async def _acquire_turn(self) -> None:
        if self._current is None and not self._handoff and not self._turns:
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._turns.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut in self._turns:
                self._turns.remove(fut)
            elif fut.done() and not fut.cancelled():
                # Turn was handed to us; pass it on.
                self._handoff = False
                self._release_turn()
            raise
        self._handoff = False

    def _release_turn(self) -> None:
        while self._turns:
            fut = self._turns.popleft()
            if not fut.done():
                self._handoff = True
                fut.set_result(None)
                return

    async def ask_question(
        self,
        question: QuestionData,
        await_answer: bool = True,
    ) -> tuple[str, str | None]:
        """Surface *question* and return ``(answer, user_input)``.

        Blocks until any earlier question is answered. With
        ``await_answer=False`` the question is surfaced but
        ``("", None)`` is returned immediately.
        """
        await self._acquire_turn()

        key = question.stable_key()
        stored = self._stored_answers.get(key)
        if question.is_group_question and not question.answers:
            question.answers = list(GROUP_QUESTION_ANSWERS)
        question.task_id = question.task_id or self._task_id
        question.base_dir = question.base_dir or self._base_dir

        logger.info(
            "Asking question task=%s key=%s stored=%s", self._task_id, key, stored,
        )
        self._current = question

        if stored:
            logger.info("Found stored answer for question key=%s: %s", key, stored)
            if not question.internal:
                await self.answer_question(stored)
            else:
                self._current = None
                self._release_turn()
            return stored, None

        fut = self._answer_waiters.add() if await_answer else None
        await fire_event(self._event_callback, {
            "event": "question_asked",
            "task_id": self._task_id,
            "base_dir": self._base_dir,
            "text": question.text,
            "subject": question.subject,
            "answers": [
                {"text": a.text, "shortkey": a.shortkey}
                for a in question.answers or ()
            ],
            "default_answer": question.default_answer,
            "is_group_question": question.is_group_question,
            "key": key,
        })
        if fut is None:
            return "", None
        return await fut

    async def answer_question(self, answer: str, user_input: str | None = None) -> bool:
        """Resolve the current question.

        Returns True when at least one in-process waiter received the
        answer, False when nobody was waiting (or nothing was pending).
        """
        question = self._current
        if question is None:
            return False

        raw = answer.strip().lower()
        determined = normalize_answer(question, answer)
        key = question.stable_key()
        if raw in STICKY_INPUTS and determined in ("y", "n"):
            logger.info(
                "Storing answer for question key=%s raw=%s stored=%s",
                key, answer, determined,
            )
            self._stored_answers[key] = determined

        if not question.internal and self._forward_answer is not None:
            self._forward_answer(determined, question)

        self._current = None
        released = self._answer_waiters.release_all((determined, user_input))
        self._release_turn()

        await fire_event(self._event_callback, {
            "event": "question_answered",
            "task_id": self._task_id,
            "base_dir": self._base_dir,
            "key": key,
            "answer": determined,
            "user_input": user_input,
        })
        return released > 0

    def cancel(self) -> None:
        """Drop the pending question and wake every waiter with "n"."""
        self._current = None
        self._answer_waiters.release_all(("n", None))
        self._release_turn()
