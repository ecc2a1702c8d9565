"""
Timed multiple-choice tests.

A student's attempt moves NOT_STARTED -> IN_PROGRESS -> SUBMITTED. SUBMITTED is
terminal: once a submission has a submit time it is never rescored, and
loading the attempt again goes straight to SUBMITTED without a countdown.
Manual submit and countdown expiry run the same routine; the attempt's
`submitted` flag and the guarded upsert on (test_id, student_id) make a second
call a no-op.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from starlette.concurrency import run_in_threadpool

from database import Store, utcnow
from exceptions import ConflictError, InvalidInputError
from logging_config import logger
from schemas import Test, TestQuestion, TestSubmission

OPTIONS = ("a", "b", "c", "d")


def score_answers(questions: Iterable[dict], answers: Dict[str, str]) -> int:
    """Number of questions whose chosen option is the correct one; blanks are wrong."""
    return sum(1 for q in questions if answers.get(q["id"]) == q["correct_option"])


class AttemptState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"


class TestAttempt:
    """One student's attempt at one test."""

    __test__ = False

    def __init__(self, test: dict, student_id: str):
        self.test = test
        self.student_id = student_id
        self.state = AttemptState.NOT_STARTED
        self.answers: Dict[str, str] = {}
        self.score: Optional[int] = None
        self.started_at: Optional[datetime] = None
        self.submitted_at: Optional[datetime] = None
        self.remaining_seconds = self.duration
        self.submitted = False

    @property
    def questions(self) -> List[dict]:
        return self.test.get("questions", [])

    @property
    def total(self) -> int:
        return len(self.questions)

    @property
    def duration(self) -> int:
        return int(self.test["timer_minutes"]) * 60

    @property
    def key(self) -> Tuple[str, str]:
        return self.test["id"], self.student_id

    @property
    def expired(self) -> bool:
        return self.state == AttemptState.IN_PROGRESS and self.remaining_seconds <= 0

    @classmethod
    def hydrate(cls, test: dict, student_id: str, submission: Optional[dict], now: Optional[datetime] = None):
        attempt = cls(test, student_id)
        if not submission:
            return attempt
        attempt.answers = dict(submission.get("answers") or {})
        attempt.started_at = submission.get("started_at")
        if submission.get("submitted_at"):
            attempt.state = AttemptState.SUBMITTED
            attempt.submitted = True
            attempt.submitted_at = submission["submitted_at"]
            attempt.score = submission.get("score") or 0
        elif attempt.started_at:
            attempt.state = AttemptState.IN_PROGRESS
            elapsed = ((now or utcnow()) - attempt.started_at).total_seconds()
            attempt.remaining_seconds = max(0, attempt.duration - int(elapsed))
        return attempt

    def start(self, now: Optional[datetime] = None):
        if self.state == AttemptState.SUBMITTED:
            raise ConflictError("Test already submitted", code="ALREADY_SUBMITTED")
        if self.state == AttemptState.NOT_STARTED:
            self.state = AttemptState.IN_PROGRESS
            self.started_at = now or utcnow()
            self.remaining_seconds = self.duration

    def select(self, question_id: str, option: str):
        if self.state != AttemptState.IN_PROGRESS:
            raise ConflictError("Answers can only be changed while the test is in progress", code="NOT_IN_PROGRESS")
        if option not in OPTIONS:
            raise InvalidInputError(f"Option must be one of {', '.join(OPTIONS)}")
        if question_id not in {q["id"] for q in self.questions}:
            raise InvalidInputError("Question does not belong to this test", details={"question_id": question_id})
        self.answers[question_id] = option

    def tick(self) -> bool:
        """Advance the countdown by one second, True once time is up."""
        if self.state == AttemptState.IN_PROGRESS and self.remaining_seconds > 0:
            self.remaining_seconds -= 1
        return self.expired

    def submit(self, now: Optional[datetime] = None) -> bool:
        if self.submitted:
            return False
        if self.state != AttemptState.IN_PROGRESS:
            raise ConflictError("Test has not been started", code="NOT_IN_PROGRESS")
        self.submitted = True
        self.score = score_answers(self.questions, self.answers)
        self.submitted_at = now or utcnow()
        self.state = AttemptState.SUBMITTED
        self.remaining_seconds = 0
        return True

    def to_record(self) -> dict:
        return TestSubmission(
            test_id=self.test["id"],
            student_id=self.student_id,
            answers=self.answers,
            score=self.score,
            total=self.total if self.state == AttemptState.SUBMITTED else None,
            started_at=self.started_at,
            submitted_at=self.submitted_at,
        ).model_dump()

    def view(self) -> dict:
        done = self.state == AttemptState.SUBMITTED
        return {
            "test": present_test(self.test, reveal=done),
            "state": self.state.value,
            "answers": self.answers,
            "answered": len(self.answers),
            "score": self.score,
            "total": self.total,
            "remaining_seconds": self.remaining_seconds if self.state == AttemptState.IN_PROGRESS else None,
            "started_at": self.started_at,
            "submitted_at": self.submitted_at,
        }


def present_test(test: dict, reveal: bool) -> dict:
    """Test with its questions; correct options only when `reveal`."""
    questions = test.get("questions", [])
    if not reveal:
        questions = [{k: v for k, v in q.items() if k != "correct_option"} for q in questions]
    return {**test, "questions": questions, "question_count": len(questions)}


# -----------------------------
# Countdown
# -----------------------------
class Countdown:
    """Decrements once per tick and awaits `on_expire` when it reaches zero."""

    def __init__(self, seconds: int, on_expire: Callable[[], Awaitable], tick_seconds: float = 1.0):
        self.remaining = max(0, int(seconds))
        self.on_expire = on_expire
        self.tick_seconds = tick_seconds

    async def run(self):
        while self.remaining > 0:
            await asyncio.sleep(self.tick_seconds)
            self.remaining -= 1
        await self.on_expire()


class CountdownRegistry:
    """At most one running countdown per (test, student)."""

    def __init__(self):
        self._tasks: Dict[Tuple[str, str], asyncio.Task] = {}

    def is_running(self, key: Tuple[str, str]) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def start(self, key: Tuple[str, str], countdown: Countdown) -> bool:
        """Schedule on the running loop; False if one is already running."""
        if self.is_running(key):
            return False
        task = asyncio.get_running_loop().create_task(countdown.run())
        self._tasks[key] = task

        def _forget(done: asyncio.Task):
            if self._tasks.get(key) is done:
                self._tasks.pop(key, None)

        task.add_done_callback(_forget)
        return True

    def release(self, key: Tuple[str, str]):
        """Forget a countdown that has already fired, without cancelling it."""
        self._tasks.pop(key, None)

    def cancel(self, key: Tuple[str, str]) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        # may be called from a worker thread
        task.get_loop().call_soon_threadsafe(task.cancel)
        return True

    def cancel_test(self, test_id: str) -> int:
        keys = [k for k in list(self._tasks) if k[0] == test_id]
        return sum(1 for k in keys if self.cancel(k))

    def cancel_all(self) -> int:
        return sum(1 for k in list(self._tasks) if self.cancel(k))

    def __len__(self):
        return sum(1 for t in self._tasks.values() if not t.done())


countdowns = CountdownRegistry()


# -----------------------------
# Tests
# -----------------------------
def create_test(
    store: Store,
    node_id: str,
    title: str,
    timer_minutes: int,
    questions: List[dict],
    deadline: Optional[datetime] = None,
    created_by: Optional[str] = None,
) -> dict:
    store.get_document("study_nodes", node_id)
    title = (title or "").strip()
    if not title:
        raise InvalidInputError("Title is required")
    if not questions:
        raise InvalidInputError("A test needs at least one question")
    if any(not (q.get("question_text") or "").strip() for q in questions):
        raise InvalidInputError("Every question needs text")

    test = store.create_document("tests", Test(
        chapter_node_id=node_id, title=title, timer_minutes=timer_minutes,
        deadline=deadline, created_by=created_by,
    ).model_dump())
    rows = [
        TestQuestion(test_id=test["id"], sort_order=i, **{
            "question_text": q["question_text"].strip(),
            "option_a": q.get("option_a", ""),
            "option_b": q.get("option_b", ""),
            "option_c": q.get("option_c", ""),
            "option_d": q.get("option_d", ""),
            "correct_option": q.get("correct_option", "a"),
        }).model_dump()
        for i, q in enumerate(questions)
    ]
    test["questions"] = store.create_documents("test_questions", rows)
    logger.info(f"Test created: {title} ({test['id']}) with {len(rows)} questions")
    return test


def _with_questions(store: Store, tests: List[dict]) -> List[dict]:
    if not tests:
        return tests
    ids = [t["id"] for t in tests]
    by_test: Dict[str, List[dict]] = {i: [] for i in ids}
    for q in store.get_documents("test_questions", {"test_id": {"$in": ids}}, order_by="sort_order"):
        by_test[q["test_id"]].append(q)
    return [{**t, "questions": by_test[t["id"]]} for t in tests]


def list_tests(store: Store, node_id: str) -> List[dict]:
    tests = store.get_documents("tests", {"chapter_node_id": node_id}, order_by="created_at", descending=True)
    return _with_questions(store, tests)


def attempt_states(store: Store, test_ids: List[str], student_id: str) -> Dict[str, str]:
    """Stored attempt state per test for one student; absent tests are not started."""
    if not test_ids:
        return {}
    rows = store.get_documents("test_submissions", {"test_id": {"$in": test_ids}, "student_id": student_id})
    states = {t: AttemptState.NOT_STARTED.value for t in test_ids}
    for row in rows:
        states[row["test_id"]] = (AttemptState.SUBMITTED if row.get("submitted_at") else AttemptState.IN_PROGRESS).value
    return states


def get_test(store: Store, test_id: str) -> dict:
    return _with_questions(store, [store.get_document("tests", test_id)])[0]


def delete_test(store: Store, test_id: str):
    store.get_document("tests", test_id)
    _delete_tests(store, [test_id])
    logger.info(f"Test {test_id} deleted")


def _delete_tests(store: Store, test_ids: List[str]):
    for test_id in test_ids:
        countdowns.cancel_test(test_id)
    store.delete_documents("test_questions", {"test_id": {"$in": test_ids}})
    store.delete_documents("test_submissions", {"test_id": {"$in": test_ids}})
    store.delete_documents("tests", {"id": {"$in": test_ids}})


def delete_for_nodes(store: Store, node_ids: List[str]):
    tests = store.get_documents("tests", {"chapter_node_id": {"$in": node_ids}})
    if tests:
        _delete_tests(store, [t["id"] for t in tests])


# -----------------------------
# Attempts
# -----------------------------
def _keys(test_id: str, student_id: str) -> dict:
    return {"test_id": test_id, "student_id": student_id}


def _hydrate(store: Store, test_id: str, student_id: str, now: Optional[datetime] = None) -> TestAttempt:
    test = get_test(store, test_id)
    submission = store.find_document("test_submissions", _keys(test_id, student_id))
    return TestAttempt.hydrate(test, student_id, submission, now=now)


def _finalize(store: Store, attempt: TestAttempt, auto: bool = False) -> TestAttempt:
    test_id, student_id = attempt.key
    if not attempt.submit():
        return attempt
    saved = store.upsert_document("test_submissions", _keys(test_id, student_id),
                                  attempt.to_record(), guard={"submitted_at": None})
    countdowns.cancel(attempt.key)
    if saved is None:
        # another submit won; report what was persisted
        return _hydrate(store, test_id, student_id)
    logger.info(
        f"Test {test_id} {'auto-submitted' if auto else 'submitted'} by {student_id}: "
        f"{attempt.score}/{attempt.total}"
    )
    return attempt


def get_attempt(store: Store, test_id: str, student_id: str, now: Optional[datetime] = None) -> TestAttempt:
    """Current attempt; an in-progress attempt whose time ran out is submitted here."""
    attempt = _hydrate(store, test_id, student_id, now=now)
    if attempt.expired:
        return _finalize(store, attempt, auto=True)
    return attempt


def start_attempt(store: Store, test_id: str, student_id: str, now: Optional[datetime] = None) -> TestAttempt:
    attempt = get_attempt(store, test_id, student_id, now=now)
    if attempt.state == AttemptState.NOT_STARTED:
        attempt.start(now)
        store.upsert_document("test_submissions", _keys(test_id, student_id),
                              attempt.to_record(), guard={"submitted_at": None})
        logger.info(f"Test {test_id} started by {student_id}")
    else:
        attempt.start(now)
    return attempt


def record_answer(store: Store, test_id: str, student_id: str, question_id: str, option: str,
                  now: Optional[datetime] = None) -> TestAttempt:
    attempt = get_attempt(store, test_id, student_id, now=now)
    if attempt.state == AttemptState.SUBMITTED:
        raise ConflictError("Test already submitted", code="ALREADY_SUBMITTED")
    attempt.select(question_id, option)
    saved = store.upsert_document("test_submissions", _keys(test_id, student_id),
                                  {"answers": attempt.answers}, guard={"submitted_at": None})
    if saved is None:
        raise ConflictError("Test already submitted", code="ALREADY_SUBMITTED")
    return attempt


def submit_attempt(store: Store, test_id: str, student_id: str, now: Optional[datetime] = None,
                   auto: bool = False) -> TestAttempt:
    attempt = _hydrate(store, test_id, student_id, now=now)
    if attempt.state == AttemptState.SUBMITTED:
        return attempt
    return _finalize(store, attempt, auto=auto or attempt.expired)


def schedule_auto_submit(store: Store, attempt: TestAttempt, tick_seconds: float = 1.0) -> bool:
    """Run a countdown for an in-progress attempt; must be called on the event loop."""
    if attempt.state != AttemptState.IN_PROGRESS:
        return False
    test_id, student_id = attempt.key

    async def on_expire():
        countdowns.release(attempt.key)
        try:
            await run_in_threadpool(submit_attempt, store, test_id, student_id, None, True)
        except Exception:
            logger.error(f"Auto-submit failed for test {test_id} / {student_id}", exc_info=True)

    return countdowns.start(attempt.key, Countdown(attempt.remaining_seconds, on_expire, tick_seconds))
