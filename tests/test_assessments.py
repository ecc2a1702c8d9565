"""
Unit Tests for timed tests
Tests for: scoring, attempt state machine, countdowns, submission guard
"""
import asyncio
import threading
from datetime import timedelta

import pytest

import assessments
from assessments import AttemptState, Countdown, CountdownRegistry, TestAttempt
from database import utcnow
from exceptions import ConflictError, InvalidInputError

QUESTIONS = [
    {"question_text": "Is 2 prime?", "option_a": "Yes", "option_b": "No", "option_c": "Maybe", "option_d": "-",
     "correct_option": "a"},
    {"question_text": "HCF of 12 and 18?", "option_a": "3", "option_b": "12", "option_c": "6", "option_d": "2",
     "correct_option": "c"},
]


def sample_test(timer_minutes=1):
    return {
        "id": "t1",
        "title": "Real Numbers Quiz",
        "timer_minutes": timer_minutes,
        "questions": [{"id": "q1", "correct_option": "a"}, {"id": "q2", "correct_option": "c"}],
    }


@pytest.fixture
def chapter(math_subject):
    return math_subject["chapter"]


@pytest.fixture
def quiz(store, chapter):
    return assessments.create_test(store, chapter["id"], "Real Numbers Quiz", 5, QUESTIONS)


class TestScoring:
    def test_one_of_two(self):
        questions = sample_test()["questions"]

        assert assessments.score_answers(questions, {"q1": "a", "q2": "b"}) == 1

    def test_blank_answers_are_wrong(self):
        assert assessments.score_answers(sample_test()["questions"], {}) == 0

    def test_all_correct(self):
        assert assessments.score_answers(sample_test()["questions"], {"q1": "a", "q2": "c"}) == 2


class TestAttemptStateMachine:
    """Test NOT_STARTED -> IN_PROGRESS -> SUBMITTED"""

    def test_new_attempt(self):
        attempt = TestAttempt(sample_test(), "s1")

        assert attempt.state == AttemptState.NOT_STARTED
        assert attempt.remaining_seconds == 60
        assert attempt.total == 2

    def test_select_requires_start(self):
        attempt = TestAttempt(sample_test(), "s1")

        with pytest.raises(ConflictError):
            attempt.select("q1", "a")

    def test_reselect_overwrites(self):
        attempt = TestAttempt(sample_test(), "s1")
        attempt.start()
        attempt.select("q1", "b")
        attempt.select("q1", "a")

        assert attempt.answers == {"q1": "a"}

    def test_select_rejects_unknown_question_and_option(self):
        attempt = TestAttempt(sample_test(), "s1")
        attempt.start()

        with pytest.raises(InvalidInputError):
            attempt.select("q9", "a")
        with pytest.raises(InvalidInputError):
            attempt.select("q1", "e")

    def test_submit_scores_once(self):
        attempt = TestAttempt(sample_test(), "s1")
        attempt.start()
        attempt.select("q1", "a")
        attempt.select("q2", "b")

        assert attempt.submit() is True
        assert attempt.score == 1
        assert attempt.state == AttemptState.SUBMITTED
        assert attempt.submit() is False
        assert attempt.score == 1

    def test_submit_before_start(self):
        with pytest.raises(ConflictError):
            TestAttempt(sample_test(), "s1").submit()

    def test_start_after_submit(self):
        attempt = TestAttempt(sample_test(), "s1")
        attempt.start()
        attempt.submit()

        with pytest.raises(ConflictError):
            attempt.start()

    def test_tick_reaches_zero(self):
        attempt = TestAttempt(sample_test(), "s1")
        attempt.start()

        expired = [attempt.tick() for _ in range(60)]

        assert expired[-1] is True
        assert not any(expired[:-1])
        assert attempt.tick() is True
        assert attempt.remaining_seconds == 0

    def test_hydrate_submitted(self):
        now = utcnow()
        submission = {"answers": {"q1": "a"}, "started_at": now, "submitted_at": now, "score": 1}

        attempt = TestAttempt.hydrate(sample_test(), "s1", submission)

        assert attempt.state == AttemptState.SUBMITTED
        assert attempt.submitted is True
        assert attempt.view()["remaining_seconds"] is None

    def test_hydrate_in_progress_uses_elapsed_time(self):
        started = utcnow()
        submission = {"answers": {}, "started_at": started, "submitted_at": None}

        attempt = TestAttempt.hydrate(sample_test(), "s1", submission, now=started + timedelta(seconds=25))

        assert attempt.state == AttemptState.IN_PROGRESS
        assert attempt.remaining_seconds == 35

    def test_view_hides_answers_until_submitted(self):
        attempt = TestAttempt(sample_test(), "s1")
        attempt.start()

        assert all("correct_option" not in q for q in attempt.view()["test"]["questions"])

        attempt.submit()
        assert all("correct_option" in q for q in attempt.view()["test"]["questions"])


class TestCountdown:
    """Test countdown timers on the event loop"""

    @pytest.mark.asyncio
    async def test_countdown_fires_once(self):
        fired = []

        async def on_expire():
            fired.append(True)

        await Countdown(3, on_expire, tick_seconds=0.001).run()

        assert fired == [True]

    @pytest.mark.asyncio
    async def test_registry_runs_one_per_key(self):
        registry = CountdownRegistry()
        done = asyncio.Event()

        async def on_expire():
            done.set()

        assert registry.start(("t1", "s1"), Countdown(2, on_expire, 0.001)) is True
        assert registry.start(("t1", "s1"), Countdown(2, on_expire, 0.001)) is False
        assert len(registry) == 1

        await asyncio.wait_for(done.wait(), timeout=2)
        await asyncio.sleep(0)
        assert not registry.is_running(("t1", "s1"))

    @pytest.mark.asyncio
    async def test_cancel_stops_countdown(self):
        registry = CountdownRegistry()
        fired = []

        async def on_expire():
            fired.append(True)

        registry.start(("t1", "s1"), Countdown(1000, on_expire, 0.01))
        registry.start(("t1", "s2"), Countdown(1000, on_expire, 0.01))
        registry.start(("t2", "s1"), Countdown(1000, on_expire, 0.01))

        assert registry.cancel_test("t1") == 2
        assert registry.cancel_all() == 1
        await asyncio.sleep(0.05)

        assert fired == []
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_cancel_test_while_countdowns_finish(self):
        registry = CountdownRegistry()
        stop = threading.Event()

        async def on_expire():
            pass

        def cancel_until_stopped():
            cancelled = 0
            while not stop.is_set():
                cancelled += registry.cancel_test("t1")
            return cancelled

        worker = asyncio.get_running_loop().run_in_executor(None, cancel_until_stopped)
        try:
            for i in range(200):
                registry.start(("t1", f"s{i}"), Countdown(1, on_expire, 0.001))
                registry.start(("t2", f"s{i}"), Countdown(1, on_expire, 0.001))
                await asyncio.sleep(0)
        finally:
            stop.set()
        await worker

        registry.cancel_all()
        await asyncio.sleep(0.01)
        assert len(registry) == 0


class TestTestManagement:
    def test_create_test_orders_questions(self, quiz):
        assert [q["sort_order"] for q in quiz["questions"]] == [0, 1]
        assert quiz["questions"][1]["correct_option"] == "c"

    def test_create_test_needs_questions(self, store, chapter):
        with pytest.raises(InvalidInputError):
            assessments.create_test(store, chapter["id"], "Empty", 5, [])

    def test_list_newest_first(self, store, chapter, quiz):
        second = assessments.create_test(store, chapter["id"], "Second", 5, QUESTIONS[:1])

        assert [t["id"] for t in assessments.list_tests(store, chapter["id"])] == [second["id"], quiz["id"]]

    def test_present_test(self, quiz):
        hidden = assessments.present_test(quiz, reveal=False)

        assert hidden["question_count"] == 2
        assert "correct_option" not in hidden["questions"][0]
        assert "correct_option" in assessments.present_test(quiz, reveal=True)["questions"][0]


class TestAttemptFlow:
    """Test the stored attempt lifecycle"""

    def test_worked_example(self, store, quiz, student):
        user, _ = student
        q1, q2 = quiz["questions"]

        assessments.start_attempt(store, quiz["id"], user.id)
        assessments.record_answer(store, quiz["id"], user.id, q1["id"], "a")
        assessments.record_answer(store, quiz["id"], user.id, q2["id"], "b")
        result = assessments.submit_attempt(store, quiz["id"], user.id)

        assert (result.score, result.total) == (1, 2)
        stored = store.find_document("test_submissions", {"test_id": quiz["id"], "student_id": user.id})
        assert stored["score"] == 1
        assert stored["total"] == 2
        assert stored["submitted_at"] is not None

    def test_second_submit_is_noop(self, store, quiz, student):
        user, _ = student
        q1, _ = quiz["questions"]
        assessments.start_attempt(store, quiz["id"], user.id)
        assessments.record_answer(store, quiz["id"], user.id, q1["id"], "a")
        first = assessments.submit_attempt(store, quiz["id"], user.id)

        second = assessments.submit_attempt(store, quiz["id"], user.id, auto=True)

        assert second.state == AttemptState.SUBMITTED
        assert second.score == first.score
        assert store.count_documents("test_submissions") == 1

    def test_answers_locked_after_submit(self, store, quiz, student):
        user, _ = student
        assessments.start_attempt(store, quiz["id"], user.id)
        assessments.submit_attempt(store, quiz["id"], user.id)

        with pytest.raises(ConflictError):
            assessments.record_answer(store, quiz["id"], user.id, quiz["questions"][0]["id"], "a")
        with pytest.raises(ConflictError):
            assessments.start_attempt(store, quiz["id"], user.id)

    def test_reload_resumes_in_progress(self, store, quiz, student):
        user, _ = student
        started = utcnow()
        assessments.start_attempt(store, quiz["id"], user.id, now=started)

        attempt = assessments.get_attempt(store, quiz["id"], user.id, now=started + timedelta(seconds=60))

        assert attempt.state == AttemptState.IN_PROGRESS
        assert attempt.remaining_seconds == 240

    def test_expired_attempt_submitted_on_load(self, store, quiz, student):
        user, _ = student
        started = utcnow()
        assessments.start_attempt(store, quiz["id"], user.id, now=started)
        assessments.record_answer(store, quiz["id"], user.id, quiz["questions"][0]["id"], "a", now=started)

        attempt = assessments.get_attempt(store, quiz["id"], user.id, now=started + timedelta(minutes=6))

        assert attempt.state == AttemptState.SUBMITTED
        assert attempt.score == 1
        assert assessments.attempt_states(store, [quiz["id"]], user.id) == {quiz["id"]: "submitted"}

    def test_guarded_save_keeps_first_submission(self, store, quiz, student):
        user, _ = student
        assessments.start_attempt(store, quiz["id"], user.id)
        # two loads of the same in-progress attempt, e.g. a manual submit racing the countdown
        racing = assessments.get_attempt(store, quiz["id"], user.id)
        assessments.record_answer(store, quiz["id"], user.id, quiz["questions"][0]["id"], "a")
        winner = assessments.submit_attempt(store, quiz["id"], user.id)

        loser = assessments._finalize(store, racing, auto=True)

        assert winner.score == 1
        assert loser.score == 1
        stored = store.find_document("test_submissions", {"test_id": quiz["id"], "student_id": user.id})
        assert stored["score"] == 1

    def test_attempt_states(self, store, chapter, quiz, student):
        user, _ = student
        other = assessments.create_test(store, chapter["id"], "Other", 5, QUESTIONS)
        assessments.start_attempt(store, quiz["id"], user.id)

        states = assessments.attempt_states(store, [quiz["id"], other["id"]], user.id)

        assert states == {quiz["id"]: "in_progress", other["id"]: "not_started"}

    def test_delete_test_removes_submissions(self, store, quiz, student):
        assessments.start_attempt(store, quiz["id"], student[0].id)

        assessments.delete_test(store, quiz["id"])

        assert store.count_documents("tests") == 0
        assert store.count_documents("test_questions") == 0
        assert store.count_documents("test_submissions") == 0

    @pytest.mark.asyncio
    async def test_auto_submit_on_expiry(self, store, quiz, student):
        user, _ = student
        attempt = assessments.start_attempt(store, quiz["id"], user.id)

        assert assessments.schedule_auto_submit(store, attempt, tick_seconds=0.0001) is True
        for _ in range(500):
            stored = store.find_document("test_submissions", {"test_id": quiz["id"], "student_id": user.id})
            if stored.get("submitted_at"):
                break
            await asyncio.sleep(0.01)

        assert stored["submitted_at"] is not None
        assert stored["score"] == 0
        assert not assessments.countdowns.is_running(attempt.key)
