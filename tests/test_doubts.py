"""
Unit Tests for doubt threads
"""
import pytest

import doubts
from exceptions import InvalidInputError, InvalidTransitionError, NotFoundError


class TestTransitions:
    @pytest.mark.parametrize("current,action,expected", [
        ("pending", "reply", "replied"),
        ("replied", "reply", "replied"),
        ("pending", "resolve", "resolved"),
        ("replied", "resolve", "resolved"),
        ("resolved", "resolve", "resolved"),
    ])
    def test_allowed(self, current, action, expected):
        assert doubts.next_status(current, action) == expected

    def test_reply_to_resolved_rejected(self):
        with pytest.raises(InvalidTransitionError) as exc:
            doubts.next_status("resolved", "reply")

        assert exc.value.status_code == 409
        assert exc.value.code == "INVALID_TRANSITION"


class TestDoubtThreads:
    """Test raising, replying and resolving against the store"""

    @pytest.fixture
    def chapter(self, math_subject):
        return math_subject["chapter"]

    def test_raise_starts_pending(self, store, chapter, student):
        doubt = doubts.raise_doubt(store, student[0].id, chapter["id"], "  What is a lemma?  ")

        assert doubt["status"] == "pending"
        assert doubt["message"] == "What is a lemma?"
        assert doubt["replies"] == []

    def test_empty_message_rejected(self, store, chapter, student):
        with pytest.raises(InvalidInputError):
            doubts.raise_doubt(store, student[0].id, chapter["id"], "   ")

    def test_unknown_node(self, store, student):
        with pytest.raises(NotFoundError):
            doubts.raise_doubt(store, student[0].id, "0" * 24, "Hello?")

    def test_reply_then_resolve(self, store, chapter, student, admin):
        doubt = doubts.raise_doubt(store, student[0].id, chapter["id"], "Why?")

        doubts.reply(store, doubt["id"], admin[0].id, "First answer")
        doubts.reply(store, doubt["id"], admin[0].id, "Second answer")
        assert store.get_document("doubts", doubt["id"])["status"] == "replied"

        resolved = doubts.resolve(store, doubt["id"])
        assert resolved["status"] == "resolved"

        with pytest.raises(InvalidTransitionError):
            doubts.reply(store, doubt["id"], admin[0].id, "Too late")

        thread = doubts.student_doubts(store, chapter["id"], student[0].id)
        assert [r["message"] for r in thread[0]["replies"]] == ["First answer", "Second answer"]

    def test_resolve_without_reply(self, store, chapter, student):
        doubt = doubts.raise_doubt(store, student[0].id, chapter["id"], "Never mind")

        assert doubts.resolve(store, doubt["id"])["status"] == "resolved"

    def test_student_sees_only_own_doubts(self, store, chapter, student, make_account):
        other, _ = make_account()
        doubts.raise_doubt(store, student[0].id, chapter["id"], "Mine")
        doubts.raise_doubt(store, other.id, chapter["id"], "Theirs")

        mine = doubts.student_doubts(store, chapter["id"], student[0].id)

        assert [d["message"] for d in mine] == ["Mine"]

    def test_admin_view(self, store, chapter, student, admin):
        first = doubts.raise_doubt(store, student[0].id, chapter["id"], "First")
        doubts.raise_doubt(store, student[0].id, chapter["id"], "Second")
        doubts.resolve(store, first["id"])

        view = doubts.all_doubts(store)

        assert view["pending_count"] == 1
        assert [d["message"] for d in view["doubts"]] == ["Second", "First"]
        assert view["doubts"][0]["student_name"] == student[0].username
        assert view["doubts"][0]["chapter_name"] == "Real Numbers"

        resolved = doubts.all_doubts(store, "resolved")
        assert [d["message"] for d in resolved["doubts"]] == ["First"]
        assert resolved["pending_count"] == 1

    def test_admin_view_bad_status(self, store):
        with pytest.raises(InvalidInputError):
            doubts.all_doubts(store, "closed")
