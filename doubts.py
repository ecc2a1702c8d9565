"""
Doubt threads: a student raises a doubt on a chapter node, admins reply and
resolve. Status only moves forward: pending -> replied on a reply, pending or
replied -> resolved on an explicit resolve. Nothing leads back to pending.
"""

from typing import Dict, List, Optional

from database import Store
from exceptions import InvalidInputError, InvalidTransitionError
from logging_config import logger
from schemas import Doubt, DoubtReply

STATUSES = ("pending", "replied", "resolved")

TRANSITIONS = {
    ("pending", "reply"): "replied",
    ("replied", "reply"): "replied",
    ("pending", "resolve"): "resolved",
    ("replied", "resolve"): "resolved",
    ("resolved", "resolve"): "resolved",
}


def next_status(current: str, action: str) -> str:
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidTransitionError(current, action)


def _message(text: str) -> str:
    text = (text or "").strip()
    if not text:
        raise InvalidInputError("Message is required")
    return text


def _attach_replies(store: Store, doubts: List[dict]) -> List[dict]:
    if not doubts:
        return doubts
    by_doubt: Dict[str, List[dict]] = {d["id"]: [] for d in doubts}
    replies = store.get_documents("doubt_replies", {"doubt_id": {"$in": list(by_doubt)}}, order_by="created_at")
    for reply in replies:
        by_doubt[reply["doubt_id"]].append(reply)
    return [{**d, "replies": by_doubt[d["id"]]} for d in doubts]


def raise_doubt(store: Store, student_id: str, node_id: str, message: str) -> dict:
    store.get_document("study_nodes", node_id)
    doubt = store.create_document("doubts", Doubt(
        student_id=student_id, chapter_node_id=node_id, message=_message(message),
    ).model_dump())
    logger.info(f"Doubt {doubt['id']} raised by {student_id} on node {node_id}")
    return {**doubt, "replies": []}


def student_doubts(store: Store, node_id: str, student_id: str) -> List[dict]:
    doubts = store.get_documents(
        "doubts", {"chapter_node_id": node_id, "student_id": student_id},
        order_by="created_at", descending=True,
    )
    return _attach_replies(store, doubts)


def all_doubts(store: Store, status: Optional[str] = None) -> dict:
    """Admin view across every chapter and student, newest first."""
    if status and status not in STATUSES:
        raise InvalidInputError(f"Status must be one of {', '.join(STATUSES)}")
    doubts = store.get_documents("doubts", order_by="created_at", descending=True)

    student_ids = sorted({d["student_id"] for d in doubts})
    node_ids = sorted({d["chapter_node_id"] for d in doubts})
    names = {p["user_id"]: p["username"]
             for p in store.get_documents("profiles", {"user_id": {"$in": student_ids}})}
    chapters = {n["id"]: n["name"] for n in store.get_documents("study_nodes", {"id": {"$in": node_ids}})} if node_ids else {}

    pending = sum(1 for d in doubts if d["status"] == "pending")
    if status:
        doubts = [d for d in doubts if d["status"] == status]
    items = [
        {**d, "student_name": names.get(d["student_id"], "Unknown"),
         "chapter_name": chapters.get(d["chapter_node_id"], "Unknown")}
        for d in _attach_replies(store, doubts)
    ]
    return {"doubts": items, "pending_count": pending}


def reply(store: Store, doubt_id: str, author_id: str, message: str) -> dict:
    doubt = store.get_document("doubts", doubt_id)
    status = next_status(doubt["status"], "reply")
    text = _message(message)
    created = store.create_document("doubt_replies", DoubtReply(doubt_id=doubt_id, user_id=author_id, message=text).model_dump())
    if status != doubt["status"]:
        store.update_document("doubts", doubt_id, {"status": status})
    logger.info(f"Reply {created['id']} on doubt {doubt_id} by {author_id}")
    return created


def resolve(store: Store, doubt_id: str) -> dict:
    doubt = store.get_document("doubts", doubt_id)
    status = next_status(doubt["status"], "resolve")
    updated = store.update_document("doubts", doubt_id, {"status": status})
    logger.info(f"Doubt {doubt_id} resolved")
    return updated


def delete_for_nodes(store: Store, node_ids: List[str]):
    doubts = store.get_documents("doubts", {"chapter_node_id": {"$in": node_ids}})
    if doubts:
        ids = [d["id"] for d in doubts]
        store.delete_documents("doubt_replies", {"doubt_id": {"$in": ids}})
        store.delete_documents("doubts", {"id": {"$in": ids}})
