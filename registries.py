"""
Per-chapter resources and assignments.

Assignment completion is a per-student toggle kept apart from curriculum
progress.
"""

import re
from datetime import datetime
from typing import List, Optional

from database import Store, utcnow
from exceptions import InvalidInputError
from logging_config import logger
from schemas import Assignment, AssignmentCompletion, Resource
from storage import FileStorage, resource_upload_path

RESOURCE_TYPES = ("note", "pdf", "word", "mp4", "youtube", "link")
UPLOAD_TYPES = ("note", "pdf", "word", "mp4")
UPLOAD_EXTENSIONS = {"pdf": (".pdf",), "word": (".doc", ".docx"), "mp4": (".mp4",)}

YOUTUBE_ID = re.compile(r"(?:youtu\.be/|youtube\.com/(?:watch\?v=|embed/|v/))([^&?\s]+)")


def youtube_embed_url(url: str) -> str:
    """Embeddable form of a YouTube link; unknown shapes come back unchanged."""
    match = YOUTUBE_ID.search(url or "")
    return f"https://www.youtube.com/embed/{match.group(1)}" if match else url


def open_action(resource: dict) -> dict:
    kind = resource.get("resource_type")
    if kind == "youtube":
        return {"action": "embed", "url": youtube_embed_url(resource["url"])}
    if kind == "mp4":
        return {"action": "play", "url": resource["url"]}
    return {"action": "open", "url": resource["url"]}


def _text(value: str, what: str) -> str:
    value = (value or "").strip()
    if not value:
        raise InvalidInputError(f"{what} is required")
    return value


def _check_type(resource_type: str):
    if resource_type not in RESOURCE_TYPES:
        raise InvalidInputError(f"Resource type must be one of {', '.join(RESOURCE_TYPES)}")


# -----------------------------
# Resources
# -----------------------------
def list_resources(store: Store, node_id: str) -> List[dict]:
    resources = store.get_documents("resources", {"chapter_node_id": node_id}, order_by="sort_order")
    return [{**r, "open": open_action(r)} for r in resources]


def add_resource(store: Store, node_id: str, name: str, resource_type: str, url: str,
                 created_by: Optional[str] = None, storage_path: Optional[str] = None) -> dict:
    store.get_document("study_nodes", node_id)
    _check_type(resource_type)
    resource = Resource(
        chapter_node_id=node_id,
        name=_text(name, "Name"),
        resource_type=resource_type,
        url=_text(url, "A URL or an uploaded file"),
        storage_path=storage_path,
        sort_order=store.count_documents("resources", {"chapter_node_id": node_id}),
        created_by=created_by,
    )
    doc = store.create_document("resources", resource.model_dump())
    logger.info(f"Resource added: {doc['name']} ({resource_type}) on node {node_id}")
    return {**doc, "open": open_action(doc)}


def upload_resource(store: Store, files: FileStorage, node_id: str, name: str, resource_type: str,
                    filename: str, data: bytes, created_by: Optional[str] = None) -> dict:
    store.get_document("study_nodes", node_id)
    _check_type(resource_type)
    if resource_type not in UPLOAD_TYPES:
        raise InvalidInputError(f"Files can only be uploaded for {', '.join(UPLOAD_TYPES)} resources")
    allowed = UPLOAD_EXTENSIONS.get(resource_type)
    if allowed and not filename.lower().endswith(allowed):
        raise InvalidInputError(f"Expected a {' or '.join(allowed)} file")
    if not data:
        raise InvalidInputError("Uploaded file is empty")

    path = files.upload(resource_upload_path(node_id, filename), data)
    return add_resource(store, node_id, name, resource_type, files.public_url(path),
                        created_by=created_by, storage_path=path)


def update_resource(store: Store, resource_id: str, name: Optional[str] = None,
                    resource_type: Optional[str] = None, url: Optional[str] = None) -> dict:
    changes = {}
    if name is not None:
        changes["name"] = _text(name, "Name")
    if resource_type is not None:
        _check_type(resource_type)
        changes["resource_type"] = resource_type
    if url is not None:
        changes["url"] = _text(url, "URL")
    doc = store.update_document("resources", resource_id, changes)
    return {**doc, "open": open_action(doc)}


def delete_resource(store: Store, resource_id: str, files: Optional[FileStorage] = None) -> dict:
    doc = store.delete_document("resources", resource_id)
    if files is not None and doc.get("storage_path"):
        files.remove(doc["storage_path"])
    logger.info(f"Resource {resource_id} deleted")
    return doc


# -----------------------------
# Assignments
# -----------------------------
def list_assignments(store: Store, node_id: str, student_id: Optional[str] = None) -> List[dict]:
    assignments = store.get_documents("assignments", {"chapter_node_id": node_id}, order_by="created_at")
    done = {}
    if student_id and assignments:
        rows = store.get_documents("assignment_completions", {
            "student_id": student_id,
            "assignment_id": {"$in": [a["id"] for a in assignments]},
        })
        done = {r["assignment_id"]: bool(r.get("completed")) for r in rows}
    return [{**a, "completed": done.get(a["id"], False)} for a in assignments]


def add_assignment(store: Store, node_id: str, title: str, link: str,
                   due_date: Optional[datetime] = None, created_by: Optional[str] = None) -> dict:
    store.get_document("study_nodes", node_id)
    assignment = Assignment(
        chapter_node_id=node_id, title=_text(title, "Title"), link=_text(link, "Link"),
        due_date=due_date, created_by=created_by,
    )
    doc = store.create_document("assignments", assignment.model_dump())
    logger.info(f"Assignment added: {doc['title']} on node {node_id}")
    return {**doc, "completed": False}


def delete_assignment(store: Store, assignment_id: str) -> dict:
    doc = store.delete_document("assignments", assignment_id)
    store.delete_documents("assignment_completions", {"assignment_id": assignment_id})
    logger.info(f"Assignment {assignment_id} deleted")
    return doc


def toggle_assignment(store: Store, assignment_id: str, student_id: str) -> bool:
    store.get_document("assignments", assignment_id)
    keys = {"assignment_id": assignment_id, "student_id": student_id}
    current = store.find_document("assignment_completions", keys)
    completed = not (current or {}).get("completed", False)
    row = AssignmentCompletion(**keys, completed=completed, completed_at=utcnow() if completed else None)
    store.upsert_document("assignment_completions", keys, row.model_dump(exclude=set(keys)))
    return completed


def delete_for_nodes(store: Store, node_ids: List[str], files: Optional[FileStorage] = None):
    assignments = store.get_documents("assignments", {"chapter_node_id": {"$in": node_ids}})
    if assignments:
        ids = [a["id"] for a in assignments]
        store.delete_documents("assignment_completions", {"assignment_id": {"$in": ids}})
        store.delete_documents("assignments", {"id": {"$in": ids}})
    resources = store.get_documents("resources", {"chapter_node_id": {"$in": node_ids}})
    store.delete_documents("resources", {"chapter_node_id": {"$in": node_ids}})
    if files is not None:
        for resource in resources:
            if resource.get("storage_path"):
                files.remove(resource["storage_path"])
