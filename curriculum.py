"""
Curriculum tree: subjects -> chapters -> topics -> subtopics.

Nodes are stored flat (`study_nodes`, parent by id) and the forest is rebuilt
from the flat records and the caller's completion marks on every read. Only
leaves count towards progress; a node with children is never a unit of work
itself, even when it carries a completion mark.
"""

import math
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Tuple

import assessments
import doubts
import registries
from database import Store, utcnow
from exceptions import InvalidInputError
from logging_config import logger
from schemas import MAX_NODE_LEVEL, LEVEL_LABELS, NodeProgress, StudyNode, Subject, TreeNode
from storage import FileStorage

SUBJECT_COLORS = ["217 91% 60%", "160 70% 42%", "280 60% 55%", "30 80% 55%", "0 70% 55%", "190 80% 45%"]


# -----------------------------
# Pure tree operations
# -----------------------------
def build_tree(flat_nodes: Iterable[dict], completion: Dict[str, bool]) -> List[TreeNode]:
    """Assemble the forest for one subject.

    Children are ordered by `sort_order` (ties keep input order). Nodes whose
    parent id does not resolve are unreachable from a root and so dropped.
    """
    by_parent: Dict[Optional[str], List[dict]] = defaultdict(list)
    for node in flat_nodes:
        by_parent[node.get("parent_id")].append(node)

    def attach(parent_id: Optional[str], depth: int, seen: Set[str]) -> List[TreeNode]:
        out = []
        for rec in sorted(by_parent.get(parent_id, []), key=lambda r: r.get("sort_order") or 0):
            if rec["id"] in seen:
                continue
            out.append(TreeNode(
                id=rec["id"],
                name=rec["name"],
                level=depth,
                sort_order=rec.get("sort_order") or 0,
                subject_id=rec["subject_id"],
                parent_id=rec.get("parent_id"),
                completed=completion.get(rec["id"], False),
                children=attach(rec["id"], depth + 1, seen | {rec["id"]}),
            ))
        return out

    return attach(None, 0, set())


def count_leaves(forest: List[TreeNode]) -> Tuple[int, int]:
    """(completed, total) over leaf nodes only."""
    completed = total = 0
    for node in forest:
        if node.is_leaf:
            total += 1
            completed += 1 if node.completed else 0
        else:
            c, t = count_leaves(node.children)
            completed += c
            total += t
    return completed, total


def percentage(completed: int, total: int) -> int:
    # half-up, so 12.5 -> 13
    if total == 0:
        return 0
    return int(math.floor(100 * completed / total + 0.5))


def progress(forest: List[TreeNode]) -> int:
    return percentage(*count_leaves(forest))


def find_node(forest: List[TreeNode], node_id: str) -> Optional[TreeNode]:
    for node in forest:
        if node.id == node_id:
            return node
        found = find_node(node.children, node_id)
        if found:
            return found
    return None


def descendant_ids(flat_nodes: Iterable[dict], node_id: str) -> List[str]:
    """Ids of every node below `node_id` in the flat set."""
    children: Dict[str, List[str]] = defaultdict(list)
    for node in flat_nodes:
        if node.get("parent_id"):
            children[node["parent_id"]].append(node["id"])
    out, stack, seen = [], list(children.get(node_id, [])), {node_id}
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        out.append(current)
        stack.extend(children.get(current, []))
    return out


# -----------------------------
# Completion marks
# -----------------------------
def completion_map(store: Store, user_id: str) -> Dict[str, bool]:
    marks = store.get_documents("node_progress", {"user_id": user_id})
    return {m["node_id"]: bool(m.get("completed")) for m in marks}


def toggle(store: Store, node_id: str, user_id: str) -> bool:
    """Flip the caller's mark on one node; parents and children are untouched."""
    store.get_document("study_nodes", node_id)
    current = store.find_document("node_progress", {"node_id": node_id, "user_id": user_id})
    completed = not (current or {}).get("completed", False)
    mark = NodeProgress(node_id=node_id, user_id=user_id, completed=completed,
                        completed_at=utcnow() if completed else None)
    store.upsert_document("node_progress", {"node_id": node_id, "user_id": user_id},
                          mark.model_dump(exclude={"node_id", "user_id"}))
    logger.info(f"Node {node_id} {'completed' if completed else 'reopened'} by {user_id}")
    return completed


# -----------------------------
# Subjects
# -----------------------------
def _required(name: str, what: str = "Name") -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidInputError(f"{what} is required")
    return name


def list_subjects(store: Store) -> List[dict]:
    return store.get_documents("subjects", order_by="sort_order")


def add_subject(store: Store, name: str, icon: Optional[str] = None, created_by: Optional[str] = None) -> dict:
    count = store.count_documents("subjects")
    subject = Subject(
        name=_required(name),
        icon=icon or "📘",
        color=SUBJECT_COLORS[count % len(SUBJECT_COLORS)],
        sort_order=count,
        created_by=created_by,
    )
    doc = store.create_document("subjects", subject.model_dump())
    logger.info(f"Subject created: {doc['name']} ({doc['id']})")
    return doc


def rename_subject(store: Store, subject_id: str, name: str) -> dict:
    return store.update_document("subjects", subject_id, {"name": _required(name)})


def delete_subject(store: Store, subject_id: str, files: Optional[FileStorage] = None) -> int:
    store.get_document("subjects", subject_id)
    node_ids = [n["id"] for n in store.get_documents("study_nodes", {"subject_id": subject_id})]
    _delete_nodes(store, node_ids, files)
    store.delete_document("subjects", subject_id)
    logger.info(f"Subject {subject_id} deleted with {len(node_ids)} nodes")
    return len(node_ids)


def subject_tree(store: Store, subject_id: str, user_id: str) -> dict:
    subject = store.get_document("subjects", subject_id)
    forest = build_tree(store.get_documents("study_nodes", {"subject_id": subject_id}), completion_map(store, user_id))
    return {"subject": subject, "chapters": forest, "progress": progress(forest)}


def subjects_with_progress(store: Store, user_id: str) -> List[dict]:
    marks = completion_map(store, user_id)
    nodes_by_subject: Dict[str, List[dict]] = defaultdict(list)
    for node in store.get_documents("study_nodes"):
        nodes_by_subject[node["subject_id"]].append(node)
    out = []
    for subject in list_subjects(store):
        forest = build_tree(nodes_by_subject.get(subject["id"], []), marks)
        out.append({**subject, "chapter_count": len(forest), "progress": progress(forest)})
    return out


def dashboard_stats(store: Store, user_id: str) -> dict:
    marks = completion_map(store, user_id)
    nodes_by_subject: Dict[str, List[dict]] = defaultdict(list)
    for node in store.get_documents("study_nodes"):
        nodes_by_subject[node["subject_id"]].append(node)

    subjects = list_subjects(store)
    chapters = completed = total = 0
    for subject in subjects:
        forest = build_tree(nodes_by_subject.get(subject["id"], []), marks)
        chapters += len(forest)
        c, t = count_leaves(forest)
        completed += c
        total += t
    return {
        "subjects": len(subjects),
        "chapters": chapters,
        "completed": completed,
        "total": total,
        "progress": percentage(completed, total),
    }


# -----------------------------
# Nodes
# -----------------------------
def add_node(store: Store, subject_id: str, parent_id: Optional[str], name: str) -> dict:
    """Create a chapter (no parent) or a child one level below its parent."""
    store.get_document("subjects", subject_id)
    level = 0
    if parent_id:
        parent = store.get_document("study_nodes", parent_id)
        if parent["subject_id"] != subject_id:
            raise InvalidInputError("Parent node belongs to another subject")
        if parent["node_level"] >= MAX_NODE_LEVEL:
            raise InvalidInputError(f"A {LEVEL_LABELS[MAX_NODE_LEVEL].lower()} cannot have children")
        level = parent["node_level"] + 1

    siblings = store.count_documents("study_nodes", {"subject_id": subject_id, "parent_id": parent_id or None})
    node = StudyNode(subject_id=subject_id, parent_id=parent_id or None, name=_required(name),
                     node_level=level, sort_order=siblings)
    doc = store.create_document("study_nodes", node.model_dump())
    logger.info(f"{LEVEL_LABELS[level]} created: {doc['name']} ({doc['id']})")
    return doc


def rename_node(store: Store, node_id: str, name: str) -> dict:
    return store.update_document("study_nodes", node_id, {"name": _required(name)})


def delete_node(store: Store, node_id: str, files: Optional[FileStorage] = None) -> List[str]:
    """Delete a node, its descendants and everything attached to any of them."""
    node = store.get_document("study_nodes", node_id)
    flat = store.get_documents("study_nodes", {"subject_id": node["subject_id"]})
    removed = [node_id] + descendant_ids(flat, node_id)
    _delete_nodes(store, removed, files)
    logger.info(f"Node {node_id} deleted with {len(removed) - 1} descendants")
    return removed


def _delete_nodes(store: Store, node_ids: List[str], files: Optional[FileStorage] = None):
    if not node_ids:
        return
    registries.delete_for_nodes(store, node_ids, files)
    assessments.delete_for_nodes(store, node_ids)
    doubts.delete_for_nodes(store, node_ids)
    store.delete_documents("node_progress", {"node_id": {"$in": node_ids}})
    store.delete_documents("study_nodes", {"id": {"$in": node_ids}})


# -----------------------------
# Demo data
# -----------------------------
SEED_CURRICULUM = [
    {
        "name": "Mathematics",
        "icon": "📐",
        "chapters": {
            "Real Numbers": ["Euclid's Division Lemma", "Fundamental Theorem of Arithmetic", "Irrational Numbers"],
            "Polynomials": ["Zeros of a Polynomial", "Division Algorithm"],
            "Pair of Linear Equations": ["Graphical Method", "Substitution Method", "Elimination Method"],
        },
    },
    {
        "name": "Science",
        "icon": "🔬",
        "chapters": {
            "Chemical Reactions": ["Types of Reactions", "Balancing Equations"],
            "Life Processes": ["Nutrition", "Respiration", "Transportation"],
        },
    },
]


def seed_curriculum(store: Store) -> bool:
    """Insert the demo curriculum when there are no subjects yet."""
    if store.count_documents("subjects") > 0:
        return False
    for entry in SEED_CURRICULUM:
        subject = add_subject(store, entry["name"], entry["icon"])
        for chapter_name, topics in entry["chapters"].items():
            chapter = add_node(store, subject["id"], None, chapter_name)
            for topic in topics:
                add_node(store, subject["id"], chapter["id"], topic)
    return True
