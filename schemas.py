"""
Database Schemas for the Study Tracker

Each Pydantic model maps to a MongoDB collection; the collection name is
given next to each class. References between collections are stored as the
string form of the referenced document's id.

Collections used:
- users, profiles, user_roles, sessions
- subjects, study_nodes, node_progress
- resources, assignments, assignment_completions
- tests, test_questions, test_submissions
- doubts, doubt_replies
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["admin", "student"]
DoubtStatus = Literal["pending", "replied", "resolved"]
ResourceType = Literal["note", "pdf", "word", "mp4", "youtube", "link"]
Option = Literal["a", "b", "c", "d"]

MAX_NODE_LEVEL = 2
LEVEL_LABELS = ["Chapter", "Topic", "Subtopic"]


# users
class User(BaseModel):
    email: EmailStr
    password_hash: str = Field(..., description="bcrypt hash")
    is_active: bool = True


# profiles
class Profile(BaseModel):
    user_id: str
    username: str


# user_roles
class UserRole(BaseModel):
    user_id: str
    role: Role = "student"


# sessions
class Session(BaseModel):
    user_id: str
    token: str
    expires_at: datetime


# subjects
class Subject(BaseModel):
    name: str = Field(..., description="Subject name")
    icon: Optional[str] = Field(None, description="Emoji or icon name")
    color: Optional[str] = Field(None, description="HSL triple used for the subject accent")
    sort_order: int = Field(0, ge=0)
    created_by: Optional[str] = None


# study_nodes
class StudyNode(BaseModel):
    subject_id: str = Field(..., description="Reference to subject id")
    parent_id: Optional[str] = Field(None, description="Parent node id; null for chapters")
    name: str
    node_level: int = Field(0, ge=0, le=MAX_NODE_LEVEL, description="0=chapter, 1=topic, 2=subtopic")
    sort_order: int = Field(0, ge=0)


# node_progress
class NodeProgress(BaseModel):
    node_id: str
    user_id: str
    completed: bool = False
    completed_at: Optional[datetime] = None


# resources
class Resource(BaseModel):
    chapter_node_id: str
    name: str
    resource_type: ResourceType = "note"
    url: str = Field(..., description="Uploaded file URL or external link")
    storage_path: Optional[str] = Field(None, description="Path inside the resources bucket for uploads")
    sort_order: int = 0
    created_by: Optional[str] = None


# assignments
class Assignment(BaseModel):
    chapter_node_id: str
    title: str
    link: str
    due_date: Optional[datetime] = None
    created_by: Optional[str] = None


# assignment_completions
class AssignmentCompletion(BaseModel):
    assignment_id: str
    student_id: str
    completed: bool = False
    completed_at: Optional[datetime] = None


# tests
class Test(BaseModel):
    chapter_node_id: str
    title: str
    timer_minutes: int = Field(30, ge=1)
    deadline: Optional[datetime] = Field(None, description="Stored for display; not enforced")
    created_by: Optional[str] = None


# test_questions
class TestQuestion(BaseModel):
    test_id: str
    question_text: str
    option_a: str
    option_b: str
    option_c: str
    option_d: str
    correct_option: Option = "a"
    sort_order: int = 0


# test_submissions
class TestSubmission(BaseModel):
    test_id: str
    student_id: str
    answers: Dict[str, Option] = Field(default_factory=dict, description="question id -> chosen option")
    score: Optional[int] = None
    total: Optional[int] = None
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None


# doubts
class Doubt(BaseModel):
    student_id: str
    chapter_node_id: str
    message: str
    status: DoubtStatus = "pending"


# doubt_replies
class DoubtReply(BaseModel):
    doubt_id: str
    user_id: str
    message: str


class TreeNode(BaseModel):
    """A study node assembled into its subject's forest for one user."""

    id: str
    name: str
    level: int
    sort_order: int = 0
    subject_id: str
    parent_id: Optional[str] = None
    completed: bool = False
    children: List["TreeNode"] = Field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return not self.children


TreeNode.model_rebuild()
