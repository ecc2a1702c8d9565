import asyncio
import os
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

import assessments
import curriculum
import doubts
import auth
import registries
from auth import AppUser, get_current_user, require_admin, require_student
from config import settings
from database import Store, db, get_store, store as configured_store
from exceptions import AuthorizationError, StudyTrackerError
from logging_config import logger
from schemas import DoubtStatus, Option, ResourceType, Role
from storage import FileStorage, get_storage

# -----------------------------
# App Setup
# -----------------------------
app = FastAPI(title=settings.APP_NAME, version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/files", StaticFiles(directory=settings.STORAGE_DIR, check_dir=False), name="files")


# -----------------------------
# Pydantic Models (requests)
# -----------------------------
class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    username: str
    role: Role = "student"
    invite_code: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class SubjectCreate(BaseModel):
    name: str
    icon: Optional[str] = None


class RenameRequest(BaseModel):
    name: str


class NodeCreate(BaseModel):
    name: str
    parent_id: Optional[str] = None


class ResourceCreate(BaseModel):
    name: str
    resource_type: ResourceType = "link"
    url: str


class ResourceUpdate(BaseModel):
    name: Optional[str] = None
    resource_type: Optional[ResourceType] = None
    url: Optional[str] = None


class AssignmentCreate(BaseModel):
    title: str
    link: str
    due_date: Optional[datetime] = None


class QuestionCreate(BaseModel):
    question_text: str
    option_a: str = ""
    option_b: str = ""
    option_c: str = ""
    option_d: str = ""
    correct_option: Option = "a"


class TestCreate(BaseModel):
    title: str
    timer_minutes: int = Field(30, ge=1)
    deadline: Optional[datetime] = None
    questions: List[QuestionCreate] = Field(..., min_length=1)


class AnswerRequest(BaseModel):
    question_id: str
    option: Option


class MessageCreate(BaseModel):
    message: str


# -----------------------------
# Error handling
# -----------------------------
@app.exception_handler(StudyTrackerError)
async def study_tracker_error_handler(request: Request, exc: StudyTrackerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(PyMongoError)
async def backend_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Backend operation failed on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=503,
        content={"detail": "Backend operation failed, please try again", "code": "BACKEND_ERROR"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc) if settings.DEBUG else "Internal server error",
            "code": "INTERNAL_ERROR",
        },
    )


# -----------------------------
# Startup / shutdown
# -----------------------------
@app.on_event("startup")
def on_startup():
    os.makedirs(settings.STORAGE_DIR, exist_ok=True)
    if configured_store is None:
        return
    try:
        configured_store.ensure_indexes()
        if settings.ENVIRONMENT == "development" and curriculum.seed_curriculum(configured_store):
            logger.info("Seeded demo curriculum")
    except PyMongoError as e:
        logger.warning(f"Startup database setup failed: {e}")


@app.on_event("shutdown")
def on_shutdown():
    cancelled = assessments.countdowns.cancel_all()
    if cancelled:
        logger.info(f"Cancelled {cancelled} running test countdowns")


# -----------------------------
# Health and root
# -----------------------------
@app.get("/")
def read_root():
    return {"message": f"{settings.APP_NAME} is running"}


@app.get("/health")
def health_check():
    return {"status": "healthy", "app_name": settings.APP_NAME, "environment": settings.ENVIRONMENT}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.DATABASE_URL else "❌ Not Set",
        "database_name": settings.DATABASE_NAME or "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is not None:
        try:
            response["collections"] = db.list_collection_names()[:20]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
        except PyMongoError as e:
            response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


@app.get("/schema")
def get_schema():
    from schemas import Assignment, Doubt, DoubtReply, Resource, StudyNode, Subject, Test, TestQuestion, TestSubmission
    return {
        "subjects": Subject.model_json_schema(),
        "study_nodes": StudyNode.model_json_schema(),
        "resources": Resource.model_json_schema(),
        "assignments": Assignment.model_json_schema(),
        "tests": Test.model_json_schema(),
        "test_questions": TestQuestion.model_json_schema(),
        "test_submissions": TestSubmission.model_json_schema(),
        "doubts": Doubt.model_json_schema(),
        "doubt_replies": DoubtReply.model_json_schema(),
    }


# -----------------------------
# Auth
# -----------------------------
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest, store: Store = Depends(get_store)):
    user = auth.register(store, payload.email, payload.password, payload.username,
                         role=payload.role, invite_code=payload.invite_code)
    return user


@app.post("/api/auth/login")
def login(payload: LoginRequest, store: Store = Depends(get_store)):
    return auth.login(store, payload.email, payload.password)


@app.post("/api/auth/logout")
def logout(request: Request, current: AppUser = Depends(get_current_user), store: Store = Depends(get_store)):
    return {"logged_out": auth.logout(store, request.headers.get("x-auth-token", ""))}


@app.get("/api/auth/me")
def me(current: AppUser = Depends(get_current_user)):
    return current


# -----------------------------
# Subjects & curriculum tree
# -----------------------------
@app.get("/api/subjects")
def list_subjects(current: AppUser = Depends(get_current_user), store: Store = Depends(get_store)):
    return curriculum.subjects_with_progress(store, current.id)


@app.post("/api/subjects", status_code=201)
def create_subject(payload: SubjectCreate, current: AppUser = Depends(require_admin), store: Store = Depends(get_store)):
    return curriculum.add_subject(store, payload.name, payload.icon, created_by=current.id)


@app.patch("/api/subjects/{subject_id}")
def rename_subject(subject_id: str, payload: RenameRequest, current: AppUser = Depends(require_admin),
                   store: Store = Depends(get_store)):
    return curriculum.rename_subject(store, subject_id, payload.name)


@app.delete("/api/subjects/{subject_id}")
def delete_subject(subject_id: str, current: AppUser = Depends(require_admin), store: Store = Depends(get_store),
                   files: FileStorage = Depends(get_storage)):
    return {"deleted": True, "nodes_removed": curriculum.delete_subject(store, subject_id, files)}


@app.get("/api/subjects/{subject_id}/tree")
def subject_tree(subject_id: str, current: AppUser = Depends(get_current_user), store: Store = Depends(get_store)):
    return curriculum.subject_tree(store, subject_id, current.id)


@app.post("/api/subjects/{subject_id}/nodes", status_code=201)
def create_node(subject_id: str, payload: NodeCreate, current: AppUser = Depends(require_admin),
                store: Store = Depends(get_store)):
    return curriculum.add_node(store, subject_id, payload.parent_id, payload.name)


@app.patch("/api/nodes/{node_id}")
def rename_node(node_id: str, payload: RenameRequest, current: AppUser = Depends(require_admin),
                store: Store = Depends(get_store)):
    return curriculum.rename_node(store, node_id, payload.name)


@app.delete("/api/nodes/{node_id}")
def delete_node(node_id: str, current: AppUser = Depends(require_admin), store: Store = Depends(get_store),
                files: FileStorage = Depends(get_storage)):
    return {"deleted": curriculum.delete_node(store, node_id, files)}


@app.post("/api/nodes/{node_id}/toggle")
def toggle_node(node_id: str, current: AppUser = Depends(get_current_user), store: Store = Depends(get_store)):
    return {"node_id": node_id, "completed": curriculum.toggle(store, node_id, current.id)}


@app.get("/api/dashboard")
def dashboard(current: AppUser = Depends(get_current_user), store: Store = Depends(get_store)):
    return curriculum.dashboard_stats(store, current.id)


# -----------------------------
# Resources
# -----------------------------
@app.get("/api/nodes/{node_id}/resources")
def list_resources(node_id: str, current: AppUser = Depends(get_current_user), store: Store = Depends(get_store)):
    return registries.list_resources(store, node_id)


@app.post("/api/nodes/{node_id}/resources", status_code=201)
def create_resource(node_id: str, payload: ResourceCreate, current: AppUser = Depends(require_admin),
                    store: Store = Depends(get_store)):
    return registries.add_resource(store, node_id, payload.name, payload.resource_type, payload.url,
                                   created_by=current.id)


@app.post("/api/nodes/{node_id}/resources/upload", status_code=201)
async def upload_resource(
    node_id: str,
    name: str = Form(...),
    resource_type: ResourceType = Form("pdf"),
    file: UploadFile = File(...),
    current: AppUser = Depends(require_admin),
    store: Store = Depends(get_store),
    files: FileStorage = Depends(get_storage),
):
    data = await file.read()
    return await run_in_threadpool(
        registries.upload_resource, store, files, node_id, name, resource_type,
        file.filename or "upload", data, current.id,
    )


@app.patch("/api/resources/{resource_id}")
def update_resource(resource_id: str, payload: ResourceUpdate, current: AppUser = Depends(require_admin),
                    store: Store = Depends(get_store)):
    return registries.update_resource(store, resource_id, payload.name, payload.resource_type, payload.url)


@app.delete("/api/resources/{resource_id}")
def delete_resource(resource_id: str, current: AppUser = Depends(require_admin), store: Store = Depends(get_store),
                    files: FileStorage = Depends(get_storage)):
    registries.delete_resource(store, resource_id, files)
    return {"deleted": True}


# -----------------------------
# Assignments
# -----------------------------
@app.get("/api/nodes/{node_id}/assignments")
def list_assignments(node_id: str, current: AppUser = Depends(get_current_user), store: Store = Depends(get_store)):
    return registries.list_assignments(store, node_id, None if current.is_admin else current.id)


@app.post("/api/nodes/{node_id}/assignments", status_code=201)
def create_assignment(node_id: str, payload: AssignmentCreate, current: AppUser = Depends(require_admin),
                      store: Store = Depends(get_store)):
    return registries.add_assignment(store, node_id, payload.title, payload.link, payload.due_date,
                                     created_by=current.id)


@app.delete("/api/assignments/{assignment_id}")
def delete_assignment(assignment_id: str, current: AppUser = Depends(require_admin), store: Store = Depends(get_store)):
    registries.delete_assignment(store, assignment_id)
    return {"deleted": True}


@app.post("/api/assignments/{assignment_id}/toggle")
def toggle_assignment(assignment_id: str, current: AppUser = Depends(require_student), store: Store = Depends(get_store)):
    return {"assignment_id": assignment_id, "completed": registries.toggle_assignment(store, assignment_id, current.id)}


# -----------------------------
# Tests
# -----------------------------
@app.get("/api/nodes/{node_id}/tests")
def list_tests(node_id: str, current: AppUser = Depends(get_current_user), store: Store = Depends(get_store)):
    tests = [assessments.present_test(t, reveal=current.is_admin) for t in assessments.list_tests(store, node_id)]
    if not current.is_admin:
        states = assessments.attempt_states(store, [t["id"] for t in tests], current.id)
        tests = [{**t, "attempt_state": states[t["id"]]} for t in tests]
    return tests


@app.post("/api/nodes/{node_id}/tests", status_code=201)
def create_test(node_id: str, payload: TestCreate, current: AppUser = Depends(require_admin),
                store: Store = Depends(get_store)):
    test = assessments.create_test(
        store, node_id, payload.title, payload.timer_minutes,
        [q.model_dump() for q in payload.questions], deadline=payload.deadline, created_by=current.id,
    )
    return assessments.present_test(test, reveal=True)


@app.delete("/api/tests/{test_id}")
def delete_test(test_id: str, current: AppUser = Depends(require_admin), store: Store = Depends(get_store)):
    assessments.delete_test(store, test_id)
    return {"deleted": True}


@app.get("/api/tests/{test_id}/attempt")
def get_attempt(test_id: str, current: AppUser = Depends(require_student), store: Store = Depends(get_store)):
    return assessments.get_attempt(store, test_id, current.id).view()


@app.post("/api/tests/{test_id}/attempt/start")
async def start_attempt(test_id: str, current: AppUser = Depends(require_student), store: Store = Depends(get_store)):
    attempt = await run_in_threadpool(assessments.start_attempt, store, test_id, current.id)
    if settings.AUTO_SUBMIT_ENABLED:
        assessments.schedule_auto_submit(store, attempt, settings.COUNTDOWN_TICK_SECONDS)
    return attempt.view()


@app.put("/api/tests/{test_id}/attempt/answers")
def answer_question(test_id: str, payload: AnswerRequest, current: AppUser = Depends(require_student),
                    store: Store = Depends(get_store)):
    return assessments.record_answer(store, test_id, current.id, payload.question_id, payload.option).view()


@app.post("/api/tests/{test_id}/attempt/submit")
def submit_attempt(test_id: str, current: AppUser = Depends(require_student), store: Store = Depends(get_store)):
    return assessments.submit_attempt(store, test_id, current.id).view()


# -----------------------------
# Doubts
# -----------------------------
@app.post("/api/nodes/{node_id}/doubts", status_code=201)
def raise_doubt(node_id: str, payload: MessageCreate, current: AppUser = Depends(require_student),
                store: Store = Depends(get_store)):
    return doubts.raise_doubt(store, current.id, node_id, payload.message)


@app.get("/api/nodes/{node_id}/doubts")
def my_doubts(node_id: str, current: AppUser = Depends(require_student), store: Store = Depends(get_store)):
    return doubts.student_doubts(store, node_id, current.id)


@app.get("/api/doubts")
def all_doubts(status: Optional[DoubtStatus] = Query(None), current: AppUser = Depends(require_admin),
               store: Store = Depends(get_store)):
    return doubts.all_doubts(store, status)


@app.post("/api/doubts/{doubt_id}/replies", status_code=201)
def reply_to_doubt(doubt_id: str, payload: MessageCreate, current: AppUser = Depends(require_admin),
                   store: Store = Depends(get_store)):
    return doubts.reply(store, doubt_id, current.id, payload.message)


@app.post("/api/doubts/{doubt_id}/resolve")
def resolve_doubt(doubt_id: str, current: AppUser = Depends(require_admin), store: Store = Depends(get_store)):
    return doubts.resolve(store, doubt_id)


async def relay_changes(websocket: WebSocket, queue: asyncio.Queue):
    """Forward queued changes until the client disconnects.

    A failed send ends the relay and is re-raised once both tasks are done.
    """

    async def pump():
        while True:
            change = await queue.get()
            await websocket.send_json(jsonable_encoder(change.as_message()))

    async def drain():
        while True:
            await websocket.receive_text()

    tasks = [asyncio.create_task(pump()), asyncio.create_task(drain())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    for task in done:
        error = task.exception()
        if error is not None and not isinstance(error, WebSocketDisconnect):
            raise error


@app.websocket("/ws/doubts")
async def doubts_feed(websocket: WebSocket, token: Optional[str] = Query(None), store: Store = Depends(get_store)):
    """Push every new doubt to a connected admin. Nothing is replayed on reconnect."""
    try:
        user = await run_in_threadpool(auth.resolve_session, store, token)
        if not user.is_admin:
            raise AuthorizationError()
    except StudyTrackerError as e:
        logger.info(f"Rejected doubts feed connection: {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    # subscribed before accept so nothing raised after the handshake is missed
    subscription = store.feed.subscribe(
        "doubts", "INSERT", lambda change: loop.call_soon_threadsafe(queue.put_nowait, change)
    )

    try:
        await websocket.accept()
        await relay_changes(websocket, queue)
        logger.info(f"Doubts feed closed for {user.email}")
    except Exception as e:
        logger.error(f"Doubts feed error for {user.email}: {e}", exc_info=True)
    finally:
        subscription.unsubscribe()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
