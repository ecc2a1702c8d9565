"""
Study Tracker - Test Configuration and Fixtures
"""
import os
import tempfile

import mongomock
import pytest
from faker import Faker
from fastapi.testclient import TestClient

# Set testing environment before the app reads its settings
os.environ["ENVIRONMENT"] = "testing"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("DATABASE_NAME", None)
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["STORAGE_DIR"] = tempfile.mkdtemp(prefix="studytracker-files-")

import auth
from database import Store, get_store
from main import app
from realtime import ChangeFeed
from storage import FileStorage, get_storage

fake = Faker()


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def store(feed) -> Store:
    """Fresh in-memory database per test"""
    db = mongomock.MongoClient().get_database("studytracker_test")
    s = Store(db, feed=feed, cache_enabled=True)
    s.ensure_indexes()
    return s


@pytest.fixture
def files(tmp_path) -> FileStorage:
    return FileStorage(str(tmp_path), "resources", "http://testserver")


@pytest.fixture
def client(store, files):
    """Test client with database and storage overrides"""
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_storage] = lambda: files
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_user(store: Store, role: str = "student", password: str = "testpassword123"):
    email = fake.unique.email()
    user = auth.register(store, email, password, fake.user_name(), role=role)
    session = auth.login(store, email, password)
    return user, session["token"]


@pytest.fixture
def admin(store):
    return make_user(store, "admin")


@pytest.fixture
def student(store):
    return make_user(store, "student")


@pytest.fixture
def admin_headers(admin):
    return {"X-Auth-Token": admin[1]}


@pytest.fixture
def student_headers(student):
    return {"X-Auth-Token": student[1]}


@pytest.fixture
def math_subject(store):
    """'Mathematics' with chapter 'Real Numbers' holding three topics"""
    import curriculum

    subject = curriculum.add_subject(store, "Mathematics", "📐")
    chapter = curriculum.add_node(store, subject["id"], None, "Real Numbers")
    topics = [
        curriculum.add_node(store, subject["id"], chapter["id"], name)
        for name in ("Euclid's Division Lemma", "Fundamental Theorem of Arithmetic", "Irrational Numbers")
    ]
    return {"subject": subject, "chapter": chapter, "topics": topics}


@pytest.fixture
def make_account(store):
    """Factory for extra accounts: make_account("admin") -> (AppUser, token)"""
    return lambda role="student": make_user(store, role)
