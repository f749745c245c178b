import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import settings

settings.MONGO_TRANSACTIONS = False

from auth import create_token, hash_password  # noqa: E402
from database import get_db, now  # noqa: E402
from main import app, get_distributor  # noqa: E402
from tasks import TaskDistributor, TaskOptions  # noqa: E402

PASSWORD = "secret-pass"
# One hash for every fixture user keeps bcrypt out of the hot path.
PASSWORD_HASH = hash_password(PASSWORD)


class FakeConnection:
    def ping(self):
        return True


class FakeJob:
    def __init__(self, job_id):
        self.id = job_id


class RecordingDistributor(TaskDistributor):
    """Keeps enqueued jobs in memory instead of pushing them to redis."""

    def __init__(self):
        super().__init__(FakeConnection())
        self.jobs = []

    def enqueue(self, task_type, payload, opts=None):
        self.jobs.append((task_type, payload, opts or TaskOptions()))
        return FakeJob(f"job-{len(self.jobs)}")

    def of_type(self, task_type):
        return [job for job in self.jobs if job[0] == task_type]


@pytest.fixture
def db():
    return mongomock.MongoClient()["coffeeshop_test"]


@pytest.fixture
def distributor():
    return RecordingDistributor()


@pytest.fixture
def client(db, distributor):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_distributor] = lambda: distributor
    yield TestClient(app)
    app.dependency_overrides.clear()


def insert_user(db, username, role="user", avatar="default.jpeg"):
    doc = {
        "_id": ObjectId(),
        "username": username,
        "email": f"{username}@coffeeshop.io",
        "phone_number": "+1(571)360-6677",
        "password_hash": PASSWORD_HASH,
        "role": role,
        "avatar": avatar,
        "verified": False,
        "created_at": now(),
        "updated_at": now(),
    }
    db["user"].insert_one(doc)
    return doc


def auth_header(user):
    return {"Authorization": f"Bearer {create_token(str(user['_id']), user['email'])}"}


def insert_product(db, name="Caffe Latte", price=4.5, discount=0, category="beverages", **extra):
    doc = {
        "_id": ObjectId(),
        "name": name,
        "price": price,
        "discount": discount,
        "summary": "Espresso with steamed milk",
        "description": "A smooth and creamy coffee with a thin layer of foam.",
        "category": category,
        "ingredients": ["Espresso", "Milk"],
        "thumbnail": None,
        "images": [],
        "ratings": 0,
        "created_at": now(),
        "updated_at": now(),
    }
    doc.update(extra)
    db["product"].insert_one(doc)
    return doc


@pytest.fixture
def admin(db):
    return insert_user(db, "barista", role="admin")


@pytest.fixture
def customer(db):
    return insert_user(db, "al3xa")
