import io
import os
import tempfile

# module-level config is read at import time
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="storefront-uploads-")
os.environ["STORAGE_BACKEND"] = "local"
os.environ.pop("RESEND_API_KEY", None)

import mongomock
import pytest
from fastapi.testclient import TestClient
from starlette.datastructures import UploadFile

import main
from database import utcnow
from notifications import Notification
from schemas import CustomerInfo
from security import get_password_hash, token_for_user
from storage import LocalImageStorage

PASSWORD = "secret123"


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def enqueue(self, to, kind, data=None):
        self.sent.append(Notification(to=to, kind=kind, data=dict(data or {})))

    def last(self, kind=None):
        matching = [n for n in self.sent if kind is None or n.kind == kind]
        return matching[-1] if matching else None


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def storage(tmp_path):
    return LocalImageStorage(str(tmp_path))


@pytest.fixture
def client(db, notifier, storage):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_notifier] = lambda: notifier
    main.app.dependency_overrides[main.get_storage] = lambda: storage
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def make_user(db, username="bob", role="user", verified=True, active=True, password=PASSWORD):
    now = utcnow()
    doc = {
        "username": username,
        "name": username.title(),
        "email": f"{username}@example.com",
        "password_hash": get_password_hash(password),
        "role": role,
        "is_active": active,
        "is_email_verified": verified,
        "otp": None,
        "otp_expires": None,
        "otp_last_sent_at": None,
        "address": {},
        "created_at": now,
        "updated_at": now,
    }
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    return doc


def auth(user):
    return {"Authorization": f"Bearer {token_for_user(user)}"}


def customer(name="Alice Smith", email="alice@example.com"):
    return CustomerInfo(full_name=name, email=email, address="1 Main St", city="Springfield", country="US")


def image_upload(filename="photo.png", content=b"\x89PNG fake"):
    return UploadFile(io.BytesIO(content), filename=filename)


@pytest.fixture
def user(db):
    return make_user(db, "bob")


@pytest.fixture
def admin(db):
    return make_user(db, "root", role="admin")
