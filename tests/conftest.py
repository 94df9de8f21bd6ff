import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from chat import ChangeFeed
from identity import Account

UPLOADED_URL = "https://res.cloudinary.com/demo/image/upload/v1/photo.jpg"


class FakeUploader:
    def __init__(self, url: str = UPLOADED_URL):
        self.url = url
        self.uploads = []

    def upload(self, image):
        self.uploads.append(image)
        return self.url


@pytest.fixture
def db():
    return mongomock.MongoClient()["campus_hub_test"]


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def alice():
    return Account(id="u1", name="Alice", email="alice@campus.edu")


@pytest.fixture
def bob():
    return Account(id="u2", name="Bob", email="bob@campus.edu")


@pytest.fixture
def admin():
    return Account(id="a1", name="Warden", email="warden@campus.edu", role="admin")


@pytest.fixture
def client(db, uploader):
    main.app.dependency_overrides[database.get_db] = lambda: db
    main.app.dependency_overrides[main.get_uploader] = lambda: uploader
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
