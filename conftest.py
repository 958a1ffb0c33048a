from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from db_manager import DatabaseManager
from main import app, get_db, create_access_token


@pytest.fixture
def db(tmp_path):
    return DatabaseManager(base_dir=tmp_path / "data")


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def token():
    return create_access_token({"email": "student@example.com"})


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def expired_headers():
    token = create_access_token({"email": "student@example.com"}, expires_delta=timedelta(seconds=-10))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_class(client, auth_headers):
    def _make_class(**overrides):
        payload = {
            "name": "Portrait Lighting",
            "instructorName": "Ada Lens",
            "instructorEmail": "ada@example.com",
            "availableSeats": 10,
            "price": 49.5,
        }
        payload.update(overrides)
        response = client.post("/classes", json=payload, headers=auth_headers)
        assert response.status_code == 200, response.text
        return response.json()["insertedId"]
    return _make_class
