import time

import jwt
import pytest

from main import SECRET_KEY, ALGORITHM, create_access_token

VALID_ID = "64b7f0c2a1b2c3d4e5f60718"

PROTECTED_ROUTES = [
    ("post", "/create-payment-intent", {"price": 10}),
    ("post", "/payment", {"studentInfo": {"email": "student@example.com"}, "price": 10}),
    ("get", "/payment/student@example.com", None),
    ("post", "/classes", {"instructorEmail": "ada@example.com", "availableSeats": 3}),
    ("patch", f"/classes/{VALID_ID}", None),
    ("patch", f"/updateClassStatus/{VALID_ID}", {"status": "approved"}),
    ("put", f"/classFeedback/{VALID_ID}", {"feedback": "Nice"}),
    ("patch", f"/updateClass/{VALID_ID}", {"name": "New"}),
    ("get", "/instructorClasses/ada@example.com", None),
    ("post", "/selectedClasses", {"studentInfo": {"email": "student@example.com"}, "classId": VALID_ID}),
    ("get", "/selectedClasses/student@example.com", None),
    ("get", f"/selectedAClasses/{VALID_ID}", None),
    ("delete", f"/selectedClasses/{VALID_ID}", None),
    ("get", "/stats", None),
]


def call(client, method, path, body, headers=None):
    kwargs = {"headers": headers or {}}
    if body is not None:
        kwargs["json"] = body
    return client.request(method.upper(), path, **kwargs)


def test_issue_token_carries_email_and_one_day_expiry(client):
    response = client.post("/jwt", json={"email": "student@example.com"})

    assert response.status_code == 200
    claims = jwt.decode(response.json()["token"], SECRET_KEY, algorithms=[ALGORITHM])
    assert claims["email"] == "student@example.com"
    assert 86000 < claims["exp"] - time.time() <= 86400


def test_issue_token_requires_email(client):
    response = client.post("/jwt", json={"name": "nobody"})
    assert response.status_code == 422


@pytest.mark.parametrize("method,path,body", PROTECTED_ROUTES)
def test_protected_route_without_header_is_unauthorized(client, method, path, body):
    response = call(client, method, path, body)

    assert response.status_code == 401
    assert response.json() == {"error": True, "message": "Unauthorized access"}


@pytest.mark.parametrize("method,path,body", PROTECTED_ROUTES)
def test_protected_route_with_expired_token_is_unauthorized(client, expired_headers, method, path, body):
    response = call(client, method, path, body, expired_headers)
    assert response.status_code == 401


@pytest.mark.parametrize("method,path,body", PROTECTED_ROUTES)
def test_protected_route_with_tampered_token_is_unauthorized(client, token, method, path, body):
    header, _, signature = token.split(".")
    forged_payload = create_access_token({"email": "admin@example.com", "role": "admin"}).split(".")[1]
    tampered = f"{header}.{forged_payload}.{signature}"

    response = call(client, method, path, body, {"Authorization": f"Bearer {tampered}"})
    assert response.status_code == 401


def test_token_signed_with_other_secret_is_rejected(client):
    forged = jwt.encode({"email": "admin@example.com"}, "not-the-secret", algorithm=ALGORITHM)
    response = client.get("/selectedClasses/admin@example.com", headers={"Authorization": f"Bearer {forged}"})
    assert response.status_code == 401


def test_non_bearer_scheme_is_rejected(client, token):
    response = client.get("/selectedClasses/student@example.com", headers={"Authorization": f"Basic {token}"})
    assert response.status_code == 401


def test_unauthorized_request_has_no_side_effect(client, db):
    response = client.post("/classes", json={"instructorEmail": "ada@example.com", "availableSeats": 3})

    assert response.status_code == 401
    assert db.get_all_classes() == []


def test_public_routes_need_no_token(client):
    assert client.get("/classes").status_code == 200
    assert client.get("/approvedClasses").status_code == 200
    assert client.get("/instructors").status_code == 200


def test_root_is_plaintext_liveness(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.text == "Shutter academy is running"
    assert response.headers["content-type"].startswith("text/plain")
