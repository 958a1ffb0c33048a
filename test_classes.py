from concurrent.futures import ThreadPoolExecutor

import pytest

from mongodb_manager import NoSeatsAvailableError

MISSING_ID = "64b7f0c2a1b2c3d4e5f60718"


def test_create_class_defaults_to_pending(client, db, make_class):
    class_id = make_class()

    [created] = db.get_all_classes()
    assert created["_id"] == class_id
    assert created["status"] == "pending"
    assert created["totalEnrolled"] == 0
    assert created["availableSeats"] == 10


def test_create_class_rejects_negative_seats(client, auth_headers):
    response = client.post(
        "/classes",
        json={"instructorEmail": "ada@example.com", "availableSeats": -1},
        headers=auth_headers,
    )
    assert response.status_code == 422


def test_list_all_classes(client, make_class):
    make_class(name="One")
    make_class(name="Two")

    names = sorted(c["name"] for c in client.get("/classes").json())
    assert names == ["One", "Two"]


def test_approved_classes_only_returns_exact_approved_status(client, auth_headers, make_class):
    approved = make_class(name="Approved")
    make_class(name="Pending")
    denied = make_class(name="Denied")
    odd = make_class(name="Odd")
    client.patch(f"/updateClassStatus/{approved}", json={"status": "approved"}, headers=auth_headers)
    client.patch(f"/updateClassStatus/{denied}", json={"status": "denied"}, headers=auth_headers)
    client.patch(f"/updateClass/{odd}", json={"status": "Approved "}, headers=auth_headers)

    response = client.get("/approvedClasses")

    assert response.status_code == 200
    assert [c["_id"] for c in response.json()] == [approved]
    assert all(c["status"] == "approved" for c in response.json())


def test_update_status_rejects_unknown_value(client, auth_headers, make_class):
    class_id = make_class()
    response = client.patch(f"/updateClassStatus/{class_id}", json={"status": "archived"}, headers=auth_headers)
    assert response.status_code == 422


def test_update_status_returns_update_ack(client, auth_headers, make_class):
    class_id = make_class()

    response = client.patch(f"/updateClassStatus/{class_id}", json={"status": "denied"}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["matchedCount"] == 1
    assert response.json()["modifiedCount"] == 1


def test_update_status_unknown_class_is_not_found(client, auth_headers):
    response = client.patch(f"/updateClassStatus/{MISSING_ID}", json={"status": "approved"}, headers=auth_headers)

    assert response.status_code == 404
    assert response.json()["error"] is True


def test_malformed_id_is_bad_request(client, auth_headers):
    response = client.patch("/updateClassStatus/not-an-id", json={"status": "approved"}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json() == {"error": True, "message": "Invalid id"}


def test_feedback_is_set_on_existing_class(client, db, auth_headers, make_class):
    class_id = make_class()

    response = client.put(f"/classFeedback/{class_id}", json={"feedback": "Add more examples"}, headers=auth_headers)

    assert response.status_code == 200
    [stored] = db.get_all_classes()
    assert stored["feedback"] == "Add more examples"


def test_feedback_upserts_missing_class(client, db, auth_headers):
    response = client.put(f"/classFeedback/{MISSING_ID}", json={"feedback": "Hello"}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["upsertedId"] == MISSING_ID
    assert db.get_all_classes() == [{"_id": MISSING_ID, "feedback": "Hello"}]


def test_general_update_passes_fields_through(client, db, auth_headers, make_class):
    class_id = make_class()

    response = client.patch(
        f"/updateClass/{class_id}",
        json={"name": "Night Photography", "availableSeats": 4, "level": "advanced"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    [stored] = db.get_all_classes()
    assert stored["name"] == "Night Photography"
    assert stored["availableSeats"] == 4
    assert stored["level"] == "advanced"
    assert stored["_id"] == class_id


def test_general_update_requires_fields(client, auth_headers, make_class):
    class_id = make_class()
    response = client.patch(f"/updateClass/{class_id}", json={}, headers=auth_headers)
    assert response.status_code == 400


def test_instructor_classes_filters_by_email(client, auth_headers, make_class):
    make_class(name="Mine", instructorEmail="ada@example.com")
    make_class(name="Theirs", instructorEmail="bob@example.com")

    response = client.get("/instructorClasses/ada@example.com", headers=auth_headers)

    assert response.status_code == 200
    assert [c["name"] for c in response.json()] == ["Mine"]


def test_enroll_takes_one_seat(client, db, auth_headers, make_class):
    class_id = make_class(availableSeats=2)

    response = client.patch(f"/classes/{class_id}", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["modifiedCount"] == 1
    [stored] = db.get_all_classes()
    assert stored["availableSeats"] == 1
    assert stored["totalEnrolled"] == 1


def test_enroll_full_class_is_conflict(client, db, auth_headers, make_class):
    class_id = make_class(availableSeats=1)

    first = client.patch(f"/classes/{class_id}", headers=auth_headers)
    second = client.patch(f"/classes/{class_id}", headers=auth_headers)

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json() == {"error": True, "message": "No seats available"}
    [stored] = db.get_all_classes()
    assert stored["availableSeats"] == 0
    assert stored["totalEnrolled"] == 1


def test_enroll_unknown_class_is_not_found(client, auth_headers):
    response = client.patch(f"/classes/{MISSING_ID}", headers=auth_headers)
    assert response.status_code == 404


def test_concurrent_enrollments_never_go_below_zero(db):
    class_id = db.create_class({"instructorEmail": "ada@example.com", "availableSeats": 1, "totalEnrolled": 0})["insertedId"]

    def attempt():
        try:
            db.enroll_seat(class_id)
            return True
        except NoSeatsAvailableError:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(lambda _: attempt(), range(8)))

    assert outcomes.count(True) == 1
    [stored] = db.get_all_classes()
    assert stored["availableSeats"] == 0
    assert stored["totalEnrolled"] == 1


def test_general_update_ignores_null_typed_fields(client, db, auth_headers, make_class):
    class_id = make_class(availableSeats=3)

    response = client.patch(
        f"/updateClass/{class_id}",
        json={"availableSeats": None, "name": "Macro Basics"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    [stored] = db.get_all_classes()
    assert stored["availableSeats"] == 3
    assert stored["name"] == "Macro Basics"
    assert client.patch(f"/classes/{class_id}", headers=auth_headers).status_code == 200


def test_general_update_with_only_nulls_is_bad_request(client, auth_headers, make_class):
    class_id = make_class()
    response = client.patch(f"/updateClass/{class_id}", json={"availableSeats": None}, headers=auth_headers)
    assert response.status_code == 400
