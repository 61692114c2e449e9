from sqlmodel import Session, select
import pytest

from .conftest import login_as, make_user
from .database import engine
from .models import Booking, Notification, User

booking_payload = {
    "printer_id": 1,
    "start_time": "2024-01-01T09:00:00Z",
    "end_time": "2024-01-01T10:00:00Z",
    "duration": 60,
    "pla_confirmed": True,
}


def payload(**overrides):
    return {**booking_payload, **overrides}


# ----
# Auth
# ----


def test_login(client, user_id):
    response = client.post("/token", data={"username": "johndoe", "password": "johndoespass"})
    assert response.status_code == 200
    data = response.json()
    assert "access_token" in data
    assert data["token_type"] == "bearer"

    response = client.post(
        "/token", data={"username": "nonexistentuser", "password": "password"}
    )
    assert response.status_code == 401


def test_token_authenticates_requests(client, user_id):
    token = client.post(
        "/token", data={"username": "johndoe", "password": "johndoespass"}
    ).json()["access_token"]
    response = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["username"] == "johndoe"
    assert response.json()["is_admin"] is False


def test_register_initial_admin(client):
    response = client.post(
        "/register",
        json={"username": "admin", "email": "admin@example.com", "password": "pw"},
    )
    assert response.status_code == 201
    assert response.json()["is_admin"] is True

    response = client.post(
        "/register",
        json={"username": "someone", "email": "someone@example.com", "password": "pw"},
    )
    assert response.json()["is_admin"] is False


def test_register_duplicate_username(client, user_id):
    response = client.post(
        "/register",
        json={"username": "johndoe", "email": "new@example.com", "password": "pw"},
    )
    assert response.status_code == 400


def test_imported_account_without_password_cannot_log_in(client, session):
    session.add(User(username="imported", email="imported@example.com"))
    session.commit()
    response = client.post("/token", data={"username": "imported", "password": "x"})
    assert response.status_code == 401


# --------
# Printers
# --------


def test_get_printers_not_logged_in(client):
    response = client.get("/printers")
    assert response.status_code == 401


def test_get_printers_logged_in(client, user_id, printer_id):
    login_as(user_id)
    response = client.get("/printers")
    assert response.status_code == 200
    assert [p["name"] for p in response.json()] == ["Mini 1"]


def test_post_printer_regular_user(client, user_id):
    login_as(user_id)
    response = client.post("/printers", json={"name": "Mini 2", "location": "Lab B"})
    assert response.status_code == 403


def test_post_printer_admin(client, admin_id):
    login_as(admin_id)
    response = client.post("/printers", json={"name": "Mini 2", "location": "Lab B"})
    assert response.status_code == 201
    data = response.json()
    assert data["name"] == "Mini 2"
    assert data["model"] == "Prusa Mini"
    assert data["status"] == "available"
    assert "id" in data


def test_printer_status_admin(client, admin_id, printer_id):
    login_as(admin_id)
    response = client.patch(f"/printers/{printer_id}/status", json={"status": "maintenance"})
    assert response.status_code == 200
    assert response.json()["status"] == "maintenance"

    response = client.patch(f"/printers/{printer_id}/status", json={"status": "broken"})
    assert response.status_code == 400


def test_update_and_delete_printer(client, admin_id, printer_id):
    login_as(admin_id)
    response = client.patch(f"/printers/{printer_id}", json={"location": "Lab C"})
    assert response.json()["location"] == "Lab C"
    assert response.json()["name"] == "Mini 1"

    assert client.delete(f"/printers/{printer_id}").status_code == 200
    assert client.get(f"/printers/{printer_id}").status_code == 404


def test_delete_printer_removes_its_bookings(
    client, credentialed_user_id, admin_id, printer_id
):
    login_as(credentialed_user_id)
    assert client.post("/bookings", json=payload(printer_id=printer_id)).status_code == 201

    login_as(admin_id)
    assert client.delete(f"/printers/{printer_id}").status_code == 200
    assert client.get("/bookings/all").json() == []


# --------
# Bookings
# --------


def test_post_booking_not_logged_in(client):
    response = client.post("/bookings", json=booking_payload)
    assert response.status_code == 401


def test_post_booking_created(client, credentialed_user_id, printer_id):
    login_as(credentialed_user_id)
    response = client.post("/bookings", json=payload(printer_id=printer_id))
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "scheduled"
    assert data["user_id"] == credentialed_user_id
    assert data["start_time"] == "2024-01-01T09:00:00Z"

    notifications = client.get("/notifications").json()
    assert notifications[0]["title"] == "Booking Confirmed"


def test_post_booking_with_offset_is_returned_in_utc(
    client, credentialed_user_id, printer_id
):
    login_as(credentialed_user_id)
    response = client.post(
        "/bookings",
        json=payload(
            printer_id=printer_id,
            start_time="2024-01-01T11:00:00+02:00",
            end_time="2024-01-01T12:00:00+02:00",
        ),
    )
    assert response.status_code == 201
    assert response.json()["start_time"] == "2024-01-01T09:00:00Z"
    assert response.json()["end_time"] == "2024-01-01T10:00:00Z"

    clashing = payload(
        printer_id=printer_id,
        start_time="2024-01-01T09:30:00Z",
        end_time="2024-01-01T10:30:00Z",
    )
    assert client.post("/bookings", json=clashing).status_code == 409


def test_post_booking_missing_credential(client, user_id, printer_id, required_types):
    login_as(user_id)
    response = client.post("/bookings", json=payload(printer_id=printer_id))
    assert response.status_code == 403
    assert response.json()["detail"] == "Missing required credential: 3D Printing Basics"


@pytest.mark.parametrize(
    "overrides",
    [
        {"duration": 10, "end_time": "2024-01-01T09:10:00Z"},
        {"duration": 500, "end_time": "2024-01-01T17:20:00Z"},
        {"start_time": "not a date"},
    ],
)
def test_post_booking_schema_violation(client, credentialed_user_id, printer_id, overrides):
    login_as(credentialed_user_id)
    response = client.post("/bookings", json=payload(printer_id=printer_id, **overrides))
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid request data"


def test_post_booking_pla_not_confirmed(client, credentialed_user_id, printer_id):
    login_as(credentialed_user_id)
    response = client.post(
        "/bookings", json=payload(printer_id=printer_id, pla_confirmed=False)
    )
    assert response.status_code == 400


def test_cannot_book_already_booked_printer(client, credentialed_user_id, printer_id):
    login_as(credentialed_user_id)
    assert client.post("/bookings", json=payload(printer_id=printer_id)).status_code == 201

    overlapping = payload(
        printer_id=printer_id,
        start_time="2024-01-01T09:30:00Z",
        end_time="2024-01-01T10:30:00Z",
    )
    response = client.post("/bookings", json=overlapping)
    assert response.status_code == 409

    back_to_back = payload(
        printer_id=printer_id,
        start_time="2024-01-01T10:00:00Z",
        end_time="2024-01-01T11:00:00Z",
    )
    assert client.post("/bookings", json=back_to_back).status_code == 201


def test_bookings_list_only_own(client, credentialed_user_id, other_user_id, printer_id):
    login_as(credentialed_user_id)
    client.post("/bookings", json=payload(printer_id=printer_id))

    assert len(client.get("/bookings").json()) == 1
    login_as(other_user_id)
    assert client.get("/bookings").json() == []
    assert client.get("/bookings/all").status_code == 403


def test_admin_lists_all_bookings(client, credentialed_user_id, admin_id, printer_id):
    login_as(credentialed_user_id)
    client.post("/bookings", json=payload(printer_id=printer_id))

    login_as(admin_id)
    response = client.get("/bookings/all", params={"status": "scheduled"})
    assert len(response.json()) == 1
    response = client.get("/bookings/all", params={"status": "cancelled"})
    assert response.json() == []


def test_user_cannot_cancel_others_booking(client, credentialed_user_id, other_user_id, printer_id):
    login_as(credentialed_user_id)
    booking_id = client.post("/bookings", json=payload(printer_id=printer_id)).json()["id"]

    login_as(other_user_id)
    response = client.post(f"/bookings/{booking_id}/cancel")
    assert response.status_code == 403


def test_owner_can_cancel_own_booking(client, credentialed_user_id, printer_id):
    login_as(credentialed_user_id)
    booking_id = client.post("/bookings", json=payload(printer_id=printer_id)).json()["id"]

    response = client.post(f"/bookings/{booking_id}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    # slot is free again
    assert client.post("/bookings", json=payload(printer_id=printer_id)).status_code == 201


def test_owner_can_edit_notes(client, credentialed_user_id, other_user_id, printer_id):
    login_as(credentialed_user_id)
    booking_id = client.post("/bookings", json=payload(printer_id=printer_id)).json()["id"]

    response = client.patch(f"/bookings/{booking_id}", json={"notes": "benchy"})
    assert response.json()["notes"] == "benchy"

    login_as(other_user_id)
    assert client.patch(f"/bookings/{booking_id}", json={"notes": "x"}).status_code == 403


def test_status_transitions_need_authority(client, credentialed_user_id, admin_id, printer_id):
    login_as(credentialed_user_id)
    booking_id = client.post("/bookings", json=payload(printer_id=printer_id)).json()["id"]
    response = client.patch(f"/bookings/{booking_id}/status", json={"status": "active"})
    assert response.status_code == 403

    login_as(admin_id)
    response = client.patch(f"/bookings/{booking_id}/status", json={"status": "active"})
    assert response.json()["status"] == "active"
    assert client.get(f"/printers/{printer_id}").json()["status"] == "in_use"

    response = client.patch(f"/bookings/{booking_id}/progress", json={"print_progress": 42})
    assert response.json()["print_progress"] == 42

    response = client.patch(f"/bookings/{booking_id}/status", json={"status": "scheduled"})
    assert response.status_code == 409


def test_failed_booking_notifies_owner(client, credentialed_user_id, admin_id, printer_id):
    login_as(credentialed_user_id)
    booking_id = client.post("/bookings", json=payload(printer_id=printer_id)).json()["id"]

    login_as(admin_id)
    client.patch(f"/bookings/{booking_id}/status", json={"status": "active"})
    client.patch(f"/bookings/{booking_id}/status", json={"status": "failed"})

    with Session(engine) as session:
        booking = session.get(Booking, booking_id)
        assert booking.status == "failed"
        titles = session.exec(
            select(Notification.title).where(Notification.user_id == credentialed_user_id)
        ).all()
    assert "Booking Failed" in titles


# ------
# Issues
# ------


def test_report_and_resolve_issue(client, user_id, admin_id, printer_id):
    login_as(user_id)
    response = client.post(
        "/issues",
        json={"printer_id": printer_id, "title": "Clogged nozzle", "severity": "high"},
    )
    assert response.status_code == 201
    issue_id = response.json()["id"]
    assert response.json()["status"] == "open"
    assert client.get("/issues").status_code == 403

    login_as(admin_id)
    response = client.patch(f"/issues/{issue_id}", json={"status": "resolved"})
    assert response.json()["status"] == "resolved"
    assert response.json()["resolved_at"] is not None


def test_issue_for_unknown_printer(client, user_id):
    login_as(user_id)
    response = client.post("/issues", json={"printer_id": 999, "title": "Gone"})
    assert response.status_code == 404


def test_issue_for_unknown_booking(client, user_id, printer_id):
    login_as(user_id)
    response = client.post(
        "/issues", json={"printer_id": printer_id, "booking_id": 999, "title": "Gone"}
    )
    assert response.status_code == 404


# -------------
# Notifications
# -------------


def test_mark_notification_read(client, session, user_id, other_user_id):
    notification = Notification(user_id=user_id, title="Hello", message="Hi")
    session.add(notification)
    session.commit()

    login_as(other_user_id)
    assert client.patch(f"/notifications/{notification.id}/read").status_code == 404

    login_as(user_id)
    response = client.patch(f"/notifications/{notification.id}/read")
    assert response.json()["read"] is True


# -----
# Admin
# -----


def test_admin_grants_admin_rights(client, session, admin_id, user_id):
    login_as(user_id)
    assert client.get("/admin/users").status_code == 403

    login_as(admin_id)
    response = client.patch(f"/admin/users/{user_id}", json={"is_admin": True})
    assert response.json()["is_admin"] is True
    assert len(client.get("/admin/users").json()) == 2


def test_admin_cannot_demote_self(client, admin_id):
    login_as(admin_id)
    response = client.patch(f"/admin/users/{admin_id}", json={"is_admin": False})
    assert response.status_code == 400


def test_admin_grant_and_revoke_credential(client, admin_id, printer_id, required_types):
    with Session(engine) as session:
        other = make_user(session, "trainee")
    login_as(admin_id)
    for name in ("Makerspace Orientation", "3D Printing Basics"):
        response = client.post(
            f"/admin/users/{other}/credentials",
            json={"credential_type_id": required_types[name]},
        )
        assert response.status_code == 201

    login_as(other)
    assert client.post("/bookings", json=payload(printer_id=printer_id)).status_code == 201

    login_as(admin_id)
    response = client.delete(
        f"/admin/users/{other}/credentials/{required_types['Makerspace Orientation']}"
    )
    assert response.status_code == 200

    login_as(other)
    later = payload(
        printer_id=printer_id,
        start_time="2024-01-02T09:00:00Z",
        end_time="2024-01-02T10:00:00Z",
    )
    response = client.post("/bookings", json=later)
    assert response.status_code == 403
    assert response.json()["detail"] == "Missing required credential: Makerspace Orientation"
