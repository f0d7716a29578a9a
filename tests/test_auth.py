"""
Authentication and authorization through the HTTP API.
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from driving_school.auth import ADMIN_ONLY, STAFF_ROLES, authorize, ensure_can_view_student, get_credential_store
from driving_school.config import get_settings
from driving_school.credentials import CredentialStore
from driving_school.exceptions import Forbidden, Unauthenticated
from driving_school.main import app
from driving_school.models import Role, StudentStatus, User
from driving_school.principals import StaffPrincipal, ViewerPrincipal
from driving_school.security import get_password_hash, verify_password
from driving_school.tokens import TokenService
from tests.conftest import PASSWORD, TEST_SETTINGS, bearer, login, make_student, make_user


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = get_password_hash("TestPassword123!")
        assert hashed != "TestPassword123!"
        assert verify_password("TestPassword123!", hashed) is True
        assert verify_password("WrongPassword", hashed) is False

    def test_corrupt_hash_is_a_mismatch(self):
        assert verify_password("anything", "CHANGE_ME") is False


class TestLogin:
    def test_login_returns_user_and_tokens(self, client, staff):
        response = client.post("/api/auth/login", json={"email": staff.email, "password": PASSWORD})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["data"]["user"]["email"] == "staff@marvel-driving.com"
        assert body["data"]["user"]["role"] == "staff"
        assert "passwordHash" not in body["data"]["user"]
        assert body["data"]["accessToken"]
        assert body["data"]["refreshToken"]

    def test_wrong_password(self, client, staff):
        response = client.post("/api/auth/login", json={"email": staff.email, "password": "nope-nope"})
        assert response.status_code == 401
        assert response.json() == {"status": "error", "message": "Invalid email or password"}

    def test_unknown_email(self, client):
        response = client.post("/api/auth/login", json={"email": "ghost@marvel-driving.com", "password": PASSWORD})
        assert response.status_code == 401

    def test_deactivated_account(self, client, db):
        make_user(db, "gone@marvel-driving.com", is_active=False)
        response = client.post("/api/auth/login", json={"email": "gone@marvel-driving.com", "password": PASSWORD})
        assert response.status_code == 401
        assert response.json()["message"] == "Account is deactivated"

    def test_validation_errors_are_field_level_400s(self, client):
        response = client.post("/api/auth/login", json={"email": "not-an-email", "password": "123"})

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["message"] == "Validation failed"
        fields = {err["field"] for err in body["errors"]}
        assert fields == {"email", "password"}


class TestViewerLogin:
    def test_active_student_gets_tokens(self, client, student):
        response = client.post("/api/auth/viewer-login", json={"studentCode": student.student_code})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["student"] == {
            "id": student.id,
            "studentCode": "MDS24AB12",
            "firstName": "Ada",
            "lastName": "Obi",
        }
        assert data["accessToken"] and data["refreshToken"]

    def test_unknown_code(self, client):
        response = client.post("/api/auth/viewer-login", json={"studentCode": "NOPE"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid student code"

    @pytest.mark.parametrize("status", [StudentStatus.INACTIVE, StudentStatus.GRADUATED, StudentStatus.SUSPENDED])
    def test_only_active_students_may_log_in(self, client, db, status):
        make_student(db, code="MDS24ZZ99", status=status)
        response = client.post("/api/auth/viewer-login", json={"studentCode": "MDS24ZZ99"})
        assert response.status_code == 401
        assert response.json()["message"] == "Student account is not active"

    def test_suspension_does_not_revoke_issued_access_token(self, client, db, student, viewer_token):
        student.status = StudentStatus.SUSPENDED
        db.commit()

        response = client.get("/api/auth/me", headers=bearer(viewer_token))
        assert response.status_code == 200


class TestRefresh:
    def test_refresh_succeeds_once_per_generation(self, client, staff):
        issued = login(client, staff.email)

        first = client.post("/api/auth/refresh", json={"refreshToken": issued["refreshToken"]})
        assert first.status_code == 200
        assert first.json()["data"]["accessToken"]
        assert first.json()["data"]["refreshToken"]

        replay = client.post("/api/auth/refresh", json={"refreshToken": issued["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["message"] == "Invalid refresh token"

    def test_newer_login_supersedes_older_refresh_token(self, client, staff):
        older = login(client, staff.email)
        newer = login(client, staff.email)

        assert client.post("/api/auth/refresh", json={"refreshToken": older["refreshToken"]}).status_code == 401
        assert client.post("/api/auth/refresh", json={"refreshToken": newer["refreshToken"]}).status_code == 200

    def test_logout_revokes_refresh_token(self, client, staff):
        issued = login(client, staff.email)

        response = client.post("/api/auth/logout", headers=bearer(issued["accessToken"]))
        assert response.status_code == 200
        assert response.json()["message"] == "Logged out successfully"

        assert client.post("/api/auth/refresh", json={"refreshToken": issued["refreshToken"]}).status_code == 401

    def test_viewer_refresh_returns_access_token_only(self, client, student):
        issued = client.post("/api/auth/viewer-login", json={"studentCode": student.student_code}).json()["data"]

        response = client.post("/api/auth/refresh", json={"refreshToken": issued["refreshToken"]})

        assert response.status_code == 200
        assert "refreshToken" not in response.json()["data"]

    def test_missing_refresh_token_is_bad_request(self, client):
        assert client.post("/api/auth/refresh", json={}).status_code == 400

    def test_garbage_refresh_token(self, client):
        response = client.post("/api/auth/refresh", json={"refreshToken": "garbage"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token"


class TestAuthenticationGate:
    def test_no_token(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json()["message"] == "No token provided"

    def test_non_bearer_scheme(self, client):
        response = client.get("/api/auth/me", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert response.status_code == 401

    def test_invalid_token(self, client):
        response = client.get("/api/auth/me", headers=bearer("abc.def.ghi"))
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token"

    def test_expired_token(self, client, db, staff):
        expired = TokenService(TEST_SETTINGS.model_copy(update={"access_token_expire_minutes": -5}), CredentialStore(db))
        token = expired.issue_access_token(StaffPrincipal(id=staff.id, email=staff.email, role=staff.role))

        response = client.get("/api/auth/me", headers=bearer(token))
        assert response.status_code == 401
        assert response.json()["message"] == "Token expired"

    def test_deactivated_user_token_stops_working(self, client, db, staff, staff_token):
        assert client.get("/api/auth/me", headers=bearer(staff_token)).status_code == 200

        staff.is_active = False
        db.commit()

        response = client.get("/api/auth/me", headers=bearer(staff_token))
        assert response.status_code == 401
        assert response.json()["message"] == "User not found or inactive"

    def test_token_for_deleted_student(self, client, db, student, viewer_token):
        db.delete(student)
        db.commit()

        response = client.get("/api/auth/me", headers=bearer(viewer_token))
        assert response.status_code == 401
        assert response.json()["message"] == "Student not found"

    def test_me_for_staff(self, client, staff_token):
        data = client.get("/api/auth/me", headers=bearer(staff_token)).json()["data"]
        assert data["type"] == "user"
        assert data["user"]["email"] == "staff@marvel-driving.com"

    def test_me_for_viewer(self, client, student, viewer_token):
        data = client.get("/api/auth/me", headers=bearer(viewer_token)).json()["data"]
        assert data["type"] == "student"
        assert data["student"]["studentCode"] == student.student_code

    def test_optional_auth_on_health(self, client, staff_token):
        anonymous = client.get("/api/health")
        assert anonymous.status_code == 200
        assert anonymous.json()["data"] == {"status": "ok"}

        bad_token = client.get("/api/health", headers=bearer("garbage"))
        assert bad_token.status_code == 200
        assert bad_token.json()["data"] == {"status": "ok"}

        staff_view = client.get("/api/health", headers=bearer(staff_token))
        assert staff_view.json()["data"] == {"status": "ok", "database": "ok"}

    def test_optional_auth_tolerates_missing_signing_secret(self, client, staff_token):
        app.dependency_overrides[get_settings] = lambda: TEST_SETTINGS.model_copy(update={"jwt_secret": ""})

        response = client.get("/api/health", headers=bearer(staff_token))

        assert response.status_code == 200
        assert response.json()["data"] == {"status": "ok"}

    def test_optional_auth_tolerates_store_failure(self, client, staff_token):
        class UnreachableStore(CredentialStore):
            def get_user(self, user_id):
                raise OperationalError("SELECT users", {}, Exception("connection refused"))

        app.dependency_overrides[get_credential_store] = lambda: UnreachableStore(None)

        response = client.get("/api/health", headers=bearer(staff_token))

        assert response.status_code == 200
        assert response.json()["data"] == {"status": "ok"}


class TestAuthorizationGate:
    def test_no_principal_is_unauthenticated(self):
        with pytest.raises(Unauthenticated):
            authorize(None, STAFF_ROLES)

    def test_role_outside_set_is_forbidden(self):
        with pytest.raises(Forbidden):
            authorize(StaffPrincipal(id=1, email="s@x.com", role=Role.STAFF), ADMIN_ONLY)
        with pytest.raises(Forbidden):
            authorize(ViewerPrincipal(student_id=1), STAFF_ROLES)

    def test_role_in_set_is_allowed(self):
        principal = StaffPrincipal(id=1, email="a@x.com", role=Role.ADMIN)
        assert authorize(principal, ADMIN_ONLY) is principal

    def test_viewer_limited_to_own_student(self):
        ensure_can_view_student(ViewerPrincipal(student_id=4), 4)
        ensure_can_view_student(StaffPrincipal(id=1, email="s@x.com", role=Role.STAFF), 4)
        with pytest.raises(Forbidden):
            ensure_can_view_student(ViewerPrincipal(student_id=4), 5)


class TestAccountManagement:
    def test_admin_registers_staff(self, client, db, admin_token):
        response = client.post(
            "/api/auth/register",
            headers=bearer(admin_token),
            json={"email": "New.Hire@Marvel-Driving.com", "password": "longenough", "firstName": "New"},
        )

        assert response.status_code == 201
        user = response.json()["data"]["user"]
        assert user["email"] == "new.hire@marvel-driving.com"
        assert user["role"] == "staff"
        assert user["firstName"] == "New"
        assert db.query(User).filter(User.email == "new.hire@marvel-driving.com").count() == 1

    def test_staff_cannot_register(self, client, staff_token):
        response = client.post(
            "/api/auth/register",
            headers=bearer(staff_token),
            json={"email": "x@marvel-driving.com", "password": "longenough"},
        )
        assert response.status_code == 403
        assert response.json()["message"] == "Insufficient permissions"

    def test_duplicate_email_conflicts(self, client, staff, admin_token):
        response = client.post(
            "/api/auth/register",
            headers=bearer(admin_token),
            json={"email": staff.email, "password": "longenough"},
        )
        assert response.status_code == 409

    def test_viewer_role_cannot_be_registered(self, client, admin_token):
        response = client.post(
            "/api/auth/register",
            headers=bearer(admin_token),
            json={"email": "v@marvel-driving.com", "password": "longenough", "role": "viewer"},
        )
        assert response.status_code == 400

    def test_change_password(self, client, staff, staff_token):
        wrong = client.post(
            "/api/auth/change-password",
            headers=bearer(staff_token),
            json={"currentPassword": "incorrect", "newPassword": "brand-new-pass"},
        )
        assert wrong.status_code == 400

        ok = client.post(
            "/api/auth/change-password",
            headers=bearer(staff_token),
            json={"currentPassword": PASSWORD, "newPassword": "brand-new-pass"},
        )
        assert ok.status_code == 200
        assert login(client, staff.email, "brand-new-pass")["accessToken"]

    def test_viewer_cannot_change_password(self, client, viewer_token):
        response = client.post(
            "/api/auth/change-password",
            headers=bearer(viewer_token),
            json={"currentPassword": PASSWORD, "newPassword": "brand-new-pass"},
        )
        assert response.status_code == 403

    def test_admin_deactivates_staff_and_revokes_sessions(self, client, db, admin_token, staff):
        issued = login(client, staff.email)

        response = client.patch(
            f"/api/auth/users/{staff.id}/status", headers=bearer(admin_token), json={"isActive": False}
        )

        assert response.status_code == 200
        assert response.json()["data"]["user"]["isActive"] is False
        assert client.get("/api/auth/me", headers=bearer(issued["accessToken"])).status_code == 401
        assert client.post("/api/auth/refresh", json={"refreshToken": issued["refreshToken"]}).status_code == 401
        login_again = client.post("/api/auth/login", json={"email": staff.email, "password": PASSWORD})
        assert login_again.json()["message"] == "Account is deactivated"

    def test_admin_reactivates_staff(self, client, db, admin_token):
        user = make_user(db, "returning@marvel-driving.com", is_active=False)

        response = client.patch(
            f"/api/auth/users/{user.id}/status", headers=bearer(admin_token), json={"isActive": True}
        )

        assert response.status_code == 200
        assert login(client, user.email)["accessToken"]

    def test_admin_cannot_change_own_status(self, client, admin, admin_token):
        response = client.patch(
            f"/api/auth/users/{admin.id}/status", headers=bearer(admin_token), json={"isActive": False}
        )
        assert response.status_code == 400

    def test_status_change_for_unknown_user(self, client, admin_token):
        response = client.patch("/api/auth/users/999/status", headers=bearer(admin_token), json={"isActive": False})
        assert response.status_code == 404
        assert response.json()["message"] == "User not found"

    def test_staff_cannot_change_status(self, client, db, staff_token):
        user = make_user(db, "colleague@marvel-driving.com")
        response = client.patch(
            f"/api/auth/users/{user.id}/status", headers=bearer(staff_token), json={"isActive": False}
        )
        assert response.status_code == 403
