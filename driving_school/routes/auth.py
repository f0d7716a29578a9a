import logging

from fastapi import APIRouter, Depends, status

from driving_school.auth import (
    ADMIN_ONLY,
    STAFF_ROLES,
    get_credential_store,
    get_current_principal,
    get_token_service,
    require_roles,
)
from driving_school.credentials import CredentialStore
from driving_school.exceptions import BadRequest, Conflict, NotFound, Unauthenticated
from driving_school.models import StudentStatus
from driving_school.principals import Principal, StaffPrincipal, ViewerPrincipal
from driving_school.schemas import (
    ChangePasswordRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    StudentOut,
    UserOut,
    UserStatusUpdate,
    ViewerLoginRequest,
    envelope,
)
from driving_school.security import DUMMY_PASSWORD_HASH, get_password_hash, verify_password
from driving_school.tokens import TokenService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login")
def login(
    body: LoginRequest,
    store: CredentialStore = Depends(get_credential_store),
    tokens: TokenService = Depends(get_token_service),
):
    user = store.get_user_by_email(body.email)
    if user is None:
        verify_password(body.password, DUMMY_PASSWORD_HASH)
        logger.warning("Login failed for unknown email %s", body.email)
        raise Unauthenticated("Invalid email or password")
    if not verify_password(body.password, user.password_hash):
        logger.warning("Login failed for user id=%s: bad password", user.id)
        raise Unauthenticated("Invalid email or password")
    if not user.is_active:
        raise Unauthenticated("Account is deactivated")

    user_out = UserOut.serialize(user)
    pair = tokens.issue_pair(StaffPrincipal(id=user.id, email=user.email, role=user.role))
    logger.info("User id=%s logged in", user_out["id"])
    return envelope({"user": user_out, "accessToken": pair.access_token, "refreshToken": pair.refresh_token})


@router.post("/viewer-login")
def viewer_login(
    body: ViewerLoginRequest,
    store: CredentialStore = Depends(get_credential_store),
    tokens: TokenService = Depends(get_token_service),
):
    student = store.get_student_by_code(body.student_code.strip())
    if student is None:
        raise Unauthenticated("Invalid student code")
    if student.status != StudentStatus.ACTIVE:
        raise Unauthenticated("Student account is not active")

    pair = tokens.issue_pair(ViewerPrincipal(student_id=student.id))
    return envelope(
        {
            "student": {
                "id": student.id,
                "studentCode": student.student_code,
                "firstName": student.first_name,
                "lastName": student.last_name,
            },
            "accessToken": pair.access_token,
            "refreshToken": pair.refresh_token,
        }
    )


@router.post("/refresh")
def refresh(body: RefreshRequest, tokens: TokenService = Depends(get_token_service)):
    pair = tokens.refresh(body.refresh_token)
    data = {"accessToken": pair.access_token}
    if pair.refresh_token is not None:
        data["refreshToken"] = pair.refresh_token
    return envelope(data)


@router.post("/logout")
def logout(
    principal: Principal = Depends(get_current_principal),
    store: CredentialStore = Depends(get_credential_store),
):
    if isinstance(principal, StaffPrincipal):
        store.revoke_sessions(principal.id)
    return envelope(message="Logged out successfully")


@router.get("/me")
def me(
    principal: Principal = Depends(get_current_principal),
    store: CredentialStore = Depends(get_credential_store),
):
    if isinstance(principal, ViewerPrincipal):
        student = store.get_student(principal.student_id)
        return envelope({"type": "student", "student": StudentOut.serialize(student)})

    user = store.get_user(principal.id)
    return envelope({"type": "user", "user": UserOut.serialize(user)})


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(
    body: RegisterRequest,
    _: Principal = Depends(require_roles(ADMIN_ONLY)),
    store: CredentialStore = Depends(get_credential_store),
):
    if store.get_user_by_email(body.email) is not None:
        raise Conflict("Email already registered")
    user = store.create_user(
        email=body.email,
        password_hash=get_password_hash(body.password),
        role=body.role,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    logger.info("Registered user id=%s role=%s", user.id, user.role.value)
    return envelope({"user": UserOut.serialize(user)})


@router.post("/change-password")
def change_password(
    body: ChangePasswordRequest,
    principal: StaffPrincipal = Depends(require_roles(STAFF_ROLES)),
    store: CredentialStore = Depends(get_credential_store),
):
    user = store.get_user(principal.id)
    if not verify_password(body.current_password, user.password_hash):
        raise BadRequest("Current password is incorrect")
    store.set_password(user, get_password_hash(body.new_password))
    return envelope(message="Password changed successfully")


@router.patch("/users/{user_id}/status")
def set_user_status(
    user_id: int,
    body: UserStatusUpdate,
    principal: StaffPrincipal = Depends(require_roles(ADMIN_ONLY)),
    store: CredentialStore = Depends(get_credential_store),
):
    if user_id == principal.id:
        raise BadRequest("You cannot change the status of your own account")
    user = store.get_user(user_id)
    if user is None:
        raise NotFound("User")
    store.set_active(user, body.is_active)
    if not body.is_active:
        store.revoke_sessions(user.id)
    logger.info("User id=%s %s by admin id=%s", user.id, "activated" if body.is_active else "deactivated", principal.id)
    return envelope({"user": UserOut.serialize(user)})
