from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from driving_school.auth import ADMIN_ONLY, ANY_ROLE, STAFF_ROLES, ensure_can_view_student, require_roles
from driving_school.models import StudentStatus
from driving_school.payments import PaymentManager, get_payment_manager
from driving_school.principals import Principal
from driving_school.schemas import PaymentOut, StudentCreate, StudentOut, StudentUpdate, envelope
from driving_school.students import StudentService, get_student_service

router = APIRouter(prefix="/students", tags=["students"])


@router.get("")
def list_students(
    student_status: Optional[StudentStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None),
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    _: Principal = Depends(require_roles(STAFF_ROLES)),
    service: StudentService = Depends(get_student_service),
):
    students, total = service.list_students(status=student_status, search=search, limit=limit, offset=offset)
    return envelope({"students": [StudentOut.serialize(s) for s in students], "total": total})


@router.get("/code/{code}")
def get_student_by_code(
    code: str,
    _: Principal = Depends(require_roles(STAFF_ROLES)),
    service: StudentService = Depends(get_student_service),
):
    return envelope({"student": StudentOut.serialize(service.get_by_code(code))})


@router.get("/{student_id}")
def get_student(
    student_id: int,
    principal: Principal = Depends(require_roles(ANY_ROLE)),
    service: StudentService = Depends(get_student_service),
    payments: PaymentManager = Depends(get_payment_manager),
):
    ensure_can_view_student(principal, student_id)
    student = service.get_student(student_id)
    return envelope(
        {
            "student": StudentOut.serialize(student),
            "payments": [PaymentOut.serialize(p) for p in payments.list_payments(student_id=student.id)],
        }
    )


@router.post("", status_code=status.HTTP_201_CREATED)
def create_student(
    body: StudentCreate,
    _: Principal = Depends(require_roles(STAFF_ROLES)),
    service: StudentService = Depends(get_student_service),
):
    return envelope({"student": StudentOut.serialize(service.create_student(body))})


@router.api_route("/{student_id}", methods=["PUT", "PATCH"])
def update_student(
    student_id: int,
    body: StudentUpdate,
    _: Principal = Depends(require_roles(STAFF_ROLES)),
    service: StudentService = Depends(get_student_service),
):
    return envelope({"student": StudentOut.serialize(service.update_student(student_id, body))})


@router.delete("/{student_id}")
def delete_student(
    student_id: int,
    _: Principal = Depends(require_roles(ADMIN_ONLY)),
    service: StudentService = Depends(get_student_service),
):
    service.delete_student(student_id)
    return envelope(message="Student deleted successfully")
