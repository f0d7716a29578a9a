from fastapi import APIRouter, Depends

from driving_school.auth import STAFF_ROLES, require_roles
from driving_school.dashboard import DashboardService, get_dashboard_service
from driving_school.principals import Principal
from driving_school.schemas import DashboardStats, PaymentOut, StudentOut, envelope

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/stats")
def dashboard_stats(
    _: Principal = Depends(require_roles(STAFF_ROLES)),
    service: DashboardService = Depends(get_dashboard_service),
):
    return envelope({"stats": DashboardStats.serialize(service.stats())})


@router.get("/recent-students")
def recent_students(
    _: Principal = Depends(require_roles(STAFF_ROLES)),
    service: DashboardService = Depends(get_dashboard_service),
):
    return envelope({"students": [StudentOut.serialize(s) for s in service.recent_students()]})


@router.get("/recent-payments")
def recent_payments(
    _: Principal = Depends(require_roles(STAFF_ROLES)),
    service: DashboardService = Depends(get_dashboard_service),
):
    payments = [
        {**PaymentOut.serialize(payment), "studentName": student_name}
        for payment, student_name in service.recent_payments()
    ]
    return envelope({"payments": payments})
