import logging
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse

from driving_school.auth import ANY_ROLE, STAFF_ROLES, ensure_can_view_student, require_roles
from driving_school.config import Settings, get_settings
from driving_school.models import PaymentStatus
from driving_school.payments import PaymentManager, get_payment_manager
from driving_school.principals import Principal
from driving_school.schemas import PaymentInitiate, PaymentOut, PaymentSummary, envelope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


async def read_json_body(request: Request) -> Any:
    """Raw JSON body, or None when it is missing or not valid JSON."""
    try:
        return await request.json()
    except ValueError:
        return None


@router.get("")
def list_payments(
    student_id: Optional[int] = Query(None, alias="studentId"),
    payment_status: Optional[PaymentStatus] = Query(None, alias="status"),
    _: Principal = Depends(require_roles(STAFF_ROLES)),
    manager: PaymentManager = Depends(get_payment_manager),
):
    payments = manager.list_payments(student_id=student_id, status=payment_status)
    return envelope({"payments": [PaymentOut.serialize(p) for p in payments]})


@router.post("/initiate", status_code=status.HTTP_201_CREATED)
def initiate_payment(
    body: PaymentInitiate,
    principal: Principal = Depends(require_roles(STAFF_ROLES)),
    manager: PaymentManager = Depends(get_payment_manager),
):
    payment = manager.initiate(
        student_id=body.student_id,
        amount=body.amount,
        currency=body.currency,
        description=body.description,
        created_by_id=principal.id,
    )
    return envelope({"payment": PaymentOut.serialize(payment)})


@router.get("/verify")
def verify_payment(
    transaction_id: Optional[str] = Query(None, alias="transactionId"),
    reference: Optional[str] = Query(None),
    manager: PaymentManager = Depends(get_payment_manager),
):
    result = manager.verify(transaction_id=transaction_id, reference=reference)
    payment = result.payment
    message = "Payment verified successfully" if payment.status == PaymentStatus.PAID else "Payment verification completed"
    return envelope({"payment": PaymentOut.serialize(payment)}, message=message)


@router.get("/callback")
def payment_callback(
    payment_status: Optional[str] = Query(None, alias="status"),
    tx_ref: Optional[str] = Query(None),
    transaction_id: Optional[str] = Query(None),
    manager: PaymentManager = Depends(get_payment_manager),
    settings: Settings = Depends(get_settings),
):
    manager.handle_callback(payment_status, tx_ref, transaction_id)
    query = urlencode({"ref": tx_ref or "", "status": payment_status or ""})
    return RedirectResponse(f"{settings.frontend_url.rstrip('/')}/payments?{query}", status_code=status.HTTP_302_FOUND)


@router.post("/webhook")
def payment_webhook(
    request: Request,
    payload: Any = Depends(read_json_body),
    manager: PaymentManager = Depends(get_payment_manager),
):
    manager.handle_webhook(request.headers.get("verif-hash"), payload)
    return envelope()


@router.get("/reference/{reference}")
def get_payment_by_reference(
    reference: str,
    _: Principal = Depends(require_roles(STAFF_ROLES)),
    manager: PaymentManager = Depends(get_payment_manager),
):
    return envelope({"payment": PaymentOut.serialize(manager.get_by_reference(reference))})


@router.get("/student/{student_id}")
def get_student_payments(
    student_id: int,
    principal: Principal = Depends(require_roles(ANY_ROLE)),
    manager: PaymentManager = Depends(get_payment_manager),
):
    ensure_can_view_student(principal, student_id)
    result = manager.student_summary(student_id)
    return envelope(
        {
            "payments": [PaymentOut.serialize(p) for p in result["payments"]],
            "summary": PaymentSummary.serialize(result["summary"]),
        }
    )


@router.get("/{payment_id}")
def get_payment(
    payment_id: int,
    principal: Principal = Depends(require_roles(ANY_ROLE)),
    manager: PaymentManager = Depends(get_payment_manager),
):
    payment = manager.get_payment(payment_id)
    ensure_can_view_student(principal, payment.student_id)
    return envelope({"payment": PaymentOut.serialize(payment)})
