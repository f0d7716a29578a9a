"""
Payment lifecycle manager.

A payment is created ``pending`` and moves to ``paid`` or ``failed`` exactly
once. Three independent triggers report the provider's outcome: an explicit
verification poll, the browser redirect callback and the provider webhook.
All of them end in :meth:`PaymentManager.apply_outcome`, a single
conditional UPDATE that only matches rows still ``pending``. Whichever
trigger commits first wins; later or concurrent duplicates match zero rows
and become no-ops, so a terminal state is never overwritten and the domain
event is published once.
"""

import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional

from fastapi import Depends
from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from driving_school.config import Settings, get_settings
from driving_school.database import get_db
from driving_school.events import EventPublisher, get_event_publisher
from driving_school.exceptions import BadRequest, Conflict, NotFound, PaymentProviderError, Unauthenticated
from driving_school.flutterwave import (
    FlutterwaveClient,
    PaymentLinkRequest,
    ProviderTransaction,
    get_payment_provider,
    verify_webhook_signature,
)
from driving_school.models import TERMINAL_PAYMENT_STATUSES, Payment, PaymentStatus, Student
from driving_school.schemas import WebhookEvent

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase
REFERENCE_PATTERN = re.compile(r"^[A-Z0-9]+-[0-9A-Z]+-[0-9A-Z]{6}$")

PROVIDER_STATUS_MAP = {
    "successful": PaymentStatus.PAID,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.FAILED,
}


def _to_base36(number: int) -> str:
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_reference(prefix: str = "MDS") -> str:
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}-{timestamp}-{suffix}"


def outcome_from_provider_status(status: Optional[str]) -> Optional[PaymentStatus]:
    """Terminal status for a provider status, or None while still undecided."""
    return PROVIDER_STATUS_MAP.get((status or "").lower())


@dataclass(frozen=True)
class ReconcileResult:
    payment: Payment
    transitioned: bool


class PaymentManager:
    def __init__(
        self,
        db: Session,
        provider: FlutterwaveClient,
        publisher: EventPublisher,
        settings: Settings,
    ):
        self.db = db
        self.provider = provider
        self.publisher = publisher
        self.settings = settings

    # ---------- reads ----------
    def list_payments(self, student_id: Optional[int] = None, status: Optional[PaymentStatus] = None) -> List[Payment]:
        q = select(Payment)
        if student_id is not None:
            q = q.where(Payment.student_id == student_id)
        if status is not None:
            q = q.where(Payment.status == status)
        q = q.order_by(Payment.created_at.desc(), Payment.id.desc())
        return list(self.db.execute(q).scalars())

    def get_payment(self, payment_id: int) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment")
        return payment

    def get_by_reference(self, reference: str) -> Payment:
        payment = self.db.execute(select(Payment).where(Payment.reference == reference)).scalar_one_or_none()
        if payment is None:
            raise NotFound("Payment record")
        return payment

    def student_summary(self, student_id: int) -> dict:
        if self.db.get(Student, student_id) is None:
            raise NotFound("Student")
        payments = self.list_payments(student_id=student_id)

        def _total(status: PaymentStatus) -> Decimal:
            return sum((p.amount for p in payments if p.status == status), Decimal("0"))

        return {
            "payments": payments,
            "summary": {
                "total": len(payments),
                "paid": sum(1 for p in payments if p.status == PaymentStatus.PAID),
                "pending": sum(1 for p in payments if p.status == PaymentStatus.PENDING),
                "failed": sum(1 for p in payments if p.status == PaymentStatus.FAILED),
                "total_paid": _total(PaymentStatus.PAID),
                "total_pending": _total(PaymentStatus.PENDING),
            },
        }

    # ---------- initiate ----------
    def initiate(
        self,
        student_id: int,
        amount: Decimal,
        currency: str = "NGN",
        description: Optional[str] = None,
        created_by_id: Optional[int] = None,
    ) -> Payment:
        student = self.db.get(Student, student_id)
        if student is None:
            raise NotFound("Student")

        reference = generate_reference(self.settings.payment_reference_prefix)
        payment = Payment(
            student_id=student.id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            reference=reference,
            description=description,
            created_by_id=created_by_id,
        )
        self.db.add(payment)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.error("Payment reference collision for %s", reference)
            raise Conflict("Payment reference already exists")
        self.db.refresh(payment)
        logger.info("Created payment id=%s reference=%s student=%s status=pending", payment.id, reference, student.id)

        # the pending record stands even when the provider is unavailable
        try:
            link = self.provider.create_payment_link(
                PaymentLinkRequest(
                    amount=Decimal(amount),
                    currency=currency,
                    customer_email=student.email or f"{student.student_code}@{self.settings.student_email_domain}",
                    customer_name=student.full_name,
                    reference=reference,
                    redirect_url=self.settings.payment_callback_url,
                    description=description or f"Payment for {student.full_name}",
                    meta={"studentId": student.id, "studentCode": student.student_code},
                )
            )
        except PaymentProviderError:
            logger.exception("Failed to create Flutterwave payment link for %s", reference)
            return payment

        payment.payment_link = link
        self.db.commit()
        self.db.refresh(payment)
        return payment

    # ---------- reconciliation ----------
    def apply_outcome(
        self,
        reference: str,
        status: Optional[PaymentStatus],
        flutterwave_ref: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> ReconcileResult:
        payment = self.get_by_reference(reference)
        if status not in TERMINAL_PAYMENT_STATUSES:
            logger.info("Payment %s still undecided at provider, leaving %s", reference, payment.status.value)
            return ReconcileResult(payment, False)

        values: dict = {
            "status": status,
            "flutterwave_ref": flutterwave_ref,
            "transaction_id": transaction_id,
        }
        if status == PaymentStatus.PAID:
            values["paid_at"] = datetime.now(timezone.utc)

        result = self.db.execute(
            update(Payment)
            .where(Payment.reference == reference, Payment.status == PaymentStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(payment)

        if result.rowcount != 1:
            if payment.status != status:
                logger.warning(
                    "Ignoring %s for payment %s already %s", status.value, reference, payment.status.value
                )
            else:
                logger.info("Payment %s already %s, nothing to apply", reference, payment.status.value)
            return ReconcileResult(payment, False)

        logger.info("Payment %s transitioned to %s", reference, status.value)
        self._publish_transition(payment)
        return ReconcileResult(payment, True)

    def _publish_transition(self, payment: Payment) -> None:
        paid = payment.status == PaymentStatus.PAID
        event = {
            "type": "PaymentPaid" if paid else "PaymentFailed",
            "payload": {
                "payment_id": payment.id,
                "student_id": payment.student_id,
                "reference": payment.reference,
                "amount": str(payment.amount),
                "currency": payment.currency,
                "transaction_id": payment.transaction_id,
            },
        }
        self.publisher.publish("payment.events.paid" if paid else "payment.events.failed", event)

    def reconcile_transaction(self, transaction: ProviderTransaction) -> ReconcileResult:
        outcome = outcome_from_provider_status(transaction.status)
        result = self.apply_outcome(transaction.tx_ref, outcome, transaction.flw_ref, transaction.id)
        if (
            outcome == PaymentStatus.PAID
            and transaction.amount is not None
            and transaction.amount < result.payment.amount
        ):
            logger.warning(
                "Provider reported %s %s for payment %s expecting %s",
                transaction.amount,
                transaction.currency,
                transaction.tx_ref,
                result.payment.amount,
            )
        return result

    def verify(self, transaction_id: Optional[str] = None, reference: Optional[str] = None) -> ReconcileResult:
        """Explicit status poll; provider failures propagate to the caller."""
        if not transaction_id and not reference:
            raise BadRequest("Transaction ID or reference is required")

        if transaction_id:
            transaction = self.provider.verify_transaction(transaction_id)
        else:
            transaction = self.provider.verify_transaction_by_reference(reference)
            if transaction is None:
                raise NotFound("Transaction")
        return self.reconcile_transaction(transaction)

    def handle_callback(
        self,
        status: Optional[str],
        tx_ref: Optional[str],
        transaction_id: Optional[str],
    ) -> Optional[ReconcileResult]:
        """Browser redirect from the hosted payment page.

        The query string is not trusted: the outcome is always fetched from the
        provider, and any failure is logged so the user still lands on the
        front end.
        """
        if not transaction_id:
            logger.info("Payment callback for %s without transaction id (status=%s)", tx_ref, status)
            return None
        try:
            return self.verify(transaction_id=transaction_id)
        except (PaymentProviderError, NotFound):
            logger.exception("Payment callback verification failed for %s", tx_ref)
            return None

    def handle_webhook(self, signature: Optional[str], payload: Any) -> Optional[ReconcileResult]:
        if not verify_webhook_signature(signature, self.settings.flutterwave_secret_hash):
            logger.warning("Rejected payment webhook with invalid signature")
            raise Unauthenticated("Invalid webhook signature")

        try:
            event = WebhookEvent.model_validate(payload)
        except ValidationError:
            logger.warning("Ignoring malformed payment webhook payload")
            return None

        if event.event != "charge.completed" or event.data is None:
            logger.info("Ignoring payment webhook event %s", event.event)
            return None

        data = event.data
        try:
            return self.apply_outcome(
                data.tx_ref,
                outcome_from_provider_status(data.status),
                data.flw_ref,
                str(data.id) if data.id is not None else None,
            )
        except NotFound:
            logger.warning("Payment webhook for unknown reference %s", data.tx_ref)
            return None


def get_payment_manager(
    db: Session = Depends(get_db),
    provider: FlutterwaveClient = Depends(get_payment_provider),
    publisher: EventPublisher = Depends(get_event_publisher),
    settings: Settings = Depends(get_settings),
) -> PaymentManager:
    return PaymentManager(db, provider, publisher, settings)
