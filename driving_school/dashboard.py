"""Back-office dashboard aggregates over students and payments."""

from typing import List, Tuple

from fastapi import Depends
from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from driving_school.database import get_db
from driving_school.models import Payment, PaymentStatus, Student, StudentStatus

RECENT_LIMIT = 5


class DashboardService:
    def __init__(self, db: Session):
        self.db = db

    def _count(self, model, *conditions) -> int:
        return self.db.execute(select(func.count(model.id)).where(*conditions)).scalar_one()

    def stats(self) -> dict:
        return {
            "total_students": self._count(Student),
            "active_students": self._count(Student, Student.status == StudentStatus.ACTIVE),
            "pending_payments": self._count(Payment, Payment.status == PaymentStatus.PENDING),
        }

    def recent_students(self, limit: int = RECENT_LIMIT) -> List[Student]:
        q = select(Student).order_by(Student.created_at.desc(), Student.id.desc()).limit(limit)
        return list(self.db.execute(q).scalars())

    def recent_payments(self, limit: int = RECENT_LIMIT) -> List[Tuple[Payment, str]]:
        q = (
            select(Payment)
            .options(joinedload(Payment.student))
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(limit)
        )
        return [
            (payment, payment.student.full_name if payment.student is not None else "Unknown")
            for payment in self.db.execute(q).scalars()
        ]


def get_dashboard_service(db: Session = Depends(get_db)) -> DashboardService:
    return DashboardService(db)
