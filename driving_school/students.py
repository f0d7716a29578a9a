import logging
import secrets
import string
from datetime import date
from typing import List, Optional, Tuple

from fastapi import Depends
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from driving_school.database import get_db
from driving_school.exceptions import Conflict, NotFound
from driving_school.models import Student, StudentStatus
from driving_school.schemas import StudentCreate, StudentUpdate

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def generate_student_code(prefix: str = "MDS") -> str:
    year = str(date.today().year)[-2:]
    alphabet = string.digits + string.ascii_uppercase
    return prefix + year + "".join(secrets.choice(alphabet) for _ in range(4))


class StudentService:
    def __init__(self, db: Session):
        self.db = db

    def list_students(
        self,
        status: Optional[StudentStatus] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Student], int]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(offset, 0)

        conditions = []
        if status is not None:
            conditions.append(Student.status == status)
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(
                    Student.first_name.ilike(pattern),
                    Student.last_name.ilike(pattern),
                    Student.student_code.ilike(pattern),
                    Student.email.ilike(pattern),
                    Student.phone.ilike(pattern),
                )
            )

        total = self.db.execute(select(func.count(Student.id)).where(*conditions)).scalar_one()
        students = self.db.execute(
            select(Student).where(*conditions).order_by(Student.created_at.desc(), Student.id.desc()).limit(limit).offset(offset)
        ).scalars()
        return list(students), total

    def get_student(self, student_id: int) -> Student:
        student = self.db.get(Student, student_id)
        if student is None:
            raise NotFound("Student")
        return student

    def get_by_code(self, student_code: str) -> Student:
        student = self.db.execute(select(Student).where(Student.student_code == student_code)).scalar_one_or_none()
        if student is None:
            raise NotFound("Student")
        return student

    def _code_taken(self, student_code: str) -> bool:
        return self.db.execute(select(Student.id).where(Student.student_code == student_code)).first() is not None

    def _commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise Conflict("Student code already exists")

    def create_student(self, data: StudentCreate) -> Student:
        fields = data.model_dump()
        if not fields.get("student_code"):
            fields["student_code"] = generate_student_code()
        if self._code_taken(fields["student_code"]):
            raise Conflict("Student code already exists")
        if fields.get("enrollment_date") is None:
            fields["enrollment_date"] = date.today()

        student = Student(**fields)
        self.db.add(student)
        self._commit()
        self.db.refresh(student)
        logger.info("Created student id=%s code=%s", student.id, student.student_code)
        return student

    def update_student(self, student_id: int, data: StudentUpdate) -> Student:
        student = self.get_student(student_id)
        changes = data.model_dump(exclude_unset=True)
        new_code = changes.get("student_code")
        if new_code and new_code != student.student_code and self._code_taken(new_code):
            raise Conflict("Student code already exists")
        for key, value in changes.items():
            if value is None and key in {"student_code", "first_name", "last_name", "phone", "course_type", "status"}:
                continue
            setattr(student, key, value)
        self._commit()
        self.db.refresh(student)
        return student

    def delete_student(self, student_id: int) -> None:
        student = self.get_student(student_id)
        self.db.delete(student)
        self.db.commit()
        logger.info("Deleted student id=%s", student_id)


def get_student_service(db: Session = Depends(get_db)) -> StudentService:
    return StudentService(db)
