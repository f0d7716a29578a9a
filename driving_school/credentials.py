"""
Credential store: staff users, their session generation, and students
addressable by their public student code.
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from driving_school.models import Role, Student, User

logger = logging.getLogger(__name__)


class CredentialStore:
    def __init__(self, db: Session):
        self.db = db

    # ---------- users ----------
    def get_user(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.db.execute(select(User).where(User.email == email.lower())).scalar_one_or_none()

    def create_user(self, *, email: str, password_hash: str, role: Role, first_name=None, last_name=None) -> User:
        user = User(
            email=email.lower(),
            password_hash=password_hash,
            role=role,
            first_name=first_name,
            last_name=last_name,
            is_active=True,
            session_generation=0,
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def set_password(self, user: User, password_hash: str) -> None:
        user.password_hash = password_hash
        self.db.commit()

    def set_active(self, user: User, is_active: bool) -> None:
        user.is_active = is_active
        self.db.commit()

    # ---------- session generation ----------
    def advance_session(self, user_id: int) -> int:
        """Start a new refresh-token generation; whichever commit lands last wins."""
        generation = self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(session_generation=User.session_generation + 1)
            .returning(User.session_generation)
        ).scalar_one()
        self.db.commit()
        return generation

    def rotate_session(self, user_id: int, expected: int) -> Optional[int]:
        """Advance the generation only if it still equals ``expected``.

        Returns the new generation, or None when the presented generation has
        been superseded (a later login/refresh, or a logout).
        """
        generation = self.db.execute(
            update(User)
            .where(User.id == user_id, User.session_generation == expected)
            .values(session_generation=User.session_generation + 1)
            .returning(User.session_generation)
        ).scalar_one_or_none()
        self.db.commit()
        return generation

    def revoke_sessions(self, user_id: int) -> None:
        self.advance_session(user_id)
        logger.info("Revoked refresh tokens for user id=%s", user_id)

    # ---------- students ----------
    def get_student(self, student_id: int) -> Optional[Student]:
        return self.db.get(Student, student_id)

    def get_student_by_code(self, student_code: str) -> Optional[Student]:
        return self.db.execute(select(Student).where(Student.student_code == student_code)).scalar_one_or_none()
