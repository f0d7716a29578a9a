from dataclasses import dataclass
from typing import Union

from driving_school.models import Role


@dataclass(frozen=True)
class StaffPrincipal:
    id: int
    email: str
    role: Role


@dataclass(frozen=True)
class ViewerPrincipal:
    """Read-only access to a single student's records."""

    student_id: int
    role: Role = Role.VIEWER


Principal = Union[StaffPrincipal, ViewerPrincipal]
