from enum import Enum
from typing import List, TYPE_CHECKING
from uuid import UUID

from sqlmodel import Field, Relationship

from academy_billing.models.base import TimestampedModel, UUIDModel

if TYPE_CHECKING:  # pragma: no cover
    from academy_billing.models.billing import PaymentMethod


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"


class Academy(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "academies"

    name: str = Field(index=True)
    slug: str = Field(unique=True, index=True)
    timezone: str | None = Field(default=None, max_length=64)
    is_active: bool = Field(default=True)
    quiet_hours_start: str | None = Field(default=None, max_length=5)  # "21:00"
    quiet_hours_end: str | None = Field(default=None, max_length=5)  # "08:00"

    users: List["User"] = Relationship(back_populates="academy")


class User(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "users"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    name: str
    email: str | None = Field(default=None, index=True)
    phone: str | None = Field(default=None, max_length=32)
    role: str = Field(default=UserRole.STUDENT.value)
    is_active: bool = Field(default=True)

    academy: Academy = Relationship(back_populates="users")
    payment_methods: List["PaymentMethod"] = Relationship(back_populates="student")
