from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

LOAN_COLLECTED = "collected"
LOAN_RETURNED = "returned"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive input is taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamps on every backend.

    Values are converted to UTC on the way in. SQLite keeps no offset, so
    naive values read back are tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return as_utc(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return as_utc(value)
        return None


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str
    is_admin: bool = False
    password_hash: str


class Item(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    name: str = Field(index=True)
    description: str = ""
    purpose: str = ""
    website: Optional[str] = None
    image: Optional[str] = None
    quantity: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    created_by: str = "Unknown"
    updated_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    updated_by: Optional[str] = None


class Loan(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    # No foreign key: loans outlive the items they reference.
    item_id: int = Field(index=True)
    item_name: str
    collect_quantity: int = Field(gt=0)

    borrower_name: str
    borrower_email: str = Field(index=True)
    borrower_phone: Optional[str] = None
    borrower_role: str = "student"  # student | teacher | other
    department: Optional[str] = None
    section: Optional[str] = None
    designation: Optional[str] = None
    registration_id: str = Field(index=True)

    return_date: datetime = Field(index=True, sa_type=UTCDateTime)
    collected_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    entry_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)
    status: str = Field(default=LOAN_COLLECTED, index=True)  # collected | returned
    returned_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class ActivityLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    actor_email: str = Field(index=True)
    action: str = Field(index=True)
    details: dict = Field(default_factory=dict, sa_column=Column(JSON))
    timestamp: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)
