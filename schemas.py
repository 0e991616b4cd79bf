from datetime import datetime
from typing import Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: List[T]
    current_page: int
    total_pages: int
    total_items: int


class ItemCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    purpose: str = ""
    website: Optional[str] = None
    quantity: int


class ItemUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    purpose: Optional[str] = None
    website: Optional[str] = None
    # Direct stock correction; bypasses the loan ledger.
    quantity: Optional[int] = None

    def descriptive_fields(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude={"quantity"})


class ItemRead(BaseModel):
    id: int
    name: str
    description: str
    purpose: str
    website: Optional[str]
    image: Optional[str]
    quantity: int
    created_at: datetime
    created_by: str
    updated_at: Optional[datetime]
    updated_by: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class ItemDetail(ItemRead):
    outstanding_quantity: int


class BorrowerInfo(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    role: Literal["student", "teacher", "other"] = "student"
    department: Optional[str] = None
    section: Optional[str] = None
    designation: Optional[str] = None
    registration_id: str = Field(min_length=1)

    def loan_fields(self) -> dict:
        """Borrower columns for a loan record, trimmed to what the role carries."""
        fields = {
            "borrower_name": self.name,
            "borrower_email": str(self.email),
            "borrower_phone": self.phone,
            "borrower_role": self.role,
            "department": self.department,
            "section": self.section,
            "designation": self.designation,
            "registration_id": self.registration_id,
        }
        if self.role == "student":
            fields["designation"] = None
        elif self.role == "teacher":
            fields["section"] = None
        return fields


class BorrowerIdentity(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    registration_id: Optional[str] = None


class CollectRequest(BaseModel):
    quantity: int
    borrower: BorrowerInfo
    return_date: datetime


class ReturnRequest(BaseModel):
    quantity: Optional[int] = None
    borrower: BorrowerIdentity = Field(default_factory=BorrowerIdentity)


class LoanRead(BaseModel):
    id: int
    item_id: int
    item_name: str
    collect_quantity: int
    borrower_name: str
    borrower_email: str
    borrower_phone: Optional[str]
    borrower_role: str
    department: Optional[str]
    section: Optional[str]
    designation: Optional[str]
    registration_id: str
    return_date: datetime
    collected_at: datetime
    entry_at: datetime
    status: str
    returned_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class LoanHistoryRead(LoanRead):
    item_image: Optional[str] = None
    item_description: Optional[str] = None


class OverdueLoanRead(LoanRead):
    item_image: Optional[str] = None
    item_deleted: bool = False


class MostBorrowed(BaseModel):
    item_name: str
    count: int


class StatsRead(BaseModel):
    total_items: int
    total_collected: int
    total_returned: int
    active_loans: int
    most_borrowed: List[MostBorrowed]
    recent_activities: List[LoanRead]


class ActivityRead(BaseModel):
    id: int
    actor_email: str
    action: str
    details: dict
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class UserCreate(BaseModel):
    email: EmailStr
    name: str
    password: str = Field(min_length=8)


class UserRead(BaseModel):
    id: int
    email: EmailStr
    name: str
    is_admin: bool

    model_config = ConfigDict(from_attributes=True)


class LoginData(BaseModel):
    email: EmailStr
    password: str
