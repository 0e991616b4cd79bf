from typing import Optional

from fastapi import APIRouter, Query

from db import SessionDep
from schemas import (
    LoanHistoryRead,
    LoanRead,
    OverdueLoanRead,
    Page,
    ReturnRequest,
    StatsRead,
)
from services.accounting import AccountingDep
from services.registry import LoanRegistry
from services.reporter import Reporter
from .auth import CurrentUserDep

router = APIRouter(tags=["loans"])


@router.get("/", response_model=Page[LoanHistoryRead])
def list_loans(
    session: SessionDep,
    search: str = "",
    status: Optional[str] = Query(default=None, pattern="^(collected|returned)$"),
    overdue: bool = False,
    page: int = 1,
    page_size: int = 10,
):
    """
    Loan history, newest first. ``search`` matches item name, borrower
    name, email or registration id.
    """
    return Reporter(session).loan_history(
        page, page_size, search=search, status=status, overdue=overdue
    )


@router.get("/stats", response_model=StatsRead)
def loan_stats(session: SessionDep):
    return Reporter(session).stats()


@router.get("/overdue", response_model=Page[OverdueLoanRead])
def overdue_loans(session: SessionDep, page: int = 1, page_size: int = 10):
    """
    Open loans past their return date, most overdue first.
    """
    return Reporter(session).overdue_loans(page, page_size)


@router.get("/borrower/{email}", response_model=Page[LoanHistoryRead])
def borrower_loans(email: str, session: SessionDep, page: int = 1, page_size: int = 10):
    return Reporter(session).borrower_history(email, page, page_size)


@router.get("/{loan_id}", response_model=LoanRead)
def get_loan(loan_id: int, session: SessionDep):
    return LoanRegistry(session).get(loan_id)


@router.post("/{loan_id}/return", response_model=LoanRead)
def return_loan(
    loan_id: int,
    request_data: ReturnRequest,
    accounting: AccountingDep,
    current: CurrentUserDep,
):
    return accounting.return_loan(
        request_data.borrower,
        actor=current.email,
        loan_id=loan_id,
        quantity=request_data.quantity,
    )
