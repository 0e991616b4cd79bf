from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, update
from sqlmodel import Session, col, select

from errors import AlreadyReturnedError, ConflictError, NotFoundError
from models import LOAN_COLLECTED, LOAN_RETURNED, Item, Loan, utcnow
from schemas import BorrowerInfo, Page
from services.pagination import make_page, paginate


class LoanRegistry:
    """Loan store. Loans are only ever inserted or moved from collected to returned."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, loan_id: int) -> Loan:
        loan = self.session.get(Loan, loan_id)
        if loan is None:
            raise NotFoundError("Loan not found", resource_id=loan_id)
        return loan

    def create(
        self,
        item: Item,
        quantity: int,
        borrower: BorrowerInfo,
        return_date: datetime,
        now: Optional[datetime] = None,
    ) -> Loan:
        now = now or utcnow()
        loan = Loan(
            item_id=item.id,
            item_name=item.name,
            collect_quantity=quantity,
            return_date=return_date,
            collected_at=now,
            entry_at=now,
            status=LOAN_COLLECTED,
            returned_at=None,
            **borrower.loan_fields(),
        )
        self.session.add(loan)
        self.session.flush()
        return loan

    def find_open_loan(
        self,
        item_id: int,
        borrower_name: str,
        borrower_email: str,
        registration_id: str,
    ) -> Loan:
        """Match an open loan by borrower attributes instead of loan id.

        More than one match is ambiguous and raises ConflictError.
        """
        matches = self.session.exec(
            select(Loan).where(
                Loan.item_id == item_id,
                Loan.borrower_name == borrower_name,
                func.lower(Loan.borrower_email) == borrower_email.lower(),
                Loan.registration_id == registration_id,
                Loan.status == LOAN_COLLECTED,
            ).limit(2)
        ).all()

        if not matches:
            raise NotFoundError("No matching collection record found", resource_id=item_id)
        if len(matches) > 1:
            raise ConflictError(
                "Borrower has several open loans for this item; return by loan id",
                field="loan_id",
                resource_id=item_id,
            )
        return matches[0]

    def mark_returned(self, loan_id: int, now: Optional[datetime] = None) -> Loan:
        """Move a loan from collected to returned, at most once."""
        result = self.session.exec(
            update(Loan)
            .where(col(Loan.id) == loan_id, col(Loan.status) == LOAN_COLLECTED)
            .values(status=LOAN_RETURNED, returned_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.get(loan_id)
            raise AlreadyReturnedError(loan_id)

        return self.session.get(Loan, loan_id, populate_existing=True)

    def outstanding_quantity(self, item_id: int) -> int:
        total = self.session.exec(
            select(func.coalesce(func.sum(Loan.collect_quantity), 0)).where(
                Loan.item_id == item_id,
                Loan.status == LOAN_COLLECTED,
            )
        ).one()
        return int(total)

    def count_by_status(self, status: str) -> int:
        return self.session.exec(
            select(func.count()).select_from(Loan).where(Loan.status == status)
        ).one()

    def list(
        self,
        page: int,
        page_size: int,
        search: str = "",
        status: Optional[str] = None,
        overdue: bool = False,
        now: Optional[datetime] = None,
    ) -> Page:
        query = select(Loan)
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(
                    col(Loan.item_name).ilike(pattern),
                    col(Loan.borrower_name).ilike(pattern),
                    col(Loan.borrower_email).ilike(pattern),
                    col(Loan.registration_id).ilike(pattern),
                )
            )
        if status:
            query = query.where(Loan.status == status)
        if overdue:
            query = query.where(
                Loan.status == LOAN_COLLECTED,
                col(Loan.return_date) < (now or utcnow()),
            )
        query = query.order_by(col(Loan.entry_at).desc(), col(Loan.id).desc())

        loans, total = paginate(self.session, query, page, page_size)
        return make_page(loans, page, page_size, total)

    def list_by_borrower(self, email: str, page: int, page_size: int) -> Page:
        query = (
            select(Loan)
            .where(func.lower(Loan.borrower_email) == email.lower())
            .order_by(col(Loan.entry_at).desc(), col(Loan.id).desc())
        )
        loans, total = paginate(self.session, query, page, page_size)
        return make_page(loans, page, page_size, total)

    def list_overdue(self, page: int, page_size: int, now: Optional[datetime] = None) -> Page:
        """Open loans past their return date, most overdue first."""
        query = (
            select(Loan)
            .where(
                Loan.status == LOAN_COLLECTED,
                col(Loan.return_date) < (now or utcnow()),
            )
            .order_by(col(Loan.return_date).asc(), col(Loan.id).asc())
        )
        loans, total = paginate(self.session, query, page, page_size)
        return make_page(loans, page, page_size, total)
