from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlmodel import Session, col, select

from models import LOAN_COLLECTED, LOAN_RETURNED, Item, Loan, utcnow
from schemas import (
    LoanHistoryRead,
    LoanRead,
    MostBorrowed,
    OverdueLoanRead,
    Page,
    StatsRead,
)
from services.ledger import ItemLedger
from services.registry import LoanRegistry

MOST_BORROWED_LIMIT = 5
RECENT_ACTIVITY_LIMIT = 5


class Reporter:
    """Read-only views over items and loans for dashboards."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.ledger = ItemLedger(session)
        self.registry = LoanRegistry(session)

    def _items_for(self, loans: Iterable[Loan]) -> Dict[int, Item]:
        ids = {loan.item_id for loan in loans}
        if not ids:
            return {}
        items = self.session.exec(select(Item).where(col(Item.id).in_(ids))).all()
        return {item.id: item for item in items}

    def most_borrowed(self, limit: int = MOST_BORROWED_LIMIT) -> List[MostBorrowed]:
        """Loan counts per item name, highest first; ties keep first-borrowed order."""
        loan_count = func.count(Loan.id)
        rows = self.session.exec(
            select(Loan.item_name, loan_count)
            .group_by(Loan.item_name)
            .order_by(loan_count.desc(), func.min(Loan.id))
            .limit(limit)
        ).all()
        return [MostBorrowed(item_name=name, count=count) for name, count in rows]

    def recent_activities(self, limit: int = RECENT_ACTIVITY_LIMIT) -> List[LoanRead]:
        loans = self.session.exec(
            select(Loan).order_by(col(Loan.entry_at).desc(), col(Loan.id).desc()).limit(limit)
        ).all()
        return [LoanRead.model_validate(loan) for loan in loans]

    def stats(self) -> StatsRead:
        total_collected = self.registry.count_by_status(LOAN_COLLECTED)
        return StatsRead(
            total_items=self.ledger.count(),
            total_collected=total_collected,
            total_returned=self.registry.count_by_status(LOAN_RETURNED),
            active_loans=total_collected,
            most_borrowed=self.most_borrowed(),
            recent_activities=self.recent_activities(),
        )

    def overdue_loans(self, page: int, page_size: int, now: Optional[datetime] = None) -> Page:
        result = self.registry.list_overdue(page, page_size, now=now or utcnow())
        items = self._items_for(result.items)

        entries = []
        for loan in result.items:
            entry = OverdueLoanRead.model_validate(loan)
            item = items.get(loan.item_id)
            if item is None:
                entry.item_deleted = True
            else:
                entry.item_name = item.name
                entry.item_image = item.image
            entries.append(entry)
        result.items = entries
        return result

    def loan_history(
        self,
        page: int,
        page_size: int,
        search: str = "",
        status: Optional[str] = None,
        overdue: bool = False,
    ) -> Page:
        result = self.registry.list(
            page, page_size, search=search, status=status, overdue=overdue, now=utcnow()
        )
        result.items = self._with_item_details(result.items, description=False)
        return result

    def borrower_history(self, email: str, page: int, page_size: int) -> Page:
        result = self.registry.list_by_borrower(email, page, page_size)
        result.items = self._with_item_details(result.items, description=True)
        return result

    def _with_item_details(self, loans: List[Loan], description: bool) -> List[LoanHistoryRead]:
        items = self._items_for(loans)
        entries = []
        for loan in loans:
            entry = LoanHistoryRead.model_validate(loan)
            item = items.get(loan.item_id)
            if item is not None:
                entry.item_image = item.image
                if description:
                    entry.item_description = item.description
            entries.append(entry)
        return entries
