"""The only write path for item quantities and loan status.

Each operation runs inside one database transaction: the quantity change and
the loan insert/transition it is paired with commit together or not at all.
Transient store failures roll the attempt back and retry with backoff.
Activity is reported after commit and can never undo the operation.
"""
import logging
import time
from datetime import datetime
from typing import Annotated, Callable, Optional, TypeVar

from fastapi import Depends, Request, UploadFile
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from errors import (
    AlreadyReturnedError,
    ConflictError,
    InsufficientQuantityError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    OutstandingLoansError,
)
from models import LOAN_COLLECTED, Item, Loan, as_utc, utcnow
from schemas import BorrowerIdentity, BorrowerInfo, ItemCreate, ItemUpdate
from services import activity as actions
from services.activity import ActivityRecorder
from services.ledger import ItemLedger
from services.registry import LoanRegistry
from services.uploads import ImageStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

BORROWER_KEYS = ("name", "email", "registration_id")


def _positive_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidArgumentError(f"{field} must be a positive integer", field=field)
    return value


def _same_borrower(loan: Loan, borrower: BorrowerIdentity) -> bool:
    return (
        loan.borrower_email.lower() == borrower.email.strip().lower()
        and loan.registration_id == borrower.registration_id.strip()
    )


class AccountingService:
    def __init__(
        self,
        engine: Engine,
        activity: ActivityRecorder,
        images: ImageStore,
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
    ) -> None:
        self.engine = engine
        self.activity = activity
        self.images = images
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff

    def close(self) -> None:
        self.engine.dispose()

    def _transaction(self, operation: str, work: Callable[[Session], T]) -> T:
        delay = self.retry_backoff
        for attempt in range(1, self.retry_attempts + 1):
            with Session(self.engine, expire_on_commit=False) as session:
                try:
                    result = work(session)
                    session.commit()
                    return result
                except OperationalError as exc:
                    session.rollback()
                    if attempt == self.retry_attempts:
                        logger.error(
                            "%s failed after %d attempts: %s", operation, attempt, exc
                        )
                        raise InternalError(
                            f"Store unavailable during {operation}"
                        ) from exc
                    logger.warning(
                        "%s attempt %d failed, retrying in %.2fs: %s",
                        operation,
                        attempt,
                        delay,
                        exc,
                    )
            time.sleep(delay)
            delay *= 2
        raise InternalError(f"Store unavailable during {operation}")

    # -- items -------------------------------------------------------------

    def create_item(self, item_in: ItemCreate, actor: str) -> Item:
        item = self._transaction(
            "create_item", lambda session: ItemLedger(session).create(item_in, actor)
        )
        logger.info("Item %s (%s) added with quantity %d", item.id, item.name, item.quantity)
        self.activity.record(
            actor,
            actions.ADD_ITEM,
            {"item_id": item.id, "item_name": item.name, "quantity": item.quantity},
        )
        return item

    def update_item(self, item_id: int, changes: ItemUpdate, actor: str) -> Item:
        before = {}

        def work(session: Session) -> Item:
            ledger = ItemLedger(session)
            current = ledger.get(item_id)
            before.update(name=current.name, quantity=current.quantity)
            item = ledger.update_descriptive(item_id, changes.descriptive_fields(), actor)
            if changes.quantity is not None:
                item = ledger.set_quantity(item_id, changes.quantity, actor)
            return item

        item = self._transaction("update_item", work)
        logger.info("Item %s updated", item.id)
        self.activity.record(
            actor,
            actions.UPDATE_ITEM,
            {
                "item_id": item.id,
                "item_name": item.name,
                "changes": {
                    "old_quantity": before["quantity"],
                    "new_quantity": item.quantity,
                    "old_name": before["name"],
                    "new_name": item.name,
                },
            },
        )
        return item

    def replace_image(self, item_id: int, upload: UploadFile, actor: str) -> Item:
        reference = self.images.save(upload)

        def work(session: Session):
            ledger = ItemLedger(session)
            previous = ledger.set_image(item_id, reference, actor)
            return ledger.get(item_id), previous

        try:
            item, previous = self._transaction("replace_image", work)
        except Exception:
            self.images.delete(reference)
            raise

        self.images.delete(previous)
        self.activity.record(
            actor,
            actions.UPDATE_ITEM_IMAGE,
            {"item_id": item.id, "item_name": item.name, "image": reference},
        )
        return item

    def delete_item(self, item_id: int, actor: str) -> Item:
        def work(session: Session) -> Item:
            ledger = ItemLedger(session)
            ledger.get(item_id)
            outstanding = LoanRegistry(session).outstanding_quantity(item_id)
            if outstanding > 0:
                raise OutstandingLoansError(item_id, outstanding)
            return ledger.delete(item_id)

        item = self._transaction("delete_item", work)
        self.images.delete(item.image)
        logger.info("Item %s (%s) deleted", item_id, item.name)
        self.activity.record(
            actor,
            actions.DELETE_ITEM,
            {"item_id": item_id, "item_name": item.name, "quantity": item.quantity},
        )
        return item

    # -- loans -------------------------------------------------------------

    def collect(
        self,
        item_id: int,
        quantity: int,
        borrower: BorrowerInfo,
        return_date: datetime,
        actor: str,
    ) -> Loan:
        """Take ``quantity`` units of an item and open a loan for them."""
        _positive_int(quantity, "quantity")
        if return_date is None:
            raise InvalidArgumentError("return_date is required", field="return_date")
        due = as_utc(return_date)

        def work(session: Session) -> Loan:
            ledger = ItemLedger(session)
            item = ledger.get(item_id)
            if quantity > item.quantity:
                raise InsufficientQuantityError(item_id, quantity, item.quantity)
            try:
                item = ledger.adjust_quantity(item_id, -quantity)
            except InsufficientQuantityError as exc:
                # Stock was taken between the read above and the update.
                raise ConflictError(
                    "Item stock changed during collection, try again",
                    field="quantity",
                    resource_id=item_id,
                ) from exc
            return LoanRegistry(session).create(item, quantity, borrower, due, now=utcnow())

        loan = self._transaction("collect", work)
        logger.info(
            "Loan %s: %d x item %s collected by %s",
            loan.id,
            loan.collect_quantity,
            loan.item_id,
            loan.borrower_email,
        )
        self.activity.record(
            actor,
            actions.COLLECT_ITEM,
            {
                "loan_id": loan.id,
                "item_id": loan.item_id,
                "item_name": loan.item_name,
                "quantity": loan.collect_quantity,
                "borrower_email": loan.borrower_email,
                "return_date": loan.return_date.isoformat(),
            },
        )
        return loan

    def return_loan(
        self,
        borrower: BorrowerIdentity,
        actor: str,
        loan_id: Optional[int] = None,
        item_id: Optional[int] = None,
        quantity: Optional[int] = None,
    ) -> Loan:
        """Close an open loan and put its units back in stock.

        Pass ``loan_id`` whenever it is known. Without it the loan is matched
        on item and borrower attributes, which fails with ConflictError when
        the borrower holds more than one open loan for the item.
        """
        for key in BORROWER_KEYS:
            if not (getattr(borrower, key) or "").strip():
                raise InvalidArgumentError(
                    "Missing required user information", field=f"borrower.{key}"
                )
        if loan_id is None and item_id is None:
            raise InvalidArgumentError("loan_id or item_id is required", field="loan_id")
        if quantity is not None:
            _positive_int(quantity, "quantity")

        def work(session: Session) -> Loan:
            registry = LoanRegistry(session)
            if loan_id is not None:
                loan = registry.get(loan_id)
                if (item_id is not None and loan.item_id != item_id) or not _same_borrower(
                    loan, borrower
                ):
                    raise NotFoundError(
                        "No matching collection record found", resource_id=loan_id
                    )
            else:
                logger.warning(
                    "Return for item %s matched by borrower %s instead of loan id",
                    item_id,
                    borrower.email,
                )
                loan = registry.find_open_loan(
                    item_id,
                    borrower.name.strip(),
                    borrower.email.strip(),
                    borrower.registration_id.strip(),
                )

            if loan.status != LOAN_COLLECTED:
                raise AlreadyReturnedError(loan.id)
            if quantity is not None and quantity != loan.collect_quantity:
                raise InvalidArgumentError(
                    f"quantity must equal the {loan.collect_quantity} unit(s) collected",
                    field="quantity",
                    resource_id=loan.id,
                )

            loan = registry.mark_returned(loan.id, now=utcnow())
            ItemLedger(session).adjust_quantity(loan.item_id, loan.collect_quantity)
            return loan

        loan = self._transaction("return", work)
        logger.info(
            "Loan %s: %d x item %s returned by %s",
            loan.id,
            loan.collect_quantity,
            loan.item_id,
            loan.borrower_email,
        )
        self.activity.record(
            actor,
            actions.RETURN_ITEM,
            {
                "loan_id": loan.id,
                "item_id": loan.item_id,
                "item_name": loan.item_name,
                "quantity": loan.collect_quantity,
                "borrower_email": loan.borrower_email,
            },
        )
        return loan


def get_accounting(request: Request) -> AccountingService:
    return request.app.state.accounting


AccountingDep = Annotated[AccountingService, Depends(get_accounting)]
