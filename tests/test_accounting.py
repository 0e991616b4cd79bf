from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from errors import (
    AlreadyReturnedError,
    ConflictError,
    InsufficientQuantityError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    OutstandingLoansError,
)
from models import LOAN_COLLECTED, LOAN_RETURNED, ActivityLog, Item, Loan
from schemas import BorrowerIdentity, ItemCreate, ItemUpdate
from services.accounting import AccountingService
from services.activity import ActivityRecorder
from services.ledger import ItemLedger
from services.registry import LoanRegistry
from services.uploads import ImageStore

ACTOR = "desk@example.com"


def open_loans(engine, item_id):
    with Session(engine) as session:
        return session.exec(
            select(Loan).where(Loan.item_id == item_id, Loan.status == LOAN_COLLECTED)
        ).all()


def all_loans(engine):
    with Session(engine) as session:
        return session.exec(select(Loan)).all()


def test_oscilloscope_scenario(accounting, make_item, stock, student, student_identity, next_week):
    item = make_item("Oscilloscope", 5)

    loan = accounting.collect(item.id, 2, student, next_week, actor=ACTOR)
    assert stock(item.id) == 3
    assert loan.status == LOAN_COLLECTED

    with pytest.raises(InsufficientQuantityError) as excinfo:
        accounting.collect(item.id, 4, student, next_week, actor=ACTOR)
    assert excinfo.value.available == 3
    assert stock(item.id) == 3

    returned = accounting.return_loan(student_identity, actor=ACTOR, loan_id=loan.id, quantity=2)
    assert stock(item.id) == 5
    assert returned.status == LOAN_RETURNED
    assert returned.returned_at is not None


def test_collect_then_return_restores_quantity(
    accounting, make_item, stock, engine, student, student_identity, next_week
):
    item = make_item("Signal generator", 7)

    loan = accounting.collect(item.id, 3, student, next_week, actor=ACTOR)
    accounting.return_loan(student_identity, actor=ACTOR, loan_id=loan.id, quantity=3)

    assert stock(item.id) == 7
    loans = all_loans(engine)
    assert len(loans) == 1
    assert loans[0].status == LOAN_RETURNED


def test_accounting_invariant_holds_through_sequence(
    accounting, make_item, stock, engine, student, teacher, student_identity, next_week
):
    item = make_item("Power supply", 10)
    teacher_identity = BorrowerIdentity(
        name=teacher.name, email=str(teacher.email), registration_id=teacher.registration_id
    )

    def check():
        outstanding = sum(loan.collect_quantity for loan in open_loans(engine, item.id))
        assert stock(item.id) + outstanding == 10

    first = accounting.collect(item.id, 3, student, next_week, actor=ACTOR)
    check()
    second = accounting.collect(item.id, 4, teacher, next_week, actor=ACTOR)
    check()
    accounting.return_loan(student_identity, actor=ACTOR, loan_id=first.id)
    check()
    with pytest.raises(InsufficientQuantityError):
        accounting.collect(item.id, 7, student, next_week, actor=ACTOR)
    check()
    accounting.collect(item.id, 6, student, next_week, actor=ACTOR)
    check()
    accounting.return_loan(teacher_identity, actor=ACTOR, loan_id=second.id)
    check()
    assert stock(item.id) == 4


def test_collect_validates_before_mutating(accounting, make_item, stock, engine, student, next_week):
    item = make_item("Oscilloscope", 5)

    for bad in (0, -2, True):
        with pytest.raises(InvalidArgumentError) as excinfo:
            accounting.collect(item.id, bad, student, next_week, actor=ACTOR)
        assert excinfo.value.field == "quantity"

    with pytest.raises(InvalidArgumentError):
        accounting.collect(item.id, 1, student, None, actor=ACTOR)

    assert stock(item.id) == 5
    assert all_loans(engine) == []


def test_collect_missing_item(accounting, student, next_week):
    with pytest.raises(NotFoundError):
        accounting.collect(999, 1, student, next_week, actor=ACTOR)


def test_collect_normalizes_return_date_to_utc(accounting, make_item, engine, student):
    item = make_item("Oscilloscope", 5)
    due = datetime(2030, 1, 10, 12, 0, tzinfo=timezone(timedelta(hours=6)))

    loan = accounting.collect(item.id, 1, student, due, actor=ACTOR)

    assert loan.return_date == datetime(2030, 1, 10, 6, 0, tzinfo=timezone.utc)
    with Session(engine) as fresh:
        stored = fresh.get(Loan, loan.id)
    assert stored.return_date == datetime(2030, 1, 10, 6, 0, tzinfo=timezone.utc)
    assert stored.return_date.utcoffset() == timedelta(0)


def test_collect_takes_naive_return_date_as_utc(accounting, make_item, engine, student):
    item = make_item("Oscilloscope", 5)

    loan = accounting.collect(item.id, 1, student, datetime(2030, 1, 10, 6, 0), actor=ACTOR)

    with Session(engine) as fresh:
        stored = fresh.get(Loan, loan.id)
    assert stored.return_date == datetime(2030, 1, 10, 6, 0, tzinfo=timezone.utc)
    assert loan.return_date == stored.return_date


def test_double_return_does_not_double_increment(
    accounting, make_item, stock, student, student_identity, next_week
):
    item = make_item("Oscilloscope", 5)
    loan = accounting.collect(item.id, 2, student, next_week, actor=ACTOR)
    accounting.return_loan(student_identity, actor=ACTOR, loan_id=loan.id)

    with pytest.raises(AlreadyReturnedError):
        accounting.return_loan(student_identity, actor=ACTOR, loan_id=loan.id)

    assert stock(item.id) == 5


@pytest.mark.parametrize("missing", ["name", "email", "registration_id"])
def test_return_requires_borrower_identity(
    accounting, make_item, stock, student, student_identity, next_week, missing
):
    item = make_item("Oscilloscope", 5)
    loan = accounting.collect(item.id, 2, student, next_week, actor=ACTOR)
    identity = student_identity.model_copy(update={missing: "  "})

    with pytest.raises(InvalidArgumentError) as excinfo:
        accounting.return_loan(identity, actor=ACTOR, loan_id=loan.id)

    assert excinfo.value.field == f"borrower.{missing}"
    assert stock(item.id) == 3


def test_return_requires_a_loan_or_item(accounting, student_identity):
    with pytest.raises(InvalidArgumentError) as excinfo:
        accounting.return_loan(student_identity, actor=ACTOR)
    assert excinfo.value.field == "loan_id"


def test_return_quantity_must_match_loan(
    accounting, make_item, stock, student, student_identity, next_week
):
    item = make_item("Oscilloscope", 5)
    loan = accounting.collect(item.id, 3, student, next_week, actor=ACTOR)

    with pytest.raises(InvalidArgumentError) as excinfo:
        accounting.return_loan(student_identity, actor=ACTOR, loan_id=loan.id, quantity=1)

    assert excinfo.value.field == "quantity"
    assert stock(item.id) == 2


def test_return_by_id_checks_borrower(accounting, make_item, stock, student, next_week):
    item = make_item("Oscilloscope", 5)
    loan = accounting.collect(item.id, 1, student, next_week, actor=ACTOR)
    stranger = BorrowerIdentity(name="Someone", email="someone@example.com", registration_id="2021-001")

    with pytest.raises(NotFoundError):
        accounting.return_loan(stranger, actor=ACTOR, loan_id=loan.id)
    with pytest.raises(NotFoundError):
        accounting.return_loan(stranger, actor=ACTOR, loan_id=loan.id + 50)

    assert stock(item.id) == 4


def test_return_by_id_rejects_other_item(
    accounting, make_item, student, student_identity, next_week
):
    scope = make_item("Oscilloscope", 5)
    meter = make_item("Multimeter", 5)
    loan = accounting.collect(scope.id, 1, student, next_week, actor=ACTOR)

    with pytest.raises(NotFoundError):
        accounting.return_loan(student_identity, actor=ACTOR, loan_id=loan.id, item_id=meter.id)


def test_return_by_borrower_match(accounting, make_item, stock, student, student_identity, next_week):
    item = make_item("Oscilloscope", 5)
    loan = accounting.collect(item.id, 2, student, next_week, actor=ACTOR)

    returned = accounting.return_loan(student_identity, actor=ACTOR, item_id=item.id, quantity=2)

    assert returned.id == loan.id
    assert stock(item.id) == 5


def test_return_by_borrower_match_is_ambiguous(
    accounting, make_item, stock, engine, student, student_identity, next_week
):
    item = make_item("Oscilloscope", 5)
    accounting.collect(item.id, 1, student, next_week, actor=ACTOR)
    accounting.collect(item.id, 2, student, next_week, actor=ACTOR)

    with pytest.raises(ConflictError):
        accounting.return_loan(student_identity, actor=ACTOR, item_id=item.id)

    assert stock(item.id) == 2
    assert len(open_loans(engine, item.id)) == 2


def test_return_by_borrower_match_without_open_loan(accounting, make_item, student_identity):
    item = make_item("Oscilloscope", 5)

    with pytest.raises(NotFoundError):
        accounting.return_loan(student_identity, actor=ACTOR, item_id=item.id)


def test_update_item_edits_fields_and_quantity(accounting, make_item, stock):
    item = make_item("Oscilloscope", 5, description="Two channel")

    updated = accounting.update_item(
        item.id, ItemUpdate(name="Scope", quantity=8), actor=ACTOR
    )

    assert updated.name == "Scope"
    assert updated.description == "Two channel"
    assert updated.updated_by == ACTOR
    assert stock(item.id) == 8


def test_update_item_rejects_negative_quantity(accounting, make_item, stock):
    item = make_item("Oscilloscope", 5)

    with pytest.raises(InvalidArgumentError):
        accounting.update_item(item.id, ItemUpdate(name="Scope", quantity=-1), actor=ACTOR)

    with Session(accounting.engine) as session:
        assert session.get(Item, item.id).name == "Oscilloscope"
    assert stock(item.id) == 5


def test_delete_refused_while_on_loan(
    accounting, make_item, engine, student, student_identity, next_week
):
    item = make_item("Oscilloscope", 5)
    loan = accounting.collect(item.id, 2, student, next_week, actor=ACTOR)

    with pytest.raises(OutstandingLoansError) as excinfo:
        accounting.delete_item(item.id, actor=ACTOR)
    assert excinfo.value.outstanding == 2

    accounting.return_loan(student_identity, actor=ACTOR, loan_id=loan.id)
    accounting.delete_item(item.id, actor=ACTOR)

    with Session(engine) as session:
        assert session.get(Item, item.id) is None
        # Loan history survives the item.
        assert session.get(Loan, loan.id).item_name == "Oscilloscope"


def test_delete_missing_item(accounting):
    with pytest.raises(NotFoundError):
        accounting.delete_item(1, actor=ACTOR)


def test_mutations_are_logged(accounting, make_item, engine, student, student_identity, next_week):
    item = make_item("Oscilloscope", 5)
    loan = accounting.collect(item.id, 2, student, next_week, actor=ACTOR)
    accounting.return_loan(student_identity, actor=ACTOR, loan_id=loan.id)
    accounting.delete_item(item.id, actor="admin@example.com")

    with Session(engine) as session:
        logs = session.exec(select(ActivityLog).order_by(ActivityLog.id)).all()

    assert [log.action for log in logs] == ["ADD_ITEM", "COLLECT_ITEM", "RETURN_ITEM", "DELETE_ITEM"]
    assert logs[1].actor_email == ACTOR
    assert logs[1].details["quantity"] == 2
    assert logs[1].details["loan_id"] == loan.id


def test_activity_failure_does_not_fail_collect(engine, settings, make_item, stock, student, next_week, tmp_path):
    broken = ActivityRecorder(create_engine(f"sqlite:///{tmp_path}/missing/dir/log.db"))
    service = AccountingService(engine, broken, ImageStore(settings.upload_dir), retry_backoff=0)
    item = make_item("Oscilloscope", 5)

    loan = service.collect(item.id, 1, student, next_week, actor=ACTOR)

    assert loan.id is not None
    assert stock(item.id) == 4


def test_transient_store_failure_is_retried(
    accounting, make_item, stock, engine, student, next_week, monkeypatch
):
    item = make_item("Oscilloscope", 5)
    real_create = LoanRegistry.create
    failures = []

    def flaky_create(self, *args, **kwargs):
        if not failures:
            failures.append(1)
            raise OperationalError("INSERT INTO loan", {}, Exception("database is locked"))
        return real_create(self, *args, **kwargs)

    monkeypatch.setattr(LoanRegistry, "create", flaky_create)

    accounting.collect(item.id, 2, student, next_week, actor=ACTOR)

    assert failures == [1]
    assert stock(item.id) == 3
    assert len(all_loans(engine)) == 1


def test_failed_loan_write_rolls_back_quantity(
    accounting, make_item, stock, engine, student, next_week, monkeypatch
):
    item = make_item("Oscilloscope", 5)

    def broken_create(self, *args, **kwargs):
        raise OperationalError("INSERT INTO loan", {}, Exception("disk I/O error"))

    monkeypatch.setattr(LoanRegistry, "create", broken_create)

    with pytest.raises(InternalError) as excinfo:
        accounting.collect(item.id, 2, student, next_week, actor=ACTOR)

    assert excinfo.value.retryable
    assert stock(item.id) == 5
    assert all_loans(engine) == []


def test_stock_taken_between_read_and_write_is_a_conflict(
    file_engine, file_accounting, student, next_week, monkeypatch
):
    item = file_accounting.create_item(ItemCreate(name="Oscilloscope", quantity=1), actor=ACTOR)
    real_adjust = ItemLedger.adjust_quantity

    def adjust_after_someone_else(self, item_id, delta):
        with Session(file_engine) as other:
            other.exec(update(Item).where(Item.id == item_id).values(quantity=0))
            other.commit()
        return real_adjust(self, item_id, delta)

    monkeypatch.setattr(ItemLedger, "adjust_quantity", adjust_after_someone_else)

    with pytest.raises(ConflictError) as excinfo:
        file_accounting.collect(item.id, 1, student, next_week, actor=ACTOR)

    assert excinfo.value.retryable
    assert all_loans(file_engine) == []
