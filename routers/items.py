from fastapi import APIRouter, File, Response, UploadFile

from db import SessionDep
from schemas import (
    CollectRequest,
    ItemCreate,
    ItemDetail,
    ItemRead,
    ItemUpdate,
    LoanRead,
    Page,
    ReturnRequest,
)
from services.accounting import AccountingDep
from services.ledger import ItemLedger
from services.registry import LoanRegistry
from .auth import AdminDep, CurrentUserDep

router = APIRouter(tags=["items"])


@router.get("/", response_model=Page[ItemRead])
def list_items(
    session: SessionDep,
    search: str = "",
    page: int = 1,
    page_size: int = 9,
):
    """
    List items, newest first, optionally filtered by a search over
    name, description and purpose.
    """
    return ItemLedger(session).search(search, page, page_size)


@router.get("/{item_id}", response_model=ItemDetail)
def get_item(item_id: int, session: SessionDep):
    """
    Get a single item by ID, with the quantity currently out on loan.
    """
    item = ItemLedger(session).get(item_id)
    outstanding = LoanRegistry(session).outstanding_quantity(item_id)
    return ItemDetail(
        **ItemRead.model_validate(item).model_dump(),
        outstanding_quantity=outstanding,
    )


@router.post("/", response_model=ItemRead, status_code=201)
def create_item(item_in: ItemCreate, accounting: AccountingDep, current: AdminDep):
    return accounting.create_item(item_in, actor=current.email)


@router.put("/{item_id}", response_model=ItemRead)
def update_item(
    item_id: int,
    changes: ItemUpdate,
    accounting: AccountingDep,
    current: AdminDep,
):
    """
    Edit descriptive fields. A ``quantity`` here overwrites available stock
    directly, outside the loan ledger.
    """
    return accounting.update_item(item_id, changes, actor=current.email)


@router.put("/{item_id}/image", response_model=ItemRead)
def replace_item_image(
    item_id: int,
    accounting: AccountingDep,
    current: AdminDep,
    image: UploadFile = File(...),
):
    return accounting.replace_image(item_id, image, actor=current.email)


@router.delete("/{item_id}", status_code=204)
def delete_item(item_id: int, accounting: AccountingDep, current: AdminDep):
    # Refused while any unit of the item is still on loan.
    accounting.delete_item(item_id, actor=current.email)
    return Response(status_code=204)


@router.post("/{item_id}/collect", response_model=LoanRead, status_code=201)
def collect_item(
    item_id: int,
    request_data: CollectRequest,
    accounting: AccountingDep,
    current: CurrentUserDep,
):
    return accounting.collect(
        item_id,
        request_data.quantity,
        request_data.borrower,
        request_data.return_date,
        actor=current.email,
    )


@router.post("/{item_id}/return", response_model=LoanRead)
def return_item(
    item_id: int,
    request_data: ReturnRequest,
    accounting: AccountingDep,
    current: CurrentUserDep,
):
    """
    Return by item and borrower details. Prefer POST /loans/{loan_id}/return;
    this form fails with a conflict when the borrower has several open loans
    for the item.
    """
    return accounting.return_loan(
        request_data.borrower,
        actor=current.email,
        item_id=item_id,
        quantity=request_data.quantity,
    )
