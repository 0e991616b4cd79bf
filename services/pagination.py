import math
from typing import Any, List, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from errors import InvalidArgumentError
from schemas import Page


def check_page(page: int, page_size: int) -> None:
    if page < 1:
        raise InvalidArgumentError("page must be 1 or greater", field="page")
    if page_size < 1:
        raise InvalidArgumentError("page_size must be 1 or greater", field="page_size")


def paginate(session: Session, statement, page: int, page_size: int) -> Tuple[List[Any], int]:
    """Run ``statement`` for one 1-based page; return (rows, total row count)."""
    check_page(page, page_size)
    total = session.exec(
        select(func.count()).select_from(statement.order_by(None).subquery())
    ).one()
    rows = session.exec(
        statement.offset((page - 1) * page_size).limit(page_size)
    ).all()
    return list(rows), total


def make_page(items: List[Any], page: int, page_size: int, total: int) -> Page:
    return Page(
        items=items,
        current_page=page,
        total_pages=math.ceil(total / page_size),
        total_items=total,
    )
