"""Error kinds raised by the accounting core.

Each error carries a machine-readable ``code``, the HTTP status it maps to
and, where one applies, the offending field or resource id. ``retryable``
tells the caller whether repeating the same request can succeed.
"""
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class AccountingError(Exception):
    code = "error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        resource_id: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.resource_id = resource_id

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "code": self.code,
            "field": self.field,
            "resource_id": self.resource_id,
            "retryable": self.retryable,
        }


class NotFoundError(AccountingError):
    code = "not_found"
    status_code = 404


class InvalidArgumentError(AccountingError):
    code = "invalid_argument"
    status_code = 400


class InsufficientQuantityError(AccountingError):
    code = "insufficient_quantity"
    status_code = 400

    def __init__(self, item_id: int, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient quantity available: requested {requested}, "
            f"{available} left",
            field="quantity",
            resource_id=item_id,
        )
        self.requested = requested
        self.available = available


class AlreadyReturnedError(AccountingError):
    code = "already_returned"
    status_code = 409

    def __init__(self, loan_id: int) -> None:
        super().__init__("Loan has already been returned", resource_id=loan_id)


class ConflictError(AccountingError):
    code = "conflict"
    status_code = 409
    retryable = True


class OutstandingLoansError(ConflictError):
    code = "outstanding_loans"
    retryable = False

    def __init__(self, item_id: int, outstanding: int) -> None:
        super().__init__(
            f"Cannot delete item with {outstanding} unit(s) still on loan",
            resource_id=item_id,
        )
        self.outstanding = outstanding


class InternalError(AccountingError):
    code = "internal"
    status_code = 503
    retryable = True


async def accounting_error_handler(request: Request, exc: AccountingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AccountingError, accounting_error_handler)
