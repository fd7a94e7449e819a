"""Tagged service errors.

Every error raised by the service layer carries an explicit ``kind`` so the
HTTP boundary can pick a status code without inspecting message text. The
classes subclass ``ValueError`` so callers that only care about "bad input"
can keep catching that.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    validation = "validation"
    not_found = "not_found"
    unauthorized = "unauthorized"
    forbidden = "forbidden"
    conflict = "conflict"


class AutopayErrorCode(str, Enum):
    insufficient_funds = "INSUFFICIENT_FUNDS"
    account_not_found = "ACCOUNT_NOT_FOUND"
    bill_not_found = "BILL_NOT_FOUND"
    instance_not_found = "INSTANCE_NOT_FOUND"
    already_paid = "ALREADY_PAID"
    invalid_configuration = "INVALID_CONFIGURATION"
    zero_amount = "ZERO_AMOUNT"
    system_error = "SYSTEM_ERROR"


class BillsError(ValueError):
    kind: ErrorKind = ErrorKind.validation

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        code: Optional[AutopayErrorCode] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.code = code


class InvalidRequestError(BillsError):
    kind = ErrorKind.validation


class NotFoundError(BillsError):
    kind = ErrorKind.not_found


class ConflictError(BillsError):
    kind = ErrorKind.conflict


class UnauthorizedError(BillsError):
    kind = ErrorKind.unauthorized


class ForbiddenError(BillsError):
    kind = ErrorKind.forbidden


class AlreadyPaidError(ConflictError):
    def __init__(self, message: str = "Occurrence is already fully paid") -> None:
        super().__init__(message, code=AutopayErrorCode.already_paid)


HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.validation: 400,
    ErrorKind.unauthorized: 401,
    ErrorKind.forbidden: 403,
    ErrorKind.not_found: 404,
    ErrorKind.conflict: 409,
}


def http_status_for(error: BillsError) -> int:
    return HTTP_STATUS_BY_KIND.get(error.kind, 500)
