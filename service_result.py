"""
Service result type shared by the order, delivery, ledger and auto-payment services.

Services report domain outcomes (not found, wrong party, illegal transition...)
through a ServiceResult instead of raising, so both HTTP routes and the
background scheduler can branch on the outcome.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    UNAUTHORIZED = 'UNAUTHORIZED'
    INVALID_TRANSITION = 'INVALID_TRANSITION'
    INVALID_STATUS = 'INVALID_STATUS'
    INVALID_STATE = 'INVALID_STATE'
    NOT_FOUND = 'NOT_FOUND'
    PRECONDITION_FAILED = 'PRECONDITION_FAILED'
    INSUFFICIENT_FUNDS = 'INSUFFICIENT_FUNDS'
    STORAGE_FAILURE = 'STORAGE_FAILURE'
    SETTLEMENT_CONFLICT = 'SETTLEMENT_CONFLICT'
    VALIDATION_ERROR = 'VALIDATION_ERROR'


# HTTP status code returned by the API for each error kind
HTTP_STATUS = {
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.INVALID_STATUS: 400,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PRECONDITION_FAILED: 409,
    ErrorKind.INSUFFICIENT_FUNDS: 402,
    ErrorKind.STORAGE_FAILURE: 502,
    ErrorKind.SETTLEMENT_CONFLICT: 409,
    ErrorKind.VALIDATION_ERROR: 400,
}


@dataclass
class ServiceResult:
    """Outcome of a service call: either a value or an error kind with a message"""
    value: Any = None
    error: Optional[ErrorKind] = None
    message: str = ''

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value=None, message=''):
        return cls(value=value, message=message)

    @classmethod
    def failure(cls, error: ErrorKind, message: str):
        return cls(error=error, message=message)

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        return HTTP_STATUS.get(self.error, 400)

    def to_dict(self):
        if self.ok:
            return {'status': 'success', 'data': self.value}
        return {'status': 'error', 'error': self.error.value, 'message': self.message}
