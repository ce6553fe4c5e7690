from __future__ import annotations

from typing import Any, Dict


class ErrorKind:
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    BACKEND_UNAVAILABLE = "backend_unavailable"


_HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.BACKEND_UNAVAILABLE: 503,
}


class CardsError(Exception):
    kind = ErrorKind.BACKEND_UNAVAILABLE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self.kind, 500)


class NotFoundError(CardsError):
    kind = ErrorKind.NOT_FOUND


class InvalidInputError(CardsError):
    kind = ErrorKind.INVALID_INPUT


class BackendUnavailableError(CardsError):
    kind = ErrorKind.BACKEND_UNAVAILABLE


def ok(**payload: Any) -> Dict[str, Any]:
    return {"success": True, **payload}


def fail(message: str, kind: str = ErrorKind.BACKEND_UNAVAILABLE) -> Dict[str, Any]:
    return {"success": False, "error": message, "errorKind": kind}
