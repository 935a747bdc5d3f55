"""API envelope helpers - every JSON response has the shape {data, error}"""

from typing import Any, Optional

from fastapi import HTTPException


class ApiError(HTTPException):
    """HTTPException carrying a machine readable error code"""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        headers: Optional[dict[str, str]] = None,
    ):
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.code = code
        self.message = message


def ok(data: Any = None) -> dict:
    return {"data": data, "error": None}


def error_body(code: str, message: Any) -> dict:
    return {"data": None, "error": {"code": code, "message": message}}


# Default codes for plain HTTPExceptions raised by dependencies
STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}
