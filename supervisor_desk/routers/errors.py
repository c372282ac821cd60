from fastapi import HTTPException

from supervisor_desk.core.exceptions import (
    DependencyError,
    DuplicateSessionError,
    InvalidStateError,
    NotFoundError,
    SupervisorDeskError,
    ValidationError,
)

STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    InvalidStateError: 409,
    DuplicateSessionError: 409,
    DependencyError: 503,
}


def to_http_error(error: SupervisorDeskError) -> HTTPException:
    """Map a domain error onto the HTTP status the client should see"""
    for error_type, status_code in STATUS_CODES.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
