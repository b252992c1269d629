from fastapi import HTTPException, status

from storyflow.services.errors import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

_STATUS_BY_ERROR: tuple[tuple[type[RepositoryError], int], ...] = (
    (RepositoryNotFoundError, status.HTTP_404_NOT_FOUND),
    (RepositoryConflictError, status.HTTP_409_CONFLICT),
    (RepositoryValidationError, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (RepositoryForbiddenError, status.HTTP_403_FORBIDDEN),
    (RepositoryUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error_for(exc: RepositoryError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
