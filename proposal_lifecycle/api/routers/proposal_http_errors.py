from typing import NoReturn

from fastapi import HTTPException, status

from proposal_lifecycle.core.common.errors import (
    ProposalConflictError,
    ProposalInvalidStateError,
    ProposalNotFoundError,
    ProposalValidationError,
)

HTTP_422_UNPROCESSABLE = getattr(
    status,
    "HTTP_422_UNPROCESSABLE_CONTENT",
    status.HTTP_422_UNPROCESSABLE_ENTITY,
)


def raise_proposal_http_exception(exc: Exception) -> NoReturn:
    """Map domain errors onto 404 / 409 / 422. Anything else propagates to the 500 handler."""
    if isinstance(exc, ProposalNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ProposalConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, (ProposalInvalidStateError, ProposalValidationError)):
        raise HTTPException(
            status_code=HTTP_422_UNPROCESSABLE,
            detail=str(exc),
        ) from exc
    raise exc
