from fastapi import HTTPException, status
from app.services.platform_client import (
    MissingTokenError,
    PlatformError,
    PlatformNetworkError,
    PlatformNotFoundError,
)
from app.services.return_protocol import (
    AmbiguousReturnSubmitError,
    ReturnConnectionError,
    ReturnProtocolError,
    ReturnRejectedError,
    ReturnSequenceError,
    ReturnValidationError,
    StaleReturnResponseError,
)

def platform_http_error(exc: PlatformError) -> HTTPException:
    """Translate a platform client error into the response the station UI gets."""
    if isinstance(exc, MissingTokenError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.message)
    if isinstance(exc, PlatformNetworkError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)
    if isinstance(exc, PlatformNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
    if exc.status_code and 400 <= exc.status_code < 500:
        return HTTPException(status_code=exc.status_code, detail=exc.message)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message)

def return_http_error(exc: ReturnProtocolError) -> HTTPException:
    if isinstance(exc, ReturnValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, (ReturnSequenceError, StaleReturnResponseError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    if isinstance(exc, AmbiguousReturnSubmitError):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=exc.message)
    if isinstance(exc, ReturnConnectionError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)
    if isinstance(exc, ReturnRejectedError) and exc.status_code and 400 <= exc.status_code < 500:
        return HTTPException(status_code=exc.status_code, detail=exc.message)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message)
