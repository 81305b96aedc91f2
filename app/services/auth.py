import logging
from typing import Optional
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

logger = logging.getLogger(__name__)

# HTTP Bearer token - auto_error=False so we can handle errors ourselves
security = HTTPBearer(auto_error=False)

def token_preview(token: Optional[str]) -> str:
    """Short, non-secret form of a token for logs."""
    if not token:
        return "None"
    return f"***{token[-8:]}"

class TokenStore:
    """Holds the business access token used for platform calls.

    Passed to PlatformClient as its token provider; the station UI hands the
    token over after the business logs in, or it comes from settings.
    """

    def __init__(self, token: Optional[str] = None):
        self._token = token or None

    async def __call__(self) -> Optional[str]:
        return self._token

    @property
    def has_token(self) -> bool:
        return self._token is not None

    def set_token(self, token: str):
        self._token = token
        logger.info(f"Business access token updated ({token_preview(token)})")

    def clear(self):
        self._token = None
        logger.info("Business access token cleared")

def get_bearer_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """Extract the bearer token a client sends when handing over its login."""
    if credentials is None or not credentials.credentials:
        auth_header = request.headers.get("Authorization")
        if auth_header:
            logger.warning(f"Authorization header present but invalid format: {auth_header[:20]}")
        else:
            logger.warning("Authorization header missing")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Please provide a valid Authorization header with Bearer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials
