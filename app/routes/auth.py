from fastapi import APIRouter, Depends, HTTPException, status
from app.services.auth import get_bearer_token
from app.services.platform_client import PlatformError
from app.services.station import Station, get_station
from app.routes.errors import platform_http_error

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

@router.put("/token", status_code=status.HTTP_204_NO_CONTENT)
async def hand_over_token(
    token: str = Depends(get_bearer_token),
    station: Station = Depends(get_station)
):
    """Give the station the business access token from the Authorization header."""
    station.token_store.set_token(token)

@router.delete("/token", status_code=status.HTTP_204_NO_CONTENT)
async def clear_token(station: Station = Depends(get_station)):
    """Forget the business access token (logout on the station)."""
    station.token_store.clear()

@router.get("/me")
async def get_business_profile(station: Station = Depends(get_station)):
    """Get the profile of the business the station is working for."""
    if not station.token_store.has_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No business is logged in on this station"
        )
    try:
        return await station.client.get_business_profile()
    except PlatformError as e:
        raise platform_http_error(e)
