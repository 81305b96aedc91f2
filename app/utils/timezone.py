from datetime import datetime
import pytz
from app.config import settings

LOCAL_TZ = pytz.timezone(settings.local_timezone)

def now_local() -> datetime:
    """Get current datetime in the station's local timezone."""
    return datetime.now(LOCAL_TZ)

def as_aware(value: datetime) -> datetime:
    """Treat naive datetimes coming from the platform as UTC."""
    if value.tzinfo is None:
        return pytz.utc.localize(value)
    return value
