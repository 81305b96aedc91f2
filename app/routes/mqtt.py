from fastapi import APIRouter, Depends
from app.services.station import Station, get_station

router = APIRouter(prefix="/api/mqtt", tags=["MQTT"])

@router.get("/status")
async def get_mqtt_status(station: Station = Depends(get_station)):
    """Get MQTT scanner bridge connection status."""
    bridge = station.scanner_bridge
    if bridge is None:
        return {"enabled": False, "connected": False, "running": False}
    return {
        "enabled": True,
        "connected": bridge.is_connected,
        "running": bridge.is_running(),
        "commandTopic": bridge.command_topic,
    }
