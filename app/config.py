from pydantic_settings import BaseSettings
from typing import Optional
from pathlib import Path

# Get the project directory (parent of app directory)
BACKEND_DIR = Path(__file__).parent.parent
ENV_FILE = BACKEND_DIR / ".env"

class Settings(BaseSettings):
    # Server settings
    host: str = "0.0.0.0"
    port: int = 3000

    # Platform API settings
    platform_api_base_url: str = "http://localhost:8000"
    platform_request_timeout: float = 30.0  # seconds, covers face image uploads
    platform_profile_timeout: float = 60.0
    profile_fetch_retries: int = 2
    profile_retry_backoff_seconds: float = 2.0
    history_page_size: int = 1000

    # Business access token handed to the station (confidential - from .env)
    business_access_token: Optional[str] = None

    # QR payloads: "<scheme>://item/<serial>"; any scheme is accepted when unset
    deep_link_scheme: Optional[str] = None

    local_timezone: str = "Asia/Ho_Chi_Minh"

    # MQTT settings for the fixed scanner device
    mqtt_enabled: bool = True
    mqtt_broker: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_scan_topic: str = "+/Scan"
    mqtt_command_topic_format: str = "{station_id}/Command"
    scanner_station_id: str = "ScanStation01"

    # MQTT TLS/SSL settings
    mqtt_use_tls: bool = False
    mqtt_tls_insecure: bool = False  # Allow insecure TLS (self-signed certs)
    mqtt_ca_cert: Optional[str] = None
    mqtt_client_cert: Optional[str] = None  # optional, for mutual TLS
    mqtt_client_key: Optional[str] = None

    class Config:
        env_file = str(ENV_FILE) if ENV_FILE.exists() else ".env"
        case_sensitive = False

settings = Settings()
