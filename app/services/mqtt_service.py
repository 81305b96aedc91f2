import json
import logging
import threading
import ssl
from pathlib import Path
from typing import Callable, Optional
import paho.mqtt.client as mqtt
from app.config import Settings, settings as default_settings
from app.services.scan_coordinator import ScannerDevice

logger = logging.getLogger(__name__)

ScanHandler = Callable[[str], None]


class MQTTService(ScannerDevice):
    """MQTT bridge to a fixed QR scanner device.

    The device publishes decoded payloads on "<station>/Scan" and listens for
    START, STOP, TORCH ON, TORCH OFF and BEEP on "<station>/Command".
    """

    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or default_settings
        self.client: Optional[mqtt.Client] = None
        self.is_connected = False
        self._lock = threading.Lock()
        self._scan_handler: Optional[ScanHandler] = None

    def attach(self, scan_handler: ScanHandler):
        """Route decoded payloads to `scan_handler` (called on the MQTT network thread)."""
        self._scan_handler = scan_handler

    @property
    def command_topic(self) -> str:
        return self.settings.mqtt_command_topic_format.format(station_id=self.settings.scanner_station_id)

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        """Callback when MQTT client connects to broker."""
        if not reason_code.is_failure:
            self.is_connected = True
            logger.info(f"MQTT client connected to {self.settings.mqtt_broker}:{self.settings.mqtt_port}")
            client.subscribe(self.settings.mqtt_scan_topic, qos=1)
            logger.info(f"Subscribed to {self.settings.mqtt_scan_topic}")
        else:
            logger.error(f"MQTT connection failed with code {reason_code}")
            self.is_connected = False

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        """Callback when MQTT client disconnects from broker."""
        self.is_connected = False
        if reason_code.is_failure:
            logger.warning(f"MQTT client disconnected unexpectedly (rc={reason_code})")
        else:
            logger.info("MQTT client disconnected")

    def on_message(self, client, userdata, msg):
        """Callback when a message is received on subscribed topic."""
        try:
            topic = msg.topic
            payload = msg.payload.decode('utf-8')
            logger.info(f"Received message on topic {topic}: {payload}")

            if topic.endswith("/Scan"):
                self._handle_scan(topic, payload)
        except Exception as e:
            logger.error(f"Error processing MQTT message: {e}", exc_info=True)

    def _handle_scan(self, topic: str, payload: str):
        """Handle a decoded QR payload from the scanner device."""
        station_id = topic[:-len("/Scan")]
        if station_id != self.settings.scanner_station_id:
            logger.debug(f"Ignoring scan from station {station_id}")
            return

        # Device sends either the raw string or {"Scan": "..."} / {"data": "..."}
        data = payload
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            data = parsed.get("Scan") or parsed.get("data") or ""
        elif isinstance(parsed, str):
            data = parsed

        if self._scan_handler is None:
            logger.warning(f"Scan from {station_id} dropped: no coordinator attached")
            return
        self._scan_handler(str(data))

    def send_command(self, command: str) -> bool:
        """Publish a command to the scanner device."""
        if self.client and self.is_connected:
            result = self.client.publish(self.command_topic, command, qos=1)
            if result.rc == mqtt.MQTT_ERR_SUCCESS:
                logger.debug(f"{command} sent to {self.command_topic}")
                return True
            logger.error(f"Failed to send {command} to {self.command_topic}: rc={result.rc}")
            return False
        logger.error(f"MQTT client not connected, cannot send {command}")
        return False

    # ScannerDevice hooks

    def has_permission(self) -> bool:
        return self.is_running()

    def start_scanning(self):
        self.send_command("START")

    def stop_scanning(self):
        self.send_command("STOP")

    def set_torch(self, on: bool):
        self.send_command("TORCH ON" if on else "TORCH OFF")

    def feedback(self):
        self.send_command("BEEP")

    def _setup_tls(self):
        """Configure TLS/SSL for MQTT client."""
        if not self.settings.mqtt_use_tls:
            return

        try:
            context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)

            if self.settings.mqtt_ca_cert:
                ca_cert_path = Path(self.settings.mqtt_ca_cert)
                if not ca_cert_path.exists():
                    logger.error(f"CA certificate file not found: {ca_cert_path}")
                    raise FileNotFoundError(f"CA certificate file not found: {ca_cert_path}")
                context.load_verify_locations(cafile=str(ca_cert_path))
                logger.info(f"Loaded CA certificate from {ca_cert_path}")
            else:
                context.load_default_certs()
                logger.info("Using system default CA certificates")

            # Client certificate and key for mutual TLS
            if self.settings.mqtt_client_cert and self.settings.mqtt_client_key:
                client_cert_path = Path(self.settings.mqtt_client_cert)
                client_key_path = Path(self.settings.mqtt_client_key)
                for path in (client_cert_path, client_key_path):
                    if not path.exists():
                        logger.error(f"TLS file not found: {path}")
                        raise FileNotFoundError(f"TLS file not found: {path}")
                context.load_cert_chain(certfile=str(client_cert_path), keyfile=str(client_key_path))
                logger.info(f"Loaded client certificate from {client_cert_path}")

            if self.settings.mqtt_tls_insecure:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
                logger.warning("TLS insecure mode enabled - certificate verification disabled")
            else:
                context.check_hostname = True
                context.verify_mode = ssl.CERT_REQUIRED

            self.client.tls_set_context(context)
            logger.info("TLS/SSL configured for MQTT connection")

        except Exception as e:
            logger.error(f"Error setting up TLS for MQTT: {e}", exc_info=True)
            raise

    def connect(self):
        """Connect to MQTT broker with optional TLS/SSL support."""
        try:
            with self._lock:
                if self.client and self.is_connected:
                    logger.info("MQTT client already connected")
                    return

                client_id = f"scan-station-{self.settings.scanner_station_id}-{threading.current_thread().ident}"
                self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)

                self.client.on_connect = self.on_connect
                self.client.on_disconnect = self.on_disconnect
                self.client.on_message = self.on_message

                if self.settings.mqtt_use_tls:
                    self._setup_tls()
                    if self.settings.mqtt_port == 1883:
                        logger.warning("TLS enabled but port is 1883. Consider using port 8883 for MQTT over TLS.")

                if self.settings.mqtt_username and self.settings.mqtt_password:
                    self.client.username_pw_set(self.settings.mqtt_username, self.settings.mqtt_password)

                protocol = "TLS" if self.settings.mqtt_use_tls else "TCP"
                logger.info(f"Connecting to MQTT broker at {self.settings.mqtt_broker}:{self.settings.mqtt_port} over {protocol}")
                try:
                    self.client.connect(self.settings.mqtt_broker, self.settings.mqtt_port, keepalive=60)
                    # Network loop runs in its own thread and reconnects on its own
                    self.client.loop_start()
                    logger.info("MQTT client connection initiated (will connect when broker is available)")
                except Exception as conn_error:
                    logger.warning(f"Initial MQTT connection failed: {conn_error}. The service will retry automatically.")
                    self.client.loop_start()

        except Exception as e:
            logger.error(f"Error setting up MQTT client: {e}", exc_info=True)
            self.is_connected = False

    def disconnect(self):
        """Disconnect from MQTT broker."""
        try:
            with self._lock:
                if self.client:
                    self.client.loop_stop()
                    self.client.disconnect()
                    self.is_connected = False
                    logger.info("MQTT client disconnected")
        except Exception as e:
            logger.error(f"Error disconnecting from MQTT broker: {e}", exc_info=True)

    def is_running(self) -> bool:
        """Check if MQTT service is running and connected."""
        return self.is_connected and self.client is not None
