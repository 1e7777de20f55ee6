"""
IoTV Monitor - MQTT Heartbeat Processor
Receives heartbeats from TVs and applies them to the device registry,
while the staleness sweeper demotes devices that went quiet
"""

import asyncio
import json
import logging
import signal
import threading
import time
from concurrent.futures import Future
from datetime import timedelta

import paho.mqtt.client as mqtt

from app.core.config import settings
from app.core.database import async_session_maker, create_tables
from app.core.errors import TransportError
from app.services.heartbeat import HeartbeatIngestor
from app.services.registry import SqlDeviceRegistry
from app.services.sweeper import StalenessSweeper

logger = logging.getLogger(__name__)


# Global reference to MQTT client for command push
_mqtt_client: mqtt.Client | None = None


def get_mqtt_client() -> mqtt.Client | None:
    """Get the global MQTT client instance."""
    return _mqtt_client


def publish_device_command(device_id: str, command: str, **params) -> bool:
    """
    Publish a command to a TV.
    Creates a temporary MQTT connection if no global client is available.

    Args:
        device_id: Device identifier
        command: Command name (e.g., "power", "status")
        **params: Extra command fields (e.g., status="offline")

    Returns:
        True if published successfully
    """
    topic = settings.commands_topic(device_id)
    payload = json.dumps({"command": command, **params})

    # Try global client first (inside the processor)
    client = get_mqtt_client()
    if client and client.is_connected():
        result = client.publish(topic, payload, qos=1)
        if result.rc == mqtt.MQTT_ERR_SUCCESS:
            logger.info(f"📤 Command sent to {device_id}: {command} {params}")
            return True
        logger.error(f"❌ Failed to send command to {device_id}: {result.rc}")
        return False

    # Create temporary connection (API runs in a separate process)
    try:
        temp_client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        temp_client.connect(settings.mqtt_broker, settings.mqtt_port, keepalive=10)
        temp_client.loop_start()

        # Wait for connection (max 1 second)
        for _ in range(10):
            if temp_client.is_connected():
                break
            time.sleep(0.1)

        if not temp_client.is_connected():
            logger.warning("⚠️ Could not connect to MQTT broker")
            temp_client.loop_stop()
            return False

        result = temp_client.publish(topic, payload, qos=1)
        result.wait_for_publish(timeout=5)

        temp_client.loop_stop()
        temp_client.disconnect()

        if result.rc == mqtt.MQTT_ERR_SUCCESS:
            logger.info(f"📤 Command sent to {device_id}: {command} {params} (via temp connection)")
            return True
        logger.error(f"❌ Failed to send command to {device_id}: {result.rc}")
        return False

    except (OSError, RuntimeError, ValueError) as e:
        logger.error(f"❌ MQTT error sending command to {device_id}: {e}")
        return False


class MQTTProcessor:
    """Feeds heartbeat messages from the broker into the ingestor."""

    def __init__(self, ingestor: HeartbeatIngestor):
        global _mqtt_client
        self.ingestor = ingestor
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect
        self.client.on_connect_fail = self._on_connect_fail
        self.client.reconnect_delay_set(min_delay=1, max_delay=60)
        self.running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        _mqtt_client = self.client

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """Called when connected to MQTT broker."""
        if reason_code.is_failure:
            logger.error(f"❌ MQTT connection refused: {reason_code}")
            return

        logger.info(f"✅ Connected to MQTT broker: {settings.mqtt_broker}:{settings.mqtt_port}")

        # Subscribe on every (re)connect, the broker may have dropped the session
        client.subscribe(settings.heartbeat_topic, qos=1)
        logger.info(f"📡 Subscribed to: {settings.heartbeat_topic}")

    def _on_connect_fail(self, client, userdata):
        """Called when the broker cannot be reached; paho retries with backoff."""
        logger.warning(
            f"⚠️ MQTT broker {settings.mqtt_broker}:{settings.mqtt_port} unreachable, retrying"
        )

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        """Called when disconnected from MQTT broker."""
        logger.warning(f"⚠️ Disconnected from MQTT broker: {reason_code}")

    def _on_message(self, client, userdata, msg):
        """Called from the paho network thread when a message is received."""
        if not self.running or self._loop is None:
            return

        future = asyncio.run_coroutine_threadsafe(
            self.ingestor.handle_message(msg.topic, msg.payload),
            self._loop,
        )
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future):
        with self._pending_lock:
            self._pending.discard(future)

    @property
    def in_flight(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    async def drain(self):
        """Wait until every scheduled heartbeat has been applied."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            logger.info(f"⏳ Waiting for {len(pending)} in-flight heartbeat(s)")
            await asyncio.gather(*(asyncio.wrap_future(f) for f in pending), return_exceptions=True)

    async def run(self):
        """Main run loop."""
        self._loop = asyncio.get_running_loop()
        self.running = True

        logger.info("🚀 Starting MQTT Processor...")
        logger.info(f"📡 Connecting to {settings.mqtt_broker}:{settings.mqtt_port}")

        # Connected by the network thread, which keeps retrying until the broker is up
        try:
            self.client.connect_async(settings.mqtt_broker, settings.mqtt_port, 60)
        except ValueError as e:
            self.running = False
            raise TransportError(f"Invalid MQTT broker address {settings.mqtt_broker}: {e}") from e

        # Start MQTT loop in background thread
        self.client.loop_start()

        # Keep running until stopped
        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            self.running = False
            self.client.unsubscribe(settings.heartbeat_topic)
            await self.drain()
            self.client.disconnect()
            self.client.loop_stop()
            logger.info("⏹️ MQTT Processor stopped")

    def stop(self):
        """Stop the processor."""
        self.running = False


async def main():
    """Entry point: heartbeat ingestion plus the staleness sweeper."""
    logging.basicConfig(level=settings.log_level)

    if settings.create_tables:
        await create_tables()

    registry = SqlDeviceRegistry(async_session_maker)
    ingestor = HeartbeatIngestor(
        registry,
        max_skew=timedelta(seconds=settings.max_clock_skew_seconds),
    )
    sweeper = StalenessSweeper(
        registry,
        period=settings.sweep_interval_seconds,
        grace_multiplier=settings.grace_multiplier,
    )
    processor = MQTTProcessor(ingestor)

    # Handle shutdown signals
    def signal_handler(sig, frame):
        logger.info("⏹️ Shutting down...")
        processor.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    await sweeper.start()
    try:
        await processor.run()
    finally:
        await sweeper.stop()


if __name__ == "__main__":
    asyncio.run(main())
