"""
Heartbeat Ingestor - applies device heartbeats to the registry

Delivery is at-least-once and may be duplicated or reordered, so every
event is checked against the stored last_heartbeat before it is applied.
"""

import json
import logging
from datetime import timedelta
from enum import Enum
from typing import Any

from pydantic import ValidationError

from app.core.errors import DeviceError, DeviceNotFound, InvalidDeviceInput, VersionConflict
from app.schemas.device import HeartbeatEvent
from app.services.registry import Clock, DeviceRegistry, utcnow

logger = logging.getLogger(__name__)


class IngestOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"  # older than or equal to the stored heartbeat
    FUTURE_TIMESTAMP = "future_timestamp"  # too far ahead of the receive time
    UNKNOWN_DEVICE = "unknown_device"
    MALFORMED = "malformed"
    CONFLICT = "conflict"  # kept losing races, gave up
    FAILED = "failed"


def topic_device_id(topic: str | None) -> str | None:
    """Extract the device id from '<prefix>/{device_id}/heartbeat'."""
    if not topic:
        return None
    parts = topic.split("/")
    if len(parts) != 3 or parts[2] != "heartbeat":
        return None
    return parts[1] or None


def parse_heartbeat(payload: bytes | str | dict[str, Any], topic: str | None = None) -> HeartbeatEvent:
    """
    Decode and validate a heartbeat payload.

    Raises:
        InvalidDeviceInput: bad JSON, missing device_id, invalid fields, or a
            device_id that does not match the topic it was published on
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode()
        except UnicodeDecodeError as e:
            raise InvalidDeviceInput(f"Payload is not UTF-8: {e}") from e

    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise InvalidDeviceInput(f"Payload is not JSON: {e}") from e

    if not isinstance(payload, dict):
        raise InvalidDeviceInput("Payload must be a JSON object")
    if not payload.get("device_id"):
        raise InvalidDeviceInput("Missing device_id")

    try:
        event = HeartbeatEvent.model_validate(payload)
    except ValidationError as e:
        raise InvalidDeviceInput(f"Invalid heartbeat: {e.errors()[0]['msg']}") from e

    expected_id = topic_device_id(topic)
    if expected_id is not None and expected_id != event.device_id:
        raise InvalidDeviceInput(
            f"device_id {event.device_id} does not match topic {topic}"
        )
    return event


class HeartbeatIngestor:
    """Applies heartbeat events to the device registry."""

    def __init__(
        self,
        registry: DeviceRegistry,
        clock: Clock = utcnow,
        max_attempts: int = 5,
        max_skew: timedelta = timedelta(minutes=5),
    ):
        self.registry = registry
        self.clock = clock
        self.max_attempts = max_attempts
        self.max_skew = max_skew

    async def ingest(self, event: HeartbeatEvent) -> IngestOutcome:
        """
        Apply one heartbeat.

        Unknown devices are never created. Events not newer than the stored
        last_heartbeat are no-ops, which makes replays idempotent. Sensor
        readings are merged over the previous snapshot field by field.
        Timestamps more than `max_skew` ahead of the receive time are rejected.
        """
        received_at = self.clock()
        timestamp = event.timestamp or received_at

        if timestamp > received_at + self.max_skew:
            logger.warning(
                f"⚠️ Heartbeat for {event.device_id} rejected: timestamp "
                f"{timestamp.isoformat()} is ahead of receive time {received_at.isoformat()}"
            )
            return IngestOutcome.FUTURE_TIMESTAMP

        for _ in range(self.max_attempts):
            try:
                device = await self.registry.get(event.device_id)
            except DeviceNotFound:
                logger.warning(f"⚠️ Heartbeat for unknown device {event.device_id} discarded")
                return IngestOutcome.UNKNOWN_DEVICE

            if device.last_heartbeat is not None and timestamp <= device.last_heartbeat:
                logger.debug(
                    f"Stale heartbeat for {device.id}: {timestamp.isoformat()} "
                    f"<= {device.last_heartbeat.isoformat()}"
                )
                return IngestOutcome.DUPLICATE

            changes: dict[str, Any] = {"status": event.status, "last_heartbeat": timestamp}
            if event.sensor_data is not None:
                changes["sensor_data"] = event.sensor_data.merged_over(device.sensor_data)

            try:
                await self.registry.apply(device.id, changes, device.version)
            except VersionConflict:
                # Re-read and re-check ordering against the fresher state
                continue
            except DeviceNotFound:
                logger.warning(f"⚠️ Device {event.device_id} deleted while applying heartbeat")
                return IngestOutcome.UNKNOWN_DEVICE

            logger.debug(f"💓 Heartbeat applied for {device.id}: {event.status}")
            return IngestOutcome.APPLIED

        logger.warning(
            f"⚠️ Heartbeat for {event.device_id} dropped after {self.max_attempts} conflicting writes"
        )
        return IngestOutcome.CONFLICT

    async def handle_message(self, topic: str | None, payload: bytes | str | dict[str, Any]) -> IngestOutcome:
        """Transport entry point. Never raises: one bad event must not stop the stream."""
        try:
            event = parse_heartbeat(payload, topic)
        except InvalidDeviceInput as e:
            logger.error(f"❌ Dropping malformed heartbeat on {topic}: {e.reason}")
            return IngestOutcome.MALFORMED

        try:
            return await self.ingest(event)
        except DeviceError as e:
            logger.error(f"❌ Failed to apply heartbeat for {event.device_id}: {e.reason}")
        except Exception:
            logger.exception(f"❌ Unexpected error applying heartbeat for {event.device_id}")
        return IngestOutcome.FAILED
