#!/usr/bin/env python3
"""
IoTV Agent - runs on a smart TV (or simulates one)

This script:
1. Publishes a heartbeat every HEARTBEAT_INTERVAL seconds
2. Attaches electrical/temperature readings (mocked unless a meter is wired)
3. Listens for power and status commands from the server
"""

import json
import os
import random
import time
from datetime import datetime, timezone

import paho.mqtt.client as mqtt

# ==================== CONFIGURATION ====================
# Set via environment on the device

DEVICE_ID = os.getenv("IOTV_DEVICE_ID", "")  # id assigned when the TV was added
MQTT_BROKER = os.getenv("MQTT_BROKER", "localhost")
MQTT_PORT = int(os.getenv("MQTT_PORT", "1883"))
TOPIC_PREFIX = os.getenv("MQTT_TOPIC_PREFIX", "devices")

HEARTBEAT_INTERVAL = int(os.getenv("HEARTBEAT_INTERVAL", "60"))  # seconds

# ==================== MQTT TOPICS ====================
TOPIC_HEARTBEAT = f"{TOPIC_PREFIX}/{DEVICE_ID}/heartbeat"
TOPIC_COMMANDS = f"{TOPIC_PREFIX}/{DEVICE_ID}/commands"


# ==================== METER (mock for now) ====================

class PowerMeter:
    """Reads current/voltage/power and panel temperature."""

    def read(self, powered: bool) -> dict:
        if not powered:
            return {"current": 0.0, "voltage": 220.0 + random.uniform(-3, 3), "power": 0.5}

        voltage = 220.0 + random.uniform(-3, 3)
        power = 90.0 + random.uniform(0, 40)
        return {
            "current": round(power / voltage, 3),
            "voltage": round(voltage, 1),
            "power": round(power, 1),
            "temperature": round(35.0 + random.uniform(0, 8), 1),
        }


# ==================== DEVICE ====================

class TVAgent:
    """Main agent class."""

    def __init__(self):
        self.meter = PowerMeter()
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect

        self.status = "online"
        self.running = False
        self._send_now = False

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """Called when connected to MQTT broker."""
        print("✅ Connected to MQTT broker")
        client.subscribe(TOPIC_COMMANDS, qos=1)
        print(f"📡 Subscribed to: {TOPIC_COMMANDS}")
        self._send_now = True

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        """Called when disconnected from MQTT broker."""
        print(f"⚠️ Disconnected from MQTT broker: {reason_code}")

    def _on_message(self, client, userdata, msg):
        """Called when a command is received."""
        try:
            command = json.loads(msg.payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            print(f"❌ Bad command payload: {e}")
            return

        print(f"📩 Received on {msg.topic}: {command}")
        cmd = command.get("command")

        if cmd == "power" and command.get("status") in ("online", "offline"):
            self.status = command["status"]
            print(f"🔌 Power {'on' if self.status == 'online' else 'off'}")
            self._send_now = True

        elif cmd == "status":
            self._send_now = True

    def build_heartbeat(self) -> dict:
        return {
            "device_id": DEVICE_ID,
            "status": self.status,
            "sensor_data": self.meter.read(self.status == "online"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def _send_heartbeat(self):
        payload = self.build_heartbeat()
        self.client.publish(TOPIC_HEARTBEAT, json.dumps(payload), qos=1)
        print(f"💓 Sent: {payload['status']} {payload['sensor_data']}")

    def run(self):
        """Main run loop."""
        if not DEVICE_ID:
            print("❌ IOTV_DEVICE_ID is not set")
            return

        print("🚀 IoTV Agent Starting...")
        print(f"📺 Device ID: {DEVICE_ID}")
        print(f"📡 MQTT Broker: {MQTT_BROKER}:{MQTT_PORT}")

        try:
            self.client.connect(MQTT_BROKER, MQTT_PORT, 60)
        except OSError as e:
            print(f"❌ Failed to connect to MQTT: {e}")
            return

        self.client.loop_start()
        self.running = True
        last_beat = 0.0

        try:
            while self.running:
                now = time.time()
                if self._send_now or now - last_beat >= HEARTBEAT_INTERVAL:
                    self._send_now = False
                    self._send_heartbeat()
                    last_beat = now
                time.sleep(1)

        except KeyboardInterrupt:
            print("\n⏹️ Stopping...")
        finally:
            self.client.loop_stop()
            self.client.disconnect()
            print("👋 Goodbye!")


if __name__ == "__main__":
    TVAgent().run()
