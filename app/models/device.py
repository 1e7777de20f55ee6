"""
Device model - represents a smart TV tracked by the dashboard
"""

from datetime import datetime
from sqlalchemy import String, DateTime, Integer, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class Device(Base):
    """Smart TV reporting heartbeats over MQTT."""

    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    location: Mapped[str] = mapped_column(String(100))
    model: Mapped[str] = mapped_column(String(100))

    # MAC or IP label, informational only
    network_address: Mapped[str | None] = mapped_column(String(45), nullable=True)

    # Status ("online" / "offline"), indexed for the staleness sweep
    status: Mapped[str] = mapped_column(String(10), default="offline", index=True)
    last_heartbeat: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    heartbeat_interval: Mapped[int] = mapped_column(Integer, default=60)  # seconds

    # Latest sensor snapshot: current, voltage, power, temperature
    sensor_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Ordering token for compare-and-set writes
    version: Mapped[int] = mapped_column(Integer, default=1)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<Device {self.id} ({self.name}, {self.status})>"
