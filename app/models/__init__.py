# Database models
from app.models.device import Device

__all__ = ["Device"]
