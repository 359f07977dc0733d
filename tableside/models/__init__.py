"""
Models package initialization.

This module imports all models to ensure they are registered with SQLAlchemy.
"""

from tableside.models.base import Base
from tableside.models.device_session import DeviceSession

__all__ = ["Base", "DeviceSession"]
