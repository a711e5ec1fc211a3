"""Configuration package for the gateway."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
