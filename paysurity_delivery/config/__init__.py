"""Configuration package for delivery dispatch."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
