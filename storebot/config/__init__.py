"""Configuration package for the store bot engine."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
