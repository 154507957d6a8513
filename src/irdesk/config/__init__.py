"""Configuration package."""

from irdesk.config.settings import Settings

settings = Settings()

__all__ = ["Settings", "settings"]
