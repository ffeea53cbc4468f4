"""Version information for the session tracker core."""

APP_VERSION = "2.1.0"

__all__ = ["APP_VERSION"]
