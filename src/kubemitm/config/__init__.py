"""kubemitm configuration package.

Centralized configuration management using Pydantic Settings.
"""

from kubemitm.config.settings import Settings, get_settings

__all__: list[str] = ["Settings", "get_settings"]
