"""SportMatch client core.

Session, realtime and candidate-cache layer for the SportMatch API.
"""

from sportmatch.client import SportMatchClient
from sportmatch.settings import Settings, get_settings

__all__ = ["SportMatchClient", "Settings", "get_settings"]
