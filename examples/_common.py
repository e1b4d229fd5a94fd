"""
Shared helpers for relaycore examples.

Handles settings, logging and the token check so each example can focus
on its specific workflow.
"""

import sys

from relaycore.config import settings
from relaycore.log import configure_logging
from relaycore.service import RealtimeService


def require_token() -> str:
    """Exit with a hint when no bearer token is configured."""
    if not settings.access_token:
        print("ERROR: No access token configured.")
        print("Set one with:  export RELAYCORE_ACCESS_TOKEN=<jwt>")
        sys.exit(1)
    return settings.access_token


def create_service() -> RealtimeService:
    """Configure logging, check the token, and build a RealtimeService."""
    configure_logging(settings.log_level, settings.log_format)
    require_token()
    print(f"  Hub:      {settings.hub_url}")
    print(f"  Attempts: {settings.reconnect_max_attempts} (cap {settings.reconnect_cap_delay_ms} ms)")
    return RealtimeService.from_settings(settings)
