"""HTTP boundary for the metered provider gateway."""

from .app import create_app
from .services import GatewayServices, build_services
from .settings import Settings, get_settings, load_env

__all__ = [
    "GatewayServices",
    "Settings",
    "build_services",
    "create_app",
    "get_settings",
    "load_env",
]
