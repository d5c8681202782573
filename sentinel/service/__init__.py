"""FastAPI integration for Sentinel Access."""

from .dependencies import client_info_from_request, require_access
from .main import create_app
from .middleware import TrafficLoggingMiddleware

__all__ = ["client_info_from_request", "require_access", "create_app", "TrafficLoggingMiddleware"]
