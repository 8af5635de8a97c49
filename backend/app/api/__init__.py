"""API package exports."""
from . import routes_admin, routes_auth, routes_chat

__all__ = [
    "routes_admin",
    "routes_auth",
    "routes_chat",
]
