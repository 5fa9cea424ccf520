"""
Analytics HTTP routes.

The tracking router is public; the admin router requires a bearer token.
"""

from .admin import create_admin_router
from .track import create_tracking_router

__all__ = ["create_admin_router", "create_tracking_router"]
