"""API routers."""
from .auth import router as auth_router
from .notifications import router as notifications_router
from .devices import router as devices_router

__all__ = ["auth_router", "notifications_router", "devices_router"]
