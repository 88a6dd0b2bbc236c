"""API package."""
from income_verification.api.override_routes import override_router
from income_verification.api.routes import api_router

__all__ = ["api_router", "override_router"]
