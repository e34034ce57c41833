"""API package exports."""

from evofit_auth.api.middleware import CorrelationIdMiddleware
from evofit_auth.api.routes import router

__all__ = ["router", "CorrelationIdMiddleware"]
