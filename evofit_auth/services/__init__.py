"""Services package exports."""

from evofit_auth.services.identity_store import IdentityStore
from evofit_auth.services.logging_service import configure_logging, get_logger
from evofit_auth.services.session_authority import SessionAuthority

__all__ = [
    "IdentityStore",
    "SessionAuthority",
    "configure_logging",
    "get_logger",
]
