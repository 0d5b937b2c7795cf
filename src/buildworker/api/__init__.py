"""HTTP request surface for the build worker."""

from .app import SIGNATURE_HEADER, create_app
from .auth import ApiCredentials

__all__ = ["SIGNATURE_HEADER", "ApiCredentials", "create_app"]
