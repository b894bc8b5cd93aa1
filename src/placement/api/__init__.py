"""HTTP surface of the placement engine."""

from .app_factory import create_application
from .routes import create_app

__all__ = ["create_app", "create_application"]
