"""HTTP surface for orderflow."""
from orderflow.api.app import create_app

__all__ = ["create_app"]
