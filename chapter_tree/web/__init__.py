"""HTTP adapter for the chapter tree engine."""

from .server import create_app

__all__ = ["create_app"]
