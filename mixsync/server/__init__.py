"""HTTP service exposing the change log."""

from .app import create_app

__all__ = ["create_app"]
