"""HTTP interface for Study Shelf."""

from .server import create_app

__all__ = ["create_app"]
