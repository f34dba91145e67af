"""HTTP surface (FastAPI)."""

from authkit.api.app import create_app

__all__ = ["create_app"]
