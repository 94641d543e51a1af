"""
HTTP API for Guarded Chat.
"""

from .server import create_app

__all__ = ["create_app"]
