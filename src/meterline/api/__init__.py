"""
Meterline API Module
"""

from .server import app, configure, create_app

__all__ = ["app", "configure", "create_app"]
