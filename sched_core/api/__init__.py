"""
Admin API for schedCore.

Usage:
    from sched_core.api import create_app
    app = create_app(runtime)
"""

from .app import create_app

__all__ = ["create_app"]
