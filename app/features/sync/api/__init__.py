"""
HTTP routes for the sync feature.
"""

from .router import jobs_router, router

__all__ = ["jobs_router", "router"]
