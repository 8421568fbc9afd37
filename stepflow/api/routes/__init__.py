"""
Routes package for the stepflow API.

This package contains the FastAPI routers for:
- runs: Run control endpoints (start, get, pause, resume, cancel, approvals)
"""

from .runs import router as runs_router

__all__ = ["runs_router"]
