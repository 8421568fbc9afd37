"""
stepflow API - FastAPI REST surface over the pipeline runner.

Run Control Endpoints (from routes/runs.py):
    POST   /api/runs                                  - Start a run from a pipeline payload
    GET    /api/runs                                  - List runs
    GET    /api/runs/{id}                             - Get run state (ETag)
    GET    /api/runs/{id}/events                      - Get run events
    POST   /api/runs/{id}/pause                       - Pause run
    POST   /api/runs/{id}/resume                      - Resume run
    DELETE /api/runs/{id}                             - Cancel run
    POST   /api/runs/{id}/approvals/{approval_id}     - Resolve a manual approval

Usage:
    from stepflow.api import create_app
    app = create_app()
"""

from .server import create_app

__all__ = ["create_app"]
