"""
Health check endpoint.

GET /health returns {"status": "ok"} with HTTP 200 while the process is
up, plus whether the background scheduler runs in-process. Intended for
container healthchecks and internal monitoring.

CHANGELOG:
- 2026-10-11: Report in-process scheduler state
- 2026-10-05: Initial creation
"""

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, object]:
    """Return a simple health status.

    Returns:
        dict: ``{"status": "ok", "scheduler": bool}``.
    """
    scheduler = getattr(request.app.state, "scheduler", None)
    return {"status": "ok", "scheduler": bool(scheduler is not None and scheduler.running)}
