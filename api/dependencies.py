"""
FastAPI dependencies for the operational API.
"""

from fastapi import HTTPException, Request, status

from service.runtime import ResilienceRuntime


def get_runtime(request: Request) -> ResilienceRuntime:
    """Runtime bound to the application at creation time."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Resilience runtime is not initialized"
        )
    return runtime
