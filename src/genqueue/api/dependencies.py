"""FastAPI dependencies shared by the API routes.

This module provides reusable FastAPI dependencies for:
- Orchestrator access from app state
- Caller identification
"""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from genqueue.services.exceptions import GenerationError
from genqueue.services.orchestrator import GenerationOrchestrator


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    """Get the GenerationOrchestrator created in the app lifespan."""
    return request.app.state.orchestrator


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> int:
    """Identify the caller.

    Authentication happens upstream (gateway/session layer), which forwards the
    authenticated user id in the X-User-Id header.

    Raises:
        HTTPException: 401 if the header is missing or not an integer
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header"
        )
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-User-Id header"
        )


CurrentUserId = Annotated[int, Depends(get_current_user_id)]
Orchestrator = Annotated[GenerationOrchestrator, Depends(get_orchestrator)]


def to_http_exception(error: GenerationError) -> HTTPException:
    """Convert a caller-visible generation error into an HTTP response."""
    return HTTPException(status_code=error.http_status, detail=error.user_message)
