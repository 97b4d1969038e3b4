"""Dependencies for FastAPI route handlers.

Provides the database session, settings, orchestrator context and caller
identity to route handlers via FastAPI dependency injection.

Transaction boundaries are managed here:
- Session is created at request start
- On success (no exception): session is committed automatically
- On exception: session is rolled back automatically
- Session is closed after request completes
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from fastapi import Depends, Header, HTTPException, Request
from fastapi import status as http_status
from sqlalchemy.orm import Session, sessionmaker

from bundlepipe.builds.queue import OrchestratorContext
from bundlepipe.config import Settings
from bundlepipe.errors import FORBIDDEN, error_info


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Get session factory from app state.

    Args:
        request: FastAPI request object.

    Returns:
        SQLAlchemy session factory.
    """
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]


def get_context(request: Request) -> OrchestratorContext:
    """Get the orchestrator context from app state."""
    context: Any = request.app.state.context
    return context  # type: ignore[no-any-return]


def get_app_settings(context: OrchestratorContext = Depends(get_context)) -> Settings:
    """Get the settings the application was started with."""
    return context.settings


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a database session for a request.

    Yields:
        Database session.
    """
    session = session_factory()
    try:
        yield session
        # Commit on success - only reached if no exception was raised
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_caller_uid(x_user_id: str | None = Header(default=None)) -> str:
    """Identity of the caller, set by the authenticating proxy.

    Raises:
        HTTPException: 401 if the header is missing.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=http_status.HTTP_401_UNAUTHORIZED,
            detail={"code": FORBIDDEN, "message": "Missing X-User-Id header"},
        )
    return x_user_id


def get_caller_is_gold(x_user_tier: str | None = Header(default=None)) -> bool:
    """Whether the caller has the higher app quota."""
    return (x_user_tier or "").lower() == "gold"


def http_error(status_code: int, exc: Exception) -> HTTPException:
    """Wrap a pipeline exception as an HTTPException with a code/message detail."""
    info = error_info(exc)
    detail: dict[str, Any] = {"code": info.code, "message": info.message}
    if info.details:
        detail["details"] = info.details
    return HTTPException(status_code=status_code, detail=detail)
