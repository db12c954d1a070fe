"""FastAPI dependencies for the sync API.

The engine is a module-level singleton installed by the app lifespan; tests
replace ``get_engine`` through ``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import Header, HTTPException

from calsync.sync.engine import CalendarSyncEngine

USER_ID_HEADER = "X-User-Id"

_engine: CalendarSyncEngine | None = None


def init_engine(engine: CalendarSyncEngine) -> None:
    """Install the engine singleton. Called once from the lifespan handler."""
    global _engine  # noqa: PLW0603
    _engine = engine


def shutdown_engine() -> None:
    global _engine  # noqa: PLW0603
    _engine = None


def get_engine() -> CalendarSyncEngine:
    """FastAPI dependency: provides the CalendarSyncEngine singleton."""
    if _engine is None:
        raise RuntimeError("CalendarSyncEngine not initialized: call init_engine() first")
    return _engine


def get_user_id(x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER)) -> str:
    """FastAPI dependency: the caller's user id, set by the upstream gateway."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail=f"Missing {USER_ID_HEADER} header")
    return user_id


def get_optional_user_id(
    x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
) -> str | None:
    return (x_user_id or "").strip() or None
