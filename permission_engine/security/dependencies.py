"""
FastAPI integration: route guards backed by the permission engine.

The engine is created at startup and stored on `app.state.permission_engine`.
Routes opt in per endpoint:

    @router.post("/orders", dependencies=[Depends(require_permission("orders.create"))])
    def create_order(...): ...

or receive the authorized user id:

    def list_clients(user_id: str = Depends(require_permission("clients.read"))): ...

The guard never derives an identity from request headers itself. The caller
is whoever the host's authentication established: either middleware that set
`request.state.user_id`, or an authenticator callable stored on
`app.state.authenticator` that validates the credentials and returns the user
id (None when they are missing or invalid). Without either, the request is
401. Request facts for conditional grants come from `X-Request-Amount`,
`X-Request-Location` and `X-Department-Id`; the session from `X-Session-Id`.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, status

from permission_engine.engine.facade import PermissionEngine
from permission_engine.types import RequestContext

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-Id"
AMOUNT_HEADER = "X-Request-Amount"
LOCATION_HEADER = "X-Request-Location"
DEPARTMENT_HEADER = "X-Department-Id"

Authenticator = Callable[[Request], Optional[str]]


def get_permission_engine(request: Request) -> PermissionEngine:
    engine = getattr(request.app.state, "permission_engine", None)
    if engine is None:
        raise RuntimeError("Permission engine not configured. Did app startup run?")
    return engine


def get_current_user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return str(user_id)

    authenticator: Authenticator | None = getattr(request.app.state, "authenticator", None)
    if authenticator is not None:
        user_id = authenticator(request)
        if user_id:
            request.state.user_id = str(user_id)
            return str(user_id)

    logger.info("Unauthenticated request path=%s method=%s", request.url.path, request.method)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")


def get_session_id(request: Request) -> str | None:
    return request.headers.get(SESSION_HEADER) or None


def request_context_from_request(request: Request) -> RequestContext:
    """Request facts used by conditional grants; absent headers stay None (fail-closed)."""

    amount: float | None = None
    raw_amount = request.headers.get(AMOUNT_HEADER)
    if raw_amount is not None:
        try:
            amount = float(raw_amount)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid {AMOUNT_HEADER}: expected a number"
            ) from exc

    return RequestContext(
        amount=amount,
        location=request.headers.get(LOCATION_HEADER),
        department_id=request.headers.get(DEPARTMENT_HEADER),
    )


def require_permission(code: str, *, in_context: bool = False) -> Callable[..., str]:
    """
    Build a dependency that allows the request only when the caller holds `code`.

    With `in_context=True` the check is made against the session's active
    context (least privilege); a request without `X-Session-Id` is refused.
    """

    def dependency(
        request: Request,
        engine: PermissionEngine = Depends(get_permission_engine),
        user_id: str = Depends(get_current_user_id),
        context: RequestContext = Depends(request_context_from_request),
    ) -> str:
        session_id = get_session_id(request)
        if in_context:
            if session_id is None:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No active session context")
            allowed = engine.has_permission_in_context(user_id, session_id, code)
        else:
            allowed = engine.has_permission(user_id, code, context, session_id=session_id)

        if not allowed:
            logger.info("Access denied user_id=%s code=%s path=%s", user_id, code, request.url.path)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {code}")

        request.state.user_id = user_id
        return user_id

    return dependency
