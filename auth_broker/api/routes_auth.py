"""API endpoints for the login, callback, refresh and logout flows."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, ConfigDict, Field

from auth_broker.api.deps import build_request_context, get_broker, to_response
from auth_broker.auth.broker import AuthBroker
from auth_broker.auth.context import RequestContext


router = APIRouter(tags=["auth"])


class ReturnToRequest(BaseModel):
    """JSON body accepted by the POST variants of login and logout."""

    model_config = ConfigDict(populate_by_name=True)

    return_to: Optional[str] = Field(None, alias="returnTo", max_length=2048)


@router.get("/login")
async def login(
    return_to: Optional[str] = Query(None, alias="returnTo"),
    ctx: RequestContext = Depends(build_request_context),
    broker: AuthBroker = Depends(get_broker),
) -> Response:
    """
    Start the authorization code flow.

    Sets the encrypted PKCE session and session id cookies and redirects to
    the IdP authorization endpoint.
    """
    result = await broker.start_login(ctx, return_to)
    return to_response(result, ctx)


@router.post("/login")
async def login_url(
    payload: Optional[ReturnToRequest] = None,
    ctx: RequestContext = Depends(build_request_context),
    broker: AuthBroker = Depends(get_broker),
) -> Response:
    """Return ``{redirectUrl}`` pointing at ``GET /auth/login`` with a sanitised returnTo."""
    result = broker.login_redirect_url(ctx, payload.return_to if payload else None)
    return to_response(result, ctx)


@router.get("/callback")
async def callback(
    ctx: RequestContext = Depends(build_request_context),
    broker: AuthBroker = Depends(get_broker),
) -> Response:
    """
    Complete the flow after the IdP redirects back.

    Redirects to the validated return path, or to ``/login?error=<code>``.
    """
    result = await broker.complete_callback(ctx)
    return to_response(result, ctx)


@router.post("/refresh")
async def refresh(
    ctx: RequestContext = Depends(build_request_context),
    broker: AuthBroker = Depends(get_broker),
) -> Response:
    """Exchange the refresh token cookie for new access and ID tokens."""
    result = await broker.refresh(ctx)
    return to_response(result, ctx)


@router.get("/refresh")
async def refresh_status(
    ctx: RequestContext = Depends(build_request_context),
    broker: AuthBroker = Depends(get_broker),
) -> Response:
    result = broker.refresh_status(ctx)
    return to_response(result, ctx)


@router.get("/logout")
async def logout(
    return_to: Optional[str] = Query(None, alias="returnTo"),
    ctx: RequestContext = Depends(build_request_context),
    broker: AuthBroker = Depends(get_broker),
) -> Response:
    """Clear all auth cookies and redirect to the IdP logout endpoint."""
    result = broker.logout(ctx, return_to)
    return to_response(result, ctx)


@router.post("/logout")
async def logout_url(
    payload: Optional[ReturnToRequest] = None,
    ctx: RequestContext = Depends(build_request_context),
    broker: AuthBroker = Depends(get_broker),
) -> Response:
    result = broker.logout_redirect_url(ctx, payload.return_to if payload else None)
    return to_response(result, ctx)
