"""Adapters between starlette requests/responses and the broker's plain types."""

from typing import Dict

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from auth_broker.auth.broker import AuthBroker, AuthResult
from auth_broker.auth.context import RequestContext
from auth_broker.auth.cookies import CookieJar
from auth_broker.auth.rate_limiter import client_identity


def get_broker(request: Request) -> AuthBroker:
    """FastAPI dependency returning the broker created at startup."""
    return request.app.state.broker


def first_query_values(request: Request) -> Dict[str, str]:
    """Query parameters keyed by name, keeping the first value of a repeated name."""
    query: Dict[str, str] = {}
    for key, value in request.query_params.multi_items():
        query.setdefault(key, value)
    return query


def build_request_context(request: Request) -> RequestContext:
    """FastAPI dependency turning the incoming request into a ``RequestContext``."""
    headers = {key.lower(): value for key, value in request.headers.items()}
    client_host = request.client.host if request.client else None
    return RequestContext(
        base_url=str(request.base_url),
        query=first_query_values(request),
        headers=headers,
        client_identity=client_identity(headers, client_host),
        cookies=CookieJar(request.cookies),
        request_id=getattr(request.state, "request_id", None),
    )


def to_response(result: AuthResult, ctx: RequestContext) -> Response:
    """
    Render a broker result and apply the cookie writes it queued.

    Args:
        result: Outcome of a broker flow
        ctx: The context the flow ran with

    Returns:
        Response: A redirect or JSON response with Set-Cookie headers
    """
    if result.is_redirect:
        response: Response = RedirectResponse(url=result.location, status_code=result.status_code)
    else:
        response = JSONResponse(content=result.body or {}, status_code=result.status_code)

    for name, value in result.headers.items():
        response.headers[name] = value

    for write in ctx.cookies.writes:
        response.set_cookie(
            key=write.name,
            value=write.value,
            max_age=write.max_age,
            path=write.path,
            secure=write.secure,
            httponly=write.http_only,
            samesite=write.same_site,
        )
    return response
