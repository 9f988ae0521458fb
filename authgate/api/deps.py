from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse, Response

from authgate.services.auth import AuthContext


def base_url(request: Request) -> str:
    configured = request.app.state.settings.public_base_url
    if configured:
        return configured.rstrip("/")
    return str(request.base_url).rstrip("/")


def auth_challenge_headers(request: Request) -> dict:
    metadata_url = f"{base_url(request)}/.well-known/oauth-protected-resource"
    return {"WWW-Authenticate": f'Bearer resource_metadata="{metadata_url}"'}


async def optional_auth(request: Request) -> AuthContext | None:
    ctx = await request.app.state.resolver.resolve(request.headers.get("Authorization"))
    request.state.auth = ctx
    return ctx


async def require_auth(request: Request) -> AuthContext:
    ctx = await optional_auth(request)
    if ctx is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token",
            headers=auth_challenge_headers(request),
        )
    return ctx


def oauth_error_response(error: str, description: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(
        {"error": error, "error_description": description},
        status_code=status_code,
        headers={"Cache-Control": "no-store"},
    )


def set_session_cookie(request: Request, response: Response, session_id: str) -> None:
    cfg = request.app.state.settings
    response.set_cookie(
        cfg.session_cookie_name,
        session_id,
        max_age=cfg.session_ttl_seconds,
        httponly=True,
        secure=cfg.cookie_secure,
        samesite="lax",
    )
