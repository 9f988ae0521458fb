# authgate/api/auth.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from authgate.api.deps import require_auth, set_session_cookie
from authgate.core.errors import GatewayError, UpstreamApiError
from authgate.services.auth import AuthContext, extract_bearer_token

logger = logging.getLogger(__name__)

router = APIRouter()


def _user(identity) -> dict | None:
    return identity.as_dict() if identity else None


@router.get("/auth/login")
async def login(request: Request):
    start = request.app.state.broker.begin_authorization()
    response = RedirectResponse(start.redirect_url, status_code=302)
    set_session_cookie(request, response, start.session_id)
    logger.info("OAuth login initiated, redirecting upstream")
    return response


@router.get("/auth/callback")
async def callback(
    request: Request,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    error_description: str | None = Query(None),
):
    broker = request.app.state.broker
    cookie_sid = request.cookies.get(request.app.state.settings.session_cookie_name)
    session_id = broker.recover_session_id(state, cookie_sid)

    if error:
        logger.error("OAuth callback error from upstream: %s - %s", error, error_description)
        broker.abandon(session_id)
        redirect = broker.failure_redirect(session_id, error, error_description)
        if redirect:
            return RedirectResponse(redirect, status_code=302)
        return JSONResponse({"error": "OAuth Error", "message": error_description or error}, status_code=400)

    if not code:
        redirect = broker.failure_redirect(session_id, "invalid_request", "Missing code parameter")
        if redirect:
            return RedirectResponse(redirect, status_code=302)
        return JSONResponse({"error": "Bad Request", "message": "Missing code parameter"}, status_code=400)

    try:
        result = await broker.handle_callback(session_id, code, state)
    except GatewayError as e:
        redirect = broker.error_redirect(session_id, e)
        if redirect:
            return RedirectResponse(redirect, status_code=302)
        return JSONResponse({"error": "Authentication Failed", "message": e.description}, status_code=400)

    if result.redirect_url:
        return RedirectResponse(result.redirect_url, status_code=302)

    return {
        "success": True,
        "token": result.credential.token,
        "expires_in": result.credential.expires_in,
        "user": _user(result.identity),
        "message": "Authentication successful. Use the token in the Authorization header for API requests.",
    }


class AuthenticateInput(BaseModel):
    code: str | None = None


@router.post("/api/authenticate")
async def authenticate(request: Request, body: AuthenticateInput):
    if not body.code:
        return JSONResponse({"error": "Bad Request", "message": "Authorization code is required"},
                            status_code=400)
    try:
        session, credential = await request.app.state.broker.authenticate_with_code(body.code)
    except GatewayError as e:
        return JSONResponse({"error": "Authentication Failed", "message": e.description}, status_code=400)
    return {
        "success": True,
        "jwt": credential.token,
        "token_type": "Bearer",
        "expires_in": credential.expires_in,
        "user": _user(session.identity),
    }


@router.get("/auth/status")
async def status(request: Request):
    token = extract_bearer_token(request.headers.get("Authorization"))
    if not token:
        return {"authenticated": False, "message": "No token provided"}

    claims = request.app.state.issuer.verify(token)
    if claims is None:
        return {"authenticated": False, "message": "Invalid or expired token"}

    session = request.app.state.sessions.get(claims.session_id)
    return {
        "authenticated": True,
        "userId": claims.user_id,
        "email": claims.email,
        "sessionActive": session is not None,
        "user": _user(session.identity) if session else None,
    }


@router.post("/auth/logout")
async def logout(request: Request):
    broker = request.app.state.broker
    cookie_name = request.app.state.settings.session_cookie_name
    invalidated = False

    token = extract_bearer_token(request.headers.get("Authorization"))
    if token:
        claims = request.app.state.issuer.verify(token)
        if claims:
            invalidated = broker.logout(claims.session_id)

    cookie_sid = request.cookies.get(cookie_name)
    if cookie_sid and not invalidated:
        invalidated = broker.logout(cookie_sid)

    response = JSONResponse({
        "success": True,
        "message": "Logged out successfully" if invalidated else "No active session found",
    })
    response.delete_cookie(cookie_name)
    return response


@router.get("/api/me")
async def me(request: Request, ctx: AuthContext = Depends(require_auth)):
    try:
        return await ctx.api.get_json(request.app.state.settings.upstream_identity_path)
    except UpstreamApiError as e:
        raise HTTPException(status_code=502, detail=e.description)