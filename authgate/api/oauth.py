# authgate/api/oauth.py
import logging
import secrets
import time

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from authgate.api.deps import base_url, oauth_error_response, set_session_cookie
from authgate.core.errors import GatewayError, MissingCode, UnsupportedGrantType
from authgate.services.broker import with_query
from authgate.store.models import DownstreamClient

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata(request: Request):
    base = base_url(request)
    return {
        "issuer": base,
        "authorization_endpoint": f"{base}/authorize",
        "token_endpoint": f"{base}/token",
        "registration_endpoint": f"{base}/oauth/register",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code"],
        "code_challenge_methods_supported": ["S256"],
        "token_endpoint_auth_methods_supported": ["none", "client_secret_post"],
    }


@router.get("/.well-known/oauth-protected-resource")
async def protected_resource_metadata(request: Request):
    base = base_url(request)
    return {
        "resource": base,
        "authorization_servers": [base],
        "bearer_methods_supported": ["header"],
    }


class RegisterInput(BaseModel):
    client_name: str | None = None
    redirect_uris: list[str] = []
    token_endpoint_auth_method: str | None = None


@router.post("/oauth/register", status_code=201)
async def register_client(request: Request, body: RegisterInput):
    client_id = f"mcp-client-{secrets.token_urlsafe(12)}"
    record = {
        "client_id": client_id,
        "client_id_issued_at": int(time.time()),
        "client_name": body.client_name or "MCP Client",
        "redirect_uris": body.redirect_uris,
        "token_endpoint_auth_method": body.token_endpoint_auth_method or "none",
        "grant_types": ["authorization_code"],
        "response_types": ["code"],
    }
    request.app.state.clients[client_id] = record
    logger.info("Dynamic client registration: %s, redirect_uris: %s",
                record["client_name"], body.redirect_uris)
    return record


@router.get("/authorize")
async def authorize(
    request: Request,
    redirect_uri: str | None = Query(None),
    state: str | None = Query(None),
    code_challenge: str | None = Query(None),
    code_challenge_method: str | None = Query(None),
    client_id: str | None = Query(None),
    response_type: str | None = Query(None),
):
    if not redirect_uri:
        return oauth_error_response("invalid_request", "redirect_uri is required")

    registered = request.app.state.clients.get(client_id) if client_id else None
    if registered and registered["redirect_uris"] and redirect_uri not in registered["redirect_uris"]:
        # never redirect to an unregistered URI
        return oauth_error_response("invalid_request", "redirect_uri is not registered for this client")

    def _reject(error: str, description: str):
        return RedirectResponse(
            with_query(redirect_uri, {"error": error, "error_description": description, "state": state}),
            status_code=302,
        )

    if response_type and response_type != "code":
        return _reject("unsupported_response_type", "Only response_type=code is supported")
    if code_challenge_method and code_challenge_method != "S256":
        return _reject("invalid_request", "Only S256 code_challenge_method is supported")

    broker = request.app.state.broker
    start = broker.begin_authorization(DownstreamClient(
        redirect_uri=redirect_uri,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=(code_challenge_method or "S256") if code_challenge else None,
        client_id=client_id,
    ))
    response = RedirectResponse(start.redirect_url, status_code=302)
    set_session_cookie(request, response, start.session_id)
    return response


@router.post("/token")
async def token(request: Request):
    form = await _read_token_body(request)
    try:
        if form.get("grant_type") != "authorization_code":
            raise UnsupportedGrantType()
        code = form.get("code")
        if not code:
            raise MissingCode()
        credential = request.app.state.broker.redeem_downstream_code(code, form.get("code_verifier") or None)
    except (UnsupportedGrantType, MissingCode) as e:
        return oauth_error_response(e.oauth_error, e.description)
    except GatewayError as e:
        return oauth_error_response("invalid_grant", e.description)

    return JSONResponse(
        {"access_token": credential.token, "token_type": "Bearer", "expires_in": credential.expires_in},
        headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
    )


async def _read_token_body(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}

