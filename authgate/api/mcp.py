# authgate/api/mcp.py
import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from authgate.api.deps import auth_challenge_headers, optional_auth
from authgate.core.errors import AuthenticationRequired
from authgate.services.auth import AuthContext
from authgate.services.gateway import ErrorCode, error_response, valid_envelope

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_PING_INTERVAL_SECONDS = 15


def _unauthorized(request: Request) -> JSONResponse:
    return JSONResponse(
        {"error": "unauthorized", "error_description": AuthenticationRequired.default_description},
        status_code=401,
        headers=auth_challenge_headers(request),
    )


async def _handle_rpc(request: Request, auth: AuthContext | None):
    body = await request.body()
    try:
        message = json.loads(body)
    except ValueError:
        return JSONResponse(error_response(None, ErrorCode.PARSE_ERROR, "Parse error"), status_code=400)

    gateway = request.app.state.gateway
    try:
        response = await gateway.handle(message, auth)
    except AuthenticationRequired:
        return _unauthorized(request)

    if response is None:
        return Response(status_code=202)
    if not valid_envelope(message):
        return JSONResponse(response, status_code=400)
    return response


@router.post("/mcp")
async def mcp_endpoint(request: Request, auth: AuthContext | None = Depends(optional_auth)):
    return await _handle_rpc(request, auth)


@router.post("/")
async def root_rpc(request: Request, auth: AuthContext | None = Depends(optional_auth)):
    return await _handle_rpc(request, auth)


@router.get("/mcp")
async def mcp_stream(request: Request, auth: AuthContext | None = Depends(optional_auth)):
    if auth is None:
        return _unauthorized(request)

    async def events():
        yield 'event: open\ndata: {"status":"connected"}\n\n'
        logger.info("SSE client connected (session %s)", auth.session_id)
        try:
            while not await request.is_disconnected():
                await asyncio.sleep(SSE_PING_INTERVAL_SECONDS)
                yield ": ping\n\n"
        finally:
            logger.info("SSE client disconnected")

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
