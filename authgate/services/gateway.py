"""JSON-RPC 2.0 dispatcher for the protocol surface.

Checks run in a fixed order: envelope, read-only guard, auth gate, method
lookup, dispatch. The read-only guard comes before the auth gate so a mutating
call is refused without touching the executor whether or not the caller is
signed in.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any

from authgate.core.config import Settings, settings as default_settings
from authgate.core.errors import (
    AuthenticationRequired,
    InvalidOperationArguments,
    OperationError,
    UpstreamApiError,
)
from authgate.services.auth import AuthContext
from authgate.services.operations import (
    PROMPTS,
    RESOURCES,
    OperationRegistry,
    read_resource,
    registry as default_registry,
    render_prompt,
)

logger = logging.getLogger(__name__)


class ErrorCode(IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class RpcError(Exception):
    def __init__(self, code: ErrorCode, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


def error_response(request_id: Any, code: ErrorCode, message: str, data: Any = None) -> dict:
    error: dict = {"code": int(code), "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def valid_envelope(message: Any) -> bool:
    return (
        isinstance(message, dict)
        and message.get("jsonrpc") == "2.0"
        and isinstance(message.get("method"), str)
    )


def _text_content(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, indent=2, default=str)


class ProtocolGateway:
    OPERATION_CALL_METHODS = ("operations/call", "tools/call")

    def __init__(self, registry: OperationRegistry | None = None, cfg: Settings | None = None):
        self.registry = registry or default_registry
        self.cfg = cfg or default_settings
        self._handlers = {
            "initialize": self._initialize,
            "operations/list": self._list_operations,
            "tools/list": self._list_operations,
            "operations/call": self._call_operation,
            "tools/call": self._call_operation,
            "resources/list": self._list_resources,
            "resources/read": self._read_resource,
            "prompts/list": self._list_prompts,
            "prompts/get": self._get_prompt,
            "ping": self._ping,
        }

    def requires_auth(self, method: str) -> bool:
        if method.startswith("notifications/"):
            return False
        return method not in self.cfg.auth_exempt_methods

    async def handle(self, message: Any, auth: AuthContext | None) -> dict | None:
        """Envelope for ``message``; None for notifications.

        Raises ``AuthenticationRequired`` when the method needs a session and
        ``auth`` is None; the transport turns that into an HTTP challenge.
        """
        if not valid_envelope(message):
            request_id = message.get("id") if isinstance(message, dict) else None
            return error_response(request_id, ErrorCode.INVALID_REQUEST, "Invalid JSON-RPC 2.0 request")

        method = message["method"]
        request_id = message.get("id")
        params = message.get("params") or {}

        if "id" not in message and method.startswith("notifications/"):
            logger.debug("Notification received: %s", method)
            return None

        if not isinstance(params, dict):
            return error_response(request_id, ErrorCode.INVALID_PARAMS, "params must be an object")

        if method in self.OPERATION_CALL_METHODS and self.cfg.read_only_mode:
            name = params.get("name")
            if isinstance(name, str) and not self.registry.is_allowed(name, read_only=True):
                logger.info("Refused mutating operation %s in read-only mode", name)
                return error_response(
                    request_id,
                    ErrorCode.INVALID_REQUEST,
                    f"Operation '{name}' is not available in read-only mode. Write operations are disabled.",
                    {"reason": "read_only"},
                )

        if auth is None and self.requires_auth(method):
            raise AuthenticationRequired()

        handler = self._handlers.get(method)
        if handler is None:
            return error_response(request_id, ErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}")

        logger.debug("RPC request: %s (id=%s)", method, request_id)
        try:
            result = await handler(method, params, auth)
        except RpcError as e:
            return error_response(request_id, e.code, e.message, e.data)
        except Exception:
            logger.exception("RPC request %s failed", method)
            return error_response(request_id, ErrorCode.INTERNAL_ERROR, "Internal error")
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    @staticmethod
    def _require(auth: AuthContext | None) -> AuthContext:
        # only reachable through exempt-method configuration
        if auth is None:
            raise RpcError(ErrorCode.INVALID_REQUEST, "Authentication required")
        return auth

    async def _initialize(self, method, params, auth):
        return {
            "protocolVersion": self.cfg.protocol_version,
            "serverInfo": {"name": self.cfg.server_name, "version": self.cfg.server_version},
            "capabilities": {
                "tools": {"listChanged": False},
                "resources": {"subscribe": False, "listChanged": False},
                "prompts": {"listChanged": False},
            },
        }

    async def _list_operations(self, method, params, auth):
        key = "tools" if method == "tools/list" else "operations"
        return {key: self.registry.catalog(read_only=self.cfg.read_only_mode)}

    async def _call_operation(self, method, params, auth):
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise RpcError(ErrorCode.INVALID_PARAMS, "Operation name is required")
        if name not in self.registry:
            raise RpcError(ErrorCode.METHOD_NOT_FOUND, f"Operation not found: {name}")
        args = params.get("arguments") or {}
        if not isinstance(args, dict):
            raise RpcError(ErrorCode.INVALID_PARAMS, "arguments must be an object")
        ctx = self._require(auth)

        try:
            content = await self.registry.execute(ctx.api, name, args)
            is_error = False
        except InvalidOperationArguments as e:
            raise RpcError(ErrorCode.INVALID_PARAMS, e.description) from e
        except UpstreamApiError as e:
            content = {"error": e.description, "statusCode": e.status_code}
            is_error = True
        except OperationError as e:
            content = {"error": e.description}
            is_error = True

        return {"content": [{"type": "text", "text": _text_content(content)}], "isError": is_error}

    async def _list_resources(self, method, params, auth):
        return {"resources": RESOURCES}

    async def _read_resource(self, method, params, auth):
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise RpcError(ErrorCode.INVALID_PARAMS, "Resource URI is required")
        ctx = self._require(auth)
        identity = ctx.session.identity.as_dict() if ctx.session.identity else {}
        try:
            content = await read_resource(uri, ctx.api, identity)
        except InvalidOperationArguments as e:
            raise RpcError(ErrorCode.INVALID_PARAMS, e.description) from e
        except UpstreamApiError as e:
            raise RpcError(ErrorCode.INTERNAL_ERROR, e.description, {"statusCode": e.status_code}) from e
        return {"contents": [{"uri": uri, "mimeType": "application/json", "text": _text_content(content)}]}

    async def _list_prompts(self, method, params, auth):
        return {"prompts": PROMPTS}

    async def _get_prompt(self, method, params, auth):
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise RpcError(ErrorCode.INVALID_PARAMS, "Prompt name is required")
        args = params.get("arguments") or {}
        if not isinstance(args, dict):
            raise RpcError(ErrorCode.INVALID_PARAMS, "arguments must be an object")
        try:
            return render_prompt(name, args)
        except InvalidOperationArguments as e:
            raise RpcError(ErrorCode.INVALID_PARAMS, e.description) from e

    async def _ping(self, method, params, auth):
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
