"""Error taxonomy shared by the broker, the stores and the HTTP layer.

OAuth-facing errors carry the RFC 6749 ``error`` string they map to, so routes
can render them without a lookup table.
"""


class GatewayError(Exception):
    oauth_error = "server_error"

    def __init__(self, description: str | None = None):
        self.description = description or self.default_description
        super().__init__(self.description)

    default_description = "Gateway error"


# --- broker / callback ---------------------------------------------------

class CsrfMismatch(GatewayError):
    oauth_error = "access_denied"
    default_description = "State mismatch - possible CSRF attack"


class SessionExpiredOrMissing(GatewayError):
    oauth_error = "access_denied"
    default_description = "Invalid or expired session"


class CallbackAlreadyHandled(GatewayError):
    oauth_error = "access_denied"
    default_description = "Authorization callback already processed for this session"


class UpstreamExchangeFailed(GatewayError):
    oauth_error = "access_denied"
    default_description = "Upstream token exchange failed"

    def __init__(self, description: str | None = None, status_code: int | None = None):
        super().__init__(description)
        self.status_code = status_code


# --- authorization codes / token endpoint ----------------------------------

class CodeNotFound(GatewayError):
    oauth_error = "invalid_grant"
    default_description = "Invalid authorization code"


class CodeExpired(GatewayError):
    oauth_error = "invalid_grant"
    default_description = "Authorization code expired"


class CodeAlreadyUsed(GatewayError):
    oauth_error = "invalid_grant"
    default_description = "Authorization code already used"


class PkceMismatch(GatewayError):
    oauth_error = "invalid_grant"
    default_description = "PKCE verification failed"


class UnsupportedGrantType(GatewayError):
    oauth_error = "unsupported_grant_type"
    default_description = "Only authorization_code grant type is supported"


class MissingCode(GatewayError):
    oauth_error = "invalid_request"
    default_description = "Authorization code is required"


# --- request authentication ------------------------------------------------

class CredentialInvalidOrExpired(GatewayError):
    oauth_error = "invalid_token"
    default_description = "Invalid or expired token"


class UpstreamRefreshFailed(GatewayError):
    oauth_error = "invalid_token"
    default_description = "Upstream token refresh failed"


class AuthenticationRequired(GatewayError):
    oauth_error = "unauthorized"
    default_description = "Authentication required. Please complete OAuth flow."


# --- upstream API / operations -----------------------------------------------

class UpstreamApiError(GatewayError):
    default_description = "Upstream API error"

    def __init__(self, description: str | None = None, status_code: int = 500):
        super().__init__(description)
        self.status_code = status_code


class OperationError(GatewayError):
    default_description = "Operation failed"


class InvalidOperationArguments(OperationError):
    default_description = "Invalid operation arguments"
