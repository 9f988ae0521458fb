from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    environment: str = Field("development", alias="ENVIRONMENT")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    host: str = Field("0.0.0.0", alias="HOST")
    port: int = Field(3000, alias="PORT")

    # Public URL used in discovery documents (falls back to the request URL)
    public_base_url: str | None = Field(None, alias="PUBLIC_BASE_URL")
    cors_origins: str = Field("*", alias="CORS_ORIGINS")

    # Bearer credential (JWT)
    jwt_alg: str = Field("RS256", alias="JWT_ALG")
    jwt_secret: str = Field("", alias="JWT_SECRET")
    jwt_issuer: str = Field("authgate", alias="JWT_ISSUER")
    jwt_expiry_seconds: int = Field(86400, alias="JWT_EXPIRY_SECONDS")

    # PEM keys for RS/ES/PS algorithms
    priv_key_path: str = Field("keys/issuer_private.pem", alias="ISSUER_PRIVATE_KEY_PATH")
    pub_key_path: str = Field("keys/issuer_public.pem", alias="ISSUER_PUBLIC_KEY_PATH")

    # Signs the state handed to the upstream provider
    session_secret: str = Field(
        "development-session-secret-change-in-production", alias="SESSION_SECRET"
    )
    session_cookie_name: str = Field("gateway_session", alias="SESSION_COOKIE_NAME")

    # Store lifetimes (seconds)
    session_ttl_seconds: int = Field(24 * 60 * 60, alias="SESSION_TTL_SECONDS")
    auth_code_ttl_seconds: int = Field(10 * 60, alias="AUTH_CODE_TTL_SECONDS")
    session_sweep_interval_seconds: float = Field(60 * 60, alias="SESSION_SWEEP_INTERVAL_SECONDS")
    code_sweep_interval_seconds: float = Field(60, alias="CODE_SWEEP_INTERVAL_SECONDS")

    # Per-client rate limit: max_requests per window, 0 disables
    rate_limit_window_seconds: float = Field(15 * 60, alias="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = Field(100, alias="RATE_LIMIT_MAX_REQUESTS")

    # Upstream provider
    upstream_client_id: str = Field("", alias="UPSTREAM_CLIENT_ID")
    upstream_client_secret: str = Field("", alias="UPSTREAM_CLIENT_SECRET")
    upstream_redirect_uri: str = Field(
        "http://localhost:3000/auth/callback", alias="UPSTREAM_REDIRECT_URI"
    )
    upstream_auth_url: str = Field(
        "https://my.tanda.co/api/oauth/authorize", alias="UPSTREAM_AUTH_URL"
    )
    upstream_token_url: str = Field(
        "https://my.tanda.co/api/oauth/token", alias="UPSTREAM_TOKEN_URL"
    )
    upstream_api_base_url: str = Field(
        "https://my.tanda.co/api/v2", alias="UPSTREAM_API_BASE_URL"
    )
    upstream_identity_path: str = Field("/users/me", alias="UPSTREAM_IDENTITY_PATH")
    upstream_scope: str | None = Field(None, alias="UPSTREAM_SCOPE")
    upstream_timeout_seconds: float = Field(30.0, alias="UPSTREAM_TIMEOUT_SECONDS")
    refresh_margin_seconds: int = Field(60, alias="REFRESH_MARGIN_SECONDS")

    # Protocol gateway
    server_name: str = Field("authgate", alias="MCP_SERVER_NAME")
    server_version: str = Field("1.0.0", alias="MCP_SERVER_VERSION")
    protocol_version: str = Field("2024-11-05", alias="MCP_PROTOCOL_VERSION")
    read_only_mode: bool = Field(False, alias="MCP_READ_ONLY_MODE")
    auth_exempt_methods: list[str] = Field(["initialize"], alias="AUTH_EXEMPT_METHODS")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,  # defaults apply when the variable is not set
    )

    @property
    def cookie_secure(self) -> bool:
        return self.environment == "production"


settings = Settings()
