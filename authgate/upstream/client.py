"""Upstream OAuth2 provider and API access.

Every call goes through one ``httpx.AsyncClient`` configured with a bounded
timeout. Errors are translated into the gateway taxonomy here so callers never
see transport exceptions or upstream response bodies carrying secrets.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from authgate.core.config import Settings, settings as default_settings
from authgate.core.errors import UpstreamApiError, UpstreamExchangeFailed, UpstreamRefreshFailed
from authgate.store.models import UpstreamCredentials, UserIdentity

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        for key in ("error_description", "error", "message"):
            if isinstance(data.get(key), str):
                return data[key]
        if isinstance(data.get("errors"), list):
            return ", ".join(str(e) for e in data["errors"])
    return response.reason_phrase or f"HTTP {response.status_code}"


class UpstreamApi:
    """Handle on the upstream API bound to one user's access token."""

    def __init__(self, http: httpx.AsyncClient, base_url: str, access_token: str):
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token

    def __repr__(self) -> str:
        return f"UpstreamApi({self._base_url})"

    async def request(self, method: str, path: str, *, params: dict | None = None,
                      json: Any = None) -> Any:
        url = f"{self._base_url}/{path.lstrip('/')}"
        logger.debug("Upstream API request: %s %s", method, path)
        try:
            response = await self._http.request(
                method,
                url,
                params=params,
                json=json,
                headers={
                    "Authorization": f"Bearer {self._access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.TimeoutException as e:
            raise UpstreamApiError("Upstream API timed out", status_code=504) from e
        except httpx.HTTPError as e:
            raise UpstreamApiError(f"Upstream API unreachable: {type(e).__name__}", status_code=502) from e

        if response.status_code >= 400:
            message = _error_message(response)
            logger.error("Upstream API error: %s - %s", response.status_code, message)
            raise UpstreamApiError(message, status_code=response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamApiError("Upstream API returned a non-JSON response",
                                   status_code=502) from e

    async def get_json(self, path: str, params: dict | None = None) -> Any:
        return await self.request("GET", path, params=params)


class UpstreamOAuthClient:
    def __init__(
        self,
        cfg: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg or default_settings
        self._clock = clock
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    @property
    def _http(self) -> httpx.AsyncClient:
        # opened on first use so building an app never holds a connection pool
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.cfg.upstream_timeout_seconds),
                transport=self._transport,
            )
        return self._http_client

    @property
    def is_open(self) -> bool:
        return self._http_client is not None and not self._http_client.is_closed

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.cfg.upstream_client_id,
            "redirect_uri": self.cfg.upstream_redirect_uri,
            "response_type": "code",
            "state": state,
        }
        if self.cfg.upstream_scope:
            params["scope"] = self.cfg.upstream_scope
        return f"{self.cfg.upstream_auth_url}?{urlencode(params)}"

    async def _token_request(self, form: dict) -> UpstreamCredentials:
        payload = {
            "client_id": self.cfg.upstream_client_id,
            "client_secret": self.cfg.upstream_client_secret,
            **form,
        }
        response = await self._http.post(
            self.cfg.upstream_token_url, data=payload, headers={"Accept": "application/json"}
        )
        if response.status_code >= 400:
            raise UpstreamExchangeFailed(_error_message(response), status_code=response.status_code)
        data = response.json()
        if not isinstance(data, dict) or "access_token" not in data:
            raise UpstreamExchangeFailed("Upstream token response missing access_token",
                                         status_code=response.status_code)
        try:
            return UpstreamCredentials.from_token_response(data, self._clock())
        except (TypeError, ValueError) as e:
            raise UpstreamExchangeFailed(
                f"Upstream token response has an invalid expires_in: {data.get('expires_in')!r}",
                status_code=502,
            ) from e

    async def exchange_code(self, code: str) -> UpstreamCredentials:
        try:
            credentials = await self._token_request({
                "grant_type": "authorization_code",
                "redirect_uri": self.cfg.upstream_redirect_uri,
                "code": code,
            })
        except httpx.TimeoutException as e:
            raise UpstreamExchangeFailed("Upstream token endpoint timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamExchangeFailed(f"Upstream token endpoint unreachable: {type(e).__name__}") from e
        except ValueError as e:
            raise UpstreamExchangeFailed("Upstream token response was not JSON") from e
        logger.info("Exchanged upstream authorization code for tokens")
        return credentials

    async def refresh(self, refresh_token: str | None) -> UpstreamCredentials:
        if not refresh_token:
            raise UpstreamRefreshFailed("No refresh token available")
        try:
            credentials = await self._token_request({
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            })
        except UpstreamExchangeFailed as e:
            raise UpstreamRefreshFailed(e.description) from e
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamRefreshFailed(f"Upstream refresh failed: {type(e).__name__}") from e
        if credentials.refresh_token is None:
            # providers that do not rotate keep the old refresh token valid
            credentials = UpstreamCredentials(
                credentials.access_token, refresh_token, credentials.expires_at
            )
        logger.info("Upstream access token refreshed")
        return credentials

    async def fetch_identity(self, access_token: str) -> UserIdentity:
        try:
            data = await self.api(access_token).get_json(self.cfg.upstream_identity_path)
        except UpstreamApiError as e:
            raise UpstreamExchangeFailed(f"Failed to fetch user identity: {e.description}",
                                         status_code=e.status_code) from e
        if not isinstance(data, dict) or data.get("id") is None:
            raise UpstreamExchangeFailed("Upstream identity response missing id")
        return UserIdentity(user_id=str(data["id"]), name=data.get("name"), email=data.get("email"))

    def api(self, access_token: str) -> UpstreamApi:
        return UpstreamApi(self._http, self.cfg.upstream_api_base_url, access_token)
