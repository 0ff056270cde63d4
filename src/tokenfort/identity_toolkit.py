"""Identity backend client: account lookup and session cookie minting.

Both operations sit behind small protocols so that callers (and tests) can
substitute their own implementation. IdentityToolkitClient is the default,
talking to the Identity Toolkit REST API over httpx.
"""

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tokenfort.config import IDENTITY_TOOLKIT_URL
from tokenfort.credentials import Credential
from tokenfort.errors import BackendError, CredentialError

logger = logging.getLogger("tokenfort.identity_toolkit")

# Backend error identifiers → stable tokenfort error codes.
BACKEND_ERROR_CODES: dict[str, str] = {
    "USER_NOT_FOUND": "user_not_found",
    "USER_DISABLED": "user_disabled",
    "INVALID_ID_TOKEN": "invalid_id_token",
    "TOKEN_EXPIRED": "id_token_expired",
    "INVALID_DURATION": "invalid_session_cookie_duration",
    "TENANT_NOT_FOUND": "tenant_not_found",
    "MISMATCHING_TENANT_ID": "mismatching_tenant_id",
    "PROJECT_NOT_FOUND": "project_not_found",
    "INSUFFICIENT_PERMISSION": "insufficient_permission",
    "INVALID_TENANT_ID": "invalid_tenant_id",
}


class AccountRecord(BaseModel):
    """The slice of an account the token verification path needs."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    uid: str = Field(alias="localId")
    email: str | None = None
    disabled: bool = False
    tenant_id: str | None = Field(default=None, alias="tenantId")
    # Seconds since epoch; tokens authenticated before this are revoked.
    tokens_valid_after_time: int | None = Field(default=None, alias="validSince")


class AccountLookup(Protocol):
    """Fetches an account by uid (used by revocation checks)."""

    async def get_account(self, uid: str, *, tenant_id: str | None = None) -> AccountRecord: ...


class SessionCookieMinter(Protocol):
    """Exchanges an ID token for a session cookie."""

    async def create_session_cookie(
        self, id_token: str, valid_duration: int, *, tenant_id: str | None = None,
    ) -> str: ...


def _backend_error(response: httpx.Response, cause: BaseException) -> BackendError:
    try:
        raw = response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        raw = ""
    identifier, _, detail = str(raw).partition(":")
    identifier = identifier.strip()
    code = BACKEND_ERROR_CODES.get(identifier, "internal_error")
    message = detail.strip() or identifier or f"Identity backend returned HTTP {response.status_code}"
    return BackendError(message, code, cause=cause)


class IdentityToolkitClient:
    """Async HTTP client for the Identity Toolkit API.

    Every call obtains an access token from the credential before any request
    is sent; a missing or failing credential surfaces as invalid_credential.

    Args:
        credential: Authorizes the calls.
        project_id: Project the accounts live in.
        base_url: Identity Toolkit API base URL.
        http_timeout: HTTP request timeout in seconds (default 10).
    """

    def __init__(
        self,
        credential: Credential | None,
        project_id: str | None,
        *,
        base_url: str = IDENTITY_TOOLKIT_URL,
        http_timeout: float = 10.0,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._credential = credential
        self._project_id = project_id
        self._base_url = base_url.rstrip("/")
        self._http_timeout = http_timeout
        self._transport = _transport

    async def get_account(self, uid: str, *, tenant_id: str | None = None) -> AccountRecord:
        """Look up an account by uid.

        Raises:
            BackendError: If no such account exists (code: user_not_found) or the call fails.
            CredentialError: If no access token is available.
        """
        data = await self._post(f"{self._project_path(tenant_id)}/accounts:lookup", {"localId": [uid]})
        users = data.get("users") or []
        if not users:
            raise BackendError(
                "There is no user record corresponding to the provided identifier.",
                "user_not_found",
            )
        try:
            return AccountRecord.model_validate(users[0])
        except ValidationError as e:
            raise BackendError(
                f"Malformed account record from backend: {e}", "internal_error", cause=e,
            ) from e

    async def create_session_cookie(
        self, id_token: str, valid_duration: int, *, tenant_id: str | None = None,
    ) -> str:
        """Mint a session cookie valid for valid_duration seconds."""
        body: dict[str, Any] = {"idToken": id_token, "validDuration": valid_duration}
        if tenant_id:
            body["tenantId"] = tenant_id
        data = await self._post(f"{self._project_path(None)}:createSessionCookie", body)
        cookie = data.get("sessionCookie")
        if not isinstance(cookie, str) or not cookie:
            raise BackendError("Failed to create session cookie.", "internal_error")
        return cookie

    def _project_path(self, tenant_id: str | None) -> str:
        path = f"/v1/projects/{self._project_id}"
        if tenant_id:
            path += f"/tenants/{tenant_id}"
        return path

    async def _authorization_header(self) -> dict[str, str]:
        if self._credential is None or not self._project_id:
            raise CredentialError(
                "A credential and project ID are required to call the identity backend.",
                "invalid_credential",
            )
        try:
            access_token = await self._credential.get_access_token()
        except CredentialError:
            raise
        except Exception as e:
            raise CredentialError(
                f"Failed to obtain an access token: {e}", "invalid_credential", cause=e,
            ) from e
        if not isinstance(access_token, str) or not access_token:
            raise CredentialError(
                "Credential returned an empty or malformed access token.", "invalid_credential",
            )
        return {"Authorization": f"Bearer {access_token}"}

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        headers = await self._authorization_header()
        url = f"{self._base_url}{path}"

        kwargs: dict = {"timeout": self._http_timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        try:
            async with httpx.AsyncClient(**kwargs) as client:
                response = await client.post(url, json=body, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise _backend_error(e.response, e) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.exception("Identity backend request to %s failed", path)
            raise BackendError(
                f"Identity backend request failed: {e}", "internal_error", cause=e,
            ) from e

        if not isinstance(data, dict):
            raise BackendError("Identity backend returned a non-object response.", "internal_error")
        return data
