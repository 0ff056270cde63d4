"""Credentials: the signing identity and the source of backend access tokens."""

import abc
import asyncio
import json
import logging
import os
import time
from collections.abc import Callable
from typing import Any, Protocol

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import load_pem_private_key

from tokenfort.config import (
    CREDENTIALS_ENV_VAR,
    JWT_ALGORITHM,
    METADATA_SERVER_URL,
    OAUTH2_SCOPES,
    OAUTH2_TOKEN_URI,
)
from tokenfort.errors import CredentialError

logger = logging.getLogger("tokenfort.credentials")

# Refresh access tokens this long before they actually expire.
_TOKEN_EXPIRY_MARGIN_SECONDS = 5 * 60
_METADATA_HEADERS = {"Metadata-Flavor": "Google"}


class Credential(Protocol):
    """Anything that can authorize calls to the identity backend."""

    @property
    def project_id(self) -> str | None: ...

    async def get_access_token(self) -> str: ...


class _CachedTokenCredential(abc.ABC):
    """Caches an OAuth2 access token until shortly before it expires."""

    def __init__(
        self,
        *,
        http_timeout: float = 10.0,
        clock: Callable[[], float] | None = None,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._http_timeout = http_timeout
        self._clock = clock or time.time
        self._transport = _transport
        self._access_token: str | None = None
        self._access_token_expiry = 0.0
        self._lock = asyncio.Lock()

    async def get_access_token(self) -> str:
        """Return a valid OAuth2 access token, fetching a new one if needed.

        Raises:
            CredentialError: If no token could be obtained (code: invalid_credential).
        """
        if self._access_token and self._clock() < self._access_token_expiry:
            return self._access_token
        async with self._lock:
            if self._access_token and self._clock() < self._access_token_expiry:
                return self._access_token
            try:
                data = await self._fetch_token()
            except (httpx.HTTPError, ValueError) as e:
                raise CredentialError(
                    f"Failed to obtain an access token: {e}", "invalid_credential", cause=e,
                ) from e
            token = data.get("access_token") if isinstance(data, dict) else None
            if not isinstance(token, str) or not token:
                raise CredentialError(
                    "Token endpoint returned no access token", "invalid_credential",
                )
            expires_in = data.get("expires_in", 3600)
            self._access_token = token
            self._access_token_expiry = (
                self._clock() + float(expires_in) - _TOKEN_EXPIRY_MARGIN_SECONDS
            )
            logger.debug("Access token refreshed, valid for %ss", expires_in)
            return token

    def _client(self) -> httpx.AsyncClient:
        kwargs: dict = {"timeout": self._http_timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    @abc.abstractmethod
    async def _fetch_token(self) -> Any:
        """Fetch a token response from the token endpoint."""
        ...


class ServiceAccountCredential(_CachedTokenCredential):
    """A service account key: signs custom tokens locally and mints access tokens.

    Args:
        project_id: The project the service account belongs to.
        client_email: The service account email (custom token issuer).
        private_key: PEM-encoded RSA private key.
        private_key_id: Key ID, embedded as the custom token's kid header.
        token_uri: OAuth2 token endpoint for the JWT-bearer grant.
    """

    def __init__(
        self,
        *,
        project_id: str | None,
        client_email: str,
        private_key: str,
        private_key_id: str | None = None,
        token_uri: str = OAUTH2_TOKEN_URI,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if not isinstance(client_email, str) or not client_email:
            raise CredentialError(
                "Service account must contain a \"client_email\" property.", "invalid_credential",
            )
        try:
            key = load_pem_private_key(private_key.encode("utf-8"), password=None)
        except (AttributeError, TypeError, ValueError) as e:
            raise CredentialError(
                "Failed to parse private key from the service account.",
                "invalid_credential",
                cause=e,
            ) from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise CredentialError(
                "Service account private key must be an RSA key.", "invalid_credential",
            )
        self._project_id = project_id
        self._client_email = client_email
        self._private_key = key
        self._private_key_id = private_key_id
        self._token_uri = token_uri

    @classmethod
    def from_info(cls, info: dict, **kwargs: Any) -> "ServiceAccountCredential":
        """Build a credential from a parsed service account JSON document."""
        if not isinstance(info, dict) or info.get("type") != "service_account":
            raise CredentialError(
                "Service account info must be a JSON object with "
                "\"type\": \"service_account\".",
                "invalid_credential",
            )
        for required in ("client_email", "private_key"):
            if not info.get(required):
                raise CredentialError(
                    f"Service account must contain a \"{required}\" property.",
                    "invalid_credential",
                )
        return cls(
            project_id=info.get("project_id"),
            client_email=info["client_email"],
            private_key=info["private_key"],
            private_key_id=info.get("private_key_id"),
            token_uri=info.get("token_uri") or OAUTH2_TOKEN_URI,
            **kwargs,
        )

    @classmethod
    def from_file(cls, path: str | os.PathLike, **kwargs: Any) -> "ServiceAccountCredential":
        """Load a service account key file."""
        try:
            with open(path, encoding="utf-8") as f:
                info = json.load(f)
        except (OSError, ValueError) as e:
            raise CredentialError(
                f"Failed to load service account file {path}: {e}",
                "invalid_credential",
                cause=e,
            ) from e
        return cls.from_info(info, **kwargs)

    @property
    def project_id(self) -> str | None:
        return self._project_id

    @property
    def client_email(self) -> str:
        return self._client_email

    @property
    def private_key(self) -> rsa.RSAPrivateKey:
        return self._private_key

    @property
    def private_key_id(self) -> str | None:
        return self._private_key_id

    async def _fetch_token(self) -> Any:
        now = int(self._clock())
        headers = {"kid": self._private_key_id} if self._private_key_id else None
        assertion = jwt.encode(
            {
                "iss": self._client_email,
                "scope": " ".join(OAUTH2_SCOPES),
                "aud": self._token_uri,
                "iat": now,
                "exp": now + 3600,
            },
            self._private_key,
            algorithm=JWT_ALGORITHM,
            headers=headers,
        )
        async with self._client() as client:
            response = await client.post(
                self._token_uri,
                data={
                    "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                    "assertion": assertion,
                },
            )
            response.raise_for_status()
            return response.json()


class ComputeEngineCredential(_CachedTokenCredential):
    """Credential backed by the GCE/Cloud Run metadata server (no private key).

    Custom tokens minted with this credential are signed remotely via IAM.

    Args:
        project_id: Project ID, if known (the metadata server is not consulted for it).
        metadata_url: Base URL of the metadata server.
    """

    def __init__(
        self,
        *,
        project_id: str | None = None,
        metadata_url: str = METADATA_SERVER_URL,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._project_id = project_id
        self._metadata_url = metadata_url.rstrip("/")
        self._service_account_email: str | None = None

    @property
    def project_id(self) -> str | None:
        return self._project_id

    async def get_service_account_email(self) -> str:
        """Discover the default service account email from the metadata server.

        Raises:
            CredentialError: If the metadata server is unreachable (code: no_service_account).
        """
        if self._service_account_email is None:
            url = f"{self._metadata_url}/computeMetadata/v1/instance/service-accounts/default/email"
            try:
                async with self._client() as client:
                    response = await client.get(url, headers=_METADATA_HEADERS)
                    response.raise_for_status()
            except httpx.HTTPError as e:
                raise CredentialError(
                    "Failed to determine service account email from the metadata "
                    "server. Initialize with a service account credential or set "
                    "service_account_id.",
                    "no_service_account",
                    cause=e,
                ) from e
            self._service_account_email = response.text.strip()
        return self._service_account_email

    async def _fetch_token(self) -> Any:
        url = f"{self._metadata_url}/computeMetadata/v1/instance/service-accounts/default/token"
        async with self._client() as client:
            response = await client.get(url, headers=_METADATA_HEADERS)
            response.raise_for_status()
            return response.json()


def load_default_credential(**kwargs: Any) -> Credential:
    """Resolve the ambient credential.

    Uses the service account file named by GOOGLE_APPLICATION_CREDENTIALS when
    set, otherwise the metadata server.
    """
    path = os.environ.get(CREDENTIALS_ENV_VAR)
    if path:
        logger.debug("Loading service account from %s", CREDENTIALS_ENV_VAR)
        return ServiceAccountCredential.from_file(path, **kwargs)
    return ComputeEngineCredential(**kwargs)
