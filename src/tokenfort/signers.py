"""Signers for custom tokens: local RS256 with a service account key, or remote via IAM."""

import base64
import logging
from typing import Protocol

import httpx
from jwt.algorithms import RSAAlgorithm

from tokenfort.config import IAM_CREDENTIALS_URL
from tokenfort.credentials import Credential, ServiceAccountCredential
from tokenfort.errors import CredentialError

logger = logging.getLogger("tokenfort.signers")


class CryptoSigner(Protocol):
    """Produces RS256 signatures on behalf of a service account."""

    @property
    def key_id(self) -> str | None: ...

    async def get_service_account_email(self) -> str: ...

    async def sign(self, data: bytes) -> bytes: ...


class ServiceAccountSigner:
    """Signs locally with the service account's private key (RSASSA-PKCS1-v1_5 / SHA-256)."""

    def __init__(self, credential: ServiceAccountCredential) -> None:
        self._credential = credential
        self._algorithm = RSAAlgorithm(RSAAlgorithm.SHA256)

    @property
    def key_id(self) -> str | None:
        return self._credential.private_key_id

    async def get_service_account_email(self) -> str:
        return self._credential.client_email

    async def sign(self, data: bytes) -> bytes:
        return self._algorithm.sign(data, self._credential.private_key)


class IAMSigner:
    """Signs remotely through the IAM Credentials signBlob API.

    Used when the credential has no private key (e.g. the metadata server).
    The signature is computed by the service account's Google-managed key.

    Args:
        credential: Supplies the access token that authorizes the signBlob call.
        service_account_email: Account to sign as. If omitted, asked of the
            credential (metadata-server credentials know their default account).
        iam_url: Base URL of the IAM Credentials API.
        http_timeout: HTTP request timeout in seconds (default 10).
    """

    def __init__(
        self,
        credential: Credential,
        service_account_email: str | None = None,
        *,
        iam_url: str = IAM_CREDENTIALS_URL,
        http_timeout: float = 10.0,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._credential = credential
        self._service_account_email = service_account_email
        self._iam_url = iam_url.rstrip("/")
        self._http_timeout = http_timeout
        self._transport = _transport

    @property
    def key_id(self) -> str | None:
        return None

    async def get_service_account_email(self) -> str:
        """Return the signing account, discovering it from the credential if needed.

        Raises:
            CredentialError: If no account can be determined (code: no_service_account).
        """
        if self._service_account_email is None:
            discover = getattr(self._credential, "get_service_account_email", None)
            if discover is None:
                raise CredentialError(
                    "Failed to determine service account. Initialize with a service "
                    "account credential or set service_account_id.",
                    "no_service_account",
                )
            self._service_account_email = await discover()
        return self._service_account_email

    async def sign(self, data: bytes) -> bytes:
        """Sign data with the service account via signBlob.

        Raises:
            CredentialError: No access token (invalid_credential) or the IAM call
                failed (signer_unavailable).
        """
        email = await self.get_service_account_email()
        access_token = await self._credential.get_access_token()
        url = f"{self._iam_url}/v1/projects/-/serviceAccounts/{email}:signBlob"

        kwargs: dict = {"timeout": self._http_timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        try:
            async with httpx.AsyncClient(**kwargs) as client:
                response = await client.post(
                    url,
                    json={"payload": base64.b64encode(data).decode("ascii")},
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                response.raise_for_status()
                body = response.json()
            return base64.b64decode(body["signedBlob"])
        except httpx.HTTPStatusError as e:
            raise CredentialError(
                f"Failed to sign with IAM as {email}: {_error_message(e.response)}. "
                "Make sure the account has the iam.serviceAccounts.signBlob permission.",
                "signer_unavailable",
                cause=e,
            ) from e
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.exception("signBlob request for %s failed", email)
            raise CredentialError(
                f"Failed to sign with IAM as {email}: {e}", "signer_unavailable", cause=e,
            ) from e


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return f"HTTP {response.status_code}"
