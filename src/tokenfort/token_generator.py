"""Custom token creation: short-lived JWTs a client exchanges for a sign-in session."""

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from jwt.utils import base64url_encode

from tokenfort.config import (
    CUSTOM_TOKEN_AUDIENCE,
    CUSTOM_TOKEN_LIFETIME_SECONDS,
    JWT_ALGORITHM,
    MAX_UID_LENGTH,
    RESERVED_CLAIMS,
)
from tokenfort.errors import InvalidArgumentError
from tokenfort.signers import CryptoSigner

logger = logging.getLogger("tokenfort.token_generator")


def _encode_segment(value: dict[str, Any]) -> bytes:
    return base64url_encode(json.dumps(value, separators=(",", ":")).encode("utf-8"))


def validate_uid(uid: Any) -> str:
    """Check uid is a non-empty string of at most 128 characters."""
    if not isinstance(uid, str) or not uid or len(uid) > MAX_UID_LENGTH:
        raise InvalidArgumentError(
            f"uid must be a non-empty string with at most {MAX_UID_LENGTH} characters.",
            "invalid_uid",
        )
    return uid


def validate_developer_claims(claims: Any) -> dict[str, Any]:
    """Check developer claims are a JSON-serialisable dict without reserved names."""
    if claims is None:
        return {}
    if not isinstance(claims, dict):
        raise InvalidArgumentError("developer_claims must be a dict or None.", "invalid_claims")
    reserved = sorted(name for name in claims if name in RESERVED_CLAIMS)
    if reserved:
        raise InvalidArgumentError(
            f"Developer claims {', '.join(reserved)} are reserved and cannot be specified.",
            "forbidden_claim",
        )
    try:
        json.dumps(claims)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(
            f"developer_claims must be JSON-serialisable: {e}", "invalid_claims", cause=e,
        ) from e
    return claims


class TokenGenerator:
    """Mints signed custom tokens.

    Args:
        signer: Signs the token on behalf of the service account.
        tenant_id: If set, embedded as the token's tenant_id claim.
        clock: Wall clock returning epoch seconds (default time.time).
    """

    def __init__(
        self,
        signer: CryptoSigner,
        *,
        tenant_id: str | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._signer = signer
        self._tenant_id = tenant_id
        self._clock = clock or time.time

    @property
    def signer(self) -> CryptoSigner:
        return self._signer

    def with_tenant(self, tenant_id: str) -> "TokenGenerator":
        """A generator sharing this signer, bound to a tenant."""
        return TokenGenerator(self._signer, tenant_id=tenant_id, clock=self._clock)

    async def create_custom_token(
        self, uid: str, developer_claims: dict[str, Any] | None = None,
    ) -> str:
        """Create a signed custom token for uid.

        Args:
            uid: The user ID the client will sign in as.
            developer_claims: Extra claims copied into the ID token after sign-in.

        Returns:
            Compact JWT string (header.payload.signature).

        Raises:
            InvalidArgumentError: Bad uid or claims.
            CredentialError: No signer is usable.
        """
        uid = validate_uid(uid)
        claims = validate_developer_claims(developer_claims)

        email = await self._signer.get_service_account_email()
        now = int(self._clock())

        header: dict[str, Any] = {"alg": JWT_ALGORITHM, "typ": "JWT"}
        if self._signer.key_id:
            header["kid"] = self._signer.key_id

        payload: dict[str, Any] = {
            "iss": email,
            "sub": email,
            "aud": CUSTOM_TOKEN_AUDIENCE,
            "iat": now,
            "exp": now + CUSTOM_TOKEN_LIFETIME_SECONDS,
            "uid": uid,
        }
        if claims:
            payload["claims"] = claims
        if self._tenant_id:
            payload["tenant_id"] = self._tenant_id

        signing_input = _encode_segment(header) + b"." + _encode_segment(payload)
        signature = await self._signer.sign(signing_input)
        logger.debug("Custom token minted for uid=%s", uid)
        return (signing_input + b"." + base64url_encode(signature)).decode("ascii")
