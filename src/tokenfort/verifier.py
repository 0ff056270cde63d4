"""ID token and session cookie verification using cached public keys: no backend call needed."""

import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

import jwt
from jwt.utils import base64url_decode

from tokenfort.config import (
    CUSTOM_TOKEN_AUDIENCE,
    DEFAULT_CLOCK_SKEW_SECONDS,
    ID_TOKEN_ISSUER_PREFIX,
    JWT_ALGORITHM,
    MAX_CLOCK_SKEW_SECONDS,
    MAX_UID_LENGTH,
    SESSION_COOKIE_ISSUER_PREFIX,
)
from tokenfort.errors import (
    AuthError,
    InvalidArgumentError,
    TokenExpiredError,
    TokenVerificationError,
)
from tokenfort.keys import PublicKeyFetcher

logger = logging.getLogger("tokenfort.verifier")


@dataclass(frozen=True, slots=True)
class DecodedToken:
    """A fully verified ID token or session cookie.

    The registered claims are exposed as attributes; every claim (including
    custom ones) is reachable through item access, e.g. ``token["admin"]``.
    """

    uid: str
    sub: str
    iss: str
    aud: str
    iat: int
    exp: int
    auth_time: int
    tenant_id: str | None
    claims: Mapping[str, Any]

    def __getitem__(self, name: str) -> Any:
        return self.claims[name]

    def __contains__(self, name: object) -> bool:
        return name in self.claims

    def get(self, name: str, default: Any = None) -> Any:
        return self.claims.get(name, default)

    @property
    def firebase(self) -> Mapping[str, Any]:
        """The provider-specific ``firebase`` claim (sign-in provider, identities, tenant)."""
        value = self.claims.get("firebase")
        return value if isinstance(value, Mapping) else MappingProxyType({})


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TokenVerifier:
    """Verifies provider-issued JWTs (ID tokens or session cookies).

    Checks run in a fixed order and the first violation wins: structure,
    algorithm, payload, time claims, audience, issuer, subject, auth_time,
    then the RS256 signature against the key named by the header's kid.

    Args:
        key_fetcher: The public key fetcher for kid lookup.
        project_id: Expected audience; also the issuer suffix.
        issuer_prefix: Issuer URL prefix for this token type.
        token_label: Human label used in error messages ("ID token").
        operation: Public method name used in error messages ("verify_id_token()").
        expired_code: Error code raised for expired tokens.
        clock_skew_seconds: Allowed clock skew for exp/iat/auth_time (0-300, default 300).
        clock: Wall clock returning epoch seconds (default time.time).
    """

    def __init__(
        self,
        key_fetcher: PublicKeyFetcher,
        *,
        project_id: str,
        issuer_prefix: str,
        token_label: str,
        operation: str,
        expired_code: str,
        clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if not 0 <= clock_skew_seconds <= MAX_CLOCK_SKEW_SECONDS:
            raise ValueError(
                f"clock_skew_seconds must be between 0 and {MAX_CLOCK_SKEW_SECONDS}"
            )
        self._fetcher = key_fetcher
        self._project_id = project_id
        self._issuer = issuer_prefix + project_id
        self._label = token_label
        self._operation = operation
        self._expired_code = expired_code
        self._skew = clock_skew_seconds
        self._clock = clock or time.time
        self._jws = jwt.PyJWS(algorithms=[JWT_ALGORITHM])

    @property
    def issuer(self) -> str:
        return self._issuer

    async def verify(self, token: str) -> DecodedToken:
        """Verify a JWT and return the decoded claims.

        On unknown kid, triggers a key refresh (handles key rotation).

        Raises:
            InvalidArgumentError: Malformed token or a claim check failed.
            TokenExpiredError: The exp claim is in the past.
            TokenVerificationError: Bad algorithm, unknown kid, or bad signature.
            KeyFetchError: No public keys could be obtained.
        """
        try:
            return await self._verify(token)
        except AuthError as e:
            logger.debug("%s rejected: %s (%s)", self._label, e.code, e.message)
            raise

    async def _verify(self, token: str) -> DecodedToken:
        header = self._decode_header(token)

        alg = header.get("alg")
        if alg != JWT_ALGORITHM:
            raise TokenVerificationError(
                f'{self._label} has incorrect algorithm. Expected "{JWT_ALGORITHM}" '
                f'but got "{alg}".',
                "invalid_algorithm",
            )

        payload = self._decode_payload(token)
        self._check_claims(payload)

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise InvalidArgumentError(f'{self._label} has no "kid" claim.', "invalid_argument")

        key = await self._fetcher.get_key(kid)
        if key is None:
            raise TokenVerificationError(
                f'{self._label} has "kid" claim which does not correspond to a known '
                "public key. Most likely the token is expired, so get a fresh token "
                "from your client app and try again.",
                "unknown_key_id",
            )

        try:
            self._jws.decode(token, key, algorithms=[JWT_ALGORITHM])
        except jwt.PyJWTError as e:
            raise TokenVerificationError(
                f"{self._label} has invalid signature.", "invalid_signature", cause=e,
            ) from e

        return self._build_result(payload)

    def _decode_header(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str) or not token:
            raise InvalidArgumentError(
                f"{self._operation} requires the {self._label} to be a non-empty string.",
                "argument_error",
            )
        segments = token.split(".")
        if len(segments) != 3 or not segments[0] or not segments[1]:
            raise InvalidArgumentError(
                f"Decoding {self._label} failed. Make sure you passed the entire string "
                f"JWT which represents the {self._label}.",
                "argument_error",
            )
        try:
            return jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            raise InvalidArgumentError(
                f"Decoding {self._label} failed: malformed header.", "argument_error", cause=e,
            ) from e

    def _decode_payload(self, token: str) -> dict[str, Any]:
        try:
            payload = json.loads(base64url_decode(token.split(".")[1].encode("ascii")))
        except (ValueError, UnicodeError) as e:
            raise InvalidArgumentError(
                f"Decoding {self._label} failed: payload is not valid JSON.",
                "invalid_argument",
                cause=e,
            ) from e
        if not isinstance(payload, dict):
            raise InvalidArgumentError(
                f"Decoding {self._label} failed: payload is not a JSON object.",
                "invalid_argument",
            )
        return payload

    def _check_claims(self, payload: dict[str, Any]) -> None:
        now = self._clock()

        exp = payload.get("exp")
        if not _is_number(exp):
            raise InvalidArgumentError(f'{self._label} has no valid "exp" claim.', "invalid_argument")
        if exp <= now - self._skew:
            raise TokenExpiredError(
                f"{self._label} has expired. Get a fresh {self._label} and try again.",
                self._expired_code,
            )

        iat = payload.get("iat")
        if not _is_number(iat):
            raise InvalidArgumentError(f'{self._label} has no valid "iat" claim.', "invalid_argument")
        if iat > now + self._skew:
            raise InvalidArgumentError(
                f'{self._label} has "iat" claim in the future ({iat}).', "invalid_argument",
            )

        aud = payload.get("aud")
        if aud != self._project_id:
            message = (
                f'{self._label} has incorrect "aud" (audience) claim. Expected '
                f'"{self._project_id}" but got "{aud}".'
            )
            if aud == CUSTOM_TOKEN_AUDIENCE:
                message += f" {self._operation} expects a {self._label}, but was given a custom token."
            raise InvalidArgumentError(message, "invalid_argument")

        iss = payload.get("iss")
        if iss != self._issuer:
            raise InvalidArgumentError(
                f'{self._label} has incorrect "iss" (issuer) claim. Expected '
                f'"{self._issuer}" but got "{iss}".',
                "invalid_argument",
            )

        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise InvalidArgumentError(
                f'{self._label} has no "sub" (subject) claim or it is empty.', "invalid_argument",
            )
        if len(sub) > MAX_UID_LENGTH:
            raise InvalidArgumentError(
                f'{self._label} has "sub" (subject) claim longer than {MAX_UID_LENGTH} characters.',
                "invalid_argument",
            )

        auth_time = payload.get("auth_time")
        if not _is_number(auth_time):
            raise InvalidArgumentError(
                f'{self._label} has no valid "auth_time" claim.', "invalid_argument",
            )
        if auth_time > now + self._skew:
            raise InvalidArgumentError(
                f'{self._label} has "auth_time" claim in the future ({auth_time}).',
                "invalid_argument",
            )

    @staticmethod
    def _build_result(payload: dict[str, Any]) -> DecodedToken:
        firebase = payload.get("firebase")
        tenant_id = firebase.get("tenant") if isinstance(firebase, dict) else None
        claims = dict(payload)
        claims["uid"] = payload["sub"]
        return DecodedToken(
            uid=payload["sub"],
            sub=payload["sub"],
            iss=payload["iss"],
            aud=payload["aud"],
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            auth_time=int(payload["auth_time"]),
            tenant_id=tenant_id,
            claims=MappingProxyType(claims),
        )


def create_id_token_verifier(
    key_fetcher: PublicKeyFetcher, project_id: str, **kwargs: Any,
) -> TokenVerifier:
    """Verifier for ID tokens issued after client sign-in."""
    return TokenVerifier(
        key_fetcher,
        project_id=project_id,
        issuer_prefix=ID_TOKEN_ISSUER_PREFIX,
        token_label="ID token",
        operation="verify_id_token()",
        expired_code="id_token_expired",
        **kwargs,
    )


def create_session_cookie_verifier(
    key_fetcher: PublicKeyFetcher, project_id: str, **kwargs: Any,
) -> TokenVerifier:
    """Verifier for session cookies minted by create_session_cookie()."""
    return TokenVerifier(
        key_fetcher,
        project_id=project_id,
        issuer_prefix=SESSION_COOKIE_ISSUER_PREFIX,
        token_label="session cookie",
        operation="verify_session_cookie()",
        expired_code="session_cookie_expired",
        **kwargs,
    )
