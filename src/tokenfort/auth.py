"""Auth: main entry point for tokenfort.

Verifies ID tokens and session cookies locally against cached public keys,
enforces tenant scoping and (on request) revocation, mints custom tokens and
exchanges ID tokens for session cookies.
"""

import copy
import dataclasses
import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import httpx

from tokenfort.config import (
    DEFAULT_CLOCK_SKEW_SECONDS,
    ID_TOKEN_KEYS_URL,
    IDENTITY_TOOLKIT_URL,
    MAX_SESSION_COOKIE_DURATION_MS,
    MIN_SESSION_COOKIE_DURATION_MS,
    SESSION_COOKIE_KEYS_URL,
    AuthConfig,
    resolve_project_id,
)
from tokenfort.credentials import (
    ComputeEngineCredential,
    Credential,
    ServiceAccountCredential,
    load_default_credential,
)
from tokenfort.errors import (
    CredentialError,
    InvalidArgumentError,
    TenantMismatchError,
    TokenRevokedError,
)
from tokenfort.identity_toolkit import AccountLookup, IdentityToolkitClient, SessionCookieMinter
from tokenfort.keys import PublicKeyFetcher
from tokenfort.signers import CryptoSigner, IAMSigner, ServiceAccountSigner
from tokenfort.token_generator import TokenGenerator
from tokenfort.verifier import (
    DecodedToken,
    TokenVerifier,
    create_id_token_verifier,
    create_session_cookie_verifier,
)

logger = logging.getLogger("tokenfort.auth")


def _default_signer(
    credential: Credential | None,
    service_account_id: str | None,
    *,
    http_timeout: float,
    _transport: httpx.AsyncBaseTransport | None,
) -> CryptoSigner | None:
    """Local signing when a private key is available, otherwise IAM signBlob."""
    if isinstance(credential, ServiceAccountCredential):
        return ServiceAccountSigner(credential)
    if credential is not None and (
        service_account_id or isinstance(credential, ComputeEngineCredential)
    ):
        return IAMSigner(
            credential, service_account_id, http_timeout=http_timeout, _transport=_transport,
        )
    return None


def _session_duration_ms(expires_in: Any) -> float:
    if isinstance(expires_in, timedelta):
        duration = expires_in.total_seconds() * 1000
    elif isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
        duration = expires_in
    else:
        raise InvalidArgumentError(
            "expires_in must be a duration in milliseconds or a timedelta.",
            "invalid_session_cookie_duration",
        )
    if not MIN_SESSION_COOKIE_DURATION_MS <= duration <= MAX_SESSION_COOKIE_DURATION_MS:
        raise InvalidArgumentError(
            "The session cookie duration must be between 5 minutes and 2 weeks.",
            "invalid_session_cookie_duration",
        )
    return duration


class Auth:
    """Token lifecycle for one project, optionally scoped to a tenant.

    The global instance and its tenant-scoped siblings (see ``for_tenant``)
    share key caches, signer and backend client; they differ only in the
    tenant check applied after verification and the tenant embedded in
    custom tokens.

    Args:
        credential: Service account or metadata-server credential (optional for
            verification-only use when project_id is known).
        project_id: Project ID. Falls back to the credential, then the
            GOOGLE_CLOUD_PROJECT / GCLOUD_PROJECT environment variables.
        service_account_id: Service account email to sign custom tokens as via
            IAM when the credential has no private key.
        clock_skew_seconds: Allowed clock skew for time claims (0-300, default 300).
        http_timeout: Timeout for every outgoing HTTP call, in seconds.
        account_lookup: Account lookup used by revocation checks (default:
            Identity Toolkit client).
        session_cookie_minter: Session cookie backend (default: Identity Toolkit client).
        signer: Custom token signer (default: derived from the credential).
        clock: Wall clock returning epoch seconds (default time.time).
    """

    def __init__(
        self,
        credential: Credential | None = None,
        *,
        project_id: str | None = None,
        service_account_id: str | None = None,
        clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS,
        http_timeout: float = 10.0,
        account_lookup: AccountLookup | None = None,
        session_cookie_minter: SessionCookieMinter | None = None,
        signer: CryptoSigner | None = None,
        identity_toolkit_url: str = IDENTITY_TOOLKIT_URL,
        id_token_keys_url: str = ID_TOKEN_KEYS_URL,
        session_cookie_keys_url: str = SESSION_COOKIE_KEYS_URL,
        clock: Callable[[], float] | None = None,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = AuthConfig(
            project_id=resolve_project_id(project_id, credential),
            service_account_id=service_account_id,
            clock_skew_seconds=clock_skew_seconds,
            http_timeout=http_timeout,
            identity_toolkit_url=identity_toolkit_url,
            id_token_keys_url=id_token_keys_url,
            session_cookie_keys_url=session_cookie_keys_url,
        )
        self._credential = credential

        self._id_token_keys = PublicKeyFetcher(
            id_token_keys_url, http_timeout=http_timeout, _transport=_transport,
        )
        self._session_cookie_keys = PublicKeyFetcher(
            session_cookie_keys_url, http_timeout=http_timeout, _transport=_transport,
        )
        self._id_token_verifier: TokenVerifier | None = None
        self._session_cookie_verifier: TokenVerifier | None = None
        project = self._config.project_id
        if project:
            self._id_token_verifier = create_id_token_verifier(
                self._id_token_keys, project,
                clock_skew_seconds=clock_skew_seconds, clock=clock,
            )
            self._session_cookie_verifier = create_session_cookie_verifier(
                self._session_cookie_keys, project,
                clock_skew_seconds=clock_skew_seconds, clock=clock,
            )

        backend = None
        if account_lookup is None or session_cookie_minter is None:
            backend = IdentityToolkitClient(
                credential, project,
                base_url=identity_toolkit_url, http_timeout=http_timeout, _transport=_transport,
            )
        self._account_lookup: AccountLookup = account_lookup or backend
        self._session_cookie_minter: SessionCookieMinter = session_cookie_minter or backend

        if signer is None:
            signer = _default_signer(
                credential, service_account_id, http_timeout=http_timeout, _transport=_transport,
            )
        self._token_generator = (
            TokenGenerator(signer, clock=clock) if signer is not None else None
        )
        self._tenants: dict[str, Auth] = {}
        self._current_user_dep = None

    @classmethod
    def from_environment(cls, **kwargs: Any) -> "Auth":
        """Build an Auth from the ambient credential (see load_default_credential)."""
        return cls(load_default_credential(), **kwargs)

    @property
    def config(self) -> AuthConfig:
        """Read-only access to the internal config."""
        return self._config

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def project_id(self) -> str | None:
        return self._config.project_id

    @property
    def tenant_id(self) -> str | None:
        """The tenant this instance is bound to, or None for the global instance."""
        return self._config.tenant_id

    @property
    def supports_tenant_management(self) -> bool:
        """Only the global instance may manage tenants."""
        return self._config.tenant_id is None

    def for_tenant(self, tenant_id: str) -> "Auth":
        """Return the tenant-scoped instance for tenant_id (cached per tenant).

        Raises:
            InvalidArgumentError: If tenant_id is not a non-empty string.
        """
        if not isinstance(tenant_id, str) or not tenant_id:
            raise InvalidArgumentError(
                "The tenant ID must be a valid non-empty string.", "invalid_tenant_id",
            )
        if self._config.tenant_id is not None:
            raise InvalidArgumentError(
                "for_tenant() can only be called on the global Auth instance.",
                "invalid_tenant_id",
            )
        scoped = self._tenants.get(tenant_id)
        if scoped is None:
            scoped = copy.copy(self)
            scoped._config = dataclasses.replace(self._config, tenant_id=tenant_id)
            if self._token_generator is not None:
                scoped._token_generator = self._token_generator.with_tenant(tenant_id)
            scoped._tenants = {}
            scoped._current_user_dep = None
            self._tenants[tenant_id] = scoped
        return scoped

    # ------ Custom tokens ------

    async def create_custom_token(
        self, uid: str, developer_claims: dict[str, Any] | None = None,
    ) -> str:
        """Mint a custom token the client can exchange for a sign-in session.

        Raises:
            InvalidArgumentError: Bad uid or claims (invalid_uid, invalid_claims, forbidden_claim).
            CredentialError: No signer available (no_service_account) or remote
                signing failed (signer_unavailable).
        """
        if self._token_generator is None:
            raise CredentialError(
                "Failed to determine service account. Initialize with a service "
                "account credential or set service_account_id to create custom tokens.",
                "no_service_account",
            )
        return await self._token_generator.create_custom_token(uid, developer_claims)

    # ------ Verification ------

    async def verify_id_token(self, id_token: str, check_revoked: bool = False) -> DecodedToken:
        """Verify an ID token and return its decoded claims.

        Args:
            id_token: The ID token from the client.
            check_revoked: Also fetch the account and reject tokens issued before
                its tokens-valid-after time. Costs one backend call.

        Raises:
            InvalidArgumentError / TokenVerificationError: Verification failed.
            TenantMismatchError: The token belongs to another (or no) tenant.
            TokenRevokedError: check_revoked is set and the token was revoked (id_token_revoked).
            KeyFetchError: Public keys could not be fetched.
        """
        verifier = self._require_verifier(self._id_token_verifier, "verify_id_token()")
        return await self._verify(verifier, id_token, check_revoked, "id_token_revoked", "ID token")

    async def verify_session_cookie(
        self, session_cookie: str, check_revoked: bool = False,
    ) -> DecodedToken:
        """Verify a session cookie and return its decoded claims.

        Same checks as verify_id_token(), against the session cookie issuer.
        A revoked cookie raises TokenRevokedError (session_cookie_revoked).
        """
        verifier = self._require_verifier(self._session_cookie_verifier, "verify_session_cookie()")
        return await self._verify(
            verifier, session_cookie, check_revoked, "session_cookie_revoked", "session cookie",
        )

    async def _verify(
        self,
        verifier: TokenVerifier,
        token: str,
        check_revoked: bool,
        revoked_code: str,
        label: str,
    ) -> DecodedToken:
        if not isinstance(check_revoked, bool):
            raise InvalidArgumentError("check_revoked must be a boolean.", "invalid_argument")

        decoded = await verifier.verify(token)
        self._check_tenant(decoded)
        if check_revoked:
            await self._check_revoked(decoded, revoked_code, label)
        return decoded

    def _require_verifier(self, verifier: TokenVerifier | None, operation: str) -> TokenVerifier:
        if verifier is None:
            raise CredentialError(
                "Must initialize with a service account credential or set your "
                "project ID as the GOOGLE_CLOUD_PROJECT environment variable to "
                f"call {operation}.",
                "invalid_credential",
            )
        return verifier

    def _check_tenant(self, decoded: DecodedToken) -> None:
        tenant_id = self._config.tenant_id
        if tenant_id is None:
            return
        if decoded.tenant_id is None:
            raise TenantMismatchError(
                "The provided token has a missing tenant id.", "mismatching_tenant_id",
            )
        if decoded.tenant_id != tenant_id:
            raise TenantMismatchError(
                "The provided token has a mismatching tenant id.", "mismatching_tenant_id",
            )

    async def _check_revoked(self, decoded: DecodedToken, code: str, label: str) -> None:
        account = await self._account_lookup.get_account(decoded.uid, tenant_id=self.tenant_id)
        valid_after = account.tokens_valid_after_time
        # No valid-after timestamp means the account's tokens were never revoked.
        if valid_after is not None and decoded.auth_time < valid_after:
            logger.debug("Rejected revoked %s for uid=%s", label, decoded.uid)
            raise TokenRevokedError(f"The {label} has been revoked.", code)

    # ------ Session cookies ------

    async def create_session_cookie(
        self, id_token: str, expires_in: int | float | timedelta,
    ) -> str:
        """Exchange an ID token for a session cookie.

        Args:
            id_token: A valid ID token.
            expires_in: Session duration in milliseconds (or a timedelta),
                between 5 minutes and 2 weeks inclusive.

        Raises:
            InvalidArgumentError: Missing ID token (invalid_id_token) or duration out
                of range (invalid_session_cookie_duration). Checked before any call.
            TenantMismatchError: Tenant-scoped instance and the token is not for this tenant.
            CredentialError: No usable credential for the backend call.
            BackendError: The backend rejected the request.
        """
        if not isinstance(id_token, str) or not id_token:
            raise InvalidArgumentError(
                "The provided ID token must be a non-empty string.", "invalid_id_token",
            )
        duration_ms = _session_duration_ms(expires_in)

        if self._config.tenant_id is not None:
            await self.verify_id_token(id_token)

        return await self._session_cookie_minter.create_session_cookie(
            id_token, int(duration_ms // 1000), tenant_id=self._config.tenant_id,
        )

    # ------ FastAPI ------

    @property
    def current_user(self):
        """FastAPI dependency: the verified ID token of the current request.

        Usage:
            auth = Auth(credential)

            @app.get("/profile")
            async def profile(token=Depends(auth.current_user)):
                print(token.uid)
        """
        if self._current_user_dep is None:
            from tokenfort.integrations.fastapi import create_current_user_dep

            self._current_user_dep = create_current_user_dep(self)
        return self._current_user_dep

    def require_claim(self, claim: str, value: Any = True):
        """FastAPI dependency factory: require a custom claim on the verified token.

        Usage:
            @app.get("/admin")
            async def admin(token=Depends(auth.require_claim("admin"))):
                ...
        """
        from tokenfort.integrations.fastapi import create_require_claim_dep

        return create_require_claim_dep(self, claim, value)
