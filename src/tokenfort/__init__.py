"""tokenfort: custom token minting and ID token / session cookie verification."""

__version__ = "0.1.0"

from tokenfort.auth import Auth
from tokenfort.credentials import (
    ComputeEngineCredential,
    ServiceAccountCredential,
    load_default_credential,
)
from tokenfort.errors import (
    AuthError,
    BackendError,
    CredentialError,
    InvalidArgumentError,
    KeyFetchError,
    TenantMismatchError,
    TokenExpiredError,
    TokenRevokedError,
    TokenVerificationError,
)
from tokenfort.identity_toolkit import AccountLookup, AccountRecord, SessionCookieMinter
from tokenfort.signers import CryptoSigner, IAMSigner, ServiceAccountSigner
from tokenfort.verifier import DecodedToken

__all__ = [
    "AccountLookup",
    "AccountRecord",
    "Auth",
    "AuthError",
    "BackendError",
    "ComputeEngineCredential",
    "CredentialError",
    "CryptoSigner",
    "DecodedToken",
    "IAMSigner",
    "InvalidArgumentError",
    "KeyFetchError",
    "ServiceAccountCredential",
    "ServiceAccountSigner",
    "SessionCookieMinter",
    "TenantMismatchError",
    "TokenExpiredError",
    "TokenRevokedError",
    "TokenVerificationError",
    "load_default_credential",
]
