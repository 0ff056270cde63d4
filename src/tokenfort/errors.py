"""Error taxonomy: every failure carries a stable machine-readable code."""


class AuthError(Exception):
    """Base tokenfort error with an error code.

    Args:
        message: Human-readable description.
        code: Stable snake_case error code (e.g. "id_token_expired").
        cause: The underlying exception, when wrapping a network or decode failure.
    """

    def __init__(self, message: str, code: str, *, cause: BaseException | None = None):
        self.message = message
        self.code = code
        self.cause = cause
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class InvalidArgumentError(AuthError):
    """A caller-supplied value failed local validation (no network call was made)."""


class CredentialError(AuthError):
    """No usable credential or signer is available for the requested operation."""


class TokenVerificationError(AuthError):
    """Raised when JWT verification fails."""


class TokenExpiredError(TokenVerificationError):
    """The token's exp claim is in the past (beyond the allowed clock skew)."""


class TenantMismatchError(TokenVerificationError):
    """The token does not belong to the tenant the Auth instance is bound to."""


class TokenRevokedError(TokenVerificationError):
    """The token was minted before the account's tokens-valid-after time."""


class KeyFetchError(AuthError):
    """The public key set could not be fetched or parsed."""


class BackendError(AuthError):
    """The identity backend rejected a request or could not be reached."""
