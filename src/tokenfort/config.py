"""tokenfort configuration: endpoint constants, limits, and the internal config dataclass."""

import os
from dataclasses import dataclass

JWT_ALGORITHM = "RS256"

ID_TOKEN_ISSUER_PREFIX = "https://securetoken.google.com/"
SESSION_COOKIE_ISSUER_PREFIX = "https://session.firebase.google.com/"

ID_TOKEN_KEYS_URL = (
    "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"
)
SESSION_COOKIE_KEYS_URL = "https://www.googleapis.com/identitytoolkit/v3/relyingparty/publicKeys"

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com"
IAM_CREDENTIALS_URL = "https://iamcredentials.googleapis.com"
METADATA_SERVER_URL = "http://metadata.google.internal"
OAUTH2_TOKEN_URI = "https://oauth2.googleapis.com/token"
OAUTH2_SCOPES = (
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/firebase",
    "https://www.googleapis.com/auth/identitytoolkit",
    "https://www.googleapis.com/auth/userinfo.email",
)

CUSTOM_TOKEN_AUDIENCE = (
    "https://identitytoolkit.googleapis.com/google.identity.identitytoolkit.v1.IdentityToolkit"
)
CUSTOM_TOKEN_LIFETIME_SECONDS = 60 * 60  # 1 hour
MAX_UID_LENGTH = 128

# Claims that developer claims in a custom token may not override.
RESERVED_CLAIMS = frozenset({
    "acr", "amr", "at_hash", "aud", "auth_time", "azp", "cnf", "c_hash",
    "exp", "firebase", "iat", "iss", "jti", "nbf", "nonce", "sub",
})

MIN_SESSION_COOKIE_DURATION_MS = 5 * 60 * 1000  # 5 minutes
MAX_SESSION_COOKIE_DURATION_MS = 14 * 24 * 60 * 60 * 1000  # 2 weeks

DEFAULT_CLOCK_SKEW_SECONDS = 5 * 60
MAX_CLOCK_SKEW_SECONDS = 5 * 60

PROJECT_ID_ENV_VARS = ("GOOGLE_CLOUD_PROJECT", "GCLOUD_PROJECT")
CREDENTIALS_ENV_VAR = "GOOGLE_APPLICATION_CREDENTIALS"


@dataclass(frozen=True, slots=True)
class AuthConfig:
    """Internal config built by the Auth constructor. Not user-facing."""

    project_id: str | None = None
    service_account_id: str | None = None
    tenant_id: str | None = None
    clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS
    http_timeout: float = 10.0
    identity_toolkit_url: str = IDENTITY_TOOLKIT_URL
    id_token_keys_url: str = ID_TOKEN_KEYS_URL
    session_cookie_keys_url: str = SESSION_COOKIE_KEYS_URL

    def __post_init__(self) -> None:
        """Validate the clock skew at construction time."""
        if not 0 <= self.clock_skew_seconds <= MAX_CLOCK_SKEW_SECONDS:
            raise ValueError(
                f"clock_skew_seconds must be between 0 and {MAX_CLOCK_SKEW_SECONDS}"
            )


def resolve_project_id(explicit: str | None = None, credential=None) -> str | None:
    """Pick the project ID: explicit argument, then the credential, then the environment."""
    if explicit:
        return explicit
    project_id = getattr(credential, "project_id", None)
    if project_id:
        return project_id
    for name in PROJECT_ID_ENV_VARS:
        value = os.environ.get(name)
        if value:
            return value
    return None
