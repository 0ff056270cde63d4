"""Test fixtures for tokenfort tests.

All tests are network-free. They generate RSA keys and certificates, create
JWTs manually, and mock every HTTP endpoint using httpx MockTransport.
"""

import base64
import json
import uuid
from datetime import UTC, datetime, timedelta

import httpx
import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from tokenfort.config import ID_TOKEN_ISSUER_PREFIX
from tokenfort.identity_toolkit import AccountRecord

PROJECT_ID = "test-project"
NOW = 1_700_000_000
SERVICE_ACCOUNT_EMAIL = "signer@test-project.iam.gserviceaccount.com"


class FakeClock:
    """Injectable clock; tests move time with advance()."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAccountLookup:
    """AccountLookup returning a fixed tokens-valid-after time."""

    def __init__(self, valid_since: int | None = None):
        self.valid_since = valid_since
        self.calls: list[tuple[str, str | None]] = []

    async def get_account(self, uid, *, tenant_id=None):
        self.calls.append((uid, tenant_id))
        return AccountRecord(uid=uid, tenant_id=tenant_id, tokens_valid_after_time=self.valid_since)


class FailingAccountLookup:
    """AccountLookup whose backend call always fails."""

    def __init__(self, error: Exception):
        self.error = error
        self.calls: list[tuple[str, str | None]] = []

    async def get_account(self, uid, *, tenant_id=None):
        self.calls.append((uid, tenant_id))
        raise self.error


class FakeSessionCookieMinter:
    def __init__(self, cookie: str = "minted-session-cookie"):
        self.cookie = cookie
        self.calls: list[tuple[str, int, str | None]] = []

    async def create_session_cookie(self, id_token, valid_duration, *, tenant_id=None):
        self.calls.append((id_token, valid_duration, tenant_id))
        return self.cookie


class FakeSigner:
    """CryptoSigner with a constant signature, for tests that never verify it."""

    def __init__(self, email: str = SERVICE_ACCOUNT_EMAIL, key_id: str | None = None):
        self.email = email
        self._key_id = key_id
        self.signed: list[bytes] = []

    @property
    def key_id(self):
        return self._key_id

    async def get_service_account_email(self):
        return self.email

    async def sign(self, data):
        self.signed.append(data)
        return b"fake-signature"


class FakeCredential:
    def __init__(self, project_id: str | None = PROJECT_ID, token: str = "access-token"):
        self._project_id = project_id
        self.token = token
        self.calls = 0

    @property
    def project_id(self):
        return self._project_id

    async def get_access_token(self):
        self.calls += 1
        return self.token


class FakeMetadataCredential(FakeCredential):
    """A credential that knows its default service account, like the metadata server."""

    async def get_service_account_email(self):
        return SERVICE_ACCOUNT_EMAIL


@pytest.fixture
def rsa_key_pair():
    """Generate a test RSA key pair."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return private_pem, public_pem


@pytest.fixture
def test_kid():
    return f"test-key-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def certificate_pem(rsa_key_pair):
    """A self-signed X.509 certificate wrapping the test public key."""
    private_pem, _ = rsa_key_pair
    private_key = serialization.load_pem_private_key(private_pem.encode("utf-8"), password=None)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "securetoken.system.test")])
    now = datetime.now(UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(private_key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


@pytest.fixture
def jwk_from_public_key(rsa_key_pair, test_kid):
    """Convert the test public key to JWK format."""
    from cryptography.hazmat.primitives.serialization import load_pem_public_key

    _, public_pem = rsa_key_pair
    public_key = load_pem_public_key(public_pem.encode("utf-8"))
    public_numbers = public_key.public_numbers()

    def _int_to_b64url(value: int) -> str:
        byte_length = (value.bit_length() + 7) // 8
        value_bytes = value.to_bytes(byte_length, byteorder="big")
        return base64.urlsafe_b64encode(value_bytes).rstrip(b"=").decode("ascii")

    return {
        "kty": "RSA",
        "kid": test_kid,
        "use": "sig",
        "alg": "RS256",
        "n": _int_to_b64url(public_numbers.n),
        "e": _int_to_b64url(public_numbers.e),
    }


@pytest.fixture
def jwks_response(jwk_from_public_key):
    """A JWKS response body with one key."""
    return {"keys": [jwk_from_public_key]}


@pytest.fixture
def service_account_info(rsa_key_pair):
    """A parsed service account key file."""
    private_pem, _ = rsa_key_pair
    return {
        "type": "service_account",
        "project_id": PROJECT_ID,
        "private_key_id": "sa-key-1",
        "private_key": private_pem,
        "client_email": SERVICE_ACCOUNT_EMAIL,
        "token_uri": "https://oauth2.test/token",
    }


def make_key_transport(
    body, *, status_code: int = 200, cache_control: str | None = "public, max-age=3600",
):
    """Create an httpx MockTransport that serves a key set. Returns (transport, call_count)."""
    call_count = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        call_count["n"] += 1
        headers = {"Cache-Control": cache_control} if cache_control else {}
        return httpx.Response(status_code, json=body, headers=headers)

    return httpx.MockTransport(handler), call_count


def create_test_token(
    private_key_pem: str,
    kid: str | None,
    *,
    uid: str = "u1",
    project_id: str = PROJECT_ID,
    issuer_prefix: str = ID_TOKEN_ISSUER_PREFIX,
    tenant_id: str | None = None,
    now: int = NOW,
    expires_in: int = 3600,
    auth_time: int | None = None,
    claims: dict | None = None,
) -> str:
    """Create a test ID token (or session cookie) signed with the given private key.

    A claim set to None in ``claims`` is removed from the payload.
    """
    firebase = {"sign_in_provider": "custom", "identities": {}}
    if tenant_id is not None:
        firebase["tenant"] = tenant_id
    payload = {
        "iss": issuer_prefix + project_id,
        "aud": project_id,
        "sub": uid,
        "iat": now,
        "exp": now + expires_in,
        "auth_time": now if auth_time is None else auth_time,
        "firebase": firebase,
    }
    payload.update(claims or {})
    payload = {name: value for name, value in payload.items() if value is not None}
    headers = {"kid": kid} if kid is not None else None
    return jwt.encode(payload, private_key_pem, algorithm="RS256", headers=headers)


def encode_unsigned(header: dict, payload: dict, signature: bytes = b"") -> str:
    """Assemble a compact JWT by hand (for algorithm and structure tests)."""
    def segment(value: bytes) -> str:
        return base64.urlsafe_b64encode(value).rstrip(b"=").decode("ascii")

    return ".".join([
        segment(json.dumps(header).encode("utf-8")),
        segment(json.dumps(payload).encode("utf-8")),
        segment(signature),
    ])
