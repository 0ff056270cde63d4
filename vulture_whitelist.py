"""Vulture whitelist: false positives that are actually used by consumers or frameworks."""

# ---------------------------------------------------------------------------
# Public API methods on Auth (used by consumers, not internally)
# ---------------------------------------------------------------------------
from tokenfort.auth import Auth

Auth.from_environment
Auth.config
Auth.credential
Auth.supports_tenant_management
Auth.current_user
Auth.require_claim

from tokenfort.keys import PublicKeyFetcher

PublicKeyFetcher.keys_url
PublicKeyFetcher.get_keys
PublicKeyFetcher.invalidate

from tokenfort.verifier import DecodedToken, TokenVerifier

DecodedToken.firebase
TokenVerifier.issuer

from tokenfort.token_generator import TokenGenerator

TokenGenerator.signer

# ---------------------------------------------------------------------------
# Dataclass / pydantic fields (used for serialization)
# ---------------------------------------------------------------------------
_.fetched_at
_.email
_.disabled
_.model_config
