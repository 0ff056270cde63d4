"""FastAPI dependencies for tokenfort."""

from typing import TYPE_CHECKING, Any

from fastapi import Depends, HTTPException, Request

from tokenfort.errors import AuthError
from tokenfort.verifier import DecodedToken

if TYPE_CHECKING:
    from tokenfort.auth import Auth


def create_current_user_dep(
    auth: "Auth", *, cookie_name: str | None = None, check_revoked: bool = False,
):
    """Create a FastAPI dependency that extracts and verifies the caller's token.

    Token resolution order:
    1. ``Authorization: Bearer <id token>`` header (verified as an ID token)
    2. Cookie named ``cookie_name`` (verified as a session cookie, if configured)
    """

    async def current_user(request: Request) -> DecodedToken:
        # 1. Try Bearer header
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            verify = auth.verify_id_token
            token = auth_header[7:]
        # 2. Fall back to session cookie
        elif cookie_name and request.cookies.get(cookie_name):
            verify = auth.verify_session_cookie
            token = request.cookies[cookie_name]
        else:
            raise HTTPException(
                status_code=401,
                detail={"error": "token_missing", "message": "No ID token or session cookie provided"},
            )

        try:
            return await verify(token, check_revoked)
        except AuthError as e:
            raise HTTPException(
                status_code=401,
                detail={"error": e.code, "message": e.message},
            )

    return current_user


def create_require_claim_dep(
    auth: "Auth",
    claim: str,
    value: Any = True,
    *,
    cookie_name: str | None = None,
    check_revoked: bool = False,
):
    """Create a FastAPI dependency that requires a custom claim with a given value."""
    current_user_dep = create_current_user_dep(
        auth, cookie_name=cookie_name, check_revoked=check_revoked,
    )

    async def check_claim(
        token: DecodedToken = Depends(current_user_dep),
    ) -> DecodedToken:
        if token.get(claim) != value:
            raise HTTPException(
                status_code=403,
                detail={
                    "error": "insufficient_claims",
                    "message": f"Requires claim {claim}={value!r}",
                },
            )
        return token

    return check_claim
