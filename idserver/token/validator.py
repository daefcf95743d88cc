"""
Token validator for resource-server style checks of tokens minted here.
"""

import time
from typing import Callable, Optional

import jwt
from loguru import logger
from pydantic import ValidationError

from idserver.exceptions import (
    Expired,
    InvalidSignature,
    Malformed,
    Revoked,
    TokenValidationError,
    WrongAudience,
)
from idserver.metrics import validation_failures
from idserver.token.issuer import TokenIssuer
from idserver.token.keys import KeyRing
from idserver.token.schemas import TokenClaims, TokenType

# Checked by hand below so the expiry boundary and ordering are exact.
DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "verify_iss": False,
}


class TokenValidator:
    """
    Validates tokens in a fixed order, short-circuiting on the first failure:
    structure, signature (key selected by kid), expiry, audience, revocation.

    The specific failure is logged and counted; HTTP callers only ever see a
    generic invalid_token.
    """

    def __init__(
        self,
        keyring: KeyRing,
        issuer: TokenIssuer,
        clock: Callable[[], float] = time.time,
    ):
        self.keyring = keyring
        self.issuer = issuer
        self.clock = clock

    async def validate(
        self,
        token: Optional[str],
        expected_audience: Optional[str] = None,
        token_type: Optional[TokenType] = None,
    ) -> TokenClaims:
        """
        Validate a token, returning its claims. expected_audience=None skips
        the audience check (used by this provider's own endpoints).
        """
        try:
            return await self._validate(token, expected_audience, token_type)
        except TokenValidationError as exc:
            validation_failures.labels(reason=exc.reason).inc()
            logger.warning(f"Token validation failed ({exc.reason}): {exc}")
            raise

    async def _validate(
        self,
        token: Optional[str],
        expected_audience: Optional[str],
        token_type: Optional[TokenType],
    ) -> TokenClaims:
        # Structure.
        if not token or not isinstance(token, str) or token.count(".") != 2:
            raise Malformed("Token is not a compact JWS")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise Malformed(f"Unreadable header: {exc}")
        kid = header.get("kid")
        if not kid or not isinstance(kid, str):
            raise Malformed("Token header has no kid")

        # Signature. An unknown kid may have been rotated in by another process.
        key = await self.keyring.refresh_for(kid)
        if key is None:
            raise InvalidSignature(f"Unknown signing key {kid}")
        if header.get("alg") != key.algorithm:
            raise InvalidSignature(f"Unexpected algorithm {header.get('alg')}")
        try:
            payload = jwt.decode(
                token,
                key.public_key,
                algorithms=[key.algorithm],
                options=DECODE_OPTIONS,
            )
        except jwt.InvalidSignatureError as exc:
            raise InvalidSignature(str(exc))
        except jwt.InvalidTokenError as exc:
            raise Malformed(str(exc))
        try:
            claims = TokenClaims(**payload)
        except ValidationError as exc:
            raise Malformed(f"Missing or invalid claims: {exc.error_count()} errors")
        if claims.iss != self.issuer.issuer:
            raise Malformed(f"Unexpected issuer {claims.iss}")
        if claims.exp <= claims.iat:
            raise Malformed("Token expires before it was issued")
        if token_type is not None and claims.token_use != token_type.value:
            raise Malformed(f"Expected a {token_type.value} token, got {claims.token_use}")

        # Expiry, inclusive at exp.
        now = self.clock()
        if now > claims.exp:
            raise Expired(f"Token {claims.jti} expired at {claims.exp} (now {int(now)})")

        # Audience.
        if expected_audience is not None and expected_audience not in claims.audiences:
            raise WrongAudience(f"Token {claims.jti} is not intended for {expected_audience}")

        # Revocation.
        if claims.token_use == TokenType.REFRESH.value:
            record = await self.issuer.get_refresh_token(claims.jti)
            if record is None or record.revoked or record.used:
                raise Revoked(f"Refresh token {claims.jti} is no longer valid", claims=payload)
        elif await self.issuer.is_access_token_revoked(claims.jti):
            raise Revoked(f"Access token {claims.jti} has been revoked", claims=payload)
        return claims
