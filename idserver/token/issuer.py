"""
Token issuer: mints access, refresh and ID tokens, and owns refresh token
persistence (rotation, revocation, pruning).
"""

import base64
import hashlib
import time
import uuid
from datetime import timedelta
from typing import Callable, List, Optional, Tuple

import jwt
from loguru import logger
from sqlalchemy import and_, delete, or_, select, update

from idserver.client.schemas import Client
from idserver.constants import (
    ACCESS_TOKEN_EXPIRY_SECONDS,
    ID_TOKEN_EXPIRY_SECONDS,
    REFRESH_TOKEN_REUSE_GRACE_SECONDS,
)
from idserver.database import SessionFactory, persistent_write, to_datetime, to_timestamp
from idserver.exceptions import RefreshTokenReused, RefreshTokenRevoked
from idserver.metrics import tokens_issued
from idserver.scopes import format_scope
from idserver.token.keys import KeyRing
from idserver.token.schemas import IssuedToken, RefreshToken, TokenClaims, TokenType


def at_hash(access_token: str) -> str:
    """
    OIDC at_hash: base64url of the left half of the SHA-256 of the access token.
    """
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest[: len(digest) // 2]).rstrip(b"=").decode("ascii")


def revoked_access_token_key(jti: str) -> str:
    return f"idp:revoked:{jti}"


class TokenIssuer:
    def __init__(
        self,
        keyring: KeyRing,
        session_maker: SessionFactory,
        redis_client,
        issuer: str,
        clock: Callable[[], float] = time.time,
        access_token_lifetime: int = ACCESS_TOKEN_EXPIRY_SECONDS,
        id_token_lifetime: int = ID_TOKEN_EXPIRY_SECONDS,
        reuse_grace: int = REFRESH_TOKEN_REUSE_GRACE_SECONDS,
    ):
        self.keyring = keyring
        self.session_maker = session_maker
        self.redis_client = redis_client
        self.issuer = issuer
        self.clock = clock
        self.access_token_lifetime = access_token_lifetime
        self.id_token_lifetime = id_token_lifetime
        self.reuse_grace = reuse_grace

    def _sign(self, claims: dict, typ: str = "JWT") -> str:
        key = self.keyring.current
        return jwt.encode(
            claims,
            key.private_key,
            algorithm=key.algorithm,
            headers={"kid": key.key_id, "typ": typ},
        )

    def _base_claims(
        self, subject: str, client: Client, lifetime: int, token_use: TokenType
    ) -> dict:
        if lifetime <= 0:
            raise ValueError("Token lifetime must be positive")
        now = int(self.clock())
        return {
            "iss": self.issuer,
            "sub": subject,
            "aud": client.client_id,
            "client_id": client.client_id,
            "iat": now,
            "exp": now + lifetime,
            "jti": str(uuid.uuid4()),
            "token_use": token_use.value,
        }

    def issue_access_token(self, subject: str, client: Client, scopes: List[str]) -> IssuedToken:
        lifetime = client.access_token_lifetime or self.access_token_lifetime
        claims = self._base_claims(subject, client, lifetime, TokenType.ACCESS)
        claims["scope"] = format_scope(scopes)
        token = self._sign(claims, typ="at+jwt")
        tokens_issued.labels(token_type=TokenType.ACCESS.value).inc()
        return IssuedToken(
            token=token,
            token_id=claims["jti"],
            token_type=TokenType.ACCESS,
            issued_at=claims["iat"],
            expires_at=claims["exp"],
            scopes=list(scopes),
        )

    def _refresh_token(
        self,
        subject: str,
        client: Client,
        scopes: List[str],
        family_id: Optional[str],
        auth_time: Optional[int],
    ) -> Tuple[IssuedToken, RefreshToken]:
        lifetime = int(timedelta(days=client.refresh_token_lifetime_days).total_seconds())
        claims = self._base_claims(subject, client, lifetime, TokenType.REFRESH)
        family_id = family_id or claims["jti"]
        claims["scope"] = format_scope(scopes)
        claims["fid"] = family_id
        token = self._sign(claims)
        record = RefreshToken(
            token_id=claims["jti"],
            family_id=family_id,
            subject_id=subject,
            client_id=client.client_id,
            scopes=list(scopes),
            auth_time=auth_time,
            issued_at=to_datetime(claims["iat"]),
            expires_at=to_datetime(claims["exp"]),
            used=False,
            revoked=False,
        )
        issued = IssuedToken(
            token=token,
            token_id=claims["jti"],
            token_type=TokenType.REFRESH,
            issued_at=claims["iat"],
            expires_at=claims["exp"],
            scopes=list(scopes),
            family_id=family_id,
        )
        return issued, record

    @persistent_write
    async def issue_refresh_token(
        self,
        subject: str,
        client: Client,
        scopes: List[str],
        family_id: Optional[str] = None,
        auth_time: Optional[int] = None,
    ) -> IssuedToken:
        """
        Mint and persist a refresh token. The record is committed before the
        token is returned, so a failed write never yields a usable token.
        """
        issued, record = self._refresh_token(subject, client, scopes, family_id, auth_time)
        async with self.session_maker() as session:
            session.add(record)
            await session.commit()
        tokens_issued.labels(token_type=TokenType.REFRESH.value).inc()
        return issued

    def issue_id_token(
        self,
        subject: str,
        client: Client,
        nonce: Optional[str],
        auth_time: Optional[int],
        scopes: List[str],
        access_token: Optional[str] = None,
        identity_claims: Optional[dict] = None,
    ) -> IssuedToken:
        """
        Mint a signed (never encrypted) ID token, carrying the identity claims
        released for the granted scopes.
        """
        claims = self._base_claims(subject, client, self.id_token_lifetime, TokenType.ID)
        claims.pop("client_id")
        claims["azp"] = client.client_id
        claims["auth_time"] = int(auth_time or claims["iat"])
        if nonce:
            claims["nonce"] = nonce
        if access_token:
            claims["at_hash"] = at_hash(access_token)
        for key, value in (identity_claims or {}).items():
            if key != "sub":
                claims.setdefault(key, value)
        token = self._sign(claims)
        tokens_issued.labels(token_type=TokenType.ID.value).inc()
        return IssuedToken(
            token=token,
            token_id=claims["jti"],
            token_type=TokenType.ID,
            issued_at=claims["iat"],
            expires_at=claims["exp"],
            scopes=list(scopes),
        )

    @persistent_write
    async def rotate_refresh_token(
        self, presented: TokenClaims, client: Client, scopes: List[str]
    ) -> Tuple[IssuedToken, RefreshToken]:
        """
        Rotate-on-use: atomically mark the presented refresh token as used and
        persist its successor (same family, fresh lifetime) in one transaction.
        Presenting an already-used token is treated as replay and revokes the
        whole family, unless it was used within `reuse_grace` seconds: that is
        a concurrent duplicate redemption and the winner's successor stays live.
        """
        now = to_datetime(self.clock())
        async with self.session_maker() as session:
            claimed = (
                await session.execute(
                    update(RefreshToken)
                    .where(
                        RefreshToken.token_id == presented.jti,
                        RefreshToken.used.is_(False),
                        RefreshToken.revoked.is_(False),
                    )
                    .values(used=True, used_at=now)
                    .returning(RefreshToken)
                )
            ).scalar_one_or_none()
            if claimed:
                issued, record = self._refresh_token(
                    claimed.subject_id, client, scopes, claimed.family_id, claimed.auth_time
                )
                claimed.replaced_by = record.token_id
                session.add(record)
                await session.commit()
            else:
                await session.rollback()
        if not claimed:
            existing = await self.get_refresh_token(presented.jti)
            if existing and existing.used and not existing.revoked:
                used_at = to_timestamp(existing.used_at) if existing.used_at else None
                if used_at is not None and self.clock() - used_at <= self.reuse_grace:
                    logger.warning(
                        f"Concurrent redemption of refresh token {presented.jti} "
                        f"(client={client.client_id}), family {existing.family_id} kept"
                    )
                    raise RefreshTokenReused("The refresh token has already been used")
                logger.warning(
                    f"Refresh token replay detected for family {existing.family_id} "
                    f"(client={client.client_id}, subject={existing.subject_id})"
                )
                await self._revoke_family(existing.family_id)
                raise RefreshTokenReused("The refresh token has already been used")
            raise RefreshTokenRevoked("The refresh token has been revoked")
        tokens_issued.labels(token_type=TokenType.REFRESH.value).inc()
        logger.info(
            f"Rotated refresh token {presented.jti} -> {issued.token_id} "
            f"(family {issued.family_id})"
        )
        return issued, claimed

    async def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        async with self.session_maker() as session:
            return (
                await session.execute(select(RefreshToken).where(RefreshToken.token_id == token_id))
            ).scalar_one_or_none()

    @persistent_write
    async def revoke_refresh_token(self, token_id: str) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                update(RefreshToken)
                .where(RefreshToken.token_id == token_id, RefreshToken.revoked.is_(False))
                .values(revoked=True, revoked_at=to_datetime(self.clock()))
            )
            await session.commit()
        if result.rowcount:
            logger.info(f"Revoked refresh token {token_id}")
        return bool(result.rowcount)

    async def _revoke_family(self, family_id: str) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                update(RefreshToken)
                .where(RefreshToken.family_id == family_id, RefreshToken.revoked.is_(False))
                .values(revoked=True, revoked_at=to_datetime(self.clock()))
            )
            await session.commit()
        logger.warning(f"Revoked {result.rowcount} refresh tokens in family {family_id}")
        return result.rowcount

    @persistent_write
    async def revoke_family(self, family_id: str) -> int:
        return await self._revoke_family(family_id)

    async def revoke_access_token(self, jti: str, expires_at: int) -> None:
        """
        Deny-list an access token until its own expiry.
        """
        ttl = int(expires_at - self.clock()) + 1
        if ttl <= 0:
            return
        await self.redis_client.set(revoked_access_token_key(jti), "1", ex=ttl)
        logger.info(f"Revoked access token {jti}")

    async def is_access_token_revoked(self, jti: str) -> bool:
        return bool(await self.redis_client.exists(revoked_access_token_key(jti)))

    @persistent_write
    async def prune_refresh_tokens(self, now: Optional[float] = None, retention: int = 86400) -> int:
        """
        Delete refresh tokens past their expiry, and used/revoked tokens whose
        retention window has elapsed.
        """
        now = self.clock() if now is None else now
        cutoff = to_datetime(now - retention)
        async with self.session_maker() as session:
            result = await session.execute(
                delete(RefreshToken).where(
                    or_(
                        RefreshToken.expires_at < to_datetime(now),
                        and_(RefreshToken.revoked.is_(True), RefreshToken.revoked_at < cutoff),
                        and_(RefreshToken.used.is_(True), RefreshToken.used_at < cutoff),
                    )
                )
            )
            await session.commit()
        return result.rowcount or 0
