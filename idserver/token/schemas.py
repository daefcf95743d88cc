"""
ORM/pydantic definitions for signing keys, refresh tokens and token claims.
"""

from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, func

from idserver.constants import SIGNING_ALGORITHM
from idserver.database import Base


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    ID = "id"


class SigningKey(Base):
    """
    Persisted signing key. The private key is PKCS#8 PEM encrypted with the
    configured passphrase; the public key is plain PEM.
    """

    __tablename__ = "signing_keys"

    key_id = Column(String, primary_key=True)
    algorithm = Column(String, nullable=False, default=SIGNING_ALGORITHM)
    private_material = Column(Text, nullable=False)
    public_material = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)
    retired_at = Column(DateTime, nullable=True)


class RefreshToken(Base):
    """
    Persisted refresh token record, keyed by the token's jti. Tokens minted by
    rotation share the family_id of the token they replaced.
    """

    __tablename__ = "oauth_refresh_tokens"

    token_id = Column(String, primary_key=True)
    family_id = Column(String, nullable=False, index=True)
    subject_id = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=False, index=True)
    scopes = Column(JSON, nullable=False, default=list)
    auth_time = Column(Integer, nullable=True)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime, nullable=True)
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    replaced_by = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class IssuedToken(BaseModel):
    """A freshly minted compact JWS plus the facts callers need about it."""

    token: str
    token_id: str
    token_type: TokenType
    issued_at: int
    expires_at: int
    scopes: List[str] = []
    family_id: Optional[str] = None

    @property
    def expires_in(self) -> int:
        return self.expires_at - self.issued_at


class TokenClaims(BaseModel):
    """Verified token claims; unknown claims are retained as extras."""

    model_config = ConfigDict(extra="allow")

    iss: str
    sub: str
    aud: Union[str, List[str]]
    iat: int
    exp: int
    jti: str
    token_use: str
    client_id: Optional[str] = None
    scope: Optional[str] = None
    fid: Optional[str] = None

    @property
    def scopes(self) -> List[str]:
        return (self.scope or "").split()

    @property
    def audiences(self) -> List[str]:
        return [self.aud] if isinstance(self.aud, str) else list(self.aud)
