"""
ORM/pydantic definitions for registered OAuth clients.
"""

import json
import re
import secrets
import string
from ipaddress import ip_address
from typing import List, Optional, Self
from urllib.parse import urlparse

from passlib.hash import argon2
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, func
from sqlalchemy.orm import validates

from idserver.constants import (
    DEFAULT_REFRESH_TOKEN_LIFETIME_DAYS,
    GRANT_AUTHORIZATION_CODE,
    GRANT_DEVICE_CODE,
    GRANT_PASSWORD,
    GRANT_REFRESH_TOKEN,
    MAX_REFRESH_TOKEN_LIFETIME_DAYS,
)
from idserver.database import Base

SUPPORTED_GRANT_TYPES = (
    GRANT_AUTHORIZATION_CODE,
    GRANT_REFRESH_TOKEN,
    GRANT_DEVICE_CODE,
    GRANT_PASSWORD,
)
LOOPBACK_HOSTS = ("localhost",)


def is_valid_redirect_uri(uri: str) -> bool:
    """
    Redirect URIs must be absolute https URIs without a fragment; plain http
    is only accepted for loopback hosts (native apps).
    """
    try:
        parsed = urlparse(uri)
    except ValueError:
        return False
    if not parsed.netloc or parsed.fragment:
        return False
    if parsed.scheme == "https":
        return True
    if parsed.scheme != "http":
        return False
    host = parsed.hostname or ""
    if host in LOOPBACK_HOSTS:
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def _check_redirect_uris(uris: List[str], required: bool = False) -> List[str]:
    if required and not uris:
        raise ValueError("At least one redirect URI is required")
    if len(uris) > 10:
        raise ValueError("Maximum 10 redirect URIs allowed")
    for uri in uris:
        if not is_valid_redirect_uri(uri):
            raise ValueError(f"Invalid redirect URI: {uri}")
    return uris


def _check_grant_types(grant_types: List[str]) -> List[str]:
    if not grant_types:
        raise ValueError("At least one grant type is required")
    for grant_type in grant_types:
        if grant_type not in SUPPORTED_GRANT_TYPES:
            raise ValueError(f"Unsupported grant type: {grant_type}")
    return grant_types


def _check_access_lifetime(v):
    if v is not None and v <= 0:
        raise ValueError("Access token lifetime must be positive")
    return v


def _check_refresh_lifetime(v):
    if v is not None:
        if v < 1:
            raise ValueError("Refresh token lifetime must be at least 1 day")
        if v > MAX_REFRESH_TOKEN_LIFETIME_DAYS:
            raise ValueError(
                f"Refresh token lifetime cannot exceed {MAX_REFRESH_TOKEN_LIFETIME_DAYS} days"
            )
    return v


class ClientArgs(BaseModel):
    """Registration request for a new client."""

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    public: bool = False
    name: str
    allowed_grant_types: List[str] = [GRANT_AUTHORIZATION_CODE]
    redirect_uris: List[str] = []
    post_logout_redirect_uris: List[str] = []
    allowed_scopes: List[str] = ["openid"]
    requires_pkce: bool = True
    access_token_lifetime: Optional[int] = None
    refresh_token_lifetime_days: Optional[int] = DEFAULT_REFRESH_TOKEN_LIFETIME_DAYS

    @field_validator("client_id")
    @classmethod
    def validate_client_id(cls, v):
        if v is not None and not re.match(r"^[\w\-\.]{2,64}$", v):
            raise ValueError("client_id must be 2-64 characters of letters, digits, _ - .")
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or len(v) < 3 or len(v) > 64:
            raise ValueError("Name must be between 3 and 64 characters")
        return v

    @field_validator("allowed_grant_types")
    @classmethod
    def validate_grant_types(cls, v):
        return _check_grant_types(v)

    @field_validator("redirect_uris", "post_logout_redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        return _check_redirect_uris(v)

    @field_validator("access_token_lifetime")
    @classmethod
    def validate_access_token_lifetime(cls, v):
        return _check_access_lifetime(v)

    @field_validator("refresh_token_lifetime_days")
    @classmethod
    def validate_refresh_token_lifetime(cls, v):
        return _check_refresh_lifetime(v)

    @model_validator(mode="after")
    def check_consistency(self) -> Self:
        if GRANT_AUTHORIZATION_CODE in self.allowed_grant_types and not self.redirect_uris:
            raise ValueError("The authorization_code grant requires a redirect URI")
        if self.public:
            if self.client_secret:
                raise ValueError("Public clients cannot have a secret")
            if GRANT_PASSWORD in self.allowed_grant_types:
                raise ValueError("The password grant is only available to confidential clients")
            # Public clients can't protect a code without a verifier.
            self.requires_pkce = True
        elif not self.client_secret:
            self.client_secret = Client.generate_client_secret()
        if self.client_id is None:
            self.client_id = Client.generate_client_id()
        return self


class ClientUpdateArgs(BaseModel):
    """Explicit update of a registered client; omitted fields stay unchanged."""

    name: Optional[str] = None
    active: Optional[bool] = None
    allowed_grant_types: Optional[List[str]] = None
    redirect_uris: Optional[List[str]] = None
    post_logout_redirect_uris: Optional[List[str]] = None
    allowed_scopes: Optional[List[str]] = None
    requires_pkce: Optional[bool] = None
    access_token_lifetime: Optional[int] = None
    refresh_token_lifetime_days: Optional[int] = None

    @field_validator("allowed_grant_types")
    @classmethod
    def validate_grant_types(cls, v):
        if v is not None:
            return _check_grant_types(v)
        return v

    @field_validator("redirect_uris", "post_logout_redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        if v is not None:
            return _check_redirect_uris(v)
        return v

    @field_validator("access_token_lifetime")
    @classmethod
    def validate_access_token_lifetime(cls, v):
        return _check_access_lifetime(v)

    @field_validator("refresh_token_lifetime_days")
    @classmethod
    def validate_refresh_token_lifetime(cls, v):
        return _check_refresh_lifetime(v)


class Client(Base):
    """Registered OAuth2 client application."""

    __tablename__ = "oauth_clients"

    client_id = Column(String, primary_key=True)
    secret_hash = Column(String, nullable=True)
    name = Column(String(64), nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    allowed_grant_types = Column(JSON, nullable=False, default=list)
    redirect_uris = Column(JSON, nullable=False, default=list)
    post_logout_redirect_uris = Column(JSON, nullable=False, default=list)
    allowed_scopes = Column(JSON, nullable=False, default=list)
    requires_pkce = Column(Boolean, default=True, nullable=False)
    access_token_lifetime = Column(Integer, nullable=True)
    refresh_token_lifetime_days = Column(
        Integer, default=DEFAULT_REFRESH_TOKEN_LIFETIME_DAYS, nullable=False
    )
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Columns restored from the lookup cache.
    CACHED_FIELDS = (
        "client_id",
        "secret_hash",
        "name",
        "active",
        "allowed_grant_types",
        "redirect_uris",
        "post_logout_redirect_uris",
        "allowed_scopes",
        "requires_pkce",
        "access_token_lifetime",
        "refresh_token_lifetime_days",
    )

    @validates("name")
    def validate_name(self, _, name):
        if not name or len(name) < 3 or len(name) > 64:
            raise ValueError("Name must be between 3 and 64 characters")
        return name

    @classmethod
    def generate_client_id(cls) -> str:
        """Generate a unique client ID."""
        return f"cid_{''.join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(24))}"

    @classmethod
    def generate_client_secret(cls) -> str:
        """Generate a secure client secret."""
        return f"csc_{''.join(secrets.choice(string.ascii_letters + string.digits) for _ in range(48))}"

    @classmethod
    def create(cls, args: ClientArgs) -> Self:
        return cls(
            client_id=args.client_id,
            secret_hash=argon2.hash(args.client_secret) if args.client_secret else None,
            name=args.name,
            active=True,
            allowed_grant_types=list(args.allowed_grant_types),
            redirect_uris=list(args.redirect_uris),
            post_logout_redirect_uris=list(args.post_logout_redirect_uris),
            allowed_scopes=list(args.allowed_scopes),
            requires_pkce=args.requires_pkce,
            access_token_lifetime=args.access_token_lifetime,
            refresh_token_lifetime_days=args.refresh_token_lifetime_days
            or DEFAULT_REFRESH_TOKEN_LIFETIME_DAYS,
        )

    @property
    def is_public(self) -> bool:
        return not self.secret_hash

    def verify_secret(self, secret: str) -> bool:
        """Verify the client secret (argon2 verification is constant-time)."""
        if not self.secret_hash or not secret:
            return False
        try:
            return argon2.verify(secret, self.secret_hash)
        except ValueError:
            return False

    def is_valid_redirect_uri(self, uri: str) -> bool:
        """Exact-match check against registered redirect URIs."""
        return uri in (self.redirect_uris or [])

    def is_valid_post_logout_redirect_uri(self, uri: str) -> bool:
        return uri in (self.post_logout_redirect_uris or [])

    def allows_grant(self, grant_type: str) -> bool:
        return grant_type in (self.allowed_grant_types or [])

    def to_json(self) -> str:
        """Serialize to JSON for the lookup cache."""
        return json.dumps({key: getattr(self, key) for key in self.CACHED_FIELDS})

    @classmethod
    def from_json(cls, data: str | bytes) -> Self:
        """Rebuild a (detached) client from the lookup cache."""
        if isinstance(data, bytes):
            data = data.decode()
        return cls(**json.loads(data))
