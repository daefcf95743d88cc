"""
Request/result models for the grant flows.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from idserver.constants import (
    GRANT_AUTHORIZATION_CODE,
    GRANT_DEVICE_CODE,
    GRANT_PASSWORD,
    GRANT_REFRESH_TOKEN,
)
from idserver.exceptions import UnsupportedGrantType


class GrantType(str, Enum):
    AUTHORIZATION_CODE = GRANT_AUTHORIZATION_CODE
    REFRESH_TOKEN = GRANT_REFRESH_TOKEN
    DEVICE_CODE = GRANT_DEVICE_CODE
    PASSWORD = GRANT_PASSWORD

    @classmethod
    def parse(cls, value: Optional[str]) -> "GrantType":
        if value == "device_code":
            return cls.DEVICE_CODE
        try:
            return cls(value)
        except ValueError:
            raise UnsupportedGrantType(f"Unsupported grant type: {value}")


class AuthorizeParams(BaseModel):
    """Parameters of an authorization request (query string or form)."""

    response_type: Optional[str] = None
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None
    nonce: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


class AuthorizationContext(BaseModel):
    """A fully validated authorization request, ready for user consent."""

    client_id: str
    client_name: str
    redirect_uri: str
    scopes: List[str]
    state: Optional[str] = None
    nonce: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


class TokenRequest(BaseModel):
    """Token endpoint parameters, for every grant type."""

    grant_type: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    code_verifier: Optional[str] = None
    refresh_token: Optional[str] = None
    device_code: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    scope: Optional[str] = None


class TokenResult(BaseModel):
    """Successful token response (RFC 6749 section 5.1)."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None


class DeviceAuthorizationResult(BaseModel):
    """Device authorization response (RFC 8628 section 3.2)."""

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int
