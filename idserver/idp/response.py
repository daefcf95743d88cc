"""
Response models for the OpenID Connect endpoints.
"""

from typing import List, Optional, Union

from pydantic import BaseModel


class TokenErrorResponse(BaseModel):
    """OAuth2 error response following RFC 6749."""

    error: str
    error_description: Optional[str] = None


class IntrospectionResponse(BaseModel):
    """Token introspection response following RFC 7662."""

    active: bool
    scope: Optional[str] = None
    client_id: Optional[str] = None
    sub: Optional[str] = None
    aud: Optional[Union[str, List[str]]] = None
    iss: Optional[str] = None
    iat: Optional[int] = None
    exp: Optional[int] = None
    jti: Optional[str] = None
    token_type: Optional[str] = None


class DiscoveryResponse(BaseModel):
    """OpenID Provider metadata (OpenID Connect Discovery 1.0)."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    device_authorization_endpoint: str
    userinfo_endpoint: str
    introspection_endpoint: str
    revocation_endpoint: str
    end_session_endpoint: str
    jwks_uri: str
    scopes_supported: List[str]
    response_types_supported: List[str] = ["code"]
    response_modes_supported: List[str] = ["query"]
    grant_types_supported: List[str]
    subject_types_supported: List[str] = ["public"]
    id_token_signing_alg_values_supported: List[str]
    token_endpoint_auth_methods_supported: List[str] = [
        "client_secret_basic",
        "client_secret_post",
        "none",
    ]
    code_challenge_methods_supported: List[str]
    claims_supported: List[str]
