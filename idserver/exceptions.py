"""
Error taxonomy shared by the protocol components.

Everything raised towards an HTTP caller derives from OAuthError and carries an
RFC 6749 error code. Token validation failures are internal detail and are
collapsed to a single "invalid_token" at the edge.
"""

import asyncio
from typing import Optional

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import InterfaceError, OperationalError


TRANSIENT_EXCEPTIONS = (
    OperationalError,
    InterfaceError,
    RedisConnectionError,
    RedisTimeoutError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


class OAuthError(Exception):
    error = "invalid_request"
    status_code = 400
    default_description: Optional[str] = None

    def __init__(self, description: Optional[str] = None):
        self.description = description or self.default_description
        super().__init__(self.description or self.error)

    def to_dict(self) -> dict:
        payload = {"error": self.error}
        if self.description:
            payload["error_description"] = self.description
        return payload


class InvalidRequest(OAuthError):
    error = "invalid_request"


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"
    default_description = "The grant type is not supported"


class UnsupportedResponseType(OAuthError):
    error = "unsupported_response_type"
    default_description = "Only the 'code' response type is supported"


class InvalidScope(OAuthError):
    error = "invalid_scope"


class AccessDenied(OAuthError):
    error = "access_denied"
    default_description = "The resource owner denied the request"


class ServerError(OAuthError):
    error = "server_error"
    status_code = 500
    default_description = "The server encountered an unexpected condition"


class TransientError(ServerError):
    """Persistence was unavailable and retries were exhausted."""


# Client errors.
class ClientError(OAuthError):
    error = "invalid_client"
    status_code = 401
    default_description = "Client authentication failed"


class ClientNotFound(ClientError):
    pass


class InvalidSecret(ClientError):
    pass


class ClientAlreadyExists(OAuthError):
    error = "invalid_request"
    status_code = 409
    default_description = "A client with this client_id already exists"


class InvalidRedirectURI(ClientError):
    error = "invalid_request"
    status_code = 400
    default_description = "The redirect URI is not registered for this client"


class UnauthorizedClient(ClientError):
    error = "unauthorized_client"
    status_code = 400
    default_description = "The client is not allowed to use this grant type"


# Grant errors.
class GrantError(OAuthError):
    error = "invalid_grant"


class CodeNotFound(GrantError):
    pass


class CodeExpired(GrantError):
    pass


class CodeAlreadyConsumed(GrantError):
    pass


class PKCEMismatch(GrantError):
    pass


class RefreshTokenRevoked(GrantError):
    pass


class RefreshTokenReused(GrantError):
    pass


class DeviceCodeAlreadyUsed(GrantError):
    pass


# Device flow polling outcomes.
class AuthorizationPending(OAuthError):
    error = "authorization_pending"
    default_description = "The user has not yet completed authorization"


class SlowDown(OAuthError):
    error = "slow_down"
    default_description = "Polling too frequently"


class DeviceCodeExpired(OAuthError):
    error = "expired_token"
    default_description = "The device code has expired"


# Token validation. Never exposed verbatim.
class TokenValidationError(Exception):
    reason = "invalid"

    def __init__(self, message: str = "", claims: Optional[dict] = None):
        super().__init__(message or self.reason)
        self.claims = claims


class Malformed(TokenValidationError):
    reason = "malformed"


class InvalidSignature(TokenValidationError):
    reason = "invalid_signature"


class Expired(TokenValidationError):
    reason = "expired"


class WrongAudience(TokenValidationError):
    reason = "wrong_audience"


class Revoked(TokenValidationError):
    reason = "revoked"


class InvalidToken(OAuthError):
    error = "invalid_token"
    status_code = 401
    default_description = "The access token is invalid"


class InsufficientScope(OAuthError):
    error = "insufficient_scope"
    status_code = 403
    default_description = "The access token does not grant the required scope"


class AuthorizationRedirect(Exception):
    """
    An authorization request error that is reported to the client by
    redirecting back to its (already verified) redirect URI.
    """

    def __init__(self, error: OAuthError, redirect_uri: str, state: Optional[str] = None):
        super().__init__(error.description or error.error)
        self.error = error
        self.redirect_uri = redirect_uri
        self.state = state
