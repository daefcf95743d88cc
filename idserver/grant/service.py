"""
Grant flow controller: validates authorization requests and runs each grant
type's state machine down to a TokenResult or an OAuth error.
"""

import base64
import hashlib
import hmac
import re
import time
from typing import Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

from loguru import logger

from idserver.authorization.schemas import AuthorizationRequest
from idserver.authorization.service import AuthorizationSessionStore
from idserver.client.schemas import Client
from idserver.client.service import ClientRegistry
from idserver.constants import PKCE_METHODS, SCOPE_OFFLINE_ACCESS, SCOPE_OPENID
from idserver.exceptions import (
    AuthorizationRedirect,
    GrantError,
    InsufficientScope,
    InvalidRedirectURI,
    InvalidRequest,
    InvalidScope,
    InvalidToken,
    OAuthError,
    PKCEMismatch,
    Revoked,
    TokenValidationError,
    UnauthorizedClient,
    UnsupportedResponseType,
)
from idserver.grant.schemas import (
    AuthorizationContext,
    AuthorizeParams,
    DeviceAuthorizationResult,
    GrantType,
    TokenRequest,
    TokenResult,
)
from idserver.metrics import track_grant
from idserver.scopes import format_scope, parse_scope, validate_requested_scopes
from idserver.token.issuer import TokenIssuer
from idserver.token.schemas import TokenClaims, TokenType
from idserver.token.validator import TokenValidator
from idserver.user.service import UserService

# RFC 7636 section 4.1: 43-128 unreserved characters.
PKCE_PATTERN = re.compile(r"^[A-Za-z0-9\-\._~]{43,128}$")


def pkce_challenge(verifier: str, method: str) -> str:
    """
    Derive the code challenge for a verifier.
    """
    if method == "S256":
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier


def with_query(uri: str, params: dict) -> str:
    """Append query parameters to a (registered) redirect URI."""
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return f"{uri}{'&' if '?' in uri else '?'}{query}"


class GrantFlowController:
    def __init__(
        self,
        clients: ClientRegistry,
        sessions: AuthorizationSessionStore,
        issuer: TokenIssuer,
        validator: TokenValidator,
        users: UserService,
        supported_scopes: List[str],
        verification_uri: str,
        clock: Callable[[], float] = time.time,
    ):
        self.clients = clients
        self.sessions = sessions
        self.issuer = issuer
        self.validator = validator
        self.users = users
        self.supported_scopes = list(supported_scopes)
        self.verification_uri = verification_uri
        self.clock = clock
        self.handlers: Dict[GrantType, Callable[[Client, TokenRequest], Awaitable[TokenResult]]] = {
            GrantType.AUTHORIZATION_CODE: self._authorization_code,
            GrantType.REFRESH_TOKEN: self._refresh_token,
            GrantType.DEVICE_CODE: self._device_code,
            GrantType.PASSWORD: self._password,
        }

    def _check_scopes(self, client: Client, scopes: List[str]) -> None:
        valid, message = validate_requested_scopes(
            scopes, client.allowed_scopes or [], self.supported_scopes
        )
        if not valid:
            raise InvalidScope(message)

    # Authorization endpoint.
    async def validate_authorization_request(
        self, params: AuthorizeParams
    ) -> AuthorizationContext:
        """
        Validate an authorization request. Errors about the client or redirect
        URI are raised directly (they must not redirect); every other error is
        wrapped in AuthorizationRedirect.
        """
        client = await self.clients.lookup(params.client_id)
        if not params.redirect_uri or not client.is_valid_redirect_uri(params.redirect_uri):
            logger.warning(
                f"Rejected authorization request for {client.client_id}: "
                f"unregistered redirect_uri={params.redirect_uri}"
            )
            raise InvalidRedirectURI()
        try:
            if params.response_type != "code":
                raise UnsupportedResponseType()
            if not client.allows_grant(GrantType.AUTHORIZATION_CODE.value):
                raise UnauthorizedClient()
            scopes = parse_scope(params.scope)
            if not scopes:
                raise InvalidScope("At least one scope is required")
            self._check_scopes(client, scopes)
            method = None
            if params.code_challenge:
                method = params.code_challenge_method or "plain"
                if method not in PKCE_METHODS:
                    raise InvalidRequest(f"Unsupported code_challenge_method: {method}")
                if not PKCE_PATTERN.match(params.code_challenge):
                    raise InvalidRequest("Malformed code_challenge")
            elif client.requires_pkce or client.is_public:
                raise InvalidRequest("code_challenge is required for this client")
        except OAuthError as exc:
            logger.warning(
                f"Rejected authorization request for {client.client_id}: "
                f"{exc.error} {exc.description}"
            )
            raise AuthorizationRedirect(exc, params.redirect_uri, params.state)
        return AuthorizationContext(
            client_id=client.client_id,
            client_name=client.name,
            redirect_uri=params.redirect_uri,
            scopes=scopes,
            state=params.state,
            nonce=params.nonce,
            code_challenge=params.code_challenge,
            code_challenge_method=method,
        )

    async def authorize(
        self,
        context: AuthorizationContext,
        subject_id: str,
        auth_time: Optional[int] = None,
    ) -> str:
        """
        Issue an authorization code for an authenticated, consenting user and
        return the redirect URL carrying code and state.
        """
        code = await self.sessions.create(
            AuthorizationRequest(
                client_id=context.client_id,
                subject_id=subject_id,
                requested_scopes=context.scopes,
                redirect_uri=context.redirect_uri,
                code_challenge=context.code_challenge,
                code_challenge_method=context.code_challenge_method,
                nonce=context.nonce,
                state=context.state,
                auth_time=auth_time or int(self.clock()),
            )
        )
        return with_query(context.redirect_uri, {"code": code, "state": context.state})

    @staticmethod
    def error_redirect(redirect: AuthorizationRedirect) -> str:
        return with_query(
            redirect.redirect_uri,
            {
                "error": redirect.error.error,
                "error_description": redirect.error.description,
                "state": redirect.state,
            },
        )

    # Token endpoint.
    async def token(self, request: TokenRequest) -> TokenResult:
        """
        Run the token endpoint for any grant type, failing closed.
        """
        grant_label = request.grant_type
        try:
            if not request.grant_type:
                raise InvalidRequest("grant_type is required")
            grant_type = GrantType.parse(request.grant_type)
            grant_label = grant_type.value
            client = await self.clients.authenticate(request.client_id, request.client_secret)
            if not client.allows_grant(grant_type.value):
                raise UnauthorizedClient(
                    f"Client {client.client_id} may not use the {grant_type.value} grant"
                )
            result = await self.handlers[grant_type](client, request)
        except OAuthError as exc:
            track_grant(grant_label, exc.error)
            logger.warning(
                f"Token request failed grant_type={grant_label} client={request.client_id}: "
                f"{exc.error} ({type(exc).__name__}: {exc.description})"
            )
            raise
        track_grant(grant_label, "success")
        logger.success(f"Issued tokens via {grant_label} to client={request.client_id}")
        return result

    async def _issue(
        self,
        client: Client,
        subject_id: str,
        scopes: List[str],
        nonce: Optional[str] = None,
        auth_time: Optional[int] = None,
    ) -> TokenResult:
        refresh_token = None
        if SCOPE_OFFLINE_ACCESS in scopes and client.allows_grant(GrantType.REFRESH_TOKEN.value):
            refresh_token = (
                await self.issuer.issue_refresh_token(
                    subject_id, client, scopes, auth_time=auth_time
                )
            ).token
        access = self.issuer.issue_access_token(subject_id, client, scopes)
        id_token = None
        if SCOPE_OPENID in scopes:
            id_token = await self._id_token(client, subject_id, scopes, nonce, auth_time, access.token)
        return TokenResult(
            access_token=access.token,
            expires_in=access.expires_in,
            refresh_token=refresh_token,
            id_token=id_token,
            scope=format_scope(scopes),
        )

    async def _id_token(
        self,
        client: Client,
        subject_id: str,
        scopes: List[str],
        nonce: Optional[str],
        auth_time: Optional[int],
        access_token: str,
    ) -> str:
        user = await self.users.get(subject_id)
        return self.issuer.issue_id_token(
            subject_id,
            client,
            nonce,
            auth_time,
            scopes,
            access_token=access_token,
            identity_claims=user.claims(scopes) if user else None,
        ).token

    async def _authorization_code(self, client: Client, request: TokenRequest) -> TokenResult:
        if not request.code:
            raise InvalidRequest("code is required")
        record = await self.sessions.consume(request.code)
        if record.client_id != client.client_id:
            raise GrantError("The authorization code was issued to another client")
        if request.redirect_uri != record.redirect_uri:
            raise GrantError("redirect_uri does not match the authorization request")
        if record.code_challenge:
            if not request.code_verifier or not PKCE_PATTERN.match(request.code_verifier):
                raise PKCEMismatch("A valid code_verifier is required")
            derived = pkce_challenge(request.code_verifier, record.code_challenge_method or "plain")
            if not hmac.compare_digest(derived.encode(), record.code_challenge.encode()):
                raise PKCEMismatch("code_verifier does not match the code_challenge")
        elif client.requires_pkce or client.is_public or request.code_verifier:
            raise PKCEMismatch("The authorization request carried no code_challenge")
        return await self._issue(
            client,
            record.subject_id,
            record.requested_scopes,
            nonce=record.nonce,
            auth_time=record.auth_time,
        )

    async def _refresh_token(self, client: Client, request: TokenRequest) -> TokenResult:
        if not request.refresh_token:
            raise InvalidRequest("refresh_token is required")
        try:
            claims = await self.validator.validate(
                request.refresh_token,
                expected_audience=client.client_id,
                token_type=TokenType.REFRESH,
            )
        except Revoked as exc:
            # Signature and audience held; rotation decides between revoked and replayed.
            claims = TokenClaims(**exc.claims)
        except TokenValidationError:
            raise GrantError("The refresh token is invalid")

        original = claims.scopes
        requested = parse_scope(request.scope) or original
        widened = set(requested) - set(original)
        if widened:
            raise InvalidScope(f"Scope cannot be widened on refresh: {sorted(widened)}")

        issued, record = await self.issuer.rotate_refresh_token(claims, client, original)
        access = self.issuer.issue_access_token(record.subject_id, client, requested)
        id_token = None
        if SCOPE_OPENID in requested:
            id_token = await self._id_token(
                client, record.subject_id, requested, None, record.auth_time, access.token
            )
        return TokenResult(
            access_token=access.token,
            expires_in=access.expires_in,
            refresh_token=issued.token,
            id_token=id_token,
            scope=format_scope(requested),
        )

    async def _device_code(self, client: Client, request: TokenRequest) -> TokenResult:
        if not request.device_code:
            raise InvalidRequest("device_code is required")
        authorization = await self.sessions.poll(request.device_code, client_id=client.client_id)
        return await self._issue(
            client,
            authorization.subject_id,
            authorization.scopes,
            auth_time=authorization.auth_time,
        )

    async def _password(self, client: Client, request: TokenRequest) -> TokenResult:
        if not request.username or not request.password:
            raise InvalidRequest("username and password are required")
        scopes = parse_scope(request.scope)
        if not scopes:
            raise InvalidScope("At least one scope is required")
        self._check_scopes(client, scopes)
        user = await self.users.authenticate(request.username, request.password)
        if not user:
            raise GrantError("Invalid resource owner credentials")
        return await self._issue(client, user.user_id, scopes, auth_time=int(self.clock()))

    # Device authorization endpoint.
    async def device_authorization(
        self, client_id: Optional[str], client_secret: Optional[str], scope: Optional[str]
    ) -> DeviceAuthorizationResult:
        client = await self.clients.authenticate(client_id, client_secret)
        if not client.allows_grant(GrantType.DEVICE_CODE.value):
            raise UnauthorizedClient()
        scopes = parse_scope(scope)
        if not scopes:
            raise InvalidScope("At least one scope is required")
        self._check_scopes(client, scopes)
        authorization = await self.sessions.create_device(client.client_id, scopes)
        return DeviceAuthorizationResult(
            device_code=authorization.device_code,
            user_code=authorization.user_code,
            verification_uri=self.verification_uri,
            verification_uri_complete=with_query(
                self.verification_uri, {"user_code": authorization.user_code}
            ),
            expires_in=int(authorization.expires_at - self.clock()),
            interval=authorization.poll_interval,
        )

    # Token lifecycle.
    async def userinfo(self, token: Optional[str]) -> dict:
        try:
            claims = await self.validator.validate(token, token_type=TokenType.ACCESS)
        except TokenValidationError:
            raise InvalidToken()
        if SCOPE_OPENID not in claims.scopes:
            raise InsufficientScope()
        user = await self.users.get(claims.sub)
        if not user:
            logger.warning(f"Userinfo requested for unknown subject {claims.sub}")
            raise InvalidToken()
        return user.claims(claims.scopes)

    async def introspect(
        self, client_id: Optional[str], client_secret: Optional[str], token: Optional[str]
    ) -> dict:
        """
        RFC 7662 introspection; any failure is reported as {"active": false}.
        """
        client = await self.clients.authenticate(client_id, client_secret)
        if not token:
            raise InvalidRequest("token is required")
        try:
            claims = await self.validator.validate(token)
        except TokenValidationError:
            return {"active": False}
        if claims.token_use == TokenType.ID.value:
            return {"active": False}
        logger.info(f"Client {client.client_id} introspected token {claims.jti}")
        return {
            "active": True,
            "scope": claims.scope,
            "client_id": claims.client_id,
            "sub": claims.sub,
            "aud": claims.aud,
            "iss": claims.iss,
            "iat": claims.iat,
            "exp": claims.exp,
            "jti": claims.jti,
            "token_type": "refresh_token" if claims.token_use == TokenType.REFRESH.value else "Bearer",
        }

    async def revoke(
        self, client_id: Optional[str], client_secret: Optional[str], token: Optional[str]
    ) -> None:
        """
        RFC 7009 revocation. Unknown, invalid or foreign tokens are ignored.
        Revoking a refresh token revokes its whole family.
        """
        client = await self.clients.authenticate(client_id, client_secret)
        if not token:
            raise InvalidRequest("token is required")
        try:
            claims = await self.validator.validate(token)
        except TokenValidationError as exc:
            logger.info(f"Ignoring revocation of unusable token ({exc.reason})")
            return
        if client.client_id not in claims.audiences:
            logger.warning(
                f"Client {client.client_id} attempted to revoke a token issued to {claims.aud}"
            )
            return
        if claims.token_use == TokenType.REFRESH.value:
            await self.issuer.revoke_family(claims.fid or claims.jti)
        else:
            await self.issuer.revoke_access_token(claims.jti, claims.exp)

    async def logout_redirect(
        self,
        client_id: Optional[str],
        post_logout_redirect_uri: Optional[str],
        state: Optional[str] = None,
        id_token_hint: Optional[str] = None,
    ) -> Optional[str]:
        """
        End-session: returns the validated post-logout redirect, or None when
        no redirect was requested.
        """
        if not post_logout_redirect_uri:
            return None
        if not client_id and id_token_hint:
            try:
                hint = await self.validator.validate(id_token_hint, token_type=TokenType.ID)
            except TokenValidationError:
                raise InvalidRequest("Invalid id_token_hint")
            client_id = hint.audiences[0]
        if not client_id:
            raise InvalidRequest("client_id or id_token_hint is required")
        client = await self.clients.lookup(client_id)
        if not client.is_valid_post_logout_redirect_uri(post_logout_redirect_uri):
            raise InvalidRequest("post_logout_redirect_uri is not registered")
        return with_query(post_logout_redirect_uri, {"state": state})
