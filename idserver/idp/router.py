"""
OpenID Connect router: authorization, token and token lifecycle endpoints.
"""

import base64
import binascii
from typing import Optional, Tuple
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from loguru import logger

from idserver.constants import PKCE_METHODS
from idserver.exceptions import (
    AccessDenied,
    AuthorizationRedirect,
    ClientError,
    CodeNotFound,
    DeviceCodeExpired,
    InvalidRequest,
    InvalidToken,
    OAuthError,
)
from idserver.grant.schemas import AuthorizeParams, GrantType, TokenRequest
from idserver.grant.service import GrantFlowController
from idserver.idp.response import DiscoveryResponse, IntrospectionResponse
from idserver.idp.templater import authorize_page, error_page, message_page, verify_page
from idserver.provider import Provider, get_provider
from idserver.scopes import SCOPE_CLAIMS, get_scope_descriptions

router = APIRouter()
well_known_router = APIRouter()

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def client_credentials(
    request: Request, client_id: Optional[str], client_secret: Optional[str]
) -> Tuple[Optional[str], Optional[str]]:
    """
    Client credentials from HTTP Basic auth (client_secret_basic) or the form
    body (client_secret_post).
    """
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Basic "):
        try:
            decoded = base64.b64decode(auth_header[6:], validate=True).decode()
            header_client_id, header_client_secret = decoded.split(":", 1)
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise InvalidRequest("Malformed Basic authorization header")
        if client_id and client_id != unquote(header_client_id):
            raise InvalidRequest("client_id does not match the authorization header")
        return unquote(header_client_id), unquote(header_client_secret)
    return client_id, client_secret


def bearer_token(request: Request, access_token: Optional[str] = None) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:].strip()
    return access_token


def _authorize_html(context, error: str = ""):
    return authorize_page(
        client_id=context.client_id,
        redirect_uri=context.redirect_uri,
        app_name=context.client_name,
        scope=" ".join(context.scopes),
        scopes=get_scope_descriptions(context.scopes),
        state=context.state or "",
        nonce=context.nonce or "",
        code_challenge=context.code_challenge or "",
        code_challenge_method=context.code_challenge_method or "",
        error=error,
    )


async def _validate_or_render(grants: GrantFlowController, params: AuthorizeParams):
    """
    Validate an authorization request; client and redirect URI problems are
    shown on an error page instead of redirecting to an unverified URI.
    """
    try:
        return await grants.validate_authorization_request(params), None
    except ClientError as exc:
        return None, HTMLResponse(
            content=error_page(exc.error, exc.description or ""),
            status_code=400,
        )


@router.get("/authorize", response_class=HTMLResponse)
async def authorize_get(
    response_type: Optional[str] = Query(None),
    client_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    nonce: Optional[str] = Query(None),
    code_challenge: Optional[str] = Query(None),
    code_challenge_method: Optional[str] = Query(None),
    provider: Provider = Depends(get_provider),
):
    """
    OAuth2 Authorization Endpoint: validate the request and render the
    login/consent page.
    """
    params = AuthorizeParams(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        state=state,
        nonce=nonce,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
    )
    context, failure = await _validate_or_render(provider.grants, params)
    if failure:
        return failure
    return HTMLResponse(content=_authorize_html(context))


@router.post("/authorize")
async def authorize_post(
    action: str = Form(...),
    response_type: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    scope: Optional[str] = Form(None),
    state: Optional[str] = Form(None),
    nonce: Optional[str] = Form(None),
    code_challenge: Optional[str] = Form(None),
    code_challenge_method: Optional[str] = Form(None),
    username: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    provider: Provider = Depends(get_provider),
):
    """
    Handle the login/consent form: authenticate the user, then redirect back
    to the client with a code (or an error).
    """
    params = AuthorizeParams(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        state=state or None,
        nonce=nonce or None,
        code_challenge=code_challenge or None,
        code_challenge_method=code_challenge_method or None,
    )
    context, failure = await _validate_or_render(provider.grants, params)
    if failure:
        return failure

    if action == "deny":
        logger.info(f"User denied authorization request for {context.client_id}")
        raise AuthorizationRedirect(
            AccessDenied("The user denied the request"), context.redirect_uri, context.state
        )

    user = None
    if username and password:
        user = await provider.users.authenticate(username, password)
    if not user:
        return HTMLResponse(
            content=_authorize_html(context, error="Invalid username or password"),
            status_code=400,
        )
    location = await provider.grants.authorize(context, user.user_id)
    return RedirectResponse(url=location, status_code=302)


@router.post("/token")
async def token_endpoint(
    request: Request,
    grant_type: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
    device_code: Optional[str] = Form(None),
    username: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    scope: Optional[str] = Form(None),
    provider: Provider = Depends(get_provider),
):
    """OAuth2 Token Endpoint, for every supported grant type."""
    client_id, client_secret = client_credentials(request, client_id, client_secret)
    result = await provider.grants.token(
        TokenRequest(
            grant_type=grant_type,
            client_id=client_id,
            client_secret=client_secret,
            code=code,
            redirect_uri=redirect_uri,
            code_verifier=code_verifier,
            refresh_token=refresh_token,
            device_code=device_code,
            username=username,
            password=password,
            scope=scope,
        )
    )
    return JSONResponse(content=result.model_dump(exclude_none=True), headers=NO_STORE)


@router.post("/device")
async def device_authorization_endpoint(
    request: Request,
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    scope: Optional[str] = Form(None),
    provider: Provider = Depends(get_provider),
):
    """Device Authorization Endpoint (RFC 8628)."""
    client_id, client_secret = client_credentials(request, client_id, client_secret)
    result = await provider.grants.device_authorization(client_id, client_secret, scope)
    return JSONResponse(content=result.model_dump(), headers=NO_STORE)


@router.get("/verify", response_class=HTMLResponse)
async def verify_get(
    user_code: Optional[str] = Query(None),
    provider: Provider = Depends(get_provider),
):
    """Device verification page, optionally pre-filled from verification_uri_complete."""
    if not user_code:
        return HTMLResponse(content=verify_page())
    try:
        authorization = await provider.sessions.lookup_user_code(user_code)
        client = await provider.clients.lookup(authorization.client_id)
    except (CodeNotFound, ClientError):
        return HTMLResponse(
            content=verify_page(user_code=user_code, error="Unknown or expired code"),
            status_code=400,
        )
    if authorization.status.terminal:
        return HTMLResponse(
            content=verify_page(user_code=user_code, error="This code is no longer valid"),
            status_code=400,
        )
    return HTMLResponse(
        content=verify_page(
            user_code=authorization.user_code,
            app_name=client.name,
            scopes=get_scope_descriptions(authorization.scopes),
        )
    )


@router.post("/verify", response_class=HTMLResponse)
async def verify_post(
    user_code: str = Form(...),
    action: str = Form(...),
    username: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    provider: Provider = Depends(get_provider),
):
    """Approve or deny a device authorization."""
    try:
        authorization = await provider.sessions.lookup_user_code(user_code)
    except CodeNotFound:
        return HTMLResponse(
            content=verify_page(user_code=user_code, error="Unknown or expired code"),
            status_code=400,
        )
    try:
        if action == "deny":
            await provider.sessions.deny(authorization.user_code)
            return HTMLResponse(
                content=verify_page(message="The request was denied. You can close this window.")
            )
        user = None
        if username and password:
            user = await provider.users.authenticate(username, password)
        if not user:
            return HTMLResponse(
                content=verify_page(
                    user_code=authorization.user_code, error="Invalid username or password"
                ),
                status_code=400,
            )
        result = await provider.sessions.approve(authorization.user_code, user.user_id)
    except DeviceCodeExpired:
        return HTMLResponse(
            content=verify_page(user_code=user_code, error="This code has expired"),
            status_code=400,
        )
    if result.subject_id != user.user_id:
        return HTMLResponse(
            content=verify_page(user_code=user_code, error="This code is no longer valid"),
            status_code=400,
        )
    return HTMLResponse(
        content=verify_page(message="Your device is now connected. You can close this window.")
    )


@router.api_route("/userinfo", methods=["GET", "POST"])
async def userinfo_endpoint(
    request: Request,
    provider: Provider = Depends(get_provider),
):
    """OpenID Connect UserInfo Endpoint."""
    access_token = None
    if request.method == "POST":
        form = await request.form()
        access_token = form.get("access_token")
    token = bearer_token(request, access_token)
    if not token:
        raise InvalidToken("Missing bearer token")
    return JSONResponse(content=await provider.grants.userinfo(token), headers=NO_STORE)


@router.post(
    "/introspect", response_model=IntrospectionResponse, response_model_exclude_none=True
)
async def introspect_endpoint(
    request: Request,
    token: Optional[str] = Form(None),
    token_type_hint: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    provider: Provider = Depends(get_provider),
):
    """OAuth2 Token Introspection Endpoint (RFC 7662)."""
    client_id, client_secret = client_credentials(request, client_id, client_secret)
    return await provider.grants.introspect(client_id, client_secret, token)


@router.post("/revoke")
async def revoke_endpoint(
    request: Request,
    token: Optional[str] = Form(None),
    token_type_hint: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    provider: Provider = Depends(get_provider),
):
    """OAuth2 Token Revocation Endpoint (RFC 7009); always 200 for authenticated clients."""
    client_id, client_secret = client_credentials(request, client_id, client_secret)
    await provider.grants.revoke(client_id, client_secret, token)
    return JSONResponse(content={}, status_code=200)


@router.get("/logout")
async def logout_endpoint(
    id_token_hint: Optional[str] = Query(None),
    client_id: Optional[str] = Query(None),
    post_logout_redirect_uri: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    provider: Provider = Depends(get_provider),
):
    """RP-initiated logout."""
    try:
        location = await provider.grants.logout_redirect(
            client_id, post_logout_redirect_uri, state, id_token_hint
        )
    except OAuthError as exc:
        return HTMLResponse(
            content=error_page(exc.error, exc.description or ""),
            status_code=400,
        )
    if location:
        return RedirectResponse(url=location, status_code=302)
    return HTMLResponse(content=message_page("Signed out", "You have been signed out."))


@well_known_router.get("/openid-configuration", response_model=DiscoveryResponse)
async def discovery(provider: Provider = Depends(get_provider)):
    """OpenID Provider configuration document."""
    settings = provider.settings
    base = settings.issuer.rstrip("/")
    claims = ["sub", "iss", "aud", "exp", "iat", "auth_time", "nonce", "at_hash"]
    for scope_claims in SCOPE_CLAIMS.values():
        claims.extend(scope_claims)
    return DiscoveryResponse(
        issuer=settings.issuer,
        authorization_endpoint=f"{base}/connect/authorize",
        token_endpoint=f"{base}/connect/token",
        device_authorization_endpoint=f"{base}/connect/device",
        userinfo_endpoint=f"{base}/connect/userinfo",
        introspection_endpoint=f"{base}/connect/introspect",
        revocation_endpoint=f"{base}/connect/revoke",
        end_session_endpoint=f"{base}/connect/logout",
        jwks_uri=f"{base}/.well-known/jwks.json",
        scopes_supported=list(settings.supported_scopes),
        grant_types_supported=[grant_type.value for grant_type in GrantType],
        id_token_signing_alg_values_supported=sorted(
            {key.algorithm for key in provider.keyring.keys}
        ),
        code_challenge_methods_supported=list(PKCE_METHODS),
        claims_supported=claims,
    )


@well_known_router.get("/jwks.json")
async def jwks(provider: Provider = Depends(get_provider)):
    """Public keys for every retained signing key."""
    return JSONResponse(
        content=provider.keyring.jwks(),
        headers={"Cache-Control": "public, max-age=300"},
    )
