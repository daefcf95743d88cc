"""
Scope registry, plus helpers used for consent pages and scope validation.

Scope Format:
-------------
Scopes are single space-delimited tokens (RFC 6749 section 3.3):
- "openid" - Required for OpenID Connect; enables the id_token
- "profile", "email", "roles" - Standard identity claims in id_token/userinfo
- "offline_access" - Allows a refresh token to be issued
- "dataEventRecords" - Application API scope
"""

from typing import Dict, Iterable, List

SCOPE_DESCRIPTIONS = {
    "openid": "Sign you in with your account",
    "profile": "Read your basic profile (name, username)",
    "email": "Read your email address",
    "roles": "Read the roles assigned to your account",
    "offline_access": "Keep access while you are not using the application",
    "dataEventRecords": "Read and write data event records",
}

# Identity claims released per scope, in id_token and at userinfo.
SCOPE_CLAIMS: Dict[str, List[str]] = {
    "profile": ["name", "given_name", "family_name", "preferred_username"],
    "email": ["email", "email_verified"],
    "roles": ["roles"],
}


def parse_scope(scope: str | None) -> List[str]:
    """
    Split a space-delimited scope string, dropping duplicates but keeping order.
    """
    if not scope:
        return []
    seen = []
    for item in scope.split():
        if item not in seen:
            seen.append(item)
    return seen


def format_scope(scopes: Iterable[str]) -> str:
    return " ".join(scopes)


def get_scope_description(scope: str) -> str:
    return SCOPE_DESCRIPTIONS.get(scope, f"Access: {scope}")


def get_scope_descriptions(scopes: List[str]) -> List[str]:
    """
    Human-readable descriptions for a list of scopes, used for consent pages.
    """
    return [get_scope_description(s) for s in scopes]


def validate_requested_scopes(
    requested: List[str],
    allowed: Iterable[str],
    supported: Iterable[str],
) -> tuple[bool, str | None]:
    """
    Validate that every requested scope is supported and allowed for the client.

    Returns (is_valid, error_message).
    """
    allowed = set(allowed)
    supported = set(supported)
    for scope in requested:
        if scope not in supported:
            return False, f"Unknown scope: {scope}"
        if scope not in allowed:
            return False, f"Scope '{scope}' is not allowed for this client"
    return True, None
