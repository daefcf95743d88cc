"""
HTML pages for the authorization, device verification and error flows.
"""

from pathlib import Path
from typing import List, Optional

from jinja2 import Environment, FileSystemLoader

# Set up Jinja2 environment
_template_dir = Path(__file__).parent / "templates"
_env = Environment(
    loader=FileSystemLoader(_template_dir),
    autoescape=True,
)


def authorize_page(
    client_id: str,
    redirect_uri: str,
    app_name: str,
    scope: str,
    scopes: List[str],
    state: str = "",
    nonce: str = "",
    code_challenge: str = "",
    code_challenge_method: str = "",
    error: str = "",
) -> str:
    """Login + consent page (application name and requested scopes)."""
    template = _env.get_template("authorize.jinja2")
    return template.render(
        client_id=client_id,
        redirect_uri=redirect_uri,
        app_name=app_name,
        scope=scope,
        scopes=scopes,
        state=state,
        nonce=nonce,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        error=error,
    )


def error_page(error: str, error_description: str = "") -> str:
    """Generate an error page HTML."""
    template = _env.get_template("error.jinja2")
    return template.render(
        error=error,
        error_description=error_description,
    )


def verify_page(
    user_code: str = "",
    app_name: Optional[str] = None,
    scopes: Optional[List[str]] = None,
    error: str = "",
    message: str = "",
) -> str:
    """Device verification page: user code entry, sign-in and approval."""
    template = _env.get_template("verify.jinja2")
    return template.render(
        user_code=user_code,
        app_name=app_name,
        scopes=scopes or [],
        error=error,
        message=message,
    )


def message_page(title: str, message: str) -> str:
    template = _env.get_template("message.jinja2")
    return template.render(title=title, message=message)
