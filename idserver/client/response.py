"""
Response models for the client registry.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class ClientResponse(BaseModel):
    """Public view of a registered client (never includes the secret hash)."""

    client_id: str
    name: str
    active: bool
    is_public: bool
    allowed_grant_types: List[str]
    redirect_uris: List[str]
    post_logout_redirect_uris: List[str]
    allowed_scopes: List[str]
    requires_pkce: bool
    access_token_lifetime: Optional[int] = None
    refresh_token_lifetime_days: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ClientCreationResponse(ClientResponse):
    """Returned once at registration; the secret is not retrievable afterwards."""

    client_secret: Optional[str] = None
