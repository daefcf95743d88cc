"""
Administrative client registry endpoints (X-Admin-Key protected).
"""

import hmac
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from idserver.client.response import ClientCreationResponse, ClientResponse
from idserver.client.schemas import ClientArgs, ClientUpdateArgs
from idserver.exceptions import ClientNotFound
from idserver.provider import Provider, get_provider

router = APIRouter()


def require_admin(
    x_admin_key: Optional[str] = Header(None),
    provider: Provider = Depends(get_provider),
) -> None:
    expected = provider.settings.admin_api_key
    if expected is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Client administration is disabled",
        )
    if not x_admin_key or not hmac.compare_digest(
        x_admin_key.encode(), expected.get_secret_value().encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )


@router.get("", response_model=List[ClientResponse], dependencies=[Depends(require_admin)])
async def list_clients(provider: Provider = Depends(get_provider)):
    return [ClientResponse.model_validate(client) for client in await provider.clients.list()]


@router.post(
    "",
    response_model=ClientCreationResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def register_client(args: ClientArgs, provider: Provider = Depends(get_provider)):
    """Register a new client; the generated secret is only shown here."""
    client_id = await provider.clients.register(args)
    client = await provider.clients.lookup(client_id)
    response = ClientCreationResponse.model_validate(client)
    response.client_secret = args.client_secret
    return response


@router.get(
    "/{client_id}", response_model=ClientResponse, dependencies=[Depends(require_admin)]
)
async def get_client(client_id: str, provider: Provider = Depends(get_provider)):
    try:
        client = await provider.clients.lookup(client_id)
    except ClientNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return ClientResponse.model_validate(client)


@router.patch(
    "/{client_id}", response_model=ClientResponse, dependencies=[Depends(require_admin)]
)
async def update_client(
    client_id: str,
    changes: ClientUpdateArgs,
    provider: Provider = Depends(get_provider),
):
    try:
        client = await provider.clients.update(client_id, changes)
    except ClientNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return ClientResponse.model_validate(client)
