"""
Client registry: registration, cached lookup and client authentication.
"""

from typing import List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from idserver.client.schemas import Client, ClientArgs, ClientUpdateArgs
from idserver.constants import CLIENT_CACHE_SECONDS, CLIENT_NEGATIVE_CACHE_SECONDS
from idserver.database import SessionFactory, persistent_write
from idserver.exceptions import ClientAlreadyExists, ClientNotFound, InvalidSecret

NEGATIVE_MARKER = "__none__"


class ClientRegistry:
    """
    Holds registered client applications. Records are immutable after
    registration except through update(), which also drops the cached copy.
    """

    def __init__(self, session_maker: SessionFactory, redis_client):
        self.session_maker = session_maker
        self.redis_client = redis_client

    @staticmethod
    def cache_key(client_id: str) -> str:
        return f"idp:client:{client_id}"

    @persistent_write
    async def register(self, args: ClientArgs) -> str:
        """
        Persist a new client, returning its client_id. The secret (if any) is
        stored as an argon2 hash only.
        """
        client = Client.create(args)
        async with self.session_maker() as session:
            session.add(client)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ClientAlreadyExists() from exc
        await self.invalidate(client.client_id)
        logger.success(
            f"Registered {'public' if client.is_public else 'confidential'} client "
            f"{client.client_id} ({client.name}) grants={client.allowed_grant_types}"
        )
        return client.client_id

    @persistent_write
    async def update(self, client_id: str, changes: ClientUpdateArgs) -> Client:
        async with self.session_maker() as session:
            client = (
                await session.execute(select(Client).where(Client.client_id == client_id))
            ).scalar_one_or_none()
            if not client:
                raise ClientNotFound(f"Unknown client: {client_id}")
            for key, value in changes.model_dump(exclude_unset=True).items():
                setattr(client, key, value)
            await session.commit()
            await session.refresh(client)
        await self.invalidate(client_id)
        logger.info(f"Updated client {client_id}: {changes.model_dump(exclude_unset=True)}")
        return client

    async def invalidate(self, client_id: str):
        """Invalidate the cache for a client."""
        await self.redis_client.delete(self.cache_key(client_id))

    async def lookup(self, client_id: Optional[str]) -> Client:
        """
        Load an active client by client_id, with caching (negative results
        are cached briefly).
        """
        if not client_id:
            raise ClientNotFound("Missing client_id")
        cache_key = self.cache_key(client_id)
        cached = await self.redis_client.get(cache_key)
        if cached:
            if cached in (NEGATIVE_MARKER, NEGATIVE_MARKER.encode()):
                raise ClientNotFound(f"Unknown client: {client_id}")
            try:
                return Client.from_json(cached)
            except (ValueError, TypeError) as exc:
                logger.warning(f"Discarding unreadable cache entry for client {client_id}: {exc}")
                await self.redis_client.delete(cache_key)

        async with self.session_maker() as session:
            client = (
                await session.execute(
                    select(Client).where(Client.client_id == client_id, Client.active.is_(True))
                )
            ).scalar_one_or_none()
        if not client:
            await self.redis_client.set(cache_key, NEGATIVE_MARKER, ex=CLIENT_NEGATIVE_CACHE_SECONDS)
            raise ClientNotFound(f"Unknown client: {client_id}")
        await self.redis_client.set(cache_key, client.to_json(), ex=CLIENT_CACHE_SECONDS)
        return client

    async def list(self) -> List[Client]:
        async with self.session_maker() as session:
            return list(
                (await session.execute(select(Client).order_by(Client.created_at))).scalars().all()
            )

    async def verify_secret(self, client_id: str, secret: str) -> bool:
        client = await self.lookup(client_id)
        return client.verify_secret(secret)

    async def authenticate(self, client_id: Optional[str], secret: Optional[str]) -> Client:
        """
        Authenticate a client at the token/introspection/revocation endpoints.
        Confidential clients must present their secret; public clients must not
        present one.
        """
        client = await self.lookup(client_id)
        if client.is_public:
            if secret:
                logger.warning(f"Secret presented for public client {client_id}")
                raise InvalidSecret()
            return client
        if not secret or not client.verify_secret(secret):
            logger.warning(f"Client secret verification failed for {client_id}")
            raise InvalidSecret()
        return client
