"""
Component container: builds every collaborator once and hands them out to
the HTTP layer through app.state.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from idserver.authorization.service import AuthorizationSessionStore
from idserver.client.service import ClientRegistry
from idserver.config import Settings
from idserver.database import SessionFactory
from idserver.grant.service import GrantFlowController
from idserver.sweeper import Sweeper
from idserver.token.issuer import TokenIssuer
from idserver.token.keys import KeyRing
from idserver.token.validator import TokenValidator
from idserver.user.service import UserService


@dataclass
class Provider:
    settings: Settings
    redis_client: object
    session_maker: SessionFactory
    clock: Callable[[], float]
    users: UserService
    clients: ClientRegistry
    sessions: AuthorizationSessionStore
    keyring: KeyRing
    issuer: TokenIssuer
    validator: TokenValidator
    grants: GrantFlowController
    sweeper: Sweeper
    engine: Optional[AsyncEngine] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        redis_client,
        session_maker: SessionFactory,
        clock: Callable[[], float] = time.time,
        engine: Optional[AsyncEngine] = None,
    ) -> "Provider":
        users = UserService(session_maker)
        clients = ClientRegistry(session_maker, redis_client)
        sessions = AuthorizationSessionStore(
            redis_client,
            clock=clock,
            auth_code_lifetime=settings.auth_code_lifetime,
            device_code_lifetime=settings.device_code_lifetime,
            poll_interval=settings.device_poll_interval,
        )
        keyring = KeyRing(
            session_maker,
            settings.signing_key_passphrase.get_secret_value(),
            clock=clock,
            rotation_interval=settings.key_rotation_interval,
            max_token_lifetime=settings.max_token_lifetime,
            retained=settings.signing_keys_retained,
        )
        issuer = TokenIssuer(
            keyring,
            session_maker,
            redis_client,
            settings.issuer,
            clock=clock,
            access_token_lifetime=settings.access_token_lifetime,
            id_token_lifetime=settings.id_token_lifetime,
            reuse_grace=settings.refresh_token_reuse_grace,
        )
        validator = TokenValidator(keyring, issuer, clock=clock)
        grants = GrantFlowController(
            clients,
            sessions,
            issuer,
            validator,
            users,
            supported_scopes=settings.supported_scopes,
            verification_uri=f"{settings.issuer.rstrip('/')}{settings.verification_path}",
            clock=clock,
        )
        sweeper = Sweeper(
            sessions,
            issuer,
            keyring,
            interval=settings.sweep_interval,
            retention=settings.refresh_token_retention,
        )
        return cls(
            settings=settings,
            redis_client=redis_client,
            session_maker=session_maker,
            clock=clock,
            users=users,
            clients=clients,
            sessions=sessions,
            keyring=keyring,
            issuer=issuer,
            validator=validator,
            grants=grants,
            sweeper=sweeper,
            engine=engine,
        )


def get_provider(request: Request) -> Provider:
    return request.app.state.provider
