"""
Unit test fixtures: an in-process redis, a throwaway sqlite database and a
controllable clock, wired together the same way the app wires them.
"""

import fakeredis
import pytest
import pytest_asyncio

from idserver.config import Settings

NOW = 1_700_000_000.0
REDIRECT_URI = "https://app.example.com/callback"
LOGOUT_URI = "https://app.example.com/signed-out"


class FakeClock:
    """Injected in place of time.time; only moves when told to."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        issuer="https://idp.example.com",
        sqlalchemy=f"sqlite+aiosqlite:///{tmp_path}/idp.db",
        admin_api_key="test-admin-key",
        signing_key_passphrase="test-passphrase",
        device_poll_interval=5,
    )


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis()
    yield client
    await client.flushall()


@pytest_asyncio.fixture
async def engine(settings):
    from idserver.database import Base, create_engine

    import idserver.client.schemas  # noqa: F401
    import idserver.token.schemas  # noqa: F401
    import idserver.user.schemas  # noqa: F401

    engine = create_engine(settings.sqlalchemy)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    from idserver.database import session_factory

    return session_factory(engine)


@pytest_asyncio.fixture
async def provider(settings, redis_client, session_maker, clock, engine):
    from idserver.provider import Provider

    provider = Provider.build(settings, redis_client, session_maker, clock=clock, engine=engine)
    await provider.keyring.load()
    return provider


@pytest_asyncio.fixture
async def user(provider):
    from idserver.user.schemas import UserArgs

    return await provider.users.create(
        UserArgs(
            username="alice",
            password="correct horse battery",
            email="alice@example.com",
            email_verified=True,
            name="Alice Liddell",
            given_name="Alice",
            family_name="Liddell",
            roles=["dataEventRecords.admin"],
        )
    )


@pytest_asyncio.fixture
async def web_client(provider):
    """Confidential web application using the code + refresh grants."""
    from idserver.client.schemas import ClientArgs

    client_id = await provider.clients.register(
        ClientArgs(
            client_id="web-app",
            client_secret="web-app-secret",
            name="Data Event Records",
            allowed_grant_types=["authorization_code", "refresh_token", "password"],
            redirect_uris=[REDIRECT_URI],
            post_logout_redirect_uris=[LOGOUT_URI],
            allowed_scopes=[
                "openid",
                "profile",
                "email",
                "roles",
                "offline_access",
                "dataEventRecords",
            ],
            requires_pkce=False,
        )
    )
    return await provider.clients.lookup(client_id)


@pytest_asyncio.fixture
async def spa_client(provider):
    """Public single-page application; PKCE is mandatory."""
    from idserver.client.schemas import ClientArgs

    client_id = await provider.clients.register(
        ClientArgs(
            client_id="spa",
            public=True,
            name="Browser App",
            allowed_grant_types=["authorization_code", "refresh_token"],
            redirect_uris=[REDIRECT_URI],
            allowed_scopes=["openid", "profile", "offline_access", "dataEventRecords"],
        )
    )
    return await provider.clients.lookup(client_id)


@pytest_asyncio.fixture
async def device_client(provider):
    from idserver.client.schemas import ClientArgs

    client_id = await provider.clients.register(
        ClientArgs(
            client_id="tv",
            public=True,
            name="Living Room TV",
            allowed_grant_types=["urn:ietf:params:oauth:grant-type:device_code", "refresh_token"],
            allowed_scopes=["openid", "profile", "offline_access", "dataEventRecords"],
        )
    )
    return await provider.clients.lookup(client_id)
