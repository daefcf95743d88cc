import asyncio
import redis.asyncio as redis
from loguru import logger
from idserver.config import settings
from idserver.client.schemas import ClientArgs
from idserver.database import Base, create_engine, session_factory
from idserver.exceptions import ClientAlreadyExists, InvalidRequest
from idserver.provider import Provider
from idserver.user.schemas import UserArgs

SAMPLE_CLIENTS = [
    ClientArgs(
        client_id="dataeventrecords-web",
        client_secret="dataeventrecords-secret",
        name="Data Event Records Web",
        allowed_grant_types=["authorization_code", "refresh_token"],
        redirect_uris=["https://localhost:5001/signin-oidc"],
        post_logout_redirect_uris=["https://localhost:5001/signout-callback-oidc"],
        allowed_scopes=["openid", "profile", "email", "roles", "offline_access", "dataEventRecords"],
    ),
    ClientArgs(
        client_id="dataeventrecords-spa",
        public=True,
        name="Data Event Records SPA",
        allowed_grant_types=["authorization_code", "refresh_token"],
        redirect_uris=["https://localhost:4200/callback"],
        post_logout_redirect_uris=["https://localhost:4200/"],
        allowed_scopes=["openid", "profile", "offline_access", "dataEventRecords"],
    ),
    ClientArgs(
        client_id="device",
        public=True,
        name="Device Client",
        allowed_grant_types=["urn:ietf:params:oauth:grant-type:device_code", "refresh_token"],
        allowed_scopes=["openid", "profile", "email", "offline_access", "dataEventRecords"],
    ),
]

DEMO_USER = UserArgs(
    username="demo",
    password="demo-password",
    email="demo@example.com",
    email_verified=True,
    name="Demo User",
    given_name="Demo",
    family_name="User",
    roles=["dataEventRecords.user"],
)


async def seed():
    engine = create_engine(settings.sqlalchemy)
    redis_client = redis.Redis.from_url(settings.redis_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    provider = Provider.build(settings, redis_client, session_factory(engine), engine=engine)
    await provider.keyring.load()
    try:
        for args in SAMPLE_CLIENTS:
            try:
                await provider.clients.register(args)
                if args.client_secret:
                    logger.info(f"{args.client_id} secret: {args.client_secret}")
            except ClientAlreadyExists:
                logger.warning(f"Client {args.client_id} already registered")
        if await provider.users.get_by_username(DEMO_USER.username):
            logger.warning(f"User {DEMO_USER.username} already exists")
        else:
            try:
                await provider.users.create(DEMO_USER)
            except InvalidRequest as exc:
                logger.warning(f"Could not create {DEMO_USER.username}: {exc}")
    finally:
        await redis_client.aclose()
        await engine.dispose()
    logger.success("Seeding complete")


if __name__ == "__main__":
    asyncio.run(seed())
