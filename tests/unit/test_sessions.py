"""Unit tests for the authorization session store."""

import asyncio
import re

import pytest

REDIRECT_URI = "https://app.example.com/callback"


def _request(**overrides):
    from idserver.authorization.schemas import AuthorizationRequest

    values = dict(
        client_id="web-app",
        subject_id="user-1",
        requested_scopes=["openid", "profile"],
        redirect_uri=REDIRECT_URI,
        nonce="n-0S6_WzA2Mj",
        state="af0ifjsldkj",
    )
    values.update(overrides)
    return AuthorizationRequest(**values)


class TestAuthorizationCodes:
    @pytest.mark.asyncio
    async def test_consume_returns_request_once(self, provider):
        from idserver.authorization.schemas import FlowState
        from idserver.exceptions import CodeAlreadyConsumed

        code = await provider.sessions.create(_request())
        record = await provider.sessions.consume(code)
        assert record.subject_id == "user-1"
        assert record.requested_scopes == ["openid", "profile"]
        assert record.consumed is True
        assert record.flow_state == FlowState.EXCHANGED

        with pytest.raises(CodeAlreadyConsumed):
            await provider.sessions.consume(code)

    @pytest.mark.asyncio
    async def test_code_is_opaque_and_not_stored(self, provider, redis_client):
        code = await provider.sessions.create(_request())
        assert len(code) >= 43
        keys = [key.decode() for key in await redis_client.keys("*")]
        assert not any(code in key for key in keys)
        for key in keys:
            if await redis_client.type(key) == b"string":
                assert code.encode() not in await redis_client.get(key)

    @pytest.mark.asyncio
    async def test_unknown_code(self, provider):
        from idserver.exceptions import CodeNotFound

        with pytest.raises(CodeNotFound):
            await provider.sessions.consume("not-a-real-code")
        # A miss doesn't poison the key for later attempts.
        with pytest.raises(CodeNotFound):
            await provider.sessions.consume("not-a-real-code")

    @pytest.mark.asyncio
    async def test_expiry_is_inclusive(self, provider, clock, settings):
        code = await provider.sessions.create(_request())
        clock.advance(settings.auth_code_lifetime)
        record = await provider.sessions.consume(code)
        assert record.client_id == "web-app"

    @pytest.mark.asyncio
    async def test_expired_code(self, provider, clock, settings):
        from idserver.exceptions import CodeAlreadyConsumed, CodeExpired

        code = await provider.sessions.create(_request())
        clock.advance(settings.auth_code_lifetime + 1)
        with pytest.raises(CodeExpired):
            await provider.sessions.consume(code)
        with pytest.raises(CodeAlreadyConsumed):
            await provider.sessions.consume(code)

    @pytest.mark.asyncio
    async def test_concurrent_consumers_single_winner(self, provider):
        from idserver.exceptions import CodeAlreadyConsumed

        code = await provider.sessions.create(_request())
        results = await asyncio.gather(
            *[provider.sessions.consume(code) for _ in range(100)],
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 99
        assert all(isinstance(r, CodeAlreadyConsumed) for r in losers)


class TestDeviceAuthorizations:
    @pytest.mark.asyncio
    async def test_user_code_format(self, provider):
        authorization = await provider.sessions.create_device("tv", ["openid"])
        assert re.match(r"^[A-Z0-9]{4}-[A-Z0-9]{4}$", authorization.user_code)
        assert authorization.device_code
        assert authorization.poll_interval == 5

    @pytest.mark.parametrize(
        "entered",
        ["abcd-efgh", "ABCDEFGH", " abcd efgh ", "AbCd-EfGh"],
    )
    def test_normalize_user_code(self, entered):
        from idserver.authorization.schemas import DeviceAuthorization

        assert DeviceAuthorization.normalize_user_code(entered) == "ABCD-EFGH"

    @pytest.mark.asyncio
    async def test_lookup_accepts_lowercase(self, provider):
        authorization = await provider.sessions.create_device("tv", ["openid"])
        found = await provider.sessions.lookup_user_code(authorization.user_code.lower())
        assert found.client_id == "tv"
        assert found.device_code is None

    @pytest.mark.asyncio
    async def test_pending_then_approved(self, provider, clock):
        from idserver.exceptions import AuthorizationPending, DeviceCodeAlreadyUsed

        authorization = await provider.sessions.create_device("tv", ["openid", "profile"])
        with pytest.raises(AuthorizationPending):
            await provider.sessions.poll(authorization.device_code, client_id="tv")

        await provider.sessions.approve(authorization.user_code, "user-1")
        clock.advance(5)
        approved = await provider.sessions.poll(authorization.device_code, client_id="tv")
        assert approved.subject_id == "user-1"
        assert approved.scopes == ["openid", "profile"]

        clock.advance(5)
        with pytest.raises(DeviceCodeAlreadyUsed):
            await provider.sessions.poll(authorization.device_code, client_id="tv")

    @pytest.mark.asyncio
    async def test_slow_down(self, provider, clock):
        from idserver.exceptions import AuthorizationPending, SlowDown

        authorization = await provider.sessions.create_device("tv", ["openid"])
        with pytest.raises(AuthorizationPending):
            await provider.sessions.poll(authorization.device_code)
        clock.advance(2)
        with pytest.raises(SlowDown):
            await provider.sessions.poll(authorization.device_code)
        clock.advance(5)
        with pytest.raises(AuthorizationPending):
            await provider.sessions.poll(authorization.device_code)

    @pytest.mark.asyncio
    async def test_denied(self, provider):
        from idserver.exceptions import AccessDenied

        authorization = await provider.sessions.create_device("tv", ["openid"])
        await provider.sessions.deny(authorization.user_code)
        with pytest.raises(AccessDenied):
            await provider.sessions.poll(authorization.device_code)

    @pytest.mark.asyncio
    async def test_first_decision_wins(self, provider):
        from idserver.authorization.schemas import DeviceStatus

        authorization = await provider.sessions.create_device("tv", ["openid"])
        await provider.sessions.deny(authorization.user_code)
        result = await provider.sessions.approve(authorization.user_code, "user-1")
        assert result.status == DeviceStatus.DENIED
        assert result.subject_id is None

    @pytest.mark.asyncio
    async def test_expired_device_code(self, provider, clock, settings):
        from idserver.exceptions import DeviceCodeExpired

        authorization = await provider.sessions.create_device("tv", ["openid"])
        await provider.sessions.approve(authorization.user_code, "user-1")
        clock.advance(settings.device_code_lifetime + 1)
        with pytest.raises(DeviceCodeExpired):
            await provider.sessions.poll(authorization.device_code)

    @pytest.mark.asyncio
    async def test_approve_after_expiry(self, provider, clock, settings):
        from idserver.exceptions import DeviceCodeExpired

        authorization = await provider.sessions.create_device("tv", ["openid"])
        clock.advance(settings.device_code_lifetime + 1)
        with pytest.raises(DeviceCodeExpired):
            await provider.sessions.approve(authorization.user_code, "user-1")

    @pytest.mark.asyncio
    async def test_poll_from_other_client(self, provider):
        from idserver.exceptions import CodeNotFound

        authorization = await provider.sessions.create_device("tv", ["openid"])
        with pytest.raises(CodeNotFound):
            await provider.sessions.poll(authorization.device_code, client_id="web-app")


class TestGarbageCollection:
    @pytest.mark.asyncio
    async def test_gc_removes_only_expired(self, provider, clock, settings, redis_client):
        from idserver.exceptions import CodeNotFound

        stale = await provider.sessions.create(_request())
        device = await provider.sessions.create_device("tv", ["openid"])
        clock.advance(settings.device_code_lifetime + 1)
        fresh = await provider.sessions.create(_request())

        assert await provider.sessions.gc() == 2
        with pytest.raises(CodeNotFound):
            await provider.sessions.consume(stale)
        with pytest.raises(CodeNotFound):
            await provider.sessions.lookup_user_code(device.user_code)
        assert (await provider.sessions.consume(fresh)).subject_id == "user-1"

    @pytest.mark.asyncio
    async def test_gc_skips_claimed_entries(self, provider, clock, settings):
        code = await provider.sessions.create(_request())
        await provider.sessions.consume(code)
        clock.advance(settings.auth_code_lifetime + 1)
        assert await provider.sessions.gc() == 0
