"""Unit tests for the pruning sweeper."""

import asyncio

import pytest

from idserver.authorization.schemas import AuthorizationRequest


def _request():
    return AuthorizationRequest(
        client_id="web-app",
        subject_id="user-1",
        requested_scopes=["openid"],
        redirect_uri="https://app.example.com/callback",
    )


class TestSweeper:
    @pytest.mark.asyncio
    async def test_sweep_counts(self, provider, web_client, clock, settings):
        await provider.sessions.create(_request())
        await provider.sessions.create_device("tv", ["openid"])
        issued = await provider.issuer.issue_refresh_token("user-1", web_client, ["offline_access"])
        await provider.issuer.revoke_refresh_token(issued.token_id)

        removed = await provider.sweeper.sweep()
        assert removed == {"authorizations": 0, "refresh_tokens": 0, "signing_keys": 0}

        clock.advance(settings.device_code_lifetime + settings.refresh_token_retention + 1)
        removed = await provider.sweeper.sweep()
        assert removed["authorizations"] == 2
        assert removed["refresh_tokens"] == 1
        assert removed["signing_keys"] == 0

    @pytest.mark.asyncio
    async def test_sweep_rotates_due_key(self, provider, clock, settings):
        old_kid = provider.keyring.current.key_id
        clock.advance(settings.key_rotation_interval + 1)
        removed = await provider.sweeper.sweep()
        assert removed["rotated"] == 1
        assert provider.keyring.current.key_id != old_kid

    @pytest.mark.asyncio
    async def test_sweep_never_removes_live_entries(self, provider, clock):
        code = await provider.sessions.create(_request())
        clock.advance(60)
        await provider.sweeper.sweep()
        assert (await provider.sessions.consume(code)).subject_id == "user-1"

    @pytest.mark.asyncio
    async def test_run_and_stop(self, provider):
        from unittest.mock import AsyncMock

        provider.sweeper.sweep = AsyncMock(side_effect=[RuntimeError("boom"), {}])
        provider.sweeper.interval = 0.01
        task = provider.sweeper.start()
        await asyncio.sleep(0.05)
        await provider.sweeper.stop()
        assert task.done()
        assert provider.sweeper.sweep.await_count >= 2

    @pytest.mark.asyncio
    async def test_transient_gc_failure_is_retried(self, provider):
        from unittest.mock import AsyncMock

        from redis.exceptions import ConnectionError as RedisConnectionError

        provider.sessions.gc = AsyncMock(side_effect=[RedisConnectionError("down"), 3])
        assert await provider.sweeper._gc_sessions() == 3
        assert provider.sessions.gc.await_count == 2
