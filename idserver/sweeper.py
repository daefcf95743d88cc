"""
Periodic pruning of expired authorization state, refresh tokens and signing keys.
"""

import asyncio
import traceback
from typing import Dict, Optional

import backoff
from loguru import logger

from idserver.authorization.service import AuthorizationSessionStore
from idserver.exceptions import TRANSIENT_EXCEPTIONS
from idserver.metrics import track_removed
from idserver.token.issuer import TokenIssuer
from idserver.token.keys import KeyRing


class Sweeper:
    def __init__(
        self,
        sessions: AuthorizationSessionStore,
        issuer: TokenIssuer,
        keyring: KeyRing,
        interval: int = 300,
        retention: int = 86400,
    ):
        self.sessions = sessions
        self.issuer = issuer
        self.keyring = keyring
        self.interval = interval
        self.retention = retention
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @backoff.on_exception(backoff.expo, TRANSIENT_EXCEPTIONS, max_tries=3, factor=0.5)
    async def _gc_sessions(self) -> int:
        return await self.sessions.gc()

    async def sweep(self) -> Dict[str, int]:
        """
        Run a single pruning pass. Entries mid-consumption are left to the
        session store, which never removes a claimed entry.
        """
        await self.keyring.refresh()
        removed = {
            "authorizations": await self._gc_sessions(),
            "refresh_tokens": await self.issuer.prune_refresh_tokens(retention=self.retention),
            "signing_keys": await self.keyring.prune(),
        }
        if await self.keyring.rotate_if_due():
            removed["rotated"] = 1
        for kind, count in removed.items():
            if kind != "rotated":
                track_removed(kind, count)
        logger.info(f"Sweep complete: {removed}")
        return removed

    async def run(self):
        """
        Main loop; sweeps every `interval` seconds until stop() is called.
        """
        logger.info(f"Starting sweeper loop (interval={self.interval}s)...")
        while not self._stop.is_set():
            try:
                await self.sweep()
            except Exception as exc:
                logger.error(f"Sweep failed: {exc} -- {traceback.format_exc()}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Sweeper stopped")

    def start(self) -> asyncio.Task:
        self._stop.clear()
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        """
        Graceful shutdown: signal the loop and wait for the current pass.
        """
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
