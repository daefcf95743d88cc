"""
Database engine/session helpers.
"""

import uuid
import functools
from datetime import datetime, timezone
from typing import Callable, Optional

import backoff
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from idserver.exceptions import TRANSIENT_EXCEPTIONS, TransientError

Base = declarative_base()

SessionFactory = Callable[[], AsyncSession]


def generate_uuid() -> str:
    return str(uuid.uuid4())


def to_datetime(timestamp: float) -> datetime:
    """
    Naive UTC datetime for a unix timestamp (columns are stored without tz).
    """
    return datetime.fromtimestamp(timestamp, timezone.utc).replace(tzinfo=None)


def to_timestamp(value: datetime) -> float:
    return value.replace(tzinfo=timezone.utc).timestamp()


def create_engine(url: str, **kwargs) -> AsyncEngine:
    """
    Create the async engine; pool options only apply to server databases.
    """
    if not url.startswith("sqlite"):
        kwargs.setdefault("pool_size", 16)
        kwargs.setdefault("max_overflow", 8)
        kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(url, **kwargs)


def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def persistent_write(
    func: Optional[Callable] = None,
    *,
    max_tries: int = 3,
    factor: float = 0.1,
):
    """
    Retry a persistence coroutine on transient errors with exponential backoff,
    surfacing TransientError once retries are exhausted. The wrapped coroutine
    must commit-or-abort in a single transaction so a retry never duplicates a
    partial write.
    """

    def decorator(fn):
        retrying = backoff.on_exception(
            backoff.expo,
            TRANSIENT_EXCEPTIONS,
            max_tries=max_tries,
            factor=factor,
            jitter=None,
        )(fn)

        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await retrying(*args, **kwargs)
            except TRANSIENT_EXCEPTIONS as exc:
                logger.error(f"Persistence unavailable in {fn.__qualname__}: {exc}")
                raise TransientError() from exc

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
