"""
Authorization session store: authorization codes and device authorizations in redis.
"""

import time
from typing import Callable, List, Optional

from loguru import logger

from idserver.authorization.schemas import (
    AuthorizationRequest,
    DeviceAuthorization,
    DeviceDecision,
    DeviceStatus,
    FlowState,
    hash_code,
)
from idserver.constants import (
    AUTH_CODE_EXPIRY_SECONDS,
    DEVICE_CODE_EXPIRY_SECONDS,
    DEVICE_CODE_POLL_INTERVAL,
    REDIS_EXPIRY_GRACE_SECONDS,
)
from idserver.exceptions import (
    AccessDenied,
    AuthorizationPending,
    CodeAlreadyConsumed,
    CodeExpired,
    CodeNotFound,
    DeviceCodeAlreadyUsed,
    DeviceCodeExpired,
    SlowDown,
)

AUTH_CODE_INDEX = "idp:auth_code:index"
DEVICE_INDEX = "idp:device:index"
USER_CODE_ATTEMPTS = 5


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    return value.decode() if isinstance(value, bytes) else value


class AuthorizationSessionStore:
    """
    Tracks in-flight authorization requests keyed by opaque codes.

    Every record lives under its own key with a redis TTL slightly longer than
    its logical lifetime; expiry is decided against the injected clock so late
    callers see "expired" rather than "not found". Single-use is enforced by a
    companion "<key>:used" marker claimed with SET NX, so at most one caller
    ever obtains a record.
    """

    def __init__(
        self,
        redis_client,
        clock: Callable[[], float] = time.time,
        auth_code_lifetime: int = AUTH_CODE_EXPIRY_SECONDS,
        device_code_lifetime: int = DEVICE_CODE_EXPIRY_SECONDS,
        poll_interval: int = DEVICE_CODE_POLL_INTERVAL,
    ):
        self.redis_client = redis_client
        self.clock = clock
        self.auth_code_lifetime = auth_code_lifetime
        self.device_code_lifetime = device_code_lifetime
        self.poll_interval = poll_interval

    # Authorization codes.
    async def create(self, request: AuthorizationRequest) -> str:
        """
        Store an authorization request, returning the plain (opaque) code.
        """
        code = AuthorizationRequest.generate_code()
        code_hash = hash_code(code)
        request.expires_at = self.clock() + self.auth_code_lifetime
        request.consumed = False
        request.flow_state = FlowState.AUTHORIZED
        ttl = self.auth_code_lifetime + REDIS_EXPIRY_GRACE_SECONDS
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.set(AuthorizationRequest.redis_key(code_hash), request.to_json(), ex=ttl)
            pipe.zadd(AUTH_CODE_INDEX, {code_hash: request.expires_at})
            await pipe.execute()
        logger.info(
            f"Issued authorization code for client={request.client_id} "
            f"subject={request.subject_id} scopes={request.requested_scopes}"
        )
        return code

    async def consume(self, code: str) -> AuthorizationRequest:
        """
        Atomically claim and remove an authorization code. The claim and the
        read-and-delete run in one MULTI/EXEC, so concurrent callers can't
        both succeed and an abandoned caller can't leave a half-consumed code.
        """
        code_hash = hash_code(code or "")
        key = AuthorizationRequest.redis_key(code_hash)
        used_key = f"{key}:used"
        ttl = self.auth_code_lifetime + REDIS_EXPIRY_GRACE_SECONDS
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.set(used_key, int(self.clock()), nx=True, ex=ttl)
            pipe.getdel(key)
            pipe.zrem(AUTH_CODE_INDEX, code_hash)
            claimed, data, _ = await pipe.execute()
        if not claimed:
            raise CodeAlreadyConsumed("The authorization code has already been used")
        if not data:
            await self.redis_client.delete(used_key)
            raise CodeNotFound("The authorization code is invalid")
        request = AuthorizationRequest.from_json(data)
        if self.clock() > request.expires_at:
            raise CodeExpired("The authorization code has expired")
        request.consumed = True
        request.flow_state = FlowState.EXCHANGED
        return request

    # Device authorizations.
    async def create_device(
        self, client_id: str, scopes: List[str]
    ) -> DeviceAuthorization:
        """
        Start a device authorization, returning the record with the plain
        device_code set.
        """
        device_code = DeviceAuthorization.generate_device_code()
        device_hash = hash_code(device_code)
        ttl = self.device_code_lifetime + REDIS_EXPIRY_GRACE_SECONDS
        authorization = None
        for _ in range(USER_CODE_ATTEMPTS):
            user_code = DeviceAuthorization.generate_user_code()
            if await self.redis_client.set(
                DeviceAuthorization.user_code_key(user_code), device_hash, nx=True, ex=ttl
            ):
                authorization = DeviceAuthorization(
                    device_code=device_code,
                    user_code=user_code,
                    client_id=client_id,
                    scopes=list(scopes),
                    expires_at=self.clock() + self.device_code_lifetime,
                    poll_interval=self.poll_interval,
                )
                break
        if authorization is None:
            raise RuntimeError("Unable to allocate a unique user code")
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.set(DeviceAuthorization.redis_key(device_hash), authorization.to_json(), ex=ttl)
            pipe.zadd(DEVICE_INDEX, {device_hash: authorization.expires_at})
            await pipe.execute()
        logger.info(
            f"Started device authorization user_code={authorization.user_code} client={client_id}"
        )
        return authorization

    async def _load_device(self, device_hash: str) -> Optional[DeviceAuthorization]:
        key = DeviceAuthorization.redis_key(device_hash)
        data, decision = await self.redis_client.mget(key, f"{key}:decision")
        if not data:
            return None
        authorization = DeviceAuthorization.from_json(data)
        if decision:
            decision = DeviceDecision.from_json(decision)
            authorization.status = decision.status
            authorization.subject_id = decision.subject_id
            authorization.auth_time = decision.auth_time
        elif self.clock() > authorization.expires_at:
            authorization.status = DeviceStatus.EXPIRED
        return authorization

    async def _device_hash_for(self, user_code: str) -> str:
        normalized = DeviceAuthorization.normalize_user_code(user_code)
        device_hash = _decode(
            await self.redis_client.get(DeviceAuthorization.user_code_key(normalized))
        )
        if not device_hash:
            raise CodeNotFound("Unknown user code")
        return device_hash

    async def lookup_user_code(self, user_code: str) -> DeviceAuthorization:
        device_hash = await self._device_hash_for(user_code)
        authorization = await self._load_device(device_hash)
        if not authorization:
            raise CodeNotFound("Unknown user code")
        return authorization

    async def _decide(self, user_code: str, decision: DeviceDecision) -> DeviceAuthorization:
        device_hash = await self._device_hash_for(user_code)
        authorization = await self._load_device(device_hash)
        if not authorization:
            raise CodeNotFound("Unknown user code")
        if authorization.status == DeviceStatus.EXPIRED:
            raise DeviceCodeExpired()
        ttl = self.device_code_lifetime + REDIS_EXPIRY_GRACE_SECONDS
        key = f"{DeviceAuthorization.redis_key(device_hash)}:decision"
        if await self.redis_client.set(key, decision.to_json(), nx=True, ex=ttl):
            logger.success(
                f"Device authorization {authorization.user_code} {decision.status.value} "
                f"subject={decision.subject_id}"
            )
        else:
            logger.warning(
                f"Ignoring {decision.status.value} for device authorization "
                f"{authorization.user_code}: already {authorization.status.value}"
            )
        return await self._load_device(device_hash)

    async def approve(
        self, user_code: str, subject_id: str, auth_time: Optional[int] = None
    ) -> DeviceAuthorization:
        """
        Approve a pending device authorization. The first decision wins; the
        returned record carries the effective status.
        """
        return await self._decide(
            user_code,
            DeviceDecision(
                status=DeviceStatus.APPROVED,
                subject_id=subject_id,
                auth_time=auth_time or int(self.clock()),
            ),
        )

    async def deny(self, user_code: str) -> DeviceAuthorization:
        return await self._decide(user_code, DeviceDecision(status=DeviceStatus.DENIED))

    async def poll(
        self, device_code: str, client_id: Optional[str] = None
    ) -> DeviceAuthorization:
        """
        Poll a device authorization on behalf of the device. Returns the
        approved record exactly once; otherwise raises the matching
        device-flow error.
        """
        device_hash = hash_code(device_code or "")
        key = DeviceAuthorization.redis_key(device_hash)
        used_key = f"{key}:used"
        if await self.redis_client.exists(used_key):
            raise DeviceCodeAlreadyUsed("The device code has already been used")
        authorization = await self._load_device(device_hash)
        if not authorization:
            raise CodeNotFound("The device code is invalid")
        if client_id is not None and authorization.client_id != client_id:
            raise CodeNotFound("The device code was issued to another client")
        now = self.clock()
        if now > authorization.expires_at:
            raise DeviceCodeExpired()

        ttl = self.device_code_lifetime + REDIS_EXPIRY_GRACE_SECONDS
        if authorization.poll_interval > 0:
            previous = await self.redis_client.set(f"{key}:last_poll", now, ex=ttl, get=True)
            previous = _decode(previous)
            if previous is not None and now - float(previous) < authorization.poll_interval:
                raise SlowDown()

        if authorization.status == DeviceStatus.PENDING:
            raise AuthorizationPending()
        if authorization.status == DeviceStatus.DENIED:
            raise AccessDenied()
        if authorization.status != DeviceStatus.APPROVED:
            raise DeviceCodeExpired()

        if not await self.redis_client.set(used_key, int(now), nx=True, ex=ttl):
            raise DeviceCodeAlreadyUsed("The device code has already been used")
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.delete(key, f"{key}:decision", f"{key}:last_poll")
            pipe.delete(DeviceAuthorization.user_code_key(authorization.user_code))
            pipe.zrem(DEVICE_INDEX, device_hash)
            await pipe.execute()
        return authorization

    # Pruning.
    async def _gc_index(self, index: str, key_for: Callable[[str], str], now: float) -> int:
        removed = 0
        for member in await self.redis_client.zrangebyscore(index, "-inf", now):
            member = _decode(member)
            key = key_for(member)
            # A held claim means the entry is being (or has been) consumed.
            if await self.redis_client.exists(f"{key}:used"):
                await self.redis_client.zrem(index, member)
                continue
            data = _decode(await self.redis_client.get(key))
            keys = [key, f"{key}:decision", f"{key}:last_poll"]
            if data and index == DEVICE_INDEX:
                user_code = DeviceAuthorization.from_json(data).user_code
                keys.append(DeviceAuthorization.user_code_key(user_code))
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.delete(*keys)
                pipe.zrem(index, member)
                await pipe.execute()
            if data:
                removed += 1
        return removed

    async def gc(self, now: Optional[float] = None) -> int:
        """
        Remove authorization codes and device authorizations past expires_at.
        """
        now = self.clock() if now is None else now
        removed = await self._gc_index(AUTH_CODE_INDEX, AuthorizationRequest.redis_key, now)
        removed += await self._gc_index(DEVICE_INDEX, DeviceAuthorization.redis_key, now)
        if removed:
            logger.info(f"Removed {removed} expired authorization entries")
        return removed
