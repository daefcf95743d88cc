"""
Signing key ring: RSA key generation, encrypted persistence, rotation and JWKS.
"""

import hashlib
import json
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm
from loguru import logger
from sqlalchemy import delete, func, select, update

from idserver.constants import RSA_KEY_SIZE, SIGNING_ALGORITHM
from idserver.database import SessionFactory, persistent_write, to_datetime, to_timestamp
from idserver.metrics import key_rotations
from idserver.token.schemas import SigningKey


@dataclass(frozen=True)
class KeyMaterial:
    key_id: str
    algorithm: str
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey
    created_at: float
    retired_at: Optional[float] = None

    def jwk(self) -> dict:
        """Public JWK for the JWKS document."""
        jwk = json.loads(RSAAlgorithm.to_jwk(self.public_key))
        jwk.update({"kid": self.key_id, "alg": self.algorithm, "use": "sig"})
        return jwk

    def retire(self, retired_at: float) -> "KeyMaterial":
        return KeyMaterial(
            key_id=self.key_id,
            algorithm=self.algorithm,
            private_key=self.private_key,
            public_key=self.public_key,
            created_at=self.created_at,
            retired_at=retired_at,
        )


def generate_key(now: float) -> KeyMaterial:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    public_key = private_key.public_key()
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return KeyMaterial(
        key_id=hashlib.sha256(der).hexdigest()[:16],
        algorithm=SIGNING_ALGORITHM,
        private_key=private_key,
        public_key=public_key,
        created_at=now,
    )


class KeyRing:
    """
    Holds the current signing key plus every retired key that may still have
    live tokens outstanding. The ring is an immutable tuple (current key
    first) and every change replaces the whole tuple, so concurrent issuers
    and validators always see a consistent set.
    """

    def __init__(
        self,
        session_maker: SessionFactory,
        passphrase: str,
        clock: Callable[[], float] = time.time,
        rotation_interval: int = 30 * 86400,
        max_token_lifetime: int = 90 * 86400,
        retained: int = 2,
        refresh_interval: int = 10,
    ):
        self.session_maker = session_maker
        self.passphrase = passphrase.encode()
        self.clock = clock
        self.rotation_interval = rotation_interval
        self.max_token_lifetime = max_token_lifetime
        self.retained = retained
        self.refresh_interval = refresh_interval
        self._last_miss_refresh: Optional[float] = None
        self._keys: Tuple[KeyMaterial, ...] = ()

    @property
    def keys(self) -> Tuple[KeyMaterial, ...]:
        return self._keys

    @property
    def current(self) -> KeyMaterial:
        keys = self._keys
        if not keys:
            raise RuntimeError("Signing keys have not been loaded")
        return keys[0]

    def get(self, key_id: Optional[str]) -> Optional[KeyMaterial]:
        for key in self._keys:
            if key.key_id == key_id:
                return key
        return None

    def jwks(self) -> dict:
        return {"keys": [key.jwk() for key in self._keys]}

    def _encrypt(self, key: KeyMaterial) -> SigningKey:
        return SigningKey(
            key_id=key.key_id,
            algorithm=key.algorithm,
            private_material=key.private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.BestAvailableEncryption(self.passphrase),
            ).decode(),
            public_material=key.public_key.public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            ).decode(),
            created_at=to_datetime(key.created_at),
        )

    def _decrypt(self, row: SigningKey) -> KeyMaterial:
        private_key = serialization.load_pem_private_key(
            row.private_material.encode(), password=self.passphrase
        )
        return KeyMaterial(
            key_id=row.key_id,
            algorithm=row.algorithm,
            private_key=private_key,
            public_key=private_key.public_key(),
            created_at=to_timestamp(row.created_at),
            retired_at=to_timestamp(row.retired_at) if row.retired_at else None,
        )

    async def _read(self) -> Tuple[KeyMaterial, ...]:
        """
        Read persisted keys, current (newest unretired) first. Keys already in
        memory are reused so only newly seen rows are decrypted.
        """
        async with self.session_maker() as session:
            rows = (
                (await session.execute(select(SigningKey).order_by(SigningKey.created_at.desc())))
                .scalars()
                .all()
            )
        keys = []
        for row in rows:
            known = self.get(row.key_id)
            if known is None:
                keys.append(self._decrypt(row))
            elif row.retired_at and known.retired_at is None:
                keys.append(known.retire(to_timestamp(row.retired_at)))
            else:
                keys.append(known)
        # Only the newest unretired key signs; stragglers are treated as retired.
        active = [key for key in keys if key.retired_at is None]
        retired = [key for key in keys if key.retired_at is not None]
        return tuple(active + retired)

    async def refresh(self) -> Tuple[KeyMaterial, ...]:
        """
        Re-read the ring from the database, picking up keys rotated or pruned
        by other processes.
        """
        keys = await self._read()
        if not keys or keys[0].retired_at is not None:
            return self._keys
        if not self._keys or keys[0].key_id != self._keys[0].key_id:
            logger.info(f"Signing key ring refreshed, current kid={keys[0].key_id}")
        self._keys = keys
        return self._keys

    async def refresh_for(self, key_id: Optional[str]) -> Optional[KeyMaterial]:
        """
        Look up a kid, refreshing from the database when it is unknown. Misses
        trigger at most one refresh per `refresh_interval` seconds.
        """
        key = self.get(key_id)
        if key is not None:
            return key
        now = self.clock()
        if self._last_miss_refresh is not None and now - self._last_miss_refresh < self.refresh_interval:
            return None
        self._last_miss_refresh = now
        await self.refresh()
        return self.get(key_id)

    async def load(self) -> Tuple[KeyMaterial, ...]:
        """
        Load persisted keys (newest first), generating the first key if the
        store is empty.
        """
        keys = await self._read()
        if not keys or keys[0].retired_at is not None:
            logger.info("No active signing key found, generating one")
            self._keys = keys
            await self.rotate()
            return self._keys
        self._keys = keys
        logger.info(f"Loaded {len(self._keys)} signing keys, current kid={keys[0].key_id}")
        return self._keys

    @persistent_write
    async def rotate(self) -> KeyMaterial:
        """
        Generate and persist a new current key, retiring the previous one.
        """
        now = self.clock()
        new_key = generate_key(now)
        async with self.session_maker() as session:
            await session.execute(
                update(SigningKey)
                .where(SigningKey.retired_at.is_(None))
                .values(retired_at=to_datetime(now))
            )
            session.add(self._encrypt(new_key))
            await session.commit()
        retired = tuple(
            key if key.retired_at is not None else key.retire(now) for key in self._keys
        )
        self._keys = (new_key,) + retired
        key_rotations.inc()
        logger.success(f"Rotated signing key: new kid={new_key.key_id}, {len(retired)} retained")
        return new_key

    async def rotate_if_due(self) -> bool:
        """
        Rotate when the newest persisted key is older than the rotation
        interval, so a rotation done by another process counts here too.
        """
        async with self.session_maker() as session:
            newest = (
                await session.execute(select(func.max(SigningKey.created_at)))
            ).scalar_one_or_none()
        if newest is not None and self.clock() - to_timestamp(newest) < self.rotation_interval:
            return False
        await self.rotate()
        return True

    @persistent_write
    async def prune(self, now: Optional[float] = None) -> int:
        """
        Drop retired keys whose tokens can no longer be valid, always keeping
        at least `retained` keys (current + previous).
        """
        now = self.clock() if now is None else now
        keys = self._keys
        keep = list(keys[: self.retained])
        dropped = []
        for key in keys[self.retained :]:
            if key.retired_at is not None and key.retired_at + self.max_token_lifetime < now:
                dropped.append(key)
            else:
                keep.append(key)
        if not dropped:
            return 0
        async with self.session_maker() as session:
            await session.execute(
                delete(SigningKey).where(SigningKey.key_id.in_([key.key_id for key in dropped]))
            )
            await session.commit()
        self._keys = tuple(keep)
        logger.info(f"Pruned {len(dropped)} retired signing keys: {[k.key_id for k in dropped]}")
        return len(dropped)
