"""
Ephemeral authorization records, stored in redis rather than the database.
"""

import hashlib
import secrets
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from idserver.constants import USER_CODE_ALPHABET, USER_CODE_LENGTH


class FlowState(str, Enum):
    INITIATED = "initiated"
    AUTHORIZED = "authorized"
    EXCHANGED = "exchanged"


class DeviceStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self != DeviceStatus.PENDING


def hash_code(code: str) -> str:
    """Hash a code for use as redis key (SHA256, not argon2 - ephemeral data)."""
    return hashlib.sha256(code.encode()).hexdigest()


class RedisRecord(BaseModel):
    def to_json(self) -> str:
        """Serialize to JSON for redis storage."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes):
        """Deserialize from redis."""
        if isinstance(data, bytes):
            data = data.decode()
        return cls.model_validate_json(data)


class AuthorizationRequest(RedisRecord):
    """
    Authorization code grant, created by /connect/authorize and exchanged
    exactly once at /connect/token. Only the hash of the code is stored.
    """

    client_id: str
    subject_id: str
    requested_scopes: List[str] = []
    redirect_uri: str
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    nonce: Optional[str] = None
    state: Optional[str] = None
    auth_time: Optional[int] = None
    expires_at: float = 0.0
    consumed: bool = False
    flow_state: FlowState = FlowState.INITIATED

    @staticmethod
    def generate_code() -> str:
        """Generate an opaque authorization code (256 bits of entropy)."""
        return secrets.token_urlsafe(32)

    @staticmethod
    def redis_key(code_hash: str) -> str:
        return f"idp:auth_code:{code_hash}"


class DeviceAuthorization(RedisRecord):
    """
    Device authorization grant (RFC 8628). The plain device_code is only set on
    the object returned from creation; it is never stored.
    """

    device_code: Optional[str] = None
    user_code: str
    client_id: str
    scopes: List[str] = []
    status: DeviceStatus = DeviceStatus.PENDING
    expires_at: float
    poll_interval: int
    subject_id: Optional[str] = None
    auth_time: Optional[int] = None

    @staticmethod
    def generate_device_code() -> str:
        return secrets.token_urlsafe(32)

    @staticmethod
    def generate_user_code() -> str:
        """Generate a user code formatted as XXXX-XXXX."""
        chars = "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(USER_CODE_LENGTH))
        half = USER_CODE_LENGTH // 2
        return f"{chars[:half]}-{chars[half:]}"

    @staticmethod
    def normalize_user_code(user_code: str) -> str:
        """Uppercase, drop separators/whitespace and re-insert the dash."""
        chars = "".join(c for c in (user_code or "").upper() if c.isalnum())
        half = USER_CODE_LENGTH // 2
        if len(chars) != USER_CODE_LENGTH:
            return chars
        return f"{chars[:half]}-{chars[half:]}"

    @staticmethod
    def redis_key(device_hash: str) -> str:
        return f"idp:device:{device_hash}"

    @staticmethod
    def user_code_key(user_code: str) -> str:
        return f"idp:user_code:{user_code}"

    def to_json(self) -> str:
        return self.model_dump_json(exclude={"device_code"})


class DeviceDecision(RedisRecord):
    """The single (first-wins) user decision on a device authorization."""

    status: DeviceStatus
    subject_id: Optional[str] = None
    auth_time: Optional[int] = None
