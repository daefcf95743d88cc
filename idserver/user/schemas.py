"""
ORM/pydantic definitions for users (resource owners).
"""

import re
from typing import List, Optional

from passlib.hash import argon2
from pydantic import BaseModel, field_validator
from sqlalchemy import JSON, Boolean, Column, DateTime, String, func
from sqlalchemy.orm import validates

from idserver.database import Base, generate_uuid


class UserArgs(BaseModel):
    username: str
    password: str
    email: Optional[str] = None
    email_verified: bool = False
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    roles: List[str] = []

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        if not re.match(r"^[a-zA-Z0-9_\.\-@]{3,64}$", v):
            raise ValueError("Username must be 3-64 characters of letters, digits, _ . - @")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v


class User(Base):
    __tablename__ = "users"

    user_id = Column(String, primary_key=True, default=generate_uuid)
    username = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    email = Column(String, nullable=True)
    email_verified = Column(Boolean, default=False, nullable=False)
    name = Column(String, nullable=True)
    given_name = Column(String, nullable=True)
    family_name = Column(String, nullable=True)
    roles = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, server_default=func.now())

    @validates("username")
    def validate_username(self, _, username):
        if not username or len(username) < 3:
            raise ValueError("Username must be at least 3 characters")
        return username

    @classmethod
    def create(cls, args: UserArgs) -> "User":
        return cls(
            user_id=generate_uuid(),
            username=args.username,
            password_hash=argon2.hash(args.password),
            email=args.email,
            email_verified=args.email_verified,
            name=args.name,
            given_name=args.given_name,
            family_name=args.family_name,
            roles=list(args.roles),
        )

    def verify_password(self, password: str) -> bool:
        """Verify a password against the stored argon2 hash."""
        try:
            return argon2.verify(password, self.password_hash)
        except ValueError:
            return False

    def claims(self, scopes: List[str]) -> dict:
        """
        Identity claims released for the granted scopes (sub is always present).
        """
        claims = {"sub": self.user_id}
        if "profile" in scopes:
            claims["preferred_username"] = self.username
            for key in ("name", "given_name", "family_name"):
                value = getattr(self, key)
                if value:
                    claims[key] = value
        if "email" in scopes and self.email:
            claims["email"] = self.email
            claims["email_verified"] = bool(self.email_verified)
        if "roles" in scopes:
            claims["roles"] = list(self.roles or [])
        return claims
