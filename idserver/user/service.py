"""
Identity collaborator: resource-owner lookup and credential checks.
"""

from typing import Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from idserver.database import SessionFactory, persistent_write
from idserver.exceptions import InvalidRequest
from idserver.user.schemas import User, UserArgs


class UserService:
    def __init__(self, session_maker: SessionFactory):
        self.session_maker = session_maker

    @persistent_write
    async def create(self, args: UserArgs) -> User:
        user = User.create(args)
        async with self.session_maker() as session:
            session.add(user)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise InvalidRequest(f"Username {args.username} is already taken") from exc
        logger.success(f"Created user {user.username} [{user.user_id}]")
        return user

    async def get(self, user_id: str) -> Optional[User]:
        async with self.session_maker() as session:
            return (
                await session.execute(select(User).where(User.user_id == user_id))
            ).scalar_one_or_none()

    async def get_by_username(self, username: str) -> Optional[User]:
        async with self.session_maker() as session:
            return (
                await session.execute(select(User).where(User.username == username))
            ).scalar_one_or_none()

    async def authenticate(self, username: str, password: str) -> Optional[User]:
        """
        Check a username/password pair, returning the user on success.
        """
        user = await self.get_by_username(username)
        if not user or not user.verify_password(password):
            logger.warning(f"Failed password authentication for {username=}")
            return None
        return user
