from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from featherpanel.db import Role, User
from featherpanel.services import security

ADMIN_ROLE_ID = 4


@dataclass(frozen=True)
class PreservedIdentity:
    """Account fields carried across a full database wipe."""

    username: str
    email: str
    password: str
    first_name: Optional[str]
    last_name: Optional[str]
    uuid: str
    remember_token: Optional[str]
    role_id: int
    first_ip: Optional[str]
    last_ip: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "PreservedIdentity":
        return cls(
            username=user.username,
            email=user.email,
            password=user.password,
            first_name=user.first_name,
            last_name=user.last_name,
            uuid=user.uuid,
            remember_token=user.remember_token,
            role_id=user.role_id,
            first_ip=user.first_ip,
            last_ip=user.last_ip,
        )


class UserService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def find_by_username(self, username: str) -> Optional[User]:
        return self.db.scalar(select(User).where(User.username == username))

    def find_by_uuid(self, user_uuid: str) -> Optional[User]:
        return self.db.scalar(select(User).where(User.uuid == user_uuid))

    def find_by_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        stmt = (
            select(User)
            .options(selectinload(User.role).selectinload(Role.permissions))
            .where(User.remember_token == token)
        )
        return self.db.scalar(stmt)

    def create_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role_id: int = 1,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        username = (username or "").strip()
        email = (email or "").strip().lower()
        if len(username) < 3:
            raise ValueError("username_too_short")
        if len(password or "") < 8:
            raise ValueError("password_too_short")
        if "@" not in email:
            raise ValueError("email_invalid")
        if self.find_by_username(username):
            raise ValueError("username_taken")
        if self.db.get(Role, role_id) is None:
            raise ValueError("role_not_found")

        user = User(
            username=username,
            email=email,
            password=security.hash_password(password),
            first_name=first_name,
            last_name=last_name,
            uuid=security.generate_uuid(),
            remember_token=security.generate_remember_token(),
            role_id=role_id,
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValueError("user_create_failed")
        self.db.refresh(user)
        return user

    def recreate(self, identity: PreservedIdentity, *, role_id: int = ADMIN_ROLE_ID) -> User:
        """Insert a user row reusing the hashed password, uuid and session token."""

        user = User(
            username=identity.username,
            email=identity.email,
            password=identity.password,
            first_name=identity.first_name,
            last_name=identity.last_name,
            uuid=identity.uuid,
            remember_token=identity.remember_token,
            role_id=role_id,
            first_ip=identity.first_ip,
            last_ip=identity.last_ip,
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValueError("user_recreate_failed")
        self.db.refresh(user)
        return user

    def verify_password(self, user: User, password: Optional[str]) -> bool:
        return security.verify_password(password, user.password)


__all__ = ["UserService", "PreservedIdentity", "ADMIN_ROLE_ID"]
