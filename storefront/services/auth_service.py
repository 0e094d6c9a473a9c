from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from storefront.database import transaction
from storefront.errors import (
    AccessDeniedError,
    AuthenticationError,
    NotFoundError,
    ValidationError,
)
from storefront.models import AppRole, User, UserRole


class AuthService:
    """
    Identity lookups and role checks.

    Admin status is always read from the store for the acting user on each
    call; nothing is cached between requests.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def register(self, username: str, email: str, password: str, display_name: Optional[str] = None) -> User:
        username = (username or "").strip()
        email = (email or "").strip().lower()
        if not username or not email or not password:
            raise ValidationError("Username, email and password are required")
        if "@" not in email:
            raise ValidationError("A valid email address is required")
        if len(password) < 8:
            raise ValidationError("Password must be at least 8 characters")
        existing = (
            self.db.query(User)
            .filter((User.username == username) | (User.email == email))
            .first()
        )
        if existing:
            raise ValidationError("Username or email already registered")

        user = User(
            username=username,
            email=email,
            password_hash=generate_password_hash(password),
            display_name=display_name or username,
        )
        with transaction(self.db):
            self.db.add(user)
            self.db.flush()
            self.db.add(UserRole(userID=user.userID, role=AppRole.USER))
        self.logger.info("Registered user %s", user.userID)
        return user

    def authenticate(self, username: str, password: str) -> User:
        user = self.db.query(User).filter_by(username=(username or "").strip()).first()
        if not user or not check_password_hash(user.password_hash, password or ""):
            raise AuthenticationError("Invalid username or password")
        return user

    def get_user(self, user_id: Optional[int]) -> Optional[User]:
        if user_id is None:
            return None
        return self.db.query(User).filter_by(userID=user_id).first()

    def require_user(self, user_id: Optional[int]) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise AuthenticationError("Sign in required")
        return user

    def has_role(self, user_id: Optional[int], role: AppRole) -> bool:
        if user_id is None:
            return False
        return (
            self.db.query(UserRole)
            .filter(UserRole.userID == user_id, UserRole.role == role)
            .first()
            is not None
        )

    def is_admin(self, user_id: Optional[int]) -> bool:
        return self.has_role(user_id, AppRole.ADMIN)

    def require_admin(self, user_id: Optional[int]) -> User:
        user = self.require_user(user_id)
        if not self.is_admin(user.userID):
            self.logger.warning("Admin action denied for user %s", user.userID)
            raise AccessDeniedError("Administrator role required")
        return user

    def grant_role(self, admin_id: Optional[int], user_id: int, role: AppRole | str) -> UserRole:
        self.require_admin(admin_id)
        try:
            role_enum = role if isinstance(role, AppRole) else AppRole(role)
        except ValueError as exc:
            raise ValidationError(f"Unknown role: {role}") from exc
        if self.get_user(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")
        existing = (
            self.db.query(UserRole)
            .filter(UserRole.userID == user_id, UserRole.role == role_enum)
            .first()
        )
        if existing:
            return existing
        user_role = UserRole(userID=user_id, role=role_enum)
        with transaction(self.db):
            self.db.add(user_role)
        self.logger.info("Granted role %s to user %s", role_enum.value, user_id)
        return user_role
