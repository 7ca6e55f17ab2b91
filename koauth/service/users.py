from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from koauth.logging import get_logger
from koauth.service.errors import ConflictError, InvalidCredential, NotFoundError, ValidationError
from koauth.storage.common import CredentialStore, generate_uuid, normalize_email
from koauth.storage.errors import ConstraintViolation
from koauth.storage.models import User

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PASSWORD_RULES = [
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[0-9]"), "a number"),
    (re.compile(r"[^A-Za-z0-9]"), "a special character"),
]
_MAX_PAGE_SIZE = 100


@dataclass
class BootstrapResult:
    status: str  # promoted | already_admin | admin_exists | user_missing
    user: Optional[User] = None


@dataclass
class UserPage:
    users: List[User]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.total else 0


def validate_email(email: str) -> str:
    normalized = normalize_email(email or "")
    if not normalized or len(normalized) > 255 or not _EMAIL_RE.match(normalized):
        raise ValidationError("invalid email format", detail={"field": "email"})
    return normalized


def validate_password(password: str) -> None:
    if not password or len(password) < 8 or len(password) > 128:
        raise ValidationError("password must be 8-128 characters", detail={"field": "password"})
    missing = [label for pattern, label in _PASSWORD_RULES if not pattern.search(password)]
    if missing:
        raise ValidationError(
            "password must contain " + ", ".join(missing), detail={"field": "password"}
        )


class UserService:
    """Accounts, argon2id passwords and the one-time admin bootstrap."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(
            time_cost=2, memory_cost=19456, parallelism=1, type=Type.ID
        )
        self._dummy_hash = self._pwd_hasher.hash("dummy-password-for-timing")

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_user(self, email: str, password: str) -> User:
        normalized = validate_email(email)
        validate_password(password)
        now = self._now()
        user = User(
            id=generate_uuid(),
            email=normalized,
            password_hash=self._pwd_hasher.hash(password),
            created_at=now,
            updated_at=now,
        )
        try:
            created = self.store.create_user(user)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc
        self.logger.info("user_created", user_id=created.id)
        return created

    def authenticate_password(self, email: str, password: str) -> User:
        user = self.store.get_user_by_email(email or "")
        if user is None or not user.password_hash:
            # Same argon2 cost whether or not the account exists
            self._verify(self._dummy_hash, password or "")
            raise InvalidCredential("invalid email or password")
        if not self._verify(user.password_hash, password or ""):
            self.logger.warning("password_verification_failed", user_id=user.id)
            raise InvalidCredential("invalid email or password")
        return user

    def _verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def set_email_verified(self, user_id: str, verified: bool) -> User:
        user = self.store.set_email_verified(user_id, verified)
        if user is None:
            raise NotFoundError("user not found")
        self.logger.info("email_verified_changed", user_id=user_id, verified=verified)
        return user

    def mark_email_verified(self, user_id: str) -> User:
        return self.set_email_verified(user_id, True)

    def list_users(
        self, search: Optional[str] = None, page: int = 1, limit: int = 50
    ) -> UserPage:
        page = max(page, 1)
        limit = min(max(limit, 1), _MAX_PAGE_SIZE)
        return UserPage(
            users=self.store.list_users(search, limit=limit, offset=(page - 1) * limit),
            total=self.store.count_users(search),
            page=page,
            limit=limit,
        )

    def delete_user(self, user_id: str, *, acting_user_id: Optional[str] = None) -> bool:
        """Delete a user and everything they own.

        ``acting_user_id`` is the administrator performing the deletion. An
        administrator cannot delete themselves or the admin account.
        """
        if acting_user_id is not None:
            if acting_user_id == user_id:
                raise ValidationError("cannot delete your own account")
            if self.get_user(user_id).is_admin:
                raise ValidationError("cannot delete the administrator")
        deleted = self.store.delete_user(user_id)
        if deleted:
            self.logger.info("user_deleted", user_id=user_id, deleted_by=acting_user_id)
        return deleted

    def bootstrap_admin(self, email: str) -> BootstrapResult:
        """Grant admin to ``email`` unless some admin already exists.

        Idempotent: repeated calls after the first success are no-ops.
        """
        user = self.store.get_user_by_email(email or "")
        if user is None:
            return BootstrapResult(status="user_missing")
        if user.is_admin:
            return BootstrapResult(status="already_admin", user=user)
        if not self.store.promote_first_admin(user.id):
            self.logger.info("admin_bootstrap_skipped", user_id=user.id)
            return BootstrapResult(status="admin_exists", user=user)
        self.logger.info("admin_bootstrapped", user_id=user.id)
        return BootstrapResult(status="promoted", user=self.store.get_user(user.id))


__all__ = ["UserService", "BootstrapResult", "UserPage", "validate_email", "validate_password"]
