from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from koauth.logging import get_logger
from koauth.service.codec import SecretCodec
from koauth.service.errors import ExpiredCredential, InvalidCredential, ValidationError
from koauth.storage.common import CredentialStore, generate_uuid
from koauth.storage.errors import ConstraintViolation
from koauth.storage.models import ApiKey, User

PREFIX_LENGTH = 6
_SECRET_BYTES = 32
_MAX_ISSUE_ATTEMPTS = 3
_PREFIX_ALPHABET = string.ascii_letters + string.digits
_NAME_MAX_LENGTH = 100


@dataclass
class IssuedApiKey:
    """A freshly issued key. ``raw_key`` is never retrievable again."""

    raw_key: str
    key: ApiKey


@dataclass
class ParsedApiKey:
    namespace: str
    prefix: str
    secret: str


def parse_api_key(raw_key: str, namespace: str) -> Optional[ParsedApiKey]:
    """Split ``<namespace>_<prefix>_<secret>`` or return None if it isn't one."""
    lead = f"{namespace}_"
    if not raw_key or not raw_key.startswith(lead):
        return None
    rest = raw_key[len(lead):]
    if len(rest) < PREFIX_LENGTH + 2 or rest[PREFIX_LENGTH] != "_":
        return None
    prefix = rest[:PREFIX_LENGTH]
    secret = rest[PREFIX_LENGTH + 1:]
    if not re.fullmatch(r"[A-Za-z0-9_\-]+", secret):
        return None
    return ParsedApiKey(namespace=namespace, prefix=prefix, secret=secret)


class ApiKeyManager:
    """Long-lived machine credentials with prefix lookup.

    The six character prefix is public and unique; it narrows the lookup to
    a single row. Authentication always requires the full key to verify
    against the stored scrypt digest.
    """

    def __init__(self, store: CredentialStore, codec: SecretCodec, *, namespace: str = "koa") -> None:
        self.store = store
        self.codec = codec
        self.namespace = namespace
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _new_prefix(self) -> str:
        return "".join(secrets.choice(_PREFIX_ALPHABET) for _ in range(PREFIX_LENGTH))

    def looks_like_key(self, credential: str) -> bool:
        return bool(credential) and credential.startswith(f"{self.namespace}_")

    def issue(
        self, user_id: str, name: str, expires_at: Optional[datetime] = None
    ) -> IssuedApiKey:
        name = (name or "").strip()
        if not name or len(name) > _NAME_MAX_LENGTH:
            raise ValidationError("key name must be 1-100 characters", detail={"field": "name"})
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at is not None and expires_at <= self._now():
            raise ValidationError("expiry must be in the future", detail={"field": "expires_at"})

        for attempt in range(1, _MAX_ISSUE_ATTEMPTS + 1):
            prefix = self._new_prefix()
            raw_key = f"{self.namespace}_{prefix}_{self.codec.generate_secret(_SECRET_BYTES)}"
            record = ApiKey(
                id=generate_uuid(),
                user_id=user_id,
                name=name,
                prefix=prefix,
                key_hash=self.codec.hash(raw_key),
                expires_at=expires_at,
                created_at=self._now(),
            )
            try:
                stored = self.store.insert_api_key(record)
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "prefix" or attempt == _MAX_ISSUE_ATTEMPTS:
                    raise
                self.logger.info("api_key_prefix_collision", attempt=attempt)
                continue
            self.logger.info("api_key_issued", user_id=user_id, key_id=stored.id, prefix=prefix)
            return IssuedApiKey(raw_key=raw_key, key=stored)
        # unreachable: the final attempt either returns or raises
        raise RuntimeError("api key issuance exhausted attempts")

    def validate(self, raw_key: str) -> User:
        """Return the owner of ``raw_key``."""
        return self.resolve(raw_key)[1]

    def resolve(self, raw_key: str) -> Tuple[ApiKey, User]:
        """Return the key record matching ``raw_key`` and its owner.

        Raises:
            InvalidCredential: malformed key, unknown prefix, hash mismatch or
                owner gone.
            ExpiredCredential: the hash matched but the key is past expiry.
        """
        parsed = parse_api_key(raw_key, self.namespace)
        if parsed is None:
            raise InvalidCredential("malformed api key")

        candidates = self.store.find_api_keys_by_prefix(parsed.prefix)
        if not candidates:
            self.codec.verify_dummy(raw_key)
            raise InvalidCredential("unknown api key prefix")

        matched = next((k for k in candidates if self.codec.verify(raw_key, k.key_hash)), None)
        if matched is None:
            raise InvalidCredential("api key secret mismatch")

        now = self._now()
        if matched.is_expired(now):
            raise ExpiredCredential("api key expired")

        user = self.store.get_user(matched.user_id)
        if user is None:
            raise InvalidCredential("api key owner missing")

        try:
            self.store.touch_api_key(matched.id, now)
        except Exception as exc:
            # Usage tracking never decides the outcome of a validation
            self.logger.warning("api_key_touch_failed", key_id=matched.id, error=str(exc))
        return matched, user

    def list_keys(self, user_id: str) -> List[ApiKey]:
        return self.store.list_api_keys(user_id)

    def revoke(self, key_id: str, user_id: Optional[str] = None) -> bool:
        deleted = self.store.delete_api_key(key_id, user_id)
        if deleted:
            self.logger.info("api_key_revoked", key_id=key_id)
        return deleted

    def sweep_expired(self) -> int:
        count = self.store.delete_expired_api_keys(self._now())
        if count:
            self.logger.info("expired_api_keys_swept", count=count)
        return count


__all__ = ["ApiKeyManager", "IssuedApiKey", "ParsedApiKey", "parse_api_key", "PREFIX_LENGTH"]
