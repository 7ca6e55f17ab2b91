from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from koauth.logging import get_logger
from koauth.service.codec import SecretCodec
from koauth.service.errors import ExpiredCredential, InvalidCredential
from koauth.storage.common import CredentialStore
from koauth.storage.models import Session

SESSION_ID_PREFIX = "sess_"
_SESSION_ID_BYTES = 16
_REFRESH_TOKEN_BYTES = 32


@dataclass
class IssuedSession:
    session_id: str
    user_id: str
    refresh_token: str
    expires_at: datetime


@dataclass
class RotatedSession:
    session_id: str
    user_id: str
    refresh_token: str
    expires_at: datetime


class SessionManager:
    """Refresh-token backed sessions for interactive users.

    The raw refresh token is handed out once and only its lookup digest is
    stored. Rotation is a compare-and-swap on that digest; the digest it
    replaced is kept on the row so that a replayed token can be recognised
    and the session revoked.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: SecretCodec,
        *,
        ttl: timedelta = timedelta(days=7),
    ) -> None:
        self.store = store
        self.codec = codec
        self.ttl = ttl
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_session(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        now = self._now()
        refresh_token = self.codec.generate_secret(_REFRESH_TOKEN_BYTES)
        session = Session(
            id=SESSION_ID_PREFIX + self.codec.generate_secret(_SESSION_ID_BYTES),
            user_id=user_id,
            refresh_token_hash=self.codec.lookup_digest(refresh_token),
            expires_at=now + self.ttl,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_session(session)
        self.logger.info("session_created", user_id=user_id, session_id=session.id)
        return IssuedSession(
            session_id=session.id,
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=session.expires_at,
        )

    def validate_and_rotate(self, raw_refresh_token: str) -> RotatedSession:
        """Swap a refresh token for a new one and extend the session.

        Raises:
            ExpiredCredential: the session exists but is past its expiry.
            InvalidCredential: no session holds this token, the token was
                already rotated (the session is revoked), or a concurrent
                rotation won the swap.
        """
        if not raw_refresh_token:
            raise InvalidCredential()
        now = self._now()
        old_hash = self.codec.lookup_digest(raw_refresh_token)
        new_token = self.codec.generate_secret(_REFRESH_TOKEN_BYTES)
        new_expiry = now + self.ttl
        rotated = self.store.rotate_session_token(
            old_hash, self.codec.lookup_digest(new_token), new_expiry, now
        )
        if rotated is not None:
            self.logger.info(
                "session_rotated", user_id=rotated.user_id, session_id=rotated.id
            )
            return RotatedSession(
                session_id=rotated.id,
                user_id=rotated.user_id,
                refresh_token=new_token,
                expires_at=rotated.expires_at,
            )

        # The swap missed; work out why for diagnostics only
        current = self.store.get_session_by_token(old_hash)
        if current is not None and current.is_expired(now):
            self.store.delete_session(current.id)
            raise ExpiredCredential("session expired")

        replayed = self.store.revoke_session_by_previous_token(old_hash)
        if replayed is not None:
            self.logger.warning(
                "session_refresh_reuse_detected",
                user_id=replayed.user_id,
                session_id=replayed.id,
            )
            raise InvalidCredential("refresh token reuse detected")
        raise InvalidCredential("unknown refresh token")

    def validate_session(self, session_id: str) -> Session:
        """Resolve a session cookie value to its live session."""
        if not session_id or not session_id.startswith(SESSION_ID_PREFIX):
            raise InvalidCredential("malformed session id")
        session = self.store.get_session(session_id)
        if session is None:
            raise InvalidCredential("unknown session")
        if session.is_expired(self._now()):
            self.store.delete_session(session.id)
            raise ExpiredCredential("session expired")
        return session

    def revoke(self, session_id: str) -> None:
        deleted = self.store.delete_session(session_id)
        if deleted:
            self.logger.info("session_revoked", session_id=session_id)

    def revoke_by_refresh_token(self, raw_refresh_token: str) -> None:
        """Logout path for callers that only hold the refresh token."""
        session = self.store.get_session_by_token(self.codec.lookup_digest(raw_refresh_token))
        if session is not None:
            self.revoke(session.id)

    def revoke_all_for_user(self, user_id: str) -> int:
        count = self.store.delete_user_sessions(user_id)
        self.logger.info("user_sessions_revoked", user_id=user_id, count=count)
        return count

    def list_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_sessions_for_user(user_id)

    def sweep_expired(self) -> int:
        count = self.store.delete_expired_sessions(self._now())
        if count:
            self.logger.info("expired_sessions_swept", count=count)
        return count


__all__ = [
    "SESSION_ID_PREFIX",
    "IssuedSession",
    "RotatedSession",
    "SessionManager",
]
