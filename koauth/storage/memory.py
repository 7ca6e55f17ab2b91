from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from koauth.logging import get_logger
from koauth.storage.common import CLIENT_UPDATABLE_FIELDS, family_ids, normalize_email
from koauth.storage.errors import ConstraintViolation
from koauth.storage.models import (
    ApiKey,
    AuthorizationCode,
    OAuthClient,
    OAuthToken,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-process credential store used by tests and ``USE_MEMORY_STORE``.

    A single re-entrant lock guards every table, so each public method is
    one atomic step exactly like a statement or transaction in
    :class:`~koauth.storage.postgres.PostgresStore`. Records are copied on the
    way in and out; callers never hold a reference into the tables.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.api_keys: Dict[str, ApiKey] = {}
        self.clients: Dict[str, OAuthClient] = {}
        self.codes: Dict[str, AuthorizationCode] = {}
        self.oauth_tokens: Dict[str, OAuthToken] = {}
        self._data_lock = threading.RLock()

    # users ---------------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            email = normalize_email(user.email)
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            stored = replace(user, email=email)
            self.users[stored.id] = stored
            return replace(stored)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def set_email_verified(self, user_id: str, verified: bool = True) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = verified
            user.updated_at = utcnow()
            return replace(user)

    def _matching_users(self, search: Optional[str]) -> List[User]:
        needle = (search or "").strip().lower()
        return [u for u in self.users.values() if needle in u.email]

    def list_users(
        self, search: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[User]:
        with self._data_lock:
            matches = [replace(u) for u in self._matching_users(search)]
        matches.sort(key=lambda u: u.created_at, reverse=True)
        return matches[offset : offset + limit]

    def count_users(self, search: Optional[str] = None) -> int:
        with self._data_lock:
            return len(self._matching_users(search))

    def promote_first_admin(self, user_id: str) -> bool:
        with self._data_lock:
            if any(u.is_admin for u in self.users.values()):
                return False
            user = self.users.get(user_id)
            if not user:
                return False
            user.is_admin = True
            user.updated_at = utcnow()
            return True

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for table in (self.sessions, self.api_keys, self.codes, self.oauth_tokens):
                for record_id, record in list(table.items()):
                    if record.user_id == user_id:
                        table.pop(record_id, None)
            return True

    # sessions ------------------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "id"})
            if any(
                s.refresh_token_hash == session.refresh_token_hash
                for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token_hash"}
                )
            self.sessions[session.id] = replace(session)
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_token(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.refresh_token_hash == token_hash),
                None,
            )
            return replace(sess) if sess else None

    def rotate_session_token(
        self, old_hash: str, new_hash: str, expires_at: datetime, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_hash == old_hash and s.expires_at > now
                ),
                None,
            )
            if sess is None:
                return None
            sess.previous_refresh_hash = old_hash
            sess.refresh_token_hash = new_hash
            sess.expires_at = expires_at
            sess.updated_at = now
            return replace(sess)

    def revoke_session_by_previous_token(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            for sess_id, sess in list(self.sessions.items()):
                if sess.previous_refresh_hash == token_hash:
                    return self.sessions.pop(sess_id)
            return None

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def list_sessions_for_user(self, user_id: str) -> List[Session]:
        with self._data_lock:
            results = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(results, key=lambda s: s.created_at, reverse=True)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.expires_at <= now]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # api keys ------------------------------------------------------------

    def insert_api_key(self, key: ApiKey) -> ApiKey:
        with self._data_lock:
            if key.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": key.user_id})
            if any(existing.prefix == key.prefix for existing in self.api_keys.values()):
                raise ConstraintViolation("api key prefix already exists", {"field": "prefix"})
            self.api_keys[key.id] = replace(key)
            return replace(key)

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            return replace(key) if key else None

    def find_api_keys_by_prefix(self, prefix: str) -> List[ApiKey]:
        with self._data_lock:
            return [replace(k) for k in self.api_keys.values() if k.prefix == prefix]

    def touch_api_key(self, key_id: str, when: datetime) -> None:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            if key:
                key.last_used_at = when

    def list_api_keys(self, user_id: str) -> List[ApiKey]:
        with self._data_lock:
            results = [replace(k) for k in self.api_keys.values() if k.user_id == user_id]
        return sorted(results, key=lambda k: k.created_at, reverse=True)

    def delete_api_key(self, key_id: str, user_id: Optional[str] = None) -> bool:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            if key is None or (user_id is not None and key.user_id != user_id):
                return False
            self.api_keys.pop(key_id, None)
            return True

    def delete_expired_api_keys(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                kid
                for kid, key in self.api_keys.items()
                if key.expires_at is not None and key.expires_at < now
            ]
            for kid in stale:
                self.api_keys.pop(kid, None)
            return len(stale)

    # oauth clients -------------------------------------------------------

    def insert_client(self, client: OAuthClient) -> OAuthClient:
        with self._data_lock:
            if client.client_id in self.clients:
                raise ConstraintViolation("client id already exists", {"field": "client_id"})
            self.clients[client.client_id] = replace(client, redirect_uris=list(client.redirect_uris))
            return replace(client)

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._data_lock:
            client = self.clients.get(client_id)
            return replace(client) if client else None

    def list_clients(self) -> List[OAuthClient]:
        with self._data_lock:
            results = [replace(c) for c in self.clients.values()]
        return sorted(results, key=lambda c: c.created_at)

    def set_client_active(self, client_id: str, active: bool) -> Optional[OAuthClient]:
        with self._data_lock:
            client = self.clients.get(client_id)
            if not client:
                return None
            client.active = active
            client.updated_at = utcnow()
            return replace(client)

    def update_client_secret(self, client_id: str, secret_hash: str) -> Optional[OAuthClient]:
        with self._data_lock:
            client = self.clients.get(client_id)
            if not client:
                return None
            client.client_secret_hash = secret_hash
            client.updated_at = utcnow()
            return replace(client)

    def update_client(self, client_id: str, changes: Dict[str, Any]) -> Optional[OAuthClient]:
        unknown = set(changes) - set(CLIENT_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        with self._data_lock:
            client = self.clients.get(client_id)
            if not client:
                return None
            for name, value in changes.items():
                setattr(client, name, list(value) if name == "redirect_uris" else value)
            client.updated_at = utcnow()
            return replace(client)

    # authorization codes -------------------------------------------------

    def insert_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode:
        with self._data_lock:
            if code.client_id not in self.clients:
                raise ConstraintViolation("client does not exist", {"client_id": code.client_id})
            if code.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": code.user_id})
            if code.code_hash in self.codes:
                raise ConstraintViolation("authorization code already exists", {"field": "code"})
            self.codes[code.code_hash] = replace(code)
            return replace(code)

    def consume_authorization_code(self, code_hash: str) -> Optional[AuthorizationCode]:
        with self._data_lock:
            return self.codes.pop(code_hash, None)

    def delete_expired_authorization_codes(self, now: datetime) -> int:
        with self._data_lock:
            stale = [h for h, code in self.codes.items() if code.expires_at <= now]
            for h in stale:
                self.codes.pop(h, None)
            return len(stale)

    # oauth tokens --------------------------------------------------------

    def _check_token_insert(self, tokens: Sequence[OAuthToken]) -> None:
        known = {t.token_hash for t in self.oauth_tokens.values()}
        batch_ids = {t.id for t in tokens}
        for token in tokens:
            if token.token_hash in known:
                raise ConstraintViolation("token already exists", {"field": "token_hash"})
            known.add(token.token_hash)
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            if token.client_id not in self.clients:
                raise ConstraintViolation("client does not exist", {"client_id": token.client_id})
            if (
                token.parent_id
                and token.parent_id not in self.oauth_tokens
                and token.parent_id not in batch_ids
            ):
                raise ConstraintViolation("parent token does not exist", {"parent_id": token.parent_id})

    def insert_oauth_tokens(self, tokens: Sequence[OAuthToken]) -> None:
        with self._data_lock:
            self._check_token_insert(tokens)
            for token in tokens:
                self.oauth_tokens[token.id] = replace(token)

    def get_oauth_token_by_hash(self, token_hash: str) -> Optional[OAuthToken]:
        with self._data_lock:
            token = next(
                (t for t in self.oauth_tokens.values() if t.token_hash == token_hash), None
            )
            return replace(token) if token else None

    def rotate_oauth_refresh_token(
        self,
        old_hash: str,
        client_id: str,
        now: datetime,
        new_tokens: Sequence[OAuthToken],
    ) -> Optional[OAuthToken]:
        with self._data_lock:
            old = next(
                (
                    t
                    for t in self.oauth_tokens.values()
                    if t.token_hash == old_hash
                    and t.kind == "refresh"
                    and t.client_id == client_id
                    and t.consumed_at is None
                    and t.expires_at > now
                ),
                None,
            )
            if old is None:
                return None
            batch = [
                replace(t, parent_id=old.id) if t.kind == "refresh" else replace(t)
                for t in new_tokens
            ]
            self._check_token_insert(batch)
            old.consumed_at = now
            for token in batch:
                self.oauth_tokens[token.id] = token
            return replace(old)

    def revoke_oauth_token_family(self, token_hash: str) -> int:
        with self._data_lock:
            root = next(
                (t for t in self.oauth_tokens.values() if t.token_hash == token_hash), None
            )
            if root is None:
                return 0
            doomed = family_ids(root.id, self.oauth_tokens.values())
            for token_id in doomed:
                self.oauth_tokens.pop(token_id, None)
            return len(doomed)

    def delete_expired_oauth_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [tid for tid, t in self.oauth_tokens.items() if t.expires_at <= now]
            for tid in stale:
                self.oauth_tokens.pop(tid, None)
            # Children of a swept parent keep living, detached
            for token in self.oauth_tokens.values():
                if token.parent_id in stale:
                    token.parent_id = None
            return len(stale)
