"""Store contract shared by the memory and postgres implementations.

Every method is one atomic step against the backing store. Methods that
read and then write a credential (rotation, code redemption, reuse
revocation) are single conditional statements or single transactions, so a
caller never observes a half-applied change.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, runtime_checkable

from koauth.storage.models import (
    ApiKey,
    AuthorizationCode,
    OAuthClient,
    OAuthToken,
    Session,
    User,
)


@runtime_checkable
class CredentialStore(Protocol):
    # users
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_email_verified(self, user_id: str, verified: bool = True) -> Optional[User]: ...

    def list_users(
        self, search: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[User]: ...

    def count_users(self, search: Optional[str] = None) -> int: ...

    def promote_first_admin(self, user_id: str) -> bool: ...

    def delete_user(self, user_id: str) -> bool: ...

    # sessions
    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token(self, token_hash: str) -> Optional[Session]: ...

    def rotate_session_token(
        self, old_hash: str, new_hash: str, expires_at: datetime, now: datetime
    ) -> Optional[Session]: ...

    def revoke_session_by_previous_token(self, token_hash: str) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def list_sessions_for_user(self, user_id: str) -> List[Session]: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    # api keys
    def insert_api_key(self, key: ApiKey) -> ApiKey: ...

    def get_api_key(self, key_id: str) -> Optional[ApiKey]: ...

    def find_api_keys_by_prefix(self, prefix: str) -> List[ApiKey]: ...

    def touch_api_key(self, key_id: str, when: datetime) -> None: ...

    def list_api_keys(self, user_id: str) -> List[ApiKey]: ...

    def delete_api_key(self, key_id: str, user_id: Optional[str] = None) -> bool: ...

    def delete_expired_api_keys(self, now: datetime) -> int: ...

    # oauth clients
    def insert_client(self, client: OAuthClient) -> OAuthClient: ...

    def get_client(self, client_id: str) -> Optional[OAuthClient]: ...

    def list_clients(self) -> List[OAuthClient]: ...

    def set_client_active(self, client_id: str, active: bool) -> Optional[OAuthClient]: ...

    def update_client_secret(self, client_id: str, secret_hash: str) -> Optional[OAuthClient]: ...

    def update_client(self, client_id: str, changes: Dict[str, Any]) -> Optional[OAuthClient]: ...

    # authorization codes
    def insert_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode: ...

    def consume_authorization_code(self, code_hash: str) -> Optional[AuthorizationCode]: ...

    def delete_expired_authorization_codes(self, now: datetime) -> int: ...

    # oauth tokens
    def insert_oauth_tokens(self, tokens: Sequence[OAuthToken]) -> None: ...

    def get_oauth_token_by_hash(self, token_hash: str) -> Optional[OAuthToken]: ...

    def rotate_oauth_refresh_token(
        self,
        old_hash: str,
        client_id: str,
        now: datetime,
        new_tokens: Sequence[OAuthToken],
    ) -> Optional[OAuthToken]: ...

    def revoke_oauth_token_family(self, token_hash: str) -> int: ...

    def delete_expired_oauth_tokens(self, now: datetime) -> int: ...


# Columns an admin may change on an existing client
CLIENT_UPDATABLE_FIELDS = (
    "name",
    "description",
    "logo_url",
    "website_url",
    "redirect_uris",
    "trusted",
)


def generate_uuid() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return email.strip().lower()


def family_ids(root_id: str, tokens: Iterable[OAuthToken]) -> List[str]:
    """Return ``root_id`` followed by the ids of every descendant token."""
    children: dict[str, List[str]] = {}
    for token in tokens:
        if token.parent_id:
            children.setdefault(token.parent_id, []).append(token.id)
    ordered: List[str] = []
    pending = [root_id]
    while pending:
        current = pending.pop()
        if current in ordered:
            continue
        ordered.append(current)
        pending.extend(children.get(current, []))
    return ordered


def parse_scopes(raw: object) -> List[str]:
    """Coerce a scope value read back from storage into a list of strings."""
    if raw is None:
        return []
    if isinstance(raw, str):
        return [part for part in raw.split() if part]
    return [str(item) for item in raw]


__all__ = [
    "CLIENT_UPDATABLE_FIELDS",
    "CredentialStore",
    "generate_uuid",
    "normalize_email",
    "family_ids",
    "parse_scopes",
]
