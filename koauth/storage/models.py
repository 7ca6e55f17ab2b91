from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_CLIENT_SCOPES = ["openid", "profile", "email"]


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    email_verified: bool = False
    is_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    """A browser/device binding. ``refresh_token_hash`` is a lookup digest, never the raw token."""

    id: str
    user_id: str
    refresh_token_hash: str
    expires_at: datetime
    previous_refresh_hash: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class ApiKey:
    id: str
    user_id: str
    name: str
    prefix: str
    key_hash: str
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        # A key is still valid at the exact expiry instant
        return self.expires_at is not None and now > self.expires_at


@dataclass
class OAuthClient:
    id: str
    client_id: str
    client_secret_hash: str
    name: str
    redirect_uris: List[str]
    description: Optional[str] = None
    logo_url: Optional[str] = None
    website_url: Optional[str] = None
    scopes: List[str] = field(default_factory=lambda: list(DEFAULT_CLIENT_SCOPES))
    grant_types: List[str] = field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    trusted: bool = False
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public_info(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "logo_url": self.logo_url,
            "website_url": self.website_url,
        }


@dataclass
class AuthorizationCode:
    id: str
    code_hash: str
    client_id: str
    user_id: str
    redirect_uri: str
    scopes: List[str]
    expires_at: datetime
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OAuthToken:
    """An OAuth access or refresh token.

    ``parent_id`` links an access token to the refresh token issued with it and
    a rotated refresh token to the one it replaced. ``consumed_at`` is set when
    a refresh token is rotated away; consumed tokens stay as tombstones so a
    replay can be recognised.
    """

    id: str
    token_hash: str
    kind: str  # "access" | "refresh"
    client_id: str
    user_id: str
    scopes: List[str]
    expires_at: datetime
    parent_id: Optional[str] = None
    consumed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


__all__ = [
    "User",
    "Session",
    "ApiKey",
    "OAuthClient",
    "AuthorizationCode",
    "OAuthToken",
    "DEFAULT_CLIENT_SCOPES",
    "utcnow",
]
