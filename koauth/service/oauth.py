from __future__ import annotations

import base64
import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Union
from urllib.parse import urlparse

from koauth.logging import get_logger
from koauth.service.codec import SecretCodec
from koauth.service.errors import (
    ClientInactive,
    ClientMismatch,
    CodeAlreadyUsed,
    CodeExpired,
    ConflictError,
    ExpiredCredential,
    InvalidCredential,
    InvalidRedirectUri,
    InvalidScope,
    NotFoundError,
    PkceMismatch,
    UnauthorizedGrant,
    ValidationError,
)
from koauth.storage.common import CLIENT_UPDATABLE_FIELDS, CredentialStore, generate_uuid
from koauth.storage.errors import ConstraintViolation
from koauth.storage.models import (
    DEFAULT_CLIENT_SCOPES,
    AuthorizationCode,
    OAuthClient,
    OAuthToken,
)

ACCESS_TOKEN_PREFIX = "oat_"
REFRESH_TOKEN_PREFIX = "ort_"
CODE_PREFIX = "oac_"
PKCE_METHODS = ("plain", "S256")
GRANT_TYPES = ("authorization_code", "refresh_token")

_TOKEN_BYTES = 32
_CLIENT_SECRET_BYTES = 32
# RFC 7636: 43-128 characters from the unreserved set
_PKCE_VALUE_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
_EMAIL_CLAIM_SCOPES = {"openid", "email", "profile"}

ScopeInput = Union[str, Sequence[str], None]


def parse_scope(scope: ScopeInput) -> List[str]:
    """Normalise a space separated scope string or list, keeping order, dropping repeats."""
    if scope is None:
        return []
    parts = scope.split() if isinstance(scope, str) else [s for s in scope if s]
    seen: List[str] = []
    for part in parts:
        if part not in seen:
            seen.append(part)
    return seen


def pkce_transform(verifier: str, method: str) -> str:
    if method == "plain":
        return verifier
    if method == "S256":
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    raise ValidationError("unsupported code_challenge_method", detail={"method": method})


def slugify_client_name(name: str) -> str:
    slug = re.sub(r"\s+", "-", name.strip().lower())
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    return re.sub(r"-{2,}", "-", slug).strip("-")


def _validate_redirect_uri_format(uri: str) -> None:
    parsed = urlparse(uri)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc or parsed.fragment:
        raise ValidationError(
            "redirect URIs must be absolute http(s) URLs without a fragment",
            detail={"redirect_uri": uri},
        )


@dataclass
class RegisteredClient:
    """A client and its raw secret, returned once at registration or regeneration."""

    client: OAuthClient
    client_secret: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    user_id: str
    client_id: str
    scopes: List[str] = field(default_factory=list)
    expires_in: int = 0
    token_type: str = "Bearer"

    def as_response(self) -> Dict[str, object]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
            "scope": " ".join(self.scopes),
        }


class OAuthEngine:
    """Authorization-code grant with PKCE, refresh rotation and revocation.

    Codes and tokens are stored as lookup digests. Redemption deletes the
    code row and returns it in one step, so concurrent redemptions of the
    same code cannot both succeed; every check after that runs against the
    row that was removed. Refresh tokens rotate by marking the old token
    consumed and inserting its successor in the same transaction. A token
    and everything issued from it form a family that is revoked together.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: SecretCodec,
        *,
        code_ttl: timedelta = timedelta(minutes=10),
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=30),
    ) -> None:
        self.store = store
        self.codec = codec
        self.code_ttl = code_ttl
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # clients -------------------------------------------------------------

    def register_client(
        self,
        name: str,
        redirect_uris: Iterable[str],
        *,
        client_id: Optional[str] = None,
        description: Optional[str] = None,
        logo_url: Optional[str] = None,
        website_url: Optional[str] = None,
        scopes: ScopeInput = None,
        grant_types: Optional[Iterable[str]] = None,
        trusted: bool = False,
    ) -> RegisteredClient:
        name = (name or "").strip()
        if not name:
            raise ValidationError("client name is required", detail={"field": "name"})
        uris = [uri.strip() for uri in redirect_uris if uri and uri.strip()]
        if not uris:
            raise ValidationError("at least one redirect URI is required", detail={"field": "redirect_uris"})
        for uri in uris:
            _validate_redirect_uri_format(uri)
        grants = list(grant_types) if grant_types is not None else list(GRANT_TYPES)
        if not grants or any(g not in GRANT_TYPES for g in grants):
            raise ValidationError(
                "grant_types must be a non-empty subset of " + ", ".join(GRANT_TYPES),
                detail={"field": "grant_types"},
            )
        resolved_id = client_id or slugify_client_name(name)
        if not resolved_id:
            raise ValidationError("client id could not be derived from name", detail={"field": "name"})

        secret = self.codec.generate_secret(_CLIENT_SECRET_BYTES)
        now = self._now()
        client = OAuthClient(
            id=generate_uuid(),
            client_id=resolved_id,
            client_secret_hash=self.codec.hash(secret),
            name=name,
            redirect_uris=uris,
            description=description,
            logo_url=logo_url,
            website_url=website_url,
            scopes=parse_scope(scopes) or list(DEFAULT_CLIENT_SCOPES),
            grant_types=grants,
            trusted=trusted,
            created_at=now,
            updated_at=now,
        )
        try:
            stored = self.store.insert_client(client)
        except ConstraintViolation as exc:
            raise ConflictError("client id already exists", detail={"client_id": resolved_id}) from exc
        self.logger.info("oauth_client_registered", client_id=stored.client_id)
        return RegisteredClient(client=stored, client_secret=secret)

    def _require_client(self, client_id: str) -> OAuthClient:
        client = self.store.get_client(client_id) if client_id else None
        if client is None:
            raise NotFoundError("client not found")
        return client

    def get_client_public_info(self, client_id: str) -> Dict[str, Optional[str]]:
        client = self.store.get_client(client_id) if client_id else None
        # Deactivated clients look exactly like missing ones
        if client is None or not client.active:
            raise NotFoundError("client not found")
        return client.public_info()

    def authenticate_client(self, client_id: str, client_secret: str) -> OAuthClient:
        client = self.store.get_client(client_id) if client_id else None
        if client is None:
            self.codec.verify_dummy(client_secret or "")
            raise InvalidCredential("unknown client")
        if not client_secret or not self.codec.verify(client_secret, client.client_secret_hash):
            raise InvalidCredential("client secret mismatch")
        if not client.active:
            raise ClientInactive("client is inactive")
        return client

    def set_client_active(self, client_id: str, active: bool) -> OAuthClient:
        client = self.store.set_client_active(client_id, active)
        if client is None:
            raise NotFoundError("client not found")
        self.logger.info("oauth_client_active_changed", client_id=client_id, active=active)
        return client

    def regenerate_client_secret(self, client_id: str) -> RegisteredClient:
        secret = self.codec.generate_secret(_CLIENT_SECRET_BYTES)
        client = self.store.update_client_secret(client_id, self.codec.hash(secret))
        if client is None:
            raise NotFoundError("client not found")
        self.logger.info("oauth_client_secret_regenerated", client_id=client_id)
        return RegisteredClient(client=client, client_secret=secret)

    def list_clients(self) -> List[OAuthClient]:
        return self.store.list_clients()

    def update_client(self, client_id: str, **changes) -> OAuthClient:
        """Change a client's metadata, redirect URIs or trust flag.

        Only the keys in ``CLIENT_UPDATABLE_FIELDS`` are accepted; activation
        and the secret have their own operations.
        """
        unknown = set(changes) - set(CLIENT_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError("fields cannot be updated", detail={"fields": sorted(unknown)})
        if not changes:
            raise ValidationError("no fields to update")
        if "name" in changes:
            changes["name"] = (changes["name"] or "").strip()
            if not changes["name"]:
                raise ValidationError("client name is required", detail={"field": "name"})
        if "redirect_uris" in changes:
            uris = [uri.strip() for uri in changes["redirect_uris"] or [] if uri and uri.strip()]
            if not uris:
                raise ValidationError(
                    "at least one redirect URI is required", detail={"field": "redirect_uris"}
                )
            for uri in uris:
                _validate_redirect_uri_format(uri)
            changes["redirect_uris"] = uris
        client = self.store.update_client(client_id, changes)
        if client is None:
            raise NotFoundError("client not found")
        self.logger.info("oauth_client_updated", client_id=client_id, fields=sorted(changes))
        return client

    def get_client(self, client_id: str) -> OAuthClient:
        return self._require_client(client_id)

    def check_grant_type(self, client: OAuthClient, grant_type: str) -> None:
        if grant_type not in client.grant_types:
            raise UnauthorizedGrant(
                "client is not allowed this grant type", detail={"grant_type": grant_type}
            )

    # authorization codes -------------------------------------------------

    def issue_authorization_code(
        self,
        client_id: str,
        user_id: str,
        redirect_uri: str,
        scope: ScopeInput = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ) -> str:
        client = self._require_client(client_id)
        if not client.active:
            raise ClientInactive("client is inactive")
        # Exact, case-sensitive match; no normalisation of any kind
        if redirect_uri not in client.redirect_uris:
            raise InvalidRedirectUri("redirect_uri is not registered for this client")

        scopes = parse_scope(scope) or list(DEFAULT_CLIENT_SCOPES)
        invalid = [s for s in scopes if s not in client.scopes]
        if invalid:
            raise InvalidScope("requested scope is not allowed", detail={"scopes": invalid})

        method = None
        if code_challenge:
            method = code_challenge_method or "plain"
            if method not in PKCE_METHODS:
                raise ValidationError("unsupported code_challenge_method", detail={"method": method})
            if not _PKCE_VALUE_RE.match(code_challenge):
                raise ValidationError("malformed code_challenge")
        elif code_challenge_method:
            raise ValidationError("code_challenge_method given without code_challenge")

        raw_code = CODE_PREFIX + self.codec.generate_secret(_TOKEN_BYTES)
        now = self._now()
        self.store.insert_authorization_code(
            AuthorizationCode(
                id=generate_uuid(),
                code_hash=self.codec.lookup_digest(raw_code),
                client_id=client.client_id,
                user_id=user_id,
                redirect_uri=redirect_uri,
                scopes=scopes,
                expires_at=now + self.code_ttl,
                code_challenge=code_challenge,
                code_challenge_method=method,
                created_at=now,
            )
        )
        self.logger.info(
            "authorization_code_issued", client_id=client.client_id, user_id=user_id
        )
        return raw_code

    def redeem_code(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenPair:
        """Exchange an authorization code for a token pair.

        The code is consumed before any other check, so a failed redemption
        still burns it.
        """
        if not code:
            raise CodeAlreadyUsed()
        record = self.store.consume_authorization_code(self.codec.lookup_digest(code))
        if record is None:
            # Already redeemed and swept codes are indistinguishable
            raise CodeAlreadyUsed()
        now = self._now()
        if now >= record.expires_at:
            raise CodeExpired()
        if not self.codec.constant_time_equals(record.client_id, client_id or "") or (
            not self.codec.constant_time_equals(record.redirect_uri, redirect_uri or "")
        ):
            raise ClientMismatch()
        if record.code_challenge:
            if not code_verifier or not _PKCE_VALUE_RE.match(code_verifier):
                raise PkceMismatch()
            expected = pkce_transform(code_verifier, record.code_challenge_method or "plain")
            if not self.codec.constant_time_equals(expected, record.code_challenge):
                raise PkceMismatch()

        client = self.store.get_client(record.client_id)
        if client is None or not client.active:
            raise ClientInactive("client is inactive")

        pair, tokens = self._mint_pair(record.user_id, record.client_id, record.scopes, now)
        self.store.insert_oauth_tokens(tokens)
        self.logger.info(
            "authorization_code_redeemed", client_id=record.client_id, user_id=record.user_id
        )
        return pair

    # tokens --------------------------------------------------------------

    def _mint_pair(
        self,
        user_id: str,
        client_id: str,
        scopes: List[str],
        now: datetime,
        parent_id: Optional[str] = None,
    ) -> tuple[TokenPair, List[OAuthToken]]:
        access_raw = ACCESS_TOKEN_PREFIX + self.codec.generate_secret(_TOKEN_BYTES)
        refresh_raw = REFRESH_TOKEN_PREFIX + self.codec.generate_secret(_TOKEN_BYTES)
        refresh = OAuthToken(
            id=generate_uuid(),
            token_hash=self.codec.lookup_digest(refresh_raw),
            kind="refresh",
            client_id=client_id,
            user_id=user_id,
            scopes=list(scopes),
            expires_at=now + self.refresh_ttl,
            parent_id=parent_id,
            created_at=now,
        )
        access = OAuthToken(
            id=generate_uuid(),
            token_hash=self.codec.lookup_digest(access_raw),
            kind="access",
            client_id=client_id,
            user_id=user_id,
            scopes=list(scopes),
            expires_at=now + self.access_ttl,
            parent_id=refresh.id,
            created_at=now,
        )
        pair = TokenPair(
            access_token=access_raw,
            refresh_token=refresh_raw,
            user_id=user_id,
            client_id=client_id,
            scopes=list(scopes),
            expires_in=int(self.access_ttl.total_seconds()),
        )
        # refresh first: the access token references it
        return pair, [refresh, access]

    def refresh_token(self, raw_refresh_token: str, client_id: str) -> TokenPair:
        """Rotate a refresh token issued to ``client_id``.

        Raises:
            InvalidCredential: unknown token, a concurrent rotation won, or
                the token was already rotated (its family is revoked).
            ExpiredCredential: the token is past expiry.
            ClientMismatch: the token belongs to another client.
        """
        if not raw_refresh_token or not raw_refresh_token.startswith(REFRESH_TOKEN_PREFIX):
            raise InvalidCredential("malformed refresh token")
        token_hash = self.codec.lookup_digest(raw_refresh_token)
        existing = self.store.get_oauth_token_by_hash(token_hash)
        if existing is None or existing.kind != "refresh":
            raise InvalidCredential("unknown refresh token")

        now = self._now()
        pair, tokens = self._mint_pair(existing.user_id, existing.client_id, existing.scopes, now)
        consumed = self.store.rotate_oauth_refresh_token(token_hash, client_id, now, tokens)
        if consumed is not None:
            self.logger.info(
                "oauth_refresh_rotated", client_id=client_id, user_id=consumed.user_id
            )
            return pair

        # The conditional consume missed; classify from the row we read first
        if existing.client_id != client_id:
            raise ClientMismatch()
        if existing.consumed_at is not None or self._was_consumed(token_hash):
            revoked = self.store.revoke_oauth_token_family(token_hash)
            self.logger.warning(
                "oauth_refresh_reuse_detected",
                client_id=client_id,
                user_id=existing.user_id,
                revoked=revoked,
            )
            raise InvalidCredential("refresh token reuse detected")
        if existing.is_expired(now):
            self.store.revoke_oauth_token_family(token_hash)
            raise ExpiredCredential("refresh token expired")
        raise InvalidCredential("refresh token no longer valid")

    def _was_consumed(self, token_hash: str) -> bool:
        current = self.store.get_oauth_token_by_hash(token_hash)
        return current is not None and current.consumed_at is not None

    def validate_access_token(self, raw_access_token: str) -> OAuthToken:
        if not raw_access_token or not raw_access_token.startswith(ACCESS_TOKEN_PREFIX):
            raise InvalidCredential("malformed access token")
        token = self.store.get_oauth_token_by_hash(self.codec.lookup_digest(raw_access_token))
        if token is None or token.kind != "access":
            raise InvalidCredential("unknown access token")
        if token.is_expired(self._now()):
            raise ExpiredCredential("access token expired")
        client = self.store.get_client(token.client_id)
        if client is None or not client.active:
            raise InvalidCredential("client is inactive")
        return token

    def revoke_token(self, raw_token: str, client_id: Optional[str] = None) -> int:
        """Delete a token and every token issued from it.

        Unknown tokens are a no-op. When ``client_id`` is given, tokens issued
        to any other client are left alone and the call is also a no-op.
        """
        if not raw_token:
            return 0
        token_hash = self.codec.lookup_digest(raw_token)
        if client_id is not None:
            token = self.store.get_oauth_token_by_hash(token_hash)
            if token is None:
                return 0
            if token.client_id != client_id:
                self.logger.warning(
                    "oauth_revoke_client_mismatch", client_id=client_id, owner=token.client_id
                )
                return 0
        count = self.store.revoke_oauth_token_family(token_hash)
        if count:
            self.logger.info("oauth_token_revoked", client_id=client_id, revoked=count)
        return count

    def userinfo(self, raw_access_token: str) -> Dict[str, object]:
        """Claims about the token's user, limited by the token's scopes.

        ``sub`` is always present; ``email`` and ``email_verified`` need one
        of the ``openid``, ``email`` or ``profile`` scopes.
        """
        token = self.validate_access_token(raw_access_token)
        user = self.store.get_user(token.user_id)
        if user is None:
            raise InvalidCredential("token owner missing")
        claims: Dict[str, object] = {"sub": user.id}
        if set(token.scopes) & _EMAIL_CLAIM_SCOPES:
            claims["email"] = user.email
            claims["email_verified"] = user.email_verified
        return claims

    def sweep_expired(self) -> Dict[str, int]:
        now = self._now()
        counts = {
            "authorization_codes": self.store.delete_expired_authorization_codes(now),
            "oauth_tokens": self.store.delete_expired_oauth_tokens(now),
        }
        if any(counts.values()):
            self.logger.info("expired_oauth_grants_swept", **counts)
        return counts


__all__ = [
    "ACCESS_TOKEN_PREFIX",
    "REFRESH_TOKEN_PREFIX",
    "CODE_PREFIX",
    "GRANT_TYPES",
    "OAuthEngine",
    "RegisteredClient",
    "TokenPair",
    "parse_scope",
    "pkce_transform",
    "slugify_client_name",
]
