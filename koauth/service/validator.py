from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from koauth.logging import get_logger
from koauth.service.api_keys import ApiKeyManager
from koauth.service.errors import CredentialError, InvalidCredential, Unauthorized
from koauth.service.oauth import ACCESS_TOKEN_PREFIX, OAuthEngine
from koauth.service.sessions import SESSION_ID_PREFIX, SessionManager
from koauth.storage.common import CredentialStore

logger = get_logger(__name__)


@dataclass
class Principal:
    user_id: str
    email: str
    is_admin: bool
    kind: str  # "session" | "api_key" | "oauth"
    session_id: Optional[str] = None
    api_key_id: Optional[str] = None
    client_id: Optional[str] = None
    scopes: List[str] = field(default_factory=list)


class CredentialValidator:
    """Single entry point that turns a presented credential into a Principal.

    Credentials are dispatched by shape. Every rejection leaves as
    :class:`Unauthorized`; the underlying kind only reaches the log.
    Store outages are not credential failures and propagate unchanged.
    """

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionManager,
        api_keys: ApiKeyManager,
        oauth: OAuthEngine,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.api_keys = api_keys
        self.oauth = oauth

    def _credential_kind(self, credential: str) -> Optional[str]:
        if credential.startswith(SESSION_ID_PREFIX):
            return "session"
        if credential.startswith(ACCESS_TOKEN_PREFIX):
            return "oauth"
        if self.api_keys.looks_like_key(credential):
            return "api_key"
        return None

    def authenticate(self, credential: Optional[str]) -> Principal:
        credential = (credential or "").strip()
        kind = self._credential_kind(credential) if credential else None
        try:
            if kind == "session":
                return self._from_session(credential)
            if kind == "oauth":
                return self._from_oauth(credential)
            if kind == "api_key":
                return self._from_api_key(credential)
            raise InvalidCredential("unrecognised credential shape")
        except CredentialError as exc:
            if not exc.normalized:
                raise
            logger.info("credential_rejected", kind=kind, reason=exc.kind.value)
            raise Unauthorized() from None

    def authenticate_request(
        self, authorization: Optional[str], session_cookie: Optional[str]
    ) -> Principal:
        """Resolve a request's credentials.

        A bearer header wins outright; a bad bearer never falls back to the
        session cookie.
        """
        if authorization:
            scheme, _, value = authorization.partition(" ")
            if scheme.lower() != "bearer" or not value.strip():
                logger.info("credential_rejected", kind=None, reason="malformed_authorization_header")
                raise Unauthorized()
            return self.authenticate(value.strip())
        if session_cookie:
            return self.authenticate(session_cookie)
        raise Unauthorized()

    def validate_key(self, raw_key: Optional[str]) -> Dict[str, Any]:
        """Uniform answer for the validate-key endpoint."""
        if not raw_key or not self.api_keys.looks_like_key(raw_key.strip()):
            return {"valid": False}
        try:
            principal = self.authenticate(raw_key)
        except Unauthorized:
            return {"valid": False}
        return {"valid": True, "userId": principal.user_id, "email": principal.email}

    def _from_session(self, session_id: str) -> Principal:
        session = self.sessions.validate_session(session_id)
        user = self.store.get_user(session.user_id)
        if user is None:
            raise InvalidCredential("session owner missing")
        return Principal(
            user_id=user.id,
            email=user.email,
            is_admin=user.is_admin,
            kind="session",
            session_id=session.id,
        )

    def _from_api_key(self, raw_key: str) -> Principal:
        key, user = self.api_keys.resolve(raw_key)
        return Principal(
            user_id=user.id,
            email=user.email,
            is_admin=user.is_admin,
            kind="api_key",
            api_key_id=key.id,
        )

    def _from_oauth(self, raw_token: str) -> Principal:
        token = self.oauth.validate_access_token(raw_token)
        user = self.store.get_user(token.user_id)
        if user is None:
            raise InvalidCredential("token owner missing")
        return Principal(
            user_id=user.id,
            email=user.email,
            # Delegated tokens never carry admin rights
            is_admin=False,
            kind="oauth",
            client_id=token.client_id,
            scopes=list(token.scopes),
        )


__all__ = ["CredentialValidator", "Principal"]
