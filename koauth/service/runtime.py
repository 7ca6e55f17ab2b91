from __future__ import annotations

import threading
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from koauth.config import Settings, get_settings, reset_settings_cache
from koauth.logging import get_logger
from koauth.service.api_keys import ApiKeyManager
from koauth.service.codec import SecretCodec
from koauth.service.oauth import OAuthEngine
from koauth.service.sessions import SessionManager
from koauth.service.users import UserService
from koauth.service.validator import CredentialValidator
from koauth.storage.common import CredentialStore
from koauth.storage.memory import MemoryStore
from koauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a DSN for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> CredentialStore:
    if settings.use_memory_store:
        return MemoryStore()
    return PostgresStore(
        settings.database_url,
        pool_min_size=settings.store_pool_min_size,
        pool_max_size=settings.store_pool_max_size,
        retry_attempts=settings.store_retry_attempts,
        retry_backoff_seconds=settings.store_retry_backoff_seconds,
    )


class Runtime:
    """Wires one store instance into every credential manager."""

    def __init__(self, settings: Optional[Settings] = None, store: Optional[CredentialStore] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = store if store is not None else build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
            )
            raise

        self.codec = SecretCodec(self.settings.token_pepper or "")
        self.users = UserService(self.store)
        self.sessions = SessionManager(
            self.store, self.codec, ttl=timedelta(days=self.settings.session_ttl_days)
        )
        self.api_keys = ApiKeyManager(
            self.store, self.codec, namespace=self.settings.api_key_namespace
        )
        self.oauth = OAuthEngine(
            self.store,
            self.codec,
            code_ttl=timedelta(seconds=self.settings.authorization_code_ttl_seconds),
            access_ttl=timedelta(minutes=self.settings.oauth_access_token_ttl_minutes),
            refresh_ttl=timedelta(days=self.settings.oauth_refresh_token_ttl_days),
        )
        self.validator = CredentialValidator(
            self.store, self.sessions, self.api_keys, self.oauth
        )
        logger.info("runtime_init_complete", store_type=store_type)

    def sweep_expired(self) -> Dict[str, int]:
        """Delete expired sessions, keys, codes and tokens; safe to run any time."""
        counts = {
            "sessions": self.sessions.sweep_expired(),
            "api_keys": self.api_keys.sweep_expired(),
        }
        counts.update(self.oauth.sweep_expired())
        return counts

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
