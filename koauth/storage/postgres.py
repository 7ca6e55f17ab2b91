from __future__ import annotations

import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from koauth.logging import get_logger
from koauth.storage.common import CLIENT_UPDATABLE_FIELDS, normalize_email, parse_scopes
from koauth.storage.errors import ConstraintViolation, StoreUnavailable
from koauth.storage.models import (
    ApiKey,
    AuthorizationCode,
    OAuthClient,
    OAuthToken,
    Session,
    User,
)

T = TypeVar("T")

_REQUIRED_TABLES = [
    "app_user",
    "auth_session",
    "api_key",
    "oauth_client",
    "oauth_authorization_code",
    "oauth_token",
]

# Serialises the first-admin bootstrap across connections
_ADMIN_BOOTSTRAP_LOCK_KEY = 0x6B6F6164

_TOKEN_COLUMNS = (
    "id, token_hash, kind, client_id, user_id, scopes, parent_id, consumed_at, expires_at, created_at"
)


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row.get("password_hash"),
        email_verified=bool(row.get("email_verified", False)),
        is_admin=bool(row.get("is_admin", False)),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _session_from_row(row: dict) -> Session:
    return Session(
        id=row["id"],
        user_id=str(row["user_id"]),
        refresh_token_hash=row["refresh_token_hash"],
        previous_refresh_hash=row.get("previous_refresh_hash"),
        expires_at=row["expires_at"],
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _api_key_from_row(row: dict) -> ApiKey:
    return ApiKey(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        name=row["name"],
        prefix=row["prefix"],
        key_hash=row["key_hash"],
        expires_at=row.get("expires_at"),
        last_used_at=row.get("last_used_at"),
        created_at=row["created_at"],
    )


def _client_from_row(row: dict) -> OAuthClient:
    return OAuthClient(
        id=str(row["id"]),
        client_id=row["client_id"],
        client_secret_hash=row["client_secret_hash"],
        name=row["name"],
        description=row.get("description"),
        logo_url=row.get("logo_url"),
        website_url=row.get("website_url"),
        redirect_uris=list(row.get("redirect_uris") or []),
        scopes=parse_scopes(row.get("scopes")),
        grant_types=list(row.get("grant_types") or []),
        trusted=bool(row.get("trusted", False)),
        active=bool(row.get("active", True)),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _code_from_row(row: dict) -> AuthorizationCode:
    return AuthorizationCode(
        id=str(row["id"]),
        code_hash=row["code_hash"],
        client_id=row["client_id"],
        user_id=str(row["user_id"]),
        redirect_uri=row["redirect_uri"],
        scopes=parse_scopes(row.get("scopes")),
        code_challenge=row.get("code_challenge"),
        code_challenge_method=row.get("code_challenge_method"),
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


def _token_from_row(row: dict) -> OAuthToken:
    parent = row.get("parent_id")
    return OAuthToken(
        id=str(row["id"]),
        token_hash=row["token_hash"],
        kind=row["kind"],
        client_id=row["client_id"],
        user_id=str(row["user_id"]),
        scopes=parse_scopes(row.get("scopes")),
        parent_id=str(parent) if parent else None,
        consumed_at=row.get("consumed_at"),
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


def _constraint_violation(exc: errors.IntegrityError, message: str) -> ConstraintViolation:
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None) if diag else None
    return ConstraintViolation(message, {"constraint": constraint} if constraint else None)


class PostgresStore:
    """Postgres-backed credential store.

    Each method runs as one statement or one transaction on a pooled
    connection. Transient connection failures are retried a bounded number of
    times before :class:`StoreUnavailable` is raised; integrity errors are
    never retried.
    """

    def __init__(
        self,
        dsn: str,
        *,
        pool_min_size: int = 2,
        pool_max_size: int = 10,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.pool = ConnectionPool(
            self.dsn,
            min_size=pool_min_size,
            max_size=pool_max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure credential tables exist before serving requests."""

        def _check(conn) -> List[str]:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
            return missing

        missing_tables = self._run("verify_schema", _check)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_init.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def _run(self, operation: str, fn: Callable[[Any], T], *, retry_after_send: bool = True) -> T:
        """Run ``fn(conn)`` on a pooled connection with bounded retry.

        The connection context commits on success and rolls back on error, so
        a retried attempt never sees a partial write from the failed one.

        With ``retry_after_send=False`` only a failed checkout is retried. A
        connection lost mid-statement may hide a commit, so conditional writes
        surface ``StoreUnavailable`` instead of re-running their condition.
        """
        last_error: Exception | None = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                with self._connect() as conn:
                    return fn(conn)
            except (psycopg.OperationalError, PoolTimeout) as exc:
                last_error = exc
                if not retry_after_send and not isinstance(exc, PoolTimeout):
                    self.logger.error(
                        "store_write_outcome_unknown", operation=operation, error=type(exc).__name__
                    )
                    raise StoreUnavailable(attempts=attempt) from exc
                self.logger.warning(
                    "store_operation_retry",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=self.retry_attempts,
                    error=type(exc).__name__,
                )
                if attempt < self.retry_attempts:
                    time.sleep(self.retry_backoff_seconds * attempt)
        self.logger.error(
            "store_unavailable", operation=operation, attempts=self.retry_attempts
        )
        raise StoreUnavailable(attempts=self.retry_attempts) from last_error

    # users
    def create_user(self, user: User) -> User:
        email = normalize_email(user.email)

        def _insert(conn) -> dict:
            try:
                return conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, email_verified, is_admin, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user.id,
                        email,
                        user.password_hash,
                        user.email_verified,
                        user.is_admin,
                        user.created_at,
                        user.updated_at,
                    ),
                ).fetchone()
            except errors.UniqueViolation as exc:
                raise _constraint_violation(exc, "email already exists") from exc

        return _user_from_row(self._run("create_user", _insert))

    def get_user(self, user_id: str) -> Optional[User]:
        row = self._run(
            "get_user",
            lambda conn: conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone(),
        )
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._run(
            "get_user_by_email",
            lambda conn: conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone(),
        )
        return _user_from_row(row) if row else None

    def set_email_verified(self, user_id: str, verified: bool = True) -> Optional[User]:
        row = self._run(
            "set_email_verified",
            lambda conn: conn.execute(
                """
                UPDATE app_user SET email_verified = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (verified, user_id),
            ).fetchone(),
        )
        return _user_from_row(row) if row else None

    @staticmethod
    def _search_pattern(search: Optional[str]) -> str:
        needle = (search or "").strip().lower()
        escaped = needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return f"%{escaped}%"

    def list_users(
        self, search: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[User]:
        rows = self._run(
            "list_users",
            lambda conn: conn.execute(
                """
                SELECT * FROM app_user WHERE email LIKE %s
                ORDER BY created_at DESC LIMIT %s OFFSET %s
                """,
                (self._search_pattern(search), limit, offset),
            ).fetchall(),
        )
        return [_user_from_row(row) for row in rows]

    def count_users(self, search: Optional[str] = None) -> int:
        row = self._run(
            "count_users",
            lambda conn: conn.execute(
                "SELECT count(*) AS total FROM app_user WHERE email LIKE %s",
                (self._search_pattern(search),),
            ).fetchone(),
        )
        return int(row["total"]) if row else 0

    def promote_first_admin(self, user_id: str) -> bool:
        def _promote(conn) -> bool:
            with conn.transaction():
                conn.execute("SELECT pg_advisory_xact_lock(%s)", (_ADMIN_BOOTSTRAP_LOCK_KEY,))
                row = conn.execute(
                    """
                    UPDATE app_user SET is_admin = true, updated_at = now()
                    WHERE id = %s AND NOT EXISTS (SELECT 1 FROM app_user WHERE is_admin)
                    RETURNING id
                    """,
                    (user_id,),
                ).fetchone()
            return row is not None

        return self._run("promote_first_admin", _promote)

    def delete_user(self, user_id: str) -> bool:
        # sessions, keys, codes and tokens go with the user via ON DELETE CASCADE
        def _delete(conn) -> bool:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

        return self._run("delete_user", _delete)

    # sessions
    def insert_session(self, session: Session) -> Session:
        def _insert(conn) -> dict:
            try:
                return conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, refresh_token_hash, previous_refresh_hash, expires_at,
                        ip_address, user_agent, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token_hash,
                        session.previous_refresh_hash,
                        session.expires_at,
                        session.ip_address,
                        session.user_agent,
                        session.created_at,
                        session.updated_at,
                    ),
                ).fetchone()
            except errors.ForeignKeyViolation as exc:
                raise _constraint_violation(exc, "user does not exist") from exc
            except errors.UniqueViolation as exc:
                raise _constraint_violation(exc, "session already exists") from exc

        return _session_from_row(self._run("insert_session", _insert))

    def get_session(self, session_id: str) -> Optional[Session]:
        row = self._run(
            "get_session",
            lambda conn: conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone(),
        )
        return _session_from_row(row) if row else None

    def get_session_by_token(self, token_hash: str) -> Optional[Session]:
        row = self._run(
            "get_session_by_token",
            lambda conn: conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token_hash = %s", (token_hash,)
            ).fetchone(),
        )
        return _session_from_row(row) if row else None

    def rotate_session_token(
        self, old_hash: str, new_hash: str, expires_at: datetime, now: datetime
    ) -> Optional[Session]:
        # Row lock makes a concurrent rotation re-check the WHERE clause and miss
        row = self._run(
            "rotate_session_token",
            lambda conn: conn.execute(
                """
                UPDATE auth_session
                SET previous_refresh_hash = refresh_token_hash,
                    refresh_token_hash = %s,
                    expires_at = %s,
                    updated_at = %s
                WHERE refresh_token_hash = %s AND expires_at > %s
                RETURNING *
                """,
                (new_hash, expires_at, now, old_hash, now),
            ).fetchone(),
            retry_after_send=False,
        )
        return _session_from_row(row) if row else None

    def revoke_session_by_previous_token(self, token_hash: str) -> Optional[Session]:
        row = self._run(
            "revoke_session_by_previous_token",
            lambda conn: conn.execute(
                "DELETE FROM auth_session WHERE previous_refresh_hash = %s RETURNING *",
                (token_hash,),
            ).fetchone(),
        )
        return _session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        return self._run(
            "delete_session",
            lambda conn: conn.execute(
                "DELETE FROM auth_session WHERE id = %s", (session_id,)
            ).rowcount
            > 0,
        )

    def delete_user_sessions(self, user_id: str) -> int:
        return self._run(
            "delete_user_sessions",
            lambda conn: conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
            ).rowcount,
        )

    def list_sessions_for_user(self, user_id: str) -> List[Session]:
        rows = self._run(
            "list_sessions_for_user",
            lambda conn: conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall(),
        )
        return [_session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        return self._run(
            "delete_expired_sessions",
            lambda conn: conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now,)
            ).rowcount,
        )

    # api keys
    def insert_api_key(self, key: ApiKey) -> ApiKey:
        def _insert(conn) -> dict:
            try:
                return conn.execute(
                    """
                    INSERT INTO api_key (id, user_id, name, prefix, key_hash, expires_at, last_used_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        key.id,
                        key.user_id,
                        key.name,
                        key.prefix,
                        key.key_hash,
                        key.expires_at,
                        key.last_used_at,
                        key.created_at,
                    ),
                ).fetchone()
            except errors.ForeignKeyViolation as exc:
                raise _constraint_violation(exc, "user does not exist") from exc
            except errors.UniqueViolation as exc:
                raise ConstraintViolation(
                    "api key prefix already exists", {"field": "prefix"}
                ) from exc

        return _api_key_from_row(self._run("insert_api_key", _insert))

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        row = self._run(
            "get_api_key",
            lambda conn: conn.execute(
                "SELECT * FROM api_key WHERE id = %s", (key_id,)
            ).fetchone(),
        )
        return _api_key_from_row(row) if row else None

    def find_api_keys_by_prefix(self, prefix: str) -> List[ApiKey]:
        rows = self._run(
            "find_api_keys_by_prefix",
            lambda conn: conn.execute(
                "SELECT * FROM api_key WHERE prefix = %s", (prefix,)
            ).fetchall(),
        )
        return [_api_key_from_row(row) for row in rows]

    def touch_api_key(self, key_id: str, when: datetime) -> None:
        self._run(
            "touch_api_key",
            lambda conn: conn.execute(
                "UPDATE api_key SET last_used_at = %s WHERE id = %s", (when, key_id)
            ),
        )

    def list_api_keys(self, user_id: str) -> List[ApiKey]:
        rows = self._run(
            "list_api_keys",
            lambda conn: conn.execute(
                "SELECT * FROM api_key WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall(),
        )
        return [_api_key_from_row(row) for row in rows]

    def delete_api_key(self, key_id: str, user_id: Optional[str] = None) -> bool:
        def _delete(conn) -> bool:
            if user_id is None:
                cur = conn.execute("DELETE FROM api_key WHERE id = %s", (key_id,))
            else:
                cur = conn.execute(
                    "DELETE FROM api_key WHERE id = %s AND user_id = %s", (key_id, user_id)
                )
            return cur.rowcount > 0

        return self._run("delete_api_key", _delete)

    def delete_expired_api_keys(self, now: datetime) -> int:
        return self._run(
            "delete_expired_api_keys",
            lambda conn: conn.execute(
                "DELETE FROM api_key WHERE expires_at IS NOT NULL AND expires_at < %s", (now,)
            ).rowcount,
        )

    # oauth clients
    def insert_client(self, client: OAuthClient) -> OAuthClient:
        def _insert(conn) -> dict:
            try:
                return conn.execute(
                    """
                    INSERT INTO oauth_client (
                        id, client_id, client_secret_hash, name, description, logo_url, website_url,
                        redirect_uris, scopes, grant_types, trusted, active, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        client.id,
                        client.client_id,
                        client.client_secret_hash,
                        client.name,
                        client.description,
                        client.logo_url,
                        client.website_url,
                        list(client.redirect_uris),
                        list(client.scopes),
                        list(client.grant_types),
                        client.trusted,
                        client.active,
                        client.created_at,
                        client.updated_at,
                    ),
                ).fetchone()
            except errors.UniqueViolation as exc:
                raise ConstraintViolation(
                    "client id already exists", {"field": "client_id"}
                ) from exc

        return _client_from_row(self._run("insert_client", _insert))

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        row = self._run(
            "get_client",
            lambda conn: conn.execute(
                "SELECT * FROM oauth_client WHERE client_id = %s", (client_id,)
            ).fetchone(),
        )
        return _client_from_row(row) if row else None

    def list_clients(self) -> List[OAuthClient]:
        rows = self._run(
            "list_clients",
            lambda conn: conn.execute(
                "SELECT * FROM oauth_client ORDER BY created_at"
            ).fetchall(),
        )
        return [_client_from_row(row) for row in rows]

    def set_client_active(self, client_id: str, active: bool) -> Optional[OAuthClient]:
        row = self._run(
            "set_client_active",
            lambda conn: conn.execute(
                """
                UPDATE oauth_client SET active = %s, updated_at = now()
                WHERE client_id = %s
                RETURNING *
                """,
                (active, client_id),
            ).fetchone(),
        )
        return _client_from_row(row) if row else None

    def update_client_secret(self, client_id: str, secret_hash: str) -> Optional[OAuthClient]:
        row = self._run(
            "update_client_secret",
            lambda conn: conn.execute(
                """
                UPDATE oauth_client SET client_secret_hash = %s, updated_at = now()
                WHERE client_id = %s
                RETURNING *
                """,
                (secret_hash, client_id),
            ).fetchone(),
        )
        return _client_from_row(row) if row else None

    def update_client(self, client_id: str, changes: Dict[str, Any]) -> Optional[OAuthClient]:
        unknown = set(changes) - set(CLIENT_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        if not changes:
            return self.get_client(client_id)
        # Column names come from the allow-list above, never from the caller
        assignments = ", ".join(f"{name} = %s" for name in changes)
        values = [list(v) if name == "redirect_uris" else v for name, v in changes.items()]
        row = self._run(
            "update_client",
            lambda conn: conn.execute(
                f"""
                UPDATE oauth_client SET {assignments}, updated_at = now()
                WHERE client_id = %s
                RETURNING *
                """,
                (*values, client_id),
            ).fetchone(),
        )
        return _client_from_row(row) if row else None

    # authorization codes
    def insert_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode:
        def _insert(conn) -> dict:
            try:
                return conn.execute(
                    """
                    INSERT INTO oauth_authorization_code (
                        id, code_hash, client_id, user_id, redirect_uri, scopes,
                        code_challenge, code_challenge_method, expires_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        code.id,
                        code.code_hash,
                        code.client_id,
                        code.user_id,
                        code.redirect_uri,
                        list(code.scopes),
                        code.code_challenge,
                        code.code_challenge_method,
                        code.expires_at,
                        code.created_at,
                    ),
                ).fetchone()
            except errors.ForeignKeyViolation as exc:
                raise _constraint_violation(exc, "client or user does not exist") from exc
            except errors.UniqueViolation as exc:
                raise _constraint_violation(exc, "authorization code already exists") from exc

        return _code_from_row(self._run("insert_authorization_code", _insert))

    def consume_authorization_code(self, code_hash: str) -> Optional[AuthorizationCode]:
        row = self._run(
            "consume_authorization_code",
            lambda conn: conn.execute(
                "DELETE FROM oauth_authorization_code WHERE code_hash = %s RETURNING *",
                (code_hash,),
            ).fetchone(),
            retry_after_send=False,
        )
        return _code_from_row(row) if row else None

    def delete_expired_authorization_codes(self, now: datetime) -> int:
        return self._run(
            "delete_expired_authorization_codes",
            lambda conn: conn.execute(
                "DELETE FROM oauth_authorization_code WHERE expires_at <= %s", (now,)
            ).rowcount,
        )

    # oauth tokens
    @staticmethod
    def _insert_tokens(conn, tokens: Sequence[OAuthToken]) -> None:
        for token in tokens:
            conn.execute(
                f"""
                INSERT INTO oauth_token ({_TOKEN_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.token_hash,
                    token.kind,
                    token.client_id,
                    token.user_id,
                    list(token.scopes),
                    token.parent_id,
                    token.consumed_at,
                    token.expires_at,
                    token.created_at,
                ),
            )

    def insert_oauth_tokens(self, tokens: Sequence[OAuthToken]) -> None:
        def _insert(conn) -> None:
            try:
                with conn.transaction():
                    self._insert_tokens(conn, tokens)
            except errors.ForeignKeyViolation as exc:
                raise _constraint_violation(exc, "token owner does not exist") from exc
            except errors.UniqueViolation as exc:
                raise _constraint_violation(exc, "token already exists") from exc

        self._run("insert_oauth_tokens", _insert)

    def get_oauth_token_by_hash(self, token_hash: str) -> Optional[OAuthToken]:
        row = self._run(
            "get_oauth_token_by_hash",
            lambda conn: conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM oauth_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone(),
        )
        return _token_from_row(row) if row else None

    def rotate_oauth_refresh_token(
        self,
        old_hash: str,
        client_id: str,
        now: datetime,
        new_tokens: Sequence[OAuthToken],
    ) -> Optional[OAuthToken]:
        def _rotate(conn) -> Optional[dict]:
            try:
                with conn.transaction():
                    row = conn.execute(
                        f"""
                        UPDATE oauth_token SET consumed_at = %s
                        WHERE token_hash = %s
                          AND kind = 'refresh'
                          AND client_id = %s
                          AND consumed_at IS NULL
                          AND expires_at > %s
                        RETURNING {_TOKEN_COLUMNS}
                        """,
                        (now, old_hash, client_id, now),
                    ).fetchone()
                    if not row:
                        return None
                    parent_id = str(row["id"])
                    batch = [
                        replace(token, parent_id=parent_id) if token.kind == "refresh" else token
                        for token in new_tokens
                    ]
                    self._insert_tokens(conn, batch)
                    return row
            except errors.UniqueViolation as exc:
                raise _constraint_violation(exc, "token already exists") from exc

        row = self._run("rotate_oauth_refresh_token", _rotate, retry_after_send=False)
        return _token_from_row(row) if row else None

    def revoke_oauth_token_family(self, token_hash: str) -> int:
        return self._run(
            "revoke_oauth_token_family",
            lambda conn: conn.execute(
                """
                WITH RECURSIVE family AS (
                    SELECT id FROM oauth_token WHERE token_hash = %s
                    UNION ALL
                    SELECT t.id FROM oauth_token t JOIN family f ON t.parent_id = f.id
                )
                DELETE FROM oauth_token WHERE id IN (SELECT id FROM family)
                """,
                (token_hash,),
            ).rowcount,
        )

    def delete_expired_oauth_tokens(self, now: datetime) -> int:
        return self._run(
            "delete_expired_oauth_tokens",
            lambda conn: conn.execute(
                "DELETE FROM oauth_token WHERE expires_at <= %s", (now,)
            ).rowcount,
        )
