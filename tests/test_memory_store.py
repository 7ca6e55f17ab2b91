from datetime import timedelta

import pytest

from koauth.storage.common import CredentialStore, family_ids, generate_uuid
from koauth.storage.errors import ConstraintViolation
from koauth.storage.memory import MemoryStore
from koauth.storage.models import (
    ApiKey,
    AuthorizationCode,
    OAuthClient,
    OAuthToken,
    Session,
    User,
    utcnow,
)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user(User(id=generate_uuid(), email="Owner@Example.com"))


@pytest.fixture
def client(store):
    return store.insert_client(
        OAuthClient(
            id=generate_uuid(),
            client_id="acme",
            client_secret_hash="x",
            name="Acme",
            redirect_uris=["https://acme.test/cb"],
        )
    )


def _token(user, client, kind="refresh", parent_id=None, ttl=timedelta(days=1)):
    return OAuthToken(
        id=generate_uuid(),
        token_hash=generate_uuid(),
        kind=kind,
        client_id=client.client_id,
        user_id=user.id,
        scopes=["openid"],
        expires_at=utcnow() + ttl,
        parent_id=parent_id,
    )


def test_memory_store_satisfies_protocol(store):
    assert isinstance(store, CredentialStore)


class TestUsers:
    def test_email_is_normalized_and_unique(self, store, user):
        assert user.email == "owner@example.com"
        assert store.get_user_by_email(" OWNER@example.com ").id == user.id
        with pytest.raises(ConstraintViolation):
            store.create_user(User(id=generate_uuid(), email="owner@EXAMPLE.com"))

    def test_returned_records_are_copies(self, store, user):
        fetched = store.get_user(user.id)
        fetched.is_admin = True
        assert store.get_user(user.id).is_admin is False

    def test_promote_first_admin_only_once(self, store, user):
        other = store.create_user(User(id=generate_uuid(), email="second@example.com"))
        assert store.promote_first_admin(user.id) is True
        assert store.promote_first_admin(other.id) is False
        assert store.get_user(other.id).is_admin is False

    def test_list_users_newest_first(self, store, user):
        later = store.create_user(
            User(id=generate_uuid(), email="later@example.com", created_at=utcnow() + timedelta(seconds=5))
        )
        assert [u.id for u in store.list_users()] == [later.id, user.id]
        assert [u.id for u in store.list_users(search="OWNER")] == [user.id]
        assert store.list_users(limit=1, offset=1)[0].id == user.id
        assert store.count_users("example.com") == 2

    def test_delete_user_cascades(self, store, user, client):
        store.insert_session(
            Session(id="sess_a", user_id=user.id, refresh_token_hash="h", expires_at=utcnow() + timedelta(days=1))
        )
        store.insert_oauth_tokens([_token(user, client)])
        assert store.delete_user(user.id)
        assert store.get_session("sess_a") is None
        assert store.oauth_tokens == {}


class TestSessions:
    def test_insert_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.insert_session(
                Session(id="sess_x", user_id="nobody", refresh_token_hash="h", expires_at=utcnow())
            )

    def test_rotation_is_compare_and_swap(self, store, user):
        now = utcnow()
        store.insert_session(
            Session(id="sess_a", user_id=user.id, refresh_token_hash="h1", expires_at=now + timedelta(days=1))
        )
        rotated = store.rotate_session_token("h1", "h2", now + timedelta(days=2), now)
        assert rotated.refresh_token_hash == "h2"
        assert rotated.previous_refresh_hash == "h1"
        assert store.rotate_session_token("h1", "h3", now + timedelta(days=2), now) is None

    def test_rotation_misses_expired_session(self, store, user):
        now = utcnow()
        store.insert_session(
            Session(id="sess_a", user_id=user.id, refresh_token_hash="h1", expires_at=now)
        )
        assert store.rotate_session_token("h1", "h2", now + timedelta(days=1), now) is None

    def test_sweep_removes_only_expired(self, store, user):
        now = utcnow()
        store.insert_session(
            Session(id="sess_old", user_id=user.id, refresh_token_hash="a", expires_at=now - timedelta(seconds=1))
        )
        store.insert_session(
            Session(id="sess_new", user_id=user.id, refresh_token_hash="b", expires_at=now + timedelta(days=1))
        )
        assert store.delete_expired_sessions(now) == 1
        assert store.get_session("sess_new") is not None


class TestApiKeys:
    def test_prefix_collision_is_reported_as_prefix(self, store, user):
        key = ApiKey(id=generate_uuid(), user_id=user.id, name="a", prefix="abc123", key_hash="x")
        store.insert_api_key(key)
        with pytest.raises(ConstraintViolation) as exc_info:
            store.insert_api_key(ApiKey(id=generate_uuid(), user_id=user.id, name="b", prefix="abc123", key_hash="y"))
        assert exc_info.value.detail == {"field": "prefix"}

    def test_delete_scoped_to_owner(self, store, user):
        key = store.insert_api_key(
            ApiKey(id=generate_uuid(), user_id=user.id, name="a", prefix="abc123", key_hash="x")
        )
        assert store.delete_api_key(key.id, "someone-else") is False
        assert store.delete_api_key(key.id, user.id) is True

    def test_sweep_keeps_keys_without_expiry(self, store, user):
        now = utcnow()
        store.insert_api_key(ApiKey(id=generate_uuid(), user_id=user.id, name="a", prefix="aaaaaa", key_hash="x"))
        store.insert_api_key(
            ApiKey(
                id=generate_uuid(),
                user_id=user.id,
                name="b",
                prefix="bbbbbb",
                key_hash="y",
                expires_at=now - timedelta(minutes=1),
            )
        )
        assert store.delete_expired_api_keys(now) == 1
        assert [k.prefix for k in store.list_api_keys(user.id)] == ["aaaaaa"]


class TestClients:
    def test_update_client_copies_uris(self, store, client):
        uris = ["https://acme.test/new"]
        updated = store.update_client("acme", {"redirect_uris": uris, "trusted": True})
        uris.append("https://evil.test/cb")
        assert store.get_client("acme").redirect_uris == ["https://acme.test/new"]
        assert updated.trusted is True
        assert store.update_client("missing", {"name": "x"}) is None

    def test_update_client_rejects_other_fields(self, store, client):
        with pytest.raises(ValueError):
            store.update_client("acme", {"active": False})


class TestAuthorizationCodes:
    def test_consume_returns_once(self, store, user, client):
        code = AuthorizationCode(
            id=generate_uuid(),
            code_hash="c1",
            client_id=client.client_id,
            user_id=user.id,
            redirect_uri="https://acme.test/cb",
            scopes=["openid"],
            expires_at=utcnow() + timedelta(minutes=5),
        )
        store.insert_authorization_code(code)
        assert store.consume_authorization_code("c1").id == code.id
        assert store.consume_authorization_code("c1") is None

    def test_code_requires_client(self, store, user):
        with pytest.raises(ConstraintViolation):
            store.insert_authorization_code(
                AuthorizationCode(
                    id=generate_uuid(),
                    code_hash="c1",
                    client_id="missing",
                    user_id=user.id,
                    redirect_uri="https://x.test/cb",
                    scopes=[],
                    expires_at=utcnow(),
                )
            )


class TestOAuthTokens:
    def test_rotation_links_new_refresh_to_old(self, store, user, client):
        old = _token(user, client)
        store.insert_oauth_tokens([old])
        new_refresh = _token(user, client)
        access = _token(user, client, kind="access", parent_id=new_refresh.id)
        consumed = store.rotate_oauth_refresh_token(
            old.token_hash, client.client_id, utcnow(), [new_refresh, access]
        )
        assert consumed.id == old.id
        assert store.get_oauth_token_by_hash(old.token_hash).consumed_at is not None
        assert store.get_oauth_token_by_hash(new_refresh.token_hash).parent_id == old.id
        assert store.get_oauth_token_by_hash(access.token_hash).parent_id == new_refresh.id

    def test_rotation_misses_consumed_or_foreign_tokens(self, store, user, client):
        old = _token(user, client)
        store.insert_oauth_tokens([old])
        assert store.rotate_oauth_refresh_token(old.token_hash, "other", utcnow(), [_token(user, client)]) is None
        store.rotate_oauth_refresh_token(old.token_hash, client.client_id, utcnow(), [_token(user, client)])
        assert store.rotate_oauth_refresh_token(old.token_hash, client.client_id, utcnow(), [_token(user, client)]) is None

    def test_family_revocation_removes_descendants_only(self, store, user, client):
        root = _token(user, client)
        child = _token(user, client, parent_id=root.id)
        grandchild = _token(user, client, kind="access", parent_id=child.id)
        unrelated = _token(user, client)
        store.insert_oauth_tokens([root, child, grandchild, unrelated])
        assert store.revoke_oauth_token_family(child.token_hash) == 2
        assert store.get_oauth_token_by_hash(root.token_hash) is not None
        assert store.get_oauth_token_by_hash(unrelated.token_hash) is not None
        assert store.revoke_oauth_token_family("unknown") == 0

    def test_sweep_detaches_children(self, store, user, client):
        expired = _token(user, client, ttl=timedelta(seconds=-1))
        child = _token(user, client, kind="access", parent_id=expired.id)
        store.insert_oauth_tokens([expired, child])
        assert store.delete_expired_oauth_tokens(utcnow()) == 1
        survivor = store.get_oauth_token_by_hash(child.token_hash)
        assert survivor is not None
        assert survivor.parent_id is None

    def test_insert_rejects_unknown_parent(self, store, user, client):
        with pytest.raises(ConstraintViolation):
            store.insert_oauth_tokens([_token(user, client, parent_id="nope")])


def test_family_ids_collects_descendants():
    tokens = [
        OAuthToken(id="r", token_hash="1", kind="refresh", client_id="c", user_id="u", scopes=[], expires_at=utcnow()),
        OAuthToken(id="a", token_hash="2", kind="access", client_id="c", user_id="u", scopes=[], expires_at=utcnow(), parent_id="r"),
        OAuthToken(id="r2", token_hash="3", kind="refresh", client_id="c", user_id="u", scopes=[], expires_at=utcnow(), parent_id="r"),
        OAuthToken(id="a2", token_hash="4", kind="access", client_id="c", user_id="u", scopes=[], expires_at=utcnow(), parent_id="r2"),
    ]
    assert set(family_ids("r", tokens)) == {"r", "a", "r2", "a2"}
    assert set(family_ids("r2", tokens)) == {"r2", "a2"}
