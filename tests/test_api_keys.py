from datetime import timedelta

import pytest

from koauth.service.api_keys import PREFIX_LENGTH, ApiKeyManager, parse_api_key
from koauth.service.errors import ExpiredCredential, InvalidCredential, ValidationError
from koauth.service.runtime import get_runtime
from koauth.storage.errors import ConstraintViolation
from koauth.storage.models import utcnow


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def user(runtime):
    return runtime.users.create_user("keys@example.com", "Str0ng!Pass")


@pytest.fixture
def manager(runtime):
    return runtime.api_keys


class TestParseApiKey:
    def test_splits_namespace_prefix_and_secret(self):
        parsed = parse_api_key("kura_Ab12Cd_some-secret_value", "kura")
        assert parsed.prefix == "Ab12Cd"
        assert parsed.secret == "some-secret_value"

    @pytest.mark.parametrize(
        "raw",
        ["", "kura_", "kura_short", "koa_Ab12Cd_secret", "kura_Ab12Cd", "kura_Ab12Cdx_secret", "kura_Ab12Cd_s$cret"],
    )
    def test_rejects_malformed(self, raw):
        assert parse_api_key(raw, "kura") is None


class TestIssue:
    def test_key_format_and_storage(self, manager, user, runtime):
        issued = manager.issue(user.id, "ci")
        namespace, prefix, secret = issued.raw_key.split("_", 2)
        assert namespace == "koa"
        assert len(prefix) == PREFIX_LENGTH
        assert prefix == issued.key.prefix
        assert len(secret) >= 43
        stored = runtime.store.get_api_key(issued.key.id)
        assert issued.raw_key not in stored.key_hash
        assert runtime.codec.verify(issued.raw_key, stored.key_hash)

    def test_rejects_bad_name_and_past_expiry(self, manager, user):
        with pytest.raises(ValidationError):
            manager.issue(user.id, "  ")
        with pytest.raises(ValidationError):
            manager.issue(user.id, "x" * 101)
        with pytest.raises(ValidationError):
            manager.issue(user.id, "late", expires_at=utcnow() - timedelta(minutes=1))

    def test_prefix_collision_retries(self, manager, user, monkeypatch):
        first = manager.issue(user.id, "first")
        prefixes = iter([first.key.prefix, first.key.prefix, "Zz9Yy8"])
        monkeypatch.setattr(manager, "_new_prefix", lambda: next(prefixes))
        second = manager.issue(user.id, "second")
        assert second.key.prefix == "Zz9Yy8"

    def test_prefix_collision_gives_up(self, manager, user, monkeypatch):
        first = manager.issue(user.id, "first")
        monkeypatch.setattr(manager, "_new_prefix", lambda: first.key.prefix)
        with pytest.raises(ConstraintViolation):
            manager.issue(user.id, "second")


class TestValidate:
    def test_valid_key_returns_owner_and_touches(self, manager, user, runtime):
        issued = manager.issue(user.id, "ci")
        assert manager.validate(issued.raw_key).id == user.id
        assert runtime.store.get_api_key(issued.key.id).last_used_at is not None

    def test_wrong_secret_with_real_prefix(self, manager, user):
        issued = manager.issue(user.id, "ci")
        tampered = issued.raw_key[:-1] + ("A" if issued.raw_key[-1] != "A" else "B")
        with pytest.raises(InvalidCredential):
            manager.validate(tampered)

    def test_unknown_prefix(self, manager):
        with pytest.raises(InvalidCredential):
            manager.validate("koa_Qq1Qq1_" + "a" * 43)

    def test_other_namespace_is_malformed(self, manager, user):
        issued = manager.issue(user.id, "ci")
        with pytest.raises(InvalidCredential):
            manager.validate("kura" + issued.raw_key[3:])

    def test_expired_key_detected_after_hash_match(self, manager, user, runtime):
        issued = manager.issue(user.id, "ci", expires_at=utcnow() + timedelta(days=1))
        runtime.store.api_keys[issued.key.id].expires_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(ExpiredCredential):
            manager.validate(issued.raw_key)
        # A wrong secret on an expired key is still just invalid
        with pytest.raises(InvalidCredential):
            manager.validate(issued.raw_key + "x")

    def test_touch_failure_does_not_reject(self, manager, user, runtime, monkeypatch):
        issued = manager.issue(user.id, "ci")

        def broken_touch(key_id, when):
            raise RuntimeError("write failed")

        monkeypatch.setattr(runtime.store, "touch_api_key", broken_touch)
        assert manager.validate(issued.raw_key).id == user.id

    def test_revoked_key_rejected(self, manager, user):
        issued = manager.issue(user.id, "ci")
        assert manager.revoke(issued.key.id, user.id) is True
        with pytest.raises(InvalidCredential):
            manager.validate(issued.raw_key)

    def test_revoke_requires_owner(self, manager, user, runtime):
        other = runtime.users.create_user("intruder@example.com", "Str0ng!Pass")
        issued = manager.issue(user.id, "ci")
        assert manager.revoke(issued.key.id, other.id) is False
        assert manager.validate(issued.raw_key).id == user.id


class TestCustomNamespace:
    def test_kura_keys_round_trip(self, runtime, user):
        kura = ApiKeyManager(runtime.store, runtime.codec, namespace="kura")
        issued = kura.issue(user.id, "deploy")
        assert issued.raw_key.startswith("kura_")
        assert kura.looks_like_key(issued.raw_key)
        assert kura.validate(issued.raw_key).email == "keys@example.com"
        # Keys of one namespace are not recognised by another
        assert not runtime.api_keys.looks_like_key(issued.raw_key)


def test_list_and_sweep(manager, user, runtime):
    keep = manager.issue(user.id, "keep")
    drop = manager.issue(user.id, "drop", expires_at=utcnow() + timedelta(hours=1))
    runtime.store.api_keys[drop.key.id].expires_at = utcnow() - timedelta(seconds=1)
    assert manager.sweep_expired() == 1
    assert [k.id for k in manager.list_keys(user.id)] == [keep.key.id]
