import threading
from datetime import timedelta

import pytest

from koauth.service.errors import ExpiredCredential, InvalidCredential
from koauth.service.runtime import get_runtime
from koauth.service.sessions import SESSION_ID_PREFIX
from koauth.storage.models import utcnow


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def user(runtime):
    return runtime.users.create_user("session-user@example.com", "Str0ng!Pass")


def _expire(runtime, session_id):
    runtime.store.sessions[session_id].expires_at = utcnow() - timedelta(seconds=1)


class TestCreateSession:
    def test_issues_prefixed_id_and_stores_only_digest(self, runtime, user):
        issued = runtime.sessions.create_session(user.id, ip_address="10.0.0.1", user_agent="pytest")
        assert issued.session_id.startswith(SESSION_ID_PREFIX)
        stored = runtime.store.get_session(issued.session_id)
        assert stored.refresh_token_hash != issued.refresh_token
        assert stored.refresh_token_hash == runtime.codec.lookup_digest(issued.refresh_token)
        assert stored.ip_address == "10.0.0.1"

    def test_expiry_follows_ttl(self, runtime, user):
        before = utcnow()
        issued = runtime.sessions.create_session(user.id)
        assert issued.expires_at - before >= timedelta(days=7) - timedelta(seconds=5)


class TestRotation:
    def test_rotation_returns_new_token_and_extends_expiry(self, runtime, user):
        issued = runtime.sessions.create_session(user.id)
        rotated = runtime.sessions.validate_and_rotate(issued.refresh_token)
        assert rotated.session_id == issued.session_id
        assert rotated.refresh_token != issued.refresh_token
        assert rotated.expires_at >= issued.expires_at

    def test_replaying_rotated_token_revokes_session(self, runtime, user):
        issued = runtime.sessions.create_session(user.id)
        rotated = runtime.sessions.validate_and_rotate(issued.refresh_token)

        with pytest.raises(InvalidCredential):
            runtime.sessions.validate_and_rotate(issued.refresh_token)

        assert runtime.store.get_session(issued.session_id) is None
        # The legitimate holder is logged out too
        with pytest.raises(InvalidCredential):
            runtime.sessions.validate_and_rotate(rotated.refresh_token)

    def test_unknown_token_is_invalid(self, runtime):
        with pytest.raises(InvalidCredential):
            runtime.sessions.validate_and_rotate("not-a-real-token")
        with pytest.raises(InvalidCredential):
            runtime.sessions.validate_and_rotate("")

    def test_expired_session_is_deleted(self, runtime, user):
        issued = runtime.sessions.create_session(user.id)
        _expire(runtime, issued.session_id)
        with pytest.raises(ExpiredCredential):
            runtime.sessions.validate_and_rotate(issued.refresh_token)
        assert runtime.store.get_session(issued.session_id) is None

    def test_concurrent_rotation_has_exactly_one_winner(self, runtime, user):
        issued = runtime.sessions.create_session(user.id)
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def rotate():
            barrier.wait()
            try:
                result = runtime.sessions.validate_and_rotate(issued.refresh_token)
            except InvalidCredential:
                result = "rejected"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=rotate) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("rejected") == 1
        assert len([o for o in outcomes if o != "rejected"]) == 1


class TestValidateSession:
    def test_live_session_resolves(self, runtime, user):
        issued = runtime.sessions.create_session(user.id)
        assert runtime.sessions.validate_session(issued.session_id).user_id == user.id

    def test_malformed_and_unknown_ids(self, runtime):
        with pytest.raises(InvalidCredential):
            runtime.sessions.validate_session("abc")
        with pytest.raises(InvalidCredential):
            runtime.sessions.validate_session(SESSION_ID_PREFIX + "missing")

    def test_expired_session_rejected(self, runtime, user):
        issued = runtime.sessions.create_session(user.id)
        _expire(runtime, issued.session_id)
        with pytest.raises(ExpiredCredential):
            runtime.sessions.validate_session(issued.session_id)


class TestRevocation:
    def test_revoke_single_session(self, runtime, user):
        issued = runtime.sessions.create_session(user.id)
        runtime.sessions.revoke(issued.session_id)
        with pytest.raises(InvalidCredential):
            runtime.sessions.validate_session(issued.session_id)
        # Revoking twice is harmless
        runtime.sessions.revoke(issued.session_id)

    def test_revoke_by_refresh_token(self, runtime, user):
        issued = runtime.sessions.create_session(user.id)
        runtime.sessions.revoke_by_refresh_token(issued.refresh_token)
        assert runtime.store.get_session(issued.session_id) is None

    def test_revoke_all_for_user(self, runtime, user):
        other = runtime.users.create_user("other@example.com", "Str0ng!Pass")
        runtime.sessions.create_session(user.id)
        runtime.sessions.create_session(user.id)
        kept = runtime.sessions.create_session(other.id)
        assert runtime.sessions.revoke_all_for_user(user.id) == 2
        assert runtime.sessions.list_sessions(user.id) == []
        assert runtime.store.get_session(kept.session_id) is not None

    def test_sweep_expired(self, runtime, user):
        stale = runtime.sessions.create_session(user.id)
        fresh = runtime.sessions.create_session(user.id)
        _expire(runtime, stale.session_id)
        assert runtime.sessions.sweep_expired() == 1
        assert [s.id for s in runtime.sessions.list_sessions(user.id)] == [fresh.session_id]
