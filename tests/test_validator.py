from datetime import timedelta

import pytest

from koauth.service.errors import InvalidRedirectUri, Unauthorized
from koauth.service.runtime import get_runtime
from koauth.storage.errors import StoreUnavailable
from koauth.storage.models import utcnow

REDIRECT = "https://app.example.com/callback"


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def validator(runtime):
    return runtime.validator


@pytest.fixture
def user(runtime):
    return runtime.users.create_user("principal@example.com", "Str0ng!Pass")


@pytest.fixture
def oauth_pair(runtime, user):
    runtime.oauth.register_client("Partner", [REDIRECT])
    code = runtime.oauth.issue_authorization_code("partner", user.id, REDIRECT, scope="openid email")
    return runtime.oauth.redeem_code(code, "partner", REDIRECT)


class TestAuthenticate:
    def test_session_principal(self, runtime, validator, user):
        runtime.store.promote_first_admin(user.id)
        issued = runtime.sessions.create_session(user.id)
        principal = validator.authenticate(issued.session_id)
        assert principal.kind == "session"
        assert principal.session_id == issued.session_id
        assert principal.is_admin is True

    def test_api_key_principal(self, runtime, validator, user):
        issued = runtime.api_keys.issue(user.id, "ci")
        principal = validator.authenticate(issued.raw_key)
        assert principal.kind == "api_key"
        assert principal.email == "principal@example.com"
        assert principal.api_key_id == issued.key.id

    def test_oauth_principal_never_admin(self, runtime, validator, user, oauth_pair):
        runtime.store.promote_first_admin(user.id)
        principal = validator.authenticate(oauth_pair.access_token)
        assert principal.kind == "oauth"
        assert principal.client_id == "partner"
        assert principal.scopes == ["openid", "email"]
        assert principal.is_admin is False

    @pytest.mark.parametrize("credential", [None, "", "   ", "garbage", "sess_nope", "oat_nope", "koa_abcdef_nope"])
    def test_rejections_are_uniform(self, validator, credential):
        with pytest.raises(Unauthorized) as exc_info:
            validator.authenticate(credential)
        assert exc_info.value.message == "unauthorized"

    def test_expired_session_is_plain_unauthorized(self, runtime, validator, user):
        issued = runtime.sessions.create_session(user.id)
        runtime.store.sessions[issued.session_id].expires_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(Unauthorized):
            validator.authenticate(issued.session_id)

    def test_refresh_token_is_not_a_bearer_credential(self, validator, oauth_pair):
        with pytest.raises(Unauthorized):
            validator.authenticate(oauth_pair.refresh_token)

    def test_store_outage_propagates(self, runtime, validator, user, monkeypatch):
        issued = runtime.sessions.create_session(user.id)

        def down(session_id):
            raise StoreUnavailable(attempts=3)

        monkeypatch.setattr(runtime.store, "get_session", down)
        with pytest.raises(StoreUnavailable):
            validator.authenticate(issued.session_id)

    def test_non_normalized_errors_pass_through(self, runtime, validator, monkeypatch):
        def misconfigured(raw):
            raise InvalidRedirectUri("boom")

        monkeypatch.setattr(runtime.oauth, "validate_access_token", misconfigured)
        with pytest.raises(InvalidRedirectUri):
            validator.authenticate("oat_anything")


class TestAuthenticateRequest:
    def test_bearer_header(self, runtime, validator, user):
        issued = runtime.api_keys.issue(user.id, "ci")
        principal = validator.authenticate_request(f"Bearer {issued.raw_key}", None)
        assert principal.kind == "api_key"

    def test_cookie_used_without_header(self, runtime, validator, user):
        issued = runtime.sessions.create_session(user.id)
        assert validator.authenticate_request(None, issued.session_id).kind == "session"

    def test_bad_bearer_does_not_fall_back_to_cookie(self, runtime, validator, user):
        issued = runtime.sessions.create_session(user.id)
        with pytest.raises(Unauthorized):
            validator.authenticate_request("Bearer oat_forged", issued.session_id)

    @pytest.mark.parametrize("header", ["Basic abc", "Bearer", "Bearer    ", "token"])
    def test_malformed_header(self, validator, header):
        with pytest.raises(Unauthorized):
            validator.authenticate_request(header, None)

    def test_nothing_presented(self, validator):
        with pytest.raises(Unauthorized):
            validator.authenticate_request(None, None)


class TestValidateKey:
    def test_valid_key(self, runtime, validator, user):
        issued = runtime.api_keys.issue(user.id, "ci")
        assert validator.validate_key(issued.raw_key) == {
            "valid": True,
            "userId": user.id,
            "email": "principal@example.com",
        }

    def test_invalid_inputs_share_one_answer(self, runtime, validator, user, oauth_pair):
        session = runtime.sessions.create_session(user.id)
        for raw in [None, "", "koa_abcdef_wrong", session.session_id, oauth_pair.access_token]:
            assert validator.validate_key(raw) == {"valid": False}
