import pytest

from koauth.service.codec import SecretCodec

PEPPER = "unit-test-pepper-0123456789abcdefghij"


@pytest.fixture
def codec():
    return SecretCodec(PEPPER)


class TestSecretGeneration:
    def test_generated_secrets_are_url_safe_and_distinct(self, codec):
        values = {codec.generate_secret() for _ in range(50)}
        assert len(values) == 50
        for value in values:
            # 32 bytes of entropy encode to 43 url-safe characters
            assert len(value) == 43
            assert all(c.isalnum() or c in "-_" for c in value)

    def test_rejects_short_secrets(self, codec):
        with pytest.raises(ValueError):
            codec.generate_secret(8)

    def test_requires_pepper(self):
        with pytest.raises(ValueError):
            SecretCodec("")


class TestHashing:
    def test_hash_verifies_only_the_original(self, codec):
        digest = codec.hash("koa_abc123_secret")
        assert codec.verify("koa_abc123_secret", digest)
        assert not codec.verify("koa_abc123_secreT", digest)

    def test_hash_is_salted(self, codec):
        assert codec.hash("same") != codec.hash("same")

    def test_hash_never_contains_the_secret(self, codec):
        secret = codec.generate_secret()
        assert secret not in codec.hash(secret)

    @pytest.mark.parametrize("digest", ["", "no-separator", "$", "!!!$???", "YWJj$YWJj"])
    def test_malformed_digest_is_a_mismatch(self, codec, digest):
        assert codec.verify("anything", digest) is False

    def test_dummy_verify_always_fails(self, codec):
        assert codec.verify_dummy("koa_abc123_whatever") is False


class TestLookupDigest:
    def test_deterministic_per_pepper(self, codec):
        assert codec.lookup_digest("ort_x") == codec.lookup_digest("ort_x")
        other = SecretCodec(PEPPER + "-rotated")
        assert other.lookup_digest("ort_x") != codec.lookup_digest("ort_x")

    def test_distinct_inputs_distinct_digests(self, codec):
        assert codec.lookup_digest("a") != codec.lookup_digest("b")
        assert len(codec.lookup_digest("a")) == 64

    def test_constant_time_equals(self, codec):
        assert codec.constant_time_equals("abc", "abc")
        assert not codec.constant_time_equals("abc", "abd")
        assert not codec.constant_time_equals("abc", "abcd")
