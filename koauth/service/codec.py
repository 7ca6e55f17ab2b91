from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

from koauth.logging import get_logger

# scrypt cost parameters for secrets verified by full hash (API keys, client secrets)
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1
_SCRYPT_DKLEN = 64
_SALT_BYTES = 16


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


class SecretCodec:
    """Random secret generation plus the two at-rest representations.

    ``hash``/``verify`` use salted scrypt for credentials that are located by
    a separate public identifier (API key prefix, OAuth client id).
    ``lookup_digest`` is a keyed HMAC for credentials that must be found by
    exact match (refresh tokens, authorization codes, OAuth tokens); the raw
    value carries 256 bits of entropy so a fast keyed digest is enough.
    """

    def __init__(self, pepper: str) -> None:
        if not pepper:
            raise ValueError("pepper is required")
        self._pepper = pepper.encode("utf-8")
        self.logger = get_logger(__name__)
        self._dummy_digest = self.hash(secrets.token_urlsafe(32))

    @staticmethod
    def generate_secret(nbytes: int = 32) -> str:
        # os.urandom failures propagate to the caller
        if nbytes < 16:
            raise ValueError("secrets must carry at least 128 bits")
        return secrets.token_urlsafe(nbytes)

    def hash(self, secret: str) -> str:
        salt = secrets.token_bytes(_SALT_BYTES)
        derived = self._derive(secret, salt)
        return f"{_b64encode(salt)}${_b64encode(derived)}"

    def verify(self, secret: str, digest: str) -> bool:
        try:
            salt_part, hash_part = digest.split("$", 1)
            salt = _b64decode(salt_part)
            expected = _b64decode(hash_part)
        except (ValueError, AttributeError):
            self.logger.warning("secret_digest_malformed")
            return False
        if not salt or len(expected) != _SCRYPT_DKLEN:
            return False
        candidate = self._derive(secret, salt)
        return hmac.compare_digest(candidate, expected)

    def verify_dummy(self, secret: str) -> bool:
        """Spend the cost of one verify when there is no stored digest to check."""
        self.verify(secret, self._dummy_digest)
        return False

    def lookup_digest(self, secret: str) -> str:
        return hmac.new(self._pepper, secret.encode("utf-8"), hashlib.sha256).hexdigest()

    @staticmethod
    def constant_time_equals(left: str, right: str) -> bool:
        return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))

    @staticmethod
    def _derive(secret: str, salt: bytes) -> bytes:
        return hashlib.scrypt(
            secret.encode("utf-8"),
            salt=salt,
            n=_SCRYPT_N,
            r=_SCRYPT_R,
            p=_SCRYPT_P,
            dklen=_SCRYPT_DKLEN,
        )


__all__ = ["SecretCodec"]
