"""Credential and key material generator backed by ``secrets`` and ``cryptography``."""

from __future__ import annotations

import base64
import secrets
import string
import uuid as _uuid

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

from ...domain.errors import InvalidOption

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"

SS2022_KEY_SIZES: dict[str, int] = {
    "2022-blake3-aes-128-gcm": 16,
    "2022-blake3-aes-256-gcm": 32,
    "2022-blake3-chacha20-poly1305": 32,
}


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _from_b64url(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class DefaultSecretGenerator:
    """Generate UUIDs, passwords, REALITY key pairs, short ids, and SS-2022 keys."""

    def uuid(self) -> str:
        return str(_uuid.uuid4())

    def password(self, length: int = 16) -> str:
        return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))

    def x25519_keypair(self) -> tuple[str, str]:
        """Return ``(private, public)`` as unpadded URL-safe base64, the form REALITY expects."""

        private = X25519PrivateKey.generate()
        private_raw = private.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
        public_raw = private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        return _b64url(private_raw), _b64url(public_raw)

    def public_key_from_private(self, private_key: str) -> str:
        try:
            raw = _from_b64url(private_key)
            private = X25519PrivateKey.from_private_bytes(raw)
        except ValueError as exc:
            raise InvalidOption(f"invalid X25519 private key: {exc}", option="private_key") from exc
        return _b64url(private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw))

    def short_id(self, length: int = 8) -> str:
        if length <= 0 or length > 16:
            length = 8
        return secrets.token_hex((length + 1) // 2)[:length]

    def ss2022_key(self, method: str) -> str:
        size = SS2022_KEY_SIZES.get(method)
        if size is None:
            raise InvalidOption(f"unsupported Shadowsocks-2022 method: {method}", option="method", method=method)
        return base64.b64encode(secrets.token_bytes(size)).decode("ascii")
