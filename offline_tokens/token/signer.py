"""Ed25519 signing and verification over canonical token bytes (PyNaCl)."""

from __future__ import annotations

import base64
import binascii
import os
from typing import Iterable, Optional

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def generate_keypair() -> tuple[str, str]:
    """Generate an Ed25519 keypair as base64 ``(seed, public_key)``."""
    sk = SigningKey.generate()
    return _b64(bytes(sk)), _b64(bytes(sk.verify_key))


def verify(payload: bytes, signature: str, public_key: str) -> bool:
    """Check a base64 Ed25519 signature. Malformed input yields ``False``."""
    try:
        vk = VerifyKey(base64.b64decode(public_key, validate=True))
        vk.verify(payload, base64.b64decode(signature, validate=True))
        return True
    except (BadSignatureError, CryptoError, binascii.Error, ValueError, TypeError):
        return False


class Signer:
    """Holds the issuer signing key. The only component able to mint signatures."""

    def __init__(self, *, signing_key: str | None = None) -> None:
        seed = signing_key or os.getenv("OFFLINE_TOKENS_SIGNING_KEY")
        if seed:
            self._key = SigningKey(base64.b64decode(seed))
        else:
            self._key = SigningKey.generate()
        self._public_key = _b64(bytes(self._key.verify_key))

    @property
    def public_key(self) -> str:
        """Base64 public key clients use for offline verification."""
        return self._public_key

    def sign(self, payload: bytes) -> str:
        return _b64(self._key.sign(payload).signature)

    def verify(self, payload: bytes, signature: str, public_key: Optional[str] = None) -> bool:
        return verify(payload, signature, public_key or self._public_key)


class KeyRing:
    """Trusted issuer public keys: the active key plus retired ones still honoured."""

    def __init__(self, keys: Iterable[str] = ()) -> None:
        self._keys: set[str] = {k for k in keys if k}

    def add(self, public_key: str) -> None:
        self._keys.add(public_key)

    def revoke(self, public_key: str) -> None:
        self._keys.discard(public_key)

    def trusts(self, public_key: str) -> bool:
        return public_key in self._keys

    def verify(self, payload: bytes, signature: str, public_key: str) -> bool:
        """Verify only when ``public_key`` belongs to the ring."""
        return self.trusts(public_key) and verify(payload, signature, public_key)

    def __len__(self) -> int:
        return len(self._keys)


class KeyDirectory:
    """Registered device public keys, looked up by user id."""

    def __init__(self, keys: Optional[dict[str, str]] = None) -> None:
        self._keys: dict[str, str] = dict(keys or {})

    def register(self, user_id: str, public_key: str) -> None:
        self._keys[user_id] = public_key

    def public_key_for(self, user_id: str) -> Optional[str]:
        return self._keys.get(user_id)

    def verify(self, user_id: str, payload: bytes, signature: str) -> Optional[bool]:
        """``None`` when the user has no registered key, else the check result."""
        public_key = self._keys.get(user_id)
        if public_key is None:
            return None
        return verify(payload, signature, public_key)
