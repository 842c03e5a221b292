from __future__ import annotations

from .constants import KEY_SIZE, V2_NONCE_SIZE
from .errors import CapabilityError

try:  # pragma: no cover - availability depends on environment
    from Cryptodome.Cipher import AES, ChaCha20_Poly1305  # type: ignore
    _HAS_CRYPTODOME = True
except ImportError:  # pragma: no cover - reported by require_strong_crypto()
    AES = ChaCha20_Poly1305 = None  # type: ignore
    _HAS_CRYPTODOME = False

try:  # pragma: no cover - availability depends on environment
    from argon2.low_level import Type as _ArgonType  # type: ignore
    _HAS_ARGON2 = True
except ImportError:  # pragma: no cover - reported by require_strong_crypto()
    _ArgonType = None  # type: ignore
    _HAS_ARGON2 = False


def require_strong_crypto() -> None:
    """Refuse to continue unless 256-bit ciphers and Argon2id are usable.

    Raises:
        CapabilityError: a required backend is missing or rejects a 256-bit key.
    """
    if not _HAS_CRYPTODOME:
        raise CapabilityError("PyCryptodomex is required for encryption support")
    if not _HAS_ARGON2 or not hasattr(_ArgonType, "ID"):
        raise CapabilityError("argon2-cffi with Argon2id support is required")
    probe_key = bytes(KEY_SIZE)
    try:
        AES.new(probe_key, AES.MODE_ECB).encrypt(bytes(16))
        ChaCha20_Poly1305.new(key=probe_key, nonce=bytes(V2_NONCE_SIZE)).encrypt_and_digest(b"")
    except (ValueError, TypeError) as exc:
        raise CapabilityError(f"256-bit keys are not permitted by the crypto backend: {exc}") from exc
