"""Versioned, password-authenticated container around an arbitrary byte stream.

Container layout (little endian)::

    magic "FVLT" | u8 version | version-specific parameters | ciphertext | tag

Version 1: salt[16] IV[16] u32 PBKDF2 iterations. PBKDF2-HMAC-SHA256 yields a
64-byte key split into an AES-256-CTR key and an HMAC-SHA256 key; the tag is
the HMAC over header and ciphertext (encrypt-then-MAC).

Version 2: salt[16] nonce[24] u32 time cost, u32 memory KiB, u8 lanes. Argon2id
yields one 256-bit key for XChaCha20-Poly1305 with the header as associated data.

Ciphertext has the same length as the plaintext, so the reader locates the tag
from the file size and never needs metadata beyond the password.
"""

from __future__ import annotations

import logging
import os
import struct
import tempfile
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Iterator, Optional, Tuple

try:  # pragma: no cover - availability depends on environment
    from argon2.exceptions import HashingError  # type: ignore
    from argon2.low_level import Type as _ArgonType, hash_secret_raw  # type: ignore
    _KDF_ERRORS = (ValueError, TypeError, HashingError)
except ImportError:  # pragma: no cover - reported by require_strong_crypto()
    _ArgonType = hash_secret_raw = None  # type: ignore
    _KDF_ERRORS = (ValueError, TypeError)

try:  # pragma: no cover - availability depends on environment
    from Cryptodome.Cipher import AES, ChaCha20_Poly1305  # type: ignore
    from Cryptodome.Hash import HMAC, SHA256  # type: ignore
    from Cryptodome.Protocol.KDF import PBKDF2  # type: ignore
except ImportError:  # pragma: no cover - reported by require_strong_crypto()
    AES = ChaCha20_Poly1305 = HMAC = SHA256 = PBKDF2 = None  # type: ignore

from .capability import require_strong_crypto
from .constants import (
    CHUNK_SIZE,
    CONTAINER_MAGIC,
    DEFAULT_ENVELOPE_VERSION,
    ENVELOPE_V1,
    ENVELOPE_V2,
    KEY_SIZE,
    SALT_SIZE,
    V1_IV_SIZE,
    V1_PBKDF2_ITERATIONS,
    V1_TAG_SIZE,
    V2_ARGON_MEMORY_COST_KIB,
    V2_ARGON_PARALLELISM,
    V2_ARGON_TIME_COST,
    V2_NONCE_SIZE,
    V2_TAG_SIZE,
)
from .errors import AuthenticationError, CryptoInitError, VersionError


log = logging.getLogger(__name__)

_PREFIX_STRUCT = struct.Struct("<4sB")


class EnvelopeState(str, Enum):
    IDLE = "idle"
    HEADER_WRITTEN = "header-written"
    HEADER_READ = "header-read"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    FAILED = "failed"


class DeliveryMode(str, Enum):
    VERIFIED = "verified"  # authenticate the whole container before yielding plaintext
    EAGER = "eager"        # yield while authenticating; trust only once ``verified`` is set


@dataclass(frozen=True)
class EnvelopeHeader:
    version: int
    salt: bytes
    nonce: bytes
    kdf_params: Tuple[int, ...]

    def pack(self) -> bytes:
        suite = _suite_for(self.version)
        return _PREFIX_STRUCT.pack(CONTAINER_MAGIC, self.version) + suite.params_struct.pack(
            self.salt, self.nonce, *self.kdf_params
        )

    @property
    def size(self) -> int:
        return _PREFIX_STRUCT.size + _suite_for(self.version).params_struct.size

    @property
    def tag_size(self) -> int:
        return _suite_for(self.version).tag_size


# -------- Cipher suites --------

class _CtrHmacStream:
    def __init__(self, keys: bytes, iv: bytes, header_bytes: bytes, decrypt: bool):
        self._ctr = AES.new(keys[:KEY_SIZE], AES.MODE_CTR, nonce=b"", initial_value=iv)
        self._mac = HMAC.new(keys[KEY_SIZE:], digestmod=SHA256)
        self._mac.update(header_bytes)
        self._decrypt = decrypt

    def process(self, chunk: bytes) -> bytes:
        if self._decrypt:
            self._mac.update(chunk)
            return self._ctr.decrypt(chunk)
        ct = self._ctr.encrypt(chunk)
        self._mac.update(ct)
        return ct

    def authenticate(self, chunk: bytes) -> None:
        self._mac.update(chunk)

    def digest(self) -> bytes:
        return self._mac.digest()

    def verify(self, tag: bytes) -> None:
        self._mac.verify(tag)


class _XChaChaStream:
    def __init__(self, key: bytes, nonce: bytes, header_bytes: bytes, decrypt: bool):
        # A 24-byte nonce selects XChaCha20-Poly1305
        self._cipher = ChaCha20_Poly1305.new(key=key, nonce=nonce)
        self._cipher.update(header_bytes)
        self._decrypt = decrypt

    def process(self, chunk: bytes) -> bytes:
        return self._cipher.decrypt(chunk) if self._decrypt else self._cipher.encrypt(chunk)

    def authenticate(self, chunk: bytes) -> None:
        self._cipher.decrypt(chunk)

    def digest(self) -> bytes:
        return self._cipher.digest()

    def verify(self, tag: bytes) -> None:
        self._cipher.verify(tag)


class _Suite:
    version: int
    nonce_size: int
    tag_size: int
    params_struct: struct.Struct
    pinned: Tuple[int, ...]

    def new_header(self) -> EnvelopeHeader:
        return EnvelopeHeader(
            version=self.version,
            salt=os.urandom(SALT_SIZE),
            nonce=os.urandom(self.nonce_size),
            kdf_params=self.pinned,
        )

    def check_params(self, header: EnvelopeHeader) -> None:
        if tuple(header.kdf_params) != self.pinned:
            raise VersionError(
                f"Unsupported key-derivation parameters {tuple(header.kdf_params)} for version {self.version}"
            )

    def derive(self, password: bytes, header: EnvelopeHeader) -> bytes:
        raise NotImplementedError

    def stream(self, keys: bytes, header: EnvelopeHeader, header_bytes: bytes, *, decrypt: bool):
        raise NotImplementedError


class _PbkdfCtrHmacSuite(_Suite):
    version = ENVELOPE_V1
    nonce_size = V1_IV_SIZE
    tag_size = V1_TAG_SIZE
    params_struct = struct.Struct(f"<{SALT_SIZE}s{V1_IV_SIZE}sI")
    pinned = (V1_PBKDF2_ITERATIONS,)

    def derive(self, password: bytes, header: EnvelopeHeader) -> bytes:
        (iterations,) = header.kdf_params
        return PBKDF2(password, header.salt, dkLen=2 * KEY_SIZE, count=iterations, hmac_hash_module=SHA256)

    def stream(self, keys, header, header_bytes, *, decrypt):
        return _CtrHmacStream(keys, header.nonce, header_bytes, decrypt)


class _ArgonXChaChaSuite(_Suite):
    version = ENVELOPE_V2
    nonce_size = V2_NONCE_SIZE
    tag_size = V2_TAG_SIZE
    params_struct = struct.Struct(f"<{SALT_SIZE}s{V2_NONCE_SIZE}sIIB")
    pinned = (V2_ARGON_TIME_COST, V2_ARGON_MEMORY_COST_KIB, V2_ARGON_PARALLELISM)

    def derive(self, password: bytes, header: EnvelopeHeader) -> bytes:
        time_cost, memory_cost, parallelism = header.kdf_params
        return hash_secret_raw(
            password,
            header.salt,
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=KEY_SIZE,
            type=_ArgonType.ID,
        )

    def stream(self, keys, header, header_bytes, *, decrypt):
        return _XChaChaStream(keys, header.nonce, header_bytes, decrypt)


_SUITES = {s.version: s for s in (_PbkdfCtrHmacSuite(), _ArgonXChaChaSuite())}


def _suite_for(version: int) -> _Suite:
    suite = _SUITES.get(version)
    if suite is None:
        raise VersionError(f"Unsupported container format version {version}")
    return suite


def _encode_password(password: str) -> bytes:
    if not isinstance(password, str) or not password:
        raise CryptoInitError("Password must be a non-empty string")
    try:
        return password.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise CryptoInitError(f"Password cannot be encoded as UTF-8: {exc}") from exc


def _derive(suite: _Suite, password: str, header: EnvelopeHeader) -> bytes:
    secret = _encode_password(password)
    try:
        return suite.derive(secret, header)
    except _KDF_ERRORS as exc:
        raise CryptoInitError(f"Key derivation failed: {exc}") from exc


def read_header(f: BinaryIO) -> EnvelopeHeader:
    """Parse the header at the current position of ``f``.

    The version is checked before anything else is interpreted, so an unknown
    version never reaches key derivation.
    """
    raw = f.read(_PREFIX_STRUCT.size)
    if len(raw) < len(CONTAINER_MAGIC) and CONTAINER_MAGIC.startswith(raw):
        raise AuthenticationError("Container truncated before header")
    if raw[: len(CONTAINER_MAGIC)] != CONTAINER_MAGIC:
        raise VersionError("Not a foldervault container (bad magic)")
    if len(raw) != _PREFIX_STRUCT.size:
        raise AuthenticationError("Container truncated before header")
    _magic, version = _PREFIX_STRUCT.unpack(raw)
    suite = _suite_for(version)
    body = f.read(suite.params_struct.size)
    if len(body) != suite.params_struct.size:
        raise AuthenticationError("Container truncated inside header")
    salt, nonce, *kdf_params = suite.params_struct.unpack(body)
    header = EnvelopeHeader(version=version, salt=salt, nonce=nonce, kdf_params=tuple(kdf_params))
    suite.check_params(header)
    return header


def inspect_container(path: str) -> EnvelopeHeader:
    with open(path, "rb") as f:
        return read_header(f)


# -------- Writer --------

class EnvelopeWriter:
    """Streaming encryptor: header, then ciphertext chunks, then the tag."""

    def __init__(self, sink: BinaryIO, password: str, version: int = DEFAULT_ENVELOPE_VERSION):
        self.sink = sink
        self.password = password
        self.suite = _suite_for(version)
        self.state = EnvelopeState.IDLE
        self.header: Optional[EnvelopeHeader] = None
        self.bytes_in = 0
        self._stream = None

    def write_header(self) -> None:
        self._expect(EnvelopeState.IDLE)
        try:
            require_strong_crypto()
            header = self.suite.new_header()
            keys = _derive(self.suite, self.password, header)
            header_bytes = header.pack()
            self._stream = self.suite.stream(keys, header, header_bytes, decrypt=False)
            self.sink.write(header_bytes)
        except Exception:
            self.state = EnvelopeState.FAILED
            raise
        self.header = header
        self.state = EnvelopeState.HEADER_WRITTEN

    def update(self, chunk: bytes) -> None:
        self._expect(EnvelopeState.HEADER_WRITTEN, EnvelopeState.STREAMING)
        self.state = EnvelopeState.STREAMING
        try:
            self.sink.write(self._stream.process(chunk))
        except Exception:
            self.state = EnvelopeState.FAILED
            raise
        self.bytes_in += len(chunk)

    def finalize(self) -> bytes:
        self._expect(EnvelopeState.HEADER_WRITTEN, EnvelopeState.STREAMING)
        try:
            tag = self._stream.digest()
            self.sink.write(tag)
        except Exception:
            self.state = EnvelopeState.FAILED
            raise
        self.state = EnvelopeState.FINALIZED
        return tag

    def _expect(self, *states: EnvelopeState) -> None:
        if self.state not in states:
            raise RuntimeError(f"Envelope writer is {self.state.value}; expected {' or '.join(s.value for s in states)}")


def encrypt_stream(
    src: BinaryIO,
    sink: BinaryIO,
    password: str,
    version: int = DEFAULT_ENVELOPE_VERSION,
    *,
    chunk_size: int = CHUNK_SIZE,
) -> int:
    """Encrypt everything readable from ``src`` into ``sink``; returns plaintext length."""
    w = EnvelopeWriter(sink, password, version)
    w.write_header()
    while True:
        chunk = src.read(chunk_size)
        if not chunk:
            break
        w.update(chunk)
    w.finalize()
    return w.bytes_in


def encrypt_file(
    in_path: str,
    out_path: str,
    password: str,
    version: int = DEFAULT_ENVELOPE_VERSION,
    *,
    chunk_size: int = CHUNK_SIZE,
) -> int:
    """Encrypt ``in_path`` into a container at ``out_path``.

    The container is written next to ``out_path`` under a temporary name and
    moved into place only once complete, so a failed run leaves an existing
    ``out_path`` untouched.
    """
    _suite_for(version)
    with open(in_path, "rb") as src:
        out_dir = os.path.dirname(os.path.abspath(out_path))
        fd, partial = tempfile.mkstemp(prefix=f".{os.path.basename(out_path)}.", suffix=".partial", dir=out_dir)
        try:
            with os.fdopen(fd, "wb") as sink:
                n = encrypt_stream(src, sink, password, version, chunk_size=chunk_size)
            os.replace(partial, out_path)
        except BaseException:
            try:
                os.remove(partial)
            except OSError as exc:
                log.warning("could not remove partial container %s: %s", partial, exc)
            raise
    return n


# -------- Reader --------

class EnvelopeReader:
    """Streaming decryptor over a container file.

    In :attr:`DeliveryMode.VERIFIED` the whole ciphertext is authenticated
    before the first plaintext byte is yielded, and the tag is checked again
    at the end of the decrypting pass. In :attr:`DeliveryMode.EAGER` plaintext
    is yielded immediately and :attr:`verified` only becomes True once the tag
    has been checked after the last chunk.
    """

    def __init__(
        self,
        path: str,
        password: str,
        mode: DeliveryMode = DeliveryMode.VERIFIED,
        *,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.path = path
        self.password = password
        self.mode = DeliveryMode(mode)
        self.chunk_size = chunk_size
        self.state = EnvelopeState.IDLE
        self.header: Optional[EnvelopeHeader] = None
        self.verified = False
        self.f: Optional[BinaryIO] = None
        self._keys: Optional[bytes] = None
        self._header_bytes = b""
        self._ct_len = 0

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self) -> None:
        if self.state is not EnvelopeState.IDLE:
            raise RuntimeError(f"Envelope reader is {self.state.value}; expected idle")
        self.f = open(self.path, "rb")
        try:
            require_strong_crypto()
            header = read_header(self.f)
            total = os.fstat(self.f.fileno()).st_size
            ct_len = total - header.size - header.tag_size
            if ct_len < 0:
                raise AuthenticationError("Container truncated: no room for ciphertext and tag")
            self._keys = _derive(_suite_for(header.version), self.password, header)
        except Exception:
            self.state = EnvelopeState.FAILED
            self.close()
            raise
        self.header = header
        self._header_bytes = header.pack()
        self._ct_len = ct_len
        self.state = EnvelopeState.HEADER_READ
        log.debug("container %s: version %d, %d ciphertext bytes", self.path, header.version, ct_len)

    def close(self) -> None:
        if self.f is not None:
            self.f.close()
            self.f = None

    @property
    def plaintext_size(self) -> int:
        return self._ct_len

    def plaintext(self) -> Iterator[bytes]:
        """Yield decrypted chunks; raises :class:`AuthenticationError` on tag mismatch."""
        if self.state is not EnvelopeState.HEADER_READ:
            raise RuntimeError(f"Envelope reader is {self.state.value}; expected header-read")
        self.state = EnvelopeState.STREAMING
        try:
            if self.mode is DeliveryMode.VERIFIED:
                self._authenticate()
                self.verified = True
            stream = self._new_stream()
            for chunk in self._ciphertext():
                yield stream.process(chunk)
            self._check_tag(stream)
        except Exception:
            self.verified = False
            self.state = EnvelopeState.FAILED
            raise
        self.verified = True
        self.state = EnvelopeState.FINALIZED

    def _new_stream(self):
        return _suite_for(self.header.version).stream(self._keys, self.header, self._header_bytes, decrypt=True)

    def _ciphertext(self) -> Iterator[bytes]:
        self.f.seek(self.header.size)
        remaining = self._ct_len
        while remaining:
            chunk = self.f.read(min(self.chunk_size, remaining))
            if not chunk:
                raise AuthenticationError("Container truncated while reading ciphertext")
            remaining -= len(chunk)
            yield chunk

    def _authenticate(self) -> None:
        stream = self._new_stream()
        for chunk in self._ciphertext():
            stream.authenticate(chunk)
        self._check_tag(stream)

    def _check_tag(self, stream) -> None:
        tag = self.f.read(self.header.tag_size)
        try:
            stream.verify(tag)
        except ValueError as exc:
            raise AuthenticationError("Authentication failed: wrong password or corrupted container") from exc

