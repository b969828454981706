"""
phiguard Encryption Engine

Symmetric encryption of sensitive string fields with self-describing,
versioned ciphertexts:

    cbc:<base64(iv[16] || ciphertext)>
    gcm:<base64(salt[16] || iv[12] || ciphertext || tag[16])>

The prefix is the only thing the decoder trusts when choosing an algorithm.
Values without a recognized prefix are legacy data and go through a
best-effort base64 decode.

Failure policy is asymmetric:
- encrypt is strict. Missing key material or a failed cipher raises; the
  engine never hands back unencrypted output for protected data.
- decrypt is lenient. Any failure degrades to the best-effort decode, and
  in the worst case the original string is returned unchanged. Set
  ``strict=True`` to turn read-side failures into exceptions instead.

The ``cbc`` format has no integrity protection: a flipped bit decrypts to
garbage (or fails padding) without any signal. ``gcm`` authenticates every
ciphertext and rejects any modification.
"""

import asyncio
import contextvars
import functools
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from . import config
from .keys import KeyResolver, KeyType, KeyTypeLike, as_key_type, get_key_resolver
from .logging_config import SecurityLogger, security_log
from .util import b64d, b64e, random_bytes, sha256_bytes, sha256_hex, try_b64_text

CBC_IV_BYTES = 16
GCM_SALT_BYTES = 16
GCM_IV_BYTES = 12
GCM_TAG_BYTES = 16
AES_KEY_BYTES = 32
PREFIX_LENGTH = 4

# Placeholder for a field that could not be decrypted
ENCRYPTED_SENTINEL = "[ENCRYPTED]"

# Safe to show to end users when a write fails
USER_FACING_ENCRYPTION_ERROR = (
    "We could not securely save your changes. Please try again, "
    "and contact support if the problem persists."
)


class Algorithm(str, Enum):
    """Ciphertext formats; the value doubles as the wire prefix."""
    CBC = "cbc"
    GCM = "gcm"

    @property
    def prefix(self) -> str:
        return f"{self.value}:"


# ============================================================
# Errors
# ============================================================

class EncryptionError(Exception):
    """Base class for engine errors."""

    @property
    def user_message(self) -> str:
        return USER_FACING_ENCRYPTION_ERROR


class EmptyInputError(EncryptionError):
    """Raised when asked to encrypt an empty value."""


class KeyUnavailableError(EncryptionError):
    """Raised when no key material is configured for a key type."""

    def __init__(self, key_type: KeyType):
        self.key_type = key_type
        super().__init__(f"Encryption key not configured for type: {key_type.value}")


class AlgorithmError(EncryptionError):
    """Raised when the cipher itself fails on the write path."""


class DecryptionError(EncryptionError):
    """Raised by strict decrypts when a ciphertext cannot be opened."""


# ============================================================
# Format helpers
# ============================================================

def detect_algorithm(ciphertext: str) -> Optional[Algorithm]:
    """Return the algorithm named by the ciphertext prefix, or None for legacy data."""
    if not isinstance(ciphertext, str) or len(ciphertext) < PREFIX_LENGTH:
        return None
    head = ciphertext[:PREFIX_LENGTH]
    for algorithm in Algorithm:
        if head == algorithm.prefix:
            return algorithm
    return None


def legacy_decode(value: str) -> str:
    """Best-effort decode of unversioned data: base64 text, else the value unchanged."""
    text = try_b64_text(value)
    return value if text is None else text


def hash_data(data: str) -> str:
    """One-way SHA-256 hex digest for searchable fields; empty input hashes to ''."""
    if not data:
        return ""
    return sha256_hex(data)


def generate_secure_token(length: int = 32) -> str:
    """Base64-encoded random token of ``length`` bytes."""
    return b64e(random_bytes(length))


def _cbc_key(key_material: str) -> bytes:
    return sha256_bytes(key_material)


def _derive_gcm_key(key_material: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=AES_KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(key_material.encode("utf-8"))


def _encrypt_cbc(plaintext: str, key_material: str) -> str:
    iv = random_bytes(CBC_IV_BYTES)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_cbc_key(key_material)), modes.CBC(iv)).encryptor()
    ct = encryptor.update(padded) + encryptor.finalize()
    return Algorithm.CBC.prefix + b64e(iv + ct)


def _decrypt_cbc(payload: str, key_material: str) -> str:
    raw = b64d(payload)
    body = raw[CBC_IV_BYTES:]
    if not body or len(body) % CBC_IV_BYTES:
        raise ValueError("cbc payload has invalid length")
    decryptor = Cipher(algorithms.AES(_cbc_key(key_material)), modes.CBC(raw[:CBC_IV_BYTES])).decryptor()
    padded = decryptor.update(body) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    plaintext = (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
    if not plaintext:
        raise ValueError("cbc payload decrypted to nothing")
    return plaintext


def _encrypt_gcm(plaintext: str, key_material: str, iterations: int) -> str:
    salt = random_bytes(GCM_SALT_BYTES)
    iv = random_bytes(GCM_IV_BYTES)
    key = _derive_gcm_key(key_material, salt, iterations)
    ct = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return Algorithm.GCM.prefix + b64e(salt + iv + ct)


def _decrypt_gcm(payload: str, key_material: str, iterations: int) -> str:
    raw = b64d(payload)
    if len(raw) < GCM_SALT_BYTES + GCM_IV_BYTES + GCM_TAG_BYTES:
        raise ValueError("gcm payload too short")
    salt = raw[:GCM_SALT_BYTES]
    iv = raw[GCM_SALT_BYTES:GCM_SALT_BYTES + GCM_IV_BYTES]
    key = _derive_gcm_key(key_material, salt, iterations)
    return AESGCM(key).decrypt(iv, raw[GCM_SALT_BYTES + GCM_IV_BYTES:], None).decode("utf-8")


# ============================================================
# Engine
# ============================================================

class EncryptionEngine:
    """
    Stateless encrypt/decrypt over key material from a KeyResolver.

    The engine holds no derived keys; GCM keys are re-derived on every call.
    Thread-safe without locking. The async wrappers push work to a worker
    pool so PBKDF2 does not block an event loop.
    """

    def __init__(
        self,
        key_resolver: Optional[KeyResolver] = None,
        default_algorithm: Union[Algorithm, str, None] = None,
        iterations: Optional[int] = None,
        strict: Optional[bool] = None,
        executor: Optional[Executor] = None,
        logger: Optional[SecurityLogger] = None,
    ):
        self._resolver = key_resolver or get_key_resolver()
        self._default_algorithm = Algorithm(default_algorithm or config.DEFAULT_ALGORITHM)
        self._iterations = iterations or config.PBKDF2_ITERATIONS
        self._strict = config.STRICT_DECRYPT if strict is None else strict
        self._executor = executor
        self._owns_executor = False
        self._executor_lock = threading.Lock()
        self._log = logger or security_log

    @property
    def default_algorithm(self) -> Algorithm:
        return self._default_algorithm

    @property
    def strict(self) -> bool:
        return self._strict

    def _key_for(self, key_type: KeyType) -> str:
        try:
            key = self._resolver.get_key(key_type)
        except Exception as e:
            raise KeyUnavailableError(key_type) from e
        if not key:
            raise KeyUnavailableError(key_type)
        return key

    # --------------------------------------------------------
    # Strings
    # --------------------------------------------------------

    def encrypt(
        self,
        plaintext: str,
        key_type: KeyTypeLike = KeyType.PHI,
        algorithm: Union[Algorithm, str, None] = None,
    ) -> str:
        """
        Encrypt a string.

        Args:
            plaintext: Non-empty text to protect
            key_type: "phi" or "audit"
            algorithm: Override the engine default ("gcm" or "cbc")

        Returns:
            Prefixed ciphertext

        Raises:
            EmptyInputError: plaintext is empty
            KeyUnavailableError: no key material for key_type
            AlgorithmError: the cipher failed on every available path
        """
        if not isinstance(plaintext, str):
            raise TypeError("plaintext must be str")
        if not plaintext:
            raise EmptyInputError("Cannot encrypt empty plaintext")

        kt = as_key_type(key_type)
        algo = Algorithm(algorithm or self._default_algorithm)

        try:
            key = self._key_for(kt)
        except KeyUnavailableError as e:
            self._log.encryption_failure(kt.value, algo.value, str(e))
            raise

        if algo is Algorithm.GCM:
            try:
                return _encrypt_gcm(plaintext, key, self._iterations)
            except Exception as e:
                self._log.algorithm_fallback(kt.value, Algorithm.GCM.value, Algorithm.CBC.value, type(e).__name__)

        try:
            return _encrypt_cbc(plaintext, key)
        except Exception as e:
            self._log.encryption_failure(kt.value, Algorithm.CBC.value, type(e).__name__)
            raise AlgorithmError(f"Encryption failed: {type(e).__name__}") from e

    def decrypt(self, ciphertext: str, key_type: KeyTypeLike = KeyType.PHI) -> str:
        """
        Decrypt a ciphertext produced by :meth:`encrypt`, or decode legacy data.

        In lenient mode (default) this never raises: on any failure the
        best-effort decode of ``ciphertext`` is returned.
        """
        kt = as_key_type(key_type)
        if self._strict:
            return self._decrypt(ciphertext, kt)
        try:
            return self._decrypt(ciphertext, kt)
        except EncryptionError as e:
            self._log.decryption_fallback(kt.value, str(e))
            return legacy_decode(ciphertext)

    def _decrypt(self, ciphertext: str, kt: KeyType) -> str:
        if not ciphertext:
            return ""

        algo = detect_algorithm(ciphertext)
        if algo is None:
            return legacy_decode(ciphertext)

        key = self._key_for(kt)
        payload = ciphertext[PREFIX_LENGTH:]
        try:
            if algo is Algorithm.GCM:
                return _decrypt_gcm(payload, key, self._iterations)
            return _decrypt_cbc(payload, key)
        except InvalidTag as e:
            raise DecryptionError(f"{algo.value} authentication failed") from e
        except (ValueError, UnicodeDecodeError) as e:
            raise DecryptionError(f"{algo.value} decryption failed: {e}") from e

    # --------------------------------------------------------
    # Records
    # --------------------------------------------------------

    def encrypt_fields(
        self,
        record: Mapping[str, Any],
        fields: Sequence[str],
        key_type: KeyTypeLike = KeyType.PHI,
    ) -> Dict[str, Any]:
        """
        Return a copy of ``record`` with the named string fields encrypted.

        Absent, non-string and empty values are left as they are. Any
        encryption error propagates; a record is never half-protected.
        """
        result = dict(record)
        for name in fields:
            value = result.get(name)
            if isinstance(value, str) and value:
                result[name] = self.encrypt(value, key_type)
        return result

    def decrypt_fields(
        self,
        record: Mapping[str, Any],
        fields: Union[Sequence[str], Mapping[str, str]],
        key_type: KeyTypeLike = KeyType.PHI,
    ) -> Dict[str, Any]:
        """
        Return a copy of ``record`` with encrypted fields decrypted.

        Args:
            record: Source record
            fields: Field names decrypted in place, or a mapping of
                encrypted field name to output field name (the encrypted
                field is dropped from the result)
            key_type: "phi" or "audit"

        A field that fails to decrypt is replaced by ENCRYPTED_SENTINEL so
        the rest of the record stays readable.
        """
        kt = as_key_type(key_type)
        if isinstance(fields, Mapping):
            field_map = dict(fields)
        else:
            field_map = {name: name for name in fields}

        result = dict(record)
        for encrypted_name, decrypted_name in field_map.items():
            value = record.get(encrypted_name)
            if not isinstance(value, str):
                continue
            if encrypted_name != decrypted_name:
                result.pop(encrypted_name, None)
            try:
                result[decrypted_name] = self._decrypt(value, kt)
            except EncryptionError as e:
                self._log.decryption_fallback(kt.value, f"field {encrypted_name}: {e}")
                result[decrypted_name] = ENCRYPTED_SENTINEL
        return result

    # --------------------------------------------------------
    # Worker pool
    # --------------------------------------------------------

    def _get_executor(self) -> Executor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=max(1, config.WORKERS),
                    thread_name_prefix="phiguard-crypto",
                )
                self._owns_executor = True
            return self._executor

    async def _run_in_executor(self, func, *args):
        ctx = contextvars.copy_context()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._get_executor(),
            functools.partial(ctx.run, func, *args),
        )

    async def encrypt_async(
        self,
        plaintext: str,
        key_type: KeyTypeLike = KeyType.PHI,
        algorithm: Union[Algorithm, str, None] = None,
    ) -> str:
        """:meth:`encrypt` on the worker pool."""
        return await self._run_in_executor(self.encrypt, plaintext, key_type, algorithm)

    async def decrypt_async(self, ciphertext: str, key_type: KeyTypeLike = KeyType.PHI) -> str:
        """:meth:`decrypt` on the worker pool."""
        return await self._run_in_executor(self.decrypt, ciphertext, key_type)

    def close(self) -> None:
        """Shut down the worker pool if the engine created it."""
        with self._executor_lock:
            if self._owns_executor and self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None
                self._owns_executor = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
