"""
phiguard: protection primitives for a healthcare application backend.

- Field encryption with self-describing, versioned ciphertexts
  (``cbc:`` legacy, ``gcm:`` authenticated) and lenient reads of
  unversioned data.
- Tamper-evident audit entries: checksummed, then encrypted with the
  audit key.
- Failed-login lockout: N failures inside a sliding window lock an
  identity for a fixed period; locks expire lazily.

Usage:
    from phiguard import (
        AttemptTracker,
        AuditCodec,
        EncryptionEngine,
        SqliteAttemptStore,
    )

    engine = EncryptionEngine()
    ssn = engine.encrypt("123-45-6789")
    engine.decrypt(ssn)

    codec = AuditCodec(engine)
    stored = codec.create_entry("PATIENT_VIEWED", "patients", {"patient_id": "p-1"})
    codec.verify_entry(stored)

    with SqliteAttemptStore("data/attempts.db") as store:
        tracker = AttemptTracker(store)
        result = tracker.record_failed_attempt("jane@example.com")
        if result.is_blocked:
            ...
"""

__version__ = "1.0.0"

# Keys
from .keys import (
    KeyType,
    KeyResolver,
    StaticKeyResolver,
    ConfigKeyResolver,
    AwsSecretsManagerKeyResolver,
    get_key_resolver,
    validate_encryption_key,
)

# Encryption
from .encryption import (
    Algorithm,
    EncryptionEngine,
    EncryptionError,
    EmptyInputError,
    KeyUnavailableError,
    AlgorithmError,
    DecryptionError,
    ENCRYPTED_SENTINEL,
    USER_FACING_ENCRYPTION_ERROR,
    detect_algorithm,
    legacy_decode,
    hash_data,
    generate_secure_token,
)

# Audit
from .audit import (
    AuditCodec,
    AuditEntry,
    AuditVerification,
    AuditTrailReport,
    AuditSink,
    InMemoryAuditSink,
    JsonlFileAuditSink,
    compute_checksum,
)

# Attempt stores
from .stores import (
    AttemptRecord,
    AttemptStore,
    InMemoryAttemptStore,
    SqliteAttemptStore,
    StoreClosedError,
    get_attempt_store,
    normalize_identity,
)

# Lockout tracking
from .attempts import (
    AttemptTracker,
    LockoutPolicy,
    FailedAttemptResult,
    BlockStatus,
    AttemptStatus,
    format_time_remaining,
)


__all__ = [
    "__version__",

    # Keys
    "KeyType",
    "KeyResolver",
    "StaticKeyResolver",
    "ConfigKeyResolver",
    "AwsSecretsManagerKeyResolver",
    "get_key_resolver",
    "validate_encryption_key",

    # Encryption
    "Algorithm",
    "EncryptionEngine",
    "EncryptionError",
    "EmptyInputError",
    "KeyUnavailableError",
    "AlgorithmError",
    "DecryptionError",
    "ENCRYPTED_SENTINEL",
    "USER_FACING_ENCRYPTION_ERROR",
    "detect_algorithm",
    "legacy_decode",
    "hash_data",
    "generate_secure_token",

    # Audit
    "AuditCodec",
    "AuditEntry",
    "AuditVerification",
    "AuditTrailReport",
    "AuditSink",
    "InMemoryAuditSink",
    "JsonlFileAuditSink",
    "compute_checksum",

    # Stores
    "AttemptRecord",
    "AttemptStore",
    "InMemoryAttemptStore",
    "SqliteAttemptStore",
    "StoreClosedError",
    "get_attempt_store",
    "normalize_identity",

    # Lockouts
    "AttemptTracker",
    "LockoutPolicy",
    "FailedAttemptResult",
    "BlockStatus",
    "AttemptStatus",
    "format_time_remaining",
]
