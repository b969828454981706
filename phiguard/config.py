"""
Configuration module for phiguard.

Centralizes all configuration with environment variable support
and validation.
"""

import os
from pathlib import Path
from typing import Dict

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("PHIGUARD_ENV", "dev")  # dev|stage|prod

# Key material (never logged)
PHI_KEY = os.getenv("PHIGUARD_PHI_KEY", "")
AUDIT_KEY = os.getenv("PHIGUARD_AUDIT_KEY", "")
KEY_RESOLVER = os.getenv("PHIGUARD_KEY_RESOLVER", "env")  # env|aws_secrets
AWS_PHI_SECRET_ID = os.getenv("PHIGUARD_AWS_PHI_SECRET_ID", "")
AWS_AUDIT_SECRET_ID = os.getenv("PHIGUARD_AWS_AUDIT_SECRET_ID", "")
AWS_REGION = os.getenv("AWS_REGION", "")

# Encryption engine
DEFAULT_ALGORITHM = os.getenv("PHIGUARD_DEFAULT_ALGORITHM", "gcm")  # gcm|cbc
PBKDF2_ITERATIONS = int(os.getenv("PHIGUARD_PBKDF2_ITERATIONS", "100000"))
STRICT_DECRYPT = os.getenv("PHIGUARD_STRICT_DECRYPT", "").lower() in ("1", "true", "yes")
WORKERS = int(os.getenv("PHIGUARD_WORKERS", "2"))

# Lockout policy (seconds)
MAX_ATTEMPTS = int(os.getenv("PHIGUARD_MAX_ATTEMPTS", "3"))
ATTEMPT_WINDOW_SECONDS = int(os.getenv("PHIGUARD_ATTEMPT_WINDOW_SECONDS", str(30 * 60)))
BLOCK_DURATION_SECONDS = int(os.getenv("PHIGUARD_BLOCK_DURATION_SECONDS", str(60 * 60)))
RETENTION_SECONDS = int(os.getenv("PHIGUARD_RETENTION_SECONDS", str(24 * 60 * 60)))

# Attempt store
ATTEMPT_STORE = os.getenv("PHIGUARD_ATTEMPT_STORE", "sqlite")  # memory|sqlite
ATTEMPT_DB_PATH = os.getenv("PHIGUARD_ATTEMPT_DB_PATH", "data/phiguard_attempts.db")

# Audit trail
AUDIT_LOG_PATH = os.getenv("PHIGUARD_AUDIT_LOG_PATH", "data/audit_trail.jsonl")

# Administrative interface; empty disables it
ADMIN_TOKEN = os.getenv("PHIGUARD_ADMIN_TOKEN", "")

# Logging
LOG_LEVEL = os.getenv("PHIGUARD_LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("PHIGUARD_LOG_JSON", "true").lower() in ("1", "true", "yes")


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Report which pieces of required configuration are present.
    Returns dict of setting -> configured.
    """
    checks = {
        "default_algorithm": DEFAULT_ALGORITHM in ("gcm", "cbc"),
        "attempt_store": ATTEMPT_STORE in ("memory", "sqlite"),
        "admin_token": bool(ADMIN_TOKEN),
    }

    if KEY_RESOLVER == "aws_secrets":
        checks["phi_key"] = bool(AWS_PHI_SECRET_ID)
        checks["audit_key"] = bool(AWS_AUDIT_SECRET_ID)
    else:
        checks["phi_key"] = bool(PHI_KEY)
        checks["audit_key"] = bool(AUDIT_KEY)

    if ATTEMPT_STORE == "sqlite":
        checks["attempt_db_dir"] = Path(ATTEMPT_DB_PATH).parent.exists()

    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("PHIGUARD_DEBUG", "").lower() in ("1", "true", "yes")
