"""
Key management module for phiguard.

Provides key resolvers that hand opaque key material to the encryption
engine, scoped by key type. Key material is never logged or cached in
derived form.
"""

import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Mapping, Optional, Union

from . import config
from .util import b64d


class KeyType(str, Enum):
    """Key scopes understood by the encryption engine."""
    PHI = "phi"
    AUDIT = "audit"


KeyTypeLike = Union[KeyType, str]


def as_key_type(value: KeyTypeLike) -> KeyType:
    """Coerce a string such as ``"audit"`` to a KeyType; raises ValueError otherwise."""
    if isinstance(value, KeyType):
        return value
    return KeyType(str(value).lower())


class KeyResolver(ABC):
    """Abstract interface for key material lookup."""

    @abstractmethod
    def get_key(self, key_type: KeyTypeLike) -> Optional[str]:
        """
        Return key material for a key type.

        Args:
            key_type: "phi" or "audit"

        Returns:
            The key material, or None when it is not configured
        """
        pass


class StaticKeyResolver(KeyResolver):
    """Resolver over a fixed mapping; used for embedding and tests."""

    def __init__(self, keys: Mapping[KeyTypeLike, str]):
        self._keys: Dict[KeyType, str] = {as_key_type(k): v for k, v in keys.items()}

    def get_key(self, key_type: KeyTypeLike) -> Optional[str]:
        return self._keys.get(as_key_type(key_type)) or None


class ConfigKeyResolver(KeyResolver):
    """Reads PHIGUARD_PHI_KEY / PHIGUARD_AUDIT_KEY through the config module."""

    def get_key(self, key_type: KeyTypeLike) -> Optional[str]:
        kt = as_key_type(key_type)
        value = config.PHI_KEY if kt is KeyType.PHI else config.AUDIT_KEY
        return value or None


class AwsSecretsManagerKeyResolver(KeyResolver):
    """
    AWS Secrets Manager backed resolver.

    Each key type maps to a secret id whose SecretString is the key
    material. Secrets are fetched once and cached for the process lifetime.

    Docs: https://docs.aws.amazon.com/secretsmanager/latest/apireference/API_GetSecretValue.html
    """

    def __init__(
        self,
        secret_ids: Mapping[KeyTypeLike, str],
        region: Optional[str] = None,
        client=None
    ):
        self._secret_ids = {as_key_type(k): v for k, v in secret_ids.items() if v}
        self._region = region
        self._client = client
        self._cache: Dict[KeyType, Optional[str]] = {}
        self._lock = threading.RLock()

    def _get_client(self):
        """Lazy-load boto3 client."""
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError(
                    "boto3 required for AWS Secrets Manager keys. Install with: pip install phiguard[aws]"
                ) from e
            self._client = boto3.client("secretsmanager", region_name=self._region or None)
        return self._client

    def get_key(self, key_type: KeyTypeLike) -> Optional[str]:
        kt = as_key_type(key_type)
        secret_id = self._secret_ids.get(kt)
        if not secret_id:
            return None

        with self._lock:
            if kt not in self._cache:
                resp = self._get_client().get_secret_value(SecretId=secret_id)
                self._cache[kt] = resp.get("SecretString") or None
            return self._cache[kt]


def validate_encryption_key(key: str) -> bool:
    """
    Check key strength: the key must base64-decode to at least 32 bytes.
    """
    if not key:
        return False
    try:
        return len(b64d(key)) >= 32
    except ValueError:
        return False


def get_key_resolver(resolver_type: Optional[str] = None) -> KeyResolver:
    """
    Factory function to create the configured key resolver.

    Args:
        resolver_type: "env" or "aws_secrets" (default from PHIGUARD_KEY_RESOLVER)

    Returns:
        Configured KeyResolver instance
    """
    resolver_type = resolver_type or config.KEY_RESOLVER
    if resolver_type == "aws_secrets":
        return AwsSecretsManagerKeyResolver(
            secret_ids={
                KeyType.PHI: config.AWS_PHI_SECRET_ID,
                KeyType.AUDIT: config.AWS_AUDIT_SECRET_ID,
            },
            region=config.AWS_REGION,
        )
    return ConfigKeyResolver()
