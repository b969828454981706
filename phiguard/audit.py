"""
phiguard Audit Entry Codec

Audit entries are JSON objects:

    {"action", "resource", "timestamp", "details", "checksum"}

The checksum is SHA-256 over the canonical JSON of the entry with
``checksum`` set to "". It is computed before encryption and re-checked
on every read. A mismatch is reported, never fatal: old entries written
with a different serialization must stay readable.

Entries are encrypted with the ``audit`` key type. When encryption is
unavailable the entry is written as plain JSON so the trail never has a
gap; that fallback is logged as its own security event.
"""

import json
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .encryption import EncryptionEngine, EncryptionError, detect_algorithm
from .keys import KeyType
from .logging_config import SecurityLogger, security_log
from .util import canonicalize, constant_time_compare, sha256_hex, utc_iso_millis


@dataclass
class AuditEntry:
    """A single audit record before serialization."""
    action: str
    resource: str
    timestamp: str
    details: Dict[str, Any] = field(default_factory=dict)
    checksum: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuditVerification:
    """Outcome of reading one stored entry."""
    entry: Optional[Dict[str, Any]]
    checksum_valid: bool = False
    encrypted: bool = False

    def readable(self) -> bool:
        return self.entry is not None


@dataclass
class AuditTrailReport:
    """Summary of verifying a sequence of stored entries."""
    total: int = 0
    valid: int = 0
    mismatched: int = 0
    unreadable: int = 0
    unencrypted: int = 0
    mismatched_indexes: List[int] = field(default_factory=list)
    unreadable_indexes: List[int] = field(default_factory=list)

    def is_intact(self) -> bool:
        return self.mismatched == 0 and self.unreadable == 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_checksum(entry: Dict[str, Any]) -> str:
    """SHA-256 of the canonical serialization with the checksum cleared."""
    body = dict(entry)
    body["checksum"] = ""
    return sha256_hex(canonicalize(body))


class AuditCodec:
    """Creates and verifies tamper-evident audit entries."""

    def __init__(
        self,
        engine: EncryptionEngine,
        clock: Callable[[], float] = time.time,
        logger: Optional[SecurityLogger] = None,
    ):
        self._engine = engine
        self._clock = clock
        self._log = logger or security_log

    def build_entry(self, action: str, resource: str, details: Optional[Dict[str, Any]] = None) -> AuditEntry:
        """Build an entry stamped with the current time and its checksum."""
        entry = AuditEntry(
            action=action,
            resource=resource,
            timestamp=utc_iso_millis(self._clock()),
            details=dict(details or {}),
        )
        entry.checksum = compute_checksum(entry.to_dict())
        return entry

    def create_entry(self, action: str, resource: str, details: Optional[Dict[str, Any]] = None) -> str:
        """
        Create a stored audit entry.

        Returns:
            The ciphertext of the entry, or its plain JSON when encryption
            is unavailable
        """
        serialized = json.dumps(self.build_entry(action, resource, details).to_dict(), ensure_ascii=False)
        try:
            return self._engine.encrypt(serialized, KeyType.AUDIT)
        except EncryptionError as e:
            self._log.audit_unencrypted(action, str(e))
            return serialized

    def inspect_entry(self, stored: str) -> AuditVerification:
        """Decrypt (or parse) a stored entry and check its checksum."""
        if not isinstance(stored, str) or not stored:
            return AuditVerification(entry=None)

        encrypted = detect_algorithm(stored) is not None
        try:
            plaintext = self._engine.decrypt(stored, KeyType.AUDIT)
        except EncryptionError:
            plaintext = stored

        try:
            data = json.loads(plaintext)
        except (TypeError, ValueError):
            return AuditVerification(entry=None, encrypted=encrypted)
        if not isinstance(data, dict):
            return AuditVerification(entry=None, encrypted=encrypted)

        stored_checksum = data.get("checksum")
        if not stored_checksum:
            return AuditVerification(entry=data, checksum_valid=False, encrypted=encrypted)

        computed = compute_checksum(data)
        valid = constant_time_compare(str(stored_checksum), computed)
        if not valid:
            self._log.audit_checksum_mismatch(data.get("action"), str(stored_checksum), computed)
        return AuditVerification(entry=data, checksum_valid=valid, encrypted=encrypted)

    def verify_entry(self, stored: str) -> Optional[Dict[str, Any]]:
        """
        Return the decoded entry, or None if it cannot be parsed.

        Checksum mismatches are logged and the entry is still returned.
        """
        return self.inspect_entry(stored).entry

    def verify_trail(self, entries: Iterable[str]) -> AuditTrailReport:
        """Verify every entry of a trail and summarize the result."""
        report = AuditTrailReport()
        for index, stored in enumerate(entries):
            report.total += 1
            result = self.inspect_entry(stored)
            if not result.readable():
                report.unreadable += 1
                report.unreadable_indexes.append(index)
                continue
            if not result.encrypted:
                report.unencrypted += 1
            if result.checksum_valid:
                report.valid += 1
            else:
                report.mismatched += 1
                report.mismatched_indexes.append(index)
        return report


# ============================================================
# Sinks
# ============================================================

class AuditSink(ABC):
    """Append-only destination for stored audit entries."""

    @abstractmethod
    def write(self, entry: str) -> None:
        pass

    @abstractmethod
    def read_all(self) -> List[str]:
        pass


class InMemoryAuditSink(AuditSink):
    """
    In-memory audit sink for development/testing.

    WARNING: Not persistent.
    """

    def __init__(self):
        self._entries: List[str] = []
        self._lock = threading.Lock()

    def write(self, entry: str) -> None:
        with self._lock:
            self._entries.append(entry)

    def read_all(self) -> List[str]:
        with self._lock:
            return self._entries[:]


class JsonlFileAuditSink(AuditSink):
    """One stored entry per line, opened in append mode for every write."""

    def __init__(self, path: str):
        self._path = Path(path)
        self._lock = threading.Lock()

    def write(self, entry: str) -> None:
        if "\n" in entry:
            raise ValueError("audit entries must be single-line")
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(entry + "\n")
                f.flush()
                os.fsync(f.fileno())

    def read_all(self) -> List[str]:
        with self._lock:
            if not self._path.exists():
                return []
            with open(self._path, "r", encoding="utf-8") as f:
                return [line.rstrip("\n") for line in f if line.strip()]
