"""
Failed-login attempt tracking for phiguard.

Per-identity state machine:

    Clean --failure--> Accumulating (1..N-1) --Nth failure--> Locked
    Locked --deadline passes, next read--> Clean
    any --success / clear / admin override--> Clean

Failures only accumulate while each one lands within ``attempt_window``
of the previous one. Locks expire lazily: the first read after the
deadline clears them, no timer runs in the background.
"""

import math
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional

from . import config
from .logging_config import SecurityLogger, security_log
from .stores import AttemptRecord, AttemptStore, normalize_identity

LOCK_STRIPES = 64


@dataclass(frozen=True)
class LockoutPolicy:
    """Lockout thresholds. Durations are seconds."""
    max_attempts: int = config.MAX_ATTEMPTS
    attempt_window: float = config.ATTEMPT_WINDOW_SECONDS
    block_duration: float = config.BLOCK_DURATION_SECONDS
    retention: float = config.RETENTION_SECONDS

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.attempt_window <= 0 or self.block_duration <= 0 or self.retention <= 0:
            raise ValueError("durations must be positive")


@dataclass
class FailedAttemptResult:
    """Result of recording a failed attempt."""
    attempts_remaining: int
    is_blocked: bool
    blocked_until: Optional[float] = None
    warning: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class BlockStatus:
    """Result of a block check."""
    is_blocked: bool
    blocked_until: Optional[float] = None
    remaining_seconds: Optional[float] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class AttemptStatus:
    """Display summary for one identity."""
    attempts: int
    max_attempts: int
    is_blocked: bool
    time_remaining: Optional[str] = None
    blocked_until: Optional[float] = None
    remaining_seconds: Optional[float] = None

    def to_dict(self) -> Dict:
        return asdict(self)


def format_time_remaining(seconds: float) -> str:
    """Human-readable countdown, rounded up to whole minutes."""
    minutes = math.ceil(seconds / 60)
    if minutes <= 1:
        return "less than 1 minute"
    if minutes < 60:
        return f"{minutes} minutes"
    hours, rest = divmod(minutes, 60)
    return f"{hours} hour{'s' if hours > 1 else ''} and {rest} minutes"


def _blocked_warning(remaining_seconds: float) -> str:
    blocked_minutes = math.ceil(remaining_seconds / 60)
    hours, minutes = divmod(blocked_minutes, 60)
    if hours > 0:
        return (
            f"Account blocked for security. Try again in {hours}h {minutes}m "
            f"due to failed login attempts."
        )
    return (
        f"Account blocked for security. Try again in {blocked_minutes} minutes "
        f"due to failed login attempts."
    )


class AttemptTracker:
    """
    Tracks failed logins per identity on top of an AttemptStore.

    Read-modify-write on one identity is serialized by one of a fixed set of
    striped locks, so concurrent failures never lose an increment and the
    lock table does not grow with the number of identities seen. The store must already
    be open.
    """

    def __init__(
        self,
        store: AttemptStore,
        policy: Optional[LockoutPolicy] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[SecurityLogger] = None,
        lock_stripes: int = LOCK_STRIPES,
    ):
        self._store = store
        self._policy = policy or LockoutPolicy()
        self._clock = clock
        self._log = logger or security_log
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(max(1, lock_stripes))]

    @property
    def policy(self) -> LockoutPolicy:
        return self._policy

    @property
    def store(self) -> AttemptStore:
        return self._store

    def _identity_lock(self, identity: str) -> threading.Lock:
        return self._locks[hash(identity) % len(self._locks)]

    def _expire_lock(self, record: AttemptRecord, now: float) -> bool:
        """Clear an elapsed lock in place. Returns True if one was cleared."""
        if record.locked_until is not None and now >= record.locked_until:
            record.locked_until = None
            record.attempt_count = 0
            self._log.lock_expired(record.identity)
            return True
        return False

    # --------------------------------------------------------
    # Transitions
    # --------------------------------------------------------

    def record_failed_attempt(self, identity: str) -> FailedAttemptResult:
        """
        Record one failed login.

        Returns:
            FailedAttemptResult with attempts remaining, block state and a
            warning suitable for the login form
        """
        key = normalize_identity(identity)
        policy = self._policy

        with self._identity_lock(key):
            now = self._clock()
            record = self._store.get(key)
            if record is None:
                record = AttemptRecord(identity=key, window_start=now, attempt_count=0, last_attempt=now)
            else:
                self._expire_lock(record, now)

            if now - record.last_attempt > policy.attempt_window:
                record.attempt_count = 0
                record.window_start = now

            record.attempt_count += 1
            record.last_attempt = now

            if record.attempt_count >= policy.max_attempts:
                record.locked_until = now + policy.block_duration

            self._store.put(record)

        attempts_remaining = max(0, policy.max_attempts - record.attempt_count)
        is_blocked = record.is_locked(now)
        self._log.failed_login(key, record.attempt_count, attempts_remaining)

        warning = None
        if is_blocked:
            self._log.account_locked(key, record.locked_until)
            warning = _blocked_warning(record.locked_until - now)
        elif attempts_remaining <= 1:
            warning = (
                f"Warning: {attempts_remaining} login attempt(s) remaining "
                f"before account is temporarily blocked."
            )
        elif attempts_remaining == 2:
            warning = "Warning: Only 2 login attempts remaining before temporary account block."

        return FailedAttemptResult(
            attempts_remaining=attempts_remaining,
            is_blocked=is_blocked,
            blocked_until=record.locked_until,
            warning=warning,
        )

    def is_user_blocked(self, identity: str) -> BlockStatus:
        """Check the lock; an elapsed lock is cleared on the way."""
        key = normalize_identity(identity)

        with self._identity_lock(key):
            now = self._clock()
            record = self._store.get(key)
            if record is None or record.locked_until is None:
                return BlockStatus(is_blocked=False)

            if self._expire_lock(record, now):
                self._store.put(record)
                return BlockStatus(is_blocked=False)

            return BlockStatus(
                is_blocked=True,
                blocked_until=record.locked_until,
                remaining_seconds=record.locked_until - now,
            )

    def clear_failed_attempts(self, identity: str) -> None:
        """Forget an identity's failures (successful authentication)."""
        key = normalize_identity(identity)
        with self._identity_lock(key):
            self._store.delete(key)

    # --------------------------------------------------------
    # Queries
    # --------------------------------------------------------

    def get_remaining_attempts(self, identity: str) -> int:
        key = normalize_identity(identity)
        with self._identity_lock(key):
            now = self._clock()
            record = self._store.get(key)
        if record is None:
            return self._policy.max_attempts
        if record.locked_until is not None and now >= record.locked_until:
            return self._policy.max_attempts
        if now - record.last_attempt > self._policy.attempt_window:
            return self._policy.max_attempts
        return max(0, self._policy.max_attempts - record.attempt_count)

    def get_attempt_status(self, identity: str) -> AttemptStatus:
        """Status for display, including a countdown while blocked."""
        block = self.is_user_blocked(identity)
        remaining = self.get_remaining_attempts(identity)

        time_remaining = None
        if block.is_blocked and block.remaining_seconds:
            time_remaining = format_time_remaining(block.remaining_seconds)

        return AttemptStatus(
            attempts=self._policy.max_attempts - remaining,
            max_attempts=self._policy.max_attempts,
            is_blocked=block.is_blocked,
            time_remaining=time_remaining,
            blocked_until=block.blocked_until,
            remaining_seconds=block.remaining_seconds,
        )

    def purge_stale(self) -> int:
        """
        Delete records whose window started longer ago than the retention
        period and that hold no active lock. Returns count removed.
        """
        now = self._clock()
        removed = 0
        for record in self._store.list_all():
            if record.is_locked(now):
                continue
            if now - record.window_start < self._policy.retention:
                continue
            with self._identity_lock(record.identity):
                current = self._store.get(record.identity)
                if current is None or current.is_locked(now) or now - current.window_start < self._policy.retention:
                    continue
                if self._store.delete(record.identity):
                    removed += 1
        return removed

    def list_records(self) -> List[AttemptRecord]:
        """Enumerate records, purging stale ones first; elapsed locks read as cleared."""
        self.purge_stale()
        now = self._clock()
        records = self._store.list_all()
        for record in records:
            if record.locked_until is not None and now >= record.locked_until:
                record.locked_until = None
                record.attempt_count = 0
        return records

    # --------------------------------------------------------
    # Administrative overrides (callers must audit-log these)
    # --------------------------------------------------------

    def emergency_clear_all(self) -> int:
        """Drop every record. Returns count removed."""
        return self._store.remove_all()

    def emergency_unblock(self, identity: str) -> bool:
        """Drop one identity's record regardless of state. Returns True if it existed."""
        key = normalize_identity(identity)
        with self._identity_lock(key):
            return self._store.delete(key)
