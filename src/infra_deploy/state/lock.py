"""Exclusive, time-bounded locks on state keys.

Lock records live in the same ``StateStore`` as the state they protect, under
``<state key>.lock``. Every transition of a lock record is a single
conditional write, so two callers can never both believe they hold the lock.
"""

import getpass
import os
import socket
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import BaseModel, Field

from infra_deploy.state.store import MISSING, StateStore, VersionedValue
from infra_deploy.utils.errors import (
    DeploymentError,
    ErrorContext,
    LockHeldError,
    LockLostError,
    VersionConflictError,
)
from infra_deploy.utils.logging import get_logger

logger = get_logger(__name__)


def default_holder() -> str:
    """Identity of this process, unique per invocation."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LockRecord(BaseModel):
    """Persisted lock claim."""

    key: str = Field(..., description="Protected state key")
    holder: str = Field(..., description="Identity of the lock holder")
    acquired_at: float = Field(..., description="Acquisition time (epoch seconds)")
    ttl: float = Field(..., gt=0, description="Time-to-live in seconds")
    renewed_at: Optional[float] = Field(None, description="Last renewal time (epoch seconds)")

    @property
    def expires_at(self) -> float:
        return (self.renewed_at or self.acquired_at) + self.ttl

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class LockHandle:
    """Proof of lock ownership returned by ``LockManager.acquire``."""

    key: str
    holder: str
    version: int
    acquired_at: float
    ttl: float
    renewed_at: Optional[float] = None
    released: bool = False

    @property
    def expires_at(self) -> float:
        return (self.renewed_at or self.acquired_at) + self.ttl


class LockManager:
    """Acquires, renews and releases locks through compare-and-swap writes."""

    LOCK_SUFFIX = ".lock"

    def __init__(
        self,
        store: StateStore,
        clock: Callable[[], float] = time.time,
        default_ttl: float = 300.0
    ):
        """
        Initialize LockManager.

        Args:
            store: Store holding the lock records
            clock: Time source returning epoch seconds
            default_ttl: TTL used when the caller does not pass one
        """
        self.store = store
        self.clock = clock
        self.default_ttl = default_ttl

    def lock_key(self, key: str) -> str:
        return f"{key}{self.LOCK_SUFFIX}"

    def get_lock(self, key: str) -> Optional[LockRecord]:
        """Current lock record for a state key, expired or not."""
        current = self.store.get(self.lock_key(key))
        return LockRecord(**current.value) if current else None

    def acquire(
        self,
        key: str,
        holder: str,
        ttl: Optional[float] = None,
        force: bool = False
    ) -> LockHandle:
        """
        Acquire the lock on a state key.

        Args:
            key: State key to protect
            holder: Identity of the caller
            ttl: Time-to-live in seconds
            force: Take over a live lock held by someone else

        Returns:
            LockHandle for the acquired lock

        Raises:
            LockHeldError: If a valid lock is held by someone else
            VersionConflictError: If the record changed between read and takeover
        """
        ttl = ttl or self.default_ttl
        lock_key = self.lock_key(key)
        now = self.clock()
        record = LockRecord(key=key, holder=holder, acquired_at=now, ttl=ttl)

        try:
            version = self.store.put(lock_key, record.model_dump(), expected_version=MISSING)
            logger.debug(f"Acquired lock on {key}", extra={'state_key': key, 'holder': holder})
            return LockHandle(key=key, holder=holder, version=version, acquired_at=now, ttl=ttl)
        except VersionConflictError:
            pass

        current = self.store.get(lock_key)
        if current is None:
            # Released between our create attempt and the read
            raise VersionConflictError(lock_key, MISSING, None)

        existing = LockRecord(**current.value)
        if existing.is_expired(now):
            version = self._take_over(lock_key, record, current.version, existing)
            logger.warning(
                f"Recovered stale lock on {key} previously held by {existing.holder} "
                f"(expired {now - existing.expires_at:.1f}s ago)",
                extra={'state_key': key, 'holder': holder}
            )
        elif force:
            version = self._take_over(lock_key, record, current.version, existing)
            logger.warning(
                f"Forcibly took over lock on {key} from {existing.holder} "
                f"({existing.remaining(now):.1f}s remaining)",
                extra={'state_key': key, 'holder': holder}
            )
        else:
            raise LockHeldError(
                key,
                existing.holder,
                existing.remaining(now),
                context=ErrorContext(state_key=key)
            )

        return LockHandle(key=key, holder=holder, version=version, acquired_at=now, ttl=ttl)

    def _take_over(self, lock_key: str, record: LockRecord, version: int, existing: LockRecord) -> int:
        try:
            return self.store.put(lock_key, record.model_dump(), expected_version=version)
        except VersionConflictError:
            latest = self.store.get(lock_key)
            if latest is None:
                raise
            winner = LockRecord(**latest.value)
            raise LockHeldError(record.key, winner.holder, winner.remaining(self.clock()))

    def _owns(self, handle: LockHandle, current: Optional[VersionedValue]) -> bool:
        if current is None or current.version != handle.version:
            return False
        record = LockRecord(**current.value)
        # Versions restart after a delete, so the claim itself must match too
        return record.holder == handle.holder and record.acquired_at == handle.acquired_at

    def release(self, handle: LockHandle) -> None:
        """Release a lock. Releasing twice, or after expiry, is a no-op."""
        if handle.released:
            return
        handle.released = True
        if not self._owns(handle, self.store.get(self.lock_key(handle.key))):
            logger.debug(
                f"Lock on {handle.key} was already released or taken over",
                extra={'state_key': handle.key}
            )
            return
        try:
            self.store.delete(self.lock_key(handle.key), expected_version=handle.version)
            logger.debug(f"Released lock on {handle.key}", extra={'state_key': handle.key})
        except VersionConflictError:
            logger.debug(
                f"Lock on {handle.key} was already released or taken over",
                extra={'state_key': handle.key}
            )

    def renew(self, handle: LockHandle, ttl: Optional[float] = None) -> LockHandle:
        """
        Extend a held lock.

        Args:
            handle: Handle returned by acquire
            ttl: New time-to-live (defaults to the handle's)

        Returns:
            The same handle, updated

        Raises:
            LockLostError: If the lock expired or is no longer ours
        """
        now = self.clock()
        if handle.released or now >= handle.expires_at:
            raise LockLostError(handle.key, context=ErrorContext(state_key=handle.key))

        if not self._owns(handle, self.store.get(self.lock_key(handle.key))):
            raise LockLostError(handle.key, context=ErrorContext(state_key=handle.key))

        ttl = ttl or handle.ttl
        record = LockRecord(
            key=handle.key,
            holder=handle.holder,
            acquired_at=handle.acquired_at,
            ttl=ttl,
            renewed_at=now
        )
        try:
            version = self.store.put(
                self.lock_key(handle.key), record.model_dump(), expected_version=handle.version
            )
        except VersionConflictError as e:
            raise LockLostError(handle.key, context=ErrorContext(state_key=handle.key), cause=e)

        handle.version = version
        handle.ttl = ttl
        handle.renewed_at = now
        return handle

    def is_held(self, handle: LockHandle) -> bool:
        """Check that the handle still owns a valid lock."""
        if handle.released:
            return False
        current = self.store.get(self.lock_key(handle.key))
        if not self._owns(handle, current):
            return False
        return not LockRecord(**current.value).is_expired(self.clock())

    def verify(self, handle: LockHandle) -> None:
        """Raise LockLostError unless the handle still owns a valid lock."""
        if not self.is_held(handle):
            raise LockLostError(handle.key, context=ErrorContext(state_key=handle.key))

    def force_unlock(self, key: str) -> Optional[LockRecord]:
        """Remove whatever lock exists on a key, returning the removed record."""
        current = self.store.get(self.lock_key(key))
        if current is None:
            return None
        record = LockRecord(**current.value)
        self.store.delete(self.lock_key(key), expected_version=current.version)
        logger.warning(f"Force-unlocked {key} (held by {record.holder})", extra={'state_key': key})
        return record


class LockRenewer:
    """Renews a lock in the background while a long operation runs."""

    def __init__(self, manager: LockManager, handle: LockHandle, interval: Optional[float] = None):
        """
        Initialize LockRenewer.

        Args:
            manager: Lock manager used for renewals
            handle: Handle to keep alive
            interval: Seconds between renewals (defaults to a third of the ttl)
        """
        self.manager = manager
        self.handle = handle
        self.interval = interval or max(handle.ttl / 3.0, 0.01)
        self.error: Optional[LockLostError] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def lost(self) -> bool:
        return self.error is not None

    def start(self) -> "LockRenewer":
        self._thread = threading.Thread(
            target=self._run, name=f"lock-renewer:{self.handle.key}", daemon=True
        )
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()

    def __enter__(self) -> "LockRenewer":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.manager.renew(self.handle)
            except LockLostError as e:
                self.error = e
                logger.error(
                    f"Lost lock on {self.handle.key} during operation",
                    extra={'state_key': self.handle.key}
                )
                return
            except DeploymentError as e:
                # Backend hiccup: keep trying until the lock actually expires
                logger.warning(f"Lock renewal for {self.handle.key} failed: {e}")
