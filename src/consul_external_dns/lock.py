"""Cluster-wide mutual exclusion for the reconciliation pass.

Two implementations:

SessionLock
    The key is bound to a Consul session that a background thread renews
    every ttl/2. If a renewal fails the session may already be gone and
    another instance may hold the lock, so the shared shutdown event is set
    and the process stops instead of carrying on as a second writer. When
    the session is destroyed or expires Consul releases the key; others can
    take it after the session's lock delay.

SimpleLock
    Check-and-set create of the key, delete to unlock. No sessions, so a
    crashed holder leaves the key behind. After ``force_unlock_after``
    seconds without success the key is assumed poisoned and deleted. This
    trades safety for availability: if the holder is merely slow rather
    than dead, two instances end up reconciling at once. Pass None to
    disable the force delete.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from consul_external_dns.consul import ConsulClient
from consul_external_dns.errors import ExternalDNSError, FatalError, TransientError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_KEY = "consul_lock"
DEFAULT_SESSION_TTL = 15
DEFAULT_LOCK_DELAY = 15
DEFAULT_RETRY_INTERVAL = 10
DEFAULT_FORCE_UNLOCK_AFTER = 10.0

MIN_SESSION_TTL = 10
MAX_SESSION_TTL = 86400


def _lock_value() -> str:
    return json.dumps({"holder": socket.gethostname(), "locked_at": time.time()})


class Lock(ABC):
    """Abstract base class for the reconciliation lock."""

    # Called from another thread once the lock is lost.
    on_lost: Optional[Callable[[], None]] = None

    @abstractmethod
    def acquire(self) -> bool:
        """Block until the lock is held. Returns False if shutdown was requested."""
        pass

    @abstractmethod
    def release(self) -> None:
        """Give the lock up so other instances can take it."""
        pass

    @property
    def lost(self) -> bool:
        """True once the lock was taken away from this process."""
        return False

    def close(self) -> None:
        """Release everything the lock holds at process exit."""
        self.release()


# =============================================================================
# Session Lock
# =============================================================================


class SessionState(Enum):
    NO_SESSION = "no_session"
    ACTIVE = "active"
    RENEWING = "renewing"
    EXPIRED = "expired"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class Session:
    """A Consul session. Durations are in seconds."""

    id: str
    ttl: int
    lock_delay: int


class SessionLock(Lock):
    def __init__(
        self,
        consul: ConsulClient,
        shutdown: threading.Event,
        *,
        key: str = DEFAULT_LOCK_KEY,
        ttl: int = DEFAULT_SESSION_TTL,
        lock_delay: int = DEFAULT_LOCK_DELAY,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        name: str = "consul-external-dns",
    ):
        if not MIN_SESSION_TTL <= ttl <= MAX_SESSION_TTL:
            raise ValueError(
                f"Session TTL must be between {MIN_SESSION_TTL}s and {MAX_SESSION_TTL}s, got {ttl}s"
            )
        self._consul = consul
        self._shutdown = shutdown
        self.key = key
        self.ttl = ttl
        self.lock_delay = lock_delay
        self.retry_interval = retry_interval
        self.name = name
        self.session: Optional[Session] = None
        self.state = SessionState.NO_SESSION
        self.held = False
        self._renewer: Optional[threading.Thread] = None
        self._stop_renewing = threading.Event()
        self._lost = False

    def create_session(self) -> Session:
        """Register the session with Consul and start renewing it."""
        session_id = self._consul.create_session(self.name, self.ttl, self.lock_delay)
        self.session = Session(id=session_id, ttl=self.ttl, lock_delay=self.lock_delay)
        self.state = SessionState.ACTIVE
        logger.info(f"Created Consul session {session_id} (ttl {self.ttl}s)")

        self._renewer = threading.Thread(
            target=self._renew_loop,
            args=(self.session,),
            name="session-renewer",
            daemon=True,
        )
        self._renewer.start()
        return self.session

    def _renew_loop(self, session: Session) -> None:
        interval = session.ttl / 2
        while not self._stop_renewing.wait(interval):
            if self._shutdown.is_set():
                return
            self.state = SessionState.RENEWING
            try:
                self._consul.renew_session(session.id)
            except ExternalDNSError as e:
                self.state = SessionState.EXPIRED
                self.held = False
                self._lost = True
                logger.error(
                    f"Failed to renew Consul session {session.id}, shutting down "
                    f"to avoid running without the lock: {e}"
                )
                self._shutdown.set()
                if self.on_lost is not None:
                    self.on_lost()
                self._destroy_session(session)
                return
            if self._stop_renewing.is_set():
                return
            self.state = SessionState.ACTIVE
            logger.debug(f"Renewed Consul session {session.id}")

    def _destroy_session(self, session: Session) -> None:
        try:
            self._consul.destroy_session(session.id)
            logger.info(f"Destroyed Consul session {session.id}")
        except ExternalDNSError as e:
            logger.warning(f"Failed to destroy Consul session {session.id}: {e}")

    def acquire(self) -> bool:
        cursor: Optional[int] = None
        while not self._shutdown.is_set():
            try:
                session = self.session or self.create_session()
                if self._consul.acquire_key(self.key, session.id, _lock_value()):
                    self.held = True
                    logger.debug(f"Acquired lock {self.key}")
                    return True

                logger.info(f"Lock {self.key} is held by another session, waiting")
                cursor = self._wait_until_unheld(cursor)
            except TransientError as e:
                logger.warning(f"Failed to acquire lock {self.key}: {e}")
                cursor = None
                self._shutdown.wait(self.retry_interval)
        return False

    def _wait_until_unheld(self, cursor: Optional[int]) -> Optional[int]:
        """Watch the lock key until no session holds it.

        Returns as soon as the key is free, and after retry_interval at
        the latest, so acquire() re-checks at least that often.
        """
        deadline = time.monotonic() + self.retry_interval
        while not self._shutdown.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            cursor, entry = self._consul.watch_key(self.key, cursor, wait=remaining)
            if cursor is None:
                # No index to block on; throttle instead.
                self._shutdown.wait(remaining)
                break
            if entry is None or not entry.get("Session"):
                break
        return cursor

    def release(self) -> None:
        if self.session is None or not self.held:
            return
        try:
            self._consul.release_key(self.key, self.session.id)
            logger.debug(f"Released lock {self.key}")
        except ExternalDNSError as e:
            logger.warning(f"Failed to release lock {self.key}: {e}")
        finally:
            self.held = False

    def close(self) -> None:
        self._stop_renewing.set()
        if self._renewer is not None:
            self._renewer.join()
        self.release()
        if self.session is not None and not self._lost:
            self._destroy_session(self.session)
        self.state = SessionState.TERMINATED

    @property
    def lost(self) -> bool:
        return self._lost


# =============================================================================
# Simple Lock
# =============================================================================


class SimpleLock(Lock):
    def __init__(
        self,
        consul: ConsulClient,
        shutdown: threading.Event,
        *,
        key: str = DEFAULT_LOCK_KEY,
        force_unlock_after: Optional[float] = DEFAULT_FORCE_UNLOCK_AFTER,
        poll_interval: float = 0.1,
    ):
        self._consul = consul
        self._shutdown = shutdown
        self.key = key
        self.force_unlock_after = force_unlock_after
        self.poll_interval = poll_interval
        self.held = False

    def acquire(self) -> bool:
        started = time.monotonic()
        while not self._shutdown.is_set():
            if (
                self.force_unlock_after is not None
                and time.monotonic() - started > self.force_unlock_after
            ):
                logger.warning(
                    f"Timed out after {self.force_unlock_after}s waiting for lock {self.key}; "
                    "assuming poisoned lock, deleting it"
                )
                self.drop_lock()
                started = time.monotonic()

            try:
                if self._consul.cas_create_key(self.key, _lock_value()):
                    self.held = True
                    logger.debug(f"Acquired lock {self.key}")
                    return True
            except TransientError as e:
                logger.warning(f"Failed to acquire lock {self.key}: {e}")
            self._shutdown.wait(self.poll_interval)
        return False

    def drop_lock(self) -> None:
        """Delete the lock key. Failures are logged, never raised."""
        try:
            self._consul.delete_key(self.key)
            logger.debug(f"Dropped lock {self.key}")
        except (TransientError, FatalError) as e:
            logger.error(f"Failed to drop lock {self.key}: {e}")

    def release(self) -> None:
        if not self.held:
            return
        self.drop_lock()
        self.held = False
