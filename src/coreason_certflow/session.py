# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_certflow

"""
Server-side session storage, inactivity policy and per-session locking.
"""

import secrets
import time
from collections.abc import Callable
from typing import Protocol

import anyio

from coreason_certflow.models import Session
from coreason_certflow.utils.logger import logger

DEFAULT_INACTIVITY_TIMEOUT = 7200


class SessionStore(Protocol):
    """Protocol for a server-side session store keyed by an opaque per-browser identifier."""

    def get(self, session_id: str) -> Session | None:
        """Returns the session, or None if unknown."""
        ...

    def set(self, session: Session) -> None:
        """Persists the session under its `session_id`."""
        ...

    def clear(self, session_id: str) -> None:
        """Forgets the session."""
        ...


class MemorySessionStore:
    """
    In-memory implementation of SessionStore.
    Returns the stored object itself, so in-place mutation is visible to concurrent readers.
    Not suitable for multi-process deployments.

    Sessions idle for more than `ttl` seconds are evicted on every `get` and `set`.
    Idle time is measured from `Session.last_active`, or from the last write when the
    session has never been active. `on_remove` is called with the identifier of every
    session that leaves the store.
    """

    def __init__(
        self,
        ttl: int = DEFAULT_INACTIVITY_TIMEOUT,
        clock: Callable[[], float] = time.time,
        on_remove: Callable[[str], None] | None = None,
    ) -> None:
        self.ttl = ttl
        self.clock = clock
        self.on_remove = on_remove
        self._sessions: dict[str, Session] = {}
        self._written: dict[str, float] = {}

    def get(self, session_id: str) -> Session | None:
        self.sweep()
        return self._sessions.get(session_id)

    def set(self, session: Session) -> None:
        self._sessions[session.session_id] = session
        self._written[session.session_id] = self.clock()
        self.sweep()

    def clear(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            self._written.pop(session_id, None)
            if self.on_remove is not None:
                self.on_remove(session_id)

    def sweep(self) -> int:
        """
        Evicts every session idle for longer than `ttl`.

        Returns:
            int: Number of sessions evicted.
        """
        now = self.clock()
        expired = [session_id for session_id in self._sessions if now - self._idle_since(session_id) > self.ttl]
        for session_id in expired:
            self.clear(session_id)
        if expired:
            logger.debug(f"Evicted {len(expired)} idle session(s)")
        return len(expired)

    def _idle_since(self, session_id: str) -> float:
        last_active = self._sessions[session_id].last_active
        return last_active if last_active is not None else self._written[session_id]

    def create(self) -> Session:
        """Creates and stores an empty session with a fresh identifier."""
        session = Session(session_id=secrets.token_urlsafe(32))
        self.set(session)
        return session

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


def enforce_inactivity(session: Session, now: int, timeout: int = DEFAULT_INACTIVITY_TIMEOUT) -> bool:
    """
    Applies the sliding inactivity window to a session.

    If more than `timeout` seconds elapsed since the last activity, every field is
    cleared and the session is unauthenticated from here on. Otherwise the activity
    timestamp moves to `now`.

    Args:
        session: The session to check.
        now: Current epoch seconds.
        timeout: Inactivity threshold in seconds.

    Returns:
        bool: True if the session timed out and was cleared.
    """
    if session.last_active is not None and now - session.last_active > timeout:
        session.clear()
        return True

    session.last_active = now
    return False


class SessionLocks:
    """
    Registry of per-session locks.

    Serializes token endpoint calls for one session so that a refresh token is
    never redeemed twice concurrently.
    """

    def __init__(self) -> None:
        self._locks: dict[str, anyio.Lock] = {}

    def get(self, session_id: str) -> anyio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = anyio.Lock()
            self._locks[session_id] = lock
        return lock

    def discard(self, session_id: str) -> None:
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._locks
