"""
Account Balance Coordinator

Serializes every balance-affecting command per member. A critical section
holds the member's re-entrant lock and one storage transaction; callbacks
registered with ``after_commit`` run once the outermost section has
committed and released its lock.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional

from .errors import ConflictError
from .storage import StorageInterface


class _SectionState(threading.local):
    def __init__(self):
        self.depth = 0
        self.callbacks: List[Callable[[], None]] = []


class AccountCoordinator:
    """
    Per-member serialization of balance mutations

    Commands on different members run concurrently; commands on the same
    member run one at a time. Nested sections on the same thread share the
    outer storage transaction.
    """

    def __init__(self, storage: StorageInterface, lock_timeout_seconds: Optional[float] = 10.0):
        self.storage = storage
        self.lock_timeout_seconds = lock_timeout_seconds
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self._state = _SectionState()
        self.logger = logging.getLogger("sacco.coordinator")

    def _lock_for(self, member_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(member_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[member_id] = lock
            return lock

    @contextmanager
    def exclusive(self, member_id: str):
        """
        Run the enclosed block as one critical section for ``member_id``

        Raises:
            ConflictError: If the member's lock is not acquired within the timeout
        """
        lock = self._lock_for(member_id)
        timeout = -1 if self.lock_timeout_seconds is None else self.lock_timeout_seconds
        if not lock.acquire(timeout=timeout):
            self.logger.warning(f"Lock wait timed out for member {member_id}")
            raise ConflictError(
                f"Member {member_id} is busy; timed out after {self.lock_timeout_seconds}s"
            )

        state = self._state
        state.depth += 1
        registered_before = len(state.callbacks)
        committed = False
        try:
            with self.storage.atomic():
                yield
            committed = True
        finally:
            state.depth -= 1
            if not committed:
                # Work registered by a failed section must never run
                del state.callbacks[registered_before:]
            lock.release()

        if state.depth == 0:
            callbacks, state.callbacks = state.callbacks, []
            self._run(callbacks)

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Defer ``callback`` until the current outermost section commits"""
        if self._state.depth == 0:
            self._run([callback])
        else:
            self._state.callbacks.append(callback)

    @property
    def in_section(self) -> bool:
        return self._state.depth > 0

    def _run(self, callbacks: List[Callable[[], None]]) -> None:
        for callback in callbacks:
            try:
                callback()
            except Exception:
                self.logger.exception("Post-commit callback failed")
