"""Deduplicating queue of wallet addresses awaiting cost basis recomputation."""

from __future__ import annotations

import threading
from typing import Iterable

from models.cost_basis import QueueEntry
from utils.logger import queue_logger as logger
from utils.utcnow import epoch_ms


class RecalculationQueue:
    """Address-keyed queue; re-queuing an address overwrites its entry.

    ``drain_all`` swaps the whole mapping out under the lock, so an enqueue
    racing with a drain lands either in the returned snapshot or in the fresh
    mapping, never in neither.  ``try_begin_drain``/``end_drain`` guard
    against two drains running at once.
    """

    def __init__(self):
        self._entries: dict[str, QueueEntry] = {}
        self._lock = threading.Lock()
        self._draining = False

    def enqueue(self, addresses: Iterable[str], priority: str = "normal") -> int:
        """Queue addresses (last write wins). Returns the number accepted."""
        queued_at = epoch_ms()
        accepted = 0
        with self._lock:
            for address in addresses:
                if not address:
                    continue
                self._entries[address] = QueueEntry(
                    address=address, queued_at=queued_at, priority=priority
                )
                accepted += 1
            size = len(self._entries)
        logger.debug("Wallets queued", accepted=accepted, queue_size=size)
        return accepted

    def drain_all(self) -> list[str]:
        """Atomically take every queued address, leaving the queue empty."""
        with self._lock:
            snapshot, self._entries = self._entries, {}
        return list(snapshot.keys())

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def snapshot(self) -> list[QueueEntry]:
        with self._lock:
            return list(self._entries.values())

    @property
    def is_draining(self) -> bool:
        return self._draining

    def try_begin_drain(self) -> bool:
        """Claim the drain slot; False if a drain is already running."""
        with self._lock:
            if self._draining:
                return False
            self._draining = True
            return True

    def end_drain(self) -> None:
        with self._lock:
            self._draining = False
