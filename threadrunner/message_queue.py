"""Per-thread FIFO of pending work with interrupt semantics."""

import logging
from typing import Optional

from .models import QueuedMessage, ThreadKey, ThreadQueueState

logger = logging.getLogger(__name__)


class MessageQueue:
    """
    Holds queued messages for each thread plus its processing flag.

    State is process-local and not persisted: a restart drops
    anything that was queued but not yet picked up.

    An interrupt replaces the whole queue with itself. Everything queued
    before it is abandoned, not deferred.
    """

    def __init__(self):
        self._threads: dict[ThreadKey, ThreadQueueState] = {}

    def _state(self, key: ThreadKey) -> ThreadQueueState:
        state = self._threads.get(key)
        if state is None:
            state = ThreadQueueState()
            self._threads[key] = state
        return state

    def enqueue(self, key: ThreadKey, message: QueuedMessage):
        state = self._state(key)
        if message.is_interrupt:
            logger.info(f"Interrupt for {key}, discarding {len(state.queue)} queued message(s)")
            state.queue = [message]
        else:
            state.queue.append(message)
            logger.debug(f"Enqueued message for {key} (queue size {len(state.queue)})")

    def dequeue(self, key: ThreadKey) -> Optional[QueuedMessage]:
        state = self._threads.get(key)
        if not state or not state.queue:
            return None
        message = state.queue.pop(0)
        logger.debug(f"Dequeued message for {key} ({len(state.queue)} remaining)")
        return message

    def size(self, key: ThreadKey) -> int:
        state = self._threads.get(key)
        return len(state.queue) if state else 0

    def has_pending(self, key: ThreadKey) -> bool:
        return self.size(key) > 0

    def is_processing(self, key: ThreadKey) -> bool:
        state = self._threads.get(key)
        return bool(state and state.processing)

    def set_processing(self, key: ThreadKey, processing: bool):
        """Single-flight flag. Owned by the drain loop for the thread."""
        self._state(key).processing = processing
        logger.debug(f"Set processing={processing} for {key}")
        self._discard_if_idle(key)

    def try_acquire(self, key: ThreadKey) -> bool:
        """Set processing if it is not already set. Returns True if acquired."""
        state = self._state(key)
        if state.processing:
            return False
        state.processing = True
        return True

    def clear(self, key: ThreadKey):
        """Drop the thread's queue and processing flag (session closed)."""
        self._threads.pop(key, None)
        logger.info(f"Cleared queue for {key}")

    def _discard_if_idle(self, key: ThreadKey):
        state = self._threads.get(key)
        if state and not state.processing and not state.queue:
            del self._threads[key]
