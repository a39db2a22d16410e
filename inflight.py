import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Set

from errors import Conflict

logger = logging.getLogger(__name__)


class InFlightGuard:
    """
    Process-local set of mutating operations that are still running.

    A second request with the same key is refused until the first finishes,
    so a repeated tap cannot produce a duplicate write.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: Set[str] = set()

    @contextmanager
    def hold(self, key: str, draft: Optional[str] = None) -> Iterator[None]:
        """Run the block under ``key``. A refused duplicate hands ``draft`` back to the caller."""
        with self._lock:
            if key in self._keys:
                logger.info("Refusing duplicate in-flight operation %s", key)
                raise Conflict("This request is already being processed.", draft=draft)
            self._keys.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._keys.discard(key)

    def snapshot(self) -> list:
        with self._lock:
            return list(self._keys)
