"""Buffer for ICE candidates that arrive before their remote description."""

import logging
from typing import Any, Dict, Hashable, List

logger = logging.getLogger(__name__)


class CandidateBuffer:
    """Per-connection queues of not-yet-applicable ICE candidates.

    Keys are connection registry keys (see ``Connection.key``). Candidates are
    stored as received (wire payload dicts) and handed back in receipt order.
    """

    def __init__(self):
        self._pending: Dict[Hashable, List[Dict[str, Any]]] = {}

    def add(self, key: Hashable, candidate: Dict[str, Any]):
        """Queue a candidate for a connection that cannot apply it yet."""
        self._pending.setdefault(key, []).append(candidate)
        logger.debug(f"Buffered ICE candidate for {key} ({len(self._pending[key])} pending)")

    def drain(self, key: Hashable) -> List[Dict[str, Any]]:
        """Remove and return every buffered candidate for ``key``, oldest first."""
        return self._pending.pop(key, [])

    def discard(self, key: Hashable):
        """Forget buffered candidates for ``key`` without applying them."""
        dropped = self._pending.pop(key, None)
        if dropped:
            logger.debug(f"Discarded {len(dropped)} buffered ICE candidates for {key}")

    def pending(self, key: Hashable) -> int:
        return len(self._pending.get(key, ()))

    def __contains__(self, key: Hashable) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def clear(self):
        self._pending.clear()
