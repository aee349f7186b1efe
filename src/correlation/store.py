"""In-memory correlation store for pending async requests.

Process-scoped state with no durability guarantee. Entries whose webhook
never arrives are kept for the lifetime of the process; a deployment that
cares about that should move this into a keyed store with TTL eviction.
"""

from __future__ import annotations

import logging

from src.models import CorrelationEntry

logger = logging.getLogger(__name__)


class CorrelationStore:
    """Pending request context keyed by correlation id, consumed exactly once."""

    def __init__(self) -> None:
        self._entries: dict[str, CorrelationEntry] = {}

    def put(self, entry: CorrelationEntry) -> None:
        if entry.correlation_id in self._entries:
            logger.warning(
                "Replacing live correlation entry for %s", entry.correlation_id,
            )
        self._entries[entry.correlation_id] = entry

    def consume(self, correlation_id: str | None) -> CorrelationEntry | None:
        """Read and remove the entry in one step.

        A single ``dict.pop`` has no await point, so two handlers racing on
        the same id see match-then-miss.
        """
        if not correlation_id:
            return None
        return self._entries.pop(correlation_id, None)

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
