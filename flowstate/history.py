import logging
from typing import List, Optional

from flowstate.visual_base_models import FlowSnapshot

logger = logging.getLogger("flowstate.history")

DEFAULT_HISTORY_SIZE = 50

class HistoryManager:
    """
    Bounded linear undo/redo history over graph snapshots.

    The index is always relative to the oldest retained entry: after any push it
    points at the tail, and evicting the oldest entry on overflow never leaves it
    pointing past the end.
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_SIZE):
        if capacity < 1:
            raise ValueError(f"History capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._entries: List[FlowSnapshot] = []
        self._index = -1

    def __len__(self):
        return len(self._entries)

    @property
    def index(self) -> int:
        return self._index

    @property
    def entries(self) -> List[FlowSnapshot]:
        return list(self._entries)

    def current(self) -> Optional[FlowSnapshot]:
        if 0 <= self._index < len(self._entries):
            return self._entries[self._index]
        return None

    def push(self, snapshot: FlowSnapshot) -> bool:
        """Records a snapshot. Returns False when it equals the current entry."""
        if snapshot.matches(self.current()):
            return False

        # Anything after the index is the redo branch
        del self._entries[self._index + 1:]
        self._entries.append(snapshot)

        if len(self._entries) > self.capacity:
            evicted = len(self._entries) - self.capacity
            del self._entries[:evicted]
            logger.debug(f"History full, evicted {evicted} oldest snapshot(s)")

        self._index = len(self._entries) - 1
        return True

    def can_undo(self) -> bool:
        return self._index > 0

    def can_redo(self) -> bool:
        return self._index < len(self._entries) - 1

    def undo(self) -> Optional[FlowSnapshot]:
        if not self.can_undo():
            return None
        self._index -= 1
        return FlowSnapshot.capture(self._entries[self._index].nodes, self._entries[self._index].edges)

    def redo(self) -> Optional[FlowSnapshot]:
        if not self.can_redo():
            return None
        self._index += 1
        return FlowSnapshot.capture(self._entries[self._index].nodes, self._entries[self._index].edges)

    def clear(self):
        self._entries = []
        self._index = -1
