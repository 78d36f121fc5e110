import logging
from typing import Dict, List

from flowstate.graph_manager import GraphManager
from flowstate.history import DEFAULT_HISTORY_SIZE
from flowstate.storage import sanitize_session_id

logger = logging.getLogger("flowstate.sessions")

class SessionRegistry:
    """
    One GraphManager per named session.

    A session's state is read from storage once, the first time it is asked for;
    afterwards the in-memory manager is authoritative and writes through on every
    committed mutation. Callers receive the registry instead of a module global.
    """

    def __init__(self, storage, history_size: int = DEFAULT_HISTORY_SIZE):
        self.storage = storage
        self.history_size = history_size
        self._managers: Dict[str, GraphManager] = {}

    def get(self, session_id) -> GraphManager:
        sid = sanitize_session_id(session_id)
        manager = self._managers.get(sid)
        if manager is None:
            self.storage.create_session(sid)
            manager = GraphManager(session_id=sid, storage=self.storage, history_size=self.history_size)
            self._managers[sid] = manager
        return manager

    def create_session(self, session_id) -> bool:
        return self.storage.create_session(session_id)

    def list_sessions(self) -> List[str]:
        return self.storage.list_sessions()

    def delete_session(self, session_id) -> bool:
        sid = sanitize_session_id(session_id)
        self._managers.pop(sid, None)
        deleted = self.storage.delete_session(sid)
        if deleted:
            logger.info(f"Deleted session '{sid}'")
        return deleted
