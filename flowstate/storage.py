import logging
import os
import sqlite3
from contextlib import contextmanager
import glob
from typing import Dict, List, Optional

from pydantic import ValidationError

from flowstate.visual_base_models import PersistedState

logger = logging.getLogger("flowstate.storage")

# Fixed namespace the persisted {nodes, edges, savedFlows} record lives under
STORAGE_KEY = "flow-storage"
DEFAULT_SESSION = "default"

def sanitize_session_id(session_id: str) -> str:
    safe_id = "".join([c for c in (session_id or "") if c.isalnum() or c in ('_', '-')])
    return safe_id or DEFAULT_SESSION

class FlowStorage:
    """Durable key-value storage: one sqlite file per session."""

    def __init__(self, sessions_dir="sessions"):
        self.sessions_dir = sessions_dir
        if not os.path.exists(self.sessions_dir):
            os.makedirs(self.sessions_dir)

        if not os.path.exists(self._get_db_path(DEFAULT_SESSION)):
            self.create_session(DEFAULT_SESSION)

    def _get_db_path(self, session_id):
        return os.path.join(self.sessions_dir, f"{sanitize_session_id(session_id)}.db")

    @contextmanager
    def _get_conn(self, session_id):
        conn = sqlite3.connect(self._get_db_path(session_id))
        conn.row_factory = sqlite3.Row
        try:
            # Always ensure schema is initialized (idempotent)
            self._init_db_schema(conn)
            yield conn
        finally:
            conn.close()

    def _init_db_schema(self, conn):
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value TEXT
            );

            INSERT OR IGNORE INTO metadata (key, value) VALUES ('created_at', CURRENT_TIMESTAMP);

            CREATE TABLE IF NOT EXISTS storage (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT
            );
        """)
        conn.commit()

    def create_session(self, session_id):
        if os.path.exists(self._get_db_path(session_id)):
            return False # Already exists

        with self._get_conn(session_id):
            pass
        return True

    def list_sessions(self) -> List[str]:
        files = glob.glob(os.path.join(self.sessions_dir, "*.db"))
        return sorted(os.path.splitext(os.path.basename(f))[0] for f in files)

    def delete_session(self, session_id):
        path = self._get_db_path(session_id)
        if os.path.exists(path):
            os.remove(path)
            # WAL side files
            for suffix in ("-wal", "-shm"):
                if os.path.exists(path + suffix):
                    os.remove(path + suffix)
            return True
        return False

    def read(self, session_id) -> Optional[PersistedState]:
        """Reads the persisted state; None when absent, unreadable or corrupt."""
        if not os.path.exists(self._get_db_path(session_id)):
            return None
        try:
            with self._get_conn(session_id) as conn:
                row = conn.execute("SELECT value FROM storage WHERE key = ?", (STORAGE_KEY,)).fetchone()
        except sqlite3.Error as e:
            logger.warning(f"Could not read session '{session_id}': {e}")
            return None

        if not row:
            return None
        try:
            return PersistedState.model_validate_json(row['value'])
        except ValidationError as e:
            logger.warning(f"Discarding corrupt state for session '{session_id}': {e.error_count()} error(s)")
            return None

    def write(self, session_id, state: PersistedState) -> bool:
        """Fire-and-forget write; failures are logged and the caller keeps its in-memory state."""
        try:
            with self._get_conn(session_id) as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO storage (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
                    (STORAGE_KEY, state.model_dump_json())
                )
                conn.commit()
            return True
        except sqlite3.Error as e:
            logger.warning(f"Storage unavailable for session '{session_id}', continuing in memory: {e}")
            return False

class MemoryStorage:
    """Same interface as FlowStorage, kept in process memory."""

    def __init__(self):
        self._records: Dict[str, Optional[str]] = {DEFAULT_SESSION: None}

    def create_session(self, session_id):
        sid = sanitize_session_id(session_id)
        if sid in self._records:
            return False
        self._records[sid] = None
        return True

    def list_sessions(self) -> List[str]:
        return sorted(self._records)

    def delete_session(self, session_id):
        sid = sanitize_session_id(session_id)
        if sid in self._records:
            del self._records[sid]
            return True
        return False

    def read(self, session_id) -> Optional[PersistedState]:
        raw = self._records.get(sanitize_session_id(session_id))
        if raw is None:
            return None
        return PersistedState.model_validate_json(raw)

    def write(self, session_id, state: PersistedState) -> bool:
        self._records[sanitize_session_id(session_id)] = state.model_dump_json()
        return True
