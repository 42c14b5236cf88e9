from datetime import datetime, timedelta
import sqlite3
from pathlib import Path
import logging
from typing import List, Dict, Optional, Tuple, Any
import json
import asyncio

from mindship.config.settings import settings
from mindship.models.dialogue import ConversationTurn
from mindship.models.drift import DistractionEvent
from mindship.models.focus_session import FocusSession
from mindship.services.errors import DatabaseError

logger = logging.getLogger(__name__)

MIGRATIONS = [
    """
    -- Focus sessions
    CREATE TABLE IF NOT EXISTS focus_sessions (
        id TEXT PRIMARY KEY,
        task_name TEXT NOT NULL,
        goal_text TEXT,
        related_apps TEXT,
        start_time TIMESTAMP NOT NULL,
        end_time TIMESTAMP,
        state TEXT NOT NULL,
        focused_seconds FLOAT DEFAULT 0,
        drifted_seconds FLOAT DEFAULT 0,
        drift_count INTEGER DEFAULT 0
    );

    -- Finalized distraction periods
    CREATE TABLE IF NOT EXISTS distraction_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        cause TEXT NOT NULL,
        started_at TIMESTAMP NOT NULL,
        duration_seconds FLOAT NOT NULL,
        detail TEXT,
        confidence FLOAT
    );

    -- Intervention dialogue turns
    CREATE TABLE IF NOT EXISTS conversation_turns (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        conversation_id TEXT NOT NULL,
        turn_number INTEGER NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        timestamp TIMESTAMP NOT NULL,
        audio_ref TEXT
    );

    -- Create indexes if they don't exist
    CREATE INDEX IF NOT EXISTS idx_focus_sessions_time ON focus_sessions(start_time);
    CREATE INDEX IF NOT EXISTS idx_distraction_events_session ON distraction_events(session_id);
    CREATE INDEX IF NOT EXISTS idx_distraction_events_time ON distraction_events(started_at);
    CREATE INDEX IF NOT EXISTS idx_conversation_turns_session ON conversation_turns(session_id);
    """
]

class DatabaseConnectionError(DatabaseError):
    """Exception raised when database connection fails"""
    pass

class QueryError(DatabaseError):
    """Exception raised when a database query fails"""
    pass

def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None

class DatabaseManager:
    """SQLite store for sessions, distraction events and dialogue turns

    File databases get a fresh connection per call so writes can come from
    worker threads; an in-memory database keeps one shared connection.
    """

    def __init__(self, db_path=None):
        """Initialize database manager"""
        self.db_path = str(db_path or settings.DEFAULT_DB_PATH)
        self._memory_conn: Optional[sqlite3.Connection] = None
        logger.info(f"Initialized DatabaseManager with db_path: {self.db_path}")
        self.initialize()

    @property
    def in_memory(self) -> bool:
        return self.db_path == ":memory:"

    def initialize(self):
        """Initialize database schema"""
        try:
            conn = self.get_connection()
            try:
                for migration in MIGRATIONS:
                    conn.executescript(migration)
                conn.commit()
                logger.info("Database initialization complete")
            finally:
                self._close(conn)
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise DatabaseError(f"Failed to initialize database: {e}")

    def get_connection(self) -> sqlite3.Connection:
        """Get a database connection for the calling thread"""
        if self.in_memory:
            if self._memory_conn is None:
                self._memory_conn = sqlite3.connect(":memory:", check_same_thread=False)
                self._memory_conn.row_factory = sqlite3.Row
            return self._memory_conn

        try:
            db_path = Path(self.db_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(db_path))
        except (OSError, sqlite3.Error) as e:
            raise DatabaseConnectionError(f"Cannot open {self.db_path}: {e}")
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def _close(self, conn: sqlite3.Connection) -> None:
        if conn is not self._memory_conn:
            conn.close()

    def close(self) -> None:
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None

    def _execute(self, query: str, params: Any = ()) -> int:
        conn = self.get_connection()
        try:
            cursor = conn.execute(query, params)
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            conn.rollback()
            raise QueryError(f"Query failed: {e}")
        finally:
            self._close(conn)

    def _fetch(self, query: str, params: Any = ()) -> List[sqlite3.Row]:
        conn = self.get_connection()
        try:
            return conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise QueryError(f"Query failed: {e}")
        finally:
            self._close(conn)

    # Writes

    def record_session(self, session: FocusSession) -> None:
        """Insert or update a focus session"""
        try:
            self._execute("""
                INSERT OR REPLACE INTO focus_sessions (
                    id, task_name, goal_text, related_apps, start_time, end_time,
                    state, focused_seconds, drifted_seconds, drift_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                session.id,
                session.task.task_name,
                session.task.goal_text,
                json.dumps(session.task.related_apps),
                session.start_time.isoformat(),
                session.end_time.isoformat() if session.end_time else None,
                session.state.value,
                session.focused_seconds,
                session.drifted_seconds,
                session.drift_count,
            ])
            logger.debug(f"Stored session {session.id}")
        except DatabaseError as e:
            logger.error(f"Failed to store session {session.id}: {e}")
            raise

    def record_distraction(self, event: DistractionEvent) -> None:
        try:
            self._execute("""
                INSERT INTO distraction_events (
                    session_id, cause, started_at, duration_seconds, detail, confidence
                ) VALUES (?, ?, ?, ?, ?, ?)
            """, [
                event.session_id,
                event.cause.value,
                event.started_at.isoformat(),
                event.duration_seconds,
                event.detail,
                event.confidence,
            ])
            logger.debug(f"Stored {event.cause.value} event for session {event.session_id}")
        except DatabaseError as e:
            logger.error(f"Failed to store distraction event: {e}")
            raise

    def record_turn(self, session_id: str, conversation_id: str, turn: ConversationTurn) -> None:
        try:
            self._execute("""
                INSERT INTO conversation_turns (
                    session_id, conversation_id, turn_number, role, content, timestamp, audio_ref
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, [
                session_id,
                conversation_id,
                turn.turn_number,
                turn.role.value,
                turn.content,
                turn.timestamp.isoformat(),
                turn.audio_ref,
            ])
        except DatabaseError as e:
            logger.error(f"Failed to store conversation turn: {e}")
            raise

    # Reads

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        rows = self._fetch("SELECT * FROM focus_sessions WHERE id = ?", [session_id])
        return self._session_row(rows[0]) if rows else None

    def get_recent_sessions(self, limit: int = 20) -> List[Dict[str, Any]]:
        rows = self._fetch(
            "SELECT * FROM focus_sessions ORDER BY start_time DESC LIMIT ?", [limit]
        )
        return [self._session_row(row) for row in rows]

    def get_sessions_between(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        rows = self._fetch("""
            SELECT * FROM focus_sessions
            WHERE start_time BETWEEN ? AND ?
            ORDER BY start_time
        """, [start.isoformat(), end.isoformat()])
        return [self._session_row(row) for row in rows]

    def get_distraction_events(self, session_id: str) -> List[Dict[str, Any]]:
        rows = self._fetch("""
            SELECT * FROM distraction_events
            WHERE session_id = ?
            ORDER BY started_at
        """, [session_id])
        return [self._event_row(row) for row in rows]

    def get_distraction_events_between(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        rows = self._fetch("""
            SELECT * FROM distraction_events
            WHERE started_at BETWEEN ? AND ?
            ORDER BY started_at
        """, [start.isoformat(), end.isoformat()])
        return [self._event_row(row) for row in rows]

    def get_conversation_turns(
        self, session_id: str, conversation_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM conversation_turns WHERE session_id = ?"
        params: List[Any] = [session_id]
        if conversation_id:
            query += " AND conversation_id = ?"
            params.append(conversation_id)
        query += " ORDER BY id"
        return [
            {
                "conversation_id": row["conversation_id"],
                "turn_number": row["turn_number"],
                "role": row["role"],
                "content": row["content"],
                "timestamp": _parse_time(row["timestamp"]),
                "audio_ref": row["audio_ref"],
            }
            for row in self._fetch(query, params)
        ]

    @staticmethod
    def _session_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "task_name": row["task_name"],
            "goal_text": row["goal_text"],
            "related_apps": json.loads(row["related_apps"] or "[]"),
            "start_time": _parse_time(row["start_time"]),
            "end_time": _parse_time(row["end_time"]),
            "state": row["state"],
            "focused_seconds": row["focused_seconds"],
            "drifted_seconds": row["drifted_seconds"],
            "drift_count": row["drift_count"],
        }

    @staticmethod
    def _event_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "session_id": row["session_id"],
            "cause": row["cause"],
            "started_at": _parse_time(row["started_at"]),
            "duration_seconds": row["duration_seconds"],
            "detail": row["detail"],
            "confidence": row["confidence"],
        }

    # Maintenance

    async def cleanup_old_data(self, days: Optional[int] = None) -> Tuple[int, int]:
        """Delete sessions (and their events and turns) older than the retention window

        Returns:
            Tuple of (deleted sessions, bytes reclaimed)
        """
        try:
            retention_days = days if days is not None else settings.DATA_RETENTION_DAYS
            cutoff_date = datetime.now() - timedelta(days=retention_days)

            # Run all database operations in a thread
            return await asyncio.to_thread(self._do_cleanup, cutoff_date)
        except Exception as e:
            logger.error(f"Failed to clean up old data: {e}")
            raise DatabaseError(f"Data cleanup failed: {e}")

    def _do_cleanup(self, cutoff_date: datetime) -> Tuple[int, int]:
        """Internal method to perform the actual cleanup"""
        conn = self.get_connection()
        try:
            initial_size = 0 if self.in_memory else Path(self.db_path).stat().st_size
            cutoff = cutoff_date.isoformat()

            old_sessions = "SELECT id FROM focus_sessions WHERE start_time < ?"
            conn.execute(f"DELETE FROM distraction_events WHERE session_id IN ({old_sessions})", [cutoff])
            conn.execute(f"DELETE FROM conversation_turns WHERE session_id IN ({old_sessions})", [cutoff])
            deleted = conn.execute("DELETE FROM focus_sessions WHERE start_time < ?", [cutoff]).rowcount
            conn.commit()

            space_reclaimed = 0
            if not self.in_memory:
                conn.execute("VACUUM")
                space_reclaimed = max(0, initial_size - Path(self.db_path).stat().st_size)

            logger.info(f"Cleaned up {deleted} sessions older than {cutoff_date.date()}")
            return deleted, space_reclaimed
        except Exception:
            conn.rollback()
            raise
        finally:
            self._close(conn)

    def get_database_stats(self) -> Dict[str, Any]:
        """Get row counts and file size"""
        try:
            tables = {}
            for table in ("focus_sessions", "distraction_events", "conversation_turns"):
                tables[table] = self._fetch(f"SELECT COUNT(*) AS n FROM {table}")[0]["n"]

            db_size = 0.0 if self.in_memory else Path(self.db_path).stat().st_size / (1024 * 1024)
            return {"tables": tables, "database_size_mb": db_size}
        except Exception as e:
            logger.error(f"Failed to get database stats: {e}")
            raise DatabaseError(f"Failed to get database stats: {e}")
