"""Session summaries and daily focus metrics"""
import logging
from datetime import datetime, time
from typing import Any, Dict, List, Optional

from mindship.services.database import DatabaseManager
from mindship.services.errors import DatabaseError

logger = logging.getLogger(__name__)

def focus_percentage(focused_seconds: float, total_seconds: float) -> int:
    if total_seconds <= 0:
        return 0
    return round(focused_seconds / total_seconds * 100)

class MetricsCollector:
    """Collects and formats focus metrics for analysis"""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def get_session_summary(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Summary of one session, or None if it was never stored"""
        session = self.db.get_session(session_id)
        if session is None:
            return None

        events = self.db.get_distraction_events(session_id)
        focused = session["focused_seconds"] or 0.0
        drifted = session["drifted_seconds"] or 0.0
        total = focused + drifted

        return {
            "session_id": session_id,
            "task_name": session["task_name"],
            "goal_text": session["goal_text"],
            "start_time": session["start_time"],
            "end_time": session["end_time"],
            "state": session["state"],
            "total_seconds": total,
            "focused_seconds": focused,
            "drifted_seconds": drifted,
            "drift_count": session["drift_count"],
            "focus_percentage": focus_percentage(focused, total),
            "causes": self._cause_breakdown(events),
        }

    def get_daily_metrics(self, date: Optional[datetime] = None) -> Dict[str, Any]:
        """Aggregate all sessions that started on one day"""
        if date is None:
            date = datetime.now()
        start = datetime.combine(date.date(), time.min)
        end = datetime.combine(date.date(), time.max)

        try:
            sessions = self.db.get_sessions_between(start, end)
            events = self.db.get_distraction_events_between(start, end)
        except DatabaseError as e:
            logger.error(f"Error getting daily metrics: {e}")
            return {}

        focused = sum(s["focused_seconds"] or 0.0 for s in sessions)
        drifted = sum(s["drifted_seconds"] or 0.0 for s in sessions)
        return {
            "date": start.strftime("%Y-%m-%d"),
            "sessions": len(sessions),
            "focused_seconds": focused,
            "drifted_seconds": drifted,
            "drift_count": sum(s["drift_count"] or 0 for s in sessions),
            "focus_percentage": focus_percentage(focused, focused + drifted),
            "causes": self._cause_breakdown(events),
            "hourly_patterns": self._hourly_patterns(events),
        }

    @staticmethod
    def _cause_breakdown(events: List[Dict[str, Any]]) -> Dict[str, Dict[str, float]]:
        causes: Dict[str, Dict[str, float]] = {}
        for event in events:
            entry = causes.setdefault(event["cause"], {"count": 0, "total_seconds": 0.0})
            entry["count"] += 1
            entry["total_seconds"] += event["duration_seconds"] or 0.0
        return causes

    @staticmethod
    def _hourly_patterns(events: List[Dict[str, Any]]) -> Dict[int, int]:
        """Distraction count by hour of day"""
        patterns = {hour: 0 for hour in range(24)}
        for event in events:
            started_at = event.get("started_at")
            if started_at:
                patterns[started_at.hour] += 1
        return patterns
