from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional
import uuid

class SessionState(str, Enum):
    SAILING = "sailing"
    DRIFTING = "drifting"
    ENDED = "ended"

@dataclass
class FocusTask:
    """Goal and task context supplied by the session host"""
    task_name: str
    goal_text: str = ""
    related_apps: List[str] = field(default_factory=list)

@dataclass
class FocusSession:
    task: FocusTask
    start_time: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    end_time: Optional[datetime] = None
    state: SessionState = SessionState.SAILING
    focused_seconds: float = 0.0
    drifted_seconds: float = 0.0
    drift_count: int = 0
    last_transition: Optional[datetime] = None

    def __post_init__(self):
        if self.last_transition is None:
            self.last_transition = self.start_time

    @property
    def is_active(self) -> bool:
        return self.state != SessionState.ENDED

    @property
    def total_seconds(self) -> float:
        return self.focused_seconds + self.drifted_seconds

    @property
    def focus_percentage(self) -> int:
        """Share of the session spent focused"""
        total = self.total_seconds
        if total <= 0:
            return 0
        return round(self.focused_seconds / total * 100)

    def accrue(self, now: datetime) -> None:
        """Book time since the last transition into the current state's bucket"""
        if not self.is_active or self.last_transition is None:
            return
        elapsed = max(0.0, (now - self.last_transition).total_seconds())
        if self.state == SessionState.DRIFTING:
            self.drifted_seconds += elapsed
        else:
            self.focused_seconds += elapsed
        self.last_transition = now
