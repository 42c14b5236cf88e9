from contextlib import asynccontextmanager
from datetime import datetime
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from mindship.config.settings import settings
from mindship.main import FocusHost, build_host
from mindship.models.focus_session import FocusTask
from mindship.services.database import DatabaseManager
from mindship.services.errors import SessionError
from mindship.services.metrics import MetricsCollector

logger = logging.getLogger(__name__)

_db: Optional[DatabaseManager] = None
_host: Optional[FocusHost] = None

def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(settings.DEFAULT_DB_PATH)
    return _db

def get_metrics(db: DatabaseManager = Depends(get_db)) -> MetricsCollector:
    return MetricsCollector(db)

def get_host(db: DatabaseManager = Depends(get_db)) -> FocusHost:
    global _host
    if _host is None:
        _host = build_host(recorder=db)
    return _host

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    global _host
    if _host is not None:
        logger.info("Stopping focus host...")
        await _host.stop()
        _host = None

app = FastAPI(title="Mindship Focus Monitor", lifespan=lifespan)

class StartSessionRequest(BaseModel):
    task_name: str = Field(min_length=1)
    goal_text: str = ""
    related_apps: List[str] = Field(default_factory=list)

class VisibilityRequest(BaseModel):
    hidden: bool

class ContextRequest(BaseModel):
    context: str = Field(min_length=1)

class InputRequest(BaseModel):
    kind: str = "input"

class AutoRestartRequest(BaseModel):
    enabled: bool

@app.exception_handler(SessionError)
async def session_error_handler(request: Request, exc: SessionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

# Live session

@app.get("/api/state")
async def get_state(host: FocusHost = Depends(get_host)):
    return host.snapshot()

@app.post("/api/sessions")
async def start_session(body: StartSessionRequest, host: FocusHost = Depends(get_host)):
    session = await host.start_session(
        FocusTask(task_name=body.task_name, goal_text=body.goal_text, related_apps=body.related_apps)
    )
    logger.info(f"Session {session.id} started via API")
    return host.snapshot()

@app.post("/api/sessions/end")
async def end_session(host: FocusHost = Depends(get_host)):
    session = await host.end_session()
    return {
        "id": session.id,
        "focused_seconds": session.focused_seconds,
        "drifted_seconds": session.drifted_seconds,
        "drift_count": session.drift_count,
        "focus_percentage": session.focus_percentage,
    }

@app.post("/api/signals/visibility")
async def visibility_changed(body: VisibilityRequest, host: FocusHost = Depends(get_host)):
    host.visibility_changed(body.hidden)
    return {"ok": True}

@app.post("/api/signals/context")
async def context_changed(body: ContextRequest, host: FocusHost = Depends(get_host)):
    host.context_changed(body.context)
    return {"ok": True}

@app.post("/api/signals/input")
async def user_input(body: InputRequest, host: FocusHost = Depends(get_host)):
    host.user_input(body.kind)
    return {"ok": True}

@app.post("/api/intervention/start")
async def start_intervention(host: FocusHost = Depends(get_host)):
    dialogue = host.start_intervention()
    return {"conversation_id": dialogue.conversation_id, "state": dialogue.state.value}

@app.post("/api/intervention/stop-and-send")
async def stop_and_send(host: FocusHost = Depends(get_host)):
    return {"accepted": host.stop_and_send()}

@app.post("/api/intervention/end")
async def end_intervention(host: FocusHost = Depends(get_host)):
    return {"accepted": host.end_dialogue()}

@app.post("/api/intervention/auto-restart")
async def set_auto_restart(body: AutoRestartRequest, host: FocusHost = Depends(get_host)):
    host.set_auto_restart(body.enabled)
    return {"auto_restart": body.enabled}

# History and metrics

@app.get("/api/sessions")
async def list_sessions(limit: int = 20, db: DatabaseManager = Depends(get_db)):
    return db.get_recent_sessions(limit=limit)

@app.get("/api/sessions/{session_id}/summary")
async def session_summary(session_id: str, metrics: MetricsCollector = Depends(get_metrics)):
    summary = metrics.get_session_summary(session_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return summary

@app.get("/api/sessions/{session_id}/events")
async def session_events(session_id: str, db: DatabaseManager = Depends(get_db)):
    return db.get_distraction_events(session_id)

@app.get("/api/sessions/{session_id}/turns")
async def session_turns(session_id: str, db: DatabaseManager = Depends(get_db)):
    return db.get_conversation_turns(session_id)

@app.get("/api/metrics/daily/{date}")
async def get_daily_metrics(date: str, metrics: MetricsCollector = Depends(get_metrics)):
    """Get metrics for a specific date"""
    try:
        date_obj = datetime.strptime(date, "%Y-%m-%d")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date format")
    return metrics.get_daily_metrics(date_obj)
