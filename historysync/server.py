import time
from typing import Optional
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import PlainTextResponse
from .config import settings
from .models import SyncReport, TestResult
from .orchestrator import SyncOrchestrator
from .state import StateManager

app = FastAPI(title="History Sync")
state_manager: Optional[StateManager] = None
orchestrator: Optional[SyncOrchestrator] = None


def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")


def require_orchestrator() -> SyncOrchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Service starting")
    return orchestrator


@app.get("/healthz")
def healthz():
    if not state_manager:
        return {"status": "starting"}

    s = state_manager.state
    if not s.auto_sync:
        return {"status": "ok"}

    # Lenient: three missed intervals before reporting lag
    age = time.time() - s.last_successful_sync
    if age > s.interval_minutes * 60 * 3 + 60:
        return {"status": "lagging", "last_sync_age": age}
    return {"status": "ok"}


@app.get("/status", dependencies=[Depends(get_token)])
def status():
    if not state_manager or not orchestrator:
        return {"status": "not_ready"}

    s = state_manager.state
    return {
        "configured": orchestrator.is_configured(),
        "mode": orchestrator.config.mode.value if orchestrator.config else None,
        "syncing": orchestrator.is_syncing,
        "local_records": len(orchestrator.history_store.records),
        "last_sync": s.last_successful_sync,
        "last_report": s.last_report.model_dump(mode="json") if s.last_report else None,
        "config": {
            "auto_sync": s.auto_sync,
            "interval_minutes": s.interval_minutes,
        },
    }


@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    if not state_manager:
        return ""

    s = state_manager.state
    lines = [
        f'history_sync_last_success_timestamp {s.last_successful_sync}',
        f'history_sync_runs_total {s.sync_count}',
        f'history_sync_failures_total {s.failure_count}',
        f'history_sync_in_progress {int(bool(orchestrator and orchestrator.is_syncing))}',
    ]
    return "\n".join(lines)


async def _trigger(kind: str, wait: bool) -> SyncReport:
    orch = require_orchestrator()
    callback = state_manager.record if state_manager else None
    op = {"history": orch.sync_history, "settings": orch.sync_settings, "all": orch.sync_all}[kind]
    return await op(background=not wait, callback=callback)


@app.post("/sync/history", dependencies=[Depends(get_token)], response_model=SyncReport)
async def sync_history(wait: bool = False):
    return await _trigger("history", wait)


@app.post("/sync/settings", dependencies=[Depends(get_token)], response_model=SyncReport)
async def sync_settings(wait: bool = False):
    return await _trigger("settings", wait)


@app.post("/sync/all", dependencies=[Depends(get_token)], response_model=SyncReport)
async def sync_all(wait: bool = False):
    return await _trigger("all", wait)


@app.post("/connection/test", dependencies=[Depends(get_token)], response_model=TestResult)
async def connection_test():
    return await require_orchestrator().test_connection()
