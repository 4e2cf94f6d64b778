import asyncio
import os
import time
from collections import defaultdict
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from .bookmarks import make_bookmark
from .capacity import free_space_gb
from .config import settings
from .errors import NoVolumeSelected, ResolveError
from .logs import structured_log
from .orchestrator import WipeOrchestrator
from .resolver import PRIVACY_PANE_URL, has_full_disk_access
from .storage import BookmarkStore, PreferenceStore

app = FastAPI(title="PurgePoint API", description="Free-space overwrite service", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

bookmark_store = BookmarkStore(settings.db_path)
preferences = PreferenceStore(settings.db_path, {
    "use_secure_erase": settings.use_secure_erase,
    "leave_safety_buffer": settings.leave_safety_buffer,
    "test_mode": settings.test_mode,
})
orchestrator = WipeOrchestrator(settings, preferences=preferences)

rate_history = defaultdict(list)
RATE_WINDOW_SEC = 60


class VolumeSelection(BaseModel):
    paths: List[str]


class PreferencesUpdate(BaseModel):
    use_secure_erase: Optional[bool] = None
    leave_safety_buffer: Optional[bool] = None
    test_mode: Optional[bool] = None


# ----------------------------------------------------------------------------
# Auth & rate limiting
# ----------------------------------------------------------------------------
def api_key_auth(request: Request) -> bool:
    """Optional API key auth. If settings.api_key unset -> open mode."""
    if not settings.api_key:
        return True
    supplied = request.headers.get("x-api-key") or request.query_params.get("api_key")
    if supplied == settings.api_key:
        return True
    raise HTTPException(status_code=401, detail="Invalid or missing API key")


def rate_limit(request: Request):
    limit = settings.rate_limit_per_minute
    if not limit or request is None:
        return
    ip = request.client.host if request.client else "anon"
    # progress polling is frequent while a wipe runs
    if request.url.path == '/progress':
        limit = int(limit * 2)
    now = time.time()
    window_start = now - RATE_WINDOW_SEC
    hist = rate_history[ip]
    while hist and hist[0] < window_start:
        hist.pop(0)
    if len(hist) >= limit:
        raise HTTPException(status_code=429, detail="Rate limit exceeded", headers={"Retry-After": "5"})
    hist.append(now)


# ----------------------------------------------------------------------------
# Volume selection
# ----------------------------------------------------------------------------
@app.get("/volumes")
def list_volumes(_: bool = Depends(api_key_auth), request: Request = None):
    rate_limit(request)
    out = []
    for ref in bookmark_store.references():
        entry = {"id": ref.id, "display_path": ref.cached_display_path, "resolved": False}
        try:
            vol = orchestrator.resolver.resolve(ref)
        except ResolveError as e:
            entry["error"] = e.reason
        else:
            vol.release()
            entry.update({
                "resolved": True,
                "path": vol.path,
                "display_name": vol.display_name,
                "access_granted": vol.access_granted,
                "free_space": free_space_gb(vol.path),
            })
        out.append(entry)
    return out


@app.post("/volumes")
def select_volumes(sel: VolumeSelection, _: bool = Depends(api_key_auth), request: Request = None):
    """Replace the stored selection with the given directories."""
    rate_limit(request)
    paths = [os.path.abspath(p) for p in sel.paths if p]
    if not paths:
        raise HTTPException(status_code=400, detail="No volume selected")
    missing = [p for p in paths if not os.path.isdir(p)]
    if missing:
        raise HTTPException(status_code=404, detail=f"Not a directory: {', '.join(missing)}")
    bookmark_store.clear()
    bookmark_store.save({p: make_bookmark(p) for p in paths}, {p: p for p in paths})
    return {"status": "saved", "volumes": paths}


@app.delete("/volumes")
def clear_volumes(_: bool = Depends(api_key_auth), request: Request = None):
    rate_limit(request)
    bookmark_store.clear()
    return {"status": "cleared"}


@app.get("/free_space")
def free_space(path: str, _: bool = Depends(api_key_auth), request: Request = None):
    rate_limit(request)
    return {"path": path, "free_space": free_space_gb(path)}


# ----------------------------------------------------------------------------
# Preferences
# ----------------------------------------------------------------------------
@app.get('/settings')
def settings_info(_: bool = Depends(api_key_auth), request: Request = None):
    rate_limit(request)
    fda = has_full_disk_access(settings)
    return {
        'preferences': preferences.all(),
        'full_disk_access': fda,
        'privacy_pane_url': None if fda else PRIVACY_PANE_URL,
        'config': {
            'dd_path': settings.dd_path,
            'chunk_mb': settings.chunk_mb,
            'direct_io': settings.direct_io,
            'safety_buffer_mb': settings.safety_buffer_mb,
            'data_volume_path': settings.data_volume_path,
            'rate_limit_per_minute': settings.rate_limit_per_minute,
        },
    }


@app.patch('/settings')
def update_settings(upd: PreferencesUpdate, _: bool = Depends(api_key_auth), request: Request = None):
    rate_limit(request)
    for key, value in upd.model_dump(exclude_none=True).items():
        preferences.set(key, value)
    return {'preferences': preferences.all()}


# ----------------------------------------------------------------------------
# Wipe control & progress
# ----------------------------------------------------------------------------
@app.post("/wipe")
def start_wipe(_: bool = Depends(api_key_auth), request: Request = None):
    rate_limit(request)
    try:
        started = orchestrator.start(bookmark_store.references())
    except NoVolumeSelected as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not started:
        raise HTTPException(status_code=409, detail="A wipe is already running")
    return {"status": "started", "targets": orchestrator.snapshot(include_log=False)["targets"]}


@app.post('/cancel')
def cancel(_: bool = Depends(api_key_auth), request: Request = None):
    rate_limit(request)
    if not orchestrator.cancel():
        raise HTTPException(status_code=409, detail='No wipe in progress')
    return {"status": "cancelled"}


@app.get("/progress")
def progress(_: bool = Depends(api_key_auth), request: Request = None):
    rate_limit(request)
    return orchestrator.snapshot(include_log=False)


@app.get("/log")
def last_log(_: bool = Depends(api_key_auth), request: Request = None):
    rate_limit(request)
    return {"log": orchestrator.state.log}


@app.get("/logs_tail")
def logs_tail(since: int = 0, limit: int = Query(200, ge=1, le=1000), _: bool = Depends(api_key_auth), request: Request = None):
    """Fallback to fetch recent log lines if the WebSocket is not available.
    since: absolute index of the first wanted line.
    Returns: { start, end, lines }
    """
    rate_limit(request)
    lines, end = orchestrator.state.tail(max(0, since), limit)
    return {"start": end - len(lines), "end": end, "lines": lines}


@app.websocket("/logs")
async def logs_ws(websocket: WebSocket):
    await websocket.accept()
    if settings.api_key and websocket.query_params.get("api_key") != settings.api_key:
        await websocket.close(code=1008)
        return
    last_idx = 0
    try:
        while True:
            lines, last_idx = orchestrator.state.tail(last_idx, 500)
            for line in lines:
                await websocket.send_text(line)
            if not lines:
                await asyncio.sleep(0.5)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        structured_log("log_stream_error", error=str(e))


@app.get("/", include_in_schema=False)
def root():
    return HTMLResponse("""<!DOCTYPE html><html><head><title>PurgePoint API</title></head>
    <body style='font-family:Arial;padding:24px;'>
    <h1>PurgePoint API</h1>
    <p>Free-space overwrite service is running.</p>
    <ul>
        <li><a href='/docs'>Interactive API Docs</a></li>
        <li><a href='/volumes'>Selected volumes</a></li>
        <li><a href='/progress'>Progress</a></li>
    </ul>
    </body></html>""")
