from fastapi import FastAPI, File, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
import asyncio
import logging
import os

from app.arbiter import ScanOutcome, get_registry
from app.bulk_import import (
    UnsupportedDocument,
    book_template_csv,
    extract_document,
    screen_existing,
    student_template_csv,
)
from app.models import (
    BookCommitRequest,
    ImportPreview,
    KeyBurstRequest,
    KeyEventRequest,
    OpenSessionRequest,
    StudentCommitRequest,
    TextScanRequest,
)
from app.notify import notify_activity
from app.records import ImportSchema
from app.settings import settings
from app.store import commit_import, init_db, lookup_for

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Library Desk — Scan & Import")

registry = get_registry()


async def _reap_sessions():
    while True:
        await asyncio.sleep(60)
        try:
            registry.reap_idle()
        except Exception as e:
            logger.error(f"Session reaper failed: {e}", exc_info=True)


@app.on_event("startup")
async def startup_event():
    init_db()
    app.state.reaper = asyncio.create_task(_reap_sessions())
    await notify_activity("startup", {"main_path": os.path.abspath(__file__)})


@app.on_event("shutdown")
async def shutdown_event():
    reaper = getattr(app.state, "reaper", None)
    if reaper is not None:
        reaper.cancel()
    registry.close_all()
    await notify_activity("shutdown", {})


def _not_found(session_id: str) -> JSONResponse:
    return JSONResponse({"ok": False, "message": f"Scan session {session_id} is not open"}, status_code=404)


def _handoff(record):
    logger.info(f"Scan handed off: {record.kind}")


@app.get("/")
def index():
    return {"ok": True, "service": "library-desk"}


@app.get("/scan", response_class=HTMLResponse)
def scan():
    return HTMLResponse(SCAN_PAGE.replace("__IDLE_MS__", str(settings.keyboard_idle_timeout_ms)))


@app.get("/scan/health")
def scan_health():
    return JSONResponse(registry.health())


@app.post("/scan/sessions")
def open_session(body: OpenSessionRequest):
    session = registry.open(body.mode, on_accept=_handoff)
    return session.snapshot()


@app.get("/scan/sessions/{session_id}")
def session_state(session_id: str):
    session = registry.get(session_id)
    if session is None:
        return _not_found(session_id)
    return session.snapshot()


@app.delete("/scan/sessions/{session_id}")
def close_session(session_id: str):
    if not registry.close(session_id):
        return _not_found(session_id)
    return {"ok": True}


@app.post("/scan/sessions/{session_id}/keys", response_model=ScanOutcome)
async def scan_key(session_id: str, body: KeyEventRequest):
    session = registry.get(session_id)
    if session is None:
        return _not_found(session_id)
    return await session.on_key(body.key, in_text_input=body.in_text_input)


@app.post("/scan/sessions/{session_id}/keys/burst", response_model=ScanOutcome)
async def scan_key_burst(session_id: str, body: KeyBurstRequest):
    """A whole keyboard-wedge burst buffered and timestamped in the page."""
    session = registry.get(session_id)
    if session is None:
        return _not_found(session_id)
    strokes = [(k.key, k.at_ms) for k in body.keys]
    return await session.on_key_burst(strokes, ended_idle=body.ended_idle, in_text_input=body.in_text_input)


@app.post("/scan/sessions/{session_id}/camera", response_model=ScanOutcome)
async def scan_camera(session_id: str, body: TextScanRequest):
    """A frame decoded in the browser."""
    session = registry.get(session_id)
    if session is None:
        return _not_found(session_id)
    return await session.submit_camera(body.text)


@app.post("/scan/sessions/{session_id}/manual", response_model=ScanOutcome)
async def scan_manual(session_id: str, body: TextScanRequest):
    session = registry.get(session_id)
    if session is None:
        return _not_found(session_id)
    return await session.submit_manual(body.text)


@app.post("/scan/sessions/{session_id}/image", response_model=ScanOutcome)
async def scan_image(session_id: str, file: UploadFile = File(...)):
    session = registry.get(session_id)
    if session is None:
        return _not_found(session_id)
    data = await file.read()
    return await session.submit_image(data)


@app.post("/scan/sessions/{session_id}/camera/start")
async def camera_start(session_id: str):
    """Start decoding from a camera attached to this machine (kiosk desks)."""
    from app.camera import CameraFrameSource

    session = registry.get(session_id)
    if session is None:
        return _not_found(session_id)
    source = CameraFrameSource(settings.camera_device)
    try:
        await asyncio.to_thread(source.open)
    except Exception as e:
        logger.error(f"Camera start failed: {e}", exc_info=True)
        return JSONResponse(
            {"ok": False, "message": "Failed to start camera. Try switching cameras or use manual input."},
            status_code=503,
        )
    session.start_camera(source)
    return session.snapshot()


@app.post("/scan/sessions/{session_id}/camera/stop")
def camera_stop(session_id: str):
    session = registry.get(session_id)
    if session is None:
        return _not_found(session_id)
    session.stop_camera()
    return session.snapshot()


@app.post("/import/{schema}/preview")
async def import_preview(schema: ImportSchema, file: UploadFile = File(...)):
    data = await file.read()
    if len(data) > settings.import_max_bytes:
        return JSONResponse({"ok": False, "message": "File is too large"}, status_code=413)
    try:
        rows = await asyncio.to_thread(extract_document, file.filename or "", data, schema, file.content_type)
    except UnsupportedDocument as e:
        return JSONResponse({"ok": False, "message": str(e)}, status_code=415)

    if not rows:
        noun = "book" if schema == ImportSchema.BOOK else "student"
        return JSONResponse(
            {"ok": False, "message": f"No valid {noun} entries found in {file.filename}"}, status_code=422
        )
    fresh, existing = await asyncio.to_thread(screen_existing, rows, lookup_for(schema))
    logger.info(f"Parsed {file.filename}: {len(fresh)} new, {len(existing)} already exist")
    return ImportPreview(count=len(fresh), rows=fresh, already_exists=existing)


@app.post("/import/book/commit")
async def import_books(body: BookCommitRequest):
    result = await asyncio.to_thread(commit_import, body.rows, ImportSchema.BOOK)
    await notify_activity("import", {"schema": "book", "success": result.success, "failed": result.failed})
    return result


@app.post("/import/student/commit")
async def import_students(body: StudentCommitRequest):
    result = await asyncio.to_thread(commit_import, body.rows, ImportSchema.STUDENT)
    await notify_activity("import", {"schema": "student", "success": result.success, "failed": result.failed})
    return result


@app.get("/import/{schema}/template.csv", response_class=PlainTextResponse)
def import_template(schema: ImportSchema):
    if schema == ImportSchema.BOOK:
        body, name = book_template_csv(), "book-import-template.csv"
    else:
        body, name = student_template_csv(), "students-template.csv"
    return PlainTextResponse(
        body, media_type="text/csv", headers={"Content-Disposition": f'attachment; filename="{name}"'}
    )


SCAN_PAGE = """
<!doctype html>
<html>
<head>
  <meta charset="utf-8"/>
  <meta name="viewport" content="width=device-width, initial-scale=1"/>
  <title>Library Desk — Scan</title>
  <script src="https://unpkg.com/html5-qrcode@2.3.8/html5-qrcode.min.js"></script>
  <style>
    body{font-family:system-ui,-apple-system,Segoe UI,Roboto,Arial;background:#0b0f14;color:#e7edf5;margin:0}
    .wrap{max-width:860px;margin:0 auto;padding:16px}
    .top{display:flex;align-items:center;justify-content:space-between;gap:12px;margin-bottom:14px}
    .title{font-size:20px;font-weight:800}
    .badge{font-size:12px;color:#9fb0c5;background:#111826;border:1px solid #22314a;padding:6px 10px;border-radius:999px;white-space:nowrap}
    .card{background:#0f1623;border:1px solid #1f2b40;border-radius:18px;padding:14px;margin:12px 0}
    label{display:block;font-size:12px;color:#9fb0c5;margin:10px 0 6px}
    textarea,select,button,input{
      width:100%;padding:14px;border-radius:14px;border:1px solid #253553;
      background:#0b1220;color:#e7edf5;font-size:16px;box-sizing:border-box
    }
    textarea{min-height:100px;font-family:ui-monospace,monospace;font-size:14px}
    button{cursor:pointer;font-weight:800}
    .ok{border-color:#1f7a43;background:#0b2a17}
    .bad{border-color:#4b1f25;background:#241216}
    .muted{color:#9fb0c5;font-size:12px;line-height:1.35}
    #reader{width:100%;max-width:420px;margin:0 auto}
  </style>
</head>
<body>
  <div class="wrap">
    <div class="top">
      <div class="title">Universal Scanner</div>
      <div class="badge" id="state">opening…</div>
    </div>

    <div class="card">
      <label>Mode</label>
      <select id="mode" onchange="reopen()">
        <option value="either" selected>Student or book</option>
        <option value="student">Student ID</option>
        <option value="book">Book</option>
      </select>
      <p class="muted">Barcode readers work automatically while focus is outside the text fields — just scan.</p>
    </div>

    <div class="card">
      <div id="reader"></div>
    </div>

    <div class="card">
      <label>Barcode/QR code data (Ctrl+Enter to submit)</label>
      <textarea id="manual" placeholder="Paste or type data here..."></textarea>
      <button type="button" onclick="submitManual()" style="margin-top:10px">Process Data</button>
      <label>Upload image</label>
      <input type="file" id="image" accept="image/*" onchange="submitImage(this)"/>
    </div>

    <div class="card" id="result"><span class="muted">No scan yet</span></div>
  </div>

<script>
  let sessionId = null;
  let camera = null;

  function show(outcome){
    const el = document.getElementById("result");
    if (!outcome || outcome.status === "ignored" || outcome.status === "pending") return;
    el.className = "card " + (outcome.status === "accepted" ? "ok" : "bad");
    const head = outcome.title || (outcome.status === "accepted" ? "Scanned" : outcome.status);
    el.innerText = head + " — " + (outcome.message || "") +
      (outcome.record ? "\\n" + JSON.stringify(outcome.record, null, 2) : "");
  }

  async function api(path, body){
    if (!sessionId) return null;
    const res = await fetch(`/scan/sessions/${sessionId}${path}`, {
      method: "POST", headers: {"Content-Type": "application/json"}, body: JSON.stringify(body)
    });
    const data = await res.json();
    show(data);
    return data;
  }

  async function refreshState(){
    if (!sessionId) return;
    const res = await fetch(`/scan/sessions/${sessionId}`);
    if (res.ok){
      const data = await res.json();
      document.getElementById("state").innerText = data.mode + " · " + data.state;
      if (data.last_outcome) show(data.last_outcome);
    }
  }

  async function reopen(){
    if (sessionId) await fetch(`/scan/sessions/${sessionId}`, {method: "DELETE"});
    const res = await fetch("/scan/sessions", {
      method: "POST", headers: {"Content-Type": "application/json"},
      body: JSON.stringify({mode: document.getElementById("mode").value})
    });
    sessionId = (await res.json()).session_id;
    refreshState();
  }

  function inTextInput(){
    const el = document.activeElement;
    return !!el && (el.tagName === "INPUT" || el.tagName === "TEXTAREA" || el.isContentEditable);
  }

  // keystrokes are buffered here with their own timestamps and posted as one
  // burst; bursts go out one at a time so the server sees them in order
  const IDLE_MS = __IDLE_MS__;
  let burst = [];
  let burstTimer = null;
  let sending = Promise.resolve();

  function sendBurst(endedIdle){
    clearTimeout(burstTimer);
    burstTimer = null;
    if (!burst.length) return;
    const keys = burst;
    burst = [];
    sending = sending.then(() => api("/keys/burst", {keys, ended_idle: endedIdle})).catch(() => {});
  }

  document.addEventListener("keydown", (e) => {
    if (e.key.length !== 1 && e.key !== "Enter") return;
    if (inTextInput()) return;
    e.preventDefault();
    burst.push({key: e.key, at_ms: performance.now()});
    if (e.key === "Enter") {
      sendBurst(false);
    } else {
      clearTimeout(burstTimer);
      burstTimer = setTimeout(() => sendBurst(true), IDLE_MS);
    }
  });

  document.getElementById("manual").addEventListener("keydown", (e) => {
    if (e.key === "Enter" && e.ctrlKey) submitManual();
  });

  async function submitManual(){
    const el = document.getElementById("manual");
    await api("/manual", {text: el.value});
    el.value = "";
  }

  async function submitImage(input){
    const file = input.files && input.files[0];
    if (!file || !sessionId) return;
    const form = new FormData();
    form.append("file", file);
    const res = await fetch(`/scan/sessions/${sessionId}/image`, {method: "POST", body: form});
    show(await res.json());
    input.value = "";
  }

  function startCamera(){
    if (!window.Html5Qrcode) return;
    camera = new Html5Qrcode("reader");
    camera.start({facingMode: "environment"}, {fps: 10, qrbox: 250},
      (text) => api("/camera", {text}),
      () => {}  // no code in this frame
    ).catch(() => { document.getElementById("reader").innerText = "Camera unavailable — use manual input."; });
  }

  window.addEventListener("beforeunload", () => {
    if (camera) camera.stop().catch(() => {});
    if (sessionId) fetch(`/scan/sessions/${sessionId}`, {method: "DELETE", keepalive: true});
  });

  reopen().then(startCamera);
  setInterval(refreshState, 1500);
</script>
</body>
</html>
"""
