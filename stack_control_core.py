# stack_control_core.py  (v2.0 ‑ container stacks + local services)
from __future__ import annotations

import importlib, logging, os, signal, sys, threading, time
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil, uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from ruamel.yaml import YAML

from container_config import APP_LOG_BUFFER, NoSuchContainerError, StackError
from container_stack import Stack, load_stack, register_engine
from process_manager import ProcessManager

# ---------- Logging (UTC) -------------------------------------------------- #
logging.Formatter.converter = time.gmtime          # type: ignore[attr-defined]
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)sZ %(levelname)s %(name)s — %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
log = logging.getLogger("stack_control_core")

# ---------- Load YAML configuration --------------------------------------- #
CFG: Dict[str, Any] = YAML(typ="safe").load(
    Path(os.getenv("STACK_CONFIG_FILE", "stack.yaml")).read_text()) or {}

AUTOSTART = bool(CFG.get("autostart", True))
SERVER    = CFG.get("server") or {}

# ---------- Extra engines (dynamic import) --------------------------------- #
for engine_name, dotted in (CFG.get("engines") or {}).items():
    modname, clsname = dotted.rsplit(".", 1)
    try:
        register_engine(engine_name, getattr(importlib.import_module(modname), clsname))
    except Exception as exc:  # noqa: BLE001
        log.critical("Cannot import engine %s=%s: %s", engine_name, dotted, exc)
        sys.exit(1)

# ---------- Stack + services ----------------------------------------------- #
try:
    stack: Stack = load_stack(CFG["stack_file"]) if CFG.get("stack_file") else Stack.from_dict(CFG.get("stack"))
    stack.validate()
except StackError as exc:
    log.critical("Invalid stack definition: %s", exc)
    sys.exit(1)

services = ProcessManager.from_dict(CFG.get("services"))
interrupt = threading.Event()

# ---------- Runtime state -------------------------------------------------- #
state: Dict[str, Optional[str]] = {"last_error": None}

# ---------- Helpers -------------------------------------------------------- #
def _now() -> str: return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")

def _thread(fn, *args):  # fire‑and‑forget helper
    t = threading.Thread(target=fn, args=args, daemon=True); t.start(); return t

def _container(name: str):
    c = stack.container(name)
    if c is None: raise HTTPException(404, f"no such container {name!r}")
    return c

# ---------- Lifecycle glue ------------------------------------------------- #
def _run_stack():
    try:
        stack.run(interrupt)
    except Exception as exc:
        log.exception("Stack run failed")
        state["last_error"] = str(exc)

def _launch():
    stack.begin()                       # RUNNING before the worker exists; raises if already running
    interrupt.clear(); state["last_error"] = None
    _thread(_run_stack)

def _stop_stack():
    try:
        stack.stop()
    except Exception as exc:
        log.exception("Stack stop failed"); state["last_error"] = str(exc)

def _stop_services(force: bool = False):
    try:
        services.stop_all(force=force)
    except Exception:
        log.exception("Service stop failed")

def _shutdown():
    interrupt.set()
    _stop_stack(); _stop_services()

# ---------- FastAPI App ---------------------------------------------------- #
@asynccontextmanager
async def lifespan(_app: FastAPI):
    services.initialize()
    if AUTOSTART: _launch()
    yield
    _shutdown()

app = FastAPI(title="Stack Control Core", version="2.0", lifespan=lifespan)

class ContainerInfo(BaseModel):
    name: str
    id: str
    engine: str
    image: str
    running: bool
    address: str
    config: Dict[str, Any] = {}

class TailResponse(BaseModel):
    container: str
    lines: List[Dict[str, Any]]
    closed: bool

class StopBody(BaseModel): force: Optional[bool] = False

ACTIONS = ("start", "stop", "restart")

def _apply(name: str, action: str):
    if action == "start":   stack.start_container(name)
    elif action == "stop":  stack.stop_container(name)
    else:                   stack.restart_container(name)

# ---------- API endpoints -------------------------------------------------- #
@app.get("/api/health")
async def health():
    return {"status": "healthy", "stack_status": stack.state.value, "last_error": state["last_error"]}

@app.get("/api/stack")
async def api_stack(): return stack.describe()

@app.post("/api/stack/run")
async def api_stack_run():
    try: _launch()
    except StackError: raise HTTPException(409, "stack already running") from None
    return {"message": "run initiated"}

@app.delete("/api/stack", status_code=202)
async def api_stack_delete(body: Optional[StopBody] = None):
    force = bool(body and body.force)
    _thread(_stop_stack); _thread(_stop_services, force)
    return {"message": "stop initiated"}

@app.get("/api/containers", response_model=List[ContainerInfo])
def api_containers():
    return [ContainerInfo(**stack.container(n).describe()) for n in stack.container_names()]

@app.get("/api/containers/{name}", response_model=ContainerInfo)
def api_container(name: str):
    c = _container(name)
    return ContainerInfo(**c.describe(), config=c.config.as_dict())

@app.get("/api/containers/{name}/tail", response_model=TailResponse)
async def api_tail(name: str, lines: int = 1):
    buf = _container(name).tail()
    got = buf.drain(max(0, min(lines, APP_LOG_BUFFER)))
    return TailResponse(container=name, lines=[l.as_dict() for l in got], closed=buf.closed)

@app.post("/api/containers/{action}")
def api_all_containers(action: str):
    if action not in ACTIONS: raise HTTPException(400, f"no such action {action!r}")
    errors = {}
    for name in stack.container_names():
        try: _apply(name, action)
        except Exception as exc:
            log.exception("%s %s failed", action, name); errors[name] = str(exc)
    if errors: raise HTTPException(500, errors)
    return {"message": f"{action} applied", "containers": stack.container_names()}

@app.post("/api/containers/{name}/{action}")
def api_container_action(name: str, action: str):
    if action not in ACTIONS: raise HTTPException(400, f"no such action {action!r}")
    try:
        _apply(name, action)
    except NoSuchContainerError as exc:
        raise HTTPException(404, str(exc)) from None
    except Exception as exc:
        log.exception("%s %s failed", action, name)
        raise HTTPException(500, str(exc))
    return {"message": f"{action} applied", "container": name}

@app.get("/api/services")
async def api_services(): return [p.as_dict() for p in services.programs]

@app.post("/api/services/{name}/{action}")
def api_service_action(name: str, action: str):
    if action not in ACTIONS: raise HTTPException(400, f"no such action {action!r}")
    try:
        getattr(services, action)(name)
    except NoSuchContainerError:
        raise HTTPException(404, f"no such program {name!r}") from None
    except Exception as exc:
        log.exception("%s %s failed", action, name)
        raise HTTPException(500, str(exc))
    return services.program(name).as_dict()

@app.get("/api/metrics")
def api_metrics():
    cpu = psutil.cpu_percent()
    mem = psutil.virtual_memory()
    net = psutil.net_io_counters()
    return JSONResponse({
        "timestamp": _now(),
        "stack_status": stack.state.value,
        "containers": stack.states,
        "services": {p.name: p.state.value for p in services.programs},
        "network": dict(bytes_sent=net.bytes_sent, bytes_recv=net.bytes_recv,
                        packets_sent=net.packets_sent, packets_recv=net.packets_recv),
        "system": dict(cpu_percent=round(cpu,1), memory_percent=round(mem.percent,1),
                       memory_available_mb=round(mem.available/1_048_576,2),
                       memory_used_mb=round(mem.used/1_048_576,2)),
    })

@app.get("/metrics")
def prom():
    mem, cpu = psutil.virtual_memory(), psutil.cpu_percent()
    out = [
        "# HELP host_cpu_percent CPU usage %", f"host_cpu_percent {cpu}",
        "# HELP host_memory_percent Mem usage %", f"host_memory_percent {mem.percent}",
        "# HELP host_memory_used_bytes Used bytes", f"host_memory_used_bytes {mem.used}",
        "# HELP stack_container_running 1 if the container was last observed running",
    ]
    for name, running in sorted(stack.states.items()):
        out.append(f'stack_container_running{{stack="{stack.id}",container="{name}"}} {int(running)}')
    return Response("\n".join(out)+"\n", media_type="text/plain; version=0.0.4")

# ---------- Graceful shutdown --------------------------------------------- #
def _sig(_s, _f):
    log.info("signal received, shutting down")
    _shutdown()
    sys.exit(0)

signal.signal(signal.SIGTERM, _sig); signal.signal(signal.SIGINT, _sig)

if __name__ == "__main__":
    uvicorn.run("stack_control_core:app", host=SERVER.get("host", "0.0.0.0"),
                port=int(SERVER.get("port", 8080)), loop="uvloop")
