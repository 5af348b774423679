"""
Supervisor for local (non-containerized) service processes.

Programs are plain OS processes started with `subprocess` and torn down with
`psutil` (whole process tree, TERM then KILL).  A watcher thread keeps each
program's state current and restarts the ones marked ``autorestart``.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import psutil

from container_config import (
    PROCESS_EXIT_CHECK_INTERVAL,
    PROCESS_EXIT_MAX_WAIT,
    ConfigError,
    NoSuchContainerError,
    StackError,
    StartupError,
    combine_errors,
)

log = logging.getLogger(__name__)

MAX_START_RETRIES = 3


# ---------- Process helpers ------------------------------------------------ #
def ensure_user(cmd: List[str], user: str = "") -> List[str]:
    if user and os.geteuid() == 0:
        return ["sudo", "-E", "-u", user, "--"] + cmd
    return cmd


def terminate_process_tree(pid: int, timeout: float = PROCESS_EXIT_MAX_WAIT, force: bool = False) -> None:
    """TERM (or KILL when *force*) *pid* and all its children; KILL survivors after *timeout*."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    procs = parent.children(recursive=True) + [parent]
    for proc in procs:
        try:
            proc.kill() if force else proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(alive, timeout=timeout)


def _now() -> str: return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


# ---------- Programs ------------------------------------------------------- #
class ProgramState(str, Enum):
    STOPPED  = "stopped"
    STARTING = "starting"
    RUNNING  = "running"
    BACKOFF  = "backoff"
    EXITED   = "exited"
    FATAL    = "fatal"


@dataclass
class Program:
    name:         str
    command:      List[str]
    directory:    str = ""
    environment:  Dict[str, Any] = field(default_factory=dict)
    user:         str = ""
    autostart:    bool = True
    autorestart:  bool = False
    startsecs:    float = 1.0
    stopwaitsecs: float = PROCESS_EXIT_MAX_WAIT

    state:        ProgramState = ProgramState.STOPPED
    pid:          Optional[int] = None
    exit_code:    Optional[int] = None
    restarts:     int = 0
    started_at:   Optional[str] = None

    @classmethod
    def from_dict(cls, doc: Dict[str, Any]) -> "Program":
        command = doc.get("command") or []
        if isinstance(command, str):
            command = shlex.split(command)
        return cls(
            name=doc.get("name") or "",
            command=[str(c) for c in command],
            directory=doc.get("directory") or "",
            environment=dict(doc.get("environment") or {}),
            user=doc.get("user") or "",
            autostart=bool(doc.get("autostart", True)),
            autorestart=bool(doc.get("autorestart", False)),
            startsecs=float(doc.get("startsecs", 1.0)),
            stopwaitsecs=float(doc.get("stopwaitsecs", PROCESS_EXIT_MAX_WAIT)),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name, "command": list(self.command), "state": self.state.value,
            "pid": self.pid, "exit_code": self.exit_code, "restarts": self.restarts,
            "started_at": self.started_at,
        }


class ProcessManager:
    def __init__(self, programs: Optional[List[Program]] = None) -> None:
        self.programs: List[Program] = list(programs or [])
        self._procs: Dict[str, subprocess.Popen] = {}
        self._started: Dict[str, float] = {}
        self._retries: Dict[str, int] = {}
        self._held: set[str] = set()
        self._lock = threading.RLock()
        self._stopping = threading.Event()
        self._watcher: Optional[threading.Thread] = None
        self._did_init = False

    @classmethod
    def from_dict(cls, doc: Optional[Dict[str, Any]]) -> "ProcessManager":
        return cls([Program.from_dict(p) for p in (doc or {}).get("programs") or []])

    # ---------- lifecycle -------------------------------------------------- #
    def initialize(self) -> None:
        if self._did_init:
            return

        seen: set[str] = set()
        for program in self.programs:
            if not program.name:
                raise ConfigError("program: must specify a name")
            if not program.command:
                raise ConfigError(f"program {program.name!r}: must specify a command")
            if program.name in seen:
                raise ConfigError(f"duplicate program name {program.name!r}")
            seen.add(program.name)

        self._did_init = True
        for program in self.programs:
            if program.autostart:
                self.start(program.name)

        self._ensure_watcher()
        log.info("process manager initialized with %d program(s)", len(self.programs))

    def program(self, name: str) -> Program:
        for program in self.programs:
            if program.name == name:
                return program
        raise NoSuchContainerError(name)

    def start(self, name: str) -> None:
        program = self.program(name)
        with self._lock:
            self._held.discard(name)
            if self._did_init:
                self._ensure_watcher()
            if self._alive(name):
                return
            self._spawn(program)

    def stop(self, name: str, force: bool = False) -> None:
        program = self.program(name)
        with self._lock:
            self._held.add(name)
            proc = self._procs.get(name)

        if proc is not None and proc.poll() is None:
            log.info("stopping program %s (pid %d)", name, proc.pid)
            terminate_process_tree(proc.pid, program.stopwaitsecs, force=force)
            proc.wait(timeout=program.stopwaitsecs)

        with self._lock:
            program.state = ProgramState.STOPPED
            program.exit_code = proc.returncode if proc is not None else program.exit_code
            program.pid = None

    def restart(self, name: str) -> None:
        self.stop(name)
        self.start(name)

    def is_running(self, name: str) -> bool:
        self.program(name)
        with self._lock:
            return self._alive(name)

    def stop_all(self, force: bool = False) -> None:
        self._stopping.set()
        errors: List[BaseException] = []
        for program in self.programs:
            try:
                self.stop(program.name, force=force)
            except (StackError, OSError, psutil.Error, subprocess.TimeoutExpired) as exc:
                log.warning("failed to stop program %s: %s", program.name, exc)
                errors.append(exc)

        err = combine_errors(errors)
        if err is not None:
            raise err

    def wait(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while any(self.is_running(p.name) for p in self.programs):
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(PROCESS_EXIT_CHECK_INTERVAL)
        return True

    # ---------- internals -------------------------------------------------- #
    def _alive(self, name: str) -> bool:
        proc = self._procs.get(name)
        return proc is not None and proc.poll() is None

    def _spawn(self, program: Program) -> None:
        env = dict(os.environ)
        env.update({str(k): str(v) for k, v in program.environment.items()})
        program.state = ProgramState.STARTING

        try:
            proc = subprocess.Popen(
                ensure_user(list(program.command), program.user),
                cwd=program.directory or None,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as exc:
            program.state = ProgramState.FATAL
            raise StartupError(f"[{program.name}] cannot start: {exc}") from exc

        self._procs[program.name] = proc
        self._started[program.name] = time.monotonic()
        program.pid = proc.pid
        program.exit_code = None
        program.started_at = _now()
        program.state = ProgramState.RUNNING
        log.info("started program %s (pid %d)", program.name, proc.pid)

        threading.Thread(target=self._relay, args=(program.name, proc),
                         name=f"relay-{program.name}", daemon=True).start()

    def _relay(self, name: str, proc: subprocess.Popen) -> None:
        with proc.stdout:
            for line in proc.stdout:
                line = line.rstrip("\n")
                if line:
                    log.info("[%s] %s", name, line)

    def _ensure_watcher(self) -> None:
        # stop_all() retires the watcher; a later start() brings up a fresh one
        if self._watcher is not None and self._watcher.is_alive() and not self._stopping.is_set():
            return
        self._stopping = threading.Event()
        self._watcher = threading.Thread(target=self._watch, args=(self._stopping,),
                                         name="process-watcher", daemon=True)
        self._watcher.start()

    def _watch(self, stopping: threading.Event) -> None:
        while not stopping.is_set():
            with self._lock:
                for program in self.programs:
                    self._check(program)
            stopping.wait(PROCESS_EXIT_CHECK_INTERVAL)

    def _check(self, program: Program) -> None:
        proc = self._procs.get(program.name)
        if proc is None or program.name in self._held or proc.poll() is None:
            return
        if program.state not in (ProgramState.RUNNING, ProgramState.STARTING):
            return

        program.exit_code = proc.returncode
        program.pid = None
        ran_for = time.monotonic() - self._started.get(program.name, 0.0)
        log.info("program %s exited with %s after %.1fs", program.name, proc.returncode, ran_for)

        if ran_for < program.startsecs:
            retries = self._retries.get(program.name, 0) + 1
            self._retries[program.name] = retries
            if retries > MAX_START_RETRIES:
                program.state = ProgramState.FATAL
                log.error("program %s exited too quickly, giving up", program.name)
                return
            program.state = ProgramState.BACKOFF
        elif not program.autorestart:
            program.state = ProgramState.EXITED
            return
        else:
            self._retries[program.name] = 0

        program.restarts += 1
        try:
            self._spawn(program)
        except StartupError:
            log.exception("restart of program %s failed", program.name)
