"""
Stack orchestrator: a named set of containers started, monitored and torn
down as one unit.

    stack = load_stack("stack.yaml")
    stack.validate()                   # build containers, fail fast on bad config
    threading.Thread(target=stack.run).start()
    ...
    stack.stop()                       # from any other thread

`run()` blocks for the lifetime of the stack: it starts every container
concurrently, waits for each to report running with an address, then polls
liveness once per `MONITOR_INTERVAL` until `stop()` is requested, at which
point every container is stopped and the combined teardown error (if any) is
handed to the caller of `stop()`.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

from ruamel.yaml import YAML

import container_config as cc
from container_adapter import Container
from container_config import (
    ConfigError,
    ContainerConfig,
    NoSuchContainerError,
    StackError,
    StartupError,
    combine_errors,
    parse_duration,
    parse_engine,
)
from container_docker import DockerContainer
from container_kubernetes import KubernetesContainer
from container_script import ScriptContainer

log = logging.getLogger(__name__)

# ---------- Engine registry ------------------------------------------------ #
ENGINES: Dict[str, Type[Container]] = {
    "docker":     DockerContainer,
    "kubernetes": KubernetesContainer,
    "shell":      ScriptContainer,
    "script":     ScriptContainer,
}


def register_engine(name: str, cls: Type[Container]) -> None:
    ENGINES[name.lower()] = cls


class StackState(str, Enum):
    UNVALIDATED = "unvalidated"
    VALIDATED   = "validated"
    RUNNING     = "running"
    STOPPING    = "stopping"
    STOPPED     = "stopped"


class Stack:
    def __init__(
        self,
        id: str = "",
        name: str = "",
        engine: str = "",
        scripts: Optional[Dict[str, str]] = None,
        prestart_containers: Optional[List[ContainerConfig]] = None,
        containers: Optional[List[ContainerConfig]] = None,
        start_timeout: str = "",
    ) -> None:
        self.id                  = id
        self.name                = name
        self.engine              = engine
        self.scripts             = dict(scripts or {})
        self.prestart_containers = list(prestart_containers or [])
        self.containers          = list(containers or [])
        self.start_timeout       = start_timeout

        self._containers: Dict[str, Container] = {}
        self._prestart: Dict[str, Container] = {}
        self._states: Dict[str, bool] = {}
        self._addrs: Dict[str, str] = {}
        self._state = StackState.UNVALIDATED
        self._validated = False
        self._begun = False
        self._lock = threading.RLock()
        self._stop_requested = threading.Event()
        self._stopped = threading.Event()
        self._stop_error: Optional[BaseException] = None

    @classmethod
    def from_dict(cls, doc: Optional[Dict[str, Any]]) -> "Stack":
        doc = dict(doc or {})
        return cls(
            id=str(doc.get("id") or ""),
            name=doc.get("name") or "",
            engine=doc.get("engine") or "",
            scripts={str(k): str(v) for k, v in (doc.get("scripts") or {}).items()},
            prestart_containers=[ContainerConfig.from_dict(c) for c in doc.get("prestart") or []],
            containers=[ContainerConfig.from_dict(c) for c in doc.get("containers") or []],
            start_timeout=str(doc.get("timeout") or ""),
        )

    def __str__(self) -> str:
        return self.name or self.id

    # ---------- validation ------------------------------------------------- #
    def validate(self) -> None:
        with self._lock:
            if self._validated:
                return

            if not self.id:
                self.id = uuid.uuid4().hex

            prestart = self._build(self.prestart_containers, "prestart", set())
            containers = self._build(self.containers, "container", set(prestart))

            self._prestart = prestart
            self._containers = containers
            self._validated = True
            self._state = StackState.VALIDATED
            log.debug("stack %s validated with %d container(s)", self.id, len(containers))

    def _build(self, configs: List[ContainerConfig], kind: str, taken: set[str]) -> Dict[str, Container]:
        built: Dict[str, Container] = {}

        for i, config in enumerate(configs):
            name = config.name or f"{self.id}-{kind}-{i}"
            if name in built or name in taken:
                raise ConfigError(f"duplicate container name {name!r}")

            family, argument = parse_engine(config.engine or self.engine or cc.DEFAULT_CONTAINER_RUNTIME)
            log.debug("container %s engine=%r args=%r", name, family, argument)

            engine_cls = ENGINES.get(family)
            if engine_cls is None:
                raise ConfigError(f"invalid container engine {family!r}")

            container = engine_cls(argument, stack=self)
            container.config = replace(config, name=name)
            container.validate()
            built[name] = container

        return built

    def script(self, id: str) -> str:
        tpl = (self.scripts.get(id) or "").strip()
        if not tpl:
            raise ConfigError(f"unknown script {id!r}")
        return tpl

    # ---------- run / stop ------------------------------------------------- #
    def begin(self) -> None:
        """
        Move the stack to RUNNING ahead of `run()`.

        Call this on the thread that hands `run()` to a worker thread: a
        `stop()` issued after `begin()` returns is then always seen by the
        run, however late the worker gets scheduled.
        """
        self.validate()
        with self._lock:
            if self._state in (StackState.RUNNING, StackState.STOPPING):
                raise StackError(f"stack {self.id} is already running")
            self._states = {}
            self._addrs = {}
            self._stop_error = None
            self._stop_requested.clear()
            self._stopped.clear()
            self._state = StackState.RUNNING
            self._begun = True

    def run(self, interrupt: Optional[threading.Event] = None) -> None:
        """Start all containers and block until `stop()` is called."""
        with self._lock:
            begun, self._begun = self._begun, False
        if not begun:
            self.begin()
            with self._lock:
                self._begun = False
        interrupt = interrupt or threading.Event()

        if self._stop_requested.is_set():
            log.info("stack %r stopped before it started", self.id)
            err = self._teardown()
            if err is not None:
                raise err
            return

        log.info("running stack %r", self.id)
        timeout = parse_duration(self.start_timeout, cc.DEFAULT_STACK_START_TIMEOUT)

        try:
            self._run_prestart(interrupt, timeout)
            self._start_all(interrupt, timeout)
        except BaseException:
            with self._lock:
                self._state = StackState.VALIDATED
            if self._stop_requested.is_set():
                self._teardown()
            raise

        log.info("containers started")

        while not self._stop_requested.is_set():
            self._refresh()
            self._stop_requested.wait(cc.MONITOR_INTERVAL)

        err = self._teardown()
        if err is not None:
            raise err

    def _run_prestart(self, interrupt: threading.Event, timeout: float) -> None:
        for name, container in self._prestart.items():
            log.info("[%s] running prestart container", name)
            container.start()

            deadline = time.monotonic() + timeout
            while container.is_running():
                if interrupt.is_set() or self._stop_requested.is_set():
                    container.stop()
                    raise StartupError(f"[{container}] prestart interrupted")
                if time.monotonic() >= deadline:
                    container.stop()
                    raise StartupError(f"[{container}] prestart container did not exit within {timeout}s")
                time.sleep(cc.PROCESS_EXIT_CHECK_INTERVAL)

            container.stop()

    def _start_all(self, interrupt: threading.Event, timeout: float) -> None:
        errors: List[BaseException] = []
        threads = []

        for name, container in self._containers.items():
            t = threading.Thread(target=self._start_one, args=(name, container, interrupt, errors),
                                 name=f"start-{name}", daemon=True)
            t.start()
            threads.append(t)

        deadline = time.monotonic() + timeout
        for t in threads:
            t.join(max(0.0, deadline - time.monotonic()))

        if any(t.is_alive() for t in threads):
            raise StartupError("container engine did not respond")

        err = combine_errors(errors)
        if err is not None:
            raise err

    def _start_one(self, name: str, container: Container, interrupt: threading.Event,
                   errors: List[BaseException]) -> None:
        try:
            container.start()
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)
            return

        deadline = time.monotonic() + cc.DEFAULT_START_WAIT
        while time.monotonic() < deadline:
            if interrupt.is_set() or self._stop_requested.is_set():
                try:
                    container.stop()
                    errors.append(StartupError(f"[{container}] container startup interrupted"))
                except Exception as exc:  # noqa: BLE001
                    errors.append(exc)
                return

            if container.is_running():
                addr = container.address()
                if addr:
                    log.debug("[%s] container started at %s", container, addr)
                    with self._lock:
                        self._states[name] = True
                        self._addrs[name] = addr
                    container.config.running = True
                    return

            interrupt.wait(cc.PROCESS_EXIT_CHECK_INTERVAL)

        errors.append(StartupError(f"[{container}] container did not stay running"))

    def _refresh(self) -> None:
        for name, container in self._containers.items():
            running = container.is_running()
            container.config.running = running
            addr = container.address() if running else ""

            with self._lock:
                if self._states.get(name) and not running:
                    log.warning("[%s] container is no longer running", name)
                self._states[name] = running
                if addr:
                    self._addrs[name] = addr

    def _teardown(self) -> Optional[BaseException]:
        with self._lock:
            self._state = StackState.STOPPING

        errors: List[BaseException] = []
        for name, container in self._containers.items():
            with self._lock:
                self._states[name] = False
            container.config.running = False
            try:
                container.stop()
            except Exception as exc:  # noqa: BLE001
                log.warning("[%s] stop failed: %s", name, exc)
                errors.append(exc)

        err = combine_errors(errors)
        with self._lock:
            self._stop_error = err
            self._state = StackState.STOPPED
        self._stopped.set()
        log.info("stack %r stopped", self.id)
        return err

    def stop(self, timeout: Optional[float] = None) -> None:
        """Request shutdown and block until every container has been stopped."""
        with self._lock:
            active = self._state in (StackState.RUNNING, StackState.STOPPING)
            self._stop_requested.set()

        if active:
            if not self._stopped.wait(timeout):
                raise StackError(f"stack {self.id} did not stop within {timeout}s")
            err = self._stop_error
        else:
            err = self._teardown()

        if err is not None:
            raise err

    # ---------- queries ---------------------------------------------------- #
    @property
    def state(self) -> StackState:
        with self._lock:
            return self._state

    @property
    def states(self) -> Dict[str, bool]:
        with self._lock:
            return dict(self._states)

    @property
    def addresses(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._addrs)

    def has_running_containers(self) -> bool:
        with self._lock:
            return any(self._states.values())

    def container(self, name: str) -> Optional[Container]:
        return self._containers.get(name)

    def container_names(self) -> List[str]:
        return list(self._containers)

    def _get(self, name: str) -> Container:
        container = self._containers.get(name)
        if container is None:
            raise NoSuchContainerError(name)
        return container

    def describe(self) -> Dict[str, Any]:
        states, addrs = self.states, self.addresses
        return {
            "id": self.id,
            "name": self.name,
            "engine": self.engine,
            "state": self.state.value,
            "containers": [
                {"name": name, "running": states.get(name, False), "address": addrs.get(name, "")}
                for name in self._containers
            ],
        }

    # ---------- single-container operations -------------------------------- #
    def start_container(self, name: str) -> None:
        self._get(name).start()

    def stop_container(self, name: str) -> None:
        self._get(name).stop()

    def restart_container(self, name: str) -> None:
        container = self._get(name)
        try:
            container.stop()
        except Exception as exc:  # noqa: BLE001
            log.warning("[%s] stop before restart failed: %s", name, exc)

        self.wait_for_container_stop(name)
        container.start()

    def wait_for_container_stop(self, name: str, timeout: Optional[float] = None) -> bool:
        container = self._containers.get(name)
        if container is None:
            return False

        deadline = None if timeout is None else time.monotonic() + timeout
        while container.is_running():
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(cc.RESTART_CHECK_INTERVAL)
        return True

    def wait_for_all_to_stop(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.has_running_containers():
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.1)
        return True


def load_stack(path: str | Path) -> Stack:
    doc = YAML(typ="safe").load(Path(path).read_text())
    return Stack.from_dict(doc)
