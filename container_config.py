"""
Per-workload configuration for stack containers, the error taxonomy shared by
every backend, and the small parsers used to read stack definitions.

A `ContainerConfig` is the declared (and partially observed) state of one
workload.  It is copied into the owning `Container` during stack validation;
the monitor loop writes the observed `running` flag back into that copy.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import humanfriendly

log = logging.getLogger(__name__)

# ---------- Tunables ------------------------------------------------------- #
APP_LOG_BUFFER                  = 1024
DEFAULT_START_WAIT              = 10.0     # seconds
PROCESS_EXIT_MAX_WAIT           = 10.0
PROCESS_EXIT_CHECK_INTERVAL     = 0.125
CONTAINER_INSPECT_TIMEOUT       = 3.0
DEFAULT_STACK_START_TIMEOUT     = 30.0
MONITOR_INTERVAL                = 1.0
RESTART_CHECK_INTERVAL          = 0.25
DEFAULT_CONTAINER_MEMORY        = "512m"
DEFAULT_CONTAINER_SHARED_MEMORY = "256m"
DEFAULT_CONTAINER_TARGET_ADDR   = "localhost"
DEFAULT_CONTAINER_RUNTIME       = "docker"
DEFAULT_CONTAINER_PORT_TRANSPORT = "tcp"

OVERFLOW_BLOCK       = "block"
OVERFLOW_DROP_OLDEST = "drop_oldest"
OVERFLOW_POLICIES    = (OVERFLOW_BLOCK, OVERFLOW_DROP_OLDEST)


# ---------- Errors --------------------------------------------------------- #
class StackError(Exception):
    """Base class for everything the orchestrator raises on purpose."""


class ConfigError(StackError):
    """Invalid stack or container definition; never retried."""


class StartupError(StackError):
    """A container failed to start or did not stay running."""


class NoSuchContainerError(StackError):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"no such container {self.name!r}"


class MultiError(StackError):
    """Several independent failures reported together (e.g. during teardown)."""

    def __init__(self, errors: List[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors))


def combine_errors(errors: List[BaseException]) -> Optional[BaseException]:
    if not errors:
        return None
    if len(errors) == 1:
        return errors[0]
    return MultiError(errors)


# ---------- Parsers -------------------------------------------------------- #
def parse_bytes(value: str) -> int:
    """Human byte sizes (``512m``, ``1GiB``) → bytes; `ValueError` when unparseable."""
    try:
        return int(humanfriendly.parse_size(str(value)))
    except humanfriendly.InvalidSize as exc:
        raise ValueError(str(exc)) from exc


def parse_duration(value: Any, default: float) -> float:
    """Seconds from ``30s`` / ``2m`` / plain numbers; *default* when unusable."""
    if value in (None, ""):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(humanfriendly.parse_timespan(str(value)))
    except humanfriendly.InvalidTimespan:
        log.warning("invalid duration %r, using %ss", value, default)
        return default


def parse_engine(engine: str) -> Tuple[str, str]:
    """
    Split ``family[+variant]://argument`` into ``(family, "variant://argument")``.

    ``docker`` and ``docker://`` are equivalent; the variant defaults to
    ``default``.
    """
    engine = (engine or "").strip()
    if "://" not in engine:
        engine += "://"

    scheme, _, rest = engine.partition("://")
    family, _, variant = scheme.partition("+")
    family = family.lower()

    if not family:
        raise ConfigError(f"invalid container engine {engine!r}")

    return family, f"{variant or 'default'}://{rest}"


def split_host_port(addr: str) -> Tuple[str, str]:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0 or addr[end + 1:end + 2] != ":":
            raise ValueError(f"missing port in address {addr!r}")
        return addr[1:end], addr[end + 2:]

    if addr.count(":") != 1:
        raise ValueError(f"missing port in address {addr!r}")

    host, _, port = addr.partition(":")
    return host, port


def join_host_port(host: str, port: Any) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


# ---------- ContainerConfig ------------------------------------------------ #
@dataclass
class ContainerConfig:
    engine:           str = ""
    name:             str = ""
    hostname:         str = ""
    namespace:        str = ""
    user:             str = ""
    cmd:              List[str] = field(default_factory=list)
    image:            str = ""
    memory:           str = ""
    shared_memory:    str = ""
    ports:            List[str] = field(default_factory=list)
    volumes:          List[str] = field(default_factory=list)
    labels:           Dict[str, str] = field(default_factory=dict)
    env:              Dict[str, Any] = field(default_factory=dict)
    privileged:       bool = False
    working_dir:      str = ""
    target_addr:      str = ""
    running:          bool = False
    restart_interval: str = ""
    log_overflow:     str = OVERFLOW_BLOCK
    _validated:       bool = field(default=False, init=False, repr=False, compare=False)

    @classmethod
    def from_dict(cls, doc: Dict[str, Any]) -> "ContainerConfig":
        doc = dict(doc or {})
        cmd = doc.get("cmd") or []
        if isinstance(cmd, str):
            cmd = shlex.split(cmd)

        cfg = cls(
            engine=doc.get("engine") or "",
            name=doc.get("name") or "",
            user=doc.get("user") or "",
            cmd=[str(c) for c in cmd],
            image=doc.get("image") or "",
            memory=str(doc.get("memory") or ""),
            shared_memory=str(doc.get("shm") or ""),
            volumes=list(doc.get("volumes") or []),
            labels={str(k): str(v) for k, v in (doc.get("labels") or {}).items()},
            env=dict(doc.get("env") or {}),
            privileged=bool(doc.get("privileged", False)),
            working_dir=doc.get("pwd") or "",
            target_addr=doc.get("address") or "",
            restart_interval=str(doc.get("interval") or ""),
            log_overflow=doc.get("log_overflow") or OVERFLOW_BLOCK,
        )

        for port in doc.get("ports") or []:
            if isinstance(port, int):
                cfg.add_port(port, port)
            else:
                cfg.ports.append(str(port))

        return cfg

    def validate(self, require_image: bool = True, require_command: bool = False) -> None:
        if self._validated:
            return

        if not self.name:
            raise ConfigError("container config: must specify a name")
        if require_image and not self.image:
            raise ConfigError("container config: must specify a container image")
        if require_command and not self.cmd:
            raise ConfigError("container config: must provide a command to run inside the container")
        if self.log_overflow not in OVERFLOW_POLICIES:
            raise ConfigError(f"container config: unknown log overflow policy {self.log_overflow!r}")

        self._validated = True

    def set_target_port(self, port: int) -> str:
        try:
            host, _ = split_host_port(self.target_addr)
        except ValueError:
            return self.target_addr     # address not known yet

        self.target_addr = join_host_port(host, port)
        return self.target_addr

    def add_port(self, outer: int, inner: int, proto: str = "") -> None:
        self.ports.append(f"{outer}:{inner}/{proto or DEFAULT_CONTAINER_PORT_TRANSPORT}")

    def port_mappings(self) -> List[Tuple[Optional[int], int, str]]:
        """``"8080:80/tcp"`` → ``(8080, 80, "tcp")``; a bare ``"80"`` has no host port."""
        out: List[Tuple[Optional[int], int, str]] = []
        for spec in self.ports:
            mapping, _, proto = spec.partition("/")
            outer, sep, inner = mapping.rpartition(":")
            if not sep:
                outer, inner = "", mapping
            try:
                out.append((int(outer) if outer else None, int(inner),
                            (proto or DEFAULT_CONTAINER_PORT_TRANSPORT).lower()))
            except ValueError:
                raise ConfigError(f"container config: invalid port {spec!r}") from None
        return out

    def env_list(self) -> List[str]:
        return [f"{k}={v}" for k, v in self.env.items()]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "engine": self.engine, "name": self.name, "user": self.user,
            "cmd": list(self.cmd), "image": self.image, "memory": self.memory,
            "privileged": self.privileged, "pwd": self.working_dir,
            "address": self.target_addr, "env": dict(self.env),
            "ports": list(self.ports), "running": self.running,
            "interval": self.restart_interval,
        }
