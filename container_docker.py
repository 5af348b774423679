from __future__ import annotations

import logging
import re
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

import docker
from docker.errors import APIError, DockerException, NotFound
from requests.exceptions import RequestException

from container_adapter import Container, LogBuffer
from container_config import (
    CONTAINER_INSPECT_TIMEOUT,
    DEFAULT_CONTAINER_MEMORY,
    DEFAULT_CONTAINER_SHARED_MEMORY,
    DEFAULT_CONTAINER_TARGET_ADDR,
    PROCESS_EXIT_MAX_WAIT,
    ConfigError,
    StartupError,
    join_host_port,
    parse_bytes,
)

if TYPE_CHECKING:
    from container_stack import Stack

log = logging.getLogger(__name__)

_NANOS = re.compile(r"(\.\d{6})\d+")


def split_log_timestamp(line: str) -> Tuple[Optional[datetime], str]:
    """``"2024-05-01T10:00:00.123456789Z hello"`` → ``(datetime, "hello")``."""
    stamp, sep, message = line.partition(" ")
    if not sep:
        return None, line
    try:
        return datetime.fromisoformat(_NANOS.sub(r"\1", stamp).replace("Z", "+00:00")), message
    except ValueError:
        return None, line


def is_in_progress(exc: APIError) -> bool:
    return "already in progress" in str(exc)


class DockerContainer(Container):
    """
    Container backed by the Docker Engine API.

    ``docker://`` talks to the daemon from the environment (``DOCKER_HOST``
    or the local socket); ``docker+tcp://host:2375`` or
    ``docker+unix:///path/docker.sock`` talk to an explicit daemon.
    """

    engine = "docker"

    def __init__(self, argument: str = "default://", stack: Optional["Stack"] = None,
                 client: Optional[docker.DockerClient] = None) -> None:
        super().__init__(argument, stack)
        self.client     = client      # short-timeout calls: inspect/start/stop
        self.log_client = client      # long-lived follow-log stream
        self.mem_limit  = 0
        self.shm_size   = 0
        self._attrs: Dict[str, Any] = {}

    # ---------- clients ---------------------------------------------------- #
    def _connect(self, timeout: Optional[float]) -> docker.DockerClient:
        variant, _, rest = self.argument.partition("://")
        if variant in ("", "default"):
            return docker.from_env(timeout=timeout)
        return docker.DockerClient(base_url=f"{variant}://{rest}", timeout=timeout)

    def _docker(self) -> docker.DockerClient:
        if self.client is None:
            self.client = self._connect(CONTAINER_INSPECT_TIMEOUT)
        return self.client

    def _docker_logs(self) -> docker.DockerClient:
        if self.log_client is None:
            self.log_client = self._connect(None)
        return self.log_client

    # ---------- lifecycle -------------------------------------------------- #
    def validate(self) -> None:
        cfg = self.config
        cfg.validate()

        cfg.hostname = cfg.hostname or cfg.name
        cfg.memory = cfg.memory or DEFAULT_CONTAINER_MEMORY
        cfg.shared_memory = cfg.shared_memory or DEFAULT_CONTAINER_SHARED_MEMORY

        try:
            self.mem_limit = parse_bytes(cfg.memory)
        except ValueError as exc:
            raise ConfigError(f"container-memory: {exc}") from exc
        try:
            self.shm_size = parse_bytes(cfg.shared_memory)
        except ValueError as exc:
            raise ConfigError(f"container-shm-size: {exc}") from exc

        super().validate()

    def _port_bindings(self) -> Dict[str, Any]:
        bindings: Dict[str, Any] = {}
        for outer, inner, proto in self.config.port_mappings():
            bindings[f"{inner}/{proto}"] = outer
        return bindings

    def start(self) -> None:
        self.validate()
        self._reset_logs()
        cfg = self.config

        log.debug("[%s] docker run %s %s", self, cfg.image, " ".join(cfg.cmd))
        try:
            container = self._docker().containers.run(
                cfg.image,
                cfg.cmd or None,
                name=cfg.name,
                hostname=cfg.hostname,
                user=cfg.user or None,
                environment=cfg.env_list(),
                ports=self._port_bindings(),
                volumes=list(cfg.volumes) or None,
                labels=dict(cfg.labels),
                mem_limit=self.mem_limit,
                shm_size=self.shm_size,
                privileged=cfg.privileged,
                working_dir=cfg.working_dir or None,
                detach=True,
            )
        except (DockerException, RequestException) as exc:
            raise StartupError(f"[{self}] docker: {exc}") from exc

        self._id = container.id
        log.info("[%s] started docker container %s", self, self._id[:12])
        threading.Thread(target=self._follow_logs, args=(self._id, self._logs),
                         name=f"logs-{self}", daemon=True).start()

    def _follow_logs(self, container_id: str, logs: LogBuffer) -> None:
        try:
            stream = self._docker_logs().containers.get(container_id).logs(
                stdout=True, stderr=True, timestamps=True, follow=True, stream=True,
            )
            pending = b""
            for chunk in stream:
                pending += chunk
                *lines, pending = pending.split(b"\n")
                for raw in lines:
                    stamp, message = split_log_timestamp(raw.decode("utf-8", "replace"))
                    if not self._push(message, stamp, logs):
                        return
            if pending:
                stamp, message = split_log_timestamp(pending.decode("utf-8", "replace"))
                self._push(message, stamp, logs)
        except (DockerException, RequestException) as exc:
            log.debug("[%s] log stream ended: %s", self, exc)

    def stop(self) -> None:
        self._logs.close()

        if not self._id:
            return

        try:
            container = self._docker().containers.get(self._id)
            container.stop(timeout=int(PROCESS_EXIT_MAX_WAIT))
            container.remove()
        except NotFound:
            pass
        except APIError as exc:
            if not is_in_progress(exc):
                raise
        log.info("[%s] stopped docker container %s", self, self._id[:12])

    # ---------- observation ------------------------------------------------ #
    def is_running(self) -> bool:
        if not self._id:
            return False
        try:
            container = self._docker().containers.get(self._id)
        except (DockerException, RequestException) as exc:
            log.debug("[%s] inspect failed: %s", self, exc)
            return False

        self._attrs = container.attrs or {}
        return bool(self._attrs.get("State", {}).get("Running"))

    def address(self) -> str:
        if not self.is_running():
            return ""

        network = self._attrs.get("NetworkSettings") or {}
        for bindings in (network.get("Ports") or {}).values():
            for binding in bindings or []:
                if binding.get("HostPort"):
                    return self._published(int(binding["HostPort"]))

        ip = network.get("IPAddress") or ""
        if not ip:
            for net in (network.get("Networks") or {}).values():
                ip = net.get("IPAddress") or ""
                if ip:
                    break

        exposed = list(((self._attrs.get("Config") or {}).get("ExposedPorts") or {}).keys())
        if ip and exposed:
            return self._remember(join_host_port(ip, exposed[0].partition("/")[0]))
        if ip:
            return self._remember(ip)

        return self.config.target_addr or DEFAULT_CONTAINER_TARGET_ADDR

    def _published(self, port: int) -> str:
        # keep a configured host, swap in the published port
        if self.config.target_addr:
            addr = self.config.set_target_port(port)
            if addr.endswith(f":{port}"):
                return addr
        return self._remember(join_host_port(DEFAULT_CONTAINER_TARGET_ADDR, port))

    def _remember(self, addr: str) -> str:
        self.config.target_addr = addr
        return addr
