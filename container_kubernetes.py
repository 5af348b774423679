from __future__ import annotations

import logging
import re
import threading
import time
from typing import TYPE_CHECKING, Optional

import urllib3
from kubernetes import client as k8s
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from container_adapter import Container, LogBuffer
from container_config import (
    CONTAINER_INSPECT_TIMEOUT,
    DEFAULT_CONTAINER_MEMORY,
    DEFAULT_CONTAINER_SHARED_MEMORY,
    PROCESS_EXIT_CHECK_INTERVAL,
    PROCESS_EXIT_MAX_WAIT,
    ConfigError,
    StackError,
    StartupError,
    join_host_port,
    parse_bytes,
)
from container_docker import split_log_timestamp

if TYPE_CHECKING:
    from container_stack import Stack

log = logging.getLogger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "hydra-stack"
_INVALID_NAME = re.compile(r"[^a-z0-9-]+")


def pod_name(name: str) -> str:
    """Container name → RFC 1123 label usable as a pod name."""
    return _INVALID_NAME.sub("-", name.lower()).strip("-")[:63] or "container"


class KubernetesContainer(Container):
    """
    Container backed by a single Kubernetes pod.

    ``kubernetes://myns`` creates the pod in namespace ``myns`` using the
    current kubeconfig context; ``kubernetes+incluster://myns`` uses the
    service-account config of the pod we run in; any other variant names a
    kubeconfig context (``kubernetes+staging://myns``).
    """

    engine = "kubernetes"

    def __init__(self, argument: str = "default://", stack: Optional["Stack"] = None,
                 api: Optional[k8s.CoreV1Api] = None) -> None:
        super().__init__(argument, stack)
        variant, _, rest = argument.partition("://")
        self.variant   = variant or "default"
        self.namespace = rest.strip("/").split("/")[0] or "default"
        self.api       = api
        self.pod       = ""
        self.mem_limit = 0
        self.shm_size  = 0
        self._pod_ip   = ""

    def _core(self) -> k8s.CoreV1Api:
        if self.api is None:
            try:
                if self.variant == "incluster":
                    k8s_config.load_incluster_config()
                elif self.variant == "default":
                    k8s_config.load_kube_config()
                else:
                    k8s_config.load_kube_config(context=self.variant)
            except ConfigException as exc:
                raise StartupError(f"[{self}] kubernetes unavailable: {exc}") from exc
            self.api = k8s.CoreV1Api()
        return self.api

    # ---------- lifecycle -------------------------------------------------- #
    def validate(self) -> None:
        cfg = self.config
        cfg.validate()
        cfg.namespace = cfg.namespace or self.namespace
        cfg.hostname = cfg.hostname or pod_name(cfg.name)

        try:
            self.mem_limit = parse_bytes(cfg.memory or DEFAULT_CONTAINER_MEMORY)
            self.shm_size = parse_bytes(cfg.shared_memory or DEFAULT_CONTAINER_SHARED_MEMORY)
        except ValueError as exc:
            raise ConfigError(f"container-memory: {exc}") from exc

        super().validate()

    def manifest(self) -> k8s.V1Pod:
        cfg = self.config
        ports = [
            k8s.V1ContainerPort(container_port=inner, host_port=outer, protocol=proto.upper())
            for outer, inner, proto in cfg.port_mappings()
        ]
        return k8s.V1Pod(
            api_version="v1",
            kind="Pod",
            metadata=k8s.V1ObjectMeta(
                name=pod_name(cfg.name),
                labels={MANAGED_BY_LABEL: MANAGED_BY, **cfg.labels},
            ),
            spec=k8s.V1PodSpec(
                restart_policy="Never",
                hostname=cfg.hostname,
                containers=[
                    k8s.V1Container(
                        name="main",
                        image=cfg.image,
                        image_pull_policy="IfNotPresent",
                        command=list(cfg.cmd) or None,
                        env=[k8s.V1EnvVar(name=str(k), value=str(v)) for k, v in cfg.env.items()],
                        ports=ports or None,
                        working_dir=cfg.working_dir or None,
                        security_context=k8s.V1SecurityContext(privileged=cfg.privileged),
                        resources=k8s.V1ResourceRequirements(limits={"memory": str(self.mem_limit)}),
                        volume_mounts=[k8s.V1VolumeMount(name="dshm", mount_path="/dev/shm")],
                    )
                ],
                volumes=[
                    k8s.V1Volume(
                        name="dshm",
                        empty_dir=k8s.V1EmptyDirVolumeSource(medium="Memory", size_limit=str(self.shm_size)),
                    )
                ],
            ),
        )

    def start(self) -> None:
        self.validate()
        self._reset_logs()

        try:
            created = self._core().create_namespaced_pod(
                namespace=self.config.namespace, body=self.manifest(),
                _request_timeout=PROCESS_EXIT_MAX_WAIT,
            )
        except (ApiException, urllib3.exceptions.HTTPError) as exc:
            raise StartupError(f"[{self}] kubernetes: {exc}") from exc

        self.pod = created.metadata.name
        self._id = created.metadata.uid or self.pod
        log.info("[%s] created pod %s/%s", self, self.config.namespace, self.pod)
        threading.Thread(target=self._follow_logs, args=(self.pod, self._logs),
                         name=f"logs-{self}", daemon=True).start()

    def _follow_logs(self, pod: str, logs: LogBuffer) -> None:
        # logs are only available once the pod is scheduled and running
        while not logs.closed and not self.is_running():
            time.sleep(PROCESS_EXIT_CHECK_INTERVAL)
        if logs.closed:
            return

        try:
            resp = self._core().read_namespaced_pod_log(
                name=pod, namespace=self.config.namespace,
                follow=True, timestamps=True, _preload_content=False,
            )
        except (ApiException, urllib3.exceptions.HTTPError) as exc:
            log.debug("[%s] log stream unavailable: %s", self, exc)
            return

        try:
            for raw in resp:
                stamp, message = split_log_timestamp(raw.decode("utf-8", "replace").rstrip("\n"))
                if not self._push(message, stamp, logs):
                    break
        except urllib3.exceptions.HTTPError as exc:
            log.debug("[%s] log stream ended: %s", self, exc)
        finally:
            resp.release_conn()

    def stop(self) -> None:
        self._logs.close()

        if not self.pod:
            return

        api = self._core()
        try:
            api.delete_namespaced_pod(
                name=self.pod, namespace=self.config.namespace,
                grace_period_seconds=int(PROCESS_EXIT_MAX_WAIT),
                _request_timeout=PROCESS_EXIT_MAX_WAIT,
            )
        except ApiException as exc:
            # 404: already gone, 409: deletion already in progress
            if exc.status == 404:
                return
            if exc.status != 409:
                raise

        # the pod name stays taken until the object is removed
        deadline = time.monotonic() + PROCESS_EXIT_MAX_WAIT + CONTAINER_INSPECT_TIMEOUT
        while not self._pod_gone(api):
            if time.monotonic() >= deadline:
                raise StackError(f"[{self}] pod {self.pod} still terminating")
            time.sleep(PROCESS_EXIT_CHECK_INTERVAL)
        log.info("[%s] deleted pod %s/%s", self, self.config.namespace, self.pod)

    def _pod_gone(self, api: k8s.CoreV1Api) -> bool:
        try:
            api.read_namespaced_pod(
                name=self.pod, namespace=self.config.namespace,
                _request_timeout=CONTAINER_INSPECT_TIMEOUT,
            )
        except ApiException as exc:
            if exc.status == 404:
                return True
            raise
        return False

    # ---------- observation ------------------------------------------------ #
    def is_running(self) -> bool:
        if not self.pod:
            return False
        try:
            pod = self._core().read_namespaced_pod(
                name=self.pod, namespace=self.config.namespace,
                _request_timeout=CONTAINER_INSPECT_TIMEOUT,
            )
        except (ApiException, urllib3.exceptions.HTTPError, StartupError) as exc:
            log.debug("[%s] pod status unavailable: %s", self, exc)
            return False

        status = pod.status
        if status is None or status.phase != "Running" or pod.metadata.deletion_timestamp:
            return False

        self._pod_ip = status.pod_ip or ""
        return True

    def address(self) -> str:
        if not self.is_running() or not self._pod_ip:
            return ""

        mappings = self.config.port_mappings()
        if mappings:
            return join_host_port(self._pod_ip, mappings[0][1])
        return self._pod_ip
