from __future__ import annotations

import logging
import os
import subprocess
import threading
from typing import TYPE_CHECKING, Optional
from urllib.parse import urlsplit

from container_adapter import Container, LogBuffer
from container_config import (
    DEFAULT_CONTAINER_TARGET_ADDR,
    PROCESS_EXIT_MAX_WAIT,
    ConfigError,
    StackError,
    StartupError,
)
from process_manager import ensure_user, terminate_process_tree

if TYPE_CHECKING:
    from container_stack import Stack

log = logging.getLogger(__name__)

SCRIPT_SHELL = "/bin/sh"


class ScriptContainer(Container):
    """
    Runs one of the owning stack's inline ``scripts`` as a local process.

    ``shell://setup`` runs the script named ``setup``; a bare ``shell://``
    runs the script named after the container.  Command arguments become the
    script's positional parameters (``$1``…).
    """

    engine = "shell"

    def __init__(self, argument: str = "default://", stack: Optional["Stack"] = None) -> None:
        super().__init__(argument, stack)
        self.endpoint = argument
        self.content  = ""
        self._proc: Optional[subprocess.Popen] = None

    def script_id(self) -> str:
        return urlsplit(self.endpoint).netloc or self.config.name

    def validate(self) -> None:
        self.config.validate(require_image=False)
        self._resolve()
        if not self.config.target_addr:
            self.config.target_addr = DEFAULT_CONTAINER_TARGET_ADDR
        super().validate()

    def _resolve(self) -> None:
        script_id = self.script_id()
        if self.stack is None:
            raise ConfigError("cannot reference script by name without stack")
        self.content = self.stack.script(script_id)

    def start(self) -> None:
        self.validate()
        self._reset_logs()

        env = dict(os.environ)
        env.update({str(k): str(v) for k, v in self.config.env.items()})
        cmd = [SCRIPT_SHELL, "-c", self.content, self.config.name] + list(self.config.cmd)

        try:
            self._proc = subprocess.Popen(
                ensure_user(cmd, self.config.user),
                cwd=self.config.working_dir or None,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as exc:
            raise StartupError(f"[{self}] cannot run script {self.script_id()!r}: {exc}") from exc

        self._id = self.script_id()
        log.debug("[%s] script %r started as pid %d", self, self._id, self._proc.pid)
        threading.Thread(target=self._follow_logs, args=(self._proc, self._logs),
                         name=f"logs-{self}", daemon=True).start()

    def _follow_logs(self, proc: subprocess.Popen, logs: LogBuffer) -> None:
        with proc.stdout:
            for line in proc.stdout:
                if not self._push(line.rstrip("\n"), logs=logs):
                    break

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def address(self) -> str:
        if self.is_running():
            return self.config.target_addr
        return ""

    def stop(self) -> None:
        self._logs.close()

        proc = self._proc
        if proc is None or proc.poll() is not None:
            return

        log.debug("[%s] terminating script pid %d", self, proc.pid)
        terminate_process_tree(proc.pid, PROCESS_EXIT_MAX_WAIT)
        try:
            proc.wait(timeout=PROCESS_EXIT_MAX_WAIT)
        except subprocess.TimeoutExpired as exc:
            raise StackError(f"[{self}] script did not exit") from exc
