"""Launches and stops the proxy binary under test."""

from __future__ import annotations

import logging
import os
import subprocess
import weakref
from collections.abc import Sequence

from client import wait_responsive
from config import HOST, PROXY_STOP_GRACE_SECS, STARTUP_TIMEOUT_SECS

logger = logging.getLogger(__name__)

PROXY_PATH_ENV = "HAPROXY_PATH"
PROXY_CONFIG_ENV = "HAPROXY_CFG_PATH"


def _terminate(process: subprocess.Popen[bytes]) -> None:
    if process.poll() is None:
        process.terminate()


class ProxyProcess:
    def __init__(
        self,
        path: str | None = None,
        config_path: str | None = None,
        *,
        extra_args: Sequence[str] = ("-db",),
        host: str = HOST,
    ) -> None:
        self.path = path or os.environ.get(PROXY_PATH_ENV)
        self.config_path = config_path or os.environ.get(PROXY_CONFIG_ENV)
        self.extra_args = tuple(extra_args)
        self.host = host
        self._process: subprocess.Popen[bytes] | None = None
        self._finalizer: weakref.finalize | None = None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def command(self) -> list[str]:
        if not self.path:
            raise ValueError(f"Proxy binary path not set (pass path or set {PROXY_PATH_ENV})")
        if not self.config_path:
            raise ValueError(
                f"Proxy config path not set (pass config_path or set {PROXY_CONFIG_ENV})"
            )
        return [self.path, "-f", self.config_path, *self.extra_args]

    def start(
        self,
        wait_port: int | None = None,
        timeout: float = STARTUP_TIMEOUT_SECS,
    ) -> "ProxyProcess":
        """Spawn the proxy; with ``wait_port``, block until that port answers."""
        command = self.command()
        logger.info("Starting proxy: %s", " ".join(command))
        self._process = subprocess.Popen(command)
        self._finalizer = weakref.finalize(self, _terminate, self._process)

        if wait_port is not None:
            try:
                wait_responsive(self.host, wait_port, timeout=timeout)
            except TimeoutError:
                self.stop()
                raise
        return self

    def stop(self, grace_secs: float = PROXY_STOP_GRACE_SECS) -> None:
        process = self._process
        if process is None:
            return
        if self._finalizer is not None:
            self._finalizer.detach()
            self._finalizer = None

        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=grace_secs)
            except subprocess.TimeoutExpired:
                logger.warning("Proxy pid %s ignored SIGTERM, killing it", process.pid)
                process.kill()
                process.wait()
        logger.info("Proxy pid %s exited with %s", process.pid, process.returncode)
        self._process = None
