"""Lifecycle of the inference-server process bound to the benchmark port."""
from __future__ import annotations

import enum
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import httpx
import psutil

from tokbench.common.config import ServerConfig
from tokbench.common.errors import StartupFailed
from tokbench.engine.backends import Backend

logger = logging.getLogger(__name__)

PROBE_PATHS = ("/health", "/")


class ServiceState(enum.Enum):
    STARTING = "starting"
    READY = "ready"
    STOPPED = "stopped"


@dataclass
class ServiceHandle:
    proc: subprocess.Popen
    variant: str
    batch_size: int
    state: ServiceState = ServiceState.STARTING

    @property
    def pid(self) -> int:
        return self.proc.pid

    def alive(self) -> bool:
        return self.proc.poll() is None


def free_port(port: int) -> list[int]:
    """Kill every process other than ourselves holding ``port``. Best-effort.

    Returns the pids that were signalled.
    """
    killed: list[int] = []
    try:
        conns = psutil.net_connections(kind="tcp")
    except psutil.Error as e:
        logger.warning("cannot list sockets to free port %d: %s", port, e)
        return killed

    own = os.getpid()
    pids = {c.pid for c in conns if c.laddr and c.laddr.port == port and c.pid and c.pid != own}
    for pid in sorted(pids):
        try:
            psutil.Process(pid).kill()
            killed.append(pid)
        except psutil.NoSuchProcess:
            pass
        except psutil.Error as e:
            logger.warning("could not kill pid %d holding port %d: %s", pid, port, e)
    if killed:
        psutil.wait_procs(_existing(killed), timeout=5)
        logger.info("freed port %d (killed %s)", port, killed)
    return killed


def _existing(pids: list[int]) -> list[psutil.Process]:
    procs = []
    for pid in pids:
        try:
            procs.append(psutil.Process(pid))
        except psutil.NoSuchProcess:
            pass
    return procs


class ServiceController:
    """Owns the one service process on ``server.port``.

    Only one controller may hold a given port at a time; use it as a context
    manager or call ``close()`` to release the claim.
    """

    _claimed_ports: set[int] = set()

    def __init__(
        self,
        backend: Backend,
        server: ServerConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        if server.port in ServiceController._claimed_ports:
            raise RuntimeError(f"port {server.port} is already owned by another ServiceController")
        ServiceController._claimed_ports.add(server.port)
        self.backend = backend
        self.server = server
        self.handle: Optional[ServiceHandle] = None
        self._sleep = sleep
        self._popen = popen

    def close(self) -> None:
        self.stop()
        ServiceController._claimed_ports.discard(self.server.port)

    def __enter__(self) -> "ServiceController":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def start(self, variant: str, batch_size: int, model_path: Path) -> ServiceHandle:
        """Launch the service and block until it is usable.

        Raises ``ServiceBinaryNotFound`` when the build is missing and
        ``StartupFailed`` when it never answers a probe; in the latter case no
        process is left behind.
        """
        if self.handle is not None and self.handle.alive():
            self.stop()
        free_port(self.server.port)

        launch = self.backend.launch_spec(variant, batch_size, model_path, self.server)
        logger.info(
            "starting %s service: variant=%s batch=%d port=%d",
            self.backend.name, variant, batch_size, self.server.port,
        )
        try:
            proc = self._popen(
                launch.argv,
                cwd=str(launch.cwd) if launch.cwd else None,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise StartupFailed(f"could not launch {launch.argv[0]}: {e}") from e
        self.handle = ServiceHandle(proc=proc, variant=variant, batch_size=batch_size)

        if not self.ready():
            self.stop()
            raise StartupFailed(
                f"service {variant} (batch={batch_size}) not ready after "
                f"{self.server.probe_attempts} probes"
            )

        if self.server.settle_delay_s > 0:
            logger.info("service answered probes, settling for %.0fs", self.server.settle_delay_s)
            self._sleep(self.server.settle_delay_s)
        self.handle.state = ServiceState.READY
        return self.handle

    def _probe(self, client: httpx.Client) -> bool:
        for path in PROBE_PATHS:
            try:
                resp = client.get(f"{self.server.base_url}{path}")
            except httpx.HTTPError:
                continue
            if resp.status_code < 400:
                return True
        return False

    def ready(self) -> bool:
        """Probe the service up to ``probe_attempts`` times."""
        with httpx.Client(timeout=self.server.probe_timeout_s) as client:
            for _ in range(self.server.probe_attempts):
                if self.handle is not None and not self.handle.alive():
                    logger.warning("service exited with code %s during startup", self.handle.proc.returncode)
                    return False
                if self._probe(client):
                    return True
                self._sleep(self.server.probe_interval_s)
        return False

    def stop(self, handle: Optional[ServiceHandle] = None) -> None:
        """Terminate the service and free the port. Safe to call repeatedly."""
        handle = handle or self.handle
        if handle is not None and handle.alive():
            logger.info("stopping service pid=%d", handle.pid)
            handle.proc.terminate()
            try:
                handle.proc.wait(timeout=self.server.stop_grace_s)
            except subprocess.TimeoutExpired:
                handle.proc.kill()
                handle.proc.wait()
        if handle is not None:
            handle.state = ServiceState.STOPPED
        free_port(self.server.port)

    def restart(self, variant: str, batch_size: int, model_path: Path) -> ServiceHandle:
        self.stop()
        return self.start(variant, batch_size, model_path)
