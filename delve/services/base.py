"""Base class for supervised external processes."""

from __future__ import annotations

import abc
import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any

from delve.errors import DelveError, ProcessStartupTimeoutError, ServiceStartError, ServiceStopError
from delve.observability.logging import timed_operation
from delve.reliability.inflight import InFlightRegistry

logger = logging.getLogger(__name__)


class ServiceStatus(Enum):
    """Service status enumeration."""

    STOPPED = "stopped"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass
class ServiceConfig:
    """Launch description for one process start."""

    name: str
    command: list[str] = field(default_factory=list)
    working_dir: Path | None = None
    env_vars: dict[str, str] = field(default_factory=dict)
    port: int | None = None
    health_check_url: str | None = None
    health_check_timeout: float = 5.0
    health_poll_interval: float = 0.5
    startup_timeout: float = 30.0
    health_check_interval: float = 30.0
    stop_timeout: float = 5.0


@dataclass
class ProcessHandle:
    """A running, ready process."""

    pid: int
    port: int | None
    ready: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"pid": self.pid, "port": self.port, "ready": self.ready}


class ProcessSupervisor(abc.ABC):
    """Spawns a process, waits for it to become healthy and keeps watching it.

    Subclasses implement ``_prepare`` (build the launch config) and
    ``_perform_health_check``. Concurrent ``start()`` calls share one startup
    attempt; a failed attempt is cleared so the next call retries.
    """

    def __init__(
        self,
        name: str,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config: ServiceConfig | None = None
        self._sleep = sleep
        self._clock = clock
        self._process: subprocess.Popen[bytes] | None = None
        self._handle: ProcessHandle | None = None
        self._status = ServiceStatus.STOPPED
        self._start_time: float | None = None
        self._health_thread: threading.Thread | None = None
        self._health_stop = threading.Event()
        self._startup = InFlightRegistry()
        self._lock = threading.RLock()

    @property
    def status(self) -> ServiceStatus:
        return self._status

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def is_ready(self) -> bool:
        handle = self._handle
        return handle is not None and handle.ready

    def is_running(self) -> bool:
        process = self._process
        return process is not None and process.poll() is None

    def start(self) -> ProcessHandle:
        """Start the process and block until it is healthy.

        Returns the existing handle if the process is already running.

        Raises:
            ServiceStartError: Spawn failed or the process exited during startup.
            ProcessStartupTimeoutError: The health endpoint never answered in time.
        """
        with self._lock:
            if self._handle is not None and self.is_running():
                return self._handle
        return self._startup.run(self.name, self._start)

    def stop(self) -> None:
        """Stop health checks, then SIGTERM, then SIGKILL after the stop timeout.

        Raises:
            ServiceStopError: The process could not be stopped.
        """
        with self._lock:
            self._cancel_health_monitor()
            if self._process is None:
                self._status = ServiceStatus.STOPPED
                self._handle = None
                return

            self._status = ServiceStatus.STOPPING
            logger.info("Stopping service %s", self.name)
            try:
                self._stop_process()
            except OSError as e:
                self._status = ServiceStatus.FAILED
                logger.error("Error stopping service %s: %s", self.name, e, exc_info=True)
                raise ServiceStopError(
                    f"Failed to stop {self.name}", service_name=self.name, cause=e
                ) from e
            self._handle = None
            self._status = ServiceStatus.STOPPED
            logger.info("Service %s stopped", self.name)

    def health_check(self) -> bool:
        """Check if the service is healthy. Errors count as unhealthy."""
        try:
            return self._perform_health_check()
        except Exception as e:
            logger.debug("Health check failed for %s: %s", self.name, e, exc_info=True)
            return False

    def get_info(self) -> dict[str, Any]:
        uptime: float | None = None
        if self._start_time and self._handle is not None:
            uptime = time.time() - self._start_time
        return {
            "name": self.name,
            "status": self._status.value,
            "pid": self.pid,
            "port": self._handle.port if self._handle else None,
            "ready": self.is_ready(),
            "uptime": uptime,
        }

    # -- hooks -------------------------------------------------------------

    @abc.abstractmethod
    def _prepare(self) -> ServiceConfig:
        """Build the launch config (binary, port, environment)."""

    def _perform_health_check(self) -> bool:
        """Perform the actual health check. Override in subclasses."""
        return self.is_running()

    # -- startup -----------------------------------------------------------

    def _start(self) -> ProcessHandle:
        self._status = ServiceStatus.STARTING
        logger.info("Starting service %s", self.name)
        try:
            config = self._prepare()
            self.config = config
            with timed_operation(logger, "service.start", service=self.name, port=config.port):
                process = self._spawn(config)
                self._wait_until_ready(process, config)
        except DelveError:
            self._status = ServiceStatus.FAILED
            raise
        except Exception as e:
            self._status = ServiceStatus.FAILED
            logger.error("Failed to start service %s: %s", self.name, e, exc_info=True)
            raise ServiceStartError(
                f"Failed to start {self.name}", service_name=self.name, cause=e
            ) from e

        with self._lock:
            handle = ProcessHandle(pid=process.pid, port=config.port, ready=True)
            self._handle = handle
            self._start_time = time.time()
            self._status = ServiceStatus.HEALTHY
            self._start_health_monitor(config)
        logger.info("Service %s ready (PID: %s, port: %s)", self.name, process.pid, config.port)
        return handle

    def _spawn(self, config: ServiceConfig) -> subprocess.Popen[bytes]:
        if not config.command:
            raise ServiceStartError(
                f"No command configured for service {self.name}", service_name=self.name
            )

        env = os.environ.copy()
        env.update(config.env_vars)

        popen_kwargs: dict[str, Any] = {
            "cwd": config.working_dir,
            "env": env,
            "stdout": subprocess.PIPE,
            "stderr": subprocess.STDOUT,
        }
        if hasattr(os, "setsid"):  # Unix/Linux/macOS
            popen_kwargs["process_group"] = 0

        try:
            process = subprocess.Popen(config.command, **popen_kwargs)
        except OSError as e:
            with self._lock:
                self._process = None
                self._handle = None
            raise ServiceStartError(
                f"Failed to spawn {self.name}: {e}", service_name=self.name, cause=e
            ) from e

        with self._lock:
            self._process = process

        if process.stdout is not None:
            threading.Thread(
                target=self._pump_output,
                args=(process.stdout,),
                name=f"{self.name}-output",
                daemon=True,
            ).start()
        threading.Thread(
            target=self._watch_exit,
            args=(process,),
            name=f"{self.name}-exit",
            daemon=True,
        ).start()
        return process

    def _wait_until_ready(self, process: subprocess.Popen[bytes], config: ServiceConfig) -> None:
        deadline = self._clock() + config.startup_timeout
        while True:
            returncode = process.poll()
            if returncode is not None:
                raise ServiceStartError(
                    f"{self.name} exited during startup with code {returncode}",
                    service_name=self.name,
                )
            if self.health_check():
                return
            if self._clock() >= deadline:
                logger.error(
                    "Service %s not ready after %.1fs, stopping", self.name, config.startup_timeout
                )
                self.stop()
                raise ProcessStartupTimeoutError(
                    f"{self.name} did not become ready within {config.startup_timeout:.0f}s",
                    timeout_seconds=config.startup_timeout,
                    service_name=self.name,
                )
            self._sleep(config.health_poll_interval)

    def _pump_output(self, stream: IO[bytes]) -> None:
        for raw in iter(stream.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                logger.debug("[%s] %s", self.name, line)
        stream.close()

    def _watch_exit(self, process: subprocess.Popen[bytes]) -> None:
        returncode = process.wait()
        with self._lock:
            if self._process is not process:
                return
            logger.warning("Service %s exited unexpectedly with code %s", self.name, returncode)
            self._health_stop.set()
            self._process = None
            self._handle = None
            self._status = ServiceStatus.FAILED

    # -- health monitor ----------------------------------------------------

    def _start_health_monitor(self, config: ServiceConfig) -> None:
        self._health_stop = threading.Event()
        self._health_thread = threading.Thread(
            target=self._health_monitor_loop,
            args=(self._health_stop, config.health_check_interval),
            name=f"{self.name}-health",
            daemon=True,
        )
        self._health_thread.start()

    def _health_monitor_loop(self, stop: threading.Event, interval: float) -> None:
        while not stop.wait(interval):
            healthy = self.health_check()
            with self._lock:
                if stop.is_set() or self._handle is None:
                    return
                if self._handle.ready != healthy:
                    self._handle.ready = healthy
                    self._status = ServiceStatus.HEALTHY if healthy else ServiceStatus.UNHEALTHY
                    logger.info(
                        "Service %s health changed to %s", self.name, self._status.value
                    )

    def _cancel_health_monitor(self) -> None:
        self._health_stop.set()
        thread = self._health_thread
        self._health_thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    # -- shutdown ----------------------------------------------------------

    def _stop_process(self) -> None:
        """Stop the process gracefully.

        Uses process group termination on Unix/Linux/macOS so child processes
        go too. Falls back to direct process termination on Windows.
        """
        process = self._process
        if process is None:
            return

        stop_timeout = self.config.stop_timeout if self.config else 5.0
        try:
            self._signal(process, signal.SIGTERM)
            try:
                process.wait(timeout=stop_timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Force killing service %s", self.name)
                self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
                process.wait()
        finally:
            self._process = None

    @staticmethod
    def _signal(process: subprocess.Popen[bytes], sig: int) -> None:
        if hasattr(os, "killpg") and hasattr(os, "getpgid"):
            try:
                os.killpg(os.getpgid(process.pid), sig)
            except ProcessLookupError:
                pass  # Process already exited
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, status={self._status.value})"
