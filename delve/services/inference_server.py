"""Supervised local inference server (the ollama binary)."""

from __future__ import annotations

import logging
import urllib.request
from collections.abc import Callable
from urllib.parse import urlparse

from delve.config import SupervisorSettings
from delve.errors import BinaryInvalidError
from delve.services.base import ProcessSupervisor, ServiceConfig
from delve.services.ports import LOCALHOST, find_available_port
from models.fetcher import BinaryFetcher

logger = logging.getLogger(__name__)


class InferenceServerService(ProcessSupervisor):
    """Runs the inference server binary on a free local port.

    Example:
        server = InferenceServerService(BinaryFetcher(get_binary_dir()))
        handle = server.start()
        print(server.base_url, handle.pid)
        server.stop()
    """

    def __init__(
        self,
        fetcher: BinaryFetcher,
        settings: SupervisorSettings | None = None,
        port_finder: Callable[[int, int], int] = find_available_port,
        **kwargs,
    ) -> None:
        super().__init__("inference-server", **kwargs)
        self._fetcher = fetcher
        self._settings = settings or SupervisorSettings()
        self._port_finder = port_finder
        self.port: int | None = None

    @property
    def base_url(self) -> str | None:
        if self.port is None:
            return None
        return f"http://{LOCALHOST}:{self.port}"

    def _prepare(self) -> ServiceConfig:
        binary = self._fetcher.fetch()
        verification = self._fetcher.verify(binary)
        if not verification.valid:
            raise BinaryInvalidError(
                f"Runtime binary is invalid: {verification.reason}",
                service_name=self.name,
                details=verification.to_dict(),
            )

        settings = self._settings
        port = self._port_finder(settings.default_port, settings.port_search_range)
        self.port = port
        logger.debug("Using port %d for %s", port, self.name)

        return ServiceConfig(
            name=self.name,
            command=[str(binary), *settings.args],
            env_vars={settings.host_env_var: f"{LOCALHOST}:{port}"},
            port=port,
            health_check_url=f"http://{LOCALHOST}:{port}{settings.health_path}",
            health_check_timeout=settings.health_check_timeout,
            health_poll_interval=settings.health_poll_interval,
            startup_timeout=settings.startup_timeout,
            health_check_interval=settings.health_check_interval,
            stop_timeout=settings.stop_timeout,
        )

    def _perform_health_check(self) -> bool:
        """Check if the server answers its version endpoint."""
        if self.config is None or not self.config.health_check_url:
            return super()._perform_health_check()

        try:
            parsed = urlparse(self.config.health_check_url)
            if parsed.scheme not in {"http", "https"}:
                logger.warning(
                    "Refusing non-http(s) health check URL: %s", self.config.health_check_url
                )
                return False

            req = urllib.request.Request(self.config.health_check_url)
            timeout = self.config.health_check_timeout
            with urllib.request.urlopen(req, timeout=timeout) as response:  # nosec B310
                status = int(getattr(response, "status", 0))
                return status == 200
        except OSError:
            logger.debug("%s health check failed", self.name, exc_info=True)
            return False
