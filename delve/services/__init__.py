"""Supervised external processes.

Provides lifecycle management for the local inference server: port
selection, readiness polling, periodic health checks and graceful shutdown.
"""

from .base import ProcessHandle, ProcessSupervisor, ServiceConfig, ServiceStatus
from .inference_server import InferenceServerService
from .ports import find_available_port, probe_port

__all__ = [
    "InferenceServerService",
    "ProcessHandle",
    "ProcessSupervisor",
    "ServiceConfig",
    "ServiceStatus",
    "find_available_port",
    "probe_port",
]
