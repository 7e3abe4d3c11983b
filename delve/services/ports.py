"""Local TCP port allocation."""

from __future__ import annotations

import logging
import socket

from delve.errors import PortUnavailableError

logger = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"


def probe_port(port: int, host: str = LOCALHOST) -> None:
    """Bind a throwaway socket to ``host:port`` and release it.

    Raises:
        PortUnavailableError: The port cannot be bound.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
    except OSError as e:
        raise PortUnavailableError(f"Port {port} is in use", port=port, cause=e) from e
    finally:
        sock.close()


def find_available_port(start: int, attempts: int = 100, host: str = LOCALHOST) -> int:
    """Return the first bindable port in ``[start, start + attempts)``.

    Raises:
        PortUnavailableError: Every candidate is taken.
    """
    for port in range(start, start + attempts):
        try:
            probe_port(port, host)
        except PortUnavailableError:
            logger.debug("Port %d unavailable, trying next", port)
            continue
        return port

    raise PortUnavailableError(
        f"No available port in range {start}-{start + attempts - 1}",
        port=start,
        details={"attempts": attempts},
    )
