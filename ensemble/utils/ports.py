"""Free port discovery for locally launched servers."""

import errno
import random
import socket

# Advertised in connect strings and peer tables.
LOCALHOST = "localhost"
# Servers listen on this address only.
LOOPBACK = "127.0.0.1"
LOOPBACK_V6 = "::1"

# Below the usual Linux ephemeral range.
PORT_RANGE = (10000, 32000)

# Hosts without an IPv6 loopback report one of these for ``::1``.
_NO_IPV6 = (errno.EADDRNOTAVAIL, errno.EAFNOSUPPORT)


def _bind_errno(family: int, host: str, port: int) -> int | None:
    try:
        with socket.socket(family, socket.SOCK_STREAM) as s:
            s.bind((host, port))
    except OSError as exc:
        return exc.errno or errno.EINVAL
    return None


def is_port_available(port: int) -> bool:
    """Return ``True`` if ``port`` is free on both loopback addresses.

    ``localhost`` may resolve to either family, so a port held by another
    process on ``::1`` is as unusable as one held on ``127.0.0.1``.
    """
    if _bind_errno(socket.AF_INET, LOOPBACK, port) is not None:
        return False
    return _bind_errno(socket.AF_INET6, LOOPBACK_V6, port) in (None, *_NO_IPV6)


def get_random_port(exclude=(), attempts: int = 200) -> int:
    """Pick a random free port that is not listed in ``exclude``."""
    for _ in range(attempts):
        port = random.randrange(*PORT_RANGE)
        if port in exclude:
            continue
        if is_port_available(port):
            return port
    raise RuntimeError(f"no free port found after {attempts} attempts")
