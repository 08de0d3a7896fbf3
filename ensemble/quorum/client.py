import logging
import random
import threading
import time

import grpc

from . import rpc

logger = logging.getLogger(__name__)

ATTEMPT_TIMEOUT = 1.0
RETRY_INTERVAL = 0.1


class ConnectionLossError(Exception):
    """No server in the connect string accepted a session in time."""


def parse_connect_string(connect_string: str) -> list[tuple[str, int]]:
    """Split ``host:port[,host:port]*`` into address tuples."""
    hosts: list[tuple[str, int]] = []
    for item in filter(None, (part.strip() for part in connect_string.split(","))):
        host, port = item.rsplit(":", 1)
        hosts.append((host, int(port)))
    if not hosts:
        raise ValueError("connect string must name at least one server")
    return hosts


class EnsembleClient:
    """Session client for an ensemble with failover across its servers."""

    def __init__(
        self,
        connect_string: str,
        timeout: float = 10.0,
        randomize_hosts: bool = True,
    ):
        self.hosts = parse_connect_string(connect_string)
        if randomize_hosts:
            random.shuffle(self.hosts)
        self.timeout = float(timeout)
        self.session_id: int | None = None
        self.server_id: int | None = None
        self.server_state: str | None = None
        self._lock = threading.RLock()
        self._next_host = 0
        self.channel = None
        self._address: tuple[str, int] | None = None
        self._ping = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def remote_address(self) -> tuple[str, int] | None:
        """Diagnostic accessor: the server this client is talking to."""
        with self._lock:
            return self._address

    @property
    def connected(self) -> bool:
        return self.remote_address() is not None

    def connect(self) -> "EnsembleClient":
        """Open a session with the next server that accepts one.

        Servers are tried in order, wrapping around, until ``timeout`` seconds
        have passed. Raises :class:`ConnectionLossError` when none answered.
        """
        deadline = time.monotonic() + self.timeout
        with self._lock:
            self._disconnect()
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ConnectionLossError(
                        f"unable to connect to any of {self._describe_hosts()}"
                    )
                host, port = self.hosts[self._next_host % len(self.hosts)]
                self._next_host += 1
                channel = rpc.insecure_channel(host, port)
                try:
                    response = rpc.unary_call(channel, rpc.SESSION_SERVICE, "Connect")(
                        {}, timeout=min(ATTEMPT_TIMEOUT, remaining)
                    )
                except grpc.RpcError as exc:
                    channel.close()
                    logger.debug("Connect to %s:%s failed: %s", host, port, exc.code())
                    if self._next_host % len(self.hosts) == 0:
                        time.sleep(min(RETRY_INTERVAL, max(0.0, deadline - time.monotonic())))
                    continue
                self.channel = channel
                self._address = (host, port)
                self._ping = rpc.unary_call(channel, rpc.SESSION_SERVICE, "Ping")
                self.session_id = response.get("session_id")
                self._update(response)
                logger.info("Connected to %s:%s (server %s)", host, port, self.server_id)
                return self

    def ping(self) -> dict:
        """Ping the current server, failing over to another one if it is gone."""
        with self._lock:
            if self.channel is None:
                self.connect()
            try:
                response = self._ping({}, timeout=ATTEMPT_TIMEOUT)
            except grpc.RpcError:
                logger.info("Lost connection to %s:%s, failing over", *self._address)
                self.connect()
                response = self._ping({}, timeout=ATTEMPT_TIMEOUT)
            self._update(response)
            return response

    def close(self) -> None:
        with self._lock:
            self._disconnect()

    def _update(self, response: dict) -> None:
        self.server_id = response.get("server_id")
        self.server_state = response.get("state")

    def _disconnect(self) -> None:
        if self.channel is not None:
            self.channel.close()
        self.channel = None
        self._ping = None
        self._address = None
        self.session_id = None

    def _describe_hosts(self) -> str:
        return ",".join(f"{h}:{p}" for h, p in self.hosts)
