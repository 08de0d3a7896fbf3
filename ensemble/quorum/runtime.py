import logging
import threading

from .config import QuorumPeerConfig
from .peer import QuorumPeer

logger = logging.getLogger(__name__)

CREATED = "created"
RUNNING = "running"
STOPPED = "stopped"


class PeerRuntime:
    """Runs one :class:`QuorumPeer` on the calling thread until shut down.

    A runtime is single use: once stopped it cannot be started again, and a
    shutdown that arrives before ``run_from_config`` makes the later run a
    no-op.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._peer: QuorumPeer | None = None
        self._state = CREATED

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def quorum_peer(self) -> QuorumPeer | None:
        """The live peer object, ``None`` until ``run_from_config`` begins."""
        with self._lock:
            return self._peer

    def run_from_config(self, config: QuorumPeerConfig) -> None:
        """Start a peer for ``config`` and block until it is shut down."""
        with self._lock:
            if self._state == STOPPED:
                logger.info("Server %s stopped before launch, not starting", config.server_id)
                return
            if self._state == RUNNING:
                raise RuntimeError(f"server {config.server_id} is already running")
            peer = QuorumPeer(config)
            self._peer = peer
            self._state = RUNNING
        try:
            peer.start()
        except Exception:
            with self._lock:
                self._state = STOPPED
            peer.shutdown()
            raise
        peer.join()

    def shutdown(self) -> None:
        """Signal the peer to stop. Idempotent and safe from any thread."""
        with self._lock:
            if self._state == STOPPED:
                return
            self._state = STOPPED
            peer = self._peer
        if peer is not None:
            peer.shutdown()
