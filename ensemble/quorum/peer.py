"""gRPC quorum peer with heartbeat liveness and majority leader selection."""

import logging
import os
import threading
import time
from concurrent import futures

import grpc
from grpc_health.v1 import health, health_pb2, health_pb2_grpc

from . import rpc
from ..utils.ports import LOOPBACK
from .config import QuorumPeerConfig

logger = logging.getLogger(__name__)

LOOKING = "looking"
FOLLOWING = "following"
LEADING = "leading"
SHUTDOWN = "shutdown"


class SessionService:
    """Client facing RPCs served on the client port."""

    def __init__(self, peer):
        self._peer = peer

    def Connect(self, request, context):
        self._require_quorum(context)
        response = self._peer.describe()
        response["session_id"] = self._peer.next_session_id()
        return response

    def Ping(self, request, context):
        self._require_quorum(context)
        return self._peer.describe()

    def _require_quorum(self, context):
        if self._peer.state not in (LEADING, FOLLOWING):
            context.abort(
                grpc.StatusCode.UNAVAILABLE,
                "server is not currently serving requests",
            )


class QuorumService:
    """Heartbeats exchanged between members on the quorum port."""

    def __init__(self, peer):
        self._peer = peer

    def Heartbeat(self, request, context):
        self._peer.record_heartbeat(request.get("server_id"))
        return self._peer.describe()


class ElectionService:
    """Answers vote requests on the election port."""

    def __init__(self, peer):
        self._peer = peer

    def Vote(self, request, context):
        return {"server_id": self._peer.server_id, "vote": self._peer.current_vote}


class QuorumPeer:
    """One member of the ensemble.

    ``start`` binds the client, quorum and election ports and launches the
    tick thread. Every tick the peer heartbeats the other members, treats those
    heard from within ``sync_limit`` ticks as live and, once the live set holds
    a quorum, proposes the highest live id as leader. A quorum of matching
    votes settles the peer as leading or following; otherwise it keeps looking
    and refuses client sessions.
    """

    def __init__(self, config: QuorumPeerConfig):
        self.config = config
        self.server_id = config.server_id
        self.state = LOOKING
        self.leader_id: int | None = None
        self.current_vote: int | None = None
        self._lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._is_shutdown = False
        self._last_heard: dict[int, float] = {}
        self._session_counter = 0
        self._stubs: dict[int, tuple] = {}
        self._stop = threading.Event()
        self._terminated = threading.Event()
        self._tick_thread: threading.Thread | None = None
        self.ever_joined = False

        self.client_server = grpc.server(
            futures.ThreadPoolExecutor(max_workers=4), options=rpc.SERVER_OPTIONS
        )
        session = SessionService(self)
        self.client_server.add_generic_rpc_handlers(
            (
                rpc.generic_handler(
                    rpc.SESSION_SERVICE,
                    {"Connect": session.Connect, "Ping": session.Ping},
                ),
            )
        )
        self.health_servicer = health.HealthServicer()
        health_pb2_grpc.add_HealthServicer_to_server(self.health_servicer, self.client_server)
        self.health_servicer.set("", health_pb2.HealthCheckResponse.NOT_SERVING)

        self.quorum_server = grpc.server(
            futures.ThreadPoolExecutor(max_workers=4), options=rpc.SERVER_OPTIONS
        )
        self.quorum_server.add_generic_rpc_handlers(
            (rpc.generic_handler(rpc.QUORUM_SERVICE, {"Heartbeat": QuorumService(self).Heartbeat}),)
        )

        self.election_server = grpc.server(
            futures.ThreadPoolExecutor(max_workers=4), options=rpc.SERVER_OPTIONS
        )
        self.election_server.add_generic_rpc_handlers(
            (rpc.generic_handler(rpc.ELECTION_SERVICE, {"Vote": ElectionService(self).Vote}),)
        )

    @property
    def tick_seconds(self) -> float:
        return self.config.tick_time / 1000.0

    # lifecycle -----------------------------------------------------------
    def start(self) -> None:
        """Prepare storage, bind every port and begin ticking.

        Every listener binds the IPv4 loopback. Raises ``OSError`` if the data
        directory is unusable or a port cannot be bound; ports bound before
        the failure are released again. Does nothing once ``shutdown`` was
        called.
        """
        with self._lifecycle_lock:
            if self._is_shutdown:
                return
            self._prepare_storage()
            host, port = self.config.client_port_address
            try:
                self._bind(self.client_server, port)
                self._bind(self.quorum_server, self.config.quorum_address[1])
                self._bind(self.election_server, self.config.election_address[1])
            except OSError:
                self._release_listeners()
                raise
            self.client_server.start()
            self.quorum_server.start()
            self.election_server.start()
            t = threading.Thread(
                target=self._tick_loop,
                name=f"quorum-peer-{self.server_id}",
                daemon=True,
            )
            self._tick_thread = t
            t.start()
            logger.info(
                "Server %s listening on %s:%s (%d members)",
                self.server_id,
                host,
                port,
                len(self.config.servers),
            )

    def join(self, timeout: float | None = None) -> bool:
        """Block until the peer has been shut down."""
        return self._terminated.wait(timeout)

    def shutdown(self) -> None:
        """Stop ticking and close every listener. Safe from any thread."""
        with self._lifecycle_lock:
            if self._is_shutdown:
                return
            self._is_shutdown = True
        self._stop.set()
        t = self._tick_thread
        if t is not None and t is not threading.current_thread():
            t.join()
        for channels, _, _ in self._stubs.values():
            for channel in channels:
                channel.close()
        self._stubs.clear()
        for server in (self.client_server, self.quorum_server, self.election_server):
            server.stop(0).wait()
        with self._lock:
            self.state = SHUTDOWN
            self.leader_id = None
        self._terminated.set()
        logger.info("Server %s shut down", self.server_id)

    def _prepare_storage(self) -> None:
        os.makedirs(self.config.data_dir, exist_ok=True)
        os.makedirs(self.config.data_log_dir, exist_ok=True)
        with open(os.path.join(self.config.data_dir, "myid"), "w", encoding="utf-8") as fp:
            fp.write(f"{self.server_id}\n")

    @staticmethod
    def _bind(server: grpc.Server, port: int) -> None:
        address = f"{LOOPBACK}:{port}"
        try:
            bound = server.add_insecure_port(address)
        except RuntimeError as exc:
            raise OSError(f"unable to bind {address}") from exc
        if bound == 0:
            raise OSError(f"unable to bind {address}")

    def _release_listeners(self) -> None:
        # A server that never started keeps its bound ports until collected.
        for server in (self.client_server, self.quorum_server, self.election_server):
            server.start()
            server.stop(0).wait()

    # state ---------------------------------------------------------------
    def describe(self) -> dict:
        with self._lock:
            return {
                "server_id": self.server_id,
                "state": self.state,
                "leader": self.leader_id,
            }

    def next_session_id(self) -> int:
        with self._lock:
            self._session_counter += 1
            return (self.server_id << 32) | self._session_counter

    def record_heartbeat(self, server_id) -> None:
        if server_id not in self.config.servers or server_id == self.server_id:
            return
        with self._lock:
            self._last_heard[server_id] = time.monotonic()

    def live_server_ids(self) -> set[int]:
        """Members heard from within ``sync_limit`` ticks, plus this server."""
        window = self.tick_seconds * self.config.sync_limit
        now = time.monotonic()
        with self._lock:
            live = {sid for sid, seen in self._last_heard.items() if now - seen <= window}
        live.add(self.server_id)
        return live

    def has_quorum(self) -> bool:
        return self.state in (LEADING, FOLLOWING)

    def _transition(self, state: str, leader_id: int | None) -> None:
        with self._lock:
            changed = state != self.state or leader_id != self.leader_id
            self.state = state
            self.leader_id = leader_id
            if state in (LEADING, FOLLOWING):
                self.ever_joined = True
        if not changed:
            return
        logger.info("Server %s is %s (leader: %s)", self.server_id, state, leader_id)
        status = (
            health_pb2.HealthCheckResponse.SERVING
            if state in (LEADING, FOLLOWING)
            else health_pb2.HealthCheckResponse.NOT_SERVING
        )
        self.health_servicer.set("", status)

    # tick loop -----------------------------------------------------------
    def _tick_loop(self) -> None:
        started = time.monotonic()
        init_deadline = self.tick_seconds * self.config.init_limit
        warned = False
        while not self._stop.is_set():
            try:
                self._tick()
            except Exception:
                logger.exception("Server %s tick failed", self.server_id)
            if (
                not warned
                and not self.ever_joined
                and time.monotonic() - started > init_deadline
            ):
                logger.warning(
                    "Server %s has not joined a quorum after %d ticks",
                    self.server_id,
                    self.config.init_limit,
                )
                warned = True
            self._stop.wait(self.tick_seconds)

    def _tick(self) -> None:
        for sid in self.config.peers():
            if self._stop.is_set():
                return
            heartbeat, _ = self._peer_stubs(sid)
            try:
                response = heartbeat({"server_id": self.server_id}, timeout=self.tick_seconds)
            except grpc.RpcError:
                continue
            self.record_heartbeat(response.get("server_id", sid))

        verifier = self.config.quorum_verifier
        live = self.live_server_ids()
        if not verifier.contains_quorum(live):
            self.current_vote = None
            self._transition(LOOKING, None)
            return

        proposal = max(live)
        self.current_vote = proposal
        agreeing = {self.server_id}
        for sid in live - {self.server_id}:
            if self._stop.is_set():
                return
            _, vote = self._peer_stubs(sid)
            try:
                response = vote({"server_id": self.server_id}, timeout=self.tick_seconds)
            except grpc.RpcError:
                continue
            if response.get("vote") == proposal:
                agreeing.add(sid)

        if verifier.contains_quorum(agreeing):
            self._transition(LEADING if proposal == self.server_id else FOLLOWING, proposal)
        else:
            self._transition(LOOKING, None)

    def _peer_stubs(self, server_id: int):
        entry = self._stubs.get(server_id)
        if entry is None:
            server = self.config.servers[server_id]
            channel = rpc.insecure_channel(*server.address)
            election_channel = rpc.insecure_channel(*server.election_address)
            heartbeat = rpc.unary_call(channel, rpc.QUORUM_SERVICE, "Heartbeat")
            vote = rpc.unary_call(election_channel, rpc.ELECTION_SERVICE, "Vote")
            entry = ((channel, election_channel), heartbeat, vote)
            self._stubs[server_id] = entry
        return entry[1], entry[2]
