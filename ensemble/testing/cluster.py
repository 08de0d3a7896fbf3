"""Internally running ensemble of quorum peers. For testing purposes only."""

import logging
import shutil
from concurrent import futures
from dataclasses import dataclass

from ..quorum.config import build_membership_view, peer_config_for
from ..quorum.runtime import PeerRuntime
from ..utils.event_logger import EventLogger
from ..utils.ports import LOCALHOST
from .instance_spec import InstanceSpec, make_specs

logger = logging.getLogger(__name__)


@dataclass
class EnsembleEntry:
    spec: InstanceSpec
    runtime: PeerRuntime
    server_id: int | None = None

    @property
    def state(self) -> str:
        return self.runtime.state


class LocalEnsemble:
    """Launches quorum peers on localhost and controls their lifecycle.

    ``LocalEnsemble(3)`` builds three servers on random ports with temporary
    data directories. ``LocalEnsemble(spec_a, spec_b, ...)`` (or a single
    iterable of specs) uses the given specs in order; that order decides the
    server ids. Specs must not share any port.
    """

    def __init__(self, *specs, event_log_path: str | None = None):
        if len(specs) == 1 and isinstance(specs[0], int) and not isinstance(specs[0], bool):
            specs = tuple(make_specs(specs[0]))
        elif len(specs) == 1 and not isinstance(specs[0], InstanceSpec):
            specs = tuple(specs[0])
        self.entries = [EnsembleEntry(spec, PeerRuntime()) for spec in specs]
        # Every running peer holds its worker for its whole lifetime.
        self.executor = futures.ThreadPoolExecutor(
            max_workers=max(1, len(self.entries)),
            thread_name_prefix="ensemble-peer",
        )
        self.launch_futures: list[futures.Future] = []
        self.event_logger = EventLogger(event_log_path)
        self._started = False
        self._closed = False
        self._record(f"Ensemble created with {len(self.entries)} servers")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def get_instances(self) -> tuple[InstanceSpec, ...]:
        """Return the servers of the ensemble."""
        return tuple(entry.spec for entry in self.entries)

    def get_connect_string(self) -> str:
        """Return the connection string clients use to reach the ensemble."""
        return ",".join(f"{LOCALHOST}:{entry.spec.port}" for entry in self.entries)

    def get_server_id(self, instance: InstanceSpec) -> int | None:
        """Return the id assigned to ``instance`` by :meth:`start`."""
        entry = self._find_entry(instance.port)
        return entry.server_id if entry else None

    def start(self) -> list[futures.Future]:
        """Launch every server concurrently and return the launch handles.

        Returns as soon as the launches are submitted; servers reach quorum in
        the background. A server that fails to start surfaces its error
        through its future only.
        """
        if self._closed:
            raise RuntimeError("ensemble has been closed")
        if self._started:
            raise RuntimeError("ensemble already started")
        self._started = True

        view = build_membership_view(entry.spec for entry in self.entries)
        for server_id, entry in enumerate(self.entries, start=1):
            entry.server_id = server_id
            config = peer_config_for(view, server_id, entry.spec)
            self.launch_futures.append(self.executor.submit(self._launch, entry, config))
        self._record(f"Ensemble started: {self.get_connect_string()}")
        return list(self.launch_futures)

    def close(self) -> None:
        """Shut down every server, delete temp directories and free workers.

        Safe to call repeatedly and before :meth:`start`.
        """
        for entry in self.entries:
            self._close_entry(entry)
        self.executor.shutdown(wait=False, cancel_futures=True)
        if not self._closed:
            self._closed = True
            self._record("Ensemble closed")
            self.event_logger.close()

    def kill_server(self, instance: InstanceSpec) -> bool:
        """Stop the server matching ``instance``, simulating a crash.

        The other servers keep running. Returns ``False`` when no server of
        the ensemble has the instance's client port.
        """
        entry = self._find_entry(instance.port)
        if entry is None:
            return False
        self._close_entry(entry)
        self._record(f"Server {entry.server_id} killed ({entry.spec})")
        return True

    def find_connection_instance(self, client) -> InstanceSpec | None:
        """Return the server ``client`` is connected to, if it is one of ours."""
        address = client.remote_address()
        if address is None:
            return None
        entry = self._find_entry(address[1])
        return entry.spec if entry else None

    def _find_entry(self, port: int) -> EnsembleEntry | None:
        for entry in self.entries:
            if entry.spec.port == port:
                return entry
        return None

    def _close_entry(self, entry: EnsembleEntry) -> None:
        try:
            entry.runtime.shutdown()
        except Exception:
            logger.exception("Error shutting down server on port %s", entry.spec.port)
        if entry.spec.delete_data_directory_on_close:
            try:
                shutil.rmtree(entry.spec.data_directory)
            except OSError as exc:
                logger.debug("Could not delete %s: %s", entry.spec.data_directory, exc)

    def _record(self, message: str) -> None:
        logger.info(message)
        self.event_logger.log(message)

    @staticmethod
    def _launch(entry: EnsembleEntry, config) -> None:
        try:
            entry.runtime.run_from_config(config)
        except Exception:
            logger.exception("Server %s (%s) failed to run", config.server_id, entry.spec)
            raise
