"""Membership view and per-server configuration of a local ensemble."""

import os
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from ..utils.ports import LOCALHOST

# Timing used by every server. Milliseconds for the tick, ticks for the limits.
TICK_TIME = 500
SYNC_LIMIT = 5
INIT_LIMIT = 10


@dataclass(frozen=True)
class QuorumServer:
    """Address book entry for one member of the ensemble."""

    id: int
    address: tuple[str, int]
    election_address: tuple[str, int]


class MajorityQuorumVerifier:
    """Accepts a set of servers once it holds a strict majority of members."""

    def __init__(self, member_count: int) -> None:
        self.member_count = int(member_count)
        self.half = self.member_count // 2

    def weight(self, server_id: int) -> int:
        return 1

    def contains_quorum(self, server_ids: Iterable[int]) -> bool:
        return len(set(server_ids)) > self.half

    def __repr__(self) -> str:
        return f"MajorityQuorumVerifier(member_count={self.member_count})"


@dataclass(frozen=True)
class MembershipView:
    """Peer table and quorum verifier shared by every server of an ensemble."""

    servers: Mapping[int, QuorumServer]
    verifier: MajorityQuorumVerifier

    def __len__(self) -> int:
        return len(self.servers)

    def server_ids(self) -> list[int]:
        return sorted(self.servers)


def build_membership_view(specs) -> MembershipView:
    """Assign ids ``1..N`` in iteration order and build the shared view."""
    servers: dict[int, QuorumServer] = {}
    for position, spec in enumerate(specs):
        server_id = position + 1
        servers[server_id] = QuorumServer(
            server_id,
            (LOCALHOST, spec.quorum_port),
            (LOCALHOST, spec.election_port),
        )
    return MembershipView(MappingProxyType(servers), MajorityQuorumVerifier(len(servers)))


@dataclass(frozen=True)
class QuorumPeerConfig:
    """Everything a single quorum peer needs to run."""

    server_id: int
    data_dir: str
    data_log_dir: str
    client_port_address: tuple[str, int]
    election_port: int
    servers: Mapping[int, QuorumServer]
    quorum_verifier: MajorityQuorumVerifier
    tick_time: int = TICK_TIME
    sync_limit: int = SYNC_LIMIT
    init_limit: int = INIT_LIMIT

    def __post_init__(self):
        if self.server_id not in self.servers:
            raise ValueError(
                f"server id {self.server_id} is not part of the membership view"
            )

    @property
    def quorum_address(self) -> tuple[str, int]:
        return self.servers[self.server_id].address

    @property
    def election_address(self) -> tuple[str, int]:
        return self.servers[self.server_id].election_address

    def peers(self) -> dict[int, QuorumServer]:
        """Return every member except this server."""
        return {sid: s for sid, s in self.servers.items() if sid != self.server_id}


def peer_config_for(view: MembershipView, server_id: int, spec) -> QuorumPeerConfig:
    """Build the configuration for ``spec`` running as ``server_id``.

    Data and transaction logs share the same directory.
    """
    path = os.path.realpath(spec.data_directory)
    return QuorumPeerConfig(
        server_id=server_id,
        data_dir=path,
        data_log_dir=path,
        client_port_address=(LOCALHOST, spec.port),
        election_port=spec.election_port,
        servers=view.servers,
        quorum_verifier=view.verifier,
    )
