"""Quorum peer engine, its configuration and its client."""

from .config import (
    MajorityQuorumVerifier,
    MembershipView,
    QuorumPeerConfig,
    QuorumServer,
    build_membership_view,
    peer_config_for,
)
from .client import ConnectionLossError, EnsembleClient, parse_connect_string
from .peer import QuorumPeer
from .runtime import PeerRuntime
