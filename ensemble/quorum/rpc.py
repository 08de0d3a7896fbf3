"""MessagePack bodies carried over gRPC generic handlers."""

import grpc
import msgpack

SESSION_SERVICE = "ensemble.Session"
QUORUM_SERVICE = "ensemble.Quorum"
ELECTION_SERVICE = "ensemble.Election"

# Reconnect backoff capped at one second so a late listener is found within
# a couple of ticks.
CHANNEL_OPTIONS = [
    ("grpc.initial_reconnect_backoff_ms", 100),
    ("grpc.min_reconnect_backoff_ms", 100),
    ("grpc.max_reconnect_backoff_ms", 1000),
]

# A second listener on a taken port fails instead of sharing it.
SERVER_OPTIONS = [("grpc.so_reuseport", 0)]


def dumps(message: dict) -> bytes:
    """Serialize a message dictionary using MessagePack."""
    return msgpack.packb(message, use_bin_type=True)


def loads(data: bytes) -> dict:
    """Deserialize MessagePack bytes back into a dictionary."""
    if not data:
        return {}
    return msgpack.unpackb(data, raw=False)


def method_path(service: str, method: str) -> str:
    return f"/{service}/{method}"


def generic_handler(service: str, methods: dict) -> grpc.GenericRpcHandler:
    """Build a handler exposing ``methods`` (name -> callable) as unary RPCs."""
    handlers = {
        name: grpc.unary_unary_rpc_method_handler(
            behavior,
            request_deserializer=loads,
            response_serializer=dumps,
        )
        for name, behavior in methods.items()
    }
    return grpc.method_handlers_generic_handler(service, handlers)


def unary_call(channel: grpc.Channel, service: str, method: str):
    """Return a callable invoking ``service/method`` on ``channel``."""
    return channel.unary_unary(
        method_path(service, method),
        request_serializer=dumps,
        response_deserializer=loads,
    )


def insecure_channel(host: str, port: int) -> grpc.Channel:
    return grpc.insecure_channel(f"{host}:{port}", options=CHANNEL_OPTIONS)
