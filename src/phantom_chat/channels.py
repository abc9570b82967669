"""
Channel namespace mapping between wire topics and local view channels.

Only the public channel is aliased; direct channels are keyed by peer id and
pass through unchanged.
"""

GLOBAL_CHANNEL = "global-gossip"
GLOBAL_WIRE_CHANNEL = "phantom-global"
ENCRYPTED_CHANNEL = "encrypted-chat"

_WIRE_TO_LOCAL = {GLOBAL_WIRE_CHANNEL: GLOBAL_CHANNEL}
_LOCAL_TO_WIRE = {local: wire for wire, local in _WIRE_TO_LOCAL.items()}

PUBLIC_CHANNELS = frozenset({GLOBAL_CHANNEL, GLOBAL_WIRE_CHANNEL, ENCRYPTED_CHANNEL})


def to_local(wire_channel: str) -> str:
    return _WIRE_TO_LOCAL.get(wire_channel, wire_channel)


def to_wire(local_channel: str) -> str:
    return _LOCAL_TO_WIRE.get(local_channel, local_channel)


def is_direct(channel: str) -> bool:
    """Direct peer-to-peer channel (keyed by peer id)."""
    return bool(channel) and channel not in PUBLIC_CHANNELS
