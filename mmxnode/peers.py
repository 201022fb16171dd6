"""Peer connection state, sync job bookkeeping and the length-prefixed wire framing."""

from __future__ import annotations

import enum
import random
import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from .types import Hash

CODE_UINT32 = 3
HEADER_SIZE = 6
DEFAULT_MAX_MSG_SIZE = 32 * 1024 * 1024

_HEADER = struct.Struct("<HI")
_PRIVATE_PREFIXES = ("10.", "127.", "192.168.")
_rng = random.SystemRandom()


class FrameError(Exception):
    """Raised when incoming bytes do not form a valid frame."""


def encode_frame(payload, max_msg_size=DEFAULT_MAX_MSG_SIZE) -> Optional[bytes]:
    """Prefix ``payload`` with its header; return None if the frame exceeds ``max_msg_size``."""
    body = bytes(payload)
    frame = _HEADER.pack(CODE_UINT32, len(body)) + body
    if len(frame) > max_msg_size:
        return None
    return frame


class FrameDecoder:
    """Splits a byte stream into the payloads of consecutive frames."""

    def __init__(self, max_msg_size=DEFAULT_MAX_MSG_SIZE):
        self.max_msg_size = max_msg_size
        self._buffer = bytearray()
        self._msg_size: Optional[int] = None

    @property
    def buffered(self):
        """Number of bytes received but not yet part of a complete frame."""
        return len(self._buffer)

    def feed(self, data) -> List[bytes]:
        """Add received bytes and return the payloads of all frames now complete."""
        self._buffer += bytes(data)
        messages = []
        while True:
            if self._msg_size is None:
                if len(self._buffer) < HEADER_SIZE:
                    break
                code, size = _HEADER.unpack_from(self._buffer)
                if code != CODE_UINT32:
                    raise FrameError(f"invalid frame size code: {code}")
                if size > self.max_msg_size:
                    raise FrameError("message too large")
                if size == 0:
                    del self._buffer[:HEADER_SIZE]
                    continue
                self._msg_size = size
            end = HEADER_SIZE + self._msg_size
            if len(self._buffer) < end:
                break
            messages.append(bytes(self._buffer[HEADER_SIZE:end]))
            del self._buffer[:end]
            self._msg_size = None
        return messages


def is_public_address(addr):
    """Return False for loopback and common private network addresses."""
    return not addr.startswith(_PRIVATE_PREFIXES)


def random_subset(candidates, max_count):
    """Return up to ``max_count`` distinct candidates, sorted; all of them if they fit."""
    pool = sorted(set(candidates))
    if max_count >= len(pool):
        return pool
    result = set()
    for _ in range(2 * len(pool)):
        if len(result) >= max_count:
            break
        result.add(_rng.choice(pool))
    return sorted(result)


class SyncState(enum.Enum):
    FETCH_HASHES = "fetch_hashes"
    FETCH_BLOCKS = "fetch_blocks"


@dataclass
class SyncJob:
    """Progress of fetching the blocks at one height from several peers."""

    height: int = 0
    state: SyncState = SyncState.FETCH_HASHES
    start_time_ms: int = 0
    failed: Set[int] = field(default_factory=set)
    pending: Set[int] = field(default_factory=set)
    succeeded: Set[int] = field(default_factory=set)
    request_map: Dict[int, int] = field(default_factory=dict)  # request id -> client
    hash_map: Dict[Hash, Set[int]] = field(default_factory=dict)  # block hash -> clients
    blocks: Dict[Hash, object] = field(default_factory=dict)

    @property
    def num_requests(self):
        return len(self.succeeded) + len(self.pending) + len(self.failed)

    def clear_requests(self):
        """Forget all request outcomes, keeping collected hashes and blocks."""
        self.failed.clear()
        self.pending.clear()
        self.succeeded.clear()
        self.request_map.clear()

    def reset(self, now_ms):
        """Start over from fetching hashes at the same height."""
        self.clear_requests()
        self.hash_map.clear()
        self.blocks.clear()
        self.state = SyncState.FETCH_HASHES
        self.start_time_ms = now_ms


@dataclass
class Peer:
    """State of one connected peer."""

    client: int = 0
    address: str = ""
    is_synced: bool = False
    is_blocked: bool = False
    is_outbound: bool = False
    height: int = 0
    last_receive_ms: int = 0
    bytes_send: int = 0
    bytes_recv: int = 0
    node_id: Optional[int] = None
    hash_check_height: Optional[int] = None
    hash_check_request: Optional[int] = None
    decoder: FrameDecoder = field(default_factory=FrameDecoder)

    def receive(self, data) -> List[bytes]:
        """Count and decode bytes received from this peer."""
        self.bytes_recv += len(data)
        return self.decoder.feed(data)

    def frame(self, payload, max_msg_size=DEFAULT_MAX_MSG_SIZE) -> Optional[bytes]:
        """Frame a payload for this peer, counting the bytes sent; None if too large."""
        data = encode_frame(payload, max_msg_size)
        if data is not None:
            self.bytes_send += len(data)
        return data