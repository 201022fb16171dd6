"""Relays blocks, transactions and proofs between peers and fetches blocks for syncing."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from .peers import (
    DEFAULT_MAX_MSG_SIZE,
    FrameDecoder,
    Peer,
    SyncJob,
    SyncState,
    is_public_address,
    random_subset,
)
from .timelord import ProofOfTime
from .transaction import Transaction, encode_value
from .types import Hash

logger = logging.getLogger(__name__)

_U32 = (1 << 32) - 1

GET_ID = "Router.get_id"
GET_PEERS = "Router.get_peers"
GET_HEIGHT = "Node.get_height"
GET_SYNCED_HEIGHT = "Node.get_synced_height"
GET_BLOCK = "Node.get_block"
GET_BLOCK_AT = "Node.get_block_at"
GET_BLOCK_HASH = "Node.get_block_hash"

NO_SUCH_METHOD = "no such method"
OVERFLOW = "overflow"

TOPIC_VDFS = "vdfs"
TOPIC_BLOCKS = "blocks"
TOPIC_TRANSACTIONS = "transactions"


@dataclass(frozen=True)
class Request:
    """A remote call: ``method`` names the function, ``args`` holds its arguments."""

    id: int
    method: Optional[str] = None
    args: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Return:
    """The answer to a request: either a ``value`` or an ``error`` message."""

    id: int
    method: Optional[str] = None
    value: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PeerInfo:
    """A snapshot of one connected peer."""

    address: str
    height: int
    bytes_send: int
    bytes_recv: int
    is_synced: bool
    is_blocked: bool
    is_outbound: bool
    recv_timeout_ms: int


def _proof_hash(proof: ProofOfTime) -> Hash:
    parts = [encode_value(proof.start), encode_value(proof.height)]
    for infused in proof.infuse:
        for iters, value in sorted(infused.items()):
            parts.append(encode_value(iters) + encode_value(value))
    for seg in proof.segments:
        parts.append(encode_value(seg.num_iters))
        parts.extend(encode_value(out) for out in seg.output)
    return Hash.digest(b"".join(parts))


def _wall_millis() -> int:
    return int(time.time() * 1000)


class Router:
    """Keeps a set of peers, relays messages and answers their requests.

    ``transport`` provides ``encode(msg) -> bytes``, ``decode(bytes) -> msg``,
    ``send(client, data)``, ``disconnect(client)``, ``pause(client)``,
    ``resume(client)`` and ``connect(address)``; the latter reports back via
    :meth:`add_peer`.  ``node`` provides the chain queries answered to peers.
    """

    def __init__(self, node, transport, params, node_id):
        self._node = node
        self._transport = transport
        self._params = params
        self._node_id = node_id

        self.num_peers_out = 8
        self.num_threads = 4
        self.min_sync_peers = 2
        self.max_sync_peers = 4
        self.fetch_timeout_ms = 10000
        self.update_interval_ms = 1000
        self.sync_loss_delay = 60
        self.upload_divider = 2
        self.max_msg_size = DEFAULT_MAX_MSG_SIZE
        self.stats_interval_ms = 10000
        self.show_warnings = False
        self.seed_peers: set = set()
        self.clock: Callable[[], int] = _wall_millis
        self.publish: Callable[[str, Any], None] = lambda topic, value: None

        self.is_synced = False
        self.is_connected = False
        self.peer_set: set = set()
        self.self_addrs: set = set()
        self.block_peers: set = set()
        self.connecting_peers: set = set()
        self.synced_peers: set = set()
        self._peer_map: Dict[int, Peer] = {}
        self._seen_hashes: set = set()
        self._sync_jobs: Dict[int, SyncJob] = {}
        self._sync_callbacks: Dict[int, Callable[[list], None]] = {}
        self._next_job_id = 0

        self.node_height = 0
        self._next_request_id = 0
        self.verified_vdf_height = 0

        self.tx_counter = 0
        self.vdf_counter = 0
        self.block_counter = 0
        self.upload_counter = 0
        self.drop_counter = 0
        self.tx_drop_counter = 0
        self.vdf_drop_counter = 0
        self.block_drop_counter = 0

    # --- queries -----------------------------------------------------------

    def get_id(self):
        return self._node_id

    def get_peers(self, max_count):
        """Return up to ``max_count`` public addresses of connected peers."""
        valid = {peer.address for peer in self._peer_map.values() if is_public_address(peer.address)}
        return random_subset(valid, max_count)

    def get_known_peers(self):
        return sorted(self.peer_set)

    def get_connected_peers(self):
        return [peer.address for peer in self._peer_map.values()]

    def get_peer_info(self):
        """Return a snapshot of all connected peers, sorted by address."""
        now_ms = self.clock()
        info = [
            PeerInfo(
                address=peer.address,
                height=peer.height,
                bytes_send=peer.bytes_send,
                bytes_recv=peer.bytes_recv,
                is_synced=peer.is_synced,
                is_blocked=peer.is_blocked,
                is_outbound=peer.is_outbound,
                recv_timeout_ms=now_ms - peer.last_receive_ms,
            )
            for peer in self._peer_map.values()
        ]
        return sorted(info, key=lambda entry: entry.address)

    def get_blocks_at(self, height, callback):
        """Fetch the blocks at ``height`` from synced peers; ``callback`` gets the list."""
        key = self._next_job_id
        self._next_job_id += 1
        self._sync_jobs[key] = SyncJob(height=height, start_time_ms=self.clock())
        self._sync_callbacks[key] = callback
        self.process()
        return key

    # --- local input -------------------------------------------------------

    def handle_block(self, block):
        if block.hash not in self._seen_hashes:
            self._seen_hashes.add(block.hash)
            if block.proof:
                logger.info("Broadcasting block %s", block.height)
                self._send_all(block)

    def handle_transaction(self, tx):
        if tx.id not in self._seen_hashes:
            self._seen_hashes.add(tx.id)
            logger.info("Broadcasting transaction %s", tx.id)
            self._send_all(tx)

    def handle_proof(self, proof, verified=False):
        """Broadcast a new proof of time, or record the height of a verified one."""
        if verified:
            self.verified_vdf_height = max(proof.height, self.verified_vdf_height)
            return
        if proof.height > self.verified_vdf_height:
            proof_hash = _proof_hash(proof)
            if proof_hash not in self._seen_hashes:
                self._seen_hashes.add(proof_hash)
                logger.info("Broadcasting VDF for height %s", proof.height)
                self._send_all(proof)

    # --- periodic tasks ----------------------------------------------------

    def update(self):
        """Check the sync state, retry timed-out sync jobs and advance them."""
        now_ms = self.clock()
        params = self._params

        num_peers = sum(
            1 for peer in self._peer_map.values()
            if peer.is_synced and now_ms - peer.last_receive_ms < self.sync_loss_delay * 1000)
        if num_peers < self.min_sync_peers:
            if self.is_connected:
                logger.warning("Lost sync with network due to timeout!")
                self.is_connected = False
                self._node.start_sync()
        else:
            self.is_connected = True

        sync_height = self._node.get_synced_height()
        if sync_height is not None:
            self.node_height = sync_height
            num_ahead = sum(
                1 for peer in self._peer_map.values()
                if peer.is_synced and peer.height > self.node_height
                and peer.height - self.node_height > params.finality_delay)
            if num_ahead >= min(len(self.synced_peers), 1):
                logger.warning("Lost sync with network due to height difference!")
                self._node.start_sync()
        self.is_synced = sync_height is not None

        if len(self.synced_peers) >= self.min_sync_peers:
            for job in self._sync_jobs.values():
                if now_ms - job.start_time_ms > self.fetch_timeout_ms:
                    if job.state is SyncState.FETCH_BLOCKS:
                        job.reset(now_ms)
                    else:
                        job.pending.clear()
                    job.start_time_ms = now_ms
                    logger.warning("Timeout on sync job for height %s, trying again ...", job.height)
        self.process()

    def process(self, ret=None):
        """Advance all sync jobs; return True if ``ret`` answered one of their requests."""
        now_ms = self.clock()
        did_consume = False
        for key, job in list(self._sync_jobs.items()):
            if ret is not None:
                client = job.request_map.pop(ret.id, None)
                if client is not None:
                    self._record_result(job, client, ret)
                    job.pending.discard(client)
                    did_consume = True

            num_peers_try = min(self.max_sync_peers, max(len(self.synced_peers), self.min_sync_peers))

            if job.state is SyncState.FETCH_HASHES:
                if (len(job.succeeded) < self.min_sync_peers
                        and len(job.succeeded) + len(job.failed) < num_peers_try):
                    peers = self.synced_peers - job.failed - job.pending - job.succeeded
                    for client in random_subset(peers, self.max_sync_peers):
                        if job.num_requests >= self.max_sync_peers:
                            break
                        req_id = self._send_request(client, GET_BLOCK_HASH, height=job.height)
                        job.request_map[req_id] = client
                        job.pending.add(client)
                else:
                    logger.debug("Got %d block hashes for height %s from %d peers, %d failed",
                                 len(job.hash_map), job.height, len(job.succeeded), len(job.failed))
                    job.clear_requests()
                    job.state = SyncState.FETCH_BLOCKS
                    job.start_time_ms = now_ms

            if job.state is SyncState.FETCH_BLOCKS:
                if len(job.blocks) < len(job.hash_map) and (
                        len(job.succeeded) + len(job.failed) < num_peers_try or not job.blocks):
                    self._request_blocks(job, now_ms)
                else:
                    if job.hash_map:
                        logger.debug("Got %d / %d blocks for height %s by fetching %d times, %d failed",
                                     len(job.blocks), len(job.hash_map), job.height,
                                     job.num_requests, len(job.failed))
                    del self._sync_jobs[key]
                    callback = self._sync_callbacks.pop(key)
                    callback(list(job.blocks.values()))
        return did_consume

    @staticmethod
    def _record_result(job, client, ret):
        if ret.error is None and ret.method == GET_BLOCK_HASH:
            if ret.value:
                job.hash_map.setdefault(Hash(ret.value), set()).add(client)
                job.succeeded.add(client)
            else:
                job.failed.add(client)
        elif ret.error is None and ret.method == GET_BLOCK:
            if ret.value is not None:
                job.blocks[ret.value.hash] = ret.value
                job.succeeded.add(client)
            else:
                job.failed.add(client)
        elif ret.error == OVERFLOW:
            pass  # try again
        else:
            job.failed.add(client)

    def _request_blocks(self, job, now_ms):
        for block_hash, clients in job.hash_map.items():
            if block_hash in job.blocks:
                continue
            num_pending = len(clients & job.pending)
            max_pending = max((now_ms - job.start_time_ms) // self.update_interval_ms, 1)
            if num_pending < max_pending:
                candidates = clients - job.failed - job.pending
                for client in random_subset(candidates, max_pending - num_pending):
                    req_id = self._send_request(client, GET_BLOCK, hash=block_hash)
                    job.request_map[req_id] = client
                    job.pending.add(client)

    def connect(self):
        """Start connecting to known peers and drop surplus outbound connections."""
        for address in random_subset(self.peer_set, self.num_threads):
            if (len(self.synced_peers) >= self.num_peers_out
                    or len(self.connecting_peers) >= self.num_threads):
                break
            if address in self.connecting_peers or address in self.block_peers:
                continue
            if any(peer.address == address for peer in self._peer_map.values()):
                continue
            logger.debug("Trying to connect to %s", address)
            self.connecting_peers.add(address)
            self._transport.connect(address)

        if len(self.synced_peers) > self.num_peers_out:
            surplus = len(self.synced_peers) - self.num_peers_out
            for client in random_subset(self.synced_peers, surplus):
                peer = self._peer_map.get(client)
                if peer is not None and peer.is_outbound:
                    logger.info("Disconnecting from %s to reduce connections", peer.address)
                    self._transport.disconnect(client)

    def query(self):
        """Ask every peer for its synced height."""
        self._send_all(Request(self._take_request_id(), GET_SYNCED_HEIGHT))

    def discover(self):
        """Ask every peer for addresses of its peers."""
        self._send_all(Request(self._take_request_id(), GET_PEERS, {"max_count": self.num_peers_out}))

    def add_peer(self, address, connected):
        """Finish a connection attempt; ``connected`` is the new client id or None."""
        self.connecting_peers.discard(address)
        if connected is not None:
            if len(self.synced_peers) >= self.num_peers_out:
                self._transport.disconnect(connected)
                return
            if connected not in self._peer_map:
                self.on_connect(connected, address)
            peer = self._peer_map.get(connected)
            if peer is None:
                return
            peer.is_outbound = True
            self._send_request(connected, GET_ID)
            self._send_request(connected, GET_SYNCED_HEIGHT)
        elif address not in self.seed_peers:
            self.peer_set.discard(address)

    def print_stats(self):
        """Log and return traffic statistics, then reset the counters."""
        interval = self.stats_interval_ms
        text = (
            f"{self.tx_counter * 1000 / interval} tx/s, "
            f"{self.vdf_counter * 1000 / interval} vdf/s, "
            f"{self.block_counter * 1000 / interval} blocks/s, "
            f"{len(self.synced_peers)} / {len(self._peer_map)} / {len(self.peer_set)} peers, "
            f"{self.upload_counter} upload, "
            f"{self.tx_drop_counter} / {self.vdf_drop_counter} / {self.block_drop_counter} dropped"
        )
        logger.info("%s", text)
        self.tx_counter = self.vdf_counter = self.block_counter = self.upload_counter = 0
        self.tx_drop_counter = self.vdf_drop_counter = self.block_drop_counter = 0
        return text

    # --- peer list persistence --------------------------------------------

    def load_peers(self, path):
        """Reset the known peers to the seeds plus those stored at ``path``."""
        self.peer_set = set(self.seed_peers)
        try:
            with open(path, "r", encoding="utf-8") as stream:
                stored = json.load(stream)
            if not isinstance(stored, list) or not all(isinstance(a, str) for a in stored):
                raise ValueError("expected a list of addresses")
            self.peer_set.update(stored)
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as ex:
            logger.warning("Failed to read peers from file: %s", ex)
        logger.info("Loaded %d known peers", len(self.peer_set))
        return len(self.peer_set)

    def save_peers(self, path):
        try:
            with open(path, "w", encoding="utf-8") as stream:
                json.dump(sorted(self.peer_set), stream)
        except OSError as ex:
            logger.warning("Failed to write peers to file: %s", ex)

    # --- incoming traffic --------------------------------------------------

    def on_read(self, client, data):
        """Handle bytes received from ``client``; framing errors propagate."""
        peer = self._get_peer(client)
        for payload in peer.receive(data):
            msg = self._transport.decode(payload)
            try:
                self.on_msg(client, msg)
            except Exception as ex:
                if self.show_warnings:
                    logger.warning("on_msg() failed with: %s", ex)

    def on_msg(self, client, msg):
        if isinstance(msg, ProofOfTime):
            self._on_vdf(client, msg)
        elif isinstance(msg, Transaction):
            self._on_transaction(client, msg)
        elif isinstance(msg, Request):
            self.on_request(client, msg)
        elif isinstance(msg, Return):
            self.on_return(client, msg)
        elif hasattr(msg, "hash") and hasattr(msg, "prev"):
            self._on_block(client, msg)

    def _on_vdf(self, client, proof):
        proof_hash = _proof_hash(proof)
        if proof_hash in self._seen_hashes:
            return
        self._seen_hashes.add(proof_hash)
        self.publish(TOPIC_VDFS, proof)
        self._relay(client, proof)
        self.vdf_counter += 1

    def _on_block(self, client, block):
        if block.hash in self._seen_hashes:
            return
        self._seen_hashes.add(block.hash)
        if not block.is_valid():
            return
        self.publish(TOPIC_BLOCKS, block)
        self._relay(client, block)
        self.block_counter += 1

    def _on_transaction(self, client, tx):
        if tx.id in self._seen_hashes:
            return
        self._seen_hashes.add(tx.id)
        if not tx.is_valid():
            return
        self._relay(client, tx)
        self.publish(TOPIC_TRANSACTIONS, tx)
        self.tx_counter += 1

    def on_request(self, client, msg):
        """Answer a request from a peer."""
        method = msg.method
        if method is None:
            return
        node = self._node
        args = msg.args
        try:
            if method == GET_ID:
                value = self.get_id()
            elif method == GET_PEERS:
                value = self.get_peers(args["max_count"])
            elif method == GET_HEIGHT:
                value = node.get_height()
            elif method == GET_SYNCED_HEIGHT:
                value = node.get_synced_height()
            elif method == GET_BLOCK:
                value = node.get_block(args["hash"])
                self.upload_counter += 1
            elif method == GET_BLOCK_AT:
                value = node.get_block_at(args["height"])
                self.upload_counter += 1
            elif method == GET_BLOCK_HASH:
                value = node.get_block_hash(args["height"])
            else:
                self._send_to(client, Return(msg.id, method, error=NO_SUCH_METHOD))
                return
        except Exception as ex:
            self._on_error(client, msg.id, method, ex)
            return
        self._send_to(client, Return(msg.id, method, value))

    def _on_error(self, client, request_id, method, ex):
        self._send_to(client, Return(request_id, method, error=str(ex) or type(ex).__name__))

    def on_return(self, client, msg):
        """Handle the answer to one of our requests."""
        if self.process(msg):
            return
        if msg.error is not None:
            return
        peer = self._peer_map.get(client)
        value = msg.value
        method = msg.method
        if method == GET_ID:
            if peer is not None:
                peer.node_id = value
                if value == self.get_id():
                    logger.info("Discovered our own address: %s", peer.address)
                    self.self_addrs.add(peer.address)
                    self.block_peers.add(peer.address)
                    self._transport.disconnect(client)
        elif method == GET_PEERS:
            self.peer_set.update(value or ())
        elif method == GET_HEIGHT:
            if peer is not None:
                peer.height = value
                peer.last_receive_ms = self.clock()
        elif method == GET_SYNCED_HEIGHT:
            if peer is not None:
                self._on_synced_height(client, peer, value)
        elif method == GET_BLOCK_HASH:
            if peer is not None and peer.hash_check_request == msg.id and value:
                if self._node.get_block(value) is None:
                    self._send_request(client, GET_BLOCK, hash=value)
                    logger.warning("Fetching unknown block at height %s with hash %s",
                                   peer.hash_check_height, value)
        elif method == GET_BLOCK:
            block = value
            if block is not None:
                if self.is_synced and block.height + self._params.finality_delay >= self.node_height:
                    # check if we have the previous block
                    if self._node.get_block(block.prev) is None:
                        self._send_request(client, GET_BLOCK, hash=block.prev)
                        logger.warning("Fetching unknown block at height %s with hash %s",
                                       block.height - 1, block.prev)
                self._node.add_block(block)

    def _on_synced_height(self, client, peer, height):
        if height is not None:
            if not peer.is_synced:
                logger.info("Peer %s is synced at height %s", peer.address, height)
            peer.height = height
            peer.is_synced = True
            self.synced_peers.add(client)
            prev_height = (self.node_height - 1) & _U32
            if (self.is_synced and peer.height >= prev_height
                    and peer.height <= self.node_height + self._params.finality_delay):
                # check their previous block hash
                peer.hash_check_height = prev_height
                peer.hash_check_request = self._send_request(client, GET_BLOCK_HASH, height=prev_height)
        else:
            if peer.is_synced:
                logger.info("Peer %s is not synced", peer.address)
            peer.is_synced = False
            self.synced_peers.discard(client)
            self._send_request(client, GET_HEIGHT)
        peer.last_receive_ms = self.clock()

    def on_connect(self, client, address):
        if address in self.block_peers:
            self._transport.disconnect(client)
            return
        peer = self._peer_map.get(client)
        if peer is None:
            peer = Peer(client=client, decoder=FrameDecoder(self.max_msg_size))
            self._peer_map[client] = peer
        peer.client = client
        peer.address = address
        self.peer_set.add(address)
        logger.info("Connected to peer %s", address)

    def on_disconnect(self, client):
        peer = self._peer_map.pop(client, None)
        if peer is not None:
            logger.info("Peer %s disconnected", peer.address)
        self.synced_peers.discard(client)

    def on_pause(self, client):
        peer = self._get_peer(client)
        peer.is_blocked = True
        if not peer.is_outbound:
            self._transport.pause(client)  # pause incoming traffic

    def on_resume(self, client):
        peer = self._get_peer(client)
        peer.is_blocked = False
        if not peer.is_outbound:
            self._transport.resume(client)  # resume incoming traffic

    # --- outgoing traffic --------------------------------------------------

    def _take_request_id(self):
        request_id = self._next_request_id
        self._next_request_id = (self._next_request_id + 1) & _U32
        return request_id

    def _send_request(self, client, method, **args):
        request = Request(self._take_request_id(), method, args)
        self._send_to(client, request)
        return request.id

    def _relay(self, source, msg):
        num_sent = 0
        for client, peer in list(self._peer_map.items()):
            if peer.is_blocked:
                if isinstance(msg, Transaction):
                    self.tx_drop_counter += 1
                elif isinstance(msg, ProofOfTime):
                    self.vdf_drop_counter += 1
                else:
                    self.block_drop_counter += 1
                self.drop_counter += 1
            elif client != source:
                self._send_to_peer(peer, msg)
                num_sent += 1
                if num_sent >= len(self._peer_map) // self.upload_divider:
                    break

    def _send_to(self, client, msg):
        peer = self._peer_map.get(client)
        if peer is not None:
            self._send_to_peer(peer, msg)

    def _send_to_peer(self, peer, msg):
        data = peer.frame(self._transport.encode(msg), self.max_msg_size)
        if data is not None:
            self._transport.send(peer.client, data)

    def _send_all(self, msg):
        for peer in list(self._peer_map.values()):
            self._send_to_peer(peer, msg)

    def _get_peer(self, client) -> Peer:
        try:
            return self._peer_map[client]
        except KeyError:
            raise KeyError("no such peer") from None