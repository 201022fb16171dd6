from dataclasses import dataclass

import pytest

from mmxnode.params import ChainParams
from mmxnode.peers import FrameDecoder, encode_frame
from mmxnode.router import (
    GET_BLOCK,
    GET_BLOCK_HASH,
    GET_HEIGHT,
    GET_ID,
    GET_PEERS,
    GET_SYNCED_HEIGHT,
    NO_SUCH_METHOD,
    PeerInfo,
    Request,
    Return,
    Router,
)
from mmxnode.timelord import ProofOfTime
from mmxnode.transaction import Transaction, TxOut
from mmxnode.types import Hash


@dataclass
class FakeBlock:
    hash: Hash
    height: int
    prev: Hash = Hash()
    proof: object = None
    valid: bool = True

    def is_valid(self):
        return self.valid


class FakeNode:
    def __init__(self):
        self.height = 0
        self.synced_height = None
        self.blocks = {}
        self.added = []
        self.sync_started = 0

    def get_height(self):
        return self.height

    def get_synced_height(self):
        return self.synced_height

    def get_block(self, block_hash):
        return self.blocks.get(block_hash)

    def get_block_at(self, height):
        raise RuntimeError("no block")

    def get_block_hash(self, height):
        return None

    def add_block(self, block):
        self.added.append(block)

    def start_sync(self):
        self.sync_started += 1


class FakeTransport:
    def __init__(self):
        self.messages = []
        self.sent = []
        self.disconnected = []
        self.paused = []
        self.resumed = []
        self.connecting = []

    def encode(self, msg):
        self.messages.append(msg)
        return (len(self.messages) - 1).to_bytes(4, "little")

    def decode(self, payload):
        return self.messages[int.from_bytes(payload, "little")]

    def send(self, client, data):
        self.sent.append((client, bytes(data)))

    def disconnect(self, client):
        self.disconnected.append(client)

    def pause(self, client):
        self.paused.append(client)

    def resume(self, client):
        self.resumed.append(client)

    def connect(self, address):
        self.connecting.append(address)


class Clock:
    def __init__(self):
        self.now = 1_000_000

    def __call__(self):
        return self.now


NODE_ID = 42


def make_router():
    node = FakeNode()
    transport = FakeTransport()
    router = Router(node, transport, ChainParams(), NODE_ID)
    clock = Clock()
    router.clock = clock
    published = []
    router.publish = lambda topic, value: published.append((topic, value))
    return router, node, transport, clock, published


def sent_messages(transport):
    result = []
    for client, frame in transport.sent:
        for payload in FrameDecoder().feed(frame):
            result.append((client, transport.decode(payload)))
    return result


def feed(router, transport, client, msg):
    router.on_read(client, encode_frame(transport.encode(msg)))


def test_get_peers_filters_private_addresses():
    router, _, _, _, _ = make_router()
    for client, addr in enumerate(["10.0.0.1", "127.0.0.1", "192.168.1.2", "8.8.8.8", "1.2.3.4"]):
        router.on_connect(client, addr)
    assert router.get_peers(10) == ["1.2.3.4", "8.8.8.8"]
    subset = router.get_peers(1)
    assert len(subset) == 1 and subset[0] in {"1.2.3.4", "8.8.8.8"}


def test_connect_and_disconnect_track_peers():
    router, _, _, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    assert router.get_connected_peers() == ["8.8.8.8"]
    router.on_disconnect(1)
    assert router.get_connected_peers() == []
    assert router.get_known_peers() == ["8.8.8.8"]


def test_blocked_address_is_disconnected():
    router, _, transport, _, _ = make_router()
    router.block_peers.add("8.8.8.8")
    router.on_connect(5, "8.8.8.8")
    assert transport.disconnected == [5]
    assert router.get_connected_peers() == []


def test_request_get_id_answers_with_node_id():
    router, _, transport, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    feed(router, transport, 1, Request(7, GET_ID))
    assert sent_messages(transport) == [(1, Return(7, GET_ID, NODE_ID))]


def test_unknown_method_returns_error():
    router, _, transport, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    router.on_msg(1, Request(3, "Node.nothing"))
    [(_, ret)] = sent_messages(transport)
    assert ret.id == 3 and ret.error == NO_SUCH_METHOD


def test_node_error_is_returned():
    router, _, transport, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    router.on_msg(1, Request(4, "Node.get_block_at", {"height": 1}))
    [(_, ret)] = sent_messages(transport)
    assert ret.error == "no block"
    assert router.upload_counter == 0


def test_synced_height_marks_peer_synced():
    router, _, _, clock, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    router.on_msg(1, Return(0, GET_SYNCED_HEIGHT, 17))
    clock.now += 500
    [info] = router.get_peer_info()
    assert isinstance(info, PeerInfo)
    assert info.is_synced and info.height == 17 and info.recv_timeout_ms == 500
    assert router.synced_peers == {1}


def test_unsynced_peer_is_asked_for_height():
    router, _, transport, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    router.on_msg(1, Return(0, GET_SYNCED_HEIGHT, 17))
    router.on_msg(1, Return(1, GET_SYNCED_HEIGHT, None))
    assert router.synced_peers == set()
    [(_, req)] = sent_messages(transport)
    assert req.method == GET_HEIGHT


def test_own_address_is_blocked():
    router, _, transport, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    router.on_msg(1, Return(0, GET_ID, NODE_ID))
    assert "8.8.8.8" in router.block_peers
    assert "8.8.8.8" in router.self_addrs
    assert transport.disconnected == [1]


def test_peers_return_extends_known_peers():
    router, _, _, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    router.on_msg(1, Return(0, GET_PEERS, ["1.1.1.1", "2.2.2.2"]))
    assert router.get_known_peers() == ["1.1.1.1", "2.2.2.2", "8.8.8.8"]


def test_transaction_is_relayed_once():
    router, _, transport, _, published = make_router()
    router.upload_divider = 1
    for client in (1, 2, 3):
        router.on_connect(client, f"8.8.8.{client}")
    tx = Transaction(outputs=[TxOut(amount=5)])
    tx.finalize()
    feed(router, transport, 1, tx)
    assert published == [("transactions", tx)]
    assert sorted(c for c, _ in sent_messages(transport)) == [2, 3]
    assert all(msg == tx for _, msg in sent_messages(transport))
    feed(router, transport, 1, tx)
    assert len(transport.sent) == 2
    assert router.tx_counter == 1


def test_invalid_transaction_is_dropped():
    router, _, transport, _, published = make_router()
    router.on_connect(1, "8.8.8.8")
    router.on_connect(2, "8.8.4.4")
    tx = Transaction(outputs=[TxOut(amount=5)])
    feed(router, transport, 1, tx)
    assert published == []
    assert transport.sent == []


def test_blocked_peer_counts_drops():
    router, _, _, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    router.on_connect(2, "8.8.4.4")
    router.on_pause(2)
    block = FakeBlock(hash=Hash.digest(b"b"), height=3)
    router.on_msg(1, block)
    assert router.block_drop_counter == 1
    assert router.drop_counter == 1


def test_pause_and_resume_inbound_peer():
    router, _, transport, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    router.on_pause(1)
    router.on_resume(1)
    assert transport.paused == [1]
    assert transport.resumed == [1]
    assert router.get_peer_info()[0].is_blocked is False


def test_pause_unknown_peer_raises():
    router, _, _, _, _ = make_router()
    with pytest.raises(KeyError):
        router.on_pause(99)


def test_handle_block_broadcasts_only_with_proof():
    router, _, transport, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    router.handle_block(FakeBlock(hash=Hash.digest(b"a"), height=1))
    assert transport.sent == []
    block = FakeBlock(hash=Hash.digest(b"c"), height=2, proof=object())
    router.handle_block(block)
    assert sent_messages(transport) == [(1, block)]
    assert router.get_peer_info()[0].bytes_send == len(transport.sent[0][1])


def test_oversized_message_is_not_sent():
    router, _, transport, _, _ = make_router()
    router.max_msg_size = 7
    router.on_connect(1, "8.8.8.8")
    router.handle_block(FakeBlock(hash=Hash.digest(b"c"), height=2, proof=object()))
    assert transport.sent == []
    assert router.get_peer_info()[0].bytes_send == 0


def test_handle_proof_respects_verified_height():
    router, _, transport, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    router.handle_proof(ProofOfTime(height=10), verified=True)
    assert router.verified_vdf_height == 10
    router.handle_proof(ProofOfTime(height=9))
    assert transport.sent == []
    proof = ProofOfTime(height=11)
    router.handle_proof(proof)
    router.handle_proof(proof)
    assert sent_messages(transport) == [(1, proof)]


def test_sync_job_fetches_block():
    router, node, transport, _, _ = make_router()
    for client in (1, 2):
        router.on_connect(client, f"8.8.8.{client}")
        router.on_msg(client, Return(100 + client, GET_SYNCED_HEIGHT, 5))
    block = FakeBlock(hash=Hash.digest(b"blk"), height=5)
    results = []
    router.get_blocks_at(5, results.append)

    hash_requests = [(c, m) for c, m in sent_messages(transport) if m.method == GET_BLOCK_HASH]
    assert sorted(c for c, _ in hash_requests) == [1, 2]
    assert all(m.args["height"] == 5 for _, m in hash_requests)
    for client, req in hash_requests:
        router.on_msg(client, Return(req.id, GET_BLOCK_HASH, block.hash))

    block_requests = [(c, m) for c, m in sent_messages(transport) if m.method == GET_BLOCK]
    assert len(block_requests) == 1
    client, req = block_requests[0]
    assert req.args["hash"] == block.hash
    router.on_msg(client, Return(req.id, GET_BLOCK, block))
    assert results == [[block]]
    assert node.added == []


def test_unsolicited_block_is_added_to_node():
    router, node, _, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    block = FakeBlock(hash=Hash.digest(b"x"), height=1)
    router.on_msg(1, Return(9, GET_BLOCK, block))
    assert node.added == [block]


def test_add_peer_failure_forgets_non_seed():
    router, _, _, _, _ = make_router()
    router.seed_peers = {"seed.example.com"}
    router.peer_set = {"seed.example.com", "8.8.8.8"}
    router.add_peer("8.8.8.8", None)
    router.add_peer("seed.example.com", None)
    assert router.get_known_peers() == ["seed.example.com"]


def test_add_peer_success_sends_handshake():
    router, _, transport, _, _ = make_router()
    router.add_peer("8.8.8.8", 3)
    methods = [m.method for _, m in sent_messages(transport)]
    assert methods == [GET_ID, GET_SYNCED_HEIGHT]
    assert router.get_peer_info()[0].is_outbound


def test_connect_starts_connection_attempts():
    router, _, transport, _, _ = make_router()
    router.peer_set = {"1.1.1.1", "2.2.2.2"}
    router.on_connect(1, "2.2.2.2")
    router.connect()
    assert transport.connecting == ["1.1.1.1"]
    assert router.connecting_peers == {"1.1.1.1"}


def test_update_detects_lost_sync():
    router, node, _, clock, _ = make_router()
    router.min_sync_peers = 1
    router.on_connect(1, "8.8.8.8")
    router.on_msg(1, Return(0, GET_SYNCED_HEIGHT, 5))
    router.update()
    assert router.is_connected
    assert node.sync_started == 0
    clock.now += router.sync_loss_delay * 1000 + 1
    router.update()
    assert not router.is_connected
    assert node.sync_started == 1


def test_peer_list_round_trip(tmp_path):
    path = tmp_path / "known_peers.json"
    router, _, _, _, _ = make_router()
    router.peer_set = {"1.1.1.1", "2.2.2.2"}
    router.save_peers(path)
    other, _, _, _, _ = make_router()
    other.seed_peers = {"seed.example.com"}
    assert other.load_peers(path) == 3
    assert other.get_known_peers() == ["1.1.1.1", "2.2.2.2", "seed.example.com"]


def test_load_peers_ignores_bad_file(tmp_path):
    path = tmp_path / "known_peers.json"
    path.write_text("not json")
    router, _, _, _, _ = make_router()
    router.seed_peers = {"seed.example.com"}
    assert router.load_peers(path) == 1
    assert router.load_peers(tmp_path / "missing.json") == 1


def test_print_stats_resets_counters():
    router, _, transport, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    router.on_connect(2, "8.8.4.4")
    tx = Transaction(outputs=[TxOut(amount=1)])
    tx.finalize()
    feed(router, transport, 1, tx)
    assert router.tx_counter == 1
    text = router.print_stats()
    assert "tx/s" in text
    assert router.tx_counter == 0


def test_discover_and_query_reach_all_peers():
    router, _, transport, _, _ = make_router()
    router.on_connect(1, "8.8.8.8")
    router.on_connect(2, "8.8.4.4")
    router.discover()
    router.query()
    msgs = sent_messages(transport)
    assert sorted(c for c, m in msgs if m.method == GET_PEERS) == [1, 2]
    assert sorted(c for c, m in msgs if m.method == GET_SYNCED_HEIGHT) == [1, 2]
    assert all(m.args["max_count"] == router.num_peers_out for _, m in msgs if m.method == GET_PEERS)